"""Custom exceptions for the Omnipair indexer.

Kept in one module so the ingest, storage and sync layers can raise and catch
each other's errors without circular imports.
"""


class IndexerError(Exception):
    """Base exception for all indexer errors."""


class ConfigurationError(IndexerError):
    """Fatal setup problem: unreachable RPC, unusable database, missing start slot.

    Raised before any coverage or watermark update is made.
    """


class RpcFetchError(IndexerError):
    """Transient failure fetching a slot from the RPC source."""

    def __init__(self, slot: int, message: str, rate_limited: bool = False) -> None:
        super().__init__(f"slot {slot}: {message}")
        self.slot = slot
        self.rate_limited = rate_limited


class DecodeError(IndexerError):
    """Malformed payload under a recognised discriminator."""


class PersistenceError(IndexerError):
    """Atomic write for a transaction failed after all retries."""

    def __init__(self, signature: str, message: str) -> None:
        super().__init__(f"{signature}: {message}")
        self.signature = signature
