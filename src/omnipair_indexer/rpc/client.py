"""Abstract RPC client interface.

Defines the contract the fetcher and sync drivers depend on, keeping the
solana-py specifics isolated in the concrete implementation and letting tests
substitute an in-memory chain.
"""

from abc import ABC, abstractmethod

from omnipair_indexer.models import SlotBlock


class RpcClient(ABC):
    """Abstract base class for Solana block sources."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and verify the endpoint is reachable.

        Raises ConfigurationError when it is not.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release HTTP resources."""
        ...

    @abstractmethod
    async def get_tip_slot(self) -> int:
        """Return the latest slot at the configured commitment."""
        ...

    @abstractmethod
    async def get_block(self, slot: int) -> SlotBlock | None:
        """Fetch one block with full transaction data.

        Returns None when the slot was skipped or holds no block; callers
        treat that as fetched-and-empty. Raises RpcFetchError on transient
        failures.
        """
        ...
