"""Configuration system using pydantic-settings with environment variable loading."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

OMNIPAIR_PROGRAM_ID = "3tJrAXnjofAw8oskbMaSo9oMAYuzdBgVbW3TvQLdMEBd"


class RpcSettings(BaseSettings):
    """Solana JSON-RPC connection settings."""

    model_config = SettingsConfigDict(env_prefix="RPC_")

    http_url: str = "https://api.mainnet-beta.solana.com"
    commitment: Literal["confirmed", "finalized"] = "confirmed"
    timeout_seconds: float = 30.0


class IndexerSettings(BaseSettings):
    """Ingestion pipeline parameters.

    Controls windowing, concurrency, retry policy and live-sync cadence.
    All fields configurable via INDEXER_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="INDEXER_")

    program_id: str = OMNIPAIR_PROGRAM_ID
    deployment_slot: int | None = None  # first slot backfill starts from

    # Windowing and concurrency
    window_size: int = 50  # slots per backfill window
    max_parallel_windows: int = 4
    rpc_concurrency: int = 10  # simultaneous getBlock calls
    shard_count: int = 8  # per-entity apply queues

    # Fetch retry
    max_fetch_retries: int = 5
    retry_base_delay: float = 0.5
    fetch_timeout_seconds: float = 20.0

    # Persist retry
    max_persist_retries: int = 3

    # Live sync
    poll_interval_seconds: float = 2.0
    max_slots_per_poll: int = 100
    confirmation_depth: int = 0  # slots behind tip treated as final
    stop_deadline_seconds: float = 15.0

    # Periodic gap fill while running (0 disables)
    gap_fill_interval_seconds: float = 300.0

    record_view_calls: bool = False
    backfill_on_start: bool = False


class DatabaseSettings(BaseSettings):
    """SQLite storage location."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    path: str = "data/omnipair.db"


class ApiSettings(BaseSettings):
    """Status API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    rpc: RpcSettings = RpcSettings()
    indexer: IndexerSettings = IndexerSettings()
    database: DatabaseSettings = DatabaseSettings()
    api: ApiSettings = ApiSettings()
