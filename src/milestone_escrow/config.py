"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup - if a required setting is missing, the app fails fast with a
clear error message.

Usage:
    from milestone_escrow.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class NetworkConfig(BaseModel):
    """One entry of the RPC network table."""

    rpc_url: str
    chain_id: int


def _default_networks() -> dict[str, NetworkConfig]:
    return {
        "mainnet": NetworkConfig(rpc_url="https://eth.llamarpc.com", chain_id=1),
        "sepolia": NetworkConfig(rpc_url="https://rpc.sepolia.org", chain_id=11155111),
        "goerli": NetworkConfig(rpc_url="https://rpc.ankr.com/eth_goerli", chain_id=5),
        "polygon": NetworkConfig(rpc_url="https://polygon-rpc.com", chain_id=137),
        "mumbai": NetworkConfig(rpc_url="https://rpc-mumbai.maticvigil.com", chain_id=80001),
        "local": NetworkConfig(rpc_url="http://127.0.0.1:8545", chain_id=31337),
    }


class Settings(BaseSettings):
    """Central configuration for the Milestone Escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production", "test"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: list[str] = ["*"]

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/milestone_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Escrow Defaults ---
    platform_fee_percentage: Decimal = Decimal("2.5")
    default_network: str = "sepolia"

    # --- Blockchain Verifier ---
    # Override one entry with e.g. NETWORKS='{"local": {"rpc_url": "...", "chain_id": 1337}}'
    networks: dict[str, NetworkConfig] = _default_networks()
    rpc_timeout_seconds: float = 10.0
    verification_tolerance: Decimal = Decimal("0.01")
    verification_min_confirmations: int = 0

    # --- Evidence Storage (IPFS pinning) ---
    pinata_jwt: str = ""
    pinata_api_url: str = "https://api.pinata.cloud"
    ipfs_gateway_url: str = "https://gateway.pinata.cloud/ipfs"
    upload_timeout_seconds: float = 60.0
    upload_max_attempts: int = 3
    upload_base_delay_seconds: float = 2.0
    upload_backoff_multiplier: float = 2.0
    max_upload_files: int = 10
    max_upload_bytes: int = 50 * 1024 * 1024

    @property
    def is_development(self) -> bool:
        return self.app_env in ("development", "test")

    @property
    def sync_database_url(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.database_url.replace("+asyncpg", "+psycopg2")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
