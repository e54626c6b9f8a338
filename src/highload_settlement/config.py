"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
settlement service, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from highload_settlement.ton.address import Address
from highload_settlement.ton.query_id import MAX_QUERY_ID_COUNT

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

MAX_BATCH_SIZE = 254
MAX_TIMEOUT_SECONDS = (1 << 22) - 1


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (enables the cross-process writer lock)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class TonSettings(BaseSettings):
    """TON network and exchange wallet settings."""

    model_config = SettingsConfigDict(env_prefix="TON_", extra="ignore")

    api_url: str = Field(
        default="https://toncenter.com/api/v3",
        alias="TON_API_URL",
        description="toncenter v3 HTTP API base URL",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="TON_API_KEY",
        description="toncenter API key",
    )
    wallet_address: str = Field(
        alias="TON_WALLET_ADDRESS",
        description="Exchange highload wallet address",
    )
    public_key_hex: str = Field(
        alias="TON_PUBLIC_KEY_HEX",
        description="Master public key (32 bytes, hex) shared by all deposit subwallets",
    )
    wallet_code_hash_hex: str = Field(
        alias="TON_WALLET_CODE_HASH_HEX",
        description="Representation hash of the Highload Wallet V3 code cell",
    )
    wallet_code_depth: int = Field(
        alias="TON_WALLET_CODE_DEPTH",
        description="Depth of the Highload Wallet V3 code cell",
        ge=0,
    )
    testnet: bool = Field(
        default=False,
        alias="TON_TESTNET",
        description="Render addresses with the testnet flag",
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("TON_API_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @field_validator("wallet_address")
    @classmethod
    def validate_wallet_address(cls, v: str) -> str:
        """Reject unparsable and placeholder zero addresses."""
        address = Address.parse(v)
        if address.hash_part == bytes(32):
            raise ValueError("TON_WALLET_ADDRESS is a placeholder zero address")
        return v

    @field_validator("public_key_hex", "wallet_code_hash_hex")
    @classmethod
    def validate_32_byte_hex(cls, v: str) -> str:
        try:
            raw = bytes.fromhex(v)
        except ValueError as e:
            raise ValueError("value must be hex encoded") from e
        if len(raw) != 32:
            raise ValueError("value must be exactly 32 bytes")
        return v.lower()

    @property
    def public_key(self) -> bytes:
        return bytes.fromhex(self.public_key_hex)

    @property
    def wallet_code_hash(self) -> bytes:
        return bytes.fromhex(self.wallet_code_hash_hex)


class SubwalletSettings(BaseSettings):
    """Deposit subwallet derivation settings."""

    model_config = SettingsConfigDict(env_prefix="SUBWALLET_", extra="ignore")

    base_id: int = Field(
        default=0x10AD,
        alias="SUBWALLET_BASE_ID",
        description="Base subwallet id, also used in place of the reserved id zero",
        ge=1,
        le=0xFFFFFFFF,
    )
    timeout_seconds: int = Field(
        default=3600,
        alias="SUBWALLET_TIMEOUT_SECONDS",
        description="Timeout baked into each deposit subwallet's state",
        ge=1,
        le=MAX_TIMEOUT_SECONDS,
    )
    max_attempts: int = Field(
        default=1000,
        alias="SUBWALLET_MAX_ATTEMPTS",
        description="Collision search budget per allocation",
        ge=1,
    )


class DepositSettings(BaseSettings):
    """Deposit monitoring settings."""

    model_config = SettingsConfigDict(env_prefix="DEPOSIT_", extra="ignore")

    min_amount: int = Field(
        default=1_000_000_000,
        alias="DEPOSIT_MIN_AMOUNT",
        description="Minimum deposit in nanotons",
        ge=0,
    )
    min_confirmations: int = Field(
        default=3,
        alias="DEPOSIT_MIN_CONFIRMATIONS",
        description="Confirmations required before crediting",
        ge=0,
    )
    confirmation_mode: Literal["seqno", "time"] = Field(
        default="seqno",
        alias="DEPOSIT_CONFIRMATION_MODE",
        description="Count confirmations by masterchain seqno or by elapsed time",
    )
    block_interval_seconds: float = Field(
        default=5.0,
        alias="DEPOSIT_BLOCK_INTERVAL_SECONDS",
        description="Assumed block interval for time-based confirmation",
        gt=0,
    )
    poll_interval_seconds: float = Field(
        default=10.0,
        alias="DEPOSIT_POLL_INTERVAL_SECONDS",
        description="Delay between transaction polls",
        gt=0,
    )
    confirm_interval_seconds: float = Field(
        default=5.0,
        alias="DEPOSIT_CONFIRM_INTERVAL_SECONDS",
        description="Delay between confirmation passes",
        gt=0,
    )
    page_size: int = Field(
        default=100,
        alias="DEPOSIT_PAGE_SIZE",
        description="Transactions fetched per poll",
        ge=1,
        le=1000,
    )
    comment_pattern: str = Field(
        default=r"^(?:DEPOSIT:)?(?P<user_id>[A-Za-z0-9_\-]{1,64})$",
        alias="DEPOSIT_COMMENT_PATTERN",
        description="Regex with a user_id group matched against deposit comments",
    )

    @field_validator("comment_pattern")
    @classmethod
    def validate_comment_pattern(cls, v: str) -> str:
        try:
            compiled = re.compile(v)
        except re.error as e:
            raise ValueError(f"DEPOSIT_COMMENT_PATTERN is not a valid regex: {e}") from e
        if "user_id" not in compiled.groupindex:
            raise ValueError("DEPOSIT_COMMENT_PATTERN must define a named group 'user_id'")
        return v


class WithdrawalSettings(BaseSettings):
    """Batch withdrawal settings."""

    model_config = SettingsConfigDict(env_prefix="WITHDRAWAL_", extra="ignore")

    subwallet_id: int = Field(
        default=0x10AD,
        alias="WITHDRAWAL_SUBWALLET_ID",
        description="Subwallet id of the exchange hot wallet",
        ge=0,
        le=0xFFFFFFFF,
    )
    timeout_seconds: int = Field(
        default=3600,
        alias="WITHDRAWAL_TIMEOUT_SECONDS",
        description="Timeout window of the hot wallet",
        ge=1,
        le=MAX_TIMEOUT_SECONDS,
    )
    max_batch_size: int = Field(
        default=MAX_BATCH_SIZE,
        alias="WITHDRAWAL_MAX_BATCH_SIZE",
        description="Messages per batch",
        ge=1,
        le=MAX_BATCH_SIZE,
    )
    query_id_capacity: int = Field(
        default=MAX_QUERY_ID_COUNT,
        alias="WITHDRAWAL_QUERY_ID_CAPACITY",
        description="Query ids available per timeout window",
        ge=1,
        le=MAX_QUERY_ID_COUNT,
    )
    batch_interval_seconds: float = Field(
        default=15.0,
        alias="WITHDRAWAL_BATCH_INTERVAL_SECONDS",
        description="Delay between batch builds",
        gt=0,
    )
    lock_timeout_seconds: float = Field(
        default=60.0,
        alias="WITHDRAWAL_LOCK_TIMEOUT_SECONDS",
        description="Expiry of the Redis writer lock",
        gt=0,
    )


class Settings(BaseSettings):
    """Main application settings.

    Composes all configuration sections and provides
    application-level settings.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ton: TonSettings = Field(
        default_factory=lambda: TonSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    subwallet: SubwalletSettings = Field(
        default_factory=lambda: SubwalletSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    deposit: DepositSettings = Field(
        default_factory=lambda: DepositSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    withdrawal: WithdrawalSettings = Field(
        default_factory=lambda: WithdrawalSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    withdrawals_enabled: bool = Field(
        default=True,
        alias="WITHDRAWALS_ENABLED",
        description="Run the batch withdrawal loop",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "ton": {
                "api_url": self.ton.api_url,
                "api_key": "(set)" if self.ton.api_key else "(not set)",
                "wallet_address": self.ton.wallet_address,
                "testnet": str(self.ton.testnet),
            },
            "subwallet": {
                "base_id": str(self.subwallet.base_id),
                "timeout_seconds": str(self.subwallet.timeout_seconds),
            },
            "deposit": {
                "min_amount": str(self.deposit.min_amount),
                "min_confirmations": str(self.deposit.min_confirmations),
                "confirmation_mode": self.deposit.confirmation_mode,
            },
            "withdrawal": {
                "subwallet_id": str(self.withdrawal.subwallet_id),
                "timeout_seconds": str(self.withdrawal.timeout_seconds),
                "max_batch_size": str(self.withdrawal.max_batch_size),
            },
            "log_level": self.log_level,
            "withdrawals_enabled": str(self.withdrawals_enabled),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
