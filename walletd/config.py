"""Configuration architecture using pydantic-settings for typed environment loading."""

from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class WalletConfig(BaseSettings):
    """Wallet storage and locking configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    dir: Path = Path(".")
    # Seconds of inactivity before every wallet locks; unset means never
    timeout: float | None = Field(default=None, gt=0)
    kdf_iterations: int = Field(default=100_000, ge=1, le=10_000_000)


class ChainConfig(BaseSettings):
    """Chain-level signing configuration.

    The chain signing key is a node credential, not user key material. It is
    used only when a transaction explicitly requires its public key.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    signing_key: SecretStr | None = None
    public_key_prefix: str = "BTHB"


class LogConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: str = "INFO"
    file: Path | None = None


class Settings:
    """Root settings aggregating all configuration sections."""

    def __init__(self) -> None:
        self.wallet = WalletConfig()
        self.chain = ChainConfig()
        self.log = LogConfig()


# Global settings instance - lazily loaded
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
