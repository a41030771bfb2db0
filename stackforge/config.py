"""
Stackforge - Settings

Runtime configuration read from the environment (prefix STACKFORGE_) or a
local .env file.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

env_prefix = "STACKFORGE_"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", env_prefix=env_prefix
    )

    state_path: str = "./state"
    provider: str = "fake"  # "fake" or "aws"
    region: str = "us-east-1"
    account_id: Optional[str] = None

    max_workers: int = 4
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    log_level: str = "INFO"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings instance, loading it on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
