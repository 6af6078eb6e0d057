"""Configuration module for Family Hub.

Settings are discovered in the following order:

1. The file named by the ``FAMILY_HUB_CONFIG_PATH`` environment variable.
2. ``.fhub`` in the project root.
3. ``.env`` in the project root.
4. Environment variables only.

Secrets (MongoDB URL, Fernet key, provider API keys) are never hardcoded and
must be supplied via the environment or the config file. Validators enforce
this at startup.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
FHUB_FILENAME: str = ".fhub"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "FAMILY_HUB_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


def get_config_path() -> Optional[str]:
    """Determine the config file path to use.

    Returns:
        Optional[str]: Path to config file, or None to use environment variables only.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    fhub_path: Path = PROJECT_ROOT / FHUB_FILENAME
    if fhub_path.exists():
        return str(fhub_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    APP_NAME: str = "family-hub"
    ENV: str = "dev"

    # MongoDB configuration
    MONGODB_URL: str = ""  # Must be set in .fhub or environment
    MONGODB_DATABASE: str = "family_hub"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None
    MONGODB_CONNECTION_RETRIES: int = 3

    # Links embedded in invitation emails
    FRONTEND_URL: str = "http://localhost:3000"

    # Workflow limits
    INVITATION_EXPIRY_DAYS: int = 7
    TEEN_INVITATION_EXPIRY_MINUTES: int = 30
    TEEN_INVITATION_MAX_ATTEMPTS: int = 5
    MERGE_REQUEST_MESSAGE_MAX_LENGTH: int = 500

    # Email delivery (HTTP API provider; console fallback when unset)
    EMAIL_API_URL: Optional[str] = None
    EMAIL_API_KEY: Optional[SecretStr] = None
    EMAIL_SENDER: str = "Family Hub <no-reply@familyhub.local>"
    EMAIL_REQUEST_TIMEOUT: float = 15.0

    # SMS delivery (HTTP gateway provider; console fallback when unset)
    SMS_API_URL: Optional[str] = None
    SMS_API_KEY: Optional[SecretStr] = None
    SMS_SENDER: str = "FamilyHub"
    SMS_REQUEST_TIMEOUT: float = 15.0

    # Fernet encryption key (password vault secrets)
    FERNET_KEY: SecretStr = SecretStr("")  # Must be set in .fhub or environment

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = True
    LOG_DIR: str = "logs"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    @field_validator("FERNET_KEY", mode="before")
    @classmethod
    def no_hardcoded_secrets(cls, v, info):
        if not v or "change" in str(v).lower() or "0000" in str(v) or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .fhub and not hardcoded!")
        return v

    @field_validator("MONGODB_URL", mode="before")
    @classmethod
    def no_empty_urls(cls, v, info):
        if not v or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .fhub and not empty!")
        return v

    @field_validator(
        "INVITATION_EXPIRY_DAYS",
        "TEEN_INVITATION_EXPIRY_MINUTES",
        "TEEN_INVITATION_MAX_ATTEMPTS",
        "MERGE_REQUEST_MESSAGE_MAX_LENGTH",
        mode="before",
    )
    @classmethod
    def validate_positive_integers(cls, v, info):
        """Validate that workflow limits are positive."""
        value = int(v)
        if value <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return value

    @property
    def email_api_configured(self) -> bool:
        return bool(self.EMAIL_API_URL and self.EMAIL_API_KEY)

    @property
    def sms_api_configured(self) -> bool:
        return bool(self.SMS_API_URL and self.SMS_API_KEY)


# Global settings instance
settings: Settings = Settings()
