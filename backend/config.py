"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_manager import CREDENTIAL_KEYS, get_credential


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load credential fields from the OS keychain via ``keyring``.

    Only fields whose uppercase name appears in
    :data:`~services.credential_manager.CREDENTIAL_KEYS` are looked up.
    All other fields return ``None`` so the next source in the chain
    handles them.
    """

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        env_name = field_name.upper()
        if env_name not in CREDENTIAL_KEYS:
            return None, field_name, False
        value = get_credential(env_name)
        return value, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, is_complex = self.get_field_value(field_info, field_name)
            if value is not None:
                d[key] = value
        return d


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            KeychainSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # Database
    DATABASE_URL: str = "sqlite:///./holdings.db"

    # Zerodha Kite Connect credentials (optional - for live broker sync)
    KITE_API_KEY: str = ""
    KITE_API_SECRET: str = ""
    KITE_API_BASE_URL: str = "https://api.kite.trade"
    KITE_LOGIN_URL: str = "https://kite.zerodha.com/connect/login"
    # Kite tokens die around 6 AM IST the next day; the exact cutoff is not
    # exposed, so sessions are treated as expired after a fixed window.
    KITE_SESSION_TTL_HOURS: int = 8
    ORPHAN_SESSION_MAX_AGE_MINUTES: int = 60

    # Identity provider (end-user bearer tokens)
    AUTH_URL: str = ""
    AUTH_API_KEY: str = ""
    # Master credential for internal service-to-service calls
    SERVICE_ROLE_KEY: str = ""
    # Shared secret for scheduled jobs, sent in the X-Cron-Secret header
    CRON_SECRET: str = ""

    # OAuth state signing
    OAUTH_STATE_SECRET: str = ""
    OAUTH_STATE_MAX_AGE_MINUTES: int = 10

    # Front end
    APP_URL: str = "http://localhost:8080"
    CORS_ORIGINS: list[str] = ["http://localhost:8080"]

    # Holdings file uploads
    UPLOAD_MAX_BYTES: int = 10 * 1024 * 1024
    PARSE_MAX_ROWS: int = 10_000
    PARSE_TIMEOUT_SECONDS: float = 30.0
    RECONCILE_CHUNK_SIZE: int = 100
    STATEMENT_SOURCE_NAME: str = "INDMoney"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    @field_validator("APP_URL", "KITE_API_BASE_URL", "AUTH_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Drop a trailing ``/`` so paths can be appended with f-strings."""
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @property
    def state_signing_key(self) -> str:
        """Key used to sign OAuth state tokens.

        Falls back to the Kite API secret so a single configured secret is
        enough for development setups.
        """
        return self.OAUTH_STATE_SECRET or self.KITE_API_SECRET

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
