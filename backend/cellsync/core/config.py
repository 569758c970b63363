"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Composio connection broker
    COMPOSIO_API_KEY: SecretStr | None = None
    COMPOSIO_BASE_URL: str | None = None

    # Per-provider auth config overrides. When unset the auth config is
    # looked up at Composio by toolkit slug.
    COMPOSIO_SALESFORCE_AUTH_CONFIG_ID: str = ""
    COMPOSIO_HUBSPOT_AUTH_CONFIG_ID: str = ""
    COMPOSIO_DYNAMICS365_AUTH_CONFIG_ID: str = ""
    COMPOSIO_ZOHO_AUTH_CONFIG_ID: str = ""
    COMPOSIO_ZOHO_BIGIN_AUTH_CONFIG_ID: str = ""
    COMPOSIO_AGENCYZOOM_AUTH_CONFIG_ID: str = ""
    COMPOSIO_ATTIO_AUTH_CONFIG_ID: str = ""
    COMPOSIO_ZENDESK_AUTH_CONFIG_ID: str = ""

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"
    APP_URL: str = "http://localhost:3000"  # UI base URL for callback redirects
    INTEGRATIONS_REDIRECT_PATH: str = "/integrations"
    OAUTH_CALLBACK_BASE_URL: str = "http://localhost:8000/api/v1/integrations"

    # Contact sync
    DEFAULT_COUNTRY: str = "US"
    ZENDESK_MAX_PAGES: int = 100

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # CORS Configuration
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("DEFAULT_COUNTRY")
    @classmethod
    def validate_default_country(cls, v: str) -> str:
        """Region codes are two-letter ISO 3166 codes."""
        v = v.strip().upper()
        if len(v) != 2 or not v.isalpha():
            raise ValueError("DEFAULT_COUNTRY must be a two-letter region code")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def composio_configured(self) -> bool:
        """Check if the Composio API key is present."""
        return bool(
            self.COMPOSIO_API_KEY is not None and self.COMPOSIO_API_KEY.get_secret_value()
        )

    def auth_config_override(self, provider: str) -> str:
        """Return the configured auth config ID for a provider, or "".

        Args:
            provider: Provider key, e.g. "zoho_bigin".
        """
        return str(getattr(self, f"COMPOSIO_{provider.upper()}_AUTH_CONFIG_ID", "") or "")

    def validate_startup(self) -> None:
        """Validate that all required secrets are configured.

        Missing secrets are fatal in production and a warning elsewhere.

        Raises:
            ValueError: If any required secret is missing in production.
        """
        required_secrets = {
            "SUPABASE_URL": self.SUPABASE_URL,
            "SUPABASE_SERVICE_ROLE_KEY": self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
            "COMPOSIO_API_KEY": (
                self.COMPOSIO_API_KEY.get_secret_value() if self.COMPOSIO_API_KEY else ""
            ),
        }
        missing = [name for name, value in required_secrets.items() if not value]
        if not missing:
            return
        if self.is_production:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")
        logger.warning("Settings missing (non-production): %s", ", ".join(missing))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance with validated configuration.

    Raises:
        ValueError: If required secrets are missing in production.
    """
    settings = Settings()
    settings.validate_startup()
    return settings


# Global settings instance - import this for easy access
settings = get_settings()
