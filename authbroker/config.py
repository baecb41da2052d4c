"""
Configuration module for the authentication broker.

This module uses Pydantic Settings to load and validate environment variables
for secrets, cookie policy, session strategy, provider credentials, outbound
call timeouts and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .providers import Provider, github, google, oidc


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Secrets, session policy, provider credentials and security options for
    the broker are defined here. Everything in this class is turned into an
    immutable InternalOptions value by options.build_options() at startup.
    """

    # =========================================================================
    # Secrets
    # =========================================================================

    AUTH_SECRET: Optional[str] = Field(
        None,
        description="Comma-separated signing secrets, newest first (rotation keeps older ones verifiable)",
    )

    # =========================================================================
    # Deployment URL
    # =========================================================================

    AUTH_URL: str = Field(
        default="http://localhost:8080",
        description="Public origin of this service (e.g., https://app.example.com)",
    )

    AUTH_BASE_PATH: str = Field(
        default="/auth",
        description="Path prefix under which the auth actions are mounted",
    )

    # =========================================================================
    # Session Configuration
    # =========================================================================

    AUTH_SESSION_STRATEGY: Optional[str] = Field(
        None,
        description="'jwt' or 'database' (defaults to 'database' when an adapter is supplied)",
    )

    AUTH_SESSION_MAX_AGE: int = Field(
        default=30 * 24 * 60 * 60,
        description="Session lifetime in seconds",
        ge=60,
    )

    AUTH_SESSION_UPDATE_AGE: int = Field(
        default=24 * 60 * 60,
        description="How often (seconds) a database session expiry is extended; 0 extends on every request",
        ge=0,
    )

    # =========================================================================
    # Cookie / CSRF Policy
    # =========================================================================

    AUTH_USE_SECURE_COOKIES: Optional[bool] = Field(
        None,
        description="Force secure cookie prefixes on/off (defaults to AUTH_URL being https)",
    )

    AUTH_SKIP_CSRF_CHECK: bool = Field(
        default=False,
        description="Disable the CSRF check (only when the host enforces its own)",
    )

    # =========================================================================
    # Outbound Call Timeouts
    # =========================================================================

    AUTH_HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for provider token/userinfo/JWKS calls",
        gt=0,
    )

    AUTH_ADAPTER_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for storage adapter calls",
        gt=0,
    )

    # =========================================================================
    # Custom Pages
    # =========================================================================

    AUTH_PAGES_SIGNIN: Optional[str] = Field(None, description="Custom sign-in page path")
    AUTH_PAGES_SIGNOUT: Optional[str] = Field(None, description="Custom sign-out page path")
    AUTH_PAGES_ERROR: Optional[str] = Field(None, description="Custom error page path")
    AUTH_PAGES_NEW_USER: Optional[str] = Field(None, description="Page shown after first sign-in")

    # =========================================================================
    # Provider Credentials
    # =========================================================================

    AUTH_GITHUB_ID: Optional[str] = Field(None, description="GitHub OAuth app client id")
    AUTH_GITHUB_SECRET: Optional[str] = Field(None, description="GitHub OAuth app client secret")

    AUTH_GOOGLE_ID: Optional[str] = Field(None, description="Google OAuth client id")
    AUTH_GOOGLE_SECRET: Optional[str] = Field(None, description="Google OAuth client secret")

    AUTH_OIDC_ISSUER: Optional[str] = Field(None, description="Generic OIDC issuer URL")
    AUTH_OIDC_ID: Optional[str] = Field(None, description="Generic OIDC client id")
    AUTH_OIDC_SECRET: Optional[str] = Field(None, description="Generic OIDC client secret")
    AUTH_OIDC_NAME: str = Field(default="OpenID Connect", description="Display name for the generic OIDC provider")

    # =========================================================================
    # Server Configuration
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def secrets_list(self) -> List[str]:
        """
        Parse AUTH_SECRET into the ordered list of secrets.

        Returns:
            Secrets, newest first. Empty if AUTH_SECRET is not set.
        """
        if not self.AUTH_SECRET:
            return []
        return [s.strip() for s in self.AUTH_SECRET.split(",") if s.strip()]

    @property
    def allowed_origins_list(self) -> List[str]:
        if not self.ALLOWED_ORIGINS:
            return []
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("AUTH_SESSION_STRATEGY")
    @classmethod
    def validate_strategy(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in ("jwt", "database"):
            raise ValueError(f"AUTH_SESSION_STRATEGY must be 'jwt' or 'database', got: {v}")
        return v

    @field_validator("AUTH_URL")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"AUTH_URL must be an absolute http(s) URL, got: {v}")
        return v.rstrip("/")

    @field_validator("AUTH_BASE_PATH")
    @classmethod
    def validate_base_path(cls, v: str) -> str:
        if not v.startswith("/"):
            v = f"/{v}"
        return v.rstrip("/") or "/auth"

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If environment variables are invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def providers_from_settings(settings: Settings) -> List[Provider]:
    """Build the reference providers whose credentials are present in the environment."""
    providers = []
    if settings.AUTH_GITHUB_ID and settings.AUTH_GITHUB_SECRET:
        providers.append(github(settings.AUTH_GITHUB_ID, settings.AUTH_GITHUB_SECRET))
    if settings.AUTH_GOOGLE_ID and settings.AUTH_GOOGLE_SECRET:
        providers.append(google(settings.AUTH_GOOGLE_ID, settings.AUTH_GOOGLE_SECRET))
    if settings.AUTH_OIDC_ISSUER and settings.AUTH_OIDC_ID:
        providers.append(
            oidc(
                "oidc",
                settings.AUTH_OIDC_NAME,
                settings.AUTH_OIDC_ISSUER,
                settings.AUTH_OIDC_ID,
                settings.AUTH_OIDC_SECRET,
            )
        )
    return providers


def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    secrets = settings.secrets_list
    if not secrets:
        errors.append("AUTH_SECRET is not set")
    elif any(len(s) < 32 for s in secrets):
        warnings.append("AUTH_SECRET contains a secret shorter than 32 characters")

    if settings.AUTH_SKIP_CSRF_CHECK:
        warnings.append("AUTH_SKIP_CSRF_CHECK is enabled; CSRF protection is off")

    if settings.AUTH_URL.startswith("http://") and "localhost" not in settings.AUTH_URL:
        warnings.append("AUTH_URL is not https; cookies will not be marked secure")

    if not providers_from_settings(settings):
        warnings.append("No provider credentials found in the environment")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "session_strategy": settings.AUTH_SESSION_STRATEGY or "jwt",
        "session_max_age": settings.AUTH_SESSION_MAX_AGE,
    }
