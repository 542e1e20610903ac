import logging
import os
import sys
from enum import Enum
from typing import Annotated, Optional
from urllib.parse import urlparse

from pydantic import computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class IdentityStrategy(str, Enum):
    ID_TOKEN = "id_token"
    USERINFO = "userinfo"
    FEDERATED = "federated"


def validate_endpoint_url(
    url: str | None, *, field_name: str, strip_trailing_slash: bool = True
) -> str | None:
    """
    Validate and normalize an issuer or redirect URL.

    Rules:
    - Must be HTTPS (http is only accepted for localhost)
    - Must have hostname
    - No fragment allowed (OAuth forbids fragments in redirect URIs)
    - Normalize: lowercase hostname, strip trailing slash (issuers only; redirect
      URIs are compared byte-for-byte by providers)

    Examples:
        >>> validate_endpoint_url("https://Login.Example.com/tenant/v2.0/", field_name="issuer")
        "https://login.example.com/tenant/v2.0"

        >>> validate_endpoint_url("http://insecure.com", field_name="issuer")
        ValueError: issuer must use https://
    """
    if url is None:
        return None

    url = url.strip()
    if not url:
        raise ValueError(f"{field_name} cannot be an empty string")
    parsed = urlparse(url)

    is_localhost = parsed.hostname in ("localhost", "127.0.0.1")
    if parsed.scheme != "https" and not (parsed.scheme == "http" and is_localhost):
        raise ValueError(
            f"{field_name} must use https:// (or http://localhost for development), got: {url}"
        )

    if not parsed.hostname:
        raise ValueError(f"{field_name} missing hostname: {url}")

    if parsed.fragment:
        raise ValueError(f"{field_name} must not include a fragment: {url}")

    host = parsed.hostname.lower()
    default_port = 443 if parsed.scheme == "https" else 80
    port = f":{parsed.port}" if parsed.port and parsed.port != default_port else ""
    path = parsed.path.rstrip("/") if strip_trailing_slash else parsed.path
    query = f"?{parsed.query}" if parsed.query else ""

    return f"{parsed.scheme}://{host}{port}{path}{query}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # Identity provider
    oidc_client_id: Optional[str] = None
    oidc_client_secret: Optional[str] = None  # Only for confidential clients
    oidc_issuer_url: Optional[str] = None
    oidc_redirect_uri: Optional[str] = None
    oidc_scopes: Annotated[list[str], NoDecode] = ["openid", "email", "profile"]
    oidc_prompt: Optional[str] = "select_account"

    # Tenant restriction policy
    oidc_tenant_id: Optional[str] = None
    allowed_domains: Annotated[list[str], NoDecode] = []

    # Flow safety controls
    oidc_state_ttl_seconds: int = 600
    oidc_clock_leeway_seconds: int = 120
    discovery_cache_ttl_seconds: int = 3600
    http_timeout_seconds: float = 10.0

    # Identity resolution
    identity_strategy: IdentityStrategy = IdentityStrategy.ID_TOKEN
    userinfo_url: Optional[str] = None  # e.g. https://graph.microsoft.com/v1.0/me
    identity_backend_url: Optional[str] = None
    identity_backend_api_key: Optional[str] = None

    # Flow variants
    roster_gate_enabled: bool = True
    redirect_proxy_uri: Optional[str] = None
    default_role: str = "student"

    # Sessions
    session_secret: str = "change-me"
    session_algorithm: str = "HS256"
    session_audience: str = "rosterauth"
    session_expiry_minutes: int = 60 * 12

    # Redis (optional; in-memory stores are used without it)
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_db: Optional[int] = None
    redis_conn_timeout: float = 5.0
    redis_retry_on_timeout: bool = True
    redis_socket_keepalive: bool = True
    redis_health_check_interval: int = 30
    redis_max_connections: Optional[int] = None

    # Dev
    testing: bool = False
    dev: bool = False

    @field_validator("oidc_scopes", "allowed_domains", mode="before")
    @classmethod
    def split_space_or_comma_list(cls, value):
        if isinstance(value, str):
            return [part for part in value.replace(",", " ").split() if part]
        return value

    @model_validator(mode="before")
    @classmethod
    def migrate_legacy_vars(cls, values):
        """Auto-migrate MICROSOFT_* to OIDC_* with deprecation warnings."""
        migrations = [
            ("oidc_client_id", "microsoft_client_id"),
            ("oidc_tenant_id", "microsoft_tenant_id"),
        ]

        for new_name, old_name in migrations:
            if not values.get(new_name) and values.get(old_name):
                values[new_name] = values[old_name]
                logging.warning(
                    f"DEPRECATION: Using {old_name.upper()}. "
                    f"Please update to {new_name.upper()} in your .env file."
                )

        # Microsoft tenants publish discovery under their v2.0 authority
        if not values.get("oidc_issuer_url") and values.get("oidc_tenant_id"):
            values["oidc_issuer_url"] = (
                f"https://login.microsoftonline.com/{values['oidc_tenant_id']}/v2.0"
            )

        return values

    @model_validator(mode="after")
    def validate_flow_settings(self):
        """Ensure TTLs and timeouts are sane."""
        if self.oidc_state_ttl_seconds <= 0:
            logging.error(
                "OIDC_STATE_TTL_SECONDS must be greater than zero. Current value: %s",
                self.oidc_state_ttl_seconds,
            )
            sys.exit(1)

        if self.oidc_clock_leeway_seconds < 0:
            logging.error(
                "OIDC_CLOCK_LEEWAY_SECONDS cannot be negative. Current value: %s",
                self.oidc_clock_leeway_seconds,
            )
            sys.exit(1)

        if self.discovery_cache_ttl_seconds <= 0:
            logging.error(
                "DISCOVERY_CACHE_TTL_SECONDS must be greater than zero. Current value: %s",
                self.discovery_cache_ttl_seconds,
            )
            sys.exit(1)

        if self.http_timeout_seconds <= 0:
            logging.error(
                "HTTP_TIMEOUT_SECONDS must be greater than zero. Current value: %s",
                self.http_timeout_seconds,
            )
            sys.exit(1)

        if not self.roster_gate_enabled:
            logging.warning(
                "⚠️  ROSTER_GATE_ENABLED=false. Every authenticated identity will be "
                "granted access. Only disable the roster for local development."
            )

        if (
            self.identity_strategy == IdentityStrategy.FEDERATED
            and not self.identity_backend_url
        ):
            logging.error(
                "IDENTITY_BACKEND_URL is required when IDENTITY_STRATEGY=federated"
            )
            sys.exit(1)

        return self

    @model_validator(mode="after")
    def validate_url_formats(self):
        """Validate and normalize issuer and redirect URLs."""
        for field_name in ("oidc_issuer_url", "oidc_redirect_uri", "redirect_proxy_uri"):
            value = getattr(self, field_name)
            if not value:
                continue
            try:
                setattr(
                    self,
                    field_name,
                    validate_endpoint_url(
                        value,
                        field_name=field_name,
                        strip_trailing_slash=field_name == "oidc_issuer_url",
                    ),
                )
            except ValueError as e:
                logging.error(
                    f"Invalid {field_name.upper()} configuration: {e}\n"
                    f"Example: OIDC_REDIRECT_URI=https://app.example.com/auth/callback"
                )
                sys.exit(1)
        return self

    @computed_field
    @property
    def effective_redirect_uri(self) -> Optional[str]:
        """Redirect URI sent to the provider, honouring an auth proxy if configured."""
        return self.redirect_proxy_uri or self.oidc_redirect_uri

    @computed_field
    @property
    def redis_url(self) -> Optional[str]:
        if not self.redis_host:
            return None
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db or 0}"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton, creating it if needed.

    Returns:
        Settings: The application settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override settings (primarily for testing).

    Args:
        settings: The Settings instance to use.
    """
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


def get_loglevel():
    loglevel = os.getenv("LOGLEVEL", "INFO")

    match loglevel:
        case "INFO":
            return logging.INFO
        case "WARNING":
            return logging.WARNING
        case "ERROR":
            return logging.ERROR
        case "CRITICAL":
            return logging.CRITICAL
        case "DEBUG":
            return logging.DEBUG
        case _:
            return logging.INFO
