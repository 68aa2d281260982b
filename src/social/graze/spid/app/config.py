"""
Configuration Module for the SPiD client

Settings are loaded from environment variables (prefixed with ``SPID_``) with
defaults suitable for development, validated through Pydantic.

Key configuration areas include:
- Client identification (client id/secret, app URL scheme)
- Provider endpoints (server URL, API version, endpoint paths)
- Credential lifecycle (retry cap, proactive refresh, background refresh)
- Credential storage (backends, encryption key, redis connection)
- Monitoring (Sentry, StatsD)
"""

import base64
import logging
from pathlib import Path
from typing import Annotated, List, Literal, Optional
from urllib.parse import urlencode

from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

CALLBACK_LOGIN = "login"
CALLBACK_LOGOUT = "logout"
CALLBACK_FAILURE = "failure"
CALLBACK_KINDS = (CALLBACK_LOGIN, CALLBACK_LOGOUT, CALLBACK_FAILURE)

STORE_MEMORY = "memory"
STORE_FILE = "file"
STORE_REDIS = "redis"


class Settings(BaseSettings):
    """
    Settings for a SPiD client instance.

    Environment variables map to fields with the ``SPID_`` prefix, for example
    ``SPID_CLIENT_ID`` or ``SPID_SERVER_URL``.
    """

    model_config = SettingsConfigDict(env_prefix="spid_", extra="ignore")

    debug: bool = False
    """
    Enable debug logging of requests (secrets are masked).
    Set with SPID_DEBUG=true.
    """

    # Client identification
    client_id: str
    """Client id issued by SPiD (required). Set with SPID_CLIENT_ID."""

    client_secret: str = ""
    """Client secret issued by SPiD. Set with SPID_CLIENT_SECRET."""

    server_client_id: Optional[str] = None
    """
    Client id of the backend that one-time codes are generated for.
    Defaults to client_id. Set with SPID_SERVER_CLIENT_ID.
    """

    app_url_scheme: str = "spid-client"
    """
    URL scheme the provider redirects back to, e.g. ``myapp`` for
    ``myapp://spid/login``. Set with SPID_APP_URL_SCHEME.
    """

    redirect_host: str = "spid"
    """
    Host part of the redirect URI. Use ``localhost:<port>`` together with
    app_url_scheme=http for the loopback listener. Set with SPID_REDIRECT_HOST.
    """

    # Provider endpoints
    server_url: str = "https://identity-pre.schibsted.com"
    """Base URL of the SPiD server. Set with SPID_SERVER_URL."""

    api_version: str = "2"
    """API version used for /api/{version}/ calls. Set with SPID_API_VERSION."""

    authorization_path: str = "/auth/login"
    signup_path: str = "/auth/signup"
    lost_password_path: str = "/auth/forgotpassword"
    token_path: str = "/oauth/token"
    logout_path: str = "/logout"

    scope: Optional[str] = None
    """Optional scope requested during authorization. Set with SPID_SCOPE."""

    http_timeout: float = 60.0
    """Total timeout in seconds for a single HTTP exchange."""

    # Credential lifecycle
    max_retries: int = 2
    """
    Maximum number of times a single API request is resent after a credential
    refresh (the original attempt is not counted).
    Set with SPID_MAX_RETRIES.
    """

    proactive_refresh: bool = True
    """
    Refresh before sending when the credential is known to be expired or
    about to expire. Set with SPID_PROACTIVE_REFRESH.
    """

    refresh_leeway_seconds: int = 30
    """Seconds before expires_at at which the proactive check triggers."""

    token_refresh_before_expiry_ratio: float = 0.8
    """
    Ratio of token lifetime after which the background task refreshes.
    Set with SPID_TOKEN_REFRESH_BEFORE_EXPIRY_RATIO.
    """

    refresh_max_retries: int = 3
    """Maximum retry attempts of the background refresh task."""

    refresh_retry_base_delay: int = 30
    """
    Base delay in seconds for background refresh retries.
    Actual delay = base_delay * (2 ^ retry_attempt)
    """

    # Credential storage
    save_credential: bool = True
    """Persist credentials in the configured stores. Set with SPID_SAVE_CREDENTIAL."""

    credential_stores: Annotated[List[str], NoDecode] = [STORE_MEMORY]
    """
    Ordered list of store backends (memory, file, redis). The first backend
    holding a credential wins on load; every backend is written on save.
    Set with SPID_CREDENTIAL_STORES as comma-separated values.
    """

    storage_key: str = "AccessToken"
    """Key under which the single credential record is stored."""

    credential_file: Path = Path("~/.config/spid/credential.enc")
    """Location of the encrypted credential file."""

    encryption_key: Optional[Fernet] = None
    """
    Fernet key for the file store, as a base64-encoded key string.
    Set with SPID_ENCRYPTION_KEY.
    """

    redis_dsn: RedisDsn = Field(
        "redis://localhost:6379/0",
        validation_alias=AliasChoices("spid_redis_dsn", "spid_redis_url"),
    )  # type: ignore
    """
    Redis connection string for the redis store.
    Set with SPID_REDIS_DSN or SPID_REDIS_URL.
    """

    # Monitoring
    sentry_dsn: Optional[str] = None
    """Sentry DSN for error reporting. Set with SPID_SENTRY_DSN."""

    metrics_backend: Literal["telegraf", "none"] = "none"
    statsd_host: str = "localhost"
    statsd_port: int = 8125

    @field_validator("credential_stores", mode="before")
    @classmethod
    def split_credential_stores(cls, v) -> List[str]:
        if isinstance(v, str):
            v = [item.strip() for item in v.split(",") if item.strip()]
        stores = [str(item).lower() for item in v]
        unknown = set(stores) - {STORE_MEMORY, STORE_FILE, STORE_REDIS}
        if unknown:
            raise ValueError(f"unknown credential stores: {sorted(unknown)}")
        return stores

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Optional[Fernet]:
        """
        Accept either a Fernet object or a base64-encoded key string.

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if v is None or isinstance(v, Fernet):
            return v
        elif isinstance(v, str):  # Decode from a base64-encoded string
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )

    @field_validator("server_url")
    @classmethod
    def strip_server_url(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def effective_server_client_id(self) -> str:
        return self.server_client_id or self.client_id

    def redirect_uri(self, kind: str) -> str:
        """Redirect URI for one of the login, logout or failure callbacks."""
        if kind not in CALLBACK_KINDS:
            raise ValueError(f"unknown callback kind: {kind}")
        return f"{self.app_url_scheme}://{self.redirect_host}/{kind}"

    def authorization_url(self, path: Optional[str] = None) -> str:
        """Login page URL, or the same query on another page such as signup."""
        path = path or self.authorization_path
        query = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri(CALLBACK_LOGIN),
        }
        if self.scope:
            query["scope"] = self.scope
        return f"{self.server_url}{path}?{urlencode(query)}"

    def logout_url(self, access_token: Optional[str]) -> str:
        query = {"redirect_uri": self.redirect_uri(CALLBACK_LOGOUT)}
        if access_token:
            query["oauth_token"] = access_token
        return f"{self.server_url}{self.logout_path}?{urlencode(query)}"

    @property
    def token_url(self) -> str:
        return f"{self.server_url}{self.token_path}"

    def api_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.server_url}/api/{self.api_version}{path}"
