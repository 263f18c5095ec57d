"""
Configuration Module

Settings are loaded from the environment with pydantic-settings, with defaults
suitable for local development. Shared resources are exposed to handlers through
typed AppKeys.

Key configuration areas:
- OAuth client metadata, scope and the factory that builds the OAuth client
- The AppView the authenticated clients proxy to
- Identity resolution (PLC directory, DNS method, timeouts)
- Persistence backend for the session registry
- Monitoring (Sentry, Telegraf/StatsD)
"""

from typing import Any, Callable, Final, Literal, Optional
import logging

from aiohttp import ClientSession, web
from pydantic import AliasChoices, Field, ImportString, RedisDsn
from pydantic_settings import BaseSettings
from redis import asyncio as redis

from net.gifdex.accounts.app.metrics import MetricsClient
from net.gifdex.accounts.atproto.oauth import OAuthClient
from net.gifdex.accounts.auth.registry import SessionRegistry
from net.gifdex.accounts.resolve.actor import ActorResolver

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings.

    Environment variables map onto fields by name, with aliases where a shorter or
    shared name is conventional (PORT, REDIS_URL, TELEGRAF_HOST).
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and request tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    # OAuth client settings
    oauth_client_id: str = "http://localhost"
    """
    OAuth client_id, the URL of the client metadata document.
    Set with OAUTH_CLIENT_ID environment variable.
    """

    oauth_redirect_uri: str = "http://127.0.0.1:5100/oauth/callback"
    """
    Registered OAuth redirect URI, handled by GET /oauth/callback.
    Set with OAUTH_REDIRECT_URI environment variable.
    """

    oauth_scope: str = "atproto transition:generic"
    """Scope requested for every authorization."""

    oauth_storage_name: str = "gifdex-oauth"
    """
    Storage name handed to the OAuth client, also used as the Redis key namespace.
    Set with OAUTH_STORAGE_NAME environment variable.
    """

    oauth_client_factory: Optional[ImportString[Callable[..., Any]]] = None
    """
    Dotted path of a callable (settings, http_session) -> OAuthClient.
    Set with OAUTH_CLIENT_FACTORY, e.g. OAUTH_CLIENT_FACTORY=mypackage.oauth:create_client
    """

    # AppView settings
    appview_did: str = "did:web:api.gifdex.net"
    """
    DID of the AppView every authenticated call is proxied to.
    Set with APPVIEW_DID environment variable.
    """

    appview_url: str = "https://api.gifdex.net"
    """
    Public AppView URL used by the unauthenticated client.
    Set with APPVIEW_URL environment variable.
    """

    appview_service_id: str = "#gifdex_appview"
    """Service entry fragment in the AppView's DID document."""

    # Identity resolution
    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    handle_dns_method: Literal["doh", "system"] = "doh"
    """
    How _atproto TXT records are looked up: DNS-over-HTTPS JSON or the system resolver.
    Set with HANDLE_DNS_METHOD environment variable.
    """

    doh_url: str = "https://cloudflare-dns.com/dns-query"
    """DNS-over-HTTPS JSON endpoint."""

    resolution_timeout: Optional[float] = 10.0
    """Seconds allowed for each handle or DID document resolution method."""

    restore_timeout: Optional[float] = 15.0
    """Seconds allowed to restore one persisted session."""

    exchange_timeout: Optional[float] = 30.0
    """Seconds allowed to create an authorization URL or finalize a callback."""

    # Persistence
    storage_backend: Literal["memory", "redis"] = "memory"
    """
    Key/value engine for the persisted identity list.
    Set with STORAGE_BACKEND environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string, used when storage_backend is redis.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    redirect_ttl: int = 600
    """Seconds the pre-authorization location is kept."""

    default_redirect: str = "/"
    """Location the callback redirects to when none was saved."""

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: Literal["none", "telegraf"] = "none"
    """
    Metrics backend.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client, present when storage_backend is redis"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

OAuthClientAppKey: Final = web.AppKey("oauth_client", OAuthClient)
"""AppKey for the injected OAuth client"""

ActorResolverAppKey: Final = web.AppKey("actor_resolver", ActorResolver)
"""AppKey for the identity resolver"""

RegistryAppKey: Final = web.AppKey("session_registry", SessionRegistry)
"""AppKey for the session registry"""
