import logging
from time import time
from typing import Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from net.gifdex.accounts.app.config import (
    ActorResolverAppKey,
    MetricsClientAppKey,
    OAuthClientAppKey,
    RedisClientAppKey,
    RegistryAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
)
from net.gifdex.accounts.app.handlers.auth import (
    handle_callback,
    handle_login,
    handle_signout,
    handle_signout_all,
    handle_switch,
)
from net.gifdex.accounts.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_me,
    handle_internal_ready,
    handle_internal_resolve,
)
from net.gifdex.accounts.app.metrics import create_metrics_client
from net.gifdex.accounts.atproto.oauth import OAuthClient
from net.gifdex.accounts.auth.registry import create_registry
from net.gifdex.accounts.resolve.actor import create_actor_resolver
from net.gifdex.accounts.store.storage import (
    KeyValueStorage,
    MemoryStorage,
    RedisStorage,
)

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s", params)

        async def on_request_end(session, trace_config_ctx, params):
            logging.info("Ending request: %s", params)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    http_session = aiohttp.ClientSession(trace_configs=[trace_config])
    app[SessionAppKey] = http_session

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    storage: KeyValueStorage
    if settings.storage_backend == "redis":
        redis_client = redis.Redis.from_url(str(settings.redis_dsn))
        app[RedisClientAppKey] = redis_client
        storage = RedisStorage(redis_client, settings.oauth_storage_name)
    else:
        storage = MemoryStorage()

    actor_resolver = create_actor_resolver(
        http_session,
        plc_hostname=settings.plc_hostname,
        handle_dns_method=settings.handle_dns_method,
        doh_url=settings.doh_url,
        timeout=settings.resolution_timeout,
    )
    app[ActorResolverAppKey] = actor_resolver

    oauth_client = app.get(OAuthClientAppKey)
    if oauth_client is None:
        if settings.oauth_client_factory is None:
            raise ValueError("OAUTH_CLIENT_FACTORY is not configured")
        oauth_client = settings.oauth_client_factory(settings, http_session)
        app[OAuthClientAppKey] = oauth_client

    registry = create_registry(
        oauth_client,
        storage,
        actor_resolver,
        http_session,
        client_id=settings.oauth_client_id,
        redirect_uri=settings.oauth_redirect_uri,
        appview_did=settings.appview_did,
        appview_url=settings.appview_url,
        appview_service_id=settings.appview_service_id,
        scope=settings.oauth_scope,
        storage_name=settings.oauth_storage_name,
        redirect_ttl=settings.redirect_ttl,
        restore_timeout=settings.restore_timeout,
        exchange_timeout=settings.exchange_timeout,
        metrics_client=metrics_client,
    )
    app[RegistryAppKey] = registry
    await registry.initialize()

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    await registry.dispose()
    await http_session.close()
    if RedisClientAppKey in app:
        await app[RedisClientAppKey].aclose()
    await metrics_client.close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "accounts.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "accounts.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "accounts.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(
    settings: Optional[Settings] = None,
    oauth_client: Optional[OAuthClient] = None,
):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=True,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    if oauth_client is not None:
        app[OAuthClientAppKey] = oauth_client

    app.add_routes(
        [
            web.post("/auth/login", handle_login),
            web.get("/oauth/callback", handle_callback),
            web.post("/auth/switch", handle_switch),
            web.post("/auth/signout", handle_signout),
            web.post("/auth/signout-all", handle_signout_all),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/me", handle_internal_me),
            web.get("/internal/api/resolve", handle_internal_resolve),
        ]
    )

    app.cleanup_ctx.append(background_tasks)

    return app
