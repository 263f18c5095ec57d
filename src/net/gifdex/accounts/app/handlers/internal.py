import logging

from aiohttp import web

from net.gifdex.accounts.app.config import ActorResolverAppKey, RegistryAppKey
from net.gifdex.accounts.app.handlers.helpers import registry_view
from net.gifdex.accounts.auth.registry import RegistryState
from net.gifdex.accounts.errors import ResolutionFailed

logger = logging.getLogger(__name__)


async def handle_internal_me(request: web.Request):
    registry = request.app[RegistryAppKey]
    return web.json_response(registry_view(registry))


async def handle_internal_ready(request: web.Request):
    registry = request.app[RegistryAppKey]
    if registry.state is RegistryState.READY:
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


async def handle_internal_resolve(request: web.Request):
    subjects = request.query.getall("subject", [])
    if len(subjects) == 0:
        return web.json_response([])

    actor_resolver = request.app[ActorResolverAppKey]

    results = []
    for subject in subjects:
        try:
            resolved = await actor_resolver.resolve(subject)
        except ResolutionFailed as e:
            logger.info("Unable to resolve %s: %s", subject, e.reasons)
            continue
        results.append(resolved.model_dump())
    return web.json_response(results)
