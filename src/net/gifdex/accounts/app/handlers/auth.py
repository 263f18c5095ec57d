"""
Sign-in and Account Handlers

This module exposes the session registry's lifecycle operations over HTTP.

Sign-in flow:
1. POST /auth/login with an identifier (handle, DID or PDS URL) and optionally the
   location to return to, which must be on this application
2. The user is redirected to the authorization server
3. The authorization server redirects to GET /oauth/callback with state and code
   (or error)
4. The new identity becomes active and the user is redirected back

The handlers in this module provide the following endpoints:
- POST /auth/login - Initiate the OAuth flow
- GET /oauth/callback - Finalize the OAuth flow
- POST /auth/switch - Make another signed-in identity active
- POST /auth/signout - Sign out one identity (the active one by default)
- POST /auth/signout-all - Sign out every identity
"""

import logging

from aiohttp import web
import sentry_sdk

from net.gifdex.accounts.app.config import RegistryAppKey, SettingsAppKey
from net.gifdex.accounts.app.handlers.helpers import (
    json_error,
    local_location,
    registry_view,
    request_params,
)
from net.gifdex.accounts.errors import InvalidIdentifier, SignInFailed

logger = logging.getLogger(__name__)


async def handle_login(request: web.Request) -> web.StreamResponse:
    registry = request.app[RegistryAppKey]
    params = await request_params(request)

    identifier = params.get("identifier", "")
    location = local_location(
        request, params.get("location") or request.headers.get("Referer")
    )

    try:
        redirect = await registry.initiate_sign_in(identifier, location)
    except InvalidIdentifier as e:
        raise json_error(web.HTTPBadRequest, "InvalidIdentifier", str(e))
    except SignInFailed as e:
        sentry_sdk.capture_exception(e)
        raise json_error(web.HTTPBadRequest, "SignInFailed", str(e))

    raise web.HTTPFound(redirect.url)


async def handle_callback(request: web.Request) -> web.StreamResponse:
    registry = request.app[RegistryAppKey]
    settings = request.app[SettingsAppKey]

    result = await registry.finalize_callback(request.query_string)
    if not result.success:
        raise json_error(
            web.HTTPBadRequest,
            "CallbackFailed",
            "Failed to create session from callback URL",
        )

    raise web.HTTPSeeOther(result.redirect or settings.default_redirect)


async def handle_switch(request: web.Request) -> web.StreamResponse:
    registry = request.app[RegistryAppKey]
    params = await request_params(request)

    did = params.get("did", "")
    if not await registry.switch_user(did):
        raise json_error(web.HTTPNotFound, "UnknownIdentity", f"{did} is not signed in")

    return web.json_response(registry_view(registry))


async def handle_signout(request: web.Request) -> web.StreamResponse:
    registry = request.app[RegistryAppKey]
    params = await request_params(request)

    did = params.get("did") or registry.active_did
    if did is None:
        raise json_error(web.HTTPNotFound, "UnknownIdentity", "No active identity")

    if not await registry.sign_out(did):
        raise json_error(web.HTTPNotFound, "UnknownIdentity", f"{did} is not signed in")

    return web.json_response(registry_view(registry))


async def handle_signout_all(request: web.Request) -> web.StreamResponse:
    registry = request.app[RegistryAppKey]

    count = await registry.sign_out_all()

    view = registry_view(registry)
    view["signed_out"] = count
    return web.json_response(view)
