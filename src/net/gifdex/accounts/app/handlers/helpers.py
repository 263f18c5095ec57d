import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from aiohttp import web

from net.gifdex.accounts.auth.registry import SessionRegistry
from net.gifdex.accounts.auth.user import UserSession

logger = logging.getLogger(__name__)


def json_error(
    exc_class: type[web.HTTPException], error: str, message: Optional[str] = None
) -> web.HTTPException:
    """Build an HTTP exception with a JSON error body."""
    body: Dict[str, Any] = {"error": error}
    if message is not None:
        body["message"] = message
    return exc_class(body=json.dumps(body), content_type="application/json")


async def request_params(request: web.Request) -> Dict[str, str]:
    """Read a form or JSON object body as string parameters."""
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except ValueError:
            raise json_error(web.HTTPBadRequest, "InvalidRequest", "Malformed JSON body")
        if not isinstance(body, dict):
            raise json_error(web.HTTPBadRequest, "InvalidRequest", "Expected a JSON object")
        return {str(key): str(value) for key, value in body.items() if value is not None}

    data = await request.post()
    return {key: str(value) for key, value in data.items()}


def user_view(user: UserSession, active_did: Optional[str]) -> Dict[str, Any]:
    profile = user.profile
    return {
        "did": user.did,
        "active": user.did == active_did,
        "pds": user.session.info.aud,
        "profile": (
            profile.model_dump(by_alias=True, exclude_none=True)
            if profile is not None
            else None
        ),
        "is_loading_profile": user.is_loading_profile,
        "profile_error": user.profile_error,
    }


def registry_view(registry: SessionRegistry) -> Dict[str, Any]:
    """Render the registry's accounts and active identity for JSON responses."""
    active_did = registry.active_did
    return {
        "state": registry.state.value,
        "version": registry.version,
        "active": active_did,
        "accounts": [
            user_view(user, active_did) for user in registry.sessions.values()
        ],
    }


def local_location(request: web.Request, location: Optional[str]) -> Optional[str]:
    """
    Reduce a return location to a path on this application.

    Relative paths are kept. Absolute URLs are kept only when they share the request's
    origin, and are returned without it. Anything else, including scheme-relative
    //host paths, is discarded.
    """
    if not location or "\\" in location:
        return None
    try:
        url = urlsplit(location)
    except ValueError:
        return None

    if url.scheme or url.netloc:
        origin = request.url.origin()
        if url.scheme != origin.scheme or url.netloc != origin.raw_authority:
            logger.warning("Discarding off-site return location %s", location)
            return None
    elif not url.path.startswith("/"):
        return None

    path = url.path or "/"
    if path.startswith("//"):
        return None
    if url.query:
        path = f"{path}?{url.query}"
    if url.fragment:
        path = f"{path}#{url.fragment}"
    return path
