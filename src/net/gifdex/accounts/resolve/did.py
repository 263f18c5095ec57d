"""DID document resolution.

Supports did:plc through a PLC directory and did:web through the host's well-known
did.json. CompositeDidDocumentResolver picks exactly one resolver by DID method tag.
"""

import asyncio
import logging
from typing import Dict, Mapping, Optional, Protocol
from urllib.parse import unquote

from aiohttp import ClientError, ClientSession
from pydantic import ValidationError
import sentry_sdk

from net.gifdex.accounts.errors import ResolutionError, ResolutionFailed
from net.gifdex.accounts.model.identity import DidDocument
from net.gifdex.accounts.resolve.handle import describe_failure
from net.gifdex.accounts.resolve.syntax import did_method

logger = logging.getLogger(__name__)


class DidDocumentResolver(Protocol):
    """A resolver for one DID method."""

    async def resolve(self, did: str) -> DidDocument: ...


async def fetch_did_document(session: ClientSession, url: str, did: str) -> DidDocument:
    """Fetch and validate a DID document.

    Args:
        session: HTTP client session
        url: Location of the DID document
        did: DID the document must describe

    Returns:
        The parsed DidDocument

    Raises:
        ResolutionError: On HTTP errors, malformed documents or an id mismatch
    """
    async with session.get(url) as resp:
        if resp.status == 404:
            raise ResolutionError(f"DID document not found at {url}")
        if resp.status != 200:
            raise ResolutionError(f"{url} returned HTTP {resp.status}")
        body = await resp.json(content_type=None)

    if body is None:
        raise ResolutionError(f"{url} returned an empty document")
    try:
        document = DidDocument.model_validate(body)
    except ValidationError as e:
        raise ResolutionError(f"malformed DID document for {did}") from e
    if document.id != did:
        raise ResolutionError(f"DID document id {document.id!r} does not match {did}")
    return document


class PlcDidDocumentResolver:
    """Resolve did:plc documents from a PLC directory."""

    def __init__(self, session: ClientSession, plc_hostname: str = "plc.directory") -> None:
        self._session = session
        self._plc_hostname = plc_hostname

    async def resolve(self, did: str) -> DidDocument:
        return await fetch_did_document(
            self._session, f"https://{self._plc_hostname}/{did}", did
        )


def did_web_url(did: str) -> str:
    """Build the did.json location for a did:web DID.

    did:web:example.com maps to https://example.com/.well-known/did.json and
    did:web:example.com:user:alice to https://example.com/user/alice/did.json.

    Raises:
        ResolutionError: If the DID carries no host
    """
    parts = did.removeprefix("did:web:").split(":")
    if len(parts) == 0 or parts[0] == "" or not did.startswith("did:web:"):
        raise ResolutionError(f"malformed did:web {did!r}")

    host = unquote(parts[0])
    path = [unquote(part) for part in parts[1:]]
    if len(path) == 0:
        path.append(".well-known")

    return "https://{inner}/did.json".format(inner="/".join([host, *path]))


class WebDidDocumentResolver:
    """Resolve did:web documents from the host's well-known location."""

    def __init__(self, session: ClientSession) -> None:
        self._session = session

    async def resolve(self, did: str) -> DidDocument:
        return await fetch_did_document(self._session, did_web_url(did), did)


class CompositeDidDocumentResolver:
    """
    Dispatch DID document resolution by DID method tag.

    Exactly one resolver runs per DID. Unsupported methods and resolver failures
    are reported as ResolutionFailed keyed by the method tag.
    """

    def __init__(
        self,
        methods: Mapping[str, DidDocumentResolver],
        timeout: Optional[float] = None,
    ) -> None:
        self._methods: Dict[str, DidDocumentResolver] = dict(methods)
        self._timeout = timeout

    @property
    def methods(self) -> Dict[str, DidDocumentResolver]:
        return dict(self._methods)

    async def resolve(self, did: str) -> DidDocument:
        method = did_method(did)
        if method is None:
            raise ResolutionFailed(did, {"syntax": "not a DID"})

        resolver = self._methods.get(method)
        if resolver is None:
            raise ResolutionFailed(did, {method: "unsupported DID method"})

        try:
            async with asyncio.timeout(self._timeout):
                return await resolver.resolve(did)
        except (ResolutionError, TimeoutError, ClientError) as e:
            raise ResolutionFailed(did, {method: describe_failure(e)}) from e
        except Exception as e:
            logger.exception("Unexpected error resolving %s", did)
            sentry_sdk.capture_exception(e)
            raise ResolutionFailed(did, {method: describe_failure(e)}) from e
