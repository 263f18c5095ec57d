"""Actor resolution: handle or DID to DID, handle and PDS.

ActorResolver is the identity resolver handed to the OAuth client. It is idempotent
and side-effect free.
"""

import logging
from typing import Literal

from aiohttp import ClientSession

from net.gifdex.accounts.errors import ResolutionFailed
from net.gifdex.accounts.model.identity import INVALID_HANDLE, ResolvedActor
from net.gifdex.accounts.resolve.did import (
    CompositeDidDocumentResolver,
    PlcDidDocumentResolver,
    WebDidDocumentResolver,
)
from net.gifdex.accounts.resolve.handle import (
    CompositeHandleResolver,
    DnsHandleResolver,
    DohJsonHandleResolver,
    HandleResolver,
    WellKnownHandleResolver,
)
from net.gifdex.accounts.resolve.syntax import is_did, is_handle, normalize_identifier

logger = logging.getLogger(__name__)


class ActorResolver:
    """
    Resolve an actor identifier to a ResolvedActor.

    Handles are resolved to a DID first. The DID document must declare a PDS, and
    when the input was a handle the document must claim that same handle.
    """

    def __init__(
        self,
        handle_resolver: CompositeHandleResolver,
        did_document_resolver: CompositeDidDocumentResolver,
    ) -> None:
        self.handle_resolver = handle_resolver
        self.did_document_resolver = did_document_resolver

    async def resolve(self, actor: str) -> ResolvedActor:
        """Resolve a handle or DID.

        Args:
            actor: Handle or DID, optionally prefixed with @

        Returns:
            ResolvedActor with the DID, verified handle and PDS endpoint

        Raises:
            ResolutionFailed: If the identifier is malformed or any step fails
        """
        actor = normalize_identifier(actor)

        requested_handle = None
        if is_did(actor):
            did = actor
        elif is_handle(actor):
            requested_handle = actor.lower()
            did = await self.handle_resolver.resolve(requested_handle)
        else:
            raise ResolutionFailed(actor, {"syntax": "not a handle or DID"})

        document = await self.did_document_resolver.resolve(did)

        pds = document.pds_endpoint()
        if pds is None:
            raise ResolutionFailed(actor, {"document": f"{did} declares no PDS"})

        handle = document.handle()
        if requested_handle is not None and handle != requested_handle:
            raise ResolutionFailed(
                actor,
                {"document": f"{did} does not claim handle {requested_handle}"},
            )

        return ResolvedActor(did=did, handle=handle or INVALID_HANDLE, pds=pds)


def create_actor_resolver(
    session: ClientSession,
    plc_hostname: str = "plc.directory",
    handle_dns_method: Literal["doh", "system"] = "doh",
    doh_url: str = "https://cloudflare-dns.com/dns-query",
    timeout: float | None = None,
) -> ActorResolver:
    """Build the resolver used for authorization.

    Handle resolution races a DNS method against the HTTPS well-known method.
    DID documents are resolved for did:plc and did:web.

    Args:
        session: HTTP client session shared by every HTTP-based method
        plc_hostname: PLC directory hostname for did:plc resolution
        handle_dns_method: "doh" for DNS-over-HTTPS JSON, "system" for aiodns
        doh_url: DNS-over-HTTPS JSON endpoint
        timeout: Per-method timeout in seconds, None for no limit

    Returns:
        Configured ActorResolver
    """
    dns: HandleResolver
    if handle_dns_method == "system":
        dns = DnsHandleResolver()
    else:
        dns = DohJsonHandleResolver(session, doh_url)

    return ActorResolver(
        handle_resolver=CompositeHandleResolver(
            {"dns": dns, "http": WellKnownHandleResolver(session)},
            timeout=timeout,
        ),
        did_document_resolver=CompositeDidDocumentResolver(
            {
                "plc": PlcDidDocumentResolver(session, plc_hostname),
                "web": WebDidDocumentResolver(session),
            },
            timeout=timeout,
        ),
    )
