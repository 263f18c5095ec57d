"""XRPC client.

XrpcClient sends queries and procedures through a middleware chain ending in a fetch
handler. Authenticated clients end in an OAuthUserAgent; the unauthenticated client
ends in a SimpleFetchHandler pointed at the public AppView.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from aiohttp import ClientSession, hdrs

from net.gifdex.accounts.app.metrics import MetricsClient
from net.gifdex.accounts.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    FetchHandler,
    MetricsMiddleware,
    ProxyHeaderMiddleware,
    RequestMiddlewareBase,
    SimpleFetchHandler,
)
from net.gifdex.accounts.errors import XrpcError


@dataclass(frozen=True)
class ProxyTarget:
    """
    Destination service for proxied calls.

    Attributes:
        did: DID of the destination service
        service_id: Service entry fragment in the service's DID document, e.g. #gifdex_appview
    """

    did: str
    service_id: str

    def header_value(self) -> str:
        return f"{self.did}{self.service_id}"


def encode_params(params: Optional[Mapping[str, Any]]) -> str:
    """Encode XRPC query parameters. None values are skipped, booleans lowercased."""
    if not params:
        return ""
    pairs: List[tuple] = []
    for key, value in params.items():
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if isinstance(item, bool):
                item = "true" if item else "false"
            pairs.append((key, str(item)))
    return urlencode(pairs)


class XrpcClient:
    def __init__(
        self,
        handler: FetchHandler,
        proxy: Optional[ProxyTarget] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        middleware: List[RequestMiddlewareBase] = []
        if metrics_client is not None:
            middleware.append(MetricsMiddleware(metrics_client))
        if proxy is not None:
            middleware.append(ProxyHeaderMiddleware(proxy.header_value()))

        self.proxy = proxy
        self._chain = ChainMiddlewareClient(handler, middleware)

    @property
    def handler(self) -> FetchHandler:
        return self._chain.handler

    @staticmethod
    def _path(nsid: str, params: Optional[Mapping[str, Any]]) -> str:
        query = encode_params(params)
        if query:
            return f"/xrpc/{nsid}?{query}"
        return f"/xrpc/{nsid}"

    async def get(
        self, nsid: str, params: Optional[Mapping[str, Any]] = None
    ) -> ChainResponse:
        """Call an XRPC query."""
        return await self._chain.request(hdrs.METH_GET, self._path(nsid, params))

    async def post(
        self,
        nsid: str,
        input: Optional[Any] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> ChainResponse:
        """Call an XRPC procedure with an optional JSON body."""
        kwargs: Dict[str, Any] = {}
        if input is not None:
            kwargs["json"] = input
        return await self._chain.request(
            hdrs.METH_POST, self._path(nsid, params), **kwargs
        )


def ok(response: ChainResponse) -> Any:
    """Return the response body, raising XrpcError for non-2xx responses."""
    if response.ok:
        return response.body

    error = "Unknown"
    message = None
    if isinstance(response.body, dict):
        error = str(response.body.get("error", error))
        message = response.body.get("message")
    raise XrpcError(response.status, error, message)


def create_unauthenticated_client(
    session: ClientSession,
    service: str,
    metrics_client: Optional[MetricsClient] = None,
) -> XrpcClient:
    """Build the fallback client used when no identity is active."""
    return XrpcClient(SimpleFetchHandler(session, service), metrics_client=metrics_client)
