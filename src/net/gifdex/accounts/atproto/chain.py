from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from time import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Sequence,
)
import logging
from aiohttp import ClientResponse, ClientSession, hdrs

from net.gifdex.accounts.app.metrics import MetricsClient

logger = logging.getLogger(__name__)

ATPROTO_PROXY_HEADER = "atproto-proxy"


@dataclass
class ChainRequest:
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    kwargs: Dict[str, Any] = field(default_factory=dict)

    @property
    def nsid(self) -> Optional[str]:
        if not self.path.startswith("/xrpc/"):
            return None
        return self.path.removeprefix("/xrpc/").split("?", 1)[0]


@dataclass
class ChainResponse:
    status: int
    headers: Mapping[str, str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


FetchHandler = Callable[[ChainRequest], Awaitable[ChainResponse]]
"""Terminal request handler: an authenticated agent or a plain HTTP fetcher."""

NextChainCallbackType = FetchHandler


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResponse:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> ChainResponse:
            return await self.handle(next, request)

        return next_invoke


class ProxyHeaderMiddleware(RequestMiddlewareBase):
    """Attach the atproto-proxy header so the PDS forwards the call to a service."""

    def __init__(self, proxy_value: str) -> None:
        super().__init__()
        self._proxy_value = proxy_value

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResponse:
        request.headers[ATPROTO_PROXY_HEADER] = self._proxy_value
        return await next(request)


class MetricsMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResponse:
        nsid = request.nsid or "unknown"
        start_time = time()
        status = 0
        try:
            response = await next(request)
            status = response.status
            return response
        except Exception as e:
            self._metrics_client.increment(
                "accounts.xrpc.request.exception",
                1,
                tag_dict={"exception": type(e).__name__, "nsid": nsid},
            )
            raise e
        finally:
            self._metrics_client.timer(
                "accounts.xrpc.request.time",
                time() - start_time,
                tag_dict={"nsid": nsid},
            )
            self._metrics_client.increment(
                "accounts.xrpc.request.count",
                1,
                tag_dict={"nsid": nsid, "status": status},
            )


class SimpleFetchHandler:
    """Send requests to a fixed service with no credentials attached."""

    def __init__(self, session: ClientSession, service: str) -> None:
        self._session = session
        self.service = service.rstrip("/")

    async def __call__(self, request: ChainRequest) -> ChainResponse:
        logger.debug("Making request: %s %s%s", request.method, self.service, request.path)
        async with self._session.request(
            request.method,
            f"{self.service}{request.path}",
            headers=request.headers,
            **request.kwargs,
        ) as response:
            return await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareClient:
    def __init__(
        self,
        handler: FetchHandler,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
    ) -> None:
        self._handler = handler
        self._middleware = list(middleware or [])

        chain_callback: NextChainCallbackType = handler
        for mw in reversed(self._middleware):
            chain_callback = mw.handle_gen(chain_callback)
        self._chain_callback = chain_callback

    @property
    def handler(self) -> FetchHandler:
        return self._handler

    async def request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> ChainResponse:
        chain_request = ChainRequest(
            method=method,
            path=path,
            headers=dict(headers or {}),
            kwargs=kwargs,
        )
        return await self._chain_callback(chain_request)

    async def get(self, path: str, **kwargs: Any) -> ChainResponse:
        return await self.request(hdrs.METH_GET, path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> ChainResponse:
        return await self.request(hdrs.METH_POST, path, **kwargs)
