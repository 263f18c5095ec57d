"""
Shared test configuration and fixtures for the account manager tests.

Provides an in-memory OAuth client double, storage fixtures (in-memory and
fakeredis), a recording metrics client and a ready-to-use SessionRegistry.
"""

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union
from unittest.mock import AsyncMock, Mock

import fakeredis.aioredis
import pytest
import pytest_asyncio

from net.gifdex.accounts.app.metrics import MetricsClient
from net.gifdex.accounts.atproto.chain import ChainRequest, ChainResponse
from net.gifdex.accounts.atproto.oauth import (
    AuthorizationResult,
    AuthorizationTarget,
    ClientMetadata,
    OAuthSession,
    SessionInfo,
)
from net.gifdex.accounts.atproto.xrpc import ProxyTarget, XrpcClient
from net.gifdex.accounts.auth.registry import SessionRegistry
from net.gifdex.accounts.resolve.actor import ActorResolver
from net.gifdex.accounts.store.session import RedirectStore, SessionStore
from net.gifdex.accounts.store.storage import MemoryStorage, RedisStorage

APPVIEW_DID = "did:web:api.gifdex.test"
APPVIEW_SERVICE_ID = "#gifdex_appview"

ALICE = "did:plc:alice111"
BOB = "did:plc:bob222"
CAROL = "did:plc:carol333"

ResponseFactory = Callable[[str, ChainRequest], Union[ChainResponse, Exception]]


def make_session(did: str, pds: str = "https://pds.example.com") -> OAuthSession:
    """Create an OAuthSession for a DID."""
    return OAuthSession(
        info=SessionInfo(sub=did, aud=pds, scope="atproto transition:generic")
    )


def profile_response(did: str, display_name: str = "Test User") -> ChainResponse:
    return ChainResponse(
        status=200,
        headers={"Content-Type": "application/json"},
        body={"did": did, "handle": "user.example.com", "displayName": display_name},
    )


class FakeOAuthClient:
    """
    In-memory OAuthClient.

    `stored` holds the sessions get_session can restore. `responses` maps an NSID to
    a factory producing the response (or exception) for fetch calls made with it.
    """

    def __init__(self) -> None:
        self.stored: Dict[str, OAuthSession] = {}
        self.configured: Optional[Tuple[ClientMetadata, str, Any]] = None
        self.authorization_calls: List[Tuple[AuthorizationTarget, str]] = []
        self.authorization_error: Optional[Exception] = None
        self.finalize_calls: List[Mapping[str, str]] = []
        self.finalize_result: Optional[AuthorizationResult] = None
        self.finalize_error: Optional[Exception] = None
        self.get_session_calls: List[Tuple[str, bool]] = []
        self.deleted: List[str] = []
        self.revoked: List[str] = []
        self.revoke_errors: Set[str] = set()
        self.fetch_calls: List[Tuple[str, ChainRequest]] = []
        self.responses: Dict[str, ResponseFactory] = {}

    def configure(self, metadata, storage_name, identity_resolver) -> None:
        self.configured = (metadata, storage_name, identity_resolver)

    async def create_authorization_url(self, target, scope) -> str:
        self.authorization_calls.append((target, scope))
        if self.authorization_error is not None:
            raise self.authorization_error
        return "https://bsky.social/oauth/authorize?request_uri=urn%3Atest"

    async def finalize_authorization(self, params) -> AuthorizationResult:
        self.finalize_calls.append(dict(params))
        if self.finalize_error is not None:
            raise self.finalize_error
        assert self.finalize_result is not None
        self.stored[self.finalize_result.session.info.sub] = self.finalize_result.session
        return self.finalize_result

    async def get_session(self, did: str, allow_stale: bool = False) -> OAuthSession:
        self.get_session_calls.append((did, allow_stale))
        await asyncio.sleep(0)
        session = self.stored.get(did)
        if session is None:
            raise LookupError(f"no stored session for {did}")
        return session

    async def delete_stored_session(self, did: str) -> None:
        self.deleted.append(did)
        self.stored.pop(did, None)

    async def revoke(self, session: OAuthSession) -> None:
        self.revoked.append(session.info.sub)
        if session.info.sub in self.revoke_errors:
            raise ConnectionError("revocation endpoint unavailable")

    async def fetch(self, session: OAuthSession, request: ChainRequest) -> ChainResponse:
        self.fetch_calls.append((session.info.sub, request))
        factory = self.responses.get(request.nsid or "")
        if factory is None:
            return profile_response(session.info.sub)
        result = factory(session.info.sub, request)
        if isinstance(result, Exception):
            raise result
        return result


class MockMetricsClient(MetricsClient):
    """Metrics client that records every call for assertions."""

    def __init__(self) -> None:
        self.increments: List[Tuple[str, Any, Dict[str, Any]]] = []
        self.gauges: List[Tuple[str, Any, Dict[str, Any]]] = []
        self.timers: List[Tuple[str, Any, Dict[str, Any]]] = []

    def increment(self, name, value=1, tag_dict=None) -> None:
        self.increments.append((name, value, tag_dict or {}))

    def gauge(self, name, value, tag_dict=None) -> None:
        self.gauges.append((name, value, tag_dict or {}))

    def timer(self, name, value, tag_dict=None) -> None:
        self.timers.append((name, value, tag_dict or {}))

    async def close(self) -> None:
        pass

    def counted(self, name: str, **tags: Any) -> int:
        return sum(
            value
            for metric, value, tag_dict in self.increments
            if metric == name and all(tag_dict.get(k) == v for k, v in tags.items())
        )


@pytest.fixture
def oauth_client() -> FakeOAuthClient:
    return FakeOAuthClient()


@pytest.fixture
def metrics_client() -> MockMetricsClient:
    return MockMetricsClient()


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def session_store(memory_storage) -> SessionStore:
    return SessionStore(memory_storage)


@pytest.fixture
def redirect_store(memory_storage) -> RedirectStore:
    return RedirectStore(memory_storage)


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def redis_storage(fake_redis_client) -> RedisStorage:
    return RedisStorage(fake_redis_client, "gifdex-oauth")


@pytest.fixture
def unauthenticated_handler() -> AsyncMock:
    return AsyncMock(
        return_value=ChainResponse(status=200, headers={}, body={"ok": True})
    )


@pytest_asyncio.fixture
async def registry(
    oauth_client, session_store, redirect_store, metrics_client, unauthenticated_handler
):
    """Uninitialized SessionRegistry wired to in-memory collaborators."""
    registry = SessionRegistry(
        oauth_client=oauth_client,
        session_store=session_store,
        redirect_store=redirect_store,
        actor_resolver=Mock(spec=ActorResolver),
        client_metadata=ClientMetadata(
            client_id="https://gifdex.test/oauth-client-metadata.json",
            redirect_uri="https://gifdex.test/oauth/callback",
        ),
        proxy=ProxyTarget(did=APPVIEW_DID, service_id=APPVIEW_SERVICE_ID),
        unauthenticated_client=XrpcClient(unauthenticated_handler),
        metrics_client=metrics_client,
        restore_timeout=1.0,
        exchange_timeout=1.0,
    )
    yield registry
    await registry.dispose()


async def seed(
    oauth_client: FakeOAuthClient,
    session_store: SessionStore,
    restorable: List[str],
    persisted: Optional[List[str]] = None,
    active: Optional[str] = None,
) -> None:
    """Persist identities and make some of them restorable."""
    for did in restorable:
        oauth_client.stored[did] = make_session(did)
    await session_store.save_dids(persisted if persisted is not None else restorable)
    if active is not None:
        await session_store.set_active(active)
