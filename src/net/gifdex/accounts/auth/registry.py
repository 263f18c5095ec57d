"""
Session Registry

The SessionRegistry is the single source of truth for which identities are signed in
and which one is active. It is the only component that adds, removes or re-points
identities, and it keeps the persisted identity list in step with its own map.

Lifecycle:
1. initialize(): configure the OAuth client, restore every persisted identity
   concurrently, prune the ones that fail, commit the survivors in one assignment
   and reconcile the persisted active identity. The registry is READY afterwards
   whatever the outcome.
2. initiate_sign_in(): classify the identifier, build the authorization URL and save
   the location to return to. The caller performs the navigation.
3. finalize_callback(): exchange the callback parameters for a session, register it
   and make it active.
4. switch_user(), sign_out(), sign_out_all(): re-point or remove identities.

A callback that fails after the exchange puts storage back to the committed map.
Sign-out always completes in memory and notifies; storage failures are reported.

Every change is published as a RegistrySnapshot with an increasing version. Anything
holding the previous active client subscribes and rebuilds when the version changes.
Mutating operations are serialized by a lock so no operation interleaves its reads
and writes with another one.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import (
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)
from urllib.parse import parse_qsl, urlparse

from aiohttp import ClientSession
import sentry_sdk

from net.gifdex.accounts.app.metrics import MetricsClient, NoOpMetricsClient
from net.gifdex.accounts.atproto.oauth import (
    AccountTarget,
    AuthorizationTarget,
    ClientMetadata,
    OAuthClient,
    OAuthSession,
    PdsTarget,
)
from net.gifdex.accounts.atproto.xrpc import (
    ProxyTarget,
    XrpcClient,
    create_unauthenticated_client,
)
from net.gifdex.accounts.auth.user import UserSession
from net.gifdex.accounts.errors import (
    AccountsError,
    CallbackExchangeFailed,
    InvalidIdentifier,
    RestoreFailed,
    SignInFailed,
    UnknownIdentityOperation,
)
from net.gifdex.accounts.resolve.actor import ActorResolver
from net.gifdex.accounts.resolve.handle import describe_failure
from net.gifdex.accounts.resolve.syntax import is_did, is_handle, normalize_identifier
from net.gifdex.accounts.store.session import RedirectStore, SessionStore
from net.gifdex.accounts.store.storage import KeyValueStorage

logger = logging.getLogger(__name__)


class RegistryState(Enum):
    UNINITIALIZED = "uninitialized"
    RESTORING = "restoring"
    READY = "ready"


class IdentifierKind(Enum):
    ACCOUNT = "account"
    PDS = "pds"


@dataclass(frozen=True)
class Unauthenticated:
    """No identity is active. Calls go through the unauthenticated client."""


@dataclass(frozen=True)
class Authenticated:
    session: UserSession


AuthState = Union[Unauthenticated, Authenticated]


@dataclass(frozen=True)
class RegistrySnapshot:
    version: int
    state: RegistryState
    dids: Tuple[str, ...]
    active_did: Optional[str]


@dataclass(frozen=True)
class SignInRedirect:
    url: str
    kind: IdentifierKind


@dataclass(frozen=True)
class CallbackResult:
    success: bool
    redirect: Optional[str] = None


Subscriber = Callable[[RegistrySnapshot], None]


def classify_identifier(identifier: str) -> Optional[IdentifierKind]:
    """
    Classify a sign-in identifier.

    One leading @ is ignored. Handles and DIDs are accounts, http and https URLs are
    PDS endpoints, and anything else is invalid.

    Returns:
        The IdentifierKind, or None if the identifier is invalid
    """
    clean = normalize_identifier(identifier)
    if not clean:
        return None

    if is_handle(clean) or is_did(clean):
        return IdentifierKind.ACCOUNT

    try:
        url = urlparse(clean)
    except ValueError:
        return None
    if url.scheme in ("http", "https") and url.netloc:
        return IdentifierKind.PDS

    return None


def parse_callback_params(params: Union[str, Mapping[str, str]]) -> Dict[str, str]:
    """Parse callback parameters from a fragment or query string, or copy a mapping."""
    if isinstance(params, str):
        if params.startswith("#") or params.startswith("?"):
            params = params[1:]
        return dict(parse_qsl(params, keep_blank_values=True))
    return {key: value for key, value in params.items()}


def is_callback(params: Mapping[str, str]) -> bool:
    return "state" in params and ("code" in params or "error" in params)


class SessionRegistry:
    """
    Owns every UserSession and the active identity pointer.

    Invariants:
    - active_did is None or a key of sessions
    - after every mutating operation the persisted identity list holds the same
      DIDs as sessions
    """

    def __init__(
        self,
        oauth_client: OAuthClient,
        session_store: SessionStore,
        redirect_store: RedirectStore,
        actor_resolver: ActorResolver,
        client_metadata: ClientMetadata,
        proxy: ProxyTarget,
        unauthenticated_client: XrpcClient,
        storage_name: str = "gifdex-oauth",
        scope: str = "atproto transition:generic",
        metrics_client: Optional[MetricsClient] = None,
        restore_timeout: Optional[float] = None,
        exchange_timeout: Optional[float] = None,
    ) -> None:
        self._oauth_client = oauth_client
        self._session_store = session_store
        self._redirect_store = redirect_store
        self._actor_resolver = actor_resolver
        self._client_metadata = client_metadata
        self._proxy = proxy
        self._unauthenticated_client = unauthenticated_client
        self._storage_name = storage_name
        self._scope = scope
        self._metrics_client = metrics_client or NoOpMetricsClient()
        self._restore_timeout = restore_timeout
        self._exchange_timeout = exchange_timeout

        self._state = RegistryState.UNINITIALIZED
        self._sessions: Dict[str, UserSession] = {}
        self._active_did: Optional[str] = None
        self._version = 0
        self._subscribers: List[Subscriber] = []
        self._lock = asyncio.Lock()

    @property
    def state(self) -> RegistryState:
        return self._state

    @property
    def active_did(self) -> Optional[str]:
        return self._active_did

    @property
    def sessions(self) -> Dict[str, UserSession]:
        return dict(self._sessions)

    @property
    def version(self) -> int:
        return self._version

    @property
    def unauthenticated_client(self) -> XrpcClient:
        return self._unauthenticated_client

    @property
    def client(self) -> XrpcClient:
        """The active identity's client, or the unauthenticated client."""
        current = self.current
        if isinstance(current, Authenticated):
            return current.session.client
        return self._unauthenticated_client

    @property
    def current(self) -> AuthState:
        if self._active_did is None:
            return Unauthenticated()
        return Authenticated(self._sessions[self._active_did])

    def get(self, did: str) -> Optional[UserSession]:
        return self._sessions.get(did)

    def snapshot(self) -> RegistrySnapshot:
        return RegistrySnapshot(
            version=self._version,
            state=self._state,
            dids=tuple(self._sessions),
            active_did=self._active_did,
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call callback with a new snapshot after every change.

        Returns:
            A callable that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        self._version += 1
        snapshot = self.snapshot()
        self._metrics_client.gauge("accounts.registry.sessions", len(self._sessions))
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.exception("Registry subscriber failed")
                sentry_sdk.capture_exception(e)

    def _new_session(self, did: str, session: OAuthSession) -> UserSession:
        return UserSession(
            did,
            session,
            self._oauth_client,
            self._proxy,
            metrics_client=self._metrics_client,
        )

    def _unknown_identity(self, operation: str, did: str) -> None:
        logger.warning(str(UnknownIdentityOperation(operation, did)))
        self._metrics_client.increment(
            "accounts.registry.unknown_identity", 1, tag_dict={"operation": operation}
        )

    def is_valid_identifier(self, identifier: str) -> bool:
        return classify_identifier(identifier) is not None

    async def initialize(self) -> None:
        """
        Restore persisted identities and become READY.

        Each identity is restored independently; failures are pruned from storage and
        their stored OAuth sessions deleted. Survivors are committed in one assignment.
        """
        async with self._lock:
            if self._state is not RegistryState.UNINITIALIZED:
                logger.warning("Registry already initialized")
                return

            self._oauth_client.configure(
                self._client_metadata, self._storage_name, self._actor_resolver
            )
            self._state = RegistryState.RESTORING

            try:
                dids = await self._session_store.load_dids()
                persisted_active = await self._session_store.get_active()
            except Exception as e:
                logger.exception("Unable to read persisted identities")
                sentry_sdk.capture_exception(e)
                dids, persisted_active = [], None

            async with asyncio.TaskGroup() as tg:
                tasks = {did: tg.create_task(self._restore(did)) for did in dids}

            restored: Dict[str, UserSession] = {}
            failed: List[str] = []
            for did, task in tasks.items():
                user = task.result()
                if user is None:
                    failed.append(did)
                else:
                    restored[did] = user

            if persisted_active in restored:
                active = persisted_active
            else:
                active = next(iter(restored), None)

            try:
                for did in failed:
                    await self._delete_stored_session(did)
                if len(failed) > 0:
                    await self._session_store.remove_dids(*failed)
                if active != persisted_active:
                    await self._session_store.set_active(active)
            except Exception as e:
                logger.exception("Unable to prune persisted identities")
                sentry_sdk.capture_exception(e)

            self._sessions = restored
            self._active_did = active
            self._state = RegistryState.READY

            logger.info(
                "Restored %d of %d identities, active %s", len(restored), len(dids), active
            )
            self._notify()

    async def _restore(self, did: str) -> Optional[UserSession]:
        try:
            if not is_did(did):
                raise RestoreFailed(did, "not a DID")
            async with asyncio.timeout(self._restore_timeout):
                session = await self._oauth_client.get_session(did, allow_stale=True)
            if session.info.sub != did:
                raise RestoreFailed(did, f"session belongs to {session.info.sub}")
        except Exception as e:
            failure = e if isinstance(e, RestoreFailed) else RestoreFailed(did, describe_failure(e))
            logger.warning(str(failure))
            if not isinstance(e, (AccountsError, TimeoutError)):
                sentry_sdk.capture_exception(e)
            self._metrics_client.increment(
                "accounts.registry.restore", 1, tag_dict={"status": "failure"}
            )
            return None

        self._metrics_client.increment(
            "accounts.registry.restore", 1, tag_dict={"status": "success"}
        )
        return self._new_session(did, session)

    async def _delete_stored_session(self, did: str) -> None:
        try:
            await self._oauth_client.delete_stored_session(did)
        except Exception as e:
            logger.warning("Unable to delete stored session for %s: %s", did, e)
            sentry_sdk.capture_exception(e)

    async def initiate_sign_in(
        self, identifier: str, current_location: Optional[str] = None
    ) -> SignInRedirect:
        """Start the OAuth sign-in flow.

        Args:
            identifier: Handle, DID or PDS URL, optionally prefixed with @
            current_location: Location to return to after the callback

        Returns:
            SignInRedirect with the authorization URL to navigate to

        Raises:
            InvalidIdentifier: Before any I/O, if the identifier cannot be classified
            SignInFailed: If the authorization URL could not be created
        """
        kind = classify_identifier(identifier)
        if kind is None:
            self._metrics_client.increment(
                "accounts.registry.sign_in", 1, tag_dict={"status": "invalid"}
            )
            raise InvalidIdentifier(identifier)

        clean = normalize_identifier(identifier)
        target: AuthorizationTarget
        if kind is IdentifierKind.ACCOUNT:
            target = AccountTarget(identifier=clean)
        else:
            target = PdsTarget(service_url=clean)

        try:
            async with asyncio.timeout(self._exchange_timeout):
                url = await self._oauth_client.create_authorization_url(
                    target, self._scope
                )
        except Exception as e:
            logger.error("Failed to create authorization URL for %s: %s", clean, e)
            if not isinstance(e, (AccountsError, TimeoutError)):
                sentry_sdk.capture_exception(e)
            self._metrics_client.increment(
                "accounts.registry.sign_in", 1, tag_dict={"status": "failure"}
            )
            raise SignInFailed(clean, describe_failure(e)) from e

        if current_location is None:
            await self._redirect_store.clear()
        else:
            await self._redirect_store.save(current_location)

        self._metrics_client.increment(
            "accounts.registry.sign_in", 1, tag_dict={"status": "success", "kind": kind.value}
        )
        return SignInRedirect(url=url, kind=kind)

    async def finalize_callback(
        self, params: Union[str, Mapping[str, str]]
    ) -> CallbackResult:
        """Finish the OAuth sign-in flow.

        Args:
            params: Callback fragment or query string, or a mapping of its parameters

        Returns:
            CallbackResult(success=False) if params are not a callback or the exchange
            failed, otherwise success with the saved pre-authorization location
        """
        values = parse_callback_params(params)
        if not is_callback(values):
            return CallbackResult(success=False, redirect=None)

        async with self._lock:
            if self._state is not RegistryState.READY:
                logger.warning("Ignoring OAuth callback while %s", self._state.value)
                self._metrics_client.increment(
                    "accounts.registry.callback", 1, tag_dict={"status": "not_ready"}
                )
                return CallbackResult(success=False, redirect=None)

            did: Optional[str] = None
            user: Optional[UserSession] = None
            try:
                async with asyncio.timeout(self._exchange_timeout):
                    result = await self._oauth_client.finalize_authorization(values)
                did = result.session.info.sub
                if not is_did(did):
                    raise CallbackExchangeFailed(f"session subject {did!r} is not a DID")

                user = self._new_session(did, result.session)
                await self._session_store.add_did(did)
                await self._session_store.set_active(did)
                redirect = await self._redirect_store.pop()
            except Exception as e:
                failure = (
                    e
                    if isinstance(e, CallbackExchangeFailed)
                    else CallbackExchangeFailed(describe_failure(e), state=values.get("state"))
                )
                logger.error(str(failure))
                sentry_sdk.capture_exception(e)
                self._metrics_client.increment(
                    "accounts.registry.callback", 1, tag_dict={"status": "failure"}
                )
                if user is not None:
                    await user.close()
                if did is not None:
                    await self._discard_sign_in(did)
                return CallbackResult(success=False, redirect=None)

            previous = self._sessions.get(did)
            sessions = dict(self._sessions)
            sessions[did] = user
            self._sessions = sessions
            self._active_did = did

            if previous is not None:
                await previous.close()

            logger.info("Signed in %s", did)
            self._metrics_client.increment(
                "accounts.registry.callback", 1, tag_dict={"status": "success"}
            )
            self._notify()
            return CallbackResult(success=True, redirect=redirect)

    async def switch_user(self, did: str) -> bool:
        """Make a signed-in identity active.

        Returns:
            False, with a warning, if the identity is not signed in
        """
        async with self._lock:
            if did not in self._sessions:
                self._unknown_identity("switch", did)
                return False
            if did == self._active_did:
                return True

            await self._session_store.set_active(did)
            self._active_did = did

            self._metrics_client.increment("accounts.registry.switch", 1)
            self._notify()
            return True

    async def sign_out(self, did: str) -> bool:
        """Revoke and remove one identity.

        The credential is revoked first; a revocation failure is logged and the
        identity is removed regardless. If it was active, the first remaining identity
        becomes active. A storage failure is logged and reported, and subscribers are
        still notified.

        Returns:
            False, with a warning, if the identity is not signed in
        """
        async with self._lock:
            user = self._sessions.get(did)
            if user is None:
                self._unknown_identity("sign_out", did)
                return False

            await self._revoke(user)

            sessions = {key: value for key, value in self._sessions.items() if key != did}
            self._sessions = sessions
            if self._active_did == did:
                self._active_did = next(iter(sessions), None)

            await self._persist("sign_out")

            logger.info("Signed out %s, active %s", did, self._active_did)
            self._metrics_client.increment("accounts.registry.sign_out", 1)
            self._notify()
            return True

    async def sign_out_all(self) -> int:
        """Revoke every identity and clear all persisted state.

        Returns:
            The number of identities signed out
        """
        async with self._lock:
            users = list(self._sessions.values())
            await asyncio.gather(*[self._revoke(user) for user in users])

            self._sessions = {}
            self._active_did = None

            await self._persist("sign_out_all")

            logger.info("Signed out %d identities", len(users))
            self._metrics_client.increment("accounts.registry.sign_out", len(users))
            self._notify()
            return len(users)

    async def _persist(self, operation: str) -> None:
        """Write the committed identities and active pointer, and drop the saved location.

        Failures are logged and reported. Identities left behind in storage have no
        stored OAuth session and are pruned by the next initialize().
        """
        try:
            if len(self._sessions) > 0:
                await self._session_store.save_dids(self._sessions)
                await self._session_store.set_active(self._active_did)
            else:
                await self._session_store.clear()
            await self._redirect_store.clear()
        except Exception as e:
            logger.exception("Unable to persist identities after %s", operation)
            sentry_sdk.capture_exception(e)
            self._metrics_client.increment(
                "accounts.registry.persist_failure", 1, tag_dict={"operation": operation}
            )

    async def _discard_sign_in(self, did: str) -> None:
        """Undo the writes of a callback that failed after the exchange."""
        if did not in self._sessions:
            await self._delete_stored_session(did)
        try:
            await self._session_store.save_dids(self._sessions)
        except Exception as e:
            logger.exception("Unable to restore persisted identities after %s", did)
            sentry_sdk.capture_exception(e)
        try:
            await self._session_store.set_active(self._active_did)
        except Exception as e:
            logger.exception("Unable to restore persisted active identity")
            sentry_sdk.capture_exception(e)

    async def _revoke(self, user: UserSession) -> None:
        try:
            await user.agent.sign_out()
        except Exception as e:
            logger.warning("Failed to revoke session for %s: %s", user.did, e)
            sentry_sdk.capture_exception(e)
        await user.close()

    async def dispose(self) -> None:
        """Close every UserSession and return to UNINITIALIZED. Persisted state is kept."""
        async with self._lock:
            users = list(self._sessions.values())
            self._sessions = {}
            self._active_did = None
            self._state = RegistryState.UNINITIALIZED
            for user in users:
                await user.close()
            self._notify()
            self._subscribers.clear()


def create_registry(
    oauth_client: OAuthClient,
    storage: KeyValueStorage,
    actor_resolver: ActorResolver,
    http_session: ClientSession,
    client_id: str,
    redirect_uri: str,
    appview_did: str,
    appview_url: str,
    appview_service_id: str = "#gifdex_appview",
    scope: str = "atproto transition:generic",
    storage_name: str = "gifdex-oauth",
    redirect_ttl: Optional[int] = None,
    restore_timeout: Optional[float] = None,
    exchange_timeout: Optional[float] = None,
    metrics_client: Optional[MetricsClient] = None,
) -> SessionRegistry:
    """Build a SessionRegistry with its stores and the unauthenticated AppView client."""
    return SessionRegistry(
        oauth_client=oauth_client,
        session_store=SessionStore(storage),
        redirect_store=RedirectStore(storage, ttl=redirect_ttl),
        actor_resolver=actor_resolver,
        client_metadata=ClientMetadata(client_id=client_id, redirect_uri=redirect_uri),
        proxy=ProxyTarget(did=appview_did, service_id=appview_service_id),
        unauthenticated_client=create_unauthenticated_client(
            http_session, appview_url, metrics_client=metrics_client
        ),
        storage_name=storage_name,
        scope=scope,
        metrics_client=metrics_client,
        restore_timeout=restore_timeout,
        exchange_timeout=exchange_timeout,
    )
