"""
Tests for SessionRegistry.

Covers restore on startup, the sign-in flow, the OAuth callback, switching, sign-out
and change notification. After every operation the registry must satisfy:
- the active identity is None or one of the signed-in identities
- the persisted identity list holds exactly the signed-in identities
"""

import asyncio
from unittest.mock import patch

import pytest

from net.gifdex.accounts.atproto.oauth import (
    AccountTarget,
    AuthorizationResult,
    PdsTarget,
)
from net.gifdex.accounts.auth.registry import (
    Authenticated,
    CallbackResult,
    IdentifierKind,
    RegistryState,
    Unauthenticated,
)
from net.gifdex.accounts.errors import InvalidIdentifier, SignInFailed
from net.gifdex.accounts.store.session import ACTIVE_USER_KEY

from conftest import ALICE, BOB, CAROL, make_session, seed

CALLBACK_FRAGMENT = "#state=abc&iss=https%3A%2F%2Fbsky.social&code=xyz"


async def assert_consistent(registry, session_store):
    active = registry.active_did
    assert active is None or active in registry.sessions
    assert set(await session_store.load_dids()) == set(registry.sessions)
    assert await session_store.get_active() == active


def unavailable(storage, method, *keys):
    """Make a storage method raise for the given keys, or for every key."""
    original = getattr(storage, method)

    async def call(*args, **kwargs):
        if len(keys) == 0 or args[0] in keys:
            raise ConnectionError("storage unavailable")
        return await original(*args, **kwargs)

    return patch.object(storage, method, new=call)


class TestInitialize:
    """Test suite for restoring persisted identities."""

    @pytest.mark.asyncio
    async def test_empty(self, registry, oauth_client, session_store):
        await registry.initialize()

        assert registry.state is RegistryState.READY
        assert registry.sessions == {}
        assert isinstance(registry.current, Unauthenticated)
        assert registry.client is registry.unauthenticated_client
        assert registry.version == 1

        metadata, storage_name, _ = oauth_client.configured
        assert metadata.redirect_uri == "https://gifdex.test/oauth/callback"
        assert storage_name == "gifdex-oauth"
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_restore_prunes_failures(
        self, registry, oauth_client, session_store, metrics_client
    ):
        """Failed identities are pruned and the survivors committed with one notification."""
        await seed(
            oauth_client,
            session_store,
            restorable=[ALICE, CAROL],
            persisted=[ALICE, BOB, CAROL],
            active=ALICE,
        )
        snapshots = []
        registry.subscribe(snapshots.append)

        await registry.initialize()

        assert list(registry.sessions) == [ALICE, CAROL]
        assert registry.active_did == ALICE
        assert await session_store.load_dids() == [ALICE, CAROL]
        assert oauth_client.deleted == [BOB]
        assert all(allow_stale for _, allow_stale in oauth_client.get_session_calls)

        assert len(snapshots) == 1
        assert snapshots[0].state is RegistryState.READY
        assert snapshots[0].dids == (ALICE, CAROL)

        assert metrics_client.counted("accounts.registry.restore", status="success") == 2
        assert metrics_client.counted("accounts.registry.restore", status="failure") == 1
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_active_falls_back_to_first_restored(
        self, registry, oauth_client, session_store
    ):
        """An active identity that fails to restore is replaced by the first survivor."""
        await seed(
            oauth_client,
            session_store,
            restorable=[ALICE, CAROL],
            persisted=[BOB, CAROL, ALICE],
            active=BOB,
        )

        await registry.initialize()

        assert registry.active_did == CAROL
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_missing_active_pointer(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB])

        await registry.initialize()

        assert registry.active_did == ALICE
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_all_fail(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[], persisted=[ALICE, BOB], active=ALICE)

        await registry.initialize()

        assert registry.state is RegistryState.READY
        assert registry.active_did is None
        assert sorted(oauth_client.deleted) == [ALICE, BOB]
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_subject_mismatch(self, registry, oauth_client, session_store):
        """A stored session belonging to another DID is not restored."""
        await seed(oauth_client, session_store, restorable=[ALICE, BOB])
        oauth_client.stored[BOB] = make_session(CAROL)

        await registry.initialize()

        assert list(registry.sessions) == [ALICE]
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_restore_timeout(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB])
        get_session = oauth_client.get_session

        async def slow_get_session(did, allow_stale=False):
            if did == BOB:
                await asyncio.sleep(10)
            return await get_session(did, allow_stale)

        oauth_client.get_session = slow_get_session
        registry._restore_timeout = 0.01

        await registry.initialize()

        assert list(registry.sessions) == [ALICE]
        assert oauth_client.deleted == [BOB]

    @pytest.mark.asyncio
    async def test_no_partial_membership(self, registry, oauth_client, session_store):
        """Restored identities appear all at once when the restore completes."""
        await seed(oauth_client, session_store, restorable=[ALICE, BOB])
        release = asyncio.Event()
        get_session = oauth_client.get_session

        async def gated_get_session(did, allow_stale=False):
            if did == BOB:
                await release.wait()
            return await get_session(did, allow_stale)

        oauth_client.get_session = gated_get_session

        task = asyncio.create_task(registry.initialize())
        for _ in range(5):
            await asyncio.sleep(0)

        assert registry.state is RegistryState.RESTORING
        assert registry.sessions == {}
        assert registry.active_did is None

        release.set()
        await task

        assert list(registry.sessions) == [ALICE, BOB]

    @pytest.mark.asyncio
    async def test_initialize_once(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE])

        await registry.initialize()
        await registry.initialize()

        assert len(oauth_client.get_session_calls) == 1
        assert registry.version == 1

    @pytest.mark.asyncio
    async def test_restored_sessions_fetch_profiles(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB])

        await registry.initialize()
        for user in registry.sessions.values():
            await user.profile_task

        assert registry.get(ALICE).profile.did == ALICE
        assert registry.get(BOB).profile.did == BOB


class TestInitiateSignIn:
    """Test suite for starting the OAuth flow."""

    @pytest.mark.asyncio
    async def test_handle(self, registry, oauth_client, redirect_store):
        await registry.initialize()

        redirect = await registry.initiate_sign_in("@alice.example", "/gifs/123")

        assert redirect.kind is IdentifierKind.ACCOUNT
        assert redirect.url.startswith("https://bsky.social/oauth/authorize")
        ((target, scope),) = oauth_client.authorization_calls
        assert target == AccountTarget(identifier="alice.example")
        assert scope == "atproto transition:generic"
        assert await redirect_store.pop() == "/gifs/123"

    @pytest.mark.asyncio
    async def test_did(self, registry, oauth_client):
        await registry.initialize()

        redirect = await registry.initiate_sign_in(ALICE)

        assert redirect.kind is IdentifierKind.ACCOUNT
        assert oauth_client.authorization_calls[0][0] == AccountTarget(identifier=ALICE)

    @pytest.mark.asyncio
    async def test_pds_url(self, registry, oauth_client):
        await registry.initialize()

        redirect = await registry.initiate_sign_in("https://pds.example.com")

        assert redirect.kind is IdentifierKind.PDS
        target = oauth_client.authorization_calls[0][0]
        assert isinstance(target, PdsTarget)
        assert target.service_url == "https://pds.example.com"

    @pytest.mark.asyncio
    async def test_invalid_identifier(self, registry, oauth_client, metrics_client):
        """Invalid identifiers are rejected before the OAuth client is involved."""
        await registry.initialize()

        with pytest.raises(InvalidIdentifier):
            await registry.initiate_sign_in("not a url, not a handle")

        assert oauth_client.authorization_calls == []
        assert metrics_client.counted("accounts.registry.sign_in", status="invalid") == 1

    @pytest.mark.asyncio
    async def test_authorization_failure(self, registry, oauth_client, redirect_store):
        await registry.initialize()
        oauth_client.authorization_error = ConnectionError("authorization server unreachable")

        with pytest.raises(SignInFailed) as exc_info:
            await registry.initiate_sign_in("alice.example", "/gifs/123")

        assert "unreachable" in exc_info.value.reason
        assert await redirect_store.pop() is None

    @pytest.mark.asyncio
    async def test_clears_stale_redirect(self, registry, redirect_store):
        await registry.initialize()
        await redirect_store.save("/stale")

        await registry.initiate_sign_in("alice.example")

        assert await redirect_store.pop() is None

    @pytest.mark.asyncio
    async def test_is_valid_identifier(self, registry):
        assert registry.is_valid_identifier("alice.example") is True
        assert registry.is_valid_identifier("https://pds.example.com") is True
        assert registry.is_valid_identifier("nope") is False


class TestFinalizeCallback:
    """Test suite for the OAuth callback."""

    @pytest.mark.asyncio
    async def test_not_a_callback(self, registry, oauth_client):
        """Parameters without state plus code or error never reach the OAuth client."""
        await registry.initialize()

        result = await registry.finalize_callback("state=x")

        assert result == CallbackResult(success=False, redirect=None)
        assert oauth_client.finalize_calls == []

    @pytest.mark.asyncio
    async def test_success(self, registry, oauth_client, session_store, metrics_client):
        await registry.initialize()
        await registry.initiate_sign_in("alice.example", "/gifs/123")
        oauth_client.finalize_result = AuthorizationResult(session=make_session(ALICE))
        snapshots = []
        registry.subscribe(snapshots.append)

        result = await registry.finalize_callback(CALLBACK_FRAGMENT)

        assert result == CallbackResult(success=True, redirect="/gifs/123")
        assert oauth_client.finalize_calls == [
            {"state": "abc", "iss": "https://bsky.social", "code": "xyz"}
        ]
        assert registry.active_did == ALICE
        assert isinstance(registry.current, Authenticated)
        assert registry.current.session is registry.get(ALICE)
        assert registry.client is registry.get(ALICE).client
        assert [snapshot.active_did for snapshot in snapshots] == [ALICE]
        assert metrics_client.counted("accounts.registry.callback", status="success") == 1
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_redirect_is_single_use(self, registry, oauth_client):
        await registry.initialize()
        await registry.initiate_sign_in("alice.example", "/gifs/123")
        oauth_client.finalize_result = AuthorizationResult(session=make_session(ALICE))

        await registry.finalize_callback(CALLBACK_FRAGMENT)
        oauth_client.finalize_result = AuthorizationResult(session=make_session(BOB))
        result = await registry.finalize_callback(CALLBACK_FRAGMENT)

        assert result == CallbackResult(success=True, redirect=None)

    @pytest.mark.asyncio
    async def test_adds_to_existing_identities(self, registry, oauth_client, session_store):
        """A new identity becomes active and the previous ones stay signed in."""
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()
        oauth_client.finalize_result = AuthorizationResult(session=make_session(BOB))

        await registry.finalize_callback({"state": "abc", "code": "xyz"})

        assert list(registry.sessions) == [ALICE, BOB]
        assert registry.active_did == BOB
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_replaces_existing_session(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()
        previous = registry.get(ALICE)
        oauth_client.finalize_result = AuthorizationResult(session=make_session(ALICE))

        await registry.finalize_callback(CALLBACK_FRAGMENT)

        assert registry.get(ALICE) is not previous
        assert previous.profile_task.done() is True
        assert await session_store.load_dids() == [ALICE]

    @pytest.mark.asyncio
    @patch("net.gifdex.accounts.auth.registry.sentry_sdk")
    async def test_exchange_failure(
        self, mock_sentry, registry, oauth_client, session_store, metrics_client
    ):
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()
        version = registry.version
        oauth_client.finalize_error = ValueError("invalid_grant")

        result = await registry.finalize_callback("?state=abc&error=access_denied")

        assert result == CallbackResult(success=False, redirect=None)
        assert registry.active_did == ALICE
        assert list(registry.sessions) == [ALICE]
        assert registry.version == version
        assert metrics_client.counted("accounts.registry.callback", status="failure") == 1
        mock_sentry.capture_exception.assert_called_once()
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_subject_not_a_did(self, registry, oauth_client, session_store):
        await registry.initialize()
        oauth_client.finalize_result = AuthorizationResult(
            session=make_session("alice.example")
        )

        result = await registry.finalize_callback(CALLBACK_FRAGMENT)

        assert result.success is False
        assert registry.sessions == {}
        await assert_consistent(registry, session_store)


    @pytest.mark.asyncio
    @patch("net.gifdex.accounts.auth.registry.sentry_sdk")
    async def test_storage_failure_discards_new_identity(
        self, mock_sentry, registry, oauth_client, session_store, memory_storage
    ):
        """A failed write after the exchange leaves storage matching the registry."""
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()
        version = registry.version
        oauth_client.finalize_result = AuthorizationResult(session=make_session(BOB))

        with unavailable(memory_storage, "set", ACTIVE_USER_KEY):
            result = await registry.finalize_callback(CALLBACK_FRAGMENT)

        assert result == CallbackResult(success=False, redirect=None)
        assert list(registry.sessions) == [ALICE]
        assert registry.active_did == ALICE
        assert registry.version == version
        assert BOB in oauth_client.deleted
        assert BOB not in oauth_client.stored
        mock_sentry.capture_exception.assert_called()
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    @patch("net.gifdex.accounts.auth.registry.sentry_sdk")
    async def test_storage_failure_keeps_existing_identity(
        self, mock_sentry, registry, oauth_client, session_store, memory_storage
    ):
        """Signing in again as a signed-in identity keeps its stored session on failure."""
        await seed(oauth_client, session_store, restorable=[ALICE, BOB], active=BOB)
        await registry.initialize()
        previous = registry.get(ALICE)
        oauth_client.finalize_result = AuthorizationResult(session=make_session(ALICE))

        with unavailable(memory_storage, "set", ACTIVE_USER_KEY):
            result = await registry.finalize_callback(CALLBACK_FRAGMENT)

        assert result.success is False
        assert registry.get(ALICE) is previous
        assert registry.active_did == BOB
        assert ALICE not in oauth_client.deleted
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_rejected_before_initialize(self, registry, oauth_client, metrics_client):
        oauth_client.finalize_result = AuthorizationResult(session=make_session(ALICE))

        result = await registry.finalize_callback(CALLBACK_FRAGMENT)

        assert result == CallbackResult(success=False, redirect=None)
        assert oauth_client.finalize_calls == []
        assert registry.sessions == {}
        assert metrics_client.counted("accounts.registry.callback", status="not_ready") == 1

    @pytest.mark.asyncio
    async def test_waits_for_restore(self, registry, oauth_client, session_store):
        """A callback arriving during restore is handled once the registry is ready."""
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        release = asyncio.Event()
        get_session = oauth_client.get_session

        async def gated_get_session(did, allow_stale=False):
            await release.wait()
            return await get_session(did, allow_stale)

        oauth_client.get_session = gated_get_session
        oauth_client.finalize_result = AuthorizationResult(session=make_session(BOB))

        restore = asyncio.create_task(registry.initialize())
        for _ in range(5):
            await asyncio.sleep(0)
        callback = asyncio.create_task(registry.finalize_callback(CALLBACK_FRAGMENT))
        for _ in range(5):
            await asyncio.sleep(0)

        assert oauth_client.finalize_calls == []
        assert registry.state is RegistryState.RESTORING
        release.set()
        await restore
        result = await callback

        assert result.success is True
        assert list(registry.sessions) == [ALICE, BOB]
        assert registry.active_did == BOB
        await assert_consistent(registry, session_store)

class TestSwitchUser:
    """Test suite for re-pointing the active identity."""

    @pytest.mark.asyncio
    async def test_switch(self, registry, oauth_client, session_store, metrics_client):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB], active=ALICE)
        await registry.initialize()

        assert await registry.switch_user(BOB) is True

        assert registry.active_did == BOB
        assert registry.client is registry.get(BOB).client
        assert metrics_client.counted("accounts.registry.switch") == 1
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_unknown_identity(self, registry, oauth_client, session_store, metrics_client):
        """Switching to an identity that is not signed in changes nothing."""
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()
        before = registry.snapshot()

        assert await registry.switch_user(CAROL) is False

        assert registry.snapshot() == before
        assert metrics_client.counted(
            "accounts.registry.unknown_identity", operation="switch"
        ) == 1
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_already_active(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()
        version = registry.version

        assert await registry.switch_user(ALICE) is True
        assert registry.version == version


class TestSignOut:
    """Test suite for removing identities."""

    @pytest.mark.asyncio
    async def test_sign_out_active(self, registry, oauth_client, session_store):
        """Signing out the active identity activates the first remaining one."""
        await seed(oauth_client, session_store, restorable=[ALICE, BOB, CAROL], active=ALICE)
        await registry.initialize()
        user = registry.get(ALICE)

        assert await registry.sign_out(ALICE) is True

        assert list(registry.sessions) == [BOB, CAROL]
        assert registry.active_did == BOB
        assert oauth_client.revoked == [ALICE]
        assert ALICE in oauth_client.deleted
        assert user.profile_task.done() is True
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_sign_out_inactive(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB], active=ALICE)
        await registry.initialize()

        await registry.sign_out(BOB)

        assert registry.active_did == ALICE
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_sign_out_last(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()

        await registry.sign_out(ALICE)

        assert registry.sessions == {}
        assert registry.active_did is None
        assert isinstance(registry.current, Unauthenticated)
        assert registry.client is registry.unauthenticated_client
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_sign_out_unknown(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()

        assert await registry.sign_out(CAROL) is False

        assert oauth_client.revoked == []
        assert list(registry.sessions) == [ALICE]

    @pytest.mark.asyncio
    async def test_revocation_failure(self, registry, oauth_client, session_store):
        """The identity is removed even when revocation fails."""
        await seed(oauth_client, session_store, restorable=[ALICE, BOB], active=ALICE)
        await registry.initialize()
        oauth_client.revoke_errors.add(ALICE)

        assert await registry.sign_out(ALICE) is True

        assert list(registry.sessions) == [BOB]
        assert ALICE in oauth_client.deleted
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    async def test_sign_out_all(self, registry, oauth_client, session_store, redirect_store):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB, CAROL], active=BOB)
        await registry.initialize()
        await redirect_store.save("/gifs/123")
        oauth_client.revoke_errors.add(CAROL)

        assert await registry.sign_out_all() == 3

        assert registry.sessions == {}
        assert registry.active_did is None
        assert sorted(oauth_client.revoked) == sorted([ALICE, BOB, CAROL])
        assert await redirect_store.pop() is None
        await assert_consistent(registry, session_store)


    @pytest.mark.asyncio
    @patch("net.gifdex.accounts.auth.registry.sentry_sdk")
    async def test_storage_failure(
        self, mock_sentry, registry, oauth_client, session_store, memory_storage, metrics_client
    ):
        """Sign-out completes and notifies when storage is unavailable."""
        await seed(oauth_client, session_store, restorable=[ALICE, BOB], active=ALICE)
        await registry.initialize()
        snapshots = []
        registry.subscribe(snapshots.append)

        with unavailable(memory_storage, "set"):
            assert await registry.sign_out(ALICE) is True

        assert list(registry.sessions) == [BOB]
        assert registry.active_did == BOB
        assert [(s.dids, s.active_did) for s in snapshots] == [((BOB,), BOB)]
        assert ALICE not in oauth_client.stored
        assert metrics_client.counted(
            "accounts.registry.persist_failure", operation="sign_out"
        ) == 1
        mock_sentry.capture_exception.assert_called_once()

        # The identity left in storage has no stored session and is pruned on restore.
        await registry.dispose()
        await registry.initialize()

        assert list(registry.sessions) == [BOB]
        await assert_consistent(registry, session_store)

    @pytest.mark.asyncio
    @patch("net.gifdex.accounts.auth.registry.sentry_sdk")
    async def test_sign_out_all_storage_failure(
        self, mock_sentry, registry, oauth_client, session_store, memory_storage
    ):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB], active=BOB)
        await registry.initialize()
        snapshots = []
        registry.subscribe(snapshots.append)

        with unavailable(memory_storage, "delete"):
            assert await registry.sign_out_all() == 2

        assert registry.sessions == {}
        assert registry.client is registry.unauthenticated_client
        assert [(s.dids, s.active_did) for s in snapshots] == [((), None)]
        mock_sentry.capture_exception.assert_called_once()

        await registry.dispose()
        await registry.initialize()

        assert registry.sessions == {}
        await assert_consistent(registry, session_store)
    @pytest.mark.asyncio
    async def test_concurrent_operations(self, registry, oauth_client, session_store):
        """Concurrent mutations are serialized and leave a consistent registry."""
        await seed(oauth_client, session_store, restorable=[ALICE, BOB, CAROL], active=ALICE)
        await registry.initialize()

        await asyncio.gather(
            registry.switch_user(BOB),
            registry.sign_out(BOB),
            registry.sign_out(ALICE),
        )

        assert list(registry.sessions) == [CAROL]
        assert registry.active_did == CAROL
        await assert_consistent(registry, session_store)


class TestNotifications:
    """Test suite for snapshots and subscriptions."""

    @pytest.mark.asyncio
    async def test_versions_increase(self, registry, oauth_client, session_store):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB], active=ALICE)
        snapshots = []
        registry.subscribe(snapshots.append)

        await registry.initialize()
        await registry.switch_user(BOB)
        await registry.sign_out(BOB)

        assert [snapshot.version for snapshot in snapshots] == [1, 2, 3]
        assert [snapshot.active_did for snapshot in snapshots] == [ALICE, BOB, ALICE]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, registry):
        snapshots = []
        unsubscribe = registry.subscribe(snapshots.append)
        unsubscribe()

        await registry.initialize()

        assert snapshots == []

    @pytest.mark.asyncio
    async def test_failing_subscriber(self, registry):
        """A failing subscriber does not prevent others from being notified."""
        snapshots = []

        def broken(snapshot):
            raise RuntimeError("boom")

        registry.subscribe(broken)
        registry.subscribe(snapshots.append)

        await registry.initialize()

        assert len(snapshots) == 1

    @pytest.mark.asyncio
    async def test_sessions_gauge(self, registry, oauth_client, session_store, metrics_client):
        await seed(oauth_client, session_store, restorable=[ALICE, BOB])

        await registry.initialize()

        assert metrics_client.gauges[-1][:2] == ("accounts.registry.sessions", 2)

    @pytest.mark.asyncio
    async def test_dispose(self, registry, oauth_client, session_store):
        """Disposing closes sessions but keeps persisted state."""
        await seed(oauth_client, session_store, restorable=[ALICE], active=ALICE)
        await registry.initialize()
        user = registry.get(ALICE)

        await registry.dispose()

        assert registry.state is RegistryState.UNINITIALIZED
        assert registry.sessions == {}
        assert user.profile_task.done() is True
        assert await session_store.load_dids() == [ALICE]
        assert await session_store.get_active() == ALICE
