import asyncio
import contextlib
import logging
from typing import Optional

from aiohttp import ClientError
from pydantic import ValidationError
import sentry_sdk

from net.gifdex.accounts.app.metrics import MetricsClient, NoOpMetricsClient
from net.gifdex.accounts.atproto.oauth import OAuthClient, OAuthSession, OAuthUserAgent
from net.gifdex.accounts.atproto.xrpc import ProxyTarget, XrpcClient, ok
from net.gifdex.accounts.errors import XrpcError
from net.gifdex.accounts.model.profile import (
    PROFILE_COLLECTION,
    ProfileRecord,
    ProfileView,
)

logger = logging.getLogger(__name__)

GET_PROFILE_NSID = "net.gifdex.actor.getProfile"
GET_RECORD_NSID = "com.atproto.repo.getRecord"
PUT_RECORD_NSID = "com.atproto.repo.putRecord"
PROFILE_RKEY = "self"

EXPECTED_PROFILE_ERRORS = (XrpcError, ClientError, ValidationError, TimeoutError)


class UserSession:
    """
    One signed-in identity.

    Owns the OAuth agent for the session and two XRPC clients: `client` carries the
    atproto-proxy header so the PDS forwards calls to the gifdex AppView, and
    `pds_client` talks to the account's own repository.

    Constructing a UserSession schedules a profile fetch on the running event loop.
    The profile cache never blocks other identities: failures are recorded in
    `profile_error` and the previous profile is kept.
    """

    def __init__(
        self,
        did: str,
        session: OAuthSession,
        oauth_client: OAuthClient,
        proxy: ProxyTarget,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.did = did
        self._session = session
        self._metrics_client = metrics_client or NoOpMetricsClient()
        self._agent = OAuthUserAgent(session, oauth_client)
        self.client = XrpcClient(self._agent, proxy=proxy, metrics_client=metrics_client)
        self.pds_client = XrpcClient(self._agent, metrics_client=metrics_client)

        self._profile: Optional[ProfileView] = None
        self._profile_error: Optional[str] = None
        self._is_loading_profile = False

        self.profile_task: asyncio.Task[None] = asyncio.create_task(
            self.fetch_profile(), name=f"profile-{did}"
        )

    @property
    def session(self) -> OAuthSession:
        return self._session

    @property
    def agent(self) -> OAuthUserAgent:
        return self._agent

    @property
    def profile(self) -> Optional[ProfileView]:
        return self._profile

    @property
    def profile_error(self) -> Optional[str]:
        return self._profile_error

    @property
    def is_loading_profile(self) -> bool:
        return self._is_loading_profile

    async def fetch_profile(self) -> None:
        """
        Fetch the profile from the AppView and update the cache.

        At most one fetch runs at a time. A call made while another is in flight
        returns immediately without touching any state.
        """
        if self._is_loading_profile:
            return

        self._is_loading_profile = True
        try:
            body = ok(await self.client.get(GET_PROFILE_NSID, {"actor": self.did}))
            self._profile = ProfileView.model_validate(body)
            self._profile_error = None
            self._metrics_client.increment(
                "accounts.profile.fetch", 1, tag_dict={"status": "success"}
            )
        except EXPECTED_PROFILE_ERRORS as e:
            logger.warning("Failed to fetch profile for %s: %s", self.did, e)
            self._profile_error = str(e) or type(e).__name__
            self._metrics_client.increment(
                "accounts.profile.fetch", 1, tag_dict={"status": "failure"}
            )
        except Exception as e:
            logger.exception("Unexpected error fetching profile for %s", self.did)
            sentry_sdk.capture_exception(e)
            self._profile_error = str(e) or type(e).__name__
            self._metrics_client.increment(
                "accounts.profile.fetch", 1, tag_dict={"status": "failure"}
            )
        finally:
            self._is_loading_profile = False

    async def _get_profile_record(self) -> Optional[ProfileRecord]:
        try:
            body = ok(
                await self.pds_client.get(
                    GET_RECORD_NSID,
                    {
                        "repo": self.did,
                        "collection": PROFILE_COLLECTION,
                        "rkey": PROFILE_RKEY,
                    },
                )
            )
        except XrpcError as e:
            if e.error == "RecordNotFound" or e.status == 404:
                return None
            raise

        value = body.get("value") if isinstance(body, dict) else None
        if value is None:
            return None
        return ProfileRecord.model_validate(value)

    async def update_profile(
        self,
        display_name: Optional[str] = None,
        pronouns: Optional[str] = None,
        avatar: Optional[dict] = None,
    ) -> bool:
        """Merge changes into the profile record, write it and refresh the profile.

        Args:
            display_name: New display name, None to keep the current one
            pronouns: New pronouns, None to keep the current ones
            avatar: New avatar blob reference, None to keep the current one

        Returns:
            True if the record was written, False otherwise
        """
        try:
            current = await self._get_profile_record() or ProfileRecord()

            merged = current.to_record()
            if display_name is not None:
                merged["displayName"] = display_name
            if pronouns is not None:
                merged["pronouns"] = pronouns
            if avatar is not None:
                merged["avatar"] = avatar
            record = ProfileRecord.model_validate(merged)

            ok(
                await self.pds_client.post(
                    PUT_RECORD_NSID,
                    {
                        "repo": self.did,
                        "collection": PROFILE_COLLECTION,
                        "rkey": PROFILE_RKEY,
                        "record": record.to_record(),
                    },
                )
            )
        except EXPECTED_PROFILE_ERRORS as e:
            logger.warning("Failed to update profile for %s: %s", self.did, e)
            return False
        except Exception as e:
            logger.exception("Unexpected error updating profile for %s", self.did)
            sentry_sdk.capture_exception(e)
            return False

        await self.fetch_profile()
        return True

    async def close(self) -> None:
        """Cancel a pending profile fetch."""
        if not self.profile_task.done():
            self.profile_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.profile_task
