"""
AT Protocol OAuth Agent Abstraction

The OAuth protocol is delegated to an injected OAuthClient. This module defines the
contract that client must satisfy, the models exchanged with it, and OAuthUserAgent,
the fetch handler that sends XRPC requests on behalf of one session.

The sign-in flow has two stages:
1. create_authorization_url: Build the authorization server URL for an account
   (handle or DID) or a PDS URL. The caller navigates the user there.
2. finalize_authorization: Exchange the callback parameters (state plus code or
   error) for a session. The session's info.sub is the signed-in DID.

Sessions are stored by the OAuth client under the configured storage name.
get_session restores a stored session by DID, optionally allowing stale tokens that
will be refreshed on first use, and delete_stored_session invalidates it.
"""

from typing import Annotated, Literal, Mapping, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

from net.gifdex.accounts.atproto.chain import ChainRequest, ChainResponse
from net.gifdex.accounts.resolve.actor import ActorResolver


class AccountTarget(BaseModel):
    """Authorize a specific account, identified by handle or DID."""

    type: Literal["account"] = "account"
    identifier: str


class PdsTarget(BaseModel):
    """Authorize against a PDS and let the user pick the account there."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["pds"] = "pds"
    service_url: str = Field(alias="serviceUrl")


AuthorizationTarget = Annotated[
    Union[AccountTarget, PdsTarget], Field(discriminator="type")
]


class ClientMetadata(BaseModel):
    client_id: str
    redirect_uri: str


class SessionInfo(BaseModel):
    """
    Token metadata of an OAuth session.

    Attributes:
        sub: DID of the authenticated account
        aud: URL of the account's PDS
        scope: Granted scope
    """

    model_config = ConfigDict(extra="allow")

    sub: str
    aud: str
    scope: str = ""


class OAuthSession(BaseModel):
    """An opaque credential. Only info is interpreted by this package."""

    model_config = ConfigDict(extra="allow")

    info: SessionInfo


class AuthorizationResult(BaseModel):
    session: OAuthSession
    state: str | None = None


class OAuthClient(Protocol):
    """Contract of the OAuth implementation used by the session registry."""

    def configure(
        self,
        metadata: ClientMetadata,
        storage_name: str,
        identity_resolver: ActorResolver,
    ) -> None: ...

    async def create_authorization_url(
        self, target: AuthorizationTarget, scope: str
    ) -> str: ...

    async def finalize_authorization(
        self, params: Mapping[str, str]
    ) -> AuthorizationResult: ...

    async def get_session(self, did: str, allow_stale: bool = False) -> OAuthSession: ...

    async def delete_stored_session(self, did: str) -> None: ...

    async def revoke(self, session: OAuthSession) -> None: ...

    async def fetch(self, session: OAuthSession, request: ChainRequest) -> ChainResponse: ...


class OAuthUserAgent:
    """Fetch handler that authenticates requests with one OAuth session."""

    def __init__(self, session: OAuthSession, oauth_client: OAuthClient) -> None:
        self.session = session
        self._oauth_client = oauth_client

    @property
    def did(self) -> str:
        return self.session.info.sub

    async def __call__(self, request: ChainRequest) -> ChainResponse:
        return await self._oauth_client.fetch(self.session, request)

    async def sign_out(self) -> None:
        """Revoke the session's tokens and delete the stored session."""
        try:
            await self._oauth_client.revoke(self.session)
        finally:
            await self._oauth_client.delete_stored_session(self.did)
