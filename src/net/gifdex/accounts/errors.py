"""Exception hierarchy for account management.

Every error raised by this package derives from AccountsError. Messages carry a
stable error code prefix so log searches survive wording changes.
"""

from typing import Dict, Mapping, Optional


class AccountsError(Exception):
    """Base class for account management errors."""


class ResolutionError(AccountsError):
    """A single resolution method could not produce a result."""


class ResolutionFailed(ResolutionError):
    """
    Every applicable resolution method failed for an identifier.

    Attributes:
        identifier: The handle or DID that could not be resolved
        reasons: Failure reason keyed by resolution method name
    """

    def __init__(self, identifier: str, reasons: Mapping[str, str]) -> None:
        self.identifier = identifier
        self.reasons: Dict[str, str] = dict(reasons)
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.reasons.items())
        super().__init__(
            f"error-accounts-1000 Unable to resolve {identifier!r}: {detail or 'no methods'}"
        )


class InvalidIdentifier(AccountsError):
    """The sign-in identifier is neither a handle, a DID nor an http(s) URL."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"error-accounts-1001 Invalid login identifier: {identifier!r}")


class SignInFailed(AccountsError):
    """The authorization URL could not be created for a valid identifier."""

    def __init__(self, identifier: str, reason: str) -> None:
        self.identifier = identifier
        self.reason = reason
        super().__init__(
            f"error-accounts-1002 Failed to create authorization URL for {identifier!r}: {reason}"
        )


class RestoreFailed(AccountsError):
    """A persisted identity could not be restored. Never raised out of initialize()."""

    def __init__(self, did: str, reason: str) -> None:
        self.did = did
        self.reason = reason
        super().__init__(f"error-accounts-1003 Failed to restore session for {did}: {reason}")


class CallbackExchangeFailed(AccountsError):
    """The OAuth client rejected the authorization callback."""

    def __init__(self, reason: str, state: Optional[str] = None) -> None:
        self.reason = reason
        self.state = state
        super().__init__(f"error-accounts-1004 Failed to create session: {reason}")


class UnknownIdentityOperation(AccountsError):
    """
    A registry operation referenced an identity that is not signed in.

    Built for logging only; the registry degrades to a no-op instead of raising.
    """

    def __init__(self, operation: str, did: str) -> None:
        self.operation = operation
        self.did = did
        super().__init__(
            f"error-accounts-1005 Attempted to {operation} unknown identity {did}"
        )


class XrpcError(AccountsError):
    """An XRPC call returned a non-success status."""

    def __init__(self, status: int, error: str, message: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self.message = message
        text = f"error-accounts-1006 XRPC {status} {error}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)
