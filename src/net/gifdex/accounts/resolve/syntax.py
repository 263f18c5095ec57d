"""AT Protocol identifier syntax checks.

Pure functions, no I/O. Used to classify sign-in identifiers and to validate values
returned by resolution methods.
"""

import re
from typing import Optional

HANDLE_MAX_LENGTH = 253
DID_MAX_LENGTH = 2048

_HANDLE_RE = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)
_DID_RE = re.compile(r"^did:([a-z]+):[a-zA-Z0-9._:%-]*[a-zA-Z0-9._-]$")


def is_handle(value: Optional[str]) -> bool:
    """Check if value is a syntactically valid AT Protocol handle.

    Args:
        value: String to check

    Returns:
        True for domain-style handles such as alice.example
    """
    if not value or len(value) > HANDLE_MAX_LENGTH:
        return False
    return _HANDLE_RE.match(value) is not None


def is_did(value: Optional[str]) -> bool:
    """Check if value is a syntactically valid DID.

    Args:
        value: String to check

    Returns:
        True for strings such as did:plc:abc123 or did:web:example.com
    """
    if not value or len(value) > DID_MAX_LENGTH:
        return False
    return _DID_RE.match(value) is not None


def did_method(did: str) -> Optional[str]:
    """Return the method tag of a DID (plc, web, ...), or None if not a DID."""
    match = _DID_RE.match(did)
    if match is None:
        return None
    return match.group(1)


def normalize_identifier(identifier: str) -> str:
    """Strip surrounding whitespace and one leading @ from a sign-in identifier."""
    identifier = identifier.strip()
    if identifier.startswith("@"):
        return identifier[1:]
    return identifier
