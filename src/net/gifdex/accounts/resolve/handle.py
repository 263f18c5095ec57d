"""AT Protocol handle to DID resolution.

Resolves handles using DNS TXT records (system resolver or DNS-over-HTTPS) and the
HTTPS well-known endpoint. CompositeHandleResolver races every configured method and
returns the first DID produced.
"""

import asyncio
import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from aiodns import DNSResolver
from aiohttp import ClientError, ClientSession
import sentry_sdk

from net.gifdex.accounts.errors import ResolutionError, ResolutionFailed
from net.gifdex.accounts.resolve.syntax import is_did

logger = logging.getLogger(__name__)

TXT_RECORD_TYPE = 16

_QUOTED_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')


class HandleResolver(Protocol):
    """A single method for resolving a handle to a DID."""

    async def resolve(self, handle: str) -> str: ...


def did_from_txt_values(handle: str, values: Iterable[str]) -> str:
    """Extract the DID from the TXT values of _atproto.{handle}.

    Exactly one did= value must be present, otherwise the record is ambiguous.

    Args:
        handle: Handle being resolved, used for error messages
        values: Decoded TXT record strings

    Returns:
        The DID carried by the record

    Raises:
        ResolutionError: If no value, several values or an invalid DID is found
    """
    dids = [value[len("did="):] for value in values if value.startswith("did=")]
    if len(dids) == 0:
        raise ResolutionError(f"no did= TXT record for _atproto.{handle}")
    if len(dids) > 1:
        raise ResolutionError(f"multiple did= TXT records for _atproto.{handle}")
    did = dids[0].strip()
    if not is_did(did):
        raise ResolutionError(f"invalid DID in TXT record: {did!r}")
    return did


def _unquote_txt_data(data: str) -> str:
    # DoH answers carry TXT data as one or more quoted character-strings.
    parts = _QUOTED_RE.findall(data)
    if not parts:
        return data
    return "".join(part.replace('\\"', '"') for part in parts)


class DnsHandleResolver:
    """Resolve handles with a TXT lookup through the system DNS resolver."""

    def __init__(self, resolver: Optional[DNSResolver] = None) -> None:
        self._resolver = resolver

    async def resolve(self, handle: str) -> str:
        resolver = self._resolver or DNSResolver()
        results = await resolver.query(f"_atproto.{handle}", "TXT")
        values: List[str] = []
        for result in results or []:
            text = result.text
            if isinstance(text, bytes):
                text = text.decode("utf-8", errors="replace")
            values.append(text)
        return did_from_txt_values(handle, values)


class DohJsonHandleResolver:
    """Resolve handles with a TXT lookup through a DNS-over-HTTPS JSON endpoint."""

    def __init__(self, session: ClientSession, doh_url: str) -> None:
        self._session = session
        self._doh_url = doh_url

    async def resolve(self, handle: str) -> str:
        async with self._session.get(
            self._doh_url,
            params={"name": f"_atproto.{handle}", "type": "TXT"},
            headers={"Accept": "application/dns-json"},
        ) as resp:
            if resp.status != 200:
                raise ResolutionError(f"DoH query returned HTTP {resp.status}")
            body = await resp.json(content_type=None)

        if not isinstance(body, dict):
            raise ResolutionError("DoH response is not a JSON object")
        if body.get("Status") != 0:
            raise ResolutionError(f"DoH query failed with status {body.get('Status')}")

        values = [
            _unquote_txt_data(str(answer.get("data", "")))
            for answer in body.get("Answer", []) or []
            if isinstance(answer, dict) and answer.get("type") == TXT_RECORD_TYPE
        ]
        return did_from_txt_values(handle, values)


class WellKnownHandleResolver:
    """Resolve handles through https://{handle}/.well-known/atproto-did."""

    def __init__(self, session: ClientSession) -> None:
        self._session = session

    async def resolve(self, handle: str) -> str:
        async with self._session.get(
            f"https://{handle}/.well-known/atproto-did"
        ) as resp:
            if resp.status != 200:
                raise ResolutionError(f"well-known endpoint returned HTTP {resp.status}")
            body = await resp.text()

        did = (body or "").strip().split("\n", 1)[0].strip()
        if not is_did(did):
            raise ResolutionError(f"well-known endpoint returned invalid DID {did!r}")
        return did


def describe_failure(exc: BaseException) -> str:
    """Render a resolution failure reason for logs and ResolutionFailed."""
    if isinstance(exc, TimeoutError):
        return "timed out"
    text = str(exc)
    if not text:
        return type(exc).__name__
    return text


class CompositeHandleResolver:
    """
    Race several handle resolution methods against each other.

    Every method starts at once. The first method to return a DID wins and the
    remaining attempts are cancelled. When every method fails, ResolutionFailed
    carries the reason reported by each one.
    """

    def __init__(
        self,
        methods: Mapping[str, HandleResolver],
        timeout: Optional[float] = None,
    ) -> None:
        if len(methods) == 0:
            raise ValueError("CompositeHandleResolver requires at least one method")
        self._methods = dict(methods)
        self._timeout = timeout

    @property
    def methods(self) -> Dict[str, HandleResolver]:
        return dict(self._methods)

    async def _attempt(self, method: HandleResolver, handle: str) -> str:
        async with asyncio.timeout(self._timeout):
            return await method.resolve(handle)

    async def resolve(self, handle: str) -> str:
        """Resolve a handle to a DID using the first method to succeed.

        Args:
            handle: AT Protocol handle to resolve

        Returns:
            DID string

        Raises:
            ResolutionFailed: If every method failed or timed out
        """
        tasks = {
            asyncio.create_task(self._attempt(method, handle), name=f"resolve-{name}"): name
            for name, method in self._methods.items()
        }
        reasons: Dict[str, str] = {}
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                winner: Optional[str] = None
                for task in done:
                    name = tasks[task]
                    exc = task.exception()
                    if exc is None:
                        if winner is None:
                            winner = task.result()
                            logger.debug("Resolved %s via %s", handle, name)
                        continue
                    reasons[name] = describe_failure(exc)
                    if not isinstance(exc, (ResolutionError, TimeoutError, ClientError)):
                        sentry_sdk.capture_exception(exc)
                if winner is not None:
                    return winner
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        raise ResolutionFailed(handle, reasons)
