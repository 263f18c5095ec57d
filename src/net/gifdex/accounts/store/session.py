"""Persisted session registry state.

Durable keys:
- storedDids: JSON array of DIDs that have a (possibly stale) session
- activeUser: the active DID, absent when signed out

Transient key:
- oauth-session-storage: location to return to after authorization, single use
"""

import json
import logging
from typing import Iterable, List, Optional

from net.gifdex.accounts.resolve.syntax import is_did
from net.gifdex.accounts.store.storage import KeyValueStorage

logger = logging.getLogger(__name__)

STORED_DIDS_KEY = "storedDids"
ACTIVE_USER_KEY = "activeUser"
OAUTH_REDIRECT_KEY = "oauth-session-storage"


class SessionStore:
    """Read and write the persisted identity list and the active identity."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self.storage = storage

    async def load_dids(self) -> List[str]:
        """
        Load the persisted identity list.

        Malformed values are discarded with a warning rather than failing the restore.
        Duplicates are dropped, keeping the first occurrence.
        """
        raw = await self.storage.get(STORED_DIDS_KEY)
        if raw is None:
            return []
        try:
            values = json.loads(raw)
        except ValueError:
            logger.warning("Discarding malformed %s value", STORED_DIDS_KEY)
            return []
        if not isinstance(values, list):
            logger.warning("Discarding non-list %s value", STORED_DIDS_KEY)
            return []

        dids: List[str] = []
        for value in values:
            if isinstance(value, str) and value not in dids:
                dids.append(value)
        return dids

    async def save_dids(self, dids: Iterable[str]) -> None:
        await self.storage.set(STORED_DIDS_KEY, json.dumps(list(dids)))

    async def add_did(self, did: str) -> None:
        dids = await self.load_dids()
        if did not in dids:
            dids.append(did)
            await self.save_dids(dids)

    async def remove_dids(self, *dids: str) -> None:
        stored = await self.load_dids()
        remaining = [did for did in stored if did not in dids]
        if remaining != stored:
            await self.save_dids(remaining)

    async def get_active(self) -> Optional[str]:
        active = await self.storage.get(ACTIVE_USER_KEY)
        if active is not None and not is_did(active):
            logger.warning("Ignoring malformed %s value", ACTIVE_USER_KEY)
            return None
        return active

    async def set_active(self, did: Optional[str]) -> None:
        if did is None:
            await self.storage.delete(ACTIVE_USER_KEY)
        else:
            await self.storage.set(ACTIVE_USER_KEY, did)

    async def clear(self) -> None:
        await self.storage.delete(STORED_DIDS_KEY, ACTIVE_USER_KEY)


class RedirectStore:
    """Single-use storage of the pre-authorization location."""

    def __init__(self, storage: KeyValueStorage, ttl: Optional[int] = None) -> None:
        self.storage = storage
        self.ttl = ttl

    async def save(self, location: str) -> None:
        await self.storage.set(OAUTH_REDIRECT_KEY, location, ttl=self.ttl)

    async def pop(self) -> Optional[str]:
        location = await self.storage.get(OAUTH_REDIRECT_KEY)
        if location is not None:
            await self.storage.delete(OAUTH_REDIRECT_KEY)
        return location

    async def clear(self) -> None:
        await self.storage.delete(OAUTH_REDIRECT_KEY)
