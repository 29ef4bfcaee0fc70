"""In-memory stores for OAuth clients and grants, plus the expiry sweeper.

Each store owns one asyncio lock; every mutation runs under it. Reads
re-check expiry so an expired grant is never returned, whether or not the
sweeper has removed it yet.
"""

import asyncio
import logging
import secrets
import time
import uuid
from typing import Callable, Dict, List, Optional

from models import Client, Grant

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class ClientStore:
    """Registered clients keyed by client_id"""

    def __init__(self, clock: Clock = time.time):
        self._clients: Dict[str, Client] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def register(self, redirect_uris: List[str], client_name: Optional[str] = None) -> Client:
        """Create and store a client with a fresh id and secret"""
        async with self._lock:
            client_id = str(uuid.uuid4())
            while client_id in self._clients:
                client_id = str(uuid.uuid4())

            client = Client(
                client_id=client_id,
                client_secret=secrets.token_hex(32),
                client_name=client_name,
                redirect_uris=list(redirect_uris),
                created_at=self._clock(),
            )
            self._clients[client_id] = client
            return client

    def lookup(self, client_id: Optional[str]) -> Optional[Client]:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def count(self) -> int:
        return len(self._clients)


class GrantStore:
    """Authorization codes and access tokens keyed by their opaque value"""

    def __init__(self, clock: Clock = time.time):
        self._grants: Dict[str, Grant] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def now(self) -> float:
        return self._clock()

    async def put(self, key: str, grant: Grant):
        async with self._lock:
            self._grants[key] = grant

    def get(self, key: Optional[str], kind: Optional[str] = None) -> Optional[Grant]:
        """Return the grant if present, unexpired and of the requested kind"""
        if not key:
            return None
        grant = self._grants.get(key)
        if grant is None or grant.is_expired(self._clock()):
            return None
        if kind is not None and grant.kind != kind:
            return None
        return grant

    async def replace(self, old_key: str, new_key: str, new_grant: Grant) -> bool:
        """Atomically consume old_key and store new_grant under new_key.

        Returns False without storing anything when old_key is already gone
        or expired, which is how a second exchange of one code loses.
        """
        async with self._lock:
            old = self._grants.get(old_key)
            if old is None or old.is_expired(self._clock()):
                return False
            del self._grants[old_key]
            self._grants[new_key] = new_grant
            return True

    def keys(self) -> List[str]:
        return list(self._grants.keys())

    def remove_if_expired(self, key: str) -> bool:
        """Delete key when expired. Caller must hold the lock. Safe to repeat."""
        grant = self._grants.get(key)
        if grant is None or not grant.is_expired(self._clock()):
            return False
        self._grants.pop(key, None)
        return True

    def __contains__(self, key: str) -> bool:
        return key in self._grants

    def __len__(self) -> int:
        return len(self._grants)


class ExpirySweeper:
    """Periodic task that purges expired grants from a GrantStore"""

    def __init__(self, grants: GrantStore, interval: float = 300, batch_size: int = 100):
        self.grants = grants
        self.interval = interval
        self.batch_size = batch_size
        self._run_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> int:
        """Run a single pass and return how many grants were removed"""
        async with self._run_lock:
            keys = self.grants.keys()
            removed = 0
            for start in range(0, len(keys), self.batch_size):
                async with self.grants.lock:
                    for key in keys[start:start + self.batch_size]:
                        if self.grants.remove_if_expired(key):
                            removed += 1
                # let request handlers in between batches
                await asyncio.sleep(0)

            if removed:
                logger.info(f"Cleaned up {removed} expired grants, {len(self.grants)} remaining")
            return removed

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Error in grant cleanup task")

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Grant cleanup task started (interval {self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Grant cleanup task stopped")
