import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from salescall.session import CallSession

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory map of active calls keyed by call id.

    Every mutation of a session happens while holding that call's lock, so two
    webhooks for the same call are processed one after the other while
    different calls proceed in parallel.  Sessions idle longer than the TTL
    are evicted by ``sweep``.
    """

    def __init__(self, ttl_seconds: float = 600.0):
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, CallSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._sessions

    def get(self, call_id: str) -> CallSession | None:
        return self._sessions.get(call_id)

    @asynccontextmanager
    async def lock(self, call_id: str):
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        async with lock:
            yield

    def is_locked(self, call_id: str) -> bool:
        lock = self._locks.get(call_id)
        return lock is not None and lock.locked()

    async def get_or_create(
        self, call_id: str, factory: Callable[[], Awaitable[CallSession]]
    ) -> tuple[CallSession, bool]:
        """Return the session for ``call_id``, creating it with ``factory`` if absent.

        Concurrent callers for the same id all get the same session and
        exactly one of them sees ``created=True``.
        """
        async with self.lock(call_id):
            session = self._sessions.get(call_id)
            if session is not None:
                return session, False
            session = await factory()
            self._sessions[call_id] = session
            logger.info("Session created for %s (%d active)", call_id, len(self._sessions))
            return session, True

    def advance_turn(self, session: CallSession, expected: int | None) -> bool:
        """Compare-and-swap on the session's turn sequence.

        ``expected`` is the sequence number the prompt was issued with.  When
        it no longer matches, the webhook is a provider retry and must not be
        processed again.  Caller holds the session lock.
        """
        if expected is not None and expected != session.turn_seq:
            logger.info(
                "Stale turn %s for %s (current %d)", expected, session.call_id, session.turn_seq
            )
            return False
        session.turn_seq += 1
        return True

    def discard(self, call_id: str) -> CallSession | None:
        session = self._sessions.pop(call_id, None)
        lock = self._locks.get(call_id)
        if lock is not None and not lock.locked():
            self._locks.pop(call_id, None)
        return session

    def sweep(self, now: float | None = None) -> list[CallSession]:
        """Evict sessions idle longer than the TTL and return them.

        Sessions whose lock is held are busy and left alone until the next sweep.
        """
        now = now if now is not None else time.time()
        evicted = []
        for call_id, session in list(self._sessions.items()):
            if now - session.last_activity_at <= self.ttl_seconds:
                continue
            if self.is_locked(call_id):
                continue
            evicted.append(self.discard(call_id))
        if evicted:
            logger.info("Swept %d idle session(s), %d remain", len(evicted), len(self._sessions))
        return evicted
