"""
Resume Pipeline — Distributed Session Lock

Mutual exclusion keyed by session id across every process sharing the
same database. One row per held lock in `session_locks`; the PRIMARY KEY
on session_id is the lock.

Acquire:
  1. Purge rows past their expiry (lazy cleanup, no sweeper).
  2. INSERT a row owned by this acquisition. A unique violation means the
     lock is held elsewhere: poll every 0.5s, give up after 30s with
     LockTimeout.
  3. Any other store error counts toward a consecutive-error budget; after
     3 in a row the caller gets LockUnavailable instead of "busy".

While held, the row's expiry is pushed forward every 60s. Release deletes
only the row this acquisition owns, so a lock that expired and was taken
over by someone else is never removed from under them. A crashed holder's
row expires after 120s and is purged by the next acquirer.

Usage:
    lock = SessionLock(db)
    result = await lock.with_lock("sess-1", do_work)

    async with lock.hold("sess-1"):
        ...

    await lock.release_all()  # on shutdown
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from runtime.db import PIPELINE_SCHEMA, DatabaseBackend, UniqueViolation

logger = logging.getLogger("resume_pipeline.session_lock")

T = TypeVar("T")


class LockTimeout(Exception):
    """Raised when the lock could not be acquired within the max wait."""
    pass


class LockUnavailable(Exception):
    """Raised when the lock store keeps failing (outage, not contention)."""
    pass


def _instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SessionLock:
    def __init__(
        self,
        db: DatabaseBackend,
        expiry_seconds: float = 120.0,
        poll_interval_seconds: float = 0.5,
        max_wait_seconds: float = 30.0,
        renew_interval_seconds: float = 60.0,
        max_consecutive_errors: int = 3,
        instance_id: str | None = None,
    ):
        self.db = db
        self.expiry_seconds = expiry_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_wait_seconds = max_wait_seconds
        self.renew_interval_seconds = renew_interval_seconds
        self.max_consecutive_errors = max_consecutive_errors
        self.instance_id = instance_id or _instance_id()
        self._owned: dict[str, str] = {}  # session_id → owner token
        self.db.executescript(PIPELINE_SCHEMA)

    # ─── Store round trips (sync, run off-loop) ──────────────────────

    def _try_acquire(self, session_id: str, owner: str) -> bool:
        now = time.time()
        self.db.execute("DELETE FROM session_locks WHERE expires_at < ?", (now,))
        try:
            self.db.execute(
                "INSERT INTO session_locks (session_id, owner, locked_at, expires_at) VALUES (?, ?, ?, ?)",
                (session_id, owner, now, now + self.expiry_seconds),
            )
        except UniqueViolation:
            return False
        return True

    def _release(self, session_id: str, owner: str) -> None:
        self.db.execute(
            "DELETE FROM session_locks WHERE session_id = ? AND owner = ?",
            (session_id, owner),
        )

    def _renew(self, session_id: str, owner: str) -> bool:
        cursor = self.db.execute(
            "UPDATE session_locks SET expires_at = ? WHERE session_id = ? AND owner = ?",
            (time.time() + self.expiry_seconds, session_id, owner),
        )
        return (cursor.rowcount or 0) > 0

    def _count_active(self) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM session_locks WHERE expires_at >= ?", (time.time(),)
        )
        return int(row["n"]) if row else 0

    # ─── Acquire / release ───────────────────────────────────────────

    async def acquire(self, session_id: str) -> str:
        """Wait for the lock. Returns the owner token needed for release."""
        owner = f"{self.instance_id}:{uuid.uuid4().hex[:12]}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_wait_seconds
        consecutive_errors = 0

        while True:
            try:
                if await asyncio.to_thread(self._try_acquire, session_id, owner):
                    self._owned[session_id] = owner
                    logger.debug("Session lock acquired: %s", session_id,
                                 extra={"structured": {"session_id": session_id, "owner": owner}})
                    return owner
                consecutive_errors = 0
            except Exception as e:  # store outage, not contention
                consecutive_errors += 1
                logger.error(
                    "Lock acquisition DB error (%d consecutive): %s", consecutive_errors, e,
                    extra={"structured": {"session_id": session_id}},
                )
                if consecutive_errors >= self.max_consecutive_errors:
                    raise LockUnavailable(
                        f"Lock store unavailable after {consecutive_errors} consecutive errors"
                    ) from e

            if loop.time() + self.poll_interval_seconds > deadline:
                raise LockTimeout(
                    f"Timed out waiting for lock on session {session_id} "
                    f"after {self.max_wait_seconds}s"
                )
            await asyncio.sleep(self.poll_interval_seconds)

    async def release(self, session_id: str, owner: str) -> None:
        if self._owned.get(session_id) == owner:
            del self._owned[session_id]
        try:
            await asyncio.to_thread(self._release, session_id, owner)
        except Exception as e:  # row expires on its own
            logger.error("Failed to release session lock %s: %s", session_id, e)

    async def _renew_loop(self, session_id: str, owner: str) -> None:
        while True:
            await asyncio.sleep(self.renew_interval_seconds)
            try:
                still_owned = await asyncio.to_thread(self._renew, session_id, owner)
            except Exception as e:
                logger.warning("Failed to renew session lock %s: %s", session_id, e)
                continue
            if not still_owned:
                logger.warning("Session lock no longer owned during renew: %s", session_id)
                if self._owned.get(session_id) == owner:
                    del self._owned[session_id]
                return

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[str]:
        owner = await self.acquire(session_id)
        renewer = asyncio.create_task(self._renew_loop(session_id, owner))
        try:
            yield owner
        finally:
            renewer.cancel()
            await self.release(session_id, owner)

    async def with_lock(self, session_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn while holding the session lock. Released even if fn raises."""
        async with self.hold(session_id):
            return await fn()

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def release_all(self) -> int:
        """Release every lock this instance holds. Called on shutdown."""
        owned = list(self._owned.items())
        if not owned:
            logger.info("No instance-owned session locks to release")
            return 0
        released = 0
        for session_id, owner in owned:
            try:
                await asyncio.to_thread(self._release, session_id, owner)
            except Exception as e:
                logger.error("Failed to release session lock %s on shutdown: %s", session_id, e)
                continue
            self._owned.pop(session_id, None)
            released += 1
        logger.info("Released %d/%d instance-owned session locks", released, len(owned))
        return released

    async def active_count(self) -> int:
        """Unexpired locks across all instances."""
        return await asyncio.to_thread(self._count_active)

    def owned_sessions(self) -> list[str]:
        return list(self._owned)

    def stats(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "owned": len(self._owned),
            "expiry_seconds": self.expiry_seconds,
            "max_wait_seconds": self.max_wait_seconds,
        }
