"""Registry of live sandboxes.

The registry is the only shared mutable structure in the process. It
tracks which sandbox belongs to which session so an operator can stop
runaway work, and it guarantees teardown never leaves stale entries
behind.

One instance is constructed at application startup and injected into
every component that needs it. Sandboxes are process-local, so a restart
orphans whatever was running; the application logs this at startup.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from src.aicoder.sandbox.provider import SandboxHandle

logger = logging.getLogger(__name__)


@dataclass
class SandboxSession:
    """A registered sandbox.

    Attributes:
        session_id: Caller-supplied id correlating to one pipeline run.
        handle: The live sandbox.
        provisioned_at: When the sandbox was registered (UTC).
    """

    session_id: str
    handle: SandboxHandle
    provisioned_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class SessionAlreadyRegisteredError(Exception):
    """Raised when a session id already owns a live sandbox.

    Attributes:
        session_id: The conflicting session id.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already has an active sandbox: {session_id}")


class SandboxRegistry:
    """Tracks live sandboxes by session id.

    All mutations happen under an asyncio.Lock. Teardown of the sandbox
    itself happens outside the lock so a slow kill never blocks other
    sessions. Teardown failures are logged and the entry is removed anyway.

    Attributes:
        on_count_change: Optional callback invoked with the new active
            count after every registration or removal.
    """

    def __init__(self, on_count_change: Optional[Callable[[int], None]] = None):
        self.on_count_change = on_count_change
        self._sessions: Dict[str, SandboxSession] = {}
        self._cancelled: Set[str] = set()
        self._lock = asyncio.Lock()

    def _count_changed(self) -> None:
        if self.on_count_change is not None:
            self.on_count_change(len(self._sessions))

    async def register(self, session_id: str, handle: SandboxHandle) -> SandboxSession:
        """Register a sandbox for a session.

        Raises:
            SessionAlreadyRegisteredError: If the session already owns one.
        """
        async with self._lock:
            if session_id in self._sessions:
                raise SessionAlreadyRegisteredError(session_id)
            session = SandboxSession(session_id=session_id, handle=handle)
            self._sessions[session_id] = session
            self._cancelled.discard(session_id)
            self._count_changed()

        logger.info(
            "Sandbox registered",
            extra={"session_id": session_id, "sandbox_id": handle.sandbox_id},
        )
        return session

    async def get(self, session_id: str) -> Optional[SandboxSession]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def unregister(self, session_id: str) -> Optional[SandboxSession]:
        """Remove a session without tearing its sandbox down."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._count_changed()
        if session is not None:
            logger.info("Sandbox unregistered", extra={"session_id": session_id})
        return session

    async def _teardown(self, session: SandboxSession) -> bool:
        try:
            await session.handle.kill()
            return True
        except Exception as e:
            logger.error(
                "Failed to kill sandbox",
                extra={
                    "session_id": session.session_id,
                    "sandbox_id": session.handle.sandbox_id,
                    "error": str(e),
                },
            )
            return False

    async def kill(self, session_id: str) -> bool:
        """Kill one session's sandbox on operator request.

        The session is marked cancelled so the owning pipeline reports it
        as such.

        Returns:
            True if a sandbox was found and torn down cleanly.
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                logger.info("No active sandbox for session", extra={"session_id": session_id})
                return False
            self._cancelled.add(session_id)
            self._count_changed()

        logger.info(
            "Killing sandbox",
            extra={"session_id": session_id, "sandbox_id": session.handle.sandbox_id},
        )
        return await self._teardown(session)

    async def kill_all(self) -> int:
        """Kill every registered sandbox.

        Operates on a snapshot taken under the lock; sessions registered
        while this runs are not affected.

        Returns:
            Number of sandboxes torn down cleanly.
        """
        async with self._lock:
            snapshot: List[SandboxSession] = list(self._sessions.values())
            for session in snapshot:
                del self._sessions[session.session_id]
                self._cancelled.add(session.session_id)
            self._count_changed()

        killed = 0
        for session in snapshot:
            if await self._teardown(session):
                killed += 1

        logger.info(
            "Killed sandboxes",
            extra={"killed": killed, "total": len(snapshot)},
        )
        return killed

    async def release(self, session_id: str) -> None:
        """Unregister and tear down a session's sandbox after normal completion.

        Safe to call when the session was already killed.
        """
        session = await self.unregister(session_id)
        if session is not None:
            await self._teardown(session)

    def was_cancelled(self, session_id: str) -> bool:
        """True if an operator killed this session."""
        return session_id in self._cancelled

    def forget(self, session_id: str) -> None:
        """Drop the cancellation marker once the pipeline has reported it."""
        self._cancelled.discard(session_id)

    def active_count(self) -> int:
        return len(self._sessions)

    def session_ids(self) -> List[str]:
        return list(self._sessions)
