"""Registry of live interactive sessions."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import structlog

from ..core import metrics
from ..core.errors import CapacityError
from .session import Session

logger = structlog.get_logger(__name__)


class RWLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class SessionRegistry:
    """
    Session ID -> Session map with a concurrency ceiling.

    Lookups take the read side of the lock; register/unregister take the
    write side, so the ceiling check and insert are one atomic step.
    """

    def __init__(self, max_sessions: int):
        self.max_sessions = max_sessions
        self._sessions: Dict[str, Session] = {}
        self._lock = RWLock()

    async def register(self, session: Session) -> None:
        async with self._lock.write():
            if len(self._sessions) >= self.max_sessions:
                raise CapacityError(
                    f"maximum concurrent sessions ({self.max_sessions}) reached"
                )
            self._sessions[session.id] = session
            metrics.active_sessions.set(len(self._sessions))
        logger.info(
            "session_registered",
            session_id=session.id,
            environment_id=session.environment_id,
        )

    async def unregister(self, session_id: str) -> Optional[Session]:
        async with self._lock.write():
            session = self._sessions.pop(session_id, None)
            metrics.active_sessions.set(len(self._sessions))
        if session is not None:
            logger.info("session_unregistered", session_id=session_id)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock.read():
            return self._sessions.get(session_id)

    async def count(self) -> int:
        async with self._lock.read():
            return len(self._sessions)

    async def list_ids(self) -> List[str]:
        async with self._lock.read():
            return list(self._sessions)

    async def for_environment(self, environment_id: str) -> List[Session]:
        async with self._lock.read():
            return [s for s in self._sessions.values() if s.environment_id == environment_id]

    async def close_session(self, session_id: str) -> bool:
        """Administrative close. Returns False for unknown sessions."""
        session = await self.get(session_id)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        async with self._lock.read():
            sessions = list(self._sessions.values())
        for session in sessions:
            await session.close()
        async with self._lock.write():
            for session in sessions:
                self._sessions.pop(session.id, None)
            metrics.active_sessions.set(len(self._sessions))
