"""One interactive session: a client connection bridged to a remote shell."""

import asyncio
import secrets
import time
from datetime import datetime
from typing import List, Optional, Protocol

import structlog

from ..cluster import BytePipe
from ..models import SessionMessage, utcnow

logger = structlog.get_logger(__name__)


class ClientConnection(Protocol):
    """Duplex text-frame connection to the client (e.g. a WebSocket)."""

    async def receive_text(self) -> Optional[str]:
        """Next frame, or None once the client has gone away."""
        ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


def new_session_id(namespace: str, pod_name: str) -> str:
    return f"{namespace}-{pod_name}-{int(time.time())}-{secrets.token_hex(2)}"


class Session:
    """
    Session state: connecting -> active -> closed.

    close() runs at most once; the closed flag and stream handles are
    guarded by a per-session lock.
    """

    def __init__(
        self,
        environment_id: str,
        namespace: str,
        pod_name: str,
        connection: ClientConnection,
    ):
        self.id = new_session_id(namespace, pod_name)
        self.environment_id = environment_id
        self.namespace = namespace
        self.pod_name = pod_name
        self.connection = connection
        self.created_at: datetime = utcnow()
        self.state = "connecting"

        self.stdin = BytePipe()
        self.stdout = BytePipe()
        self.stderr = BytePipe()

        self.exec_task: Optional[asyncio.Task] = None
        self.relays: List[asyncio.Task] = []
        self.exit_code: Optional[int] = None

        self._lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: SessionMessage) -> None:
        async with self._send_lock:
            await self.connection.send_text(message.model_dump_json(exclude_none=True))

    async def close(self, exit_code: Optional[int] = None) -> bool:
        """Tear the session down. Returns False if it was already closed."""
        async with self._lock:
            if self._closed:
                return False
            self._closed = True
            self.state = "closed"
            if exit_code is not None:
                self.exit_code = exit_code

            current = asyncio.current_task()
            for task in [self.exec_task, *self.relays]:
                if task is not None and task is not current and not task.done():
                    task.cancel()
            self.stdin.close()
            self.stdout.close()
            self.stderr.close()

            try:
                await self.send(SessionMessage(type="exit", exit_code=self.exit_code))
            except Exception as e:
                # Client may already be gone.
                logger.debug("session_exit_frame_not_sent", session_id=self.id, error=str(e))
            try:
                await self.connection.close()
            except Exception as e:
                logger.debug("session_connection_close_failed", session_id=self.id, error=str(e))

        logger.info("session_closed", session_id=self.id, exit_code=self.exit_code)
        return True
