"""Bridges client connections to remote shells in environment pods."""

import asyncio
import codecs
import json
from typing import Optional

import structlog

from ..cluster import BytePipe, ClusterGateway
from ..core.config import ProxyConfig
from ..core.errors import NotFoundError, PreconditionError
from ..models import EnvironmentStatus, SessionMessage
from ..pods import MAIN_POD_NAME
from ..store import StateStore
from .registry import SessionRegistry
from .session import ClientConnection, Session

logger = structlog.get_logger(__name__)

# Time allowed for output relays to flush after the remote process exits
FLUSH_TIMEOUT_SECONDS = 2.0


class SessionProxy:
    """
    Opens sessions against running environments and runs their relays.

    The registry is injected so tests (and multiple proxies) can each own one.
    """

    def __init__(
        self,
        store: StateStore,
        gateway: ClusterGateway,
        registry: SessionRegistry,
        config: Optional[ProxyConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.registry = registry
        self.config = config or ProxyConfig()

    async def open(self, environment_id: str, connection: ClientConnection) -> Session:
        """Check preconditions and reserve a registry slot. No cluster calls."""
        env = await self.store.get_environment(environment_id)
        if env is None:
            raise NotFoundError("environment", environment_id)
        if env.status != EnvironmentStatus.RUNNING:
            raise PreconditionError(
                f"environment {environment_id} is not running (status: {env.status.value})"
            )
        session = Session(env.id, env.namespace, MAIN_POD_NAME, connection)
        await self.registry.register(session)
        return session

    async def attach(self, environment_id: str, connection: ClientConnection) -> Session:
        """open() then run() in one call."""
        session = await self.open(environment_id, connection)
        await self.run(session)
        return session

    async def run(self, session: Session) -> None:
        """Relay until either side ends, then close and deregister the session."""
        try:
            session.exec_task = asyncio.create_task(
                self.gateway.exec_in_pod(
                    session.namespace,
                    session.pod_name,
                    [self.config.shell],
                    stdin=session.stdin,
                    stdout=session.stdout,
                    stderr=session.stderr,
                )
            )
            outputs = [
                asyncio.create_task(self._pump_output(session, session.stdout, "stdout")),
                asyncio.create_task(self._pump_output(session, session.stderr, "stderr")),
            ]
            session.relays = [asyncio.create_task(self._pump_input(session)), *outputs]
            session.state = "active"
            logger.info(
                "session_started",
                session_id=session.id,
                environment_id=session.environment_id,
                pod=session.pod_name,
            )

            done, _ = await asyncio.wait(
                [session.exec_task, *session.relays], return_when=asyncio.FIRST_COMPLETED
            )

            exit_code = None
            if session.exec_task in done:
                exit_code = self._exit_code(session)
                # Remote side closed stdout/stderr; let the relays drain them.
                await asyncio.wait(outputs, timeout=FLUSH_TIMEOUT_SECONDS)
            else:
                for task in done:
                    if not task.cancelled() and task.exception() is not None:
                        logger.warning(
                            "session_relay_failed",
                            session_id=session.id,
                            error=str(task.exception()),
                        )
            await session.close(exit_code)
        finally:
            # Covers cancellation of run() itself.
            await session.close()
            await self.registry.unregister(session.id)

    @staticmethod
    def _exit_code(session: Session) -> Optional[int]:
        task = session.exec_task
        if task is None or task.cancelled():
            return None
        if task.exception() is not None:
            logger.warning(
                "session_exec_failed", session_id=session.id, error=str(task.exception())
            )
            return None
        return task.result()

    async def _pump_input(self, session: Session) -> None:
        """Client frames -> pod stdin. Only stdin frames are forwarded."""
        while True:
            text = await session.connection.receive_text()
            if text is None:
                logger.info("session_client_disconnected", session_id=session.id)
                return
            try:
                message = SessionMessage.model_validate(json.loads(text))
            except ValueError:
                logger.debug("session_frame_ignored", session_id=session.id)
                continue
            if message.type != "stdin" or not message.data:
                continue
            await session.stdin.write(message.data.encode("utf-8"))

    async def _pump_output(self, session: Session, pipe: BytePipe, stream: str) -> None:
        """Pod stdout/stderr -> framed client messages."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        chunk_size = self.config.read_chunk_bytes
        while True:
            chunk = await pipe.read()
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await session.send(SessionMessage(type=stream, data=tail))
                return
            for i in range(0, len(chunk), chunk_size):
                data = decoder.decode(chunk[i : i + chunk_size])
                if data:
                    await session.send(SessionMessage(type=stream, data=data))
