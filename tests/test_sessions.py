"""Tests for interactive sessions and the session proxy."""

import asyncio
import json
from typing import List, Optional

import pytest
from agentbox.core.config import ProxyConfig
from agentbox.core.errors import CapacityError, NotFoundError, PreconditionError
from agentbox.models import EnvironmentStatus
from agentbox.sessions import RWLock, Session, SessionProxy, SessionRegistry
from fakes import echo_shell


class FakeConnection:
    """Scripted client side of a session; put None to simulate a disconnect."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[dict] = []
        self.closed_with: Optional[int] = None

    async def receive_text(self) -> Optional[str]:
        return await self.incoming.get()

    async def send_text(self, data: str) -> None:
        if self.closed_with is not None:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    async def type(self, text: str) -> None:
        await self.incoming.put(json.dumps({"type": "stdin", "data": text}))

    def frames(self, kind: str) -> List[dict]:
        return [f for f in self.sent if f["type"] == kind]

    def output(self) -> str:
        return "".join(f["data"] for f in self.frames("stdout"))


async def _until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def registry(config) -> SessionRegistry:
    return SessionRegistry(config.proxy.max_sessions)


@pytest.fixture
def proxy(store, gateway, registry, config) -> SessionProxy:
    gateway.exec_handler = echo_shell
    return SessionProxy(store, gateway, registry, config.proxy)


class TestOpen:
    @pytest.mark.asyncio
    async def test_unknown_environment(self, proxy, gateway):
        with pytest.raises(NotFoundError):
            await proxy.open("env-missing", FakeConnection())
        assert gateway.called("exec_in_pod") == 0

    @pytest.mark.asyncio
    async def test_not_running_is_rejected_before_exec(
        self, proxy, gateway, registry, make_environment
    ):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        with pytest.raises(PreconditionError):
            await proxy.open(env.id, FakeConnection())
        assert gateway.called("exec_in_pod") == 0
        assert await registry.count() == 0

    @pytest.mark.asyncio
    async def test_session_ceiling(self, proxy, registry, make_environment):
        env = await make_environment()
        first = await proxy.open(env.id, FakeConnection())
        second = await proxy.open(env.id, FakeConnection())

        with pytest.raises(CapacityError):
            await proxy.open(env.id, FakeConnection())

        # Existing sessions are untouched by the rejection.
        assert sorted(await registry.list_ids()) == sorted([first.id, second.id])
        assert not first.closed and not second.closed

    @pytest.mark.asyncio
    async def test_session_id_format(self, proxy, make_environment):
        env = await make_environment()
        session = await proxy.open(env.id, FakeConnection())
        assert session.id.startswith(f"{env.namespace}-main-")
        assert session.pod_name == "main"
        assert session.state == "connecting"


class TestRelay:
    @pytest.mark.asyncio
    async def test_echo_and_exit(self, proxy, gateway, registry, make_environment):
        env = await make_environment()
        conn = FakeConnection()
        session = await proxy.open(env.id, conn)
        runner = asyncio.create_task(proxy.run(session))

        await conn.type("hello\n")
        await _until(lambda: conn.output() == "hello\n")
        await conn.type("exit\n")
        await asyncio.wait_for(runner, timeout=2)

        [exit_frame] = conn.frames("exit")
        assert exit_frame["exit_code"] == 0
        assert conn.closed_with == 1000
        assert session.state == "closed"
        assert await registry.count() == 0
        assert gateway.exec_commands == [["/bin/sh"]]

    @pytest.mark.asyncio
    async def test_client_disconnect(self, proxy, registry, make_environment):
        env = await make_environment()
        conn = FakeConnection()
        session = await proxy.open(env.id, conn)
        runner = asyncio.create_task(proxy.run(session))

        await conn.incoming.put(None)
        await asyncio.wait_for(runner, timeout=2)

        assert session.closed
        await _until(lambda: session.exec_task.done())
        assert session.exec_task.cancelled()
        assert await registry.count() == 0
        [exit_frame] = conn.frames("exit")
        assert "exit_code" not in exit_frame

    @pytest.mark.asyncio
    async def test_invalid_frames_are_ignored(self, proxy, make_environment):
        env = await make_environment()
        conn = FakeConnection()
        session = await proxy.open(env.id, conn)
        runner = asyncio.create_task(proxy.run(session))

        await conn.incoming.put("not json")
        await conn.incoming.put(json.dumps({"type": "resize", "data": "80x24"}))
        await conn.incoming.put(json.dumps({"data": "no type"}))
        await conn.type("still alive\n")
        await _until(lambda: conn.output() == "still alive\n")

        await conn.type("exit\n")
        await asyncio.wait_for(runner, timeout=2)

    @pytest.mark.asyncio
    async def test_output_is_chunked_without_breaking_utf8(
        self, store, gateway, registry, make_environment
    ):
        env = await make_environment()
        text = "héllo wörld ✓"

        async def speak(command, stdin, stdout, stderr):
            await stdout.write(text.encode("utf-8"))
            return 0

        gateway.exec_handler = speak
        proxy = SessionProxy(store, gateway, registry, ProxyConfig(read_chunk_bytes=3))
        conn = FakeConnection()
        await proxy.attach(env.id, conn)

        frames = conn.frames("stdout")
        assert len(frames) > 1
        assert all("\ufffd" not in f["data"] for f in frames)
        assert conn.output() == text
        assert conn.frames("exit")[0]["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_exec_failure_closes_session(
        self, proxy, gateway, registry, make_environment
    ):
        env = await make_environment()
        del gateway.pods[(env.namespace, "main")]
        conn = FakeConnection()

        await asyncio.wait_for(proxy.attach(env.id, conn), timeout=2)

        assert conn.closed_with is not None
        assert "exit_code" not in conn.frames("exit")[0]
        assert await registry.count() == 0


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        conn = FakeConnection()
        session = Session("env-1", "agentbox-env-1", "main", conn)

        assert await session.close(exit_code=7) is True
        assert await session.close() is False
        assert len(conn.frames("exit")) == 1
        assert conn.frames("exit")[0]["exit_code"] == 7

    @pytest.mark.asyncio
    async def test_concurrent_close_runs_once(self):
        conn = FakeConnection()
        session = Session("env-1", "agentbox-env-1", "main", conn)

        results = await asyncio.gather(*(session.close() for _ in range(5)))

        assert results.count(True) == 1
        assert len(conn.frames("exit")) == 1

    @pytest.mark.asyncio
    async def test_admin_close_ends_run(self, proxy, registry, make_environment):
        env = await make_environment()
        conn = FakeConnection()
        session = await proxy.open(env.id, conn)
        runner = asyncio.create_task(proxy.run(session))
        await _until(lambda: session.state == "active")

        assert await registry.close_session(session.id) is True
        await asyncio.wait_for(runner, timeout=2)

        assert await registry.count() == 0
        assert await registry.close_session(session.id) is False

    @pytest.mark.asyncio
    async def test_close_all(self, proxy, registry, make_environment):
        env = await make_environment()
        conns = [FakeConnection(), FakeConnection()]
        sessions = [await proxy.open(env.id, c) for c in conns]

        await registry.close_all()

        assert await registry.count() == 0
        assert all(s.closed for s in sessions)
        assert all(c.closed_with == 1000 for c in conns)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_for_environment(self, registry):
        a = Session("env-a", "ns-a", "main", FakeConnection())
        b = Session("env-b", "ns-b", "main", FakeConnection())
        await registry.register(a)
        await registry.register(b)

        assert await registry.for_environment("env-a") == [a]
        assert await registry.get(b.id) is b
        assert await registry.unregister(b.id) is b
        assert await registry.unregister(b.id) is None


class TestRWLock:
    @pytest.mark.asyncio
    async def test_readers_share(self):
        lock = RWLock()
        inside = 0
        peak = 0

        async def reader():
            nonlocal inside, peak
            async with lock.read():
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(reader(), reader(), reader())
        assert peak == 3

    @pytest.mark.asyncio
    async def test_writer_is_exclusive(self):
        lock = RWLock()
        order = []
        reader_in = asyncio.Event()
        release_reader = asyncio.Event()

        async def reader():
            async with lock.read():
                reader_in.set()
                await release_reader.wait()
                order.append("reader-done")

        async def writer():
            await reader_in.wait()
            async with lock.write():
                order.append("writer")

        tasks = [asyncio.create_task(reader()), asyncio.create_task(writer())]
        await asyncio.sleep(0.02)
        assert order == []
        release_reader.set()
        await asyncio.gather(*tasks)
        assert order == ["reader-done", "writer"]
