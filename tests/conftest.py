import sys
from pathlib import Path

import pytest

# Ensure `src/` is importable in tests without installing the package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
TESTS = Path(__file__).resolve().parent
if str(TESTS) not in sys.path:
    sys.path.insert(0, str(TESTS))

from agentbox.core.config import Config  # noqa: E402
from agentbox.models import Environment, EnvironmentStatus, ResourceSpec  # noqa: E402
from agentbox.store import StateStore  # noqa: E402
from fakes import FakeClusterGateway  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Small, fast settings for unit tests."""
    return Config.from_mapping(
        {
            "kubernetes": {"namespace_prefix": "agentbox-", "runtime_class": "gvisor"},
            "timeouts": {
                "startup_timeout": 5,
                "cleanup_timeout": 2,
                "execution_default_timeout": 10,
                "execution_max_timeout": 60,
                "default_timeout": 10,
                "max_timeout": 60,
            },
            "pool": {"size": 2, "interval_seconds": 1},
            "reconciliation": {"interval_seconds": 10, "max_retries": 3},
            "executions": {"workers": 2, "queue_size": 10},
            "proxy": {"max_sessions": 2},
            "database": {"url": f"sqlite:///{tmp_path / 'agentbox-test.db'}"},
        }
    )


@pytest.fixture
def store(config: Config):
    s = StateStore(config.database.url)
    yield s
    s.close()


@pytest.fixture
def gateway() -> FakeClusterGateway:
    return FakeClusterGateway()


@pytest.fixture
def make_environment(store: StateStore, gateway: FakeClusterGateway):
    """Persist an environment; running ones also get a namespace and main pod."""

    async def _make(
        env_id: str = "env-test0001",
        status: EnvironmentStatus = EnvironmentStatus.RUNNING,
        **fields,
    ) -> Environment:
        fields.setdefault("name", "sandbox")
        fields.setdefault("image", "python:3.11-slim")
        fields.setdefault("namespace", f"agentbox-{env_id}")
        fields.setdefault(
            "resources", ResourceSpec(cpu="500m", memory="512Mi", storage="1Gi")
        )
        env = Environment(id=env_id, status=status, **fields)
        await store.save_environment(env)
        if status == EnvironmentStatus.RUNNING:
            gateway.seed_pod(env.namespace, "main")
        return env

    return _make
