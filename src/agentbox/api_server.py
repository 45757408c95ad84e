"""HTTP/WebSocket surface for the orchestrator."""

from contextlib import aclosing, asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sse_starlette.sse import EventSourceResponse
from starlette.websockets import WebSocketState

from . import __version__
from .cluster import ClusterGateway
from .cluster.kubernetes import KubernetesGateway
from .core.config import Config, get_config
from .core.errors import (
    AgentboxError,
    CapacityError,
    ClusterError,
    ExecutionError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from .core.logging import setup_logging
from .models import (
    CreateEnvironmentRequest,
    Environment,
    EnvironmentStatus,
    ExecRequest,
    ExecResponse,
    Execution,
    ExecutionListResponse,
    HealthResponse,
    ListEnvironmentsResponse,
    LogsResponse,
    SubmitExecutionRequest,
    UpdateEnvironmentRequest,
)
from .orchestrator import Orchestrator
from .store import StateStore

logger = structlog.get_logger(__name__)

_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (PreconditionError, 409),
    (CapacityError, 429),
    (ClusterError, 502),
    (ExecutionError, 502),
)

# WebSocket close codes for rejected attach attempts
_WS_CLOSE_CODES = (
    (NotFoundError, 4404),
    (PreconditionError, 4409),
    (CapacityError, 4429),
)


def _status_for(exc: AgentboxError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the session ClientConnection protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def receive_text(self) -> Optional[str]:
        try:
            return await self.websocket.receive_text()
        except WebSocketDisconnect:
            return None

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def close(self, code: int = 1000) -> None:
        if self.websocket.client_state != WebSocketState.DISCONNECTED:
            await self.websocket.close(code=code)


def create_app(
    config: Optional[Config] = None,
    gateway: Optional[ClusterGateway] = None,
    store: Optional[StateStore] = None,
) -> FastAPI:
    """Build the app. Tests inject a fake gateway and a temporary store."""

    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        cfg = config or get_config()
        gw = gateway
        if gw is None:
            gw = KubernetesGateway(
                kubeconfig=cfg.kubernetes.kubeconfig,
                api_timeout=cfg.kubernetes.api_timeout_seconds,
            )
        st = store or StateStore(
            cfg.database.url,
            default_timeout=cfg.database.timeout_seconds,
            auto_create_tables=cfg.database.auto_create_tables,
        )
        orchestrator = Orchestrator(cfg, st, gw)
        await orchestrator.start()
        app_.state.orchestrator = orchestrator
        logger.info("agentbox_api_started")
        try:
            yield
        finally:
            await orchestrator.stop()
            if store is None:
                st.close()
            logger.info("agentbox_api_stopped")

    app = FastAPI(title="Agentbox", version=__version__, lifespan=lifespan)

    @app.exception_handler(AgentboxError)
    async def agentbox_error_handler(request: Request, exc: AgentboxError):
        status = _status_for(exc)
        if status >= 500:
            logger.warning("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "message": str(exc), "code": status},
        )

    def orch(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    # =========================================================================
    # Health & Metrics
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        return await orch(request).get_health_info()

    @app.get("/ready")
    async def ready():
        return {"status": "ready"}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # =========================================================================
    # Environments
    # =========================================================================

    @app.post("/api/v1/environments", response_model=Environment, status_code=201)
    async def create_environment(
        body: CreateEnvironmentRequest,
        request: Request,
        x_user_id: str = Header(default=""),
    ):
        return await orch(request).create_environment(body, user_id=x_user_id)

    @app.get("/api/v1/environments", response_model=ListEnvironmentsResponse)
    async def list_environments(
        request: Request,
        status: Optional[EnvironmentStatus] = None,
        label_selector: str = "",
        limit: int = 100,
        offset: int = 0,
    ):
        return await orch(request).list_environments(status, label_selector, limit, offset)

    @app.get("/api/v1/environments/{env_id}", response_model=Environment)
    async def get_environment(env_id: str, request: Request):
        return await orch(request).get_environment(env_id)

    @app.patch("/api/v1/environments/{env_id}", response_model=Environment)
    async def update_environment(
        env_id: str, body: UpdateEnvironmentRequest, request: Request
    ):
        return await orch(request).update_environment(env_id, body)

    @app.delete("/api/v1/environments/{env_id}", status_code=204)
    async def delete_environment(env_id: str, request: Request, force: bool = False):
        await orch(request).delete_environment(env_id, force=force)
        return Response(status_code=204)

    @app.post("/api/v1/environments/{env_id}/retry", response_model=Environment)
    async def retry_environment(env_id: str, request: Request):
        return await orch(request).retry_reconciliation(env_id)

    @app.post("/api/v1/environments/{env_id}/exec", response_model=ExecResponse)
    async def exec_command(env_id: str, body: ExecRequest, request: Request):
        return await orch(request).exec_sync(env_id, body.command, body.timeout)

    @app.get("/api/v1/environments/{env_id}/logs")
    async def get_logs(
        env_id: str,
        request: Request,
        tail_lines: Optional[int] = None,
        follow: bool = False,
        timestamps: bool = False,
    ):
        orchestrator = orch(request)
        if not follow:
            logs: LogsResponse = await orchestrator.get_logs(env_id, tail_lines, timestamps)
            return logs

        # Resolve the environment up front so unknown IDs get a 404, not an empty stream.
        await orchestrator.get_environment(env_id)

        async def event_generator():
            lines = orchestrator.follow_logs(env_id, tail_lines, timestamps)
            async with aclosing(lines):
                async for line in lines:
                    if await request.is_disconnected():
                        return
                    yield {"event": "log", "data": line}

        return EventSourceResponse(event_generator())

    @app.websocket("/api/v1/environments/{env_id}/attach")
    async def attach(websocket: WebSocket, env_id: str):
        orchestrator: Orchestrator = websocket.app.state.orchestrator
        connection = WebSocketConnection(websocket)
        try:
            session = await orchestrator.open_session(env_id, connection)
        except AgentboxError as e:
            code = next((c for cls, c in _WS_CLOSE_CODES if isinstance(e, cls)), 1011)
            logger.info("attach_rejected", environment_id=env_id, error=str(e))
            await websocket.close(code=code, reason=str(e)[:120])
            return

        try:
            await websocket.accept()
        except Exception:
            await orchestrator.sessions.unregister(session.id)
            raise
        await orchestrator.run_session(session)

    # =========================================================================
    # Executions
    # =========================================================================

    @app.post("/api/v1/executions", response_model=Execution, status_code=202)
    async def submit_execution(
        body: SubmitExecutionRequest,
        request: Request,
        x_user_id: str = Header(default=""),
    ):
        return await orch(request).submit_execution(body, user_id=x_user_id)

    @app.get("/api/v1/executions", response_model=ExecutionListResponse)
    async def list_executions(
        request: Request, environment_id: Optional[str] = None, limit: int = 100
    ):
        return await orch(request).list_executions(environment_id, limit)

    @app.get("/api/v1/executions/{exec_id}", response_model=Execution)
    async def get_execution(exec_id: str, request: Request):
        return await orch(request).get_execution(exec_id)

    @app.delete("/api/v1/executions/{exec_id}", response_model=Execution)
    async def cancel_execution(exec_id: str, request: Request):
        return await orch(request).cancel_execution(exec_id)

    # =========================================================================
    # Pool & sessions
    # =========================================================================

    @app.get("/api/v1/pool")
    async def pool_status(request: Request):
        return {"pools": [p.model_dump() for p in orch(request).get_pool_status()]}

    @app.get("/api/v1/sessions")
    async def list_sessions(request: Request):
        ids = await orch(request).list_sessions()
        return {"sessions": ids, "count": len(ids)}

    @app.delete("/api/v1/sessions/{session_id}", status_code=204)
    async def close_session(session_id: str, request: Request):
        await orch(request).close_session(session_id)
        return Response(status_code=204)

    return app


def main() -> None:
    """Console entry point: run the API server with uvicorn."""
    config = get_config()
    setup_logging(config.server)
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
