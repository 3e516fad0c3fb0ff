"""FastAPI app exposing the board over HTTP and WebSocket.

Routes::

    GET    /health
    GET    /api/board | /api/stats | /api/context
    GET    /api/tasks?query=&lane=
    POST   /api/tasks            POST /api/tasks/batch
    GET    /api/tasks/{task_id}  PATCH /api/tasks/{task_id}  DELETE /api/tasks/{task_id}
    POST   /api/tasks/{task_id}/move
    GET    /api/tools            POST /api/tools/{name}
    WS     /ws?board=<board id>
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Body, FastAPI, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict

from ..config import BoardSettings, build_storage
from ..errors import BoardEngineError, error_response, status_code_for
from ..events.ws import BoardSyncHub
from ..task_engine.service import BoardService
from ..validation import validate_lane
from .tools import BoardTools


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class TaskPayload(BaseModel):
    """Task fields as sent by clients.  Values are checked by the engine's validators."""

    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    description: Optional[str] = None
    lane: Optional[str] = None
    priority: Optional[str] = None
    estimatedHours: Optional[Any] = None
    tags: Optional[list[Any]] = None
    status: Optional[str] = None
    assignee: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class UpdateTaskRequest(TaskPayload):
    expectedVersion: Optional[int] = None


class MoveTaskRequest(BaseModel):
    lane: str
    expectedVersion: Optional[int] = None


class BatchCreateRequest(BaseModel):
    tasks: list[Any]


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_board_router(service: BoardService, tools: BoardTools) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["board"])

    @router.get("/board")
    async def get_board() -> dict[str, Any]:
        return (await service.get_board()).to_dict()

    @router.get("/stats")
    async def get_stats() -> dict[str, Any]:
        return await service.get_stats()

    @router.get("/context")
    async def get_context() -> dict[str, Any]:
        return {"context": await service.get_context()}

    @router.get("/tasks")
    async def list_tasks(
        query: Optional[str] = Query(None),
        lane: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        if query:
            tasks = await service.search_tasks(query, lane)
        else:
            board = await service.get_board()
            tasks = board.tasks_in_lane(validate_lane(lane)) if lane else board.all_tasks()
        data = [t.to_dict() for t in tasks]
        return {"tasks": data, "total": len(data)}

    @router.post("/tasks", status_code=201)
    async def create_task(body: TaskPayload) -> dict[str, Any]:
        task = await service.create_task(body.model_dump(exclude_unset=True))
        return {"task": task.to_dict()}

    @router.post("/tasks/batch", status_code=201)
    async def batch_create(body: BatchCreateRequest) -> dict[str, Any]:
        tasks = await service.batch_create(body.tasks)
        data = [t.to_dict() for t in tasks]
        return {"tasks": data, "total": len(data)}

    @router.get("/tasks/{task_id}")
    async def get_task(task_id: str) -> dict[str, Any]:
        return {"task": (await service.get_task(task_id)).to_dict()}

    @router.patch("/tasks/{task_id}")
    async def update_task(task_id: str, body: UpdateTaskRequest) -> dict[str, Any]:
        patch = body.model_dump(exclude_unset=True)
        expected = patch.pop("expectedVersion", None)
        task = await service.update_task(task_id, patch, expected)
        return {"task": task.to_dict()}

    @router.delete("/tasks/{task_id}")
    async def delete_task(task_id: str) -> dict[str, Any]:
        removed = await service.delete_task(task_id)
        return {"taskId": task_id, "deleted": removed}

    @router.post("/tasks/{task_id}/move")
    async def move_task(task_id: str, body: MoveTaskRequest) -> dict[str, Any]:
        task = await service.move_task(task_id, body.lane, body.expectedVersion)
        return {"task": task.to_dict()}

    @router.get("/tools")
    async def list_tools() -> dict[str, Any]:
        return {"tools": tools.definitions()}

    @router.post("/tools/{name}")
    async def invoke_tool(name: str, args: Optional[dict[str, Any]] = Body(None)) -> dict[str, Any]:
        return await tools.invoke(name, args or {})

    return router


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    service: Optional[BoardService] = None,
    hub: Optional[BoardSyncHub] = None,
    settings: Optional[BoardSettings] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Board service to expose. Built from *settings* when omitted.
        hub: WebSocket hub. Built from *settings* when omitted.
        settings: Loaded settings; defaults apply when omitted.
        enable_cors: Whether to enable permissive CORS.

    Returns:
        Configured FastAPI app.
    """
    settings = settings or BoardSettings()
    if service is None:
        service = BoardService(
            build_storage(settings),
            cache_ttl=settings.cache_ttl,
            transitions=settings.transitions,
        )
    if hub is None:
        hub = BoardSyncHub(heartbeat_interval=settings.heartbeat_interval)
    hub.attach(service.bus)
    tools = BoardTools(service, production=settings.production)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await service.initialize()
        logger.info("Lane board API ready ({} storage)", type(service.storage).__name__)
        try:
            yield
        finally:
            await hub.shutdown()
            await service.close()

    app = FastAPI(
        title="Lane Board",
        description="Lane-based task board with live WebSocket sync",
        version="1.0.0",
        lifespan=lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.service = service
    app.state.hub = hub
    app.state.tools = tools
    app.state.settings = settings

    @app.exception_handler(BoardEngineError)
    async def _engine_error(request: Request, exc: BoardEngineError) -> JSONResponse:
        return JSONResponse(
            status_code=status_code_for(exc),
            content=error_response(exc, production=settings.production),
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=500, content=error_response(exc, production=settings.production))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        payload = await service.health()
        payload["clients"] = hub.client_count
        return payload

    app.include_router(create_board_router(service, tools))

    @app.websocket("/ws")
    async def board_sync(websocket: WebSocket, board: Optional[str] = Query(None)) -> None:
        await hub.handle_connection(websocket, board_id=board)

    return app
