"""
FastAPI Backend with WebSocket Manager for the Task Board

Serves read-only board views (columns, task summaries, ready/blocked lists,
relation tree, task detail) and pushes change events to connected WebSocket
clients. Writes made through the TaskService hosted by this app are
broadcast directly; writer processes elsewhere post their events to
/api/events via HttpEventPublisher.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings
from .database import TaskBoardDatabase
from .errors import (
    ConflictError,
    NotFoundError,
    NotifierError,
    ProjectNotFoundError,
    TaskBoardError,
    TransactionError,
    ValidationError,
)
from .events import Event, EventPublisher
from .models import Column, Label, Project, RelationType, TaskDetail, TaskReference, TaskSummary, TaskTreeNode
from .service import TaskService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Seconds a writer thread waits for the event loop to accept a broadcast
BROADCAST_TIMEOUT = 2.0

service_instance: Optional[TaskService] = None


class ConnectionManager:
    """
    WebSocket connection manager with per-project subscriptions.

    Each connection subscribes to one project id, or to every project with
    id 0. Broadcasts go out to all matching clients in parallel; a client
    whose send fails is dropped from the registry.
    """

    def __init__(self):
        self.active_connections: Dict[WebSocket, int] = {}
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, project_id: int = 0):
        """Accept a connection, register it, and confirm the subscription to the client."""
        await websocket.accept()
        async with self._connection_lock:
            self.active_connections[websocket] = project_id
        await websocket.send_text(json.dumps({"type": "connected", "project_id": project_id}))
        logger.info(f"WebSocket connected for project {project_id or 'all'}. "
                    f"Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        async with self._connection_lock:
            self.active_connections.pop(websocket, None)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast_event(self, event: Event) -> int:
        """
        Send an event to every client subscribed to its project.

        Args:
            event: Change event to deliver

        Returns:
            Number of clients the event was delivered to
        """
        message = json.dumps(event.model_dump(mode="json"))

        async with self._connection_lock:
            targets = [
                websocket for websocket, project_id in self.active_connections.items()
                if project_id == 0 or project_id == event.project_id
            ]

        if not targets:
            logger.debug(f"No subscribers for project {event.project_id}")
            return 0

        results = await asyncio.gather(
            *(self._send_safe(websocket, message) for websocket in targets),
            return_exceptions=True,
        )
        delivered = sum(1 for result in results if result is True)
        logger.debug(f"Broadcast {event.type.value} for project {event.project_id}: "
                     f"{delivered}/{len(targets)} delivered")
        return delivered

    async def _send_safe(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to WebSocket: {e}")
            await self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        return len(self.active_connections)


class BroadcastPublisher(EventPublisher):
    """
    EventPublisher that hands events to a ConnectionManager running on an event loop.

    The task service is synchronous and may run on any thread. From a foreign
    thread the broadcast is submitted to the loop and awaited; on the loop's
    own thread it is scheduled as a task.
    """

    def __init__(self, manager: ConnectionManager, loop: asyncio.AbstractEventLoop,
                 timeout: float = BROADCAST_TIMEOUT):
        self.manager = manager
        self.loop = loop
        self.timeout = timeout
        # Scheduled broadcasts, held until done so they are not collected early
        self._pending: Set[asyncio.Task] = set()

    def send_event(self, event: Event) -> None:
        if self.loop.is_closed():
            raise NotifierError("event loop is closed")

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            task = self.loop.create_task(self.manager.broadcast_event(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return

        future = asyncio.run_coroutine_threadsafe(self.manager.broadcast_event(event), self.loop)
        try:
            future.result(timeout=self.timeout)
        except Exception as e:
            future.cancel()
            raise NotifierError(f"broadcast failed: {e}") from e


connection_manager = ConnectionManager()


class HealthResponse(BaseModel):
    status: str
    database_connected: bool
    active_websocket_connections: int
    timestamp: str


class BoardResponse(BaseModel):
    """A project's columns in board order with their task summaries keyed by column id."""
    project: Project
    columns: List[Column]
    tasks: Dict[int, List[TaskSummary]]


class EventAccepted(BaseModel):
    delivered: int


def get_service() -> TaskService:
    """
    FastAPI dependency providing the task service.

    Raises:
        HTTPException: If the service has not been initialised
    """
    if service_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return service_instance


def _require_project(service: TaskService, project_id: int) -> Project:
    row = service.db.get_project(project_id)
    if row is None:
        raise ProjectNotFoundError()
    return Project(id=row["id"], name=row["name"], description=row["description"] or "")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and wire the service to the websocket broadcaster."""
    global service_instance

    settings = Settings.from_env()
    logging.getLogger("taskboard").setLevel(settings.log_level)

    try:
        database = TaskBoardDatabase(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
    logger.info(f"Database initialized: {settings.database_path}")

    publisher = BroadcastPublisher(connection_manager, asyncio.get_running_loop())
    service_instance = TaskService(
        database,
        publisher,
        notify_retries=settings.notify_retries,
        notify_base_delay=settings.notify_base_delay,
    )

    yield

    service_instance = None
    database.close()
    logger.info("Database connection closed")


app = FastAPI(
    title="Task Board API",
    description="Read-only board views with real-time change notifications",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(TaskBoardError)
async def task_board_exception_handler(request, exc: TaskBoardError):
    """Map domain errors onto HTTP statuses."""
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    else:
        if isinstance(exc, TransactionError):
            logger.error(f"Store failure: {exc}")
        status_code = 500
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.get("/healthz", response_model=HealthResponse)
def health_check(service: TaskService = Depends(get_service)):
    """Service status including database connectivity and websocket count."""
    database_connected = True
    try:
        service.get_relation_types()
    except TaskBoardError as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_websocket_connections=connection_manager.get_connection_count(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.websocket("/ws/updates")
async def websocket_updates(websocket: WebSocket, project_id: int = 0):
    """
    Stream change events for one project (or all projects when project_id is 0).

    Client messages are read and ignored; the loop only keeps the connection
    open until the client goes away.
    """
    await connection_manager.connect(websocket, project_id)
    try:
        while True:
            data = await websocket.receive_text()
            logger.debug(f"WebSocket received: {data}")
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        await connection_manager.disconnect(websocket)


@app.post("/api/events", response_model=EventAccepted)
async def publish_event(event: Event):
    """Accept an event from an external writer and fan it out to subscribers."""
    delivered = await connection_manager.broadcast_event(event)
    return EventAccepted(delivered=delivered)


@app.get("/api/relation-types", response_model=List[RelationType])
def list_relation_types(service: TaskService = Depends(get_service)):
    return service.get_relation_types()


@app.get("/api/projects/{project_id}/board", response_model=BoardResponse)
def get_board(project_id: int, q: Optional[str] = Query(default=None),
              service: TaskService = Depends(get_service)):
    """
    Board state for a project.

    Args:
        project_id: Project to render
        q: Optional title filter (substring match)
    """
    project = _require_project(service, project_id)
    columns = [Column(**row) for row in service.db.get_columns(project_id)]
    if q:
        tasks = service.get_task_summaries_by_project_filtered(project_id, q)
    else:
        tasks = service.get_task_summaries_by_project(project_id)
    return BoardResponse(project=project, columns=columns, tasks=tasks)


@app.get("/api/projects/{project_id}/columns", response_model=List[Column])
def list_columns(project_id: int, service: TaskService = Depends(get_service)):
    _require_project(service, project_id)
    return [Column(**row) for row in service.db.get_columns(project_id)]


@app.get("/api/projects/{project_id}/labels", response_model=List[Label])
def list_labels(project_id: int, service: TaskService = Depends(get_service)):
    _require_project(service, project_id)
    return [Label(**row) for row in service.db.get_labels(project_id)]


@app.get("/api/projects/{project_id}/references", response_model=List[TaskReference])
def list_task_references(project_id: int, service: TaskService = Depends(get_service)):
    _require_project(service, project_id)
    return service.get_task_references_for_project(project_id)


@app.get("/api/projects/{project_id}/tree", response_model=List[TaskTreeNode])
def get_tree(project_id: int, service: TaskService = Depends(get_service)):
    _require_project(service, project_id)
    return service.get_task_tree_by_project(project_id)


@app.get("/api/projects/{project_id}/ready", response_model=List[TaskSummary])
def list_ready_tasks(project_id: int, service: TaskService = Depends(get_service)):
    """Unblocked tasks in the project's ready column."""
    _require_project(service, project_id)
    return service.get_ready_task_summaries_by_project(project_id)


@app.get("/api/projects/{project_id}/blocked", response_model=List[TaskSummary])
def list_blocked_tasks(project_id: int, service: TaskService = Depends(get_service)):
    _require_project(service, project_id)
    return service.get_blocked_task_summaries_by_project(project_id)


@app.get("/api/projects/{project_id}/in-progress", response_model=List[TaskSummary])
def list_in_progress_tasks(project_id: int, service: TaskService = Depends(get_service)):
    _require_project(service, project_id)
    return service.get_in_progress_task_summaries_by_project(project_id)


@app.get("/api/tasks/{task_id}", response_model=TaskDetail)
def get_task_detail(task_id: int, service: TaskService = Depends(get_service)):
    return service.get_task_detail(task_id)

