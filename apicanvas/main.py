import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocketState
from pydantic import ValidationError as PydanticValidationError

import config

from .broadcaster import CANVAS_UPDATE, ProjectRooms
from .compiler import compile_openapi
from .errors import (
    BroadcastFailure,
    CanvasError,
    InvalidReference,
    NotFound,
    PersistenceFailure,
    ValidationError,
)
from .node_registry import registry
from .schemas import (
    CanvasState,
    EdgeCreate,
    NodeCreate,
    NodeDataPatch,
    NodeMetadata,
    Position,
    Project,
    ProjectCreate,
    ProjectUpdate,
    SyncStatus,
    to_wire,
)
from .session import CanvasHub, CanvasSession
from .store import ProjectStore

# Setup Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

store = ProjectStore(config.DATA_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Migrate stored canvases, then start the save scheduler and broadcast rooms."""
    store.migrate_legacy_canvases()

    scheduler = AsyncIOScheduler()
    scheduler.start()
    logger.info("Scheduler started")

    rooms = ProjectRooms()
    app.state.scheduler = scheduler
    app.state.rooms = rooms
    app.state.hub = CanvasHub(
        store,
        rooms,
        scheduler,
        debounce_seconds=config.SAVE_DEBOUNCE_SECONDS,
        idle_seconds=config.SESSION_IDLE_SECONDS,
    )
    yield

    await app.state.hub.close_all()
    scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


app = FastAPI(title="API Canvas", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def http_error(e: CanvasError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidReference):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, PersistenceFailure):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Authentication happens upstream; we only receive the principal id
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def owned_project(project_id: str, user_id: str) -> Project:
    try:
        project = store.get(project_id)
    except CanvasError as e:
        raise http_error(e)
    if project.owner_id != user_id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return project


async def open_session(request: Request, project_id: str, user_id: str) -> CanvasSession:
    await asyncio.to_thread(owned_project, project_id, user_id)
    try:
        return await request.app.state.hub.open(project_id)
    except CanvasError as e:
        raise http_error(e)


@app.get("/")
def read_root():
    return {"message": "API Canvas backend"}


@app.get("/api/nodes", response_model=List[NodeMetadata])
def get_nodes():
    return registry.get_all_metadata()


# --- PROJECT ENDPOINTS ---


@app.get("/api/projects", response_model=List[Project])
def list_projects(user_id: str = Depends(current_user)):
    return store.list(user_id)


@app.post("/api/projects", response_model=Project, status_code=201)
def create_project(project_in: ProjectCreate, user_id: str = Depends(current_user)):
    try:
        return store.create(project_in.name, user_id)
    except CanvasError as e:
        raise http_error(e)


@app.get("/api/projects/{project_id}", response_model=Project)
async def read_project(project_id: str, request: Request, user_id: str = Depends(current_user)):
    project = await asyncio.to_thread(owned_project, project_id, user_id)
    session = request.app.state.hub.get(project_id)
    if session is not None:
        # Unsaved server-side edits are newer than the stored document
        project = project.model_copy(update={"canvas_state": session.graph.snapshot()})
    return project


@app.put("/api/projects/{project_id}", response_model=Project)
async def update_project(
    project_id: str,
    project_in: ProjectUpdate,
    request: Request,
    user_id: str = Depends(current_user),
):
    await asyncio.to_thread(owned_project, project_id, user_id)
    try:
        project = await asyncio.to_thread(
            store.update, project_id, name=project_in.name, canvas_state=project_in.canvas_state
        )
    except CanvasError as e:
        raise http_error(e)

    session = request.app.state.hub.get(project_id)
    if session is not None and project_in.canvas_state is not None:
        session.broadcaster.apply_remote(project_in.canvas_state)
    return project


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str, request: Request, user_id: str = Depends(current_user)):
    await asyncio.to_thread(owned_project, project_id, user_id)
    await request.app.state.hub.discard(project_id)
    try:
        await asyncio.to_thread(store.delete, project_id)
    except CanvasError as e:
        raise http_error(e)
    return {"status": "deleted", "id": project_id}


# --- CANVAS ENDPOINTS ---


@app.get("/api/projects/{project_id}/canvas")
async def read_canvas(project_id: str, request: Request, user_id: str = Depends(current_user)):
    session = await open_session(request, project_id, user_id)
    return to_wire(session.graph.snapshot())


@app.post("/api/projects/{project_id}/canvas/nodes", status_code=201)
async def add_node(project_id: str, node_in: NodeCreate, request: Request, user_id: str = Depends(current_user)):
    session = await open_session(request, project_id, user_id)
    try:
        node = session.graph.add_node(node_in.type, node_in.position, data=node_in.data, label=node_in.label)
    except CanvasError as e:
        raise http_error(e)
    return node.model_dump(mode="json", exclude_none=True)


@app.patch("/api/projects/{project_id}/canvas/nodes/{node_id}")
async def update_node_data(
    project_id: str,
    node_id: str,
    patch: NodeDataPatch,
    request: Request,
    user_id: str = Depends(current_user),
):
    session = await open_session(request, project_id, user_id)
    try:
        node = session.graph.update_node_data(node_id, patch.data)
    except CanvasError as e:
        raise http_error(e)
    return node.model_dump(mode="json", exclude_none=True)


@app.put("/api/projects/{project_id}/canvas/nodes/{node_id}/position")
async def move_node(
    project_id: str,
    node_id: str,
    position: Position,
    request: Request,
    user_id: str = Depends(current_user),
):
    session = await open_session(request, project_id, user_id)
    try:
        node = session.graph.move_node(node_id, position)
    except CanvasError as e:
        raise http_error(e)
    return node.model_dump(mode="json", exclude_none=True)


@app.delete("/api/projects/{project_id}/canvas/nodes/{node_id}")
async def delete_node(project_id: str, node_id: str, request: Request, user_id: str = Depends(current_user)):
    session = await open_session(request, project_id, user_id)
    try:
        session.graph.delete_node(node_id)
    except CanvasError as e:
        raise http_error(e)
    return {"status": "deleted", "id": node_id}


@app.post("/api/projects/{project_id}/canvas/edges", status_code=201)
async def connect_nodes(project_id: str, edge_in: EdgeCreate, request: Request, user_id: str = Depends(current_user)):
    session = await open_session(request, project_id, user_id)
    try:
        edge = session.graph.connect(edge_in.source, edge_in.target, edge_in.sourceHandle, edge_in.targetHandle)
    except CanvasError as e:
        raise http_error(e)
    return edge.model_dump(mode="json", exclude_none=True)


@app.delete("/api/projects/{project_id}/canvas/edges/{edge_id}")
async def delete_edge(project_id: str, edge_id: str, request: Request, user_id: str = Depends(current_user)):
    session = await open_session(request, project_id, user_id)
    try:
        session.graph.delete_edge(edge_id)
    except CanvasError as e:
        raise http_error(e)
    return {"status": "deleted", "id": edge_id}


@app.post("/api/projects/{project_id}/canvas/save", response_model=SyncStatus)
async def save_canvas(project_id: str, request: Request, user_id: str = Depends(current_user)):
    session = await open_session(request, project_id, user_id)
    try:
        await session.synchronizer.save_now()
    except CanvasError as e:
        raise http_error(e)
    return session.synchronizer.status()


@app.get("/api/projects/{project_id}/canvas/status", response_model=SyncStatus)
async def canvas_status(project_id: str, request: Request, user_id: str = Depends(current_user)):
    await asyncio.to_thread(owned_project, project_id, user_id)
    session = request.app.state.hub.get(project_id)
    if session is None:
        return SyncStatus(saving=False, dirty=False)
    return session.synchronizer.status()


# --- OPENAPI EXPORT ---


@app.get("/api/projects/{project_id}/openapi")
async def export_project_openapi(
    project_id: str,
    request: Request,
    strict: bool = False,
    user_id: str = Depends(current_user),
):
    project = await asyncio.to_thread(owned_project, project_id, user_id)
    session = request.app.state.hub.get(project_id)
    state = session.graph.snapshot() if session is not None else project.canvas_state
    try:
        return compile_openapi(state, strict=strict)
    except CanvasError as e:
        raise http_error(e)


@app.post("/api/openapi")
def export_openapi(state: Dict[str, Any] = Body(...), strict: bool = False):
    try:
        return compile_openapi(state, strict=strict)
    except CanvasError as e:
        raise http_error(e)


# --- REALTIME ---


SESSION_TAKEN_CLOSE_CODE = 4409


def _error_message(detail: str) -> Dict[str, Any]:
    return {"type": "error", "payload": {"detail": detail}}


@app.websocket("/api/ws/projects/{project_id}")
async def project_websocket(websocket: WebSocket, project_id: str, session_id: Optional[str] = None):
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    try:
        project = await asyncio.to_thread(store.get, project_id)
    except CanvasError:
        await websocket.close(code=4404)
        return
    if not user_id or project.owner_id != user_id:
        await websocket.close(code=4403)
        return

    session_id = session_id or uuid.uuid4().hex
    rooms: ProjectRooms = websocket.app.state.rooms
    if session_id in rooms.members(project_id):
        await websocket.close(code=SESSION_TAKEN_CLOSE_CODE)
        return

    await websocket.accept()
    if not await rooms.join(session_id, project_id, websocket):
        await websocket.close(code=SESSION_TAKEN_CLOSE_CODE)
        return
    await websocket.send_json({"type": "joined", "payload": {"projectId": project_id, "sessionId": session_id}})

    try:
        # Rooms close a member they had to drop after a failed send
        while websocket.application_state == WebSocketState.CONNECTED:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
                if message.get("type") != CANVAS_UPDATE:
                    raise ValueError(f"Unsupported message type: {message.get('type')!r}")
                state = CanvasState.model_validate(message.get("payload", {}).get("state"))
            except (ValueError, AttributeError, PydanticValidationError) as e:
                await websocket.send_json(_error_message(str(e)))
                continue

            try:
                await rooms.publish(project_id, session_id, state)
            except BroadcastFailure as e:
                logger.warning(f"Broadcast failed: {e}")
    except WebSocketDisconnect:
        pass
    finally:
        rooms.leave(session_id, project_id, websocket)


# Log Buffer
log_buffer = []


class ListHandler(logging.Handler):
    def emit(self, record):
        log_buffer.append(self.format(record))
        if len(log_buffer) > config.LOG_BUFFER_SIZE:
            log_buffer.pop(0)


handler = ListHandler()
formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
handler.setFormatter(formatter)
logging.getLogger().addHandler(handler)


@app.get("/api/logs")
def get_logs():
    return log_buffer


if __name__ == "__main__":
    uvicorn.run("apicanvas.main:app", host="0.0.0.0", port=8000, reload=True)
