import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

from board import BoardService
from config import Settings
from database import connect
from errors import BoardError
from realtime import Broadcaster, ConnectionManager, RoomBroadcaster
from schemas import (
    BacklogTaskCreate,
    ImportLocalRequest,
    JoinRequest,
    ProjectCreate,
    ProjectUpdate,
    ReorderRequest,
    TaskCreate,
    TaskMove,
    TaskUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# -----------------------------
# Dependencies
# -----------------------------
def get_board(request: Request) -> BoardService:
    return request.app.state.board


async def get_current_user(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    """Resolve the bearer token issued by the auth service to a user id."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    token = authorization.split(" ", 1)[1]
    db = request.app.state.db
    session = db["session"].find_one({"token": token})
    if not session:
        raise HTTPException(status_code=401, detail="Invalid token")
    expires_at = session.get("expires_at")
    if expires_at:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at < datetime.now(timezone.utc):
            raise HTTPException(status_code=401, detail="Session expired")
    user = db["user"].find_one({"_id": session["user_id"]})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return str(user["_id"])


# -----------------------------
# Project endpoints
# -----------------------------
@router.get("/projects")
async def list_projects(user_id: str = Depends(get_current_user), board: BoardService = Depends(get_board)):
    return {"projects": board.list_projects(user_id)}


@router.post("/projects", status_code=201)
async def create_project(body: ProjectCreate, user_id: str = Depends(get_current_user),
                         board: BoardService = Depends(get_board)):
    columns = body.patch().get("columns")
    project = board.create_project(user_id, body.name, body.description, columns)
    return {"project": project}


@router.post("/projects/join")
async def join_project(body: JoinRequest, user_id: str = Depends(get_current_user),
                       board: BoardService = Depends(get_board)):
    project, message = board.join_project(user_id, body.join_code)
    return {"project": project, "message": message}


@router.get("/projects/{project_id}")
async def get_project(project_id: str, user_id: str = Depends(get_current_user),
                      board: BoardService = Depends(get_board)):
    return {"project": board.get_project(project_id, user_id)}


@router.patch("/projects/{project_id}")
async def update_project(project_id: str, body: ProjectUpdate, user_id: str = Depends(get_current_user),
                         board: BoardService = Depends(get_board)):
    return {"project": board.update_project(project_id, user_id, body.patch())}


@router.delete("/projects/{project_id}", status_code=204)
async def delete_project(project_id: str, user_id: str = Depends(get_current_user),
                         board: BoardService = Depends(get_board)):
    board.delete_project(project_id, user_id)
    return Response(status_code=204)


@router.post("/projects/{project_id}/join-code")
async def regenerate_join_code(project_id: str, user_id: str = Depends(get_current_user),
                               board: BoardService = Depends(get_board)):
    return {"project": board.regenerate_join_code(project_id, user_id)}


@router.delete("/projects/{project_id}/members/{member_id}")
async def remove_member(project_id: str, member_id: str, user_id: str = Depends(get_current_user),
                        board: BoardService = Depends(get_board)):
    project, message = board.remove_member(project_id, user_id, member_id)
    return {"project": project, "message": message}


# -----------------------------
# Task endpoints
# -----------------------------
@router.get("/projects/{project_id}/tasks")
async def list_tasks(project_id: str, user_id: str = Depends(get_current_user),
                     board: BoardService = Depends(get_board)):
    return {"tasks": board.list_tasks(project_id, user_id)}


@router.post("/projects/{project_id}/tasks", status_code=201)
async def create_task(project_id: str, body: TaskCreate, user_id: str = Depends(get_current_user),
                      board: BoardService = Depends(get_board)):
    return {"task": board.create_task(project_id, user_id, body.patch())}


@router.patch("/projects/{project_id}/tasks-reorder")
async def reorder_tasks(project_id: str, body: ReorderRequest, user_id: str = Depends(get_current_user),
                        board: BoardService = Depends(get_board)):
    items = [item.model_dump(by_alias=True) for item in body.tasks]
    return {"success": True, "tasks": board.reorder_tasks(project_id, user_id, items)}


@router.patch("/projects/{project_id}/tasks/{task_id}")
async def update_task(project_id: str, task_id: str, body: TaskUpdate, user_id: str = Depends(get_current_user),
                      board: BoardService = Depends(get_board)):
    return {"task": board.update_task(project_id, task_id, user_id, body.patch())}


@router.delete("/projects/{project_id}/tasks/{task_id}", status_code=204)
async def delete_task(project_id: str, task_id: str, user_id: str = Depends(get_current_user),
                      board: BoardService = Depends(get_board)):
    board.delete_task(project_id, task_id, user_id)
    return Response(status_code=204)


@router.post("/projects/{project_id}/tasks/{task_id}/move")
async def move_task(project_id: str, task_id: str, body: TaskMove, user_id: str = Depends(get_current_user),
                    board: BoardService = Depends(get_board)):
    task = board.move_task(project_id, task_id, user_id, to_column_key=body.to_column_key, backlog=body.backlog)
    return {"task": task}


@router.get("/projects/{project_id}/backlog")
async def list_backlog(project_id: str, user_id: str = Depends(get_current_user),
                       board: BoardService = Depends(get_board)):
    return {"tasks": board.list_backlog(project_id, user_id)}


@router.post("/projects/{project_id}/backlog", status_code=201)
async def create_backlog_task(project_id: str, body: BacklogTaskCreate, user_id: str = Depends(get_current_user),
                              board: BoardService = Depends(get_board)):
    return {"task": board.create_backlog_task(project_id, user_id, body.patch())}


@router.post("/projects/{project_id}/import-local", status_code=201)
async def import_local_tasks(project_id: str, body: ImportLocalRequest, user_id: str = Depends(get_current_user),
                             board: BoardService = Depends(get_board)):
    return board.import_local_tasks(project_id, user_id, body.tasks, body.import_id)


# -----------------------------
# Realtime
# -----------------------------
@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.manager
    connection = await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await manager.handle_message(connection, raw)
    except WebSocketDisconnect:
        manager.disconnect(connection)


# -----------------------------
# Health
# -----------------------------
@router.get("/")
def read_root():
    return {"message": "Task Board API running"}


@router.get("/health")
def health(request: Request):
    response = {"status": "ok", "database": "unavailable", "realtime_rooms": len(request.app.state.manager.rooms)}
    try:
        request.app.state.db.command("ping")
        response["database"] = "connected"
    except Exception as e:
        logger.warning("Database ping failed: %s", e)
    return response


# -----------------------------
# Error mapping
# -----------------------------
async def board_error_handler(request: Request, exc: BoardError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": {"errors": jsonable_encoder(exc.errors())}},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# -----------------------------
# App factory
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    broadcaster = app.state.broadcaster
    if isinstance(broadcaster, RoomBroadcaster):
        broadcaster.bind_loop(asyncio.get_running_loop())
    yield


def create_app(database: Optional[Database] = None, broadcaster: Optional[Broadcaster] = None,
               settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if database is None:
        database = connect(settings)
    manager = ConnectionManager()
    if broadcaster is None:
        broadcaster = RoomBroadcaster(manager)

    app = FastAPI(title="Task Board API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.db = database
    app.state.manager = manager
    app.state.broadcaster = broadcaster
    app.state.board = BoardService.from_database(database, broadcaster=broadcaster, settings=settings)

    app.add_exception_handler(BoardError, board_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    return app


settings = Settings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = create_app(settings=settings)


def run():
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
