"""
Client-side read models of a board and of a user's project list.

The projection never merges event payloads into its state. Any realtime
event triggers a full reload of the authoritative state, so concurrent
writers cannot make it diverge. Drag-style edits (move, reorder) are shown
at once on a working copy. That copy is replaced wholesale when the server
answers. If the edit fails for any reason, the copy is thrown away and the
state is reloaded.
"""
import asyncio
import copy
import json
import logging
from typing import Any, Dict, List, Optional

import requests
import websockets

from client import ApiError, BoardClient
from schemas import BACKLOG_KEY, UserRef, parse_user_ref, user_ref_id
from wip import placement

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]

BACKLOG_COLUMN = {"id": BACKLOG_KEY, "key": BACKLOG_KEY, "title": "Backlog", "order": -1}
ORDER_SPACING = 1000


def _parse(raw: Any) -> Optional[Doc]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return message if isinstance(message, dict) else None


class BoardProjection:
    def __init__(self, client: BoardClient, project_id: str):
        self.client = client
        self.project_id = project_id
        self.name: Optional[str] = None
        self.owner: Optional[UserRef] = None
        self.members: List[UserRef] = []
        self.join_code: Optional[str] = None
        self.columns: List[Doc] = [dict(BACKLOG_COLUMN)]
        self.tasks_by_column: Dict[str, List[Doc]] = {BACKLOG_KEY: []}
        self.error: Optional[Exception] = None
        self.loading = False
        self.reloads = 0

    # -----------------------------
    # Loading
    # -----------------------------
    def load(self) -> bool:
        """Replace local state with the server's. Returns False and sets ``error`` on failure."""
        self.loading = True
        try:
            project = self.client.get_project(self.project_id)
            tasks = self.client.list_tasks(self.project_id)
            backlog = self.client.list_backlog(self.project_id)
        except (ApiError, requests.RequestException) as e:
            logger.warning("Loading project %s failed: %s", self.project_id, e)
            self.error = e
            return False
        finally:
            self.loading = False

        self.error = None
        self.reloads += 1
        self._apply(project, tasks, backlog)
        return True

    def _apply(self, project: Doc, tasks: List[Doc], backlog: List[Doc]) -> None:
        self.name = project.get("name")
        self.owner = parse_user_ref(project["ownerId"])
        self.members = [parse_user_ref(m) for m in project.get("members") or []]
        self.join_code = project.get("joinCode")

        server_columns = sorted(
            (c for c in project.get("columns") or [] if c.get("key") != BACKLOG_KEY),
            key=lambda c: c.get("order") or 0,
        )
        self.columns = [dict(BACKLOG_COLUMN), *server_columns]

        by_column: Dict[str, List[Doc]] = {c["key"]: [] for c in self.columns}
        for task in tasks:
            by_column.setdefault(placement(task), []).append(task)
        by_column[BACKLOG_KEY].extend(backlog)
        self.tasks_by_column = by_column

    def handle_event(self, event: str, payload: Optional[Doc] = None) -> None:
        logger.debug("Project %s got %s, reloading", self.project_id, event)
        self.load()

    def dispatch(self, raw: Any) -> None:
        """Handle one raw realtime message. Room acknowledgements are not board events."""
        message = _parse(raw)
        if not message or not message.get("event"):
            return
        if message["event"].startswith("socket:"):
            return
        self.handle_event(message["event"], message.get("data"))

    async def listen(self, ws_url: str, user_id: Optional[str] = None) -> None:
        """Follow the project's room (and the user's room) until the connection closes."""
        async with websockets.connect(ws_url) as ws:
            await ws.send(json.dumps({"event": "join", "data": {"projectId": self.project_id}}))
            if user_id:
                await ws.send(json.dumps({"event": "join-user", "data": {"userId": user_id}}))
            async for raw in ws:
                await asyncio.to_thread(self.dispatch, raw)

    # -----------------------------
    # Queries
    # -----------------------------
    def is_owner(self, user_id: str) -> bool:
        return self.owner is not None and user_ref_id(self.owner) == user_id

    def member_ids(self) -> List[str]:
        return [user_ref_id(m) for m in self.members]

    def find_task(self, task_id: str) -> Optional[Doc]:
        for tasks in self.tasks_by_column.values():
            for task in tasks:
                if task["id"] == task_id:
                    return task
        return None

    def next_order(self, column_key: str) -> int:
        """An order value that places a new task after the column's last one."""
        orders = [t.get("order") or 0 for t in self.tasks_by_column.get(column_key, [])]
        return int(max(orders, default=0)) + ORDER_SPACING

    # -----------------------------
    # Intents
    # -----------------------------
    def create_task(self, title: str, column_key: str, **fields: Any) -> Doc:
        order = fields.pop("order", None) or self.next_order(column_key)
        task = self.client.create_task(self.project_id, title, column_key, order, **fields)
        self.load()
        return task

    def create_backlog_task(self, title: str, **fields: Any) -> Doc:
        task = self.client.create_backlog_task(self.project_id, title, **fields)
        self.load()
        return task

    def update_task(self, task_id: str, patch: Doc) -> Doc:
        task = self.client.update_task(self.project_id, task_id, patch)
        self.load()
        return task

    def delete_task(self, task_id: str) -> None:
        self.client.delete_task(self.project_id, task_id)
        self.load()

    def save_columns(self, columns: List[Doc]) -> Doc:
        """Persist the full column list. The backlog pseudo-column is never sent."""
        persisted = [
            {k: v for k, v in c.items() if v is not None}
            for c in columns if c.get("key") != BACKLOG_KEY
        ]
        project = self.client.update_project(self.project_id, columns=persisted)
        self.load()
        return project

    def move_task(self, task_id: str, to_column_key: str) -> Doc:
        """Move a task to a column or to the backlog, showing the result before the server confirms."""
        snapshot = self.tasks_by_column
        self._move_locally(task_id, to_column_key)
        try:
            if to_column_key == BACKLOG_KEY:
                task = self.client.move_task(self.project_id, task_id, backlog=True)
            else:
                task = self.client.move_task(self.project_id, task_id, to_column_key=to_column_key)
        except Exception:
            self._discard(snapshot)
            raise
        self.load()
        return task

    def reorder(self, updates: List[Doc]) -> Doc:
        """Send a batch of ``{id, order, columnKey?}`` updates; all or none are applied."""
        snapshot = self.tasks_by_column
        for update in updates:
            self._move_locally(update["id"], update.get("columnKey"), update.get("order"))
        try:
            result = self.client.reorder_tasks(self.project_id, updates)
        except Exception:
            self._discard(snapshot)
            raise
        self.load()
        return result

    def _discard(self, snapshot: Dict[str, List[Doc]]) -> None:
        """Drop the optimistic working copy and fetch the server state again."""
        self.tasks_by_column = snapshot
        self.load()

    def _move_locally(self, task_id: str, to_column_key: Optional[str], order: Optional[float] = None) -> None:
        working = copy.deepcopy(self.tasks_by_column)
        task = None
        from_key = None
        for key, tasks in working.items():
            for candidate in tasks:
                if candidate["id"] == task_id:
                    task, from_key = candidate, key
                    break
            if task is not None:
                break
        if task is None:
            return

        target = to_column_key or from_key
        working[from_key].remove(task)
        if order is not None:
            task["order"] = order
        if target == BACKLOG_KEY:
            task["backlog"] = True
            task.pop("columnKey", None)
        else:
            task["backlog"] = False
            task["columnKey"] = target
        column = working.setdefault(target, [])
        column.append(task)
        if target != BACKLOG_KEY:
            column.sort(key=lambda t: t.get("order") or 0)
        self.tasks_by_column = working


class ProjectsProjection:
    """The list of projects a user owns or belongs to."""

    USER_EVENTS = ("user:joined-project", "user:removed-from-project", "project:deleted")

    def __init__(self, client: BoardClient):
        self.client = client
        self.projects: List[Doc] = []
        self.error: Optional[Exception] = None

    def load(self) -> bool:
        try:
            self.projects = self.client.list_projects()
        except (ApiError, requests.RequestException) as e:
            logger.warning("Loading projects failed: %s", e)
            self.error = e
            return False
        self.error = None
        return True

    def handle_event(self, event: str, payload: Optional[Doc] = None) -> None:
        if event in self.USER_EVENTS:
            self.load()

    def dispatch(self, raw: Any) -> None:
        message = _parse(raw)
        if message and message.get("event"):
            self.handle_event(message["event"], message.get("data"))

    def join(self, join_code: str) -> Doc:
        result = self.client.join_project(join_code)
        self.load()
        return result["project"]

    async def listen(self, ws_url: str, user_id: str) -> None:
        async with websockets.connect(ws_url) as ws:
            await ws.send(json.dumps({"event": "join-user", "data": {"userId": user_id}}))
            async for raw in ws:
                await asyncio.to_thread(self.dispatch, raw)
