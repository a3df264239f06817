"""
Board orchestration: every project and task intent goes through BoardService.

Each operation follows the same steps:

  1. load the project (and task) or raise NotFound
  2. ask access.py whether the caller may act, raising Forbidden if not
  3. validate input, and for moves/reorders the WIP limits (wip.py)
  4. write through the gateways
  5. tell the broadcaster which rooms should hear about it

Task placement is either the backlog (backlog=True, no columnKey) or a
column (backlog=False, columnKey set). Every write below keeps the two fields
in step.

WIP limits are enforced on move and reorder only. Creating a task directly in
a column, or setting its columnKey through update, is never WIP-checked.
"""
import logging
import re
import secrets
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import UpdateOne
from pymongo.database import Database

import access
import wip
from access import Decision
from config import Settings
from database import utcnow
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from gateways import ProjectGateway, TaskGateway, UserDirectory
from realtime import Broadcaster, NullBroadcaster, project_room, user_room
from schemas import BACKLOG_KEY, DEFAULT_COLUMNS, PopulatedUser, serialize

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]

OWNER_TASK_FIELDS = (
    "title", "description", "color", "columnKey", "order", "assigneeId", "labels",
    "estimate", "storyPoints", "priority", "backlog", "dueDate", "startedAt", "completedAt",
)
OPTIONAL_TASK_FIELDS = ("description", "color", "labels", "estimate", "storyPoints", "assigneeId", "dueDate")
REQUIRED_TASK_FIELDS = ("title", "order", "priority")

COLUMN_KEY_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
ORDER_SPACING = 1000


def oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationFailed("Invalid id")


def new_join_code() -> str:
    return secrets.token_hex(3)


def normalize_columns(columns: Sequence[Doc]) -> List[Doc]:
    """Validate a full column list and return it ready to store, sorted by order."""
    seen = set()
    normalized = []
    for index, column in enumerate(columns):
        key = (column.get("key") or "").strip()
        title = (column.get("title") or "").strip()
        if not key or not title:
            raise ValidationFailed("Each column needs a key and a title")
        if key == BACKLOG_KEY:
            raise ValidationFailed("'backlog' is a reserved column key")
        if not COLUMN_KEY_PATTERN.match(key):
            raise ValidationFailed(f"Invalid column key: {key}")
        if key in seen:
            raise ValidationFailed(f"Duplicate column key: {key}")
        seen.add(key)

        doc: Doc = {
            "id": column.get("id") or uuid4().hex,
            "key": key,
            "title": title,
            "order": column["order"] if column.get("order") is not None else index + 1,
        }
        limit = column.get("wip")
        if limit is not None:
            if limit < 0:
                raise ValidationFailed(f"WIP limit for {key} must be positive")
            if limit > 0:
                doc["wip"] = limit
        normalized.append(doc)
    return sorted(normalized, key=lambda c: c["order"])


def default_columns() -> List[Doc]:
    return normalize_columns(DEFAULT_COLUMNS)


def find_column(project: Doc, key: Optional[str]) -> Optional[Doc]:
    for column in project.get("columns") or []:
        if column.get("key") == key:
            return column
    return None


class BoardService:
    def __init__(
        self,
        projects: ProjectGateway,
        tasks: TaskGateway,
        users: UserDirectory,
        broadcaster: Optional[Broadcaster] = None,
        settings: Optional[Settings] = None,
    ):
        self.projects = projects
        self.tasks = tasks
        self.users = users
        self.broadcaster = broadcaster or NullBroadcaster()
        self.settings = settings or Settings()

    @classmethod
    def from_database(cls, database: Database, broadcaster: Optional[Broadcaster] = None,
                      settings: Optional[Settings] = None) -> "BoardService":
        return cls(ProjectGateway(database), TaskGateway(database), UserDirectory(database),
                   broadcaster=broadcaster, settings=settings)

    # -----------------------------
    # Helpers
    # -----------------------------
    def _project(self, project_id: Any) -> Doc:
        project = self.projects.find_by_id(oid(project_id))
        if not project:
            raise NotFound("Project not found")
        return project

    def _task(self, project: Doc, task_id: Any) -> Doc:
        task = self.tasks.find_one({"_id": oid(task_id), "projectId": project["_id"]})
        if not task:
            raise NotFound("Task not found")
        return task

    @staticmethod
    def _require(decision: Decision, message: str) -> None:
        if decision is Decision.NOT_MEMBER:
            raise Forbidden("Forbidden")
        if decision is Decision.ROLE:
            raise Forbidden(message)

    def _emit(self, room: str, event: str, payload: Doc) -> None:
        try:
            self.broadcaster.emit(room, event, payload)
        except Exception:
            logger.exception("Broadcast of %s to %s failed", event, room)

    def _populate(self, project: Doc) -> Doc:
        """Serialize a project with owner and members expanded to user records."""
        owner_id = str(project["ownerId"])
        member_ids = [str(m) for m in project.get("members") or []]
        found = self.users.find_many([owner_id, *member_ids])

        def expand(user_id: str) -> Doc:
            doc = found.get(user_id) or {}
            return asdict(PopulatedUser(id=user_id, name=doc.get("name"), email=doc.get("email")))

        data = serialize(project)
        data["ownerId"] = expand(owner_id)
        data["members"] = [expand(m) for m in member_ids]
        return data

    def _check_assignee(self, project: Doc, assignee_id: Any) -> None:
        if assignee_id is not None and not access.has_access(project, str(assignee_id)):
            raise ValidationFailed("Assignee must be the project owner or a member")

    def _check_column(self, project: Doc, key: str) -> Doc:
        column = find_column(project, key)
        if column is None:
            raise ValidationFailed("Column not found", details={"columnKey": key})
        return column

    # -----------------------------
    # Projects
    # -----------------------------
    def list_projects(self, user_id: str) -> List[Doc]:
        return [self._populate(p) for p in self.projects.find_for_user(user_id)]

    def get_project(self, project_id: Any, user_id: str) -> Doc:
        project = self._project(project_id)
        self._require(access.can_view(project, user_id), "Forbidden")
        return self._populate(project)

    def _unique_join_code(self) -> str:
        code = new_join_code()
        for _ in range(self.settings.join_code_attempts):
            if not self.projects.find_one({"joinCode": code}):
                return code
            code = new_join_code()
        logger.warning("Could not find an unused join code after %d attempts", self.settings.join_code_attempts)
        return code

    def create_project(self, user_id: str, name: Optional[str], description: Optional[str] = None,
                       columns: Optional[Sequence[Doc]] = None) -> Doc:
        if not name or not name.strip():
            raise ValidationFailed("Project name required")
        doc = {
            "ownerId": user_id,
            "name": name.strip(),
            "description": description,
            "columns": normalize_columns(columns) if columns is not None else default_columns(),
            "joinCode": self._unique_join_code(),
            "members": [],
        }
        project = self.projects.create(doc)
        logger.info("Project %s created by %s", project["_id"], user_id)
        return serialize(project)

    def update_project(self, project_id: Any, user_id: str, changes: Doc) -> Doc:
        """Owner-only. ``columns`` replaces the full column list."""
        project = self._project(project_id)
        self._require(access.can_modify_project_settings(project, user_id),
                      "Only the project owner can modify project settings")

        if "name" in changes:
            name = changes["name"]
            if not name or not name.strip():
                raise ValidationFailed("Project name required")
            project["name"] = name.strip()
        if "description" in changes:
            project["description"] = changes["description"]
        if changes.get("columns") is not None:
            project["columns"] = normalize_columns(changes["columns"])

        project = self.projects.save(project)
        data = serialize(project)
        logger.info("Project %s settings updated", data["id"])
        self._emit(project_room(data["id"]), "project:columns-updated",
                   {"projectId": data["id"], "columns": data["columns"]})
        return data

    def regenerate_join_code(self, project_id: Any, user_id: str) -> Doc:
        project = self._project(project_id)
        self._require(access.can_modify_project_settings(project, user_id),
                      "Only the project owner can modify project settings")
        project = self.projects.update(project["_id"], {"$set": {"joinCode": self._unique_join_code()}})
        logger.info("Join code regenerated for project %s", project["_id"])
        return serialize(project)

    def delete_project(self, project_id: Any, user_id: str) -> None:
        project = self._project(project_id)
        self._require(access.can_modify_project_settings(project, user_id), "Forbidden")
        removed = self.tasks.delete_many({"projectId": project["_id"]})
        self.projects.delete_by_id(project["_id"])
        logger.info("Project %s deleted with %d tasks", project["_id"], removed)
        self._emit(project_room(project["_id"]), "project:deleted", {"projectId": str(project["_id"])})

    def join_project(self, user_id: str, join_code: Optional[str]) -> Tuple[Doc, str]:
        if not join_code or not join_code.strip():
            raise ValidationFailed("joinCode required")
        project = self.projects.find_one({"joinCode": join_code.strip()})
        if not project:
            raise NotFound("Project not found")
        if access.is_owner(project, user_id):
            raise ValidationFailed("Owner is already part of the project")
        if access.is_member(project, user_id):
            return self._populate(project), "Already a member"

        project = self.projects.update(project["_id"], {"$addToSet": {"members": user_id}})
        data = self._populate(project)
        member = next((m for m in data["members"] if m["id"] == user_id), {"id": user_id})
        logger.info("User %s joined project %s", user_id, data["id"])

        self._emit(project_room(data["id"]), "project:member-joined",
                   {"projectId": data["id"], "memberId": user_id, "member": member})
        self._emit(user_room(user_id), "user:joined-project",
                   {"project": data, "projectId": data["id"], "projectName": data["name"]})
        return data, "Joined project"

    def remove_member(self, project_id: Any, user_id: str, member_id: str) -> Tuple[Doc, str]:
        project = self._project(project_id)
        self._require(access.can_modify_project_settings(project, user_id),
                      "Only the project owner can remove members")
        if access.is_owner(project, member_id):
            raise ValidationFailed("Owner cannot be removed from the project")
        self._require(access.can_remove_member(project, user_id, member_id),
                      "Only the project owner can remove members")
        if not access.is_member(project, member_id):
            raise NotFound("Member not found in this project")

        project = self.projects.update(project["_id"], {"$pull": {"members": member_id}})
        data = self._populate(project)
        logger.info("User %s removed from project %s", member_id, data["id"])

        self._emit(project_room(data["id"]), "project:member-removed",
                   {"projectId": data["id"], "memberId": member_id})
        self._emit(user_room(member_id), "user:removed-from-project",
                   {"projectId": data["id"], "projectName": data["name"]})
        return data, "Member removed successfully"

    # -----------------------------
    # Tasks
    # -----------------------------
    def list_tasks(self, project_id: Any, user_id: str) -> List[Doc]:
        project = self._project(project_id)
        self._require(access.can_view(project, user_id), "Forbidden")
        return [serialize(t) for t in self.tasks.board(project["_id"])]

    def list_backlog(self, project_id: Any, user_id: str) -> List[Doc]:
        project = self._project(project_id)
        self._require(access.can_view(project, user_id), "Forbidden")
        return [serialize(t) for t in self.tasks.backlog(project["_id"])]

    def _new_task(self, project: Doc, user_id: str, data: Doc) -> Doc:
        doc: Doc = {
            "projectId": project["_id"],
            "title": data["title"],
            "order": data["order"],
            "priority": data.get("priority") or "medium",
            "createdBy": user_id,
        }
        for name in OPTIONAL_TASK_FIELDS:
            if data.get(name) is not None:
                doc[name] = data[name]
        return doc

    def create_task(self, project_id: Any, user_id: str, data: Doc) -> Doc:
        if not data.get("title") or data.get("order") is None:
            raise ValidationFailed("title and order are required")
        if not data.get("columnKey"):
            raise ValidationFailed("columnKey is required for non-backlog tasks")

        project = self._project(project_id)
        self._require(access.can_create_or_delete_task(project, user_id),
                      "Only the project owner can create tasks")
        self._check_column(project, data["columnKey"])
        self._check_assignee(project, data.get("assigneeId"))

        doc = self._new_task(project, user_id, data)
        doc.update(columnKey=data["columnKey"], backlog=False)
        task = serialize(self.tasks.create(doc))
        logger.info("Task %s created in %s/%s", task["id"], task["projectId"], task["columnKey"])
        self._emit(project_room(project["_id"]), "task:created", {"task": task})
        return task

    def create_backlog_task(self, project_id: Any, user_id: str, data: Doc) -> Doc:
        if not data.get("title"):
            raise ValidationFailed("title is required")

        project = self._project(project_id)
        self._require(access.can_create_or_delete_task(project, user_id),
                      "Only the project owner can create tasks")

        # Wall-clock milliseconds: later backlog tasks always sort after earlier ones
        doc = self._new_task(project, user_id, {**data, "order": int(time.time() * 1000)})
        doc["backlog"] = True
        task = serialize(self.tasks.create(doc))
        logger.info("Backlog task %s created in %s", task["id"], task["projectId"])
        self._emit(project_room(project["_id"]), "task:created", {"task": task})
        return task

    def update_task(self, project_id: Any, task_id: Any, user_id: str, patch: Doc) -> Doc:
        project = self._project(project_id)
        self._require(access.can_view(project, user_id), "Forbidden")
        task = self._task(project, task_id)

        decision = access.can_update_task(project, task, user_id, patch.keys())
        if decision is Decision.ROLE and access.is_assignee(task, user_id):
            raise Forbidden("Task assignees can only update status timestamps (startedAt, completedAt)")
        self._require(decision, "Only the project owner or task assignee can update this task")

        if access.is_owner(project, user_id):
            changes = {k: v for k, v in patch.items() if k in OWNER_TASK_FIELDS}
            self._validate_owner_changes(project, task, changes)
        else:
            changes = dict(patch)

        if not changes:
            return serialize(task)

        set_fields = {k: v for k, v in changes.items() if v is not None}
        unset_fields = [k for k, v in changes.items() if v is None]
        updated = serialize(self.tasks.update_fields(task["_id"], set_fields, unset_fields))
        logger.info("Task %s updated by %s: %s", updated["id"], user_id, sorted(changes))
        self._emit(project_room(project["_id"]), "task:updated", {"task": updated})
        return updated

    def _validate_owner_changes(self, project: Doc, task: Doc, changes: Doc) -> None:
        """Check owner edits and rewrite placement fields so backlog and columnKey agree."""
        if "backlog" in changes and changes["backlog"] is None:
            del changes["backlog"]
        cleared = [name for name in REQUIRED_TASK_FIELDS if name in changes and changes[name] is None]
        if cleared:
            raise ValidationFailed("Required task fields cannot be cleared", details={"fields": cleared})
        if "assigneeId" in changes:
            self._check_assignee(project, changes["assigneeId"])

        if "columnKey" in changes:
            key = changes["columnKey"]
            if key is None:
                changes["backlog"] = True
            elif changes.get("backlog") is True:
                raise ValidationFailed("A backlog task cannot have a columnKey")
            else:
                self._check_column(project, key)
                changes["backlog"] = False
        elif changes.get("backlog") is True:
            changes["columnKey"] = None
        elif changes.get("backlog") is False and not task.get("columnKey"):
            raise ValidationFailed("columnKey is required to move a task out of the backlog")

    def move_task(self, project_id: Any, task_id: Any, user_id: str,
                  to_column_key: Optional[str] = None, backlog: bool = False) -> Doc:
        project = self._project(project_id)
        self._require(access.can_view(project, user_id), "Forbidden")
        task = self._task(project, task_id)
        room = project_room(project["_id"])

        if backlog:
            moved = serialize(self.tasks.update_fields(task["_id"], {"backlog": True}, ["columnKey"]))
            logger.info("Task %s moved to backlog", moved["id"])
            self._emit(room, "task:moved", {"task": moved})
            return moved

        if not to_column_key:
            raise ValidationFailed("toColumnKey required to move to column")
        column = self._check_column(project, to_column_key)

        count = self.tasks.count_documents(
            {"projectId": project["_id"], "columnKey": to_column_key, "backlog": {"$ne": True}}
        )
        violation = wip.check_move(column, count)
        if violation is not None:
            logger.info("Move of %s into %s refused: %d/%d", task["_id"], to_column_key, count, violation.wip)
            raise Conflict("WIP_EXCEEDED", details=violation.to_dict())

        moved = serialize(self.tasks.update_fields(task["_id"], {"backlog": False, "columnKey": to_column_key}))
        logger.info("Task %s moved to %s", moved["id"], to_column_key)
        self._emit(room, "task:moved", {"task": moved})
        return moved

    def reorder_tasks(self, project_id: Any, user_id: str, items: Sequence[Doc]) -> List[Doc]:
        """Apply a batch of ``{id, order, columnKey?}`` updates, all or nothing.

        An item without columnKey keeps its task where it is. The batch is
        WIP-checked as a whole against persisted state before anything is written.
        """
        if not isinstance(items, (list, tuple)):
            raise ValidationFailed("tasks array required")

        project = self._project(project_id)
        self._require(access.can_create_or_delete_task(project, user_id),
                      "Only the project owner can reorder tasks")
        if not items:
            return []

        ids = [oid(item.get("id")) for item in items]
        if len(set(ids)) != len(ids):
            raise ValidationFailed("Duplicate task ids in reorder")
        current = {t["_id"]: t for t in self.tasks.find({"projectId": project["_id"], "_id": {"$in": ids}})}
        missing = [str(i) for i in ids if i not in current]
        if missing:
            raise ValidationFailed("Unknown task ids", details={"taskIds": missing})

        moves = []
        for task_oid, item in zip(ids, items):
            key = item.get("columnKey")
            if key:
                self._check_column(project, key)
            from_key = wip.placement(current[task_oid])
            moves.append((from_key, key or from_key))

        violations = wip.check_batch(project.get("columns") or [], self.tasks.board(project["_id"]), moves)
        if violations:
            logger.info("Reorder in %s refused: %s", project["_id"], [v.column_key for v in violations])
            raise Conflict("WIP_EXCEEDED", details={"violations": [v.to_dict() for v in violations]})

        now = utcnow()
        operations = []
        applied = []
        for task_oid, item in zip(ids, items):
            fields: Doc = {"order": item["order"], "updatedAt": now}
            entry: Doc = {"id": str(task_oid), "order": item["order"]}
            if item.get("columnKey"):
                fields.update(columnKey=item["columnKey"], backlog=False)
                entry["columnKey"] = item["columnKey"]
            operations.append(UpdateOne({"_id": task_oid, "projectId": project["_id"]}, {"$set": fields}))
            applied.append(entry)

        self.tasks.bulk_write(operations, transactional=self.settings.mongo_transactions)
        logger.info("Reordered %d tasks in %s", len(applied), project["_id"])
        self._emit(project_room(project["_id"]), "tasks:reordered", {"tasks": applied})
        return applied

    def delete_task(self, project_id: Any, task_id: Any, user_id: str) -> None:
        project = self._project(project_id)
        self._require(access.can_view(project, user_id), "Forbidden")
        task = self._task(project, task_id)
        self._require(access.can_create_or_delete_task(project, user_id),
                      "Only the project owner can delete tasks")

        self.tasks.delete_by_id(task["_id"])
        logger.info("Task %s deleted", task["_id"])
        self._emit(project_room(project["_id"]), "task:deleted", {"taskId": str(task["_id"])})

    def _import_column(self, project: Doc, raw: Doc) -> str:
        key = raw.get("column") or raw.get("columnKey") or self.settings.default_import_column
        if find_column(project, key) is not None:
            return key
        columns = project.get("columns") or []
        return columns[0]["key"] if columns else key

    def import_local_tasks(self, project_id: Any, user_id: str, tasks: Sequence[Doc],
                           import_id: Optional[str] = None) -> Doc:
        """Bulk-create tasks saved client-side. Repeating an import creates duplicates."""
        if not isinstance(tasks, (list, tuple)):
            raise ValidationFailed("tasks array required")

        project = self._project(project_id)
        self._require(access.can_create_or_delete_task(project, user_id), "Forbidden")

        created = []
        for index, raw in enumerate(tasks):
            doc = {
                "projectId": project["_id"],
                "title": raw.get("title") or "Untitled",
                "columnKey": self._import_column(project, raw),
                "backlog": False,
                "order": (index + 1) * ORDER_SPACING,
                "priority": "medium",
                "createdBy": user_id,
            }
            if raw.get("color"):
                doc["color"] = raw["color"]
            created.append(serialize(self.tasks.create(doc)))

        logger.info("Imported %d tasks into %s (import %s)", len(created), project["_id"], import_id)
        if created:
            self._emit(project_room(project["_id"]), "tasks:imported",
                       {"tasks": [t["id"] for t in created], "imported": len(created)})
        return {"tasks": created, "imported": len(created)}
