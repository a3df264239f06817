"""
Request schemas and document helpers for the task board.

Documents are stored with camelCase keys so that what sits in MongoDB is what
goes over the wire. Request models accept the same camelCase keys; in Python
they are exposed with snake_case attribute names.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

Priority = Literal["low", "medium", "high"]
Number = Union[int, float]

BACKLOG_KEY = "backlog"

DEFAULT_COLUMNS = [
    {"key": "hot-tasks", "title": "Hot tasks", "order": 1},
    {"key": "to-do", "title": "To do", "order": 2},
    {"key": "in-work", "title": "In work", "order": 3},
    {"key": "done", "title": "Done", "order": 4},
]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=_camel, populate_by_name=True)

    def patch(self) -> Dict[str, Any]:
        """The fields the caller actually sent, keyed as on the wire."""
        return self.model_dump(exclude_unset=True, by_alias=True)


# Projects
class Column(CamelModel):
    id: Optional[str] = None
    key: str
    title: str
    order: Optional[int] = None
    wip: Optional[int] = Field(None, description="Max non-backlog tasks in this column")


class ProjectCreate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    columns: Optional[List[Column]] = None


class ProjectUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    columns: Optional[List[Column]] = Field(None, description="Full replacement column list")


class JoinRequest(CamelModel):
    join_code: Optional[str] = None


# Tasks
class TaskCreate(CamelModel):
    title: Optional[str] = None
    column_key: Optional[str] = None
    order: Optional[Number] = None
    description: Optional[str] = None
    color: Optional[str] = None
    labels: Optional[List[str]] = None
    estimate: Optional[Number] = None
    story_points: Optional[Number] = None
    priority: Optional[Priority] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


class BacklogTaskCreate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    labels: Optional[List[str]] = None
    estimate: Optional[Number] = None
    story_points: Optional[Number] = None
    priority: Optional[Priority] = None


class TaskUpdate(CamelModel):
    # Unknown keys are kept so the permission check sees the full request
    model_config = ConfigDict(alias_generator=_camel, populate_by_name=True, extra="allow")

    title: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    column_key: Optional[str] = None
    order: Optional[Number] = None
    assignee_id: Optional[str] = None
    labels: Optional[List[str]] = None
    estimate: Optional[Number] = None
    story_points: Optional[Number] = None
    priority: Optional[Priority] = None
    backlog: Optional[bool] = None
    due_date: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskMove(CamelModel):
    to_column_key: Optional[str] = None
    backlog: bool = False


class ReorderItem(CamelModel):
    id: str
    order: Number
    column_key: Optional[str] = None


class ReorderRequest(CamelModel):
    tasks: List[ReorderItem]


class ImportLocalRequest(CamelModel):
    tasks: List[Dict[str, Any]]
    import_id: Optional[str] = None


# User references
@dataclass(frozen=True)
class UserId:
    id: str


@dataclass(frozen=True)
class PopulatedUser:
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


UserRef = Union[UserId, PopulatedUser]


def parse_user_ref(value: Any) -> UserRef:
    """Read a user reference that is either a bare id or an expanded user record."""
    if isinstance(value, dict):
        raw_id = value.get("id", value.get("_id"))
        return PopulatedUser(id=str(raw_id), name=value.get("name"), email=value.get("email"))
    return UserId(id=str(value))


def user_ref_id(ref: UserRef) -> str:
    return ref.id


# Serialization
def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                v = v.replace(tzinfo=timezone.utc)
            d[k] = v.astimezone(timezone.utc).isoformat()
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d
