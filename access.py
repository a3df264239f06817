"""
Who may do what on a project.

Pure predicates over project/task documents. Nothing here touches the store
or raises; callers map a denied Decision onto a Forbidden error.
"""
from enum import Enum
from typing import Any, Dict, Iterable

Doc = Dict[str, Any]

# Fields an assignee (who is not the owner) may change on their own task
ASSIGNEE_FIELDS = frozenset({"startedAt", "completedAt"})


class Decision(Enum):
    ALLOWED = "allowed"
    NOT_MEMBER = "forbidden-not-member"
    ROLE = "forbidden-role"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOWED


def is_owner(project: Doc, user_id: str) -> bool:
    return project.get("ownerId") is not None and str(project["ownerId"]) == str(user_id)


def is_member(project: Doc, user_id: str) -> bool:
    return any(str(m) == str(user_id) for m in project.get("members") or [])


def has_access(project: Doc, user_id: str) -> bool:
    return is_owner(project, user_id) or is_member(project, user_id)


def can_view(project: Doc, user_id: str) -> Decision:
    return Decision.ALLOWED if has_access(project, user_id) else Decision.NOT_MEMBER


def _owner_only(project: Doc, user_id: str) -> Decision:
    if not has_access(project, user_id):
        return Decision.NOT_MEMBER
    return Decision.ALLOWED if is_owner(project, user_id) else Decision.ROLE


def can_create_or_delete_task(project: Doc, user_id: str) -> Decision:
    return _owner_only(project, user_id)


def can_modify_project_settings(project: Doc, user_id: str) -> Decision:
    return _owner_only(project, user_id)


def is_assignee(task: Doc, user_id: str) -> bool:
    return task.get("assigneeId") is not None and str(task["assigneeId"]) == str(user_id)


def can_update_task(project: Doc, task: Doc, user_id: str, fields: Iterable[str]) -> Decision:
    """Owners may change anything; an assignee only the status timestamps.

    A request from the assignee that names any other field is refused as a
    whole, as is an empty request.
    """
    if not has_access(project, user_id):
        return Decision.NOT_MEMBER
    if is_owner(project, user_id):
        return Decision.ALLOWED
    fields = set(fields)
    if is_assignee(task, user_id) and fields and fields <= ASSIGNEE_FIELDS:
        return Decision.ALLOWED
    return Decision.ROLE


def can_remove_member(project: Doc, user_id: str, target_id: str) -> Decision:
    decision = _owner_only(project, user_id)
    if decision.allowed and is_owner(project, target_id):
        return Decision.ROLE
    return decision
