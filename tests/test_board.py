"""
Tests for BoardService: projects, membership, tasks, moves, reorders and the events they emit.
"""
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from errors import Conflict, Forbidden, NotFound, ValidationFailed
from realtime import user_room


LIMITED_COLUMNS = [
    {"key": "to-do", "title": "To do", "wip": 2},
    {"key": "in-work", "title": "In work", "wip": 1},
    {"key": "done", "title": "Done"},
]


def add(board, project_id, title, column_key, order, **fields):
    return board.create_task(project_id, "alice", {"title": title, "columnKey": column_key, "order": order, **fields})


@pytest.fixture
def limited(board):
    """A project with WIP-limited columns, owned by alice with bob as a member."""
    created = board.create_project("alice", "Limited", columns=LIMITED_COLUMNS)
    data, _ = board.join_project("bob", created["joinCode"])
    return data


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Projects
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_new_project_gets_default_columns(board):
    project = board.create_project("alice", "  Launch  ")
    assert project["name"] == "Launch"
    assert [c["key"] for c in project["columns"]] == ["hot-tasks", "to-do", "in-work", "done"]
    assert [c["order"] for c in project["columns"]] == [1, 2, 3, 4]
    assert len(project["joinCode"]) == 6
    assert project["members"] == []


def test_project_name_is_required(board):
    with pytest.raises(ValidationFailed):
        board.create_project("alice", "   ")


def test_custom_columns_are_sorted_and_zero_wip_dropped(board):
    project = board.create_project("alice", "Custom", columns=[
        {"key": "b", "title": "B", "order": 2, "wip": 0},
        {"key": "a", "title": "A", "order": 1, "wip": 3},
    ])
    assert [c["key"] for c in project["columns"]] == ["a", "b"]
    assert project["columns"][0]["wip"] == 3
    assert "wip" not in project["columns"][1]
    assert all(c["id"] for c in project["columns"])


@pytest.mark.parametrize("columns", [
    [{"key": "backlog", "title": "Backlog"}],
    [{"key": "x", "title": "X"}, {"key": "x", "title": "Again"}],
    [{"key": "x", "title": ""}],
    [{"key": "Has Spaces", "title": "X"}],
    [{"key": "x", "title": "X", "wip": -1}],
])
def test_invalid_columns_are_rejected(board, columns):
    with pytest.raises(ValidationFailed):
        board.create_project("alice", "Bad", columns=columns)


def test_list_projects_populates_owner_and_members(board, project):
    projects = board.list_projects("bob")
    assert [p["id"] for p in projects] == [project["id"]]
    assert projects[0]["ownerId"] == {"id": "alice", "name": "Alice", "email": "alice@example.com"}
    assert projects[0]["members"][0]["id"] == "bob"
    assert board.list_projects("dave") == []


def test_outsider_cannot_view_project(board, project):
    with pytest.raises(Forbidden) as exc:
        board.get_project(project["id"], "dave")
    assert exc.value.message == "Forbidden"


def test_invalid_and_unknown_project_ids(board):
    with pytest.raises(ValidationFailed) as exc:
        board.get_project("not-an-id", "alice")
    assert exc.value.message == "Invalid id"
    with pytest.raises(NotFound):
        board.get_project(str(ObjectId()), "alice")


def test_update_columns_is_owner_only_and_broadcast(board, project, recorder):
    with pytest.raises(Forbidden) as exc:
        board.update_project(project["id"], "bob", {"name": "Mine"})
    assert "owner" in exc.value.message

    recorder.events.clear()
    updated = board.update_project(project["id"], "alice", {"columns": [{"key": "todo", "title": "Todo", "wip": 5}]})
    assert [c["key"] for c in updated["columns"]] == ["todo"]
    event, payload = recorder.for_room(project["id"])[0]
    assert event == "project:columns-updated"
    assert payload["columns"][0]["wip"] == 5


def test_regenerate_join_code(board, project):
    refreshed = board.regenerate_join_code(project["id"], "alice")
    assert len(refreshed["joinCode"]) == 6
    assert board.join_project("carol", refreshed["joinCode"])[1] == "Joined project"
    with pytest.raises(Forbidden):
        board.regenerate_join_code(project["id"], "bob")


def test_delete_project_cascades_to_tasks(board, project, db, recorder):
    add(board, project["id"], "One", "to-do", 1000)
    board.create_backlog_task(project["id"], "alice", {"title": "Later"})
    with pytest.raises(Forbidden):
        board.delete_project(project["id"], "bob")

    board.delete_project(project["id"], "alice")
    assert db["task"].count_documents({}) == 0
    assert db["project"].count_documents({}) == 0
    assert recorder.names()[-1] == "project:deleted"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Membership
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_join_notifies_project_and_user_rooms(board, recorder):
    created = board.create_project("alice", "Launch")
    data, message = board.join_project("bob", created["joinCode"])

    assert message == "Joined project"
    assert [m["id"] for m in data["members"]] == ["bob"]
    project_events = recorder.for_room(created["id"])
    assert project_events[0][0] == "project:member-joined"
    assert project_events[0][1]["memberId"] == "bob"
    assert project_events[0][1]["member"]["name"] == "Bob"
    user_events = recorder.for_room(user_room("bob"))
    assert user_events[0][0] == "user:joined-project"
    assert user_events[0][1]["projectName"] == "Launch"


def test_join_twice_is_idempotent(board, project, recorder):
    recorder.events.clear()
    data, message = board.join_project("bob", project["joinCode"])
    assert message == "Already a member"
    assert [m["id"] for m in data["members"]] == ["bob"]
    assert recorder.events == []


def test_owner_cannot_join_own_project(board, project):
    with pytest.raises(ValidationFailed):
        board.join_project("alice", project["joinCode"])


def test_join_with_unknown_code(board):
    with pytest.raises(NotFound):
        board.join_project("bob", "zzzzzz")
    with pytest.raises(ValidationFailed):
        board.join_project("bob", "")


def test_remove_member(board, project, recorder):
    recorder.events.clear()
    data, message = board.remove_member(project["id"], "alice", "bob")
    assert message == "Member removed successfully"
    assert data["members"] == []
    assert recorder.for_room(project["id"])[0][0] == "project:member-removed"
    assert recorder.for_room(user_room("bob"))[0][0] == "user:removed-from-project"
    with pytest.raises(Forbidden):
        board.get_project(project["id"], "bob")


def test_remove_member_errors(board, project):
    with pytest.raises(ValidationFailed):
        board.remove_member(project["id"], "alice", "alice")
    with pytest.raises(NotFound):
        board.remove_member(project["id"], "alice", "dave")
    with pytest.raises(Forbidden):
        board.remove_member(project["id"], "bob", "bob")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_task_in_column(board, project, recorder):
    task = add(board, project["id"], "Draft", "to-do", 1000, labels=["docs"])
    assert task["columnKey"] == "to-do"
    assert task["backlog"] is False
    assert task["priority"] == "medium"
    assert task["projectId"] == project["id"]
    assert ("task:created", {"task": task}) in recorder.for_room(project["id"])


def test_create_task_validation(board, project):
    with pytest.raises(ValidationFailed):
        board.create_task(project["id"], "alice", {"title": "No order", "columnKey": "to-do"})
    with pytest.raises(ValidationFailed):
        board.create_task(project["id"], "alice", {"title": "No column", "order": 1})
    with pytest.raises(ValidationFailed) as exc:
        add(board, project["id"], "Ghost", "nowhere", 1)
    assert exc.value.details == {"columnKey": "nowhere"}
    with pytest.raises(ValidationFailed):
        add(board, project["id"], "Stranger", "to-do", 1, assigneeId="dave")


def test_members_cannot_create_or_delete_tasks(board, project):
    with pytest.raises(Forbidden) as exc:
        board.create_task(project["id"], "bob", {"title": "Mine", "columnKey": "to-do", "order": 1})
    assert exc.value.message == "Only the project owner can create tasks"

    task = add(board, project["id"], "Owned", "to-do", 1)
    with pytest.raises(Forbidden):
        board.delete_task(project["id"], task["id"], "bob")


def test_create_does_not_check_wip(board, limited):
    for order in (1, 2, 3):
        add(board, limited["id"], f"Task {order}", "in-work", order)
    assert len(board.list_tasks(limited["id"], "alice")) == 3


def test_backlog_task_has_no_column(board, project):
    task = board.create_backlog_task(project["id"], "alice", {"title": "Someday"})
    assert task["backlog"] is True
    assert "columnKey" not in task
    assert isinstance(task["order"], int)
    assert [t["id"] for t in board.list_backlog(project["id"], "bob")] == [task["id"]]
    assert board.list_tasks(project["id"], "bob") == []


def test_delete_task_emits_id(board, project, recorder):
    task = add(board, project["id"], "Gone", "done", 1)
    board.delete_task(project["id"], task["id"], "alice")
    assert recorder.for_room(project["id"])[-1] == ("task:deleted", {"taskId": task["id"]})
    with pytest.raises(NotFound):
        board.delete_task(project["id"], task["id"], "alice")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Updates
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_owner_updates_fields_and_clears_nulls(board, project):
    task = add(board, project["id"], "Draft", "to-do", 1, description="old")
    updated = board.update_task(project["id"], task["id"], "alice", {"title": "Final", "description": None})
    assert updated["title"] == "Final"
    assert "description" not in updated


def test_owner_cannot_clear_required_fields(board, project, recorder):
    task = add(board, project["id"], "Keep", "to-do", 1, priority="high")
    recorder.events.clear()

    with pytest.raises(ValidationFailed) as exc:
        board.update_task(project["id"], task["id"], "alice", {"title": None, "order": None, "priority": None})
    assert exc.value.details == {"fields": ["title", "order", "priority"]}

    stored = board.list_tasks(project["id"], "alice")[0]
    assert (stored["title"], stored["order"], stored["priority"]) == ("Keep", 1, "high")
    assert recorder.events == []


def test_assignee_can_complete_own_task(board, project, recorder):
    task = add(board, project["id"], "Review", "in-work", 1, assigneeId="bob")
    recorder.events.clear()
    updated = board.update_task(project["id"], task["id"], "bob", {"completedAt": datetime.now(timezone.utc)})
    assert updated["completedAt"]
    assert "startedAt" not in updated
    assert recorder.names() == ["task:updated"]


def test_assignee_patch_with_other_fields_is_refused_whole(board, project):
    task = add(board, project["id"], "Review", "in-work", 1, assigneeId="bob")
    with pytest.raises(Forbidden) as exc:
        board.update_task(project["id"], task["id"], "bob",
                          {"completedAt": datetime.now(timezone.utc), "title": "Hijacked"})
    assert "assignees" in exc.value.message
    stored = board.list_tasks(project["id"], "alice")[0]
    assert stored["title"] == "Review"
    assert "completedAt" not in stored


def test_non_assignee_member_cannot_update(board, project):
    board.join_project("carol", project["joinCode"])
    task = add(board, project["id"], "Review", "in-work", 1, assigneeId="bob")
    with pytest.raises(Forbidden) as exc:
        board.update_task(project["id"], task["id"], "carol", {"completedAt": datetime.now(timezone.utc)})
    assert exc.value.message == "Only the project owner or task assignee can update this task"
    with pytest.raises(Forbidden) as exc:
        board.update_task(project["id"], task["id"], "dave", {"title": "x"})
    assert exc.value.message == "Forbidden"


def test_update_keeps_backlog_and_column_in_step(board, project):
    task = add(board, project["id"], "Park me", "to-do", 1)

    parked = board.update_task(project["id"], task["id"], "alice", {"columnKey": None})
    assert parked["backlog"] is True
    assert "columnKey" not in parked

    with pytest.raises(ValidationFailed):
        board.update_task(project["id"], task["id"], "alice", {"backlog": False})
    with pytest.raises(ValidationFailed):
        board.update_task(project["id"], task["id"], "alice", {"backlog": True, "columnKey": "done"})

    restored = board.update_task(project["id"], task["id"], "alice", {"columnKey": "done"})
    assert restored["backlog"] is False
    assert restored["columnKey"] == "done"

    parked = board.update_task(project["id"], task["id"], "alice", {"backlog": True})
    assert "columnKey" not in parked


def test_update_with_no_changes_emits_nothing(board, project, recorder):
    task = add(board, project["id"], "Same", "to-do", 1)
    recorder.events.clear()
    result = board.update_task(project["id"], task["id"], "alice", {"unknownField": 1})
    assert result["id"] == task["id"]
    assert recorder.events == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Moves
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_move_into_full_column_conflicts(board, limited):
    add(board, limited["id"], "A", "to-do", 1)
    add(board, limited["id"], "B", "to-do", 2)
    c = add(board, limited["id"], "C", "done", 1)

    with pytest.raises(Conflict) as exc:
        board.move_task(limited["id"], c["id"], "bob", to_column_key="to-do")
    assert exc.value.message == "WIP_EXCEEDED"
    assert exc.value.details == {"columnKey": "to-do", "wip": 2, "count": 2}
    assert exc.value.status_code == 409

    stored = next(t for t in board.list_tasks(limited["id"], "alice") if t["id"] == c["id"])
    assert stored["columnKey"] == "done"


def test_member_moves_task_and_event_is_sent(board, limited, recorder):
    task = add(board, limited["id"], "A", "done", 1)
    recorder.events.clear()
    moved = board.move_task(limited["id"], task["id"], "bob", to_column_key="in-work")
    assert moved["columnKey"] == "in-work"
    assert recorder.for_room(limited["id"]) == [("task:moved", {"task": moved})]


def test_move_to_backlog_skips_wip(board, limited):
    task = add(board, limited["id"], "A", "in-work", 1)
    moved = board.move_task(limited["id"], task["id"], "alice", backlog=True)
    assert moved["backlog"] is True
    assert "columnKey" not in moved
    assert board.list_tasks(limited["id"], "alice") == []


def test_move_validation(board, limited):
    task = add(board, limited["id"], "A", "done", 1)
    with pytest.raises(ValidationFailed):
        board.move_task(limited["id"], task["id"], "alice")
    with pytest.raises(ValidationFailed):
        board.move_task(limited["id"], task["id"], "alice", to_column_key="nowhere")
    with pytest.raises(Forbidden):
        board.move_task(limited["id"], task["id"], "dave", to_column_key="to-do")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reorder
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_reorder_is_all_or_nothing(board, limited, recorder):
    a = add(board, limited["id"], "A", "in-work", 1)
    b = add(board, limited["id"], "B", "done", 1)
    recorder.events.clear()

    with pytest.raises(Conflict) as exc:
        board.reorder_tasks(limited["id"], "alice", [
            {"id": a["id"], "order": 5},
            {"id": b["id"], "order": 2, "columnKey": "in-work"},
        ])
    assert exc.value.details == {"violations": [{"columnKey": "in-work", "wip": 1, "count": 2}]}
    stored = {t["id"]: t for t in board.list_tasks(limited["id"], "alice")}
    assert stored[a["id"]]["order"] == 1
    assert stored[b["id"]]["columnKey"] == "done"
    assert recorder.events == []


def test_reorder_swap_is_checked_as_a_whole(board, limited, recorder):
    a = add(board, limited["id"], "A", "in-work", 1)
    b = add(board, limited["id"], "B", "done", 1)
    recorder.events.clear()

    applied = board.reorder_tasks(limited["id"], "alice", [
        {"id": a["id"], "order": 3, "columnKey": "done"},
        {"id": b["id"], "order": 1, "columnKey": "in-work"},
    ])
    assert applied == [
        {"id": a["id"], "order": 3, "columnKey": "done"},
        {"id": b["id"], "order": 1, "columnKey": "in-work"},
    ]
    stored = {t["id"]: t for t in board.list_tasks(limited["id"], "alice")}
    assert stored[a["id"]]["columnKey"] == "done"
    assert stored[b["id"]]["columnKey"] == "in-work"
    assert recorder.names() == ["tasks:reordered"]


def test_reorder_pulls_task_out_of_backlog(board, limited):
    task = board.create_backlog_task(limited["id"], "alice", {"title": "Someday"})
    board.reorder_tasks(limited["id"], "alice", [{"id": task["id"], "order": 1, "columnKey": "to-do"}])
    assert board.list_backlog(limited["id"], "alice") == []
    assert board.list_tasks(limited["id"], "alice")[0]["columnKey"] == "to-do"


def test_reorder_rejects_bad_batches(board, limited):
    a = add(board, limited["id"], "A", "done", 1)
    with pytest.raises(ValidationFailed):
        board.reorder_tasks(limited["id"], "alice", [{"id": str(ObjectId()), "order": 1}])
    with pytest.raises(ValidationFailed):
        board.reorder_tasks(limited["id"], "alice", [{"id": a["id"], "order": 1}, {"id": a["id"], "order": 2}])
    with pytest.raises(ValidationFailed):
        board.reorder_tasks(limited["id"], "alice", [{"id": a["id"], "order": 1, "columnKey": "nowhere"}])
    with pytest.raises(Forbidden):
        board.reorder_tasks(limited["id"], "bob", [{"id": a["id"], "order": 1}])


def test_empty_reorder_is_a_no_op(board, limited, recorder):
    recorder.events.clear()
    assert board.reorder_tasks(limited["id"], "alice", []) == []
    assert recorder.events == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Import
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_import_local_tasks(board, project, recorder):
    result = board.import_local_tasks(project["id"], "alice", [
        {"title": "From disk", "column": "done", "color": "#ff0000"},
        {"title": "No column"},
        {"column": "archived"},
    ], import_id="device-1")

    assert result["imported"] == 3
    tasks = result["tasks"]
    assert [t["columnKey"] for t in tasks] == ["done", "to-do", "hot-tasks"]
    assert tasks[0]["color"] == "#ff0000"
    assert tasks[2]["title"] == "Untitled"
    assert [t["order"] for t in tasks] == [1000, 2000, 3000]
    assert recorder.names()[-1] == "tasks:imported"


def test_import_is_owner_only(board, project):
    with pytest.raises(Forbidden):
        board.import_local_tasks(project["id"], "bob", [{"title": "x"}])

