"""
Work-in-progress limit checks.

A single move is checked against the destination's current occupancy in
isolation: it is refused when the column is already at its limit. A batch
reorder is checked against the occupancy that would result from applying the
whole batch, and every column left over its limit is reported.

The backlog is never limited.
"""
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from schemas import BACKLOG_KEY


@dataclass(frozen=True)
class Violation:
    column_key: str
    wip: int
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"columnKey": self.column_key, "wip": self.wip, "count": self.count}


def limit_of(column: Optional[Dict[str, Any]]) -> Optional[int]:
    """The column's effective limit, or None when it is unlimited."""
    if not column:
        return None
    wip = column.get("wip")
    if wip is None or wip <= 0:
        return None
    return wip


def check_move(column: Dict[str, Any], occupancy: int) -> Optional[Violation]:
    if column.get("key") == BACKLOG_KEY:
        return None
    wip = limit_of(column)
    if wip is not None and occupancy >= wip:
        return Violation(column["key"], wip, occupancy)
    return None


def placement(task: Dict[str, Any]) -> str:
    if task.get("backlog") or not task.get("columnKey"):
        return BACKLOG_KEY
    return task["columnKey"]


def occupancy(tasks: Iterable[Dict[str, Any]]) -> Counter:
    """Count non-backlog tasks per column key."""
    return Counter(placement(t) for t in tasks if placement(t) != BACKLOG_KEY)


def check_batch(
    columns: List[Dict[str, Any]],
    board_tasks: Iterable[Dict[str, Any]],
    moves: Iterable[Tuple[str, str]],
) -> List[Violation]:
    """Validate a batch of ``(from_key, to_key)`` moves against the current board.

    ``board_tasks`` is the persisted set of non-backlog tasks; ``moves`` holds one
    pair per task in the batch, with ``BACKLOG_KEY`` standing for the backlog.
    """
    counts = occupancy(board_tasks)
    for from_key, to_key in moves:
        if from_key == to_key:
            continue
        if from_key != BACKLOG_KEY:
            counts[from_key] = max(0, counts[from_key] - 1)
        if to_key != BACKLOG_KEY:
            counts[to_key] += 1

    violations = []
    for column in columns:
        wip = limit_of(column)
        count = counts.get(column["key"], 0)
        if wip is not None and count > wip:
            violations.append(Violation(column["key"], wip, count))
    return violations
