"""Task entity and Board aggregate.

A :class:`Task` is only ever built through :meth:`Task.create` (which runs the
validators) or rehydrated through :meth:`Task.from_dict`.  The :class:`Board`
is a transient lane -> tasks view rebuilt from storage; it never owns tasks.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from ..constants import (
    BOARD_SCHEMA_VERSION,
    DEFAULT_LANE,
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    LANE_ORDER,
    PRIORITY_ORDER,
)
from ..errors import BoardError, InvalidLaneError
from ..validation import validate_task_data, validate_task_update


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Lane(str, Enum):
    """Board column a task sits in."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    RECOVERY = "recovery"

    @property
    def sort_key(self) -> int:
        return LANE_ORDER.index(self.value)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def sort_key(self) -> int:
        return PRIORITY_ORDER.index(self.value)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _generate_id() -> str:
    """Opaque task id: ``task-<12hex>``."""
    return f"task-{uuid.uuid4().hex[:12]}"


def _coerce_enum(enum_cls: type[Enum], raw: Any, default: Enum) -> Enum:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        return default


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """One unit of work on the board."""

    id: str = field(default_factory=_generate_id)
    title: str = ""
    description: str = ""
    lane: Lane = Lane.BACKLOG
    priority: Priority = Priority.MEDIUM
    status: str = DEFAULT_STATUS
    tags: list[str] = field(default_factory=list)
    assignee: Optional[str] = None
    estimated_hours: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    # ------------------------------------------------------------------
    # Construction / mutation
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, data: dict[str, Any]) -> "Task":
        """Validate raw caller input and build a fresh task."""
        validated = validate_task_data(data)
        return cls.from_validated(validated)

    @classmethod
    def from_validated(cls, validated: dict[str, Any]) -> "Task":
        now = _now_iso()
        return cls(
            title=validated["title"],
            description=validated.get("description", ""),
            lane=Lane(validated.get("lane", DEFAULT_LANE)),
            priority=Priority(validated.get("priority", DEFAULT_PRIORITY)),
            status=validated.get("status") or DEFAULT_STATUS,
            tags=list(validated.get("tags", [])),
            assignee=validated.get("assignee"),
            estimated_hours=validated.get("estimated_hours"),
            metadata=dict(validated.get("metadata", {})),
            created_at=now,
            updated_at=now,
        )

    def apply_update(self, patch: dict[str, Any]) -> dict[str, Any]:
        """Revalidate and apply the fields in *patch*.

        Returns the validated changes (snake_case keys).  Fields absent from
        the patch are left untouched; ``updated_at`` is always refreshed.
        """
        changes = validate_task_update(patch)
        for key, value in changes.items():
            if key == "lane":
                value = Lane(value)
            elif key == "priority":
                value = Priority(value)
            elif key == "status" and not value:
                value = DEFAULT_STATUS
            setattr(self, key, value)
        self.touch()
        return changes

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def copy(self) -> "Task":
        return Task.from_dict(self.to_dict())

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Plain representation using the camelCase wire keys."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "lane": self.lane.value,
            "priority": self.priority.value,
            "status": self.status,
            "tags": list(self.tags),
            "assignee": self.assignee,
            "estimatedHours": self.estimated_hours,
            "metadata": dict(self.metadata),
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def public_dict(self) -> dict[str, Any]:
        """Payload sent to observers; internal metadata stays server-side."""
        data = self.to_dict()
        data.pop("metadata", None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Rehydrate from a stored dict (camelCase or snake_case keys)."""
        hours = _pick(data, "estimatedHours", "estimated_hours")
        return cls(
            id=str(data.get("id") or _generate_id()),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            lane=_coerce_enum(Lane, data.get("lane"), Lane.BACKLOG),
            priority=_coerce_enum(Priority, data.get("priority"), Priority.MEDIUM),
            status=str(data.get("status") or DEFAULT_STATUS),
            tags=[str(t) for t in list(data.get("tags") or []) if isinstance(t, str) and t],
            assignee=data.get("assignee") or None,
            estimated_hours=float(hours) if hours else None,
            metadata=dict(data.get("metadata") or {}),
            version=int(data.get("version") or 1),
            created_at=str(_pick(data, "createdAt", "created_at", default=None) or _now_iso()),
            updated_at=str(_pick(data, "updatedAt", "updated_at", default=None) or _now_iso()),
        )


# ---------------------------------------------------------------------------
# Board
# ---------------------------------------------------------------------------

def empty_lanes() -> dict[str, list[Task]]:
    return {lane: [] for lane in LANE_ORDER}


def compute_stats(tasks: Iterable[Task]) -> dict[str, Any]:
    """Counts per lane and priority plus the estimated-hours total."""
    stats: dict[str, Any] = {
        "totalTasks": 0,
        "byLane": {lane: 0 for lane in LANE_ORDER},
        "byPriority": {priority: 0 for priority in PRIORITY_ORDER},
        "totalEstimatedHours": 0.0,
    }
    for task in tasks:
        stats["totalTasks"] += 1
        stats["byLane"][task.lane.value] += 1
        stats["byPriority"][task.priority.value] += 1
        stats["totalEstimatedHours"] += task.estimated_hours or 0
    return stats


class Board:
    """Lane -> ordered tasks view.  Each task sits in exactly one lane."""

    def __init__(
        self,
        lanes: Optional[dict[str, list[Task]]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.lanes: dict[str, list[Task]] = empty_lanes()
        self.metadata: dict[str, Any] = {
            "lastSync": _now_iso(),
            "version": BOARD_SCHEMA_VERSION,
            **(metadata or {}),
        }
        self._index: dict[str, Task] = {}
        for lane_name, tasks in (lanes or {}).items():
            for task in tasks:
                self._place(task, lane_name)

    def _place(self, task: Task, lane_name: str) -> None:
        if lane_name not in self.lanes:
            raise InvalidLaneError(lane_name, LANE_ORDER)
        if task.lane.value != lane_name:
            raise BoardError(
                f"Task {task.id} has lane '{task.lane.value}' but was placed in '{lane_name}'",
                operation="place",
            )
        if task.id in self._index:
            raise BoardError(f"Task {task.id} appears more than once on the board", operation="place")
        self.lanes[lane_name].append(task)
        self._index[task.id] = task

    # -- mutation (view building only) --------------------------------------

    def add_task(self, task: Task) -> None:
        self._place(task, task.lane.value)
        self.metadata["lastSync"] = _now_iso()

    # -- queries -------------------------------------------------------------

    def all_tasks(self) -> list[Task]:
        return [task for lane in LANE_ORDER for task in self.lanes[lane]]

    def tasks_in_lane(self, lane: str | Lane) -> list[Task]:
        key = lane.value if isinstance(lane, Lane) else str(lane)
        if key not in self.lanes:
            raise InvalidLaneError(lane, LANE_ORDER)
        return list(self.lanes[key])

    def find(self, task_id: str) -> Optional[Task]:
        return self._index.get(task_id)

    def __len__(self) -> int:
        return len(self._index)

    def stats(self) -> dict[str, Any]:
        return compute_stats(self.all_tasks())

    # -- serialization -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "lanes": {lane: [t.to_dict() for t in self.lanes[lane]] for lane in LANE_ORDER},
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Board":
        raw_lanes = data.get("lanes") or {}
        if not isinstance(raw_lanes, dict):
            raise BoardError("Board lanes must be an object", operation="fromDict")
        lanes: dict[str, list[Task]] = {}
        for lane_name, items in raw_lanes.items():
            if not isinstance(items, list):
                raise BoardError(f"Lane '{lane_name}' must be an array", operation="fromDict")
            lanes[lane_name] = [Task.from_dict(item) for item in items]
        return cls(lanes=lanes, metadata=dict(data.get("metadata") or {}))

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task], metadata: Optional[dict[str, Any]] = None) -> "Board":
        board = cls(metadata=metadata)
        for task in tasks:
            board._place(task, task.lane.value)
        return board
