"""Board service: the single entry point for reading and mutating the board.

Every write validates its input, persists through a :class:`BoardStorage`
and then announces the change on the :class:`EventBus`.  Reads go straight
to storage; :meth:`BoardService.get_board` is served from a short-lived
per-instance cache.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Optional, TypeVar

from loguru import logger

from ..constants import DEFAULT_CACHE_TTL_SECONDS, LANE_IN_PROGRESS, LANE_ORDER
from ..errors import BoardEngineError, BoardError, InvalidTransitionError, TaskNotFoundError
from ..events.bus import EventBus, EventType
from ..validation import (
    sanitize_query,
    validate_batch,
    validate_lane,
    validate_task_id,
    validate_task_update,
)
from .model import Board, Task
from .store import BoardStorage, MemoryBoardStorage

T = TypeVar("T")

_WIRE_KEYS = {"estimated_hours": "estimatedHours"}


def _public_changes(changes: dict[str, Any]) -> dict[str, Any]:
    return {_WIRE_KEYS.get(k, k): v for k, v in changes.items() if k != "metadata"}


def format_stats(stats: dict[str, Any]) -> str:
    by_lane = stats["byLane"]
    by_priority = stats["byPriority"]
    return (
        "Board Statistics:\n\n"
        "Tasks by Lane:\n"
        f"  - Backlog: {by_lane['backlog']}\n"
        f"  - Todo: {by_lane['todo']}\n"
        f"  - In Progress: {by_lane['in_progress']}\n"
        f"  - Done: {by_lane['done']}\n"
        f"  - Recovery: {by_lane['recovery']}\n\n"
        "Tasks by Priority:\n"
        f"  - Critical: {by_priority['critical']}\n"
        f"  - High: {by_priority['high']}\n"
        f"  - Medium: {by_priority['medium']}\n"
        f"  - Low: {by_priority['low']}\n\n"
        f"Total: {stats['totalTasks']} tasks (~{stats['totalEstimatedHours']:g}h estimated)"
    )


def format_context(board: Board) -> str:
    stats = board.stats()
    active = board.tasks_in_lane(LANE_IN_PROGRESS)
    if active:
        active_lines = "\n".join(f"  - {t.title} ({t.estimated_hours or 0:g}h)" for t in active)
    else:
        active_lines = "  - No active tasks"
    return (
        "Board Context\n\n"
        "Current Board State:\n"
        f"  - Total Tasks: {stats['totalTasks']}\n"
        f"  - In Progress: {stats['byLane']['in_progress']}\n"
        f"  - Completed: {stats['byLane']['done']}\n\n"
        "Work Distribution:\n"
        f"  - Critical Priority: {stats['byPriority']['critical']}\n"
        f"  - High Priority: {stats['byPriority']['high']}\n"
        f"  - Medium Priority: {stats['byPriority']['medium']}\n"
        f"  - Low Priority: {stats['byPriority']['low']}\n\n"
        f"Estimated Remaining: {stats['totalEstimatedHours']:g}h\n\n"
        "Active Work:\n"
        f"{active_lines}"
    )


class BoardService:
    """Validate, persist and announce board mutations.

    Parameters
    ----------
    storage:
        Durable task store.  Defaults to a fresh :class:`MemoryBoardStorage`.
    bus:
        Event bus observers subscribe to.  A private bus is created if omitted.
    cache_ttl:
        Seconds a :meth:`get_board` result is reused.  ``0`` disables caching.
    transitions:
        Optional ``{from_lane: [allowed target lanes]}`` table.  When omitted
        every lane may move to every lane.
    """

    def __init__(
        self,
        storage: Optional[BoardStorage] = None,
        bus: Optional[EventBus] = None,
        *,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        transitions: Optional[dict[str, list[str]]] = None,
    ) -> None:
        self.storage = storage or MemoryBoardStorage()
        self.bus = bus or EventBus()
        self.cache_ttl = max(0.0, float(cache_ttl))
        self.transitions = {k: list(v) for k, v in transitions.items()} if transitions else None
        self.board_id: Optional[str] = None
        self._cache: Optional[tuple[float, Board]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self._call("initialize", self.storage.initialize())
        board = await self._call("getOrCreateBoard", self.storage.get_or_create_board())
        self.board_id = str(board.get("id"))
        logger.info("Board service ready (board {})", self.board_id)

    async def _ensure_ready(self) -> None:
        if self.board_id is None:
            await self.initialize()

    async def close(self) -> None:
        self._invalidate()
        await self._call("close", self.storage.close())

    async def health(self) -> dict[str, Any]:
        healthy = await self.storage.health_check()
        return {
            "status": "healthy" if healthy else "unhealthy",
            "boardId": self.board_id,
            "storage": type(self.storage).__name__,
            "cacheTtl": self.cache_ttl,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except BoardEngineError:
            raise
        except Exception as exc:
            logger.error("Storage operation {} failed: {}", operation, exc)
            raise BoardError(f"Storage operation failed: {exc}", operation=operation) from exc

    def _invalidate(self) -> None:
        self._cache = None

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self.bus.emit(event_type, {**data, "boardId": self.board_id})

    async def _require(self, task_id: str) -> Task:
        task = await self._call("getTask", self.storage.get_task(task_id))
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _check_transition(self, from_lane: str, to_lane: str) -> None:
        if self.transitions is None or from_lane == to_lane:
            return
        allowed = self.transitions.get(from_lane, [])
        if to_lane not in allowed:
            raise InvalidTransitionError(from_lane, to_lane, allowed)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_task(self, data: dict[str, Any]) -> Task:
        await self._ensure_ready()
        task = Task.create(data)
        saved = await self._call("createTask", self.storage.create_task(task))
        self._invalidate()
        logger.info("Created task {} in {}", saved.id, saved.lane.value)
        await self._emit(EventType.TASK_CREATED, {"task": saved.public_dict()})
        return saved

    async def batch_create(self, items: list[dict[str, Any]]) -> list[Task]:
        """Create many tasks; the whole batch is validated before anything is stored."""
        await self._ensure_ready()
        validated = validate_batch(items)
        tasks = [Task.from_validated(v) for v in validated]
        saved = await self._call("batchCreate", self.storage.create_tasks(tasks))
        self._invalidate()
        logger.info("Created {} task(s) in batch", len(saved))
        for task in saved:
            await self._emit(EventType.TASK_CREATED, {"task": task.public_dict()})
        return saved

    async def move_task(self, task_id: str, target_lane: str, expected_version: Optional[int] = None) -> Task:
        await self._ensure_ready()
        task_id = validate_task_id(task_id)
        lane = validate_lane(target_lane)
        current = await self._require(task_id)
        old_lane = current.lane.value
        self._check_transition(old_lane, lane)
        updated = await self._call(
            "moveTask",
            self.storage.update_task(task_id, {"lane": lane}, expected_version),
        )
        self._invalidate()
        logger.info("Moved task {} from {} to {}", task_id, old_lane, lane)
        await self._emit(EventType.TASK_MOVED, {
            "task": updated.public_dict(),
            "oldLane": old_lane,
            "newLane": lane,
        })
        return updated

    async def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Task:
        await self._ensure_ready()
        task_id = validate_task_id(task_id)
        changes = validate_task_update(patch)
        if "lane" in changes and self.transitions is not None:
            current = await self._require(task_id)
            self._check_transition(current.lane.value, changes["lane"])
        updated = await self._call(
            "updateTask",
            self.storage.update_task(task_id, changes, expected_version),
        )
        self._invalidate()
        logger.info("Updated task {} ({})", task_id, ", ".join(sorted(changes)) or "no fields")
        await self._emit(EventType.TASK_UPDATED, {
            "task": updated.public_dict(),
            "changes": _public_changes(changes),
        })
        return updated

    async def delete_task(self, task_id: str) -> bool:
        """Remove a task.  Deleting an unknown id is a no-op returning ``False``."""
        await self._ensure_ready()
        task_id = validate_task_id(task_id)
        removed = await self._call("deleteTask", self.storage.delete_task(task_id))
        if not removed:
            logger.debug("Delete of unknown task {} ignored", task_id)
            return False
        self._invalidate()
        logger.info("Deleted task {}", task_id)
        await self._emit(EventType.TASK_DELETED, {"taskId": task_id})
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task:
        await self._ensure_ready()
        return await self._require(validate_task_id(task_id))

    async def search_tasks(self, query: str, lane: Optional[str] = None) -> list[Task]:
        await self._ensure_ready()
        pattern = sanitize_query(query)
        lane_filter = validate_lane(lane) if lane else None
        return await self._call("searchTasks", self.storage.search_tasks(pattern, lane_filter))

    async def get_board(self) -> Board:
        """Current board view.  Treat the returned object as read-only."""
        await self._ensure_ready()
        now = time.monotonic()
        if self._cache is not None and self.cache_ttl > 0 and now - self._cache[0] < self.cache_ttl:
            return self._cache[1]
        lanes = await self._call("getBoard", self.storage.load_tasks())
        board = Board(
            lanes={lane: lanes.get(lane, []) for lane in LANE_ORDER},
            metadata={"boardId": self.board_id},
        )
        if self.cache_ttl > 0:
            self._cache = (now, board)
        return board

    async def get_stats(self) -> dict[str, Any]:
        board = await self.get_board()
        return board.stats()

    async def get_context(self) -> str:
        return format_context(await self.get_board())
