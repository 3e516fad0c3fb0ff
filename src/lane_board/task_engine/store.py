"""Storage adapters for board tasks.

:class:`BoardStorage` is the async contract the service talks to.  Two
reference adapters ship with the package:

* :class:`MemoryBoardStorage`, a dict-backed store used by tests and as the
  default backend.
* :class:`YamlBoardStorage`, a single YAML file (``tasks.yaml``) inside the
  ``.lane_board/`` directory.  Every read and write goes through
  :meth:`YamlBoardStorage.transaction`, which holds an exclusive file lock.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from ..constants import (
    BOARD_SCHEMA_VERSION,
    DEFAULT_BOARD_ID,
    DEFAULT_BOARD_NAME,
    LANE_ORDER,
    TASKS_FILE,
    TASKS_LOCK_FILE,
)
from ..errors import BoardError, TaskNotFoundError, VersionConflictError
from ..io_utils import FileLock, atomic_write_yaml, load_yaml_with_error
from .model import Task, compute_stats, empty_lanes


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _group_by_lane(tasks: list[Task]) -> dict[str, list[Task]]:
    lanes = empty_lanes()
    for task in tasks:
        lanes[task.lane.value].append(task)
    return lanes


def _matches(task: Task, pattern: re.Pattern[str], lane: Optional[str]) -> bool:
    if lane and task.lane.value != lane:
        return False
    return bool(pattern.search(task.title) or pattern.search(task.description))


def _check_version(task: Task, expected_version: Optional[int]) -> None:
    if expected_version is not None and task.version != expected_version:
        raise VersionConflictError(task.id, expected_version, task.version)


def _apply_patch(task: Task, patch: dict[str, Any]) -> Task:
    task.apply_update(patch)
    task.version += 1
    return task


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class BoardStorage(ABC):
    """Durable home of task records.

    Implementations own the tasks; callers only ever receive copies.  Every
    successful mutation bumps ``Task.version`` and refreshes ``updated_at``.
    ``search_tasks`` receives a regular expression already escaped by
    :func:`lane_board.validation.sanitize_query`.
    """

    async def initialize(self) -> None:
        return None

    @abstractmethod
    async def get_or_create_board(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def load_tasks(self) -> dict[str, list[Task]]:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        ...

    async def create_tasks(self, tasks: list[Task]) -> list[Task]:
        """Persist *tasks* one by one, undoing earlier rows if a later one fails."""
        created: list[Task] = []
        try:
            for task in tasks:
                created.append(await self.create_task(task))
        except Exception:
            for done in reversed(created):
                try:
                    await self.delete_task(done.id)
                except Exception as exc:
                    logger.error("Rollback of task {} failed: {}", done.id, exc)
            raise
        return created

    @abstractmethod
    async def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Task:
        ...

    @abstractmethod
    async def delete_task(self, task_id: str) -> bool:
        ...

    async def get_stats(self) -> dict[str, Any]:
        lanes = await self.load_tasks()
        return compute_stats(t for lane in LANE_ORDER for t in lanes.get(lane, []))

    @abstractmethod
    async def search_tasks(self, query: str, lane: Optional[str] = None) -> list[Task]:
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------

class MemoryBoardStorage(BoardStorage):
    """Dict-backed store.  Each row operation completes without awaiting."""

    def __init__(self, board_id: str = DEFAULT_BOARD_ID, board_name: str = DEFAULT_BOARD_NAME) -> None:
        self._board: dict[str, Any] = {
            "id": board_id,
            "name": board_name,
            "version": BOARD_SCHEMA_VERSION,
            "createdAt": _now_iso(),
        }
        self._tasks: dict[str, Task] = {}
        self._closed = False

    async def get_or_create_board(self) -> dict[str, Any]:
        return dict(self._board)

    async def load_tasks(self) -> dict[str, list[Task]]:
        return _group_by_lane([t.copy() for t in self._tasks.values()])

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.copy() if task else None

    async def create_task(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise BoardError(f"Task {task.id} already exists", operation="createTask")
        self._tasks[task.id] = task.copy()
        return task.copy()

    async def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Task:
        current = self._tasks.get(task_id)
        if current is None:
            raise TaskNotFoundError(task_id)
        _check_version(current, expected_version)
        updated = _apply_patch(current.copy(), patch)
        self._tasks[task_id] = updated
        return updated.copy()

    async def delete_task(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    async def search_tasks(self, query: str, lane: Optional[str] = None) -> list[Task]:
        pattern = re.compile(query, re.IGNORECASE)
        return [t.copy() for t in self._tasks.values() if _matches(t, pattern, lane)]

    async def health_check(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True


# ---------------------------------------------------------------------------
# YAML file adapter
# ---------------------------------------------------------------------------

class _BoardTx:
    """In-memory transaction over the task list of one YAML document.

    Mutations are collected and flushed back to disk when the
    ``transaction`` context manager exits without error.
    """

    def __init__(self, board: dict[str, Any], tasks: list[Task]) -> None:
        self.board = board
        self.tasks = tasks
        self.dirty = False
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def add(self, task: Task) -> Task:
        if task.id in self._index:
            raise BoardError(f"Task {task.id} already exists", operation="createTask")
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.dirty = True
        return task

    def remove(self, task_id: str) -> bool:
        idx = self._index.pop(task_id, None)
        if idx is None:
            return False
        self.tasks.pop(idx)
        self._index = {t.id: i for i, t in enumerate(self.tasks)}
        self.dirty = True
        return True


class YamlBoardStorage(BoardStorage):
    """File-backed store; blocking I/O runs in a worker thread.

    Parameters
    ----------
    state_dir:
        Path to the ``.lane_board/`` directory.
    """

    def __init__(self, state_dir: Path, board_name: str = DEFAULT_BOARD_NAME) -> None:
        self._state_dir = Path(state_dir)
        self._store_path = self._state_dir / TASKS_FILE
        self._lock_path = self._state_dir / TASKS_LOCK_FILE
        self._board_name = board_name

    @property
    def path(self) -> Path:
        return self._store_path

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> tuple[dict[str, Any], list[Task]]:
        data, error = load_yaml_with_error(self._store_path, {})
        if error:
            raise BoardError(f"Cannot read board file: {error}", operation="load")
        board = data.get("board") if isinstance(data.get("board"), dict) else {}
        raw_tasks = data.get("tasks") if isinstance(data.get("tasks"), list) else []
        return dict(board), [Task.from_dict(d) for d in raw_tasks if isinstance(d, dict)]

    def _save(self, board: dict[str, Any], tasks: list[Task]) -> None:
        payload = {
            "version": BOARD_SCHEMA_VERSION,
            "board": board,
            "tasks": [t.to_dict() for t in tasks],
        }
        atomic_write_yaml(self._store_path, payload)

    @contextmanager
    def transaction(self) -> Iterator[_BoardTx]:
        """Acquire the lock, load the board, yield a transaction, save on exit.

        Usage::

            with store.transaction() as tx:
                tx.add(task)
                # saved on exit
        """
        with FileLock(self._lock_path):
            board, tasks = self._load()
            tx = _BoardTx(board, tasks)
            yield tx
            if tx.dirty:
                self._save(tx.board, tx.tasks)

    def _ensure_board(self) -> dict[str, Any]:
        with self.transaction() as tx:
            if not tx.board.get("id"):
                tx.board = {
                    "id": DEFAULT_BOARD_ID,
                    "name": self._board_name,
                    "version": BOARD_SCHEMA_VERSION,
                    "createdAt": _now_iso(),
                }
                tx.dirty = True
                logger.info("Created board file at {}", self._store_path)
            return dict(tx.board)

    def _snapshot(self) -> list[Task]:
        with FileLock(self._lock_path):
            return self._load()[1]

    def _create_many(self, tasks: list[Task]) -> list[Task]:
        with self.transaction() as tx:
            for task in tasks:
                tx.add(task.copy())
        return [t.copy() for t in tasks]

    def _update(self, task_id: str, patch: dict[str, Any], expected_version: Optional[int]) -> Task:
        with self.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            _check_version(task, expected_version)
            _apply_patch(task, patch)
            tx.dirty = True
            return task.copy()

    def _delete(self, task_id: str) -> bool:
        with self.transaction() as tx:
            return tx.remove(task_id)

    # -- BoardStorage -------------------------------------------------------

    async def initialize(self) -> None:
        await asyncio.to_thread(self._ensure_board)

    async def get_or_create_board(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._ensure_board)

    async def load_tasks(self) -> dict[str, list[Task]]:
        return _group_by_lane(await asyncio.to_thread(self._snapshot))

    async def get_task(self, task_id: str) -> Optional[Task]:
        for task in await asyncio.to_thread(self._snapshot):
            if task.id == task_id:
                return task
        return None

    async def create_task(self, task: Task) -> Task:
        created = await asyncio.to_thread(self._create_many, [task])
        return created[0]

    async def create_tasks(self, tasks: list[Task]) -> list[Task]:
        # One transaction: either every row lands on disk or none does.
        return await asyncio.to_thread(self._create_many, list(tasks))

    async def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Task:
        return await asyncio.to_thread(self._update, task_id, patch, expected_version)

    async def delete_task(self, task_id: str) -> bool:
        return await asyncio.to_thread(self._delete, task_id)

    async def search_tasks(self, query: str, lane: Optional[str] = None) -> list[Task]:
        pattern = re.compile(query, re.IGNORECASE)
        return [t for t in await asyncio.to_thread(self._snapshot) if _matches(t, pattern, lane)]

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self._snapshot)
        except BoardError as exc:
            logger.warning("Board storage health check failed: {}", exc)
            return False
        return True
