"""Tests for the board service (task_engine/service.py)."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from lane_board.errors import (
    BoardError,
    InvalidLaneError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
    VersionConflictError,
)
from lane_board.events.bus import EventBus
from lane_board.task_engine.service import BoardService
from lane_board.task_engine.store import MemoryBoardStorage, YamlBoardStorage


class _Recorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        bus.subscribe("*", self)

    def __call__(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append((event_type, data))

    def types(self) -> list[str]:
        return [e[0] for e in self.events]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> _Recorder:
    return _Recorder(bus)


@pytest.fixture
async def service(bus: EventBus) -> BoardService:
    svc = BoardService(MemoryBoardStorage(), bus)
    await svc.initialize()
    return svc


def _lanes_containing(board, task_id: str) -> list[str]:
    return [lane for lane, tasks in board.lanes.items() if any(t.id == task_id for t in tasks)]


@pytest.mark.anyio
class TestCreate:
    async def test_create_places_task_in_its_lane(self, service: BoardService, recorder: _Recorder) -> None:
        task = await service.create_task({"title": "Fix login bug", "lane": "backlog", "priority": "high"})
        assert task.id
        assert task.lane.value == "backlog"
        assert task.priority.value == "high"
        board = await service.get_board()
        assert _lanes_containing(board, task.id) == ["backlog"]

        assert recorder.types() == ["task:created"]
        payload = recorder.events[0][1]
        assert payload["task"]["id"] == task.id
        assert payload["boardId"] == service.board_id

    async def test_created_event_omits_metadata(self, service: BoardService, recorder: _Recorder) -> None:
        await service.create_task({"title": "x", "metadata": {"token": "secret"}})
        assert "metadata" not in recorder.events[0][1]["task"]

    async def test_invalid_input_persists_nothing(self, service: BoardService, recorder: _Recorder) -> None:
        with pytest.raises(ValidationError):
            await service.create_task({"title": "   "})
        assert (await service.get_stats())["totalTasks"] == 0
        assert recorder.events == []


@pytest.mark.anyio
class TestBatch:
    async def test_hundred_tasks_succeed(self, service: BoardService, recorder: _Recorder) -> None:
        tasks = await service.batch_create([{"title": f"Task {i}"} for i in range(100)])
        assert len(tasks) == 100
        assert len({t.id for t in tasks}) == 100
        assert (await service.get_stats())["totalTasks"] == 100
        assert recorder.types().count("task:created") == 100

    async def test_hundred_and_one_persist_nothing(self, service: BoardService, recorder: _Recorder) -> None:
        with pytest.raises(ValidationError):
            await service.batch_create([{"title": f"Task {i}"} for i in range(101)])
        assert (await service.get_stats())["totalTasks"] == 0
        assert recorder.events == []

    async def test_one_bad_item_rejects_whole_batch(self, service: BoardService) -> None:
        with pytest.raises(ValidationError, match="index 2"):
            await service.batch_create([{"title": "a"}, {"title": "b"}, {"title": "c", "lane": "?"}])
        assert (await service.get_stats())["totalTasks"] == 0


@pytest.mark.anyio
class TestMove:
    async def test_move_relocates_task(self, service: BoardService, recorder: _Recorder) -> None:
        task = await service.create_task({"title": "Fix login bug"})
        moved = await service.move_task(task.id, "TODO")
        assert moved.lane.value == "todo"
        assert moved.version == 2
        assert _lanes_containing(await service.get_board(), task.id) == ["todo"]

        event_type, payload = recorder.events[-1]
        assert event_type == "task:moved"
        assert payload["oldLane"] == "backlog"
        assert payload["newLane"] == "todo"

    async def test_invalid_lane_leaves_task_unchanged(self, service: BoardService, recorder: _Recorder) -> None:
        task = await service.create_task({"title": "Fix login bug", "lane": "todo"})
        with pytest.raises(InvalidLaneError):
            await service.move_task(task.id, "invalid_lane")
        current = await service.get_task(task.id)
        assert current.lane.value == "todo"
        assert current.version == 1
        assert _lanes_containing(await service.get_board(), task.id) == ["todo"]
        assert recorder.types() == ["task:created"]

    async def test_unknown_task(self, service: BoardService) -> None:
        with pytest.raises(TaskNotFoundError):
            await service.move_task("task-000000000000", "done")

    async def test_malformed_id_rejected(self, service: BoardService) -> None:
        with pytest.raises(ValidationError):
            await service.move_task("../../etc/passwd", "done")

    async def test_any_to_any_by_default(self, service: BoardService) -> None:
        task = await service.create_task({"title": "x", "lane": "done"})
        assert (await service.move_task(task.id, "backlog")).lane.value == "backlog"
        assert (await service.move_task(task.id, "backlog")).lane.value == "backlog"

    async def test_transition_table_enforced(self, bus: EventBus) -> None:
        service = BoardService(MemoryBoardStorage(), bus, transitions={"backlog": ["todo"], "todo": ["in_progress"]})
        task = await service.create_task({"title": "x"})
        with pytest.raises(InvalidTransitionError) as excinfo:
            await service.move_task(task.id, "done")
        assert excinfo.value.status_code == 409
        assert (await service.move_task(task.id, "todo")).lane.value == "todo"
        with pytest.raises(InvalidTransitionError):
            await service.update_task(task.id, {"lane": "backlog"})


@pytest.mark.anyio
class TestUpdate:
    async def test_update_emits_changes(self, service: BoardService, recorder: _Recorder) -> None:
        task = await service.create_task({"title": "x", "estimatedHours": 3})
        updated = await service.update_task(task.id, {"priority": "CRITICAL", "estimatedHours": 8, "metadata": {"a": 1}})
        assert updated.priority.value == "critical"
        assert updated.estimated_hours == 8.0
        assert updated.title == "x"

        event_type, payload = recorder.events[-1]
        assert event_type == "task:updated"
        assert payload["changes"] == {"priority": "critical", "estimatedHours": 8.0}

    async def test_version_conflict(self, service: BoardService) -> None:
        task = await service.create_task({"title": "x"})
        await service.update_task(task.id, {"title": "y"}, expected_version=1)
        with pytest.raises(VersionConflictError):
            await service.update_task(task.id, {"title": "z"}, expected_version=1)
        assert (await service.get_task(task.id)).title == "y"

    async def test_update_unknown_task(self, service: BoardService) -> None:
        with pytest.raises(TaskNotFoundError):
            await service.update_task("task-000000000000", {"title": "x"})


@pytest.mark.anyio
async def test_concurrent_update_and_move_both_succeed(service: BoardService) -> None:
    task = await service.create_task({"title": "Fix login bug", "lane": "backlog", "priority": "high"})
    await service.move_task(task.id, "todo")

    updated, moved = await asyncio.gather(
        service.update_task(task.id, {"priority": "critical"}),
        service.move_task(task.id, "done"),
    )

    final = await service.get_task(task.id)
    assert final.lane.value in {"done", "todo"}
    assert final.priority.value in {"critical", "high"}
    assert final.version == 4
    assert final.title == "Fix login bug"
    board = await service.get_board()
    assert _lanes_containing(board, task.id) == [final.lane.value]


@pytest.mark.anyio
async def test_concurrent_writers_on_yaml_storage(tmp_path: Path) -> None:
    service = BoardService(YamlBoardStorage(tmp_path), cache_ttl=0)
    task = await service.create_task({"title": "x"})
    await asyncio.gather(
        service.update_task(task.id, {"priority": "critical"}),
        service.move_task(task.id, "done"),
    )
    final = await service.get_task(task.id)
    assert final.version == 3
    assert final.lane.value == "done"
    assert final.priority.value == "critical"


@pytest.mark.anyio
class TestDelete:
    async def test_delete_is_idempotent(self, service: BoardService, recorder: _Recorder) -> None:
        task = await service.create_task({"title": "x"})
        assert await service.delete_task(task.id) is True
        assert await service.delete_task(task.id) is False
        assert recorder.types() == ["task:created", "task:deleted"]
        assert recorder.events[-1][1] == {"taskId": task.id, "boardId": service.board_id}

    async def test_get_task_after_delete(self, service: BoardService) -> None:
        task = await service.create_task({"title": "x"})
        await service.delete_task(task.id)
        with pytest.raises(TaskNotFoundError):
            await service.get_task(task.id)


@pytest.mark.anyio
class TestReads:
    async def test_search_is_case_insensitive_across_lanes(self, service: BoardService) -> None:
        await service.create_task({"title": "Authentication Service", "lane": "todo"})
        await service.create_task({"title": "Auth Tests", "lane": "done"})
        await service.create_task({"title": "UI Widget"})
        found = await service.search_tasks("Auth")
        assert sorted(t.title for t in found) == ["Auth Tests", "Authentication Service"]
        assert [t.title for t in await service.search_tasks("auth", lane="done")] == ["Auth Tests"]

    async def test_search_treats_regex_literally(self, service: BoardService) -> None:
        await service.create_task({"title": "Price (USD)"})
        await service.create_task({"title": "Price USD"})
        assert [t.title for t in await service.search_tasks("(usd)")] == ["Price (USD)"]
        assert await service.search_tasks(".*") == []

    async def test_stats_invariants(self, service: BoardService) -> None:
        await service.batch_create([
            {"title": "a", "lane": "todo", "priority": "low", "estimatedHours": 2},
            {"title": "b", "lane": "done", "priority": "critical", "estimatedHours": 3},
            {"title": "c"},
        ])
        stats = await service.get_stats()
        assert sum(stats["byLane"].values()) == stats["totalTasks"] == sum(stats["byPriority"].values()) == 3
        assert stats["totalEstimatedHours"] == 5

    async def test_context_lists_active_work(self, service: BoardService) -> None:
        assert "No active tasks" in await service.get_context()
        await service.create_task({"title": "Wire OAuth", "lane": "in_progress", "estimatedHours": 4})
        text = await service.get_context()
        assert "Total Tasks: 1" in text
        assert "Wire OAuth (4h)" in text


@pytest.mark.anyio
class TestCache:
    async def test_own_writes_invalidate_cache(self, service: BoardService) -> None:
        await service.get_board()
        await service.create_task({"title": "fresh"})
        assert len(await service.get_board()) == 1

    async def test_foreign_writes_are_bounded_by_ttl(self) -> None:
        storage = MemoryBoardStorage()
        reader = BoardService(storage, cache_ttl=60)
        writer = BoardService(storage, cache_ttl=0)
        assert len(await reader.get_board()) == 0
        await writer.create_task({"title": "elsewhere"})
        assert len(await reader.get_board()) == 0

        uncached = BoardService(storage, cache_ttl=0)
        assert len(await uncached.get_board()) == 1


class _BrokenStorage(MemoryBoardStorage):
    async def create_task(self, task):
        raise OSError("connection reset")


@pytest.mark.anyio
async def test_storage_failures_become_board_errors(recorder: _Recorder, bus: EventBus) -> None:
    service = BoardService(_BrokenStorage(), bus)
    with pytest.raises(BoardError) as excinfo:
        await service.create_task({"title": "x"})
    assert excinfo.value.operation == "createTask"
    assert recorder.events == []


@pytest.mark.anyio
async def test_failing_observer_does_not_break_mutation(bus: EventBus) -> None:
    def explode(event_type: str, data: dict[str, Any]) -> None:
        raise RuntimeError("observer bug")

    bus.subscribe("task:created", explode)
    service = BoardService(MemoryBoardStorage(), bus)
    task = await service.create_task({"title": "x"})
    assert (await service.get_task(task.id)).title == "x"


@pytest.mark.anyio
async def test_health_reports_storage(service: BoardService) -> None:
    health = await service.health()
    assert health["status"] == "healthy"
    assert health["storage"] == "MemoryBoardStorage"
    await service.close()
    assert (await service.health())["status"] == "unhealthy"
