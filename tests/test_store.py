"""Tests for the storage adapters (task_engine/store.py)."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import pytest
import yaml

from lane_board.errors import BoardError, TaskNotFoundError, VersionConflictError
from lane_board.task_engine.model import Task
from lane_board.task_engine.store import MemoryBoardStorage, YamlBoardStorage


@pytest.fixture(params=["memory", "yaml"])
def storage(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryBoardStorage()
    return YamlBoardStorage(tmp_path / ".lane_board")


@pytest.mark.anyio
class TestStorageContract:
    async def test_create_and_get(self, storage) -> None:
        await storage.initialize()
        task = await storage.create_task(Task.create({"title": "Auth", "lane": "todo"}))
        fetched = await storage.get_task(task.id)
        assert fetched == task
        assert await storage.get_task("task-missing") is None

    async def test_returned_objects_are_copies(self, storage) -> None:
        task = await storage.create_task(Task.create({"title": "Auth"}))
        task.title = "mutated locally"
        assert (await storage.get_task(task.id)).title == "Auth"

    async def test_update_bumps_version(self, storage) -> None:
        task = await storage.create_task(Task.create({"title": "Auth"}))
        updated = await storage.update_task(task.id, {"lane": "done"})
        assert updated.version == 2
        assert updated.lane.value == "done"
        assert updated.updated_at >= task.updated_at

    async def test_update_unknown_raises(self, storage) -> None:
        with pytest.raises(TaskNotFoundError):
            await storage.update_task("task-nope", {"title": "x"})

    async def test_stale_version_conflicts(self, storage) -> None:
        task = await storage.create_task(Task.create({"title": "Auth"}))
        await storage.update_task(task.id, {"title": "v2"}, expected_version=1)
        with pytest.raises(VersionConflictError) as excinfo:
            await storage.update_task(task.id, {"title": "v3"}, expected_version=1)
        assert excinfo.value.actual == 2
        assert (await storage.get_task(task.id)).title == "v2"

    async def test_delete_is_idempotent(self, storage) -> None:
        task = await storage.create_task(Task.create({"title": "Auth"}))
        assert await storage.delete_task(task.id) is True
        assert await storage.delete_task(task.id) is False

    async def test_load_tasks_groups_all_lanes(self, storage) -> None:
        await storage.create_task(Task.create({"title": "a", "lane": "recovery"}))
        lanes = await storage.load_tasks()
        assert set(lanes) == {"backlog", "todo", "in_progress", "done", "recovery"}
        assert [t.title for t in lanes["recovery"]] == ["a"]

    async def test_search_and_stats(self, storage) -> None:
        await storage.create_tasks([
            Task.create({"title": "Setup Authentication", "lane": "todo"}),
            Task.create({"title": "Other", "description": "uses AUTH tokens"}),
            Task.create({"title": "Unrelated"}),
        ])
        found = await storage.search_tasks(re.escape("auth"))
        assert sorted(t.title for t in found) == ["Other", "Setup Authentication"]
        found = await storage.search_tasks(re.escape("auth"), lane="todo")
        assert [t.title for t in found] == ["Setup Authentication"]
        stats = await storage.get_stats()
        assert stats["totalTasks"] == 3

    async def test_health_check(self, storage) -> None:
        await storage.initialize()
        assert await storage.health_check() is True


class _FlakyStorage(MemoryBoardStorage):
    """Fails on the Nth create to exercise the compensating rollback."""

    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    async def create_task(self, task: Task) -> Task:
        self.calls += 1
        if self.calls == self.fail_on:
            raise RuntimeError("disk full")
        return await super().create_task(task)


@pytest.mark.anyio
async def test_default_batch_rolls_back_created_rows() -> None:
    storage = _FlakyStorage(fail_on=3)
    tasks = [Task.create({"title": f"t{i}"}) for i in range(5)]
    with pytest.raises(RuntimeError):
        await storage.create_tasks(tasks)
    assert (await storage.get_stats())["totalTasks"] == 0


@pytest.mark.anyio
async def test_memory_duplicate_id_rejected() -> None:
    storage = MemoryBoardStorage()
    task = Task.create({"title": "x"})
    await storage.create_task(task)
    with pytest.raises(BoardError):
        await storage.create_task(task)


@pytest.mark.anyio
class TestYamlStorage:
    async def test_file_layout(self, tmp_path: Path) -> None:
        storage = YamlBoardStorage(tmp_path)
        board = await storage.get_or_create_board()
        await storage.create_task(Task.create({"title": "Persist me", "estimatedHours": 3}))
        raw: dict[str, Any] = yaml.safe_load(storage.path.read_text(encoding="utf-8"))
        assert raw["board"]["id"] == board["id"]
        assert raw["tasks"][0]["title"] == "Persist me"
        assert raw["tasks"][0]["estimatedHours"] == 3.0

    async def test_state_survives_new_instance(self, tmp_path: Path) -> None:
        first = YamlBoardStorage(tmp_path)
        task = await first.create_task(Task.create({"title": "Durable"}))
        second = YamlBoardStorage(tmp_path)
        assert (await second.get_task(task.id)).title == "Durable"

    async def test_batch_is_one_transaction(self, tmp_path: Path) -> None:
        storage = YamlBoardStorage(tmp_path)
        existing = await storage.create_task(Task.create({"title": "existing"}))
        batch = [Task.create({"title": "new"}), existing]
        with pytest.raises(BoardError):
            await storage.create_tasks(batch)
        titles = [t.title for lane in (await storage.load_tasks()).values() for t in lane]
        assert titles == ["existing"]

    async def test_corrupt_file_is_reported_not_overwritten(self, tmp_path: Path) -> None:
        storage = YamlBoardStorage(tmp_path)
        storage.path.parent.mkdir(parents=True, exist_ok=True)
        storage.path.write_text("tasks: [unclosed", encoding="utf-8")
        with pytest.raises(BoardError):
            await storage.load_tasks()
        assert await storage.health_check() is False
        assert storage.path.read_text(encoding="utf-8") == "tasks: [unclosed"
