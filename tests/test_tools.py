"""Tests for the tool-invocation surface (server/tools.py)."""

from __future__ import annotations

import pytest

from lane_board.errors import GENERIC_ERROR_MESSAGE, ValidationError
from lane_board.server.tools import TOOL_DEFINITIONS, TOOL_NAMES, BoardTools
from lane_board.task_engine.service import BoardService
from lane_board.task_engine.store import MemoryBoardStorage


class _ExplodingStorage(MemoryBoardStorage):
    async def load_tasks(self):
        raise KeyError("internal detail")


@pytest.fixture
def tools() -> BoardTools:
    return BoardTools(BoardService(MemoryBoardStorage()))


def test_definitions_cover_every_tool() -> None:
    assert set(TOOL_NAMES) == {
        "board_create_task",
        "board_update_task",
        "board_move_task",
        "board_delete_task",
        "board_search_tasks",
        "board_batch_create",
        "board_get_board",
        "board_get_stats",
        "board_get_context",
    }
    for tool in TOOL_DEFINITIONS:
        assert tool["description"]
        assert tool["inputSchema"]["type"] == "object"


@pytest.mark.anyio
class TestInvoke:
    async def test_create_move_search_flow(self, tools: BoardTools) -> None:
        created = await tools.invoke("board_create_task", {"title": "Fix login bug", "priority": "high"})
        assert created["ok"] is True
        task_id = created["data"]["id"]
        assert "Fix login bug" in created["text"]

        moved = await tools.invoke("board_move_task", {"taskId": task_id, "lane": "todo"})
        assert moved["data"]["lane"] == "todo"

        found = await tools.invoke("board_search_tasks", {"query": "LOGIN"})
        assert [t["id"] for t in found["data"]] == [task_id]

        board = await tools.invoke("board_get_board")
        assert [t["id"] for t in board["data"]["lanes"]["todo"]] == [task_id]

    async def test_update_with_version(self, tools: BoardTools) -> None:
        task_id = (await tools.invoke("board_create_task", {"title": "x"}))["data"]["id"]
        ok = await tools.invoke("board_update_task", {"taskId": task_id, "title": "y", "expectedVersion": 1})
        assert ok["data"]["title"] == "y"
        stale = await tools.invoke("board_update_task", {"taskId": task_id, "title": "z", "expectedVersion": 1})
        assert stale["ok"] is False
        assert stale["error"]["code"] == "VERSION_CONFLICT"

    async def test_error_payloads(self, tools: BoardTools) -> None:
        bad_lane = await tools.invoke("board_move_task", {"taskId": "task-x", "lane": "nowhere"})
        assert bad_lane == {
            "ok": False,
            "error": {
                "code": "INVALID_LANE",
                "message": bad_lane["error"]["message"],
                "details": bad_lane["error"]["details"],
            },
        }
        assert "validLanes" in bad_lane["error"]["details"]

        missing = await tools.invoke("board_delete_task", {})
        assert missing["error"]["code"] == "VALIDATION_ERROR"

        not_found = await tools.invoke("board_move_task", {"taskId": "task-unknown", "lane": "done"})
        assert not_found["error"]["code"] == "TASK_NOT_FOUND"

    async def test_batch_and_stats(self, tools: BoardTools) -> None:
        result = await tools.invoke("board_batch_create", {"tasks": [{"title": "a", "estimatedHours": 2}, {"title": "b"}]})
        assert len(result["data"]) == 2
        stats = await tools.invoke("board_get_stats")
        assert stats["data"]["totalTasks"] == 2
        assert "Total: 2 tasks (~2h estimated)" in stats["text"]
        context = await tools.invoke("board_get_context", {})
        assert context["text"] == context["data"]["context"]

        too_many = await tools.invoke("board_batch_create", {"tasks": [{"title": "t"}] * 101})
        assert too_many["ok"] is False
        assert (await tools.invoke("board_get_stats"))["data"]["totalTasks"] == 2

    async def test_delete_reports_absent_task(self, tools: BoardTools) -> None:
        result = await tools.invoke("board_delete_task", {"taskId": "task-gone"})
        assert result["ok"] is True
        assert result["data"] == {"taskId": "task-gone", "deleted": False}

    async def test_unknown_tool_raises(self, tools: BoardTools) -> None:
        with pytest.raises(ValidationError):
            await tools.invoke("board_launch_rockets", {})


@pytest.mark.anyio
@pytest.mark.parametrize("production,expected", [(True, GENERIC_ERROR_MESSAGE), (False, "'internal detail'")])
async def test_unexpected_errors_by_posture(production: bool, expected: str) -> None:
    tools = BoardTools(BoardService(_ExplodingStorage(), cache_ttl=0), production=production)
    result = await tools.invoke("board_get_stats")
    assert result["ok"] is False
    assert result["error"]["code"] == "BOARD_ERROR"

    # Errors outside the storage wrapper are reported as internal errors.
    tools.service.get_context = _raise_key_error  # type: ignore[method-assign]
    result = await tools.invoke("board_get_context")
    assert result["error"]["code"] == "INTERNAL_ERROR"
    assert result["error"]["message"] == expected


async def _raise_key_error() -> str:
    raise KeyError("internal detail")
