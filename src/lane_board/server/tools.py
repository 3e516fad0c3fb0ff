"""Tool-invocation surface for automated callers (agents, chat front-ends).

Each tool takes a JSON-like ``args`` dict and returns either
``{"ok": True, "data": ..., "text": ...}`` or the structured error payload
built by :func:`lane_board.errors.error_response`.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Optional

from ..constants import LANE_ORDER, MAX_BATCH_SIZE, PRIORITY_ORDER
from ..errors import ValidationError, error_response
from ..task_engine.model import Task
from ..task_engine.service import BoardService, format_stats


_TASK_FIELDS: dict[str, Any] = {
    "title": {"type": "string"},
    "description": {"type": "string"},
    "lane": {"type": "string", "enum": list(LANE_ORDER)},
    "priority": {"type": "string", "enum": list(PRIORITY_ORDER)},
    "estimatedHours": {"type": "number", "minimum": 0, "maximum": 1000},
    "tags": {"type": "array", "items": {"type": "string"}},
    "status": {"type": "string"},
    "assignee": {"type": "string"},
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "board_get_board",
        "description": "Get the complete board state grouped by lane",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "board_create_task",
        "description": "Create a new task on the board",
        "inputSchema": {
            "type": "object",
            "properties": dict(_TASK_FIELDS),
            "required": ["title"],
        },
    },
    {
        "name": "board_update_task",
        "description": "Update task properties",
        "inputSchema": {
            "type": "object",
            "properties": {
                "taskId": {"type": "string"},
                "expectedVersion": {"type": "integer"},
                **_TASK_FIELDS,
            },
            "required": ["taskId"],
        },
    },
    {
        "name": "board_move_task",
        "description": "Move a task to a different lane",
        "inputSchema": {
            "type": "object",
            "properties": {
                "taskId": {"type": "string"},
                "lane": {"type": "string", "enum": list(LANE_ORDER)},
                "expectedVersion": {"type": "integer"},
            },
            "required": ["taskId", "lane"],
        },
    },
    {
        "name": "board_delete_task",
        "description": "Delete a task from the board",
        "inputSchema": {
            "type": "object",
            "properties": {"taskId": {"type": "string"}},
            "required": ["taskId"],
        },
    },
    {
        "name": "board_search_tasks",
        "description": "Search tasks by title or description",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "lane": {"type": "string", "enum": list(LANE_ORDER)},
            },
            "required": ["query"],
        },
    },
    {
        "name": "board_batch_create",
        "description": f"Create up to {MAX_BATCH_SIZE} tasks at once",
        "inputSchema": {
            "type": "object",
            "properties": {
                "tasks": {
                    "type": "array",
                    "maxItems": MAX_BATCH_SIZE,
                    "items": {"type": "object", "properties": dict(_TASK_FIELDS), "required": ["title"]},
                },
            },
            "required": ["tasks"],
        },
    },
    {
        "name": "board_get_stats",
        "description": "Get board statistics and metrics",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "board_get_context",
        "description": "Get a short board summary for decision-making",
        "inputSchema": {"type": "object", "properties": {}},
    },
]

TOOL_NAMES = tuple(tool["name"] for tool in TOOL_DEFINITIONS)


def _expected_version(args: dict[str, Any]) -> Optional[int]:
    raw = args.get("expectedVersion")
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError("expectedVersion must be an integer", field="expectedVersion", value=raw)
    return raw


def _describe(task: Task) -> str:
    return f"{task.title} ({task.id}) [{task.lane.value}, {task.priority.value}]"


class BoardTools:
    """Dispatch tool calls onto a :class:`BoardService`."""

    def __init__(self, service: BoardService, production: bool = False) -> None:
        self.service = service
        self.production = production
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "board_get_board": self._get_board,
            "board_create_task": self._create_task,
            "board_update_task": self._update_task,
            "board_move_task": self._move_task,
            "board_delete_task": self._delete_task,
            "board_search_tasks": self._search_tasks,
            "board_batch_create": self._batch_create,
            "board_get_stats": self._get_stats,
            "board_get_context": self._get_context,
        }

    @staticmethod
    def definitions() -> list[dict[str, Any]]:
        return TOOL_DEFINITIONS

    async def invoke(self, name: str, args: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Run tool *name*.

        Unknown tool names raise :class:`ValidationError`; every failure inside
        a known tool is returned as an error payload instead.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise ValidationError(f"Unknown tool: {name}", field="name", value=name)
        if args is None:
            args = {}
        try:
            if not isinstance(args, dict):
                raise ValidationError("Tool arguments must be an object", field="args")
            result = await handler(args)
        except Exception as exc:
            return error_response(exc, production=self.production)
        return {"ok": True, **result}

    # -- handlers ------------------------------------------------------------

    async def _get_board(self, args: dict[str, Any]) -> dict[str, Any]:
        board = (await self.service.get_board()).to_dict()
        return {"data": board, "text": json.dumps(board, indent=2, default=str)}

    async def _create_task(self, args: dict[str, Any]) -> dict[str, Any]:
        task = await self.service.create_task(args)
        return {"data": task.to_dict(), "text": f"Created task: {_describe(task)}"}

    async def _update_task(self, args: dict[str, Any]) -> dict[str, Any]:
        patch = {k: v for k, v in args.items() if k not in ("taskId", "expectedVersion")}
        task = await self.service.update_task(args.get("taskId"), patch, _expected_version(args))
        return {"data": task.to_dict(), "text": f"Updated task: {_describe(task)}"}

    async def _move_task(self, args: dict[str, Any]) -> dict[str, Any]:
        task = await self.service.move_task(args.get("taskId"), args.get("lane"), _expected_version(args))
        return {"data": task.to_dict(), "text": f"Moved task {task.id} to {task.lane.value}"}

    async def _delete_task(self, args: dict[str, Any]) -> dict[str, Any]:
        task_id = args.get("taskId")
        removed = await self.service.delete_task(task_id)
        text = f"Deleted task {task_id}" if removed else f"Task {task_id} was already absent"
        return {"data": {"taskId": task_id, "deleted": removed}, "text": text}

    async def _search_tasks(self, args: dict[str, Any]) -> dict[str, Any]:
        tasks = await self.service.search_tasks(args.get("query"), args.get("lane"))
        lines = [f"Found {len(tasks)} task(s)"] + [f"  - {_describe(t)}" for t in tasks]
        return {"data": [t.to_dict() for t in tasks], "text": "\n".join(lines)}

    async def _batch_create(self, args: dict[str, Any]) -> dict[str, Any]:
        tasks = await self.service.batch_create(args.get("tasks"))
        lines = [f"Created {len(tasks)} task(s)"] + [f"  - {_describe(t)}" for t in tasks]
        return {"data": [t.to_dict() for t in tasks], "text": "\n".join(lines)}

    async def _get_stats(self, args: dict[str, Any]) -> dict[str, Any]:
        stats = await self.service.get_stats()
        return {"data": stats, "text": format_stats(stats)}

    async def _get_context(self, args: dict[str, Any]) -> dict[str, Any]:
        text = await self.service.get_context()
        return {"data": {"context": text}, "text": text}
