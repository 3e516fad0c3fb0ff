from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.table import Table

from .config import BoardSettings, load_settings
from .constants import LANE_ORDER, PRIORITY_ORDER
from .errors import BoardEngineError, error_response
from .logging_utils import configure_logging
from .task_engine.service import BoardService, format_stats
from .task_engine.store import YamlBoardStorage


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _settings(args: argparse.Namespace) -> BoardSettings:
    return load_settings(_resolve_project_dir(args.project_dir))


def _service(settings: BoardSettings) -> BoardService:
    # Task commands always work against the board file so state survives the process.
    return BoardService(
        YamlBoardStorage(settings.data_dir),
        cache_ttl=0,
        transitions=settings.transitions,
    )


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _run(args: argparse.Namespace, action: Callable[[BoardService], Awaitable[Any]]) -> int:
    try:
        settings = _settings(args)
        configure_logging(args.log_level or settings.log_level)
        service = _service(settings)

        async def _go() -> Any:
            await service.initialize()
            try:
                return await action(service)
            finally:
                await service.close()

        result = asyncio.run(_go())
    except BoardEngineError as exc:
        sys.stderr.write(json.dumps(error_response(exc), indent=2) + "\n")
        return 1
    if result is not None:
        _emit(result)
    return 0


def _parse_tags(raw: Optional[str]) -> Optional[list[str]]:
    if raw is None:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


def _task_fields(args: argparse.Namespace) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for attr, key in (
        ("title", "title"),
        ("description", "description"),
        ("lane", "lane"),
        ("priority", "priority"),
        ("hours", "estimatedHours"),
        ("status", "status"),
        ("assignee", "assignee"),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            fields[key] = value
    tags = _parse_tags(getattr(args, "tags", None))
    if tags is not None:
        fields["tags"] = tags
    return fields


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _task_create(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> Any:
        task = await service.create_task(_task_fields(args))
        return {"task": task.to_dict()}
    return _run(args, action)


def _task_list(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> Any:
        board = await service.get_board()
        tasks = board.tasks_in_lane(args.lane) if args.lane else board.all_tasks()
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}
    return _run(args, action)


def _task_move(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> Any:
        task = await service.move_task(args.task_id, args.lane_target, args.expected_version)
        return {"task": task.to_dict()}
    return _run(args, action)


def _task_update(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> Any:
        task = await service.update_task(args.task_id, _task_fields(args), args.expected_version)
        return {"task": task.to_dict()}
    return _run(args, action)


def _task_delete(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> Any:
        removed = await service.delete_task(args.task_id)
        return {"taskId": args.task_id, "deleted": removed}
    return _run(args, action)


def _task_search(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> Any:
        tasks = await service.search_tasks(args.query, args.lane)
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}
    return _run(args, action)


def _board(args: argparse.Namespace) -> int:
    console = Console()

    async def action(service: BoardService) -> None:
        board = await service.get_board()
        table = Table(title="Board")
        for lane in LANE_ORDER:
            table.add_column(f"{lane} ({len(board.lanes[lane])})", overflow="fold")
        depth = max((len(board.lanes[lane]) for lane in LANE_ORDER), default=0)
        for row in range(depth):
            cells = []
            for lane in LANE_ORDER:
                tasks = board.lanes[lane]
                if row < len(tasks):
                    task = tasks[row]
                    cells.append(f"{task.title}\n[dim]{task.id} · {task.priority.value}[/dim]")
                else:
                    cells.append("")
            table.add_row(*cells)
        console.print(table)
        return None

    return _run(args, action)


def _stats(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> Any:
        stats = await service.get_stats()
        if args.text:
            sys.stdout.write(format_stats(stats) + "\n")
            return None
        return stats
    return _run(args, action)


def _context(args: argparse.Namespace) -> int:
    async def action(service: BoardService) -> None:
        sys.stdout.write(await service.get_context() + "\n")
        return None
    return _run(args, action)


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'lane-board[server]'\n")
        return 1

    from .server.api import create_app

    try:
        settings = _settings(args)
    except BoardEngineError as exc:
        sys.stderr.write(json.dumps(error_response(exc), indent=2) + "\n")
        return 1
    configure_logging(args.log_level or settings.log_level)
    app = create_app(settings=settings)
    uvicorn.run(app, host=args.host or settings.host, port=args.port or settings.port)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_task_field_args(parser: argparse.ArgumentParser, *, creating: bool) -> None:
    if creating:
        parser.add_argument("title")
    else:
        parser.add_argument("--title", default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--lane", default=None, choices=list(LANE_ORDER))
    parser.add_argument("--priority", default=None, choices=list(PRIORITY_ORDER))
    parser.add_argument("--hours", default=None, type=float, help="Estimated hours (0-1000)")
    parser.add_argument("--tags", default=None, help="Comma-separated tags")
    parser.add_argument("--status", default=None)
    parser.add_argument("--assignee", default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lane-board", description="Lane-based task board")
    parser.add_argument("--project-dir", default=None, help="Directory holding .lane_board/ (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the HTTP/WebSocket server")
    server.add_argument("--host", default=None)
    server.add_argument("--port", default=None, type=int)
    server.set_defaults(func=_server)

    task = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)

    tcreate = task_sub.add_parser("create", help="Create a task")
    _add_task_field_args(tcreate, creating=True)
    tcreate.set_defaults(func=_task_create)

    tlist = task_sub.add_parser("list", help="List tasks")
    tlist.add_argument("--lane", default=None, choices=list(LANE_ORDER))
    tlist.set_defaults(func=_task_list)

    tmove = task_sub.add_parser("move", help="Move a task to another lane")
    tmove.add_argument("task_id")
    tmove.add_argument("lane_target", metavar="lane")
    tmove.add_argument("--expected-version", default=None, type=int)
    tmove.set_defaults(func=_task_move)

    tupdate = task_sub.add_parser("update", help="Update task fields")
    tupdate.add_argument("task_id")
    _add_task_field_args(tupdate, creating=False)
    tupdate.add_argument("--expected-version", default=None, type=int)
    tupdate.set_defaults(func=_task_update)

    tdelete = task_sub.add_parser("delete", help="Delete a task")
    tdelete.add_argument("task_id")
    tdelete.set_defaults(func=_task_delete)

    tsearch = task_sub.add_parser("search", help="Search titles and descriptions")
    tsearch.add_argument("query")
    tsearch.add_argument("--lane", default=None, choices=list(LANE_ORDER))
    tsearch.set_defaults(func=_task_search)

    board = subparsers.add_parser("board", help="Render the board as a table")
    board.set_defaults(func=_board)

    stats = subparsers.add_parser("stats", help="Show board statistics")
    stats.add_argument("--text", action="store_true", help="Human-readable output instead of JSON")
    stats.set_defaults(func=_stats)

    context = subparsers.add_parser("context", help="Print a short board summary")
    context.set_defaults(func=_context)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
