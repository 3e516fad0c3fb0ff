"""Provide the public `lane_board` package exports."""

from __future__ import annotations

from .task_engine.model import Board, Lane, Priority, Task
from .task_engine.service import BoardService
from .task_engine.store import BoardStorage, MemoryBoardStorage, YamlBoardStorage

__all__ = [
    "Board",
    "BoardService",
    "BoardStorage",
    "Lane",
    "MemoryBoardStorage",
    "Priority",
    "Task",
    "YamlBoardStorage",
]
