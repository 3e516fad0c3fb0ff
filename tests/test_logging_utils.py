"""Tests for logging_utils module."""

from __future__ import annotations

import json

from loguru import logger

from lane_board.logging_utils import configure_logging, pretty


def test_pretty_serializes_json() -> None:
    assert json.loads(pretty({"a": 1})) == {"a": 1}


def test_pretty_falls_back_to_str() -> None:
    circular: list = []
    circular.append(circular)
    assert pretty(circular) == str(circular)


def test_configure_logging_filters_by_level(capsys) -> None:
    configure_logging("warning")
    logger.info("quiet message")
    logger.warning("loud message")
    err = capsys.readouterr().err
    assert "loud message" in err
    assert "quiet message" not in err
