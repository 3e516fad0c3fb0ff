"""Sanitize and validate untrusted input before it reaches a Task or Storage.

Strings are cleaned and truncated rather than rejected; enums, numbers,
identifiers and batches are rejected with a :class:`ValidationError` when they
fall outside their contract.  Task payloads are checked through an explicit
field -> validator table so create and update share the same rules.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Optional

from .constants import (
    LANE_ORDER,
    MAX_BATCH_SIZE,
    MAX_ESTIMATED_HOURS,
    MAX_LENGTHS,
    MAX_TAGS,
    MIN_ESTIMATED_HOURS,
    PRIORITY_ORDER,
)
from .errors import InvalidLaneError, PlanningError, ValidationError


# Null bytes and control characters, keeping \t, \n and \r.
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
# Enums tolerate no control characters at all.
ENUM_NOISE_RE = re.compile(r"[\x00-\x1F\x7F]")
TASK_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_CAMEL_TO_SNAKE = {
    "estimatedHours": "estimated_hours",
}


def sanitize_string(value: Any, max_length: int = MAX_LENGTHS["string"], *, field: str = "value") -> str:
    """Strip control characters, trim and truncate *value* to *max_length*."""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field, value=value)
    cleaned = CONTROL_CHARS_RE.sub("", value).strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned


def _normalize_enum(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return ENUM_NOISE_RE.sub("", value).strip().lower()[: MAX_LENGTHS["enum"]]


def validate_lane(value: Any) -> str:
    normalized = _normalize_enum(value)
    if normalized not in LANE_ORDER:
        raise InvalidLaneError(value, LANE_ORDER)
    return normalized


def validate_priority(value: Any) -> str:
    normalized = _normalize_enum(value)
    if normalized not in PRIORITY_ORDER:
        raise ValidationError(
            f"Invalid priority: {value}. Must be one of: {', '.join(PRIORITY_ORDER)}",
            field="priority",
            value=value,
        )
    return normalized


def validate_estimated_hours(value: Any) -> Optional[float]:
    """Return a finite hour count in range, or ``None`` when unestimated."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("Estimated hours must be a number", field="estimatedHours", value=value)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Estimated hours must be a number", field="estimatedHours", value=value) from None
    if not math.isfinite(hours):
        raise ValidationError("Estimated hours must be a finite number", field="estimatedHours", value=str(value))
    if hours < MIN_ESTIMATED_HOURS or hours > MAX_ESTIMATED_HOURS:
        raise ValidationError(
            f"Estimated hours must be between {MIN_ESTIMATED_HOURS} and {MAX_ESTIMATED_HOURS}",
            field="estimatedHours",
            value=hours,
        )
    return hours or None


def sanitize_tags(value: Any) -> list[str]:
    """Keep non-empty string tags, each truncated, at most ``MAX_TAGS`` of them."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError("Tags must be an array", field="tags", value=value)
    tags: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        tag = sanitize_string(item, MAX_LENGTHS["tag"], field="tags")
        if tag:
            tags.append(tag)
        if len(tags) >= MAX_TAGS:
            break
    return tags


def validate_task_id(value: Any) -> str:
    if not value or not isinstance(value, str):
        raise ValidationError("Task ID is required and must be a string", field="taskId", value=value)
    cleaned = CONTROL_CHARS_RE.sub("", value).strip()
    if len(cleaned) > MAX_LENGTHS["task_id"] or not TASK_ID_RE.match(cleaned):
        raise ValidationError("Invalid task ID format", field="taskId", value=value)
    return cleaned


def sanitize_query(value: Any) -> str:
    """Clean a free-text search query and escape regex metacharacters.

    The result is lowercase and safe to compile as a regular expression.
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Query is required and must be a string", field="query", value=value)
    cleaned = sanitize_string(value, MAX_LENGTHS["query"], field="query")
    if not cleaned:
        raise ValidationError("Query cannot be empty", field="query")
    return re.escape(cleaned.lower())


def validate_goal(value: Any) -> str:
    if not value or not isinstance(value, str):
        raise PlanningError("Goal is required and must be a string")
    cleaned = sanitize_string(value, MAX_LENGTHS["goal"], field="goal")
    if not cleaned:
        raise PlanningError("Goal cannot be empty")
    return cleaned


# ---------------------------------------------------------------------------
# Task payloads
# ---------------------------------------------------------------------------

def _title(value: Any) -> str:
    if value is None or not isinstance(value, str):
        raise ValidationError("Title is required and must be a string", field="title", value=value)
    title = sanitize_string(value, MAX_LENGTHS["title"], field="title")
    if not title:
        raise ValidationError("Title cannot be empty", field="title")
    return title


def _description(value: Any) -> str:
    if value is None:
        return ""
    return sanitize_string(value, MAX_LENGTHS["description"], field="description")


def _status(value: Any) -> str:
    return sanitize_string(value, MAX_LENGTHS["status"], field="status")


def _assignee(value: Any) -> Optional[str]:
    if value is None:
        return None
    return sanitize_string(value, MAX_LENGTHS["assignee"], field="assignee") or None


def _metadata(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("Metadata must be an object", field="metadata", value=value)
    return dict(value)


TASK_FIELD_VALIDATORS: dict[str, Callable[[Any], Any]] = {
    "title": _title,
    "description": _description,
    "lane": validate_lane,
    "priority": validate_priority,
    "estimated_hours": validate_estimated_hours,
    "tags": sanitize_tags,
    "status": _status,
    "assignee": _assignee,
    "metadata": _metadata,
}

# Fields where an explicit null in a patch means "clear the value".
_NULLABLE_FIELDS = {"estimated_hours", "assignee", "description", "tags", "metadata"}


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {_CAMEL_TO_SNAKE.get(k, k): v for k, v in data.items()}


def validate_task_data(data: Any) -> dict[str, Any]:
    """Validate a create payload.  ``title`` is required; omitted fields stay omitted."""
    if not isinstance(data, dict):
        raise ValidationError("Task data must be an object")
    raw = _normalize_keys(data)
    validated: dict[str, Any] = {"title": _title(raw.get("title"))}
    for name, validator in TASK_FIELD_VALIDATORS.items():
        if name == "title" or name not in raw or raw[name] is None:
            continue
        validated[name] = validator(raw[name])
    return validated


def validate_task_update(data: Any) -> dict[str, Any]:
    """Validate a partial update; only the fields present are checked."""
    if not isinstance(data, dict):
        raise ValidationError("Update data must be an object")
    raw = _normalize_keys(data)
    validated: dict[str, Any] = {}
    for name, validator in TASK_FIELD_VALIDATORS.items():
        if name not in raw:
            continue
        value = raw[name]
        if value is None and name not in _NULLABLE_FIELDS:
            continue
        validated[name] = validator(value)
    return validated


def validate_batch(items: Any, max_items: int = MAX_BATCH_SIZE) -> list[dict[str, Any]]:
    """Validate every item of a batch before any of them is processed."""
    if not isinstance(items, (list, tuple)):
        raise ValidationError("Tasks must be an array", field="tasks")
    if not items:
        raise ValidationError("Tasks array cannot be empty", field="tasks")
    if len(items) > max_items:
        raise ValidationError(f"Cannot create more than {max_items} tasks at once", field="tasks", value=len(items))
    validated: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        try:
            validated.append(validate_task_data(item))
        except ValidationError as exc:
            exc.message = f"Task at index {index}: {exc.message}"
            exc.args = (exc.message,)
            exc.details["index"] = index
            raise
    return validated
