"""Error taxonomy for the board engine and its mapping to structured responses.

Every error raised on purpose by the engine derives from
:class:`BoardEngineError` and carries a stable ``code``, an HTTP-ish
``status_code`` and a ``details`` dict.  :func:`error_response` turns any
exception into the payload returned to tool callers and HTTP clients.
"""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger


GENERIC_ERROR_MESSAGE = "An unexpected error occurred"


class BoardEngineError(Exception):
    """Base class for errors the engine raises deliberately."""

    code = "APP_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BoardEngineError):
    """Malformed or out-of-range caller input.  Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None) -> None:
        details: dict[str, Any] = {}
        if field is not None:
            details["field"] = field
        if value is not None:
            details["value"] = value if isinstance(value, (str, int, float, bool)) else repr(value)
        super().__init__(message, details=details)
        self.field = field
        self.value = value


class InvalidLaneError(ValidationError):
    code = "INVALID_LANE"

    def __init__(self, lane: Any, valid_lanes: list[str] | tuple[str, ...]) -> None:
        allowed = list(valid_lanes)
        super().__init__(
            f"Invalid lane: {lane}. Must be one of: {', '.join(allowed)}",
            field="lane",
            value=lane,
        )
        self.lane = lane
        self.valid_lanes = allowed
        self.details["validLanes"] = allowed


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, from_lane: str, to_lane: str, allowed: list[str]) -> None:
        super().__init__(
            f"Cannot move task from {from_lane} to {to_lane}",
            field="lane",
            value=to_lane,
        )
        self.details.update({"fromLane": from_lane, "toLane": to_lane, "allowed": list(allowed)})


class TaskNotFoundError(BoardEngineError):
    code = "TASK_NOT_FOUND"
    status_code = 404

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", details={"taskId": task_id})
        self.task_id = task_id


class VersionConflictError(BoardEngineError):
    """Raised when a write carries a stale ``expected_version``."""

    code = "VERSION_CONFLICT"
    status_code = 409

    def __init__(self, task_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Task {task_id} was modified concurrently (expected version {expected}, found {actual})",
            details={"taskId": task_id, "expectedVersion": expected, "actualVersion": actual},
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class BoardError(BoardEngineError):
    """Storage-layer failure, tagged with the operation that failed."""

    code = "BOARD_ERROR"
    status_code = 500

    def __init__(self, message: str, operation: str = "unknown") -> None:
        super().__init__(message, details={"operation": operation})
        self.operation = operation


class PlanningError(BoardEngineError):
    code = "PLANNING_ERROR"
    status_code = 400


class ConfigurationError(BoardEngineError):
    code = "CONFIGURATION_ERROR"
    status_code = 500

    def __init__(self, message: str, config_key: Optional[str] = None) -> None:
        super().__init__(message, details={"configKey": config_key})
        self.config_key = config_key


def error_response(exc: BaseException, *, production: bool = False) -> dict[str, Any]:
    """Translate *exc* into the structured error payload.

    Known engine errors keep their code, message and details.  Anything else
    is reported as ``INTERNAL_ERROR``; in production the message is replaced
    with a generic string while the full exception is logged.
    """
    if isinstance(exc, BoardEngineError):
        logger.warning("[{}] {} {}", exc.code, exc.message, exc.details or "")
        return {"ok": False, "error": exc.to_dict()}

    logger.opt(exception=exc).error("Unexpected error: {}", exc)
    message = GENERIC_ERROR_MESSAGE if production else (str(exc) or exc.__class__.__name__)
    return {
        "ok": False,
        "error": {"code": "INTERNAL_ERROR", "message": message, "details": {}},
    }


def status_code_for(exc: BaseException) -> int:
    if isinstance(exc, BoardEngineError):
        return exc.status_code
    return 500
