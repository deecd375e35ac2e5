"""Error taxonomy shared by the core, the agent and operators."""

from __future__ import annotations

import traceback
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Kinds recorded in task error documents."""

    VALIDATION = "validation"
    EXTERNAL_SYSTEM = "external_system"
    LOCK_CONFLICT = "lock_conflict"
    UNEXPECTED = "unexpected"


class FlowleaseError(Exception):
    """Base class for flowlease errors."""


class ConfigError(FlowleaseError, ValueError):
    """Malformed operator configuration or statement. Never retried."""


class ResourceNotFoundError(FlowleaseError):
    """Referenced project, workflow or task does not exist."""


class ResourceLimitExceededError(FlowleaseError):
    """Site exceeded a configured resource limit."""


class DatabaseError(FlowleaseError):
    """External SQL system error; the driver error is chained as ``__cause__``."""


class NotReadOnlyError(DatabaseError):
    """A read-only query attempted to modify data."""


class SecretAccessDeniedError(FlowleaseError):
    """Operator asked for a secret outside its declared selectors."""


class LockConflictError(FlowleaseError):
    """Another execution holds the status-table lock for the same key."""

    def __init__(self, query_id: str) -> None:
        super().__init__(f"Status row is locked by another execution: query_id={query_id}")
        self.query_id = query_id


class TaskExecutionError(FlowleaseError):
    """Permanent task failure carrying a structured error document."""

    def __init__(self, message: str, *, error: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.error = error if error is not None else {"message": message}


def build_error_doc(
    error: BaseException,
    *,
    kind: ErrorKind,
    message: str | None = None,
    include_stacktrace: bool = False,
) -> dict[str, Any]:
    """Serialize an exception into a JSON-friendly error document."""

    doc: dict[str, Any] = {
        "kind": kind.value,
        "message": message if message is not None else str(error),
        "type": type(error).__name__,
    }
    cause = error.__cause__
    if cause is not None:
        doc["cause"] = {"type": type(cause).__name__, "message": str(cause)}
    if include_stacktrace:
        doc["stacktrace"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__),
        )
    return doc
