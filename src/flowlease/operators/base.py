"""Operator capability interface and outcome variants."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from flowlease.core.models import TaskResult
from flowlease.core.state_params import StateParams
from flowlease.operators.secrets import SecretProvider


@dataclass(frozen=True, slots=True)
class Success:
    """Operator finished; the attempt becomes terminal."""

    result: TaskResult = field(default_factory=TaskResult)


@dataclass(frozen=True, slots=True)
class RetryAfter:
    """Operator asks to be invoked again after ``delay_seconds``.

    This is control flow, not failure: ``state`` replaces the attempt's
    State Params and ``error`` is informational only.
    """

    delay_seconds: int
    state: StateParams
    error: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class Failure:
    """Operator failed permanently with a structured error document."""

    error: dict[str, Any]


TaskOutcome: TypeAlias = Success | RetryAfter | Failure


@dataclass(frozen=True, slots=True)
class TaskRequest:
    """Everything an operator may read about the leased attempt."""

    site_id: int
    task_id: int
    task_name: str
    operator_type: str
    config: Mapping[str, Any]
    state_params: StateParams
    retry_count: int
    project_path: Path | None = None


@dataclass(frozen=True, slots=True)
class OperatorContext:
    """Per-invocation services handed to :meth:`Operator.run`.

    ``project_path`` is removed after the invocation; files meant to outlive
    it go under ``output_path``.
    """

    request: TaskRequest
    secrets: SecretProvider
    project_path: Path | None = None
    output_path: Path | None = None


class Operator(Protocol):
    """Capability set every operator implements; no base class is required."""

    def secret_selectors(self) -> list[str]:
        """Secret key patterns (``aws.*``) this operator may read."""

    def configure(self, secrets: SecretProvider, params: Mapping[str, Any]) -> Any:
        """Build a stateless configuration object from params and secrets."""

    def run(
        self,
        context: OperatorContext,
        params: Mapping[str, Any],
        state: StateParams,
        config: Any,
    ) -> TaskOutcome:
        """Do (or resume) the work; rebuild all progress from ``state``."""


OperatorFactory: TypeAlias = Callable[[TaskRequest], Operator]


def merged_params(request: TaskRequest) -> dict[str, Any]:
    """Task config with the nested ``<operator_type>`` section as defaults."""

    config = dict(request.config)
    nested = config.get(request.operator_type)
    if isinstance(nested, Mapping):
        return {**nested, **config}
    return config
