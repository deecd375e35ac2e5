"""Agent executor: leases task attempts and runs them through operators."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from flowlease.agent.workdir import TaskWorkdirManager
from flowlease.core.callback import TaskCallbackApi
from flowlease.core.models import LeasedTask
from flowlease.errors import (
    ConfigError,
    ErrorKind,
    SecretAccessDeniedError,
    TaskExecutionError,
    build_error_doc,
)
from flowlease.operators.base import (
    Failure,
    OperatorContext,
    RetryAfter,
    Success,
    TaskOutcome,
    TaskRequest,
    merged_params,
)
from flowlease.operators.registry import OperatorRegistry
from flowlease.operators.secrets import SecretProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentRunSummary:
    """Aggregate executor counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    rejected: int = 0
    idle_polls: int = 0

    def add(self, other: AgentRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.rejected += other.rejected
        self.idle_polls += other.idle_polls


class AgentExecutor:
    """Leases attempts, invokes operators and reports exactly one outcome each.

    Every invocation gets a fresh operator from the registry and rebuilds its
    progress from the leased State Params only. While tasks are held, a
    heartbeat thread renews their leases.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        callback: TaskCallbackApi,
        registry: OperatorRegistry,
        agent_id: str,
        site_id: int = 0,
        secrets: SecretProvider | None = None,
        workdir: TaskWorkdirManager | None = None,
        output_root: Path | None = None,
        lock_seconds: int = 60,
        heartbeat_interval_seconds: float = 20.0,
        poll_interval_seconds: float = 2.0,
        max_tasks_per_lease: int = 1,
    ) -> None:
        self.callback = callback
        self.registry = registry
        self.agent_id = agent_id
        self.site_id = site_id
        self.secrets = secrets or SecretProvider()
        self.workdir = workdir
        self.output_root = output_root
        self.lock_seconds = lock_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_tasks_per_lease = max_tasks_per_lease
        self._held: dict[str, LeasedTask] = {}
        self._held_lock = threading.Lock()
        self._heartbeat_stop: threading.Event | None = None
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> AgentRunSummary:
        """Lease and execute at most ``max_tasks_per_lease`` attempts."""

        summary = AgentRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        leased = self.callback.lease_tasks(
            self.site_id,
            self.agent_id,
            self.lock_seconds,
            self.max_tasks_per_lease,
        )
        if not leased:
            summary.idle_polls = 1
            return summary

        # The whole batch is heartbeated while earlier tasks run.
        for task in leased:
            self._hold(task)
        try:
            with self._heartbeat():
                for task in leased:
                    summary.processed += 1
                    match self.execute_task(task):
                        case "succeeded":
                            summary.succeeded += 1
                        case "retried":
                            summary.retried += 1
                        case "failed":
                            summary.failed += 1
                        case _:
                            summary.rejected += 1
        finally:
            for task in leased:
                self._release(task)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> AgentRunSummary:
        """Run until idle, ``max_tasks`` processed, or SIGINT/SIGTERM.

        Args:
            max_tasks: Stop after processing this many attempts (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = poll forever).
        """

        aggregate = AgentRunSummary()
        consecutive_idle = 0
        with self._signal_handlers(), self._heartbeat():
            while True:
                if self._stop_requested:
                    break
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

        if self._stop_signal_name is not None:
            logger.info("Agent %s stopped by %s", self.agent_id, self._stop_signal_name)
        return aggregate

    def execute_task(self, task: LeasedTask) -> str:
        """Run one leased attempt and report it; returns the reported outcome."""

        self._hold(task)
        try:
            outcome = self._run_operator(task)
            return self._report(task, outcome)
        finally:
            self._release(task)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _run_operator(self, task: LeasedTask) -> TaskOutcome:
        project_path = None
        try:
            if self.workdir is not None:
                project_path = self.workdir.materialize(
                    site_id=task.site_id,
                    task_id=task.task_id,
                    archive=self.callback.open_archive(task),
                )
            request = TaskRequest(
                site_id=task.site_id,
                task_id=task.task_id,
                task_name=task.name,
                operator_type=task.operator_type,
                config=task.config,
                state_params=task.state_params,
                retry_count=task.retry_count,
                project_path=project_path,
            )
            operator = self.registry.new_operator(request)
            secrets = self.secrets.restricted(operator.secret_selectors())
            params = merged_params(request)
            config = operator.configure(secrets, params)
            context = OperatorContext(
                request=request,
                secrets=secrets,
                project_path=project_path,
                output_path=self._output_path(task),
            )
            return operator.run(context, params, task.state_params, config)
        except TaskExecutionError as error:
            logger.warning("Task %s failed: %s", task.task_id, error)
            doc = dict(error.error)
            doc.setdefault("message", str(error))
            return Failure(doc)
        except (ConfigError, SecretAccessDeniedError) as error:
            logger.warning("Task %s has invalid configuration: %s", task.task_id, error)
            return Failure(build_error_doc(error, kind=ErrorKind.VALIDATION))
        except Exception as error:
            logger.exception("Task %s raised an unexpected error", task.task_id)
            return Failure(
                build_error_doc(error, kind=ErrorKind.UNEXPECTED, include_stacktrace=True),
            )
        finally:
            if self.workdir is not None:
                self.workdir.release(project_path)

    def _output_path(self, task: LeasedTask) -> Path | None:
        if self.output_root is None:
            return None
        return self.output_root / str(task.site_id) / str(task.task_id)

    def _report(self, task: LeasedTask, outcome: TaskOutcome) -> str:
        match outcome:
            case Success(result=result):
                label = "succeeded"
                accepted = self.callback.succeeded(
                    task.site_id,
                    task.task_id,
                    task.lock_id,
                    self.agent_id,
                    result,
                )
            case RetryAfter(delay_seconds=delay, state=state, error=error):
                label = "retried"
                accepted = self.callback.retry(
                    task.site_id,
                    task.task_id,
                    task.lock_id,
                    self.agent_id,
                    delay,
                    state,
                    error,
                )
            case Failure(error=error):
                label = "failed"
                accepted = self.callback.failed(
                    task.site_id,
                    task.task_id,
                    task.lock_id,
                    self.agent_id,
                    error,
                )
            case _:
                raise TypeError(f"Unsupported operator outcome: {outcome!r}")
        if not accepted:
            logger.warning(
                "Outcome %s of task %s was rejected; lease %s is no longer held",
                label,
                task.task_id,
                task.lock_id,
            )
            return "rejected"
        logger.info("Task %s %s", task.task_id, label)
        return label

    def _hold(self, task: LeasedTask) -> None:
        with self._held_lock:
            self._held[task.lock_id] = task

    def _release(self, task: LeasedTask) -> None:
        with self._held_lock:
            self._held.pop(task.lock_id, None)

    def send_heartbeat(self) -> list[str]:
        """Renew all held leases once; returns lock ids that were not renewed."""

        with self._held_lock:
            lock_ids = list(self._held)
        if not lock_ids:
            return []
        renewed = self.callback.heartbeat(self.site_id, lock_ids, self.agent_id, self.lock_seconds)
        lost = [lock_id for lock_id in lock_ids if lock_id not in renewed]
        for lock_id in lost:
            logger.warning(
                "Lease %s was not renewed; another agent may take the task over",
                lock_id,
            )
        return lost

    @contextmanager
    def _heartbeat(self) -> Iterator[None]:
        if self._heartbeat_stop is not None or self.heartbeat_interval_seconds <= 0:
            yield
            return

        stop = threading.Event()
        self._heartbeat_stop = stop

        def _loop() -> None:
            while not stop.wait(self.heartbeat_interval_seconds):
                try:
                    self.send_heartbeat()
                except Exception:
                    logger.exception("Heartbeat from agent %s failed", self.agent_id)

        thread = threading.Thread(
            target=_loop,
            name=f"flowlease-heartbeat-{self.agent_id}",
            daemon=True,
        )
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join(timeout=5.0)
            self._heartbeat_stop = None

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Running without signal handlers outside the main thread")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
