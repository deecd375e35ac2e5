"""Time-indexed dispatch of queued task attempts."""

from __future__ import annotations

import heapq
import logging
import threading
from datetime import datetime

from flowlease.core.models import LeasedTask
from flowlease.core.repository import TaskRepository

logger = logging.getLogger(__name__)


class PollingScheduler:
    """Makes queued attempts leasable once their not-before time passes.

    The heap only indexes work; the durable truth is the ``run_after`` column.
    Popped entries are offered to :meth:`TaskRepository.lease_task`, whose
    conditional UPDATE drops stale or duplicate entries. A fresh task and a
    task coming back from ``retry`` take the same path.
    """

    def __init__(self, *, repository: TaskRepository) -> None:
        self.repository = repository
        self._lock = threading.Lock()
        self._heaps: dict[int, list[tuple[datetime, int]]] = {}
        self._loaded_sites: set[int] = set()

    def refresh(self, *, site_id: int) -> int:
        """Reclaim expired leases and rebuild the index from queued rows."""

        reclaimed = self.repository.reclaim_expired_leases(site_id=site_id)
        queued = self.repository.list_queued(site_id=site_id)
        heap = [(run_after, task_id) for task_id, run_after in queued]
        heapq.heapify(heap)
        with self._lock:
            self._heaps[site_id] = heap
            self._loaded_sites.add(site_id)
        if reclaimed:
            logger.info("Reclaimed %d expired lease(s) for site %s", len(reclaimed), site_id)
        return len(heap)

    def schedule(self, *, site_id: int, task_id: int, not_before: datetime) -> None:
        with self._lock:
            heapq.heappush(self._heaps.setdefault(site_id, []), (not_before, task_id))

    def next_due_at(self, *, site_id: int) -> datetime | None:
        with self._lock:
            heap = self._heaps.get(site_id)
            if not heap:
                return None
            return heap[0][0]

    def pop_eligible(self, *, site_id: int, now: datetime, limit: int) -> list[int]:
        """Pop up to ``limit`` distinct task ids whose not-before time has passed."""

        due: list[int] = []
        with self._lock:
            heap = self._heaps.get(site_id)
            while heap and len(due) < limit and heap[0][0] <= now:
                _, task_id = heapq.heappop(heap)
                if task_id not in due:
                    due.append(task_id)
        return due

    def dispatch(
        self,
        *,
        site_id: int,
        agent_id: str,
        lock_seconds: int,
        max_tasks: int,
    ) -> list[LeasedTask]:
        """Lease up to ``max_tasks`` eligible attempts to ``agent_id``."""

        refreshed = site_id not in self._loaded_sites
        if refreshed:
            self.refresh(site_id=site_id)
        else:
            for task_id, not_before in self.repository.reclaim_expired_leases(site_id=site_id):
                self.schedule(site_id=site_id, task_id=task_id, not_before=not_before)

        leased: list[LeasedTask] = []
        while len(leased) < max_tasks:
            now = self.repository.now()
            candidates = self.pop_eligible(
                site_id=site_id,
                now=now,
                limit=max_tasks - len(leased),
            )
            if not candidates:
                if refreshed:
                    break
                # Pick up attempts enqueued by other processes.
                self.refresh(site_id=site_id)
                refreshed = True
                continue
            for task_id in candidates:
                task = self.repository.lease_task(
                    site_id=site_id,
                    task_id=task_id,
                    agent_id=agent_id,
                    lock_seconds=lock_seconds,
                )
                if task is None:
                    logger.debug("Skipping stale schedule entry for task %s", task_id)
                    continue
                leased.append(task)
        return leased
