"""Reclaim work held by workers that stopped heartbeating."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from delegrid.queue.base import TaskQueueStore
from delegrid.registry.models import WorkerStatus
from delegrid.registry.repository import WorkerRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecoveryReport:
    workers: list[int] = field(default_factory=list)
    slots_released: int = 0
    tasks_released: int = 0


def recover_unresponsive_workers(
    registry: WorkerRegistry,
    queue: TaskQueueStore,
    *,
    threshold_seconds: int = 90,
) -> RecoveryReport:
    """Mark stale workers ERROR, free their slots and requeue their tasks.

    Queue ownership is keyed by the worker's folder name, which is the
    worker id registered workers claim with.
    """

    report = RecoveryReport()
    for worker in registry.unresponsive_workers(threshold_seconds):
        logger.warning(
            "Worker %s (%s) unresponsive since %s; recovering",
            worker.uid,
            worker.folder_name,
            worker.last_heartbeat,
        )
        registry.update_status(
            worker.uid,
            WorkerStatus.ERROR,
            error_message=f"No heartbeat for more than {threshold_seconds}s.",
        )
        if registry.release_slot(worker.uid) is not None:
            report.slots_released += 1
        report.tasks_released += queue.release_all_for_worker(worker.folder_name)
        report.workers.append(worker.uid)
    return report
