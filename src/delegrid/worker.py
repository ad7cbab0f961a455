"""Queue worker that drives claimed tasks through the pipeline."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from delegrid.errors import GenerationCancelled, InvalidTransitionError, OwnershipError
from delegrid.generation.base import CancellationToken
from delegrid.pipeline.loop import PipelineRunner
from delegrid.pipeline.models import PipelineTask, RunStatus
from delegrid.queue.base import TaskQueueStore
from delegrid.queue.models import TaskStatus, TaskView
from delegrid.registry.repository import WorkerRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    requeued: int = 0
    lost: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.paused += other.paused
        self.requeued += other.requeued
        self.lost += other.lost
        self.idle_polls += other.idle_polls


class PipelineWorker:
    """Claims tasks from the queue and runs them until they finish or wait.

    When a registry and ``worker_uid`` are given, the worker also stamps
    heartbeats and task counters for that registered worker.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: TaskQueueStore,
        runner: PipelineRunner,
        worker_id: str,
        layer: int | None = None,
        registry: WorkerRegistry | None = None,
        worker_uid: int | None = None,
        poll_interval_seconds: float = 2.0,
        graceful_shutdown_seconds: float = 30.0,
    ) -> None:
        self.queue = queue
        self.runner = runner
        self.worker_id = worker_id
        self.layer = layer
        self.registry = registry
        self.worker_uid = worker_uid
        self.poll_interval_seconds = poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop = threading.Event()
        self._current_token: CancellationToken | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        task = None if self.stopping else self.queue.claim_next(self.worker_id, layer=self.layer)
        if task is None:
            summary.idle_polls = 1
            self._heartbeat()
            return summary

        logger.info("Worker %s claimed task %s", self.worker_id, task.id)
        if self.registry is not None and self.worker_uid is not None:
            try:
                self.registry.record_task_claimed(self.worker_uid, task.id)
            except InvalidTransitionError as error:
                logger.error("Worker %s can no longer take tasks: %s", self.worker_id, error)
                self.queue.release(task.id, self.worker_id)
                self._stop.set()
                summary.requeued = 1
                return summary

        summary.processed = 1
        try:
            self._run_and_settle(task, summary)
        except (OwnershipError, InvalidTransitionError) as error:
            # Released or recovered by someone else; the task is no longer ours to settle.
            logger.warning("Worker %s lost task %s: %s", self.worker_id, task.id, error)
            self._record_finished(task.id, succeeded=None)
            summary.lost = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Claim tasks until the queue stays empty or a stop request ends the loop.

        Args:
            max_tasks: Processed-task cap; None keeps going while work exists.
            max_idle_polls: Consecutive empty claims tolerated before returning.
        """

        aggregate = WorkerRunSummary()
        idle_streak = 0
        with self._stop_on_signals():
            while not self.stopping and (max_tasks is None or aggregate.processed < max_tasks):
                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed:
                    idle_streak = 0
                    continue
                idle_streak += 1
                if idle_streak >= max_idle_polls:
                    break
                self._stop.wait(self.poll_interval_seconds)
        return aggregate

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Stop claiming and give the running stage a grace period."""

        logger.warning("Worker %s stop requested (%s)", self.worker_id, signal_name)
        self._stop.set()
        token = self._current_token
        if token is not None:
            token.cancel_after(self.graceful_shutdown_seconds)

    def _run_and_settle(self, task: TaskView, summary: WorkerRunSummary) -> None:
        pipeline_task = self._load_pipeline_task(task)
        token = CancellationToken()
        self._current_token = token
        try:
            result = self.runner.run(
                pipeline_task,
                cancellation=token,
                on_transition=self._persist,
            )
        except GenerationCancelled:
            logger.warning("Task %s interrupted; releasing it", task.id)
            self.queue.release(task.id, self.worker_id)
            self._record_finished(task.id, succeeded=None)
            summary.requeued = 1
            return
        except (OwnershipError, InvalidTransitionError):
            raise
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s crashed the pipeline", task.id)
            self._settle_failure(task.id, f"{type(error).__name__}: {error}", summary)
            return
        finally:
            self._current_token = None

        if result.status == RunStatus.COMPLETED:
            self.queue.complete(
                task.id,
                result_location=result.task.last_output_path,
                worker_id=self.worker_id,
            )
            self._record_finished(task.id, succeeded=True)
            summary.completed = 1
        elif result.status == RunStatus.PAUSED:
            self.queue.release(task.id, self.worker_id)
            self._record_finished(task.id, succeeded=None)
            summary.paused = 1
        else:
            self._settle_failure(task.id, result.error or "Pipeline failed.", summary)

    def _load_pipeline_task(self, task: TaskView) -> PipelineTask:
        state = self.queue.load_pipeline_state(task.id)
        definition = self.runner.definition
        if state is None:
            return self.runner.start(task.id, task.payload)

        # A terminal or foreign state means the task was requeued after finishing a run.
        restored = PipelineTask.from_state(state, payload=task.payload)
        resumable = {stage.id for stage in definition.stages if not stage.terminal}
        if restored.pipeline_id == definition.id and restored.current_stage_id in resumable:
            logger.info("Resuming task %s at stage %s", task.id, restored.current_stage_id)
            return restored
        logger.info("Restarting pipeline for task %s", task.id)
        return self.runner.start(task.id, task.payload)

    def _persist(self, pipeline_task: PipelineTask) -> None:
        self.queue.save_pipeline_state(
            pipeline_task.task_id,
            self.worker_id,
            pipeline_task.to_state(),
        )
        self._heartbeat()

    def _settle_failure(self, task_id: int, error_text: str, summary: WorkerRunSummary) -> None:
        view = self.queue.fail(task_id, error_text, worker_id=self.worker_id)
        self._record_finished(task_id, succeeded=False)
        if view.status == TaskStatus.UNASSIGNED:
            summary.requeued = 1
        else:
            summary.failed = 1

    def _heartbeat(self) -> None:
        if self.registry is not None and self.worker_uid is not None:
            self.registry.heartbeat(self.worker_uid)

    def _record_finished(self, task_id: int, *, succeeded: bool | None) -> None:
        if self.registry is not None and self.worker_uid is not None:
            self.registry.record_task_finished(self.worker_uid, task_id, succeeded=succeeded)

    @contextmanager
    def _stop_on_signals(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM to ``request_stop`` while the loop runs."""

        def _handler(signum: int, _frame: object | None) -> None:
            self.request_stop(signal_name=signal.Signals(signum).name)

        previous: dict[signal.Signals, object] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[signum] = signal.signal(signum, _handler)
            except ValueError:
                # Not the main thread: the caller owns shutdown.
                break
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
