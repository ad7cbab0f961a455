"""Orchestration loop driving one task through its pipeline."""

from __future__ import annotations

import logging
from collections.abc import Callable

from delegrid.errors import GenerationFailure
from delegrid.generation.base import CancellationToken
from delegrid.pipeline.definition import PipelineDefinition
from delegrid.pipeline.engine import StageEngine
from delegrid.pipeline.models import (
    AuditRecord,
    PipelineTask,
    RunResult,
    RunStatus,
    StageHistoryEntry,
    StageKind,
    StageResult,
)

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[PipelineTask], None]


class PipelineRunner:
    """Run a task stage by stage until it finishes or must wait.

    The runner is the only caller of ``StageEngine.execute_stage`` and the
    only place that decides retry, permanent failure or pass-through.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        engine: StageEngine,
        *,
        max_stage_retries: int = 3,
        max_audit_retries: int = 3,
    ) -> None:
        self.definition = definition
        self.engine = engine
        self.max_stage_retries = max_stage_retries
        self.max_audit_retries = max_audit_retries

    def start(self, task_id: int, payload: str) -> PipelineTask:
        """Create pipeline state for a task entering the pipeline."""

        return PipelineTask(
            task_id=task_id,
            payload=payload,
            pipeline_id=self.definition.id,
            current_stage_id=self.definition.initial_stage.id,
        )

    def run(
        self,
        task: PipelineTask,
        *,
        cancellation: CancellationToken | None = None,
        on_transition: TransitionCallback | None = None,
    ) -> RunResult:
        """Execute stages until a terminal or waiting stage is reached.

        ``on_transition`` is called after every committed change so callers
        can persist the task. ``GenerationCancelled`` propagates with the
        task still at the stage it was executing.

        A transient ``GenerationFailure`` retries the same stage until
        ``max_stage_retries`` attempts are spent. A non-transient one (an
        empty or unparsable command template, a missing executable) cannot
        succeed on retry, so it routes to the failure terminal at once.
        """

        first_step = True
        while True:
            stage = self.definition.stage(task.current_stage_id)

            if stage.kind == StageKind.TERMINAL:
                status = RunStatus.COMPLETED if stage.is_success_terminal else RunStatus.FAILED
                return RunResult(status=status, task=task, error=task.last_error)

            if stage.kind == StageKind.WAITING:
                if not first_step:
                    logger.info("Task %s paused at %s", task.task_id, stage.name)
                    return RunResult(status=RunStatus.PAUSED, task=task)
                target = self.definition.next_working_stage(stage.id)
                if target is None:
                    return self._fail(
                        task,
                        f"No working stage follows {stage.name!r}.",
                        on_transition=on_transition,
                    )
                logger.debug("Task %s handed from %s to %s", task.task_id, stage.name, target.name)
                task.current_stage_id = target.id
                _notify(on_transition, task)
                first_step = False
                continue

            first_step = False
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            try:
                result = self.engine.execute_stage(task, stage, cancellation=cancellation)
            except GenerationFailure as error:
                task.stage_retry_count += 1
                task.last_error = str(error)
                logger.warning(
                    "Stage %s failed for task %s (attempt %s/%s): %s",
                    stage.name,
                    task.task_id,
                    task.stage_retry_count,
                    self.max_stage_retries,
                    error,
                )
                if not error.transient or task.stage_retry_count >= self.max_stage_retries:
                    return self._fail(task, str(error), on_transition=on_transition)
                _notify(on_transition, task)
                continue

            error_text = self._apply(task, result)
            _notify(on_transition, task)
            if error_text is not None:
                return RunResult(status=RunStatus.FAILED, task=task, error=error_text)

    def _apply(self, task: PipelineTask, result: StageResult) -> str | None:
        """Commit a stage result to the task; returns an error when it must stop."""

        stage = result.stage
        verdict = result.verdict
        next_stage_id = result.next_stage_id
        error_text: str | None = None

        if verdict is not None and not verdict.passed:
            task.audit_retry_count += 1
            feedback = result.output.strip()
            if verdict.forbidden_matches:
                feedback += "\n\nForbidden patterns found: " + ", ".join(
                    verdict.forbidden_matches,
                )
            task.audit_feedback = feedback
            if task.audit_retry_count > self.max_audit_retries:
                error_text = (
                    f"Audit {stage.name!r} failed {task.audit_retry_count} times "
                    f"(max {self.max_audit_retries} retries)."
                )
                failure = self.definition.failure_terminal
                next_stage_id = failure.id if failure is not None else None
        else:
            task.audit_feedback = None

        if next_stage_id is None and error_text is None:
            success = self.definition.success_terminal
            if success is not None:
                next_stage_id = success.id
            else:
                error_text = f"Stage {stage.name!r} has no following stage."

        task.stage_history.append(
            StageHistoryEntry(
                stage_id=stage.id,
                stage_name=stage.name,
                executor=stage.executor or "",
                started_at=result.started_at,
                completed_at=result.completed_at,
                duration_ms=result.duration_ms,
                outcome="completed",
                output_path=str(result.output_path),
            ),
        )
        task.stage_outputs[stage.name] = str(result.output_path)
        next_stage = self.definition.stage(next_stage_id) if next_stage_id else None
        if verdict is not None:
            task.audit_results.append(
                AuditRecord(
                    stage_id=stage.id,
                    stage_name=stage.name,
                    passed=verdict.passed,
                    forbidden_matches=list(verdict.forbidden_matches),
                    verdict_source=verdict.verdict_source,
                    routed_to=next_stage.name if next_stage is not None else None,
                ),
            )
        task.stage_retry_count = 0
        task.last_error = error_text
        if next_stage is not None:
            task.current_stage_id = next_stage.id
            logger.info("Task %s moved from %s to %s", task.task_id, stage.name, next_stage.name)
        return error_text

    def _fail(
        self,
        task: PipelineTask,
        error_text: str,
        *,
        on_transition: TransitionCallback | None,
    ) -> RunResult:
        task.last_error = error_text
        failure = self.definition.failure_terminal
        if failure is not None:
            task.current_stage_id = failure.id
        logger.error("Task %s failed: %s", task.task_id, error_text)
        _notify(on_transition, task)
        return RunResult(status=RunStatus.FAILED, task=task, error=error_text)


def _notify(callback: TransitionCallback | None, task: PipelineTask) -> None:
    if callback is not None:
        callback(task)
