"""Per-stage execution: inputs, prompt, generation, audit, output, routing."""

from __future__ import annotations

import logging
import time

from delegrid.errors import ValidationError
from delegrid.generation.base import CancellationToken
from delegrid.generation.resolver import ExecutorResolver
from delegrid.pipeline.audit import evaluate_audit
from delegrid.pipeline.definition import PipelineDefinition
from delegrid.pipeline.models import (
    INITIAL_SOURCE,
    PipelineStage,
    PipelineTask,
    StageKind,
    StageResult,
)
from delegrid.pipeline.outputs import StageOutputStore
from delegrid.pipeline.prompts import build_prompt, render_task_definition
from delegrid.storage.common import utc_now

logger = logging.getLogger(__name__)


class StageEngine:
    """Execute one working stage without mutating the task.

    The returned ``StageResult`` is applied by the orchestration loop, so an
    interrupted or failed generation leaves the task exactly where it was.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        resolver: ExecutorResolver,
        outputs: StageOutputStore,
        *,
        audit_default_verdict: str = "pass",
    ) -> None:
        self.definition = definition
        self.resolver = resolver
        self.outputs = outputs
        self.audit_default_verdict = audit_default_verdict

    def execute_stage(
        self,
        task: PipelineTask,
        stage: PipelineStage,
        *,
        cancellation: CancellationToken | None = None,
    ) -> StageResult:
        """Run ``stage`` for ``task``.

        Raises:
            GenerationFailure: The generation capability failed or timed out.
            GenerationCancelled: ``cancellation`` fired during generation.
        """

        if stage.kind != StageKind.WORKING:
            raise ValidationError(f"Stage {stage.name!r} is {stage.kind.value}, not working.")

        started_at = utc_now()
        start_monotonic = time.monotonic()
        logger.info("Executing stage %s (%s) for task %s", stage.name, stage.id, task.task_id)

        client = self.resolver.resolve(stage.executor)
        inputs = self.gather_inputs(task, stage)
        prompt = build_prompt(stage, inputs, audit_feedback=task.audit_feedback)
        output = client.generate(prompt, cancellation=cancellation)

        verdict = None
        if stage.is_audit:
            verdict = evaluate_audit(
                output,
                stage.forbidden_patterns,
                default_verdict=self.audit_default_verdict,
            )
        output_path = self.outputs.write(task.task_id, stage.name, output)
        next_stage_id = self.definition.next_stage_id(
            stage,
            audit_passed=verdict.passed if verdict is not None else None,
        )

        duration_ms = int((time.monotonic() - start_monotonic) * 1000)
        logger.info("Stage %s completed in %sms", stage.name, duration_ms)
        return StageResult(
            stage=stage,
            output=output,
            output_path=output_path,
            started_at=started_at.isoformat(),
            completed_at=utc_now().isoformat(),
            duration_ms=duration_ms,
            next_stage_id=next_stage_id,
            verdict=verdict,
        )

    def gather_inputs(self, task: PipelineTask, stage: PipelineStage) -> dict[str, str]:
        """Collect declared inputs; missing stage outputs become placeholders."""

        inputs: dict[str, str] = {}
        for stage_input in stage.inputs:
            if stage_input.source == INITIAL_SOURCE:
                inputs[stage_input.name] = render_task_definition(
                    task.payload,
                    task_id=task.task_id,
                )
                continue
            location = task.stage_outputs.get(stage_input.source)
            content = self.outputs.read(location) if location else None
            if content is None:
                logger.warning(
                    "Input %s from %s not found for task %s",
                    stage_input.name,
                    stage_input.source,
                    task.task_id,
                )
                content = f"[Missing input from {stage_input.source}]"
            inputs[stage_input.name] = content
        return inputs
