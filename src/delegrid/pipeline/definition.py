"""Pipeline definition loading, validation and edge resolution."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from delegrid.errors import ValidationError
from delegrid.pipeline.models import (
    FAILURE_OUTCOME,
    INITIAL_SOURCE,
    AuditConfig,
    ForbiddenPattern,
    PipelineStage,
    StageInput,
    StageKind,
    StageRoute,
)

logger = logging.getLogger(__name__)

_ARROW_PATTERN = re.compile(r"(?:→|->)\s*(\S+)")


@dataclass(slots=True)
class PipelineDefinition:
    """Ordered stages plus the edge map resolved at load time."""

    id: str
    name: str
    stages: tuple[PipelineStage, ...]
    routes: dict[str, StageRoute]

    def stage(self, stage_id: str) -> PipelineStage:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise ValidationError(f"Stage {stage_id!r} not found in pipeline {self.id!r}.")

    def stage_by_name(self, name: str) -> PipelineStage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def index_of(self, stage_id: str) -> int:
        for index, stage in enumerate(self.stages):
            if stage.id == stage_id:
                return index
        raise ValidationError(f"Stage {stage_id!r} not found in pipeline {self.id!r}.")

    @property
    def initial_stage(self) -> PipelineStage:
        """First non-terminal stage; usually the ``unassigned`` queue stage."""

        for stage in self.stages:
            if not stage.terminal:
                return stage
        raise ValidationError(f"Pipeline {self.id!r} has no non-terminal stage.")

    @property
    def success_terminal(self) -> PipelineStage | None:
        for stage in self.stages:
            if stage.is_success_terminal:
                return stage
        return None

    @property
    def failure_terminal(self) -> PipelineStage | None:
        named = self.stage_by_name("failed")
        if named is not None and named.terminal:
            return named
        for stage in self.stages:
            if (
                stage.terminal
                and not stage.is_success_terminal
                and stage.outcome in (None, FAILURE_OUTCOME)
            ):
                return stage
        return None

    def next_in_order(self, stage_id: str) -> PipelineStage | None:
        index = self.index_of(stage_id)
        if index + 1 < len(self.stages):
            return self.stages[index + 1]
        return None

    def next_working_stage(self, stage_id: str) -> PipelineStage | None:
        for stage in self.stages[self.index_of(stage_id) + 1 :]:
            if stage.kind == StageKind.WORKING:
                return stage
        return None

    def next_stage_id(
        self,
        stage: PipelineStage,
        *,
        audit_passed: bool | None = None,
    ) -> str | None:
        """Pick the following stage from the resolved edge map.

        Audit stages follow their pass or fail edge; other stages follow the
        default edge. Missing edges fall back to pipeline order.
        """

        route = self.routes.get(stage.id, StageRoute())
        if stage.is_audit and audit_passed is not None:
            target = route.on_pass if audit_passed else route.on_fail
        else:
            target = route.default
        if target is not None:
            return target
        following = self.next_in_order(stage.id)
        return following.id if following is not None else None


def load_pipeline(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition JSON document."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ValidationError(f"Cannot read pipeline definition {path}: {error}") from error
    if not isinstance(raw, dict):
        raise ValidationError(f"Pipeline definition {path} must be a JSON object.")
    return pipeline_from_mapping(raw, default_id=path.stem)


def pipeline_from_mapping(
    raw: Mapping[str, Any],
    *,
    default_id: str = "pipeline",
) -> PipelineDefinition:
    """Build a validated definition from a decoded JSON mapping."""

    raw_stages = raw.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ValidationError("pipeline.stages must be a non-empty array")
    stages = tuple(_parse_stage(item, position) for position, item in enumerate(raw_stages))
    _validate_stages(stages)

    pipeline_id = str(raw.get("id", default_id))
    routes = {
        stage.id: StageRoute(
            default=_resolve_edge(stage, stage.next_stage, stages, pipeline_id),
            on_pass=_resolve_edge(
                stage,
                stage.audit.on_pass if stage.audit else None,
                stages,
                pipeline_id,
            ),
            on_fail=_resolve_edge(
                stage,
                stage.audit.on_fail if stage.audit else None,
                stages,
                pipeline_id,
            ),
        )
        for stage in stages
    }
    return PipelineDefinition(
        id=pipeline_id,
        name=str(raw.get("name", pipeline_id)),
        stages=stages,
        routes=routes,
    )


def default_pipeline(executor: str) -> PipelineDefinition:
    """Single working stage that turns the task definition into one output."""

    return pipeline_from_mapping(
        {
            "id": "default",
            "name": "Single stage",
            "stages": [
                {"id": "unassigned", "name": "unassigned"},
                {
                    "id": "execute",
                    "name": "execute",
                    "executor": executor,
                    "instructions": "Complete the task described in the inputs.",
                    "inputs": [{"name": "task", "source": INITIAL_SOURCE}],
                    "next_stage": "→ completed",
                },
                {"id": "completed", "name": "completed", "terminal": True, "outcome": "success"},
                {"id": "failed", "name": "failed", "terminal": True, "outcome": "failure"},
            ],
        },
    )


def resolve_target(text: str, stages: tuple[PipelineStage, ...]) -> str | None:
    """Resolve free-text routing to a stage id.

    Tries an arrow token (``→ name`` or ``-> name``), then an exact stage
    name, then an exact stage id, then a substring search over stage names.
    """

    stripped = text.strip()
    if not stripped:
        return None
    arrow = _ARROW_PATTERN.search(stripped)
    if arrow is not None:
        for stage in stages:
            if stage.name == arrow.group(1):
                return stage.id
    for stage in stages:
        if stage.name == stripped:
            return stage.id
    for stage in stages:
        if stage.id == stripped:
            return stage.id
    # Longest names first so "audit" does not shadow "awaiting_audit".
    for stage in sorted(stages, key=lambda item: len(item.name), reverse=True):
        if stage.name in stripped:
            return stage.id
    return None


def _resolve_edge(
    stage: PipelineStage,
    text: str | None,
    stages: tuple[PipelineStage, ...],
    pipeline_id: str,
) -> str | None:
    if text is None or not text.strip():
        return None
    target = resolve_target(text, stages)
    if target is None:
        logger.warning(
            "Pipeline %s: routing %r of stage %s matches no stage; using pipeline order",
            pipeline_id,
            text,
            stage.name,
        )
    return target


def _parse_stage(item: Any, position: int) -> PipelineStage:
    if not isinstance(item, dict):
        raise ValidationError(f"pipeline.stages[{position}] must be an object")
    stage_id = item.get("id")
    name = item.get("name")
    if stage_id is None or not str(stage_id).strip():
        raise ValidationError(f"pipeline.stages[{position}].id is required")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"pipeline.stages[{position}].name must be a non-empty string")

    audit_raw = item.get("audit")
    audit: AuditConfig | None = None
    if audit_raw is not None:
        if not isinstance(audit_raw, dict):
            raise ValidationError(f"pipeline.stages[{position}].audit must be an object")
        audit = AuditConfig(
            pass_criteria=str(audit_raw.get("pass_criteria", "")),
            on_pass=_optional_str(audit_raw, "on_pass", position),
            on_fail=_optional_str(audit_raw, "on_fail", position),
        )

    return PipelineStage(
        id=str(stage_id).strip(),
        name=name.strip(),
        terminal=bool(item.get("terminal", False)),
        outcome=_optional_str(item, "outcome", position),
        executor=_optional_str(item, "executor", position),
        instructions=str(item.get("instructions", "")),
        inputs=tuple(_parse_inputs(item.get("inputs", []), position)),
        output_instructions=_optional_str(item, "output_instructions", position),
        forbidden_patterns=tuple(_parse_forbidden(item.get("forbidden_patterns", []), position)),
        audit=audit,
        next_stage=_optional_str(item, "next_stage", position),
        completion_signal=_optional_str(item, "completion_signal", position),
    )


def _parse_inputs(raw: Any, position: int) -> list[StageInput]:
    if not isinstance(raw, list):
        raise ValidationError(f"pipeline.stages[{position}].inputs must be an array")
    inputs: list[StageInput] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError(f"pipeline.stages[{position}].inputs entry must be an object")
        name = entry.get("name")
        source = entry.get("source")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"pipeline.stages[{position}].inputs.name is required")
        if not isinstance(source, str) or not source.strip():
            raise ValidationError(f"pipeline.stages[{position}].inputs.source is required")
        inputs.append(StageInput(name=name.strip(), source=source.strip()))
    return inputs


def _parse_forbidden(raw: Any, position: int) -> list[ForbiddenPattern]:
    if not isinstance(raw, list):
        raise ValidationError(f"pipeline.stages[{position}].forbidden_patterns must be an array")
    patterns: list[ForbiddenPattern] = []
    for entry in raw:
        if isinstance(entry, str):
            entry = {"pattern": entry}
        if not isinstance(entry, dict) or not str(entry.get("pattern", "")).strip():
            raise ValidationError(
                f"pipeline.stages[{position}].forbidden_patterns entry needs a pattern",
            )
        patterns.append(
            ForbiddenPattern(pattern=str(entry["pattern"]), reason=str(entry.get("reason", ""))),
        )
    return patterns


def _optional_str(raw: Mapping[str, Any], key: str, position: int) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"pipeline.stages[{position}].{key} must be a string")
    return value.strip() or None


def _validate_stages(stages: tuple[PipelineStage, ...]) -> None:
    ids = [stage.id for stage in stages]
    names = [stage.name for stage in stages]
    duplicated_ids = sorted({item for item in ids if ids.count(item) > 1})
    if duplicated_ids:
        raise ValidationError(f"Duplicate stage ids: {', '.join(duplicated_ids)}")
    duplicated_names = sorted({item for item in names if names.count(item) > 1})
    if duplicated_names:
        raise ValidationError(f"Duplicate stage names: {', '.join(duplicated_names)}")
    if not any(stage.terminal for stage in stages):
        raise ValidationError("Pipeline needs at least one terminal stage.")
    if all(stage.terminal for stage in stages):
        raise ValidationError("Pipeline needs at least one non-terminal stage.")

    known_sources = {INITIAL_SOURCE, *names}
    for stage in stages:
        for stage_input in stage.inputs:
            if stage_input.source not in known_sources:
                raise ValidationError(
                    f"Stage {stage.name!r} input {stage_input.name!r} reads unknown "
                    f"source {stage_input.source!r}.",
                )
