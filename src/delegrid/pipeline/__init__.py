"""Pipeline stage engine and orchestration loop."""

from delegrid.pipeline.aggregate import AggregateResult, MergeStrategy, aggregate_subtask_outputs
from delegrid.pipeline.definition import (
    PipelineDefinition,
    default_pipeline,
    load_pipeline,
    pipeline_from_mapping,
    resolve_target,
)
from delegrid.pipeline.engine import StageEngine
from delegrid.pipeline.loop import PipelineRunner
from delegrid.pipeline.models import (
    PipelineStage,
    PipelineTask,
    RunResult,
    RunStatus,
    StageKind,
)
from delegrid.pipeline.outputs import StageOutputStore

__all__ = [
    "AggregateResult",
    "MergeStrategy",
    "PipelineDefinition",
    "PipelineRunner",
    "PipelineStage",
    "PipelineTask",
    "RunResult",
    "RunStatus",
    "StageEngine",
    "StageKind",
    "StageOutputStore",
    "aggregate_subtask_outputs",
    "default_pipeline",
    "load_pipeline",
    "pipeline_from_mapping",
    "resolve_target",
]
