"""Pipeline stage definitions and per-task pipeline state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

INITIAL_SOURCE = "initial"
SUCCESS_OUTCOME = "success"
FAILURE_OUTCOME = "failure"
STATE_SCHEMA_VERSION = 1


class StageKind(str, Enum):
    """How the orchestration loop treats a stage."""

    TERMINAL = "terminal"
    WORKING = "working"
    WAITING = "waiting"


class RunStatus(str, Enum):
    """Outcome of one orchestration loop call."""

    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


@dataclass(frozen=True, slots=True)
class StageInput:
    name: str
    source: str


@dataclass(frozen=True, slots=True)
class ForbiddenPattern:
    pattern: str
    reason: str = ""


@dataclass(frozen=True, slots=True)
class AuditConfig:
    """Audit criteria and free-text routing for pass/fail verdicts."""

    pass_criteria: str = ""
    on_pass: str | None = None
    on_fail: str | None = None


@dataclass(frozen=True, slots=True)
class PipelineStage:
    """Declarative stage, immutable once the pipeline is loaded."""

    id: str
    name: str
    terminal: bool = False
    outcome: str | None = None
    executor: str | None = None
    instructions: str = ""
    inputs: tuple[StageInput, ...] = ()
    output_instructions: str | None = None
    forbidden_patterns: tuple[ForbiddenPattern, ...] = ()
    audit: AuditConfig | None = None
    next_stage: str | None = None
    completion_signal: str | None = None

    @property
    def is_audit(self) -> bool:
        return self.audit is not None

    @property
    def kind(self) -> StageKind:
        if self.terminal:
            return StageKind.TERMINAL
        if self.executor:
            return StageKind.WORKING
        return StageKind.WAITING

    @property
    def is_success_terminal(self) -> bool:
        return self.terminal and (self.outcome == SUCCESS_OUTCOME or self.name == "completed")


@dataclass(slots=True)
class StageRoute:
    """Target stage ids resolved once when the pipeline loads."""

    default: str | None = None
    on_pass: str | None = None
    on_fail: str | None = None


@dataclass(slots=True)
class StageHistoryEntry:
    stage_id: str
    stage_name: str
    executor: str
    started_at: str
    completed_at: str
    duration_ms: int
    outcome: str
    output_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "executor": self.executor,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome,
            "output_path": self.output_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageHistoryEntry:
        return cls(
            stage_id=str(data["stage_id"]),
            stage_name=str(data["stage_name"]),
            executor=str(data.get("executor", "")),
            started_at=str(data.get("started_at", "")),
            completed_at=str(data.get("completed_at", "")),
            duration_ms=int(data.get("duration_ms", 0)),
            outcome=str(data.get("outcome", "")),
            output_path=data.get("output_path"),
        )


@dataclass(slots=True)
class AuditRecord:
    stage_id: str
    stage_name: str
    passed: bool
    forbidden_matches: list[str]
    verdict_source: str
    routed_to: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "passed": self.passed,
            "forbidden_matches": list(self.forbidden_matches),
            "verdict_source": self.verdict_source,
            "routed_to": self.routed_to,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditRecord:
        return cls(
            stage_id=str(data["stage_id"]),
            stage_name=str(data["stage_name"]),
            passed=bool(data["passed"]),
            forbidden_matches=[str(item) for item in data.get("forbidden_matches", [])],
            verdict_source=str(data.get("verdict_source", "")),
            routed_to=data.get("routed_to"),
        )


@dataclass(slots=True)
class PipelineTask:
    """Queue task augmented with its position in a pipeline.

    ``stage_outputs`` maps a stage name to the location of its stored output.
    """

    task_id: int
    payload: str
    pipeline_id: str
    current_stage_id: str
    stage_history: list[StageHistoryEntry] = field(default_factory=list)
    stage_outputs: dict[str, str] = field(default_factory=dict)
    audit_results: list[AuditRecord] = field(default_factory=list)
    audit_retry_count: int = 0
    stage_retry_count: int = 0
    audit_feedback: str | None = None
    last_error: str | None = None

    @property
    def last_output_path(self) -> str | None:
        for entry in reversed(self.stage_history):
            if entry.output_path:
                return entry.output_path
        return None

    def to_state(self) -> dict[str, Any]:
        """Serialize for the queue store's pipeline state slot."""

        return {
            "schema_version": STATE_SCHEMA_VERSION,
            "task_id": self.task_id,
            "pipeline_id": self.pipeline_id,
            "current_stage_id": self.current_stage_id,
            "stage_history": [entry.to_dict() for entry in self.stage_history],
            "stage_outputs": dict(self.stage_outputs),
            "audit_results": [record.to_dict() for record in self.audit_results],
            "audit_retry_count": self.audit_retry_count,
            "stage_retry_count": self.stage_retry_count,
            "audit_feedback": self.audit_feedback,
            "last_error": self.last_error,
        }

    @classmethod
    def from_state(cls, state: dict[str, Any], *, payload: str) -> PipelineTask:
        return cls(
            task_id=int(state["task_id"]),
            payload=payload,
            pipeline_id=str(state.get("pipeline_id", "")),
            current_stage_id=str(state["current_stage_id"]),
            stage_history=[
                StageHistoryEntry.from_dict(item) for item in state.get("stage_history", [])
            ],
            stage_outputs={
                str(name): str(location)
                for name, location in state.get("stage_outputs", {}).items()
            },
            audit_results=[
                AuditRecord.from_dict(item) for item in state.get("audit_results", [])
            ],
            audit_retry_count=int(state.get("audit_retry_count", 0)),
            stage_retry_count=int(state.get("stage_retry_count", 0)),
            audit_feedback=state.get("audit_feedback"),
            last_error=state.get("last_error"),
        )


@dataclass(slots=True)
class AuditVerdict:
    """Audit evaluation of one stage output."""

    passed: bool
    forbidden_matches: list[str]
    verdict_source: str


@dataclass(slots=True)
class StageResult:
    """Uncommitted outcome of executing one working stage."""

    stage: PipelineStage
    output: str
    output_path: Path
    started_at: str
    completed_at: str
    duration_ms: int
    next_stage_id: str | None
    verdict: AuditVerdict | None = None


@dataclass(slots=True)
class RunResult:
    status: RunStatus
    task: PipelineTask
    error: str | None = None
