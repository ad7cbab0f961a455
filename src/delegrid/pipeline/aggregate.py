"""Merge the outputs of a task's subtasks into one document."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from delegrid.errors import TaskNotFoundError, ValidationError
from delegrid.pipeline.outputs import StageOutputStore
from delegrid.queue.base import TaskQueueStore
from delegrid.queue.models import TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_SEPARATOR = "\n\n---\n\n"


class MergeStrategy(str, Enum):
    """How subtask outputs are combined."""

    CONCATENATE = "concatenate"
    JSON_ARRAY = "json-array"
    MARKDOWN_SECTIONS = "markdown-sections"


@dataclass(slots=True)
class SubtaskOutput:
    task_id: int
    location: str
    content: str

    @property
    def source(self) -> str:
        return Path(self.location).name


@dataclass(slots=True)
class AggregateResult:
    """Merged text plus which subtasks contributed to it."""

    parent_task_id: int
    strategy: MergeStrategy
    content: str
    sources: list[SubtaskOutput]
    missing: list[int] = field(default_factory=list)
    subtasks_complete: bool = False
    output_path: Path | None = None


def collect_subtask_outputs(
    queue: TaskQueueStore,
    parent_task_id: int,
    store: StageOutputStore,
) -> tuple[list[SubtaskOutput], list[int]]:
    """Read each subtask's result file; returns outputs and ids without one."""

    if queue.get_task(parent_task_id) is None:
        raise TaskNotFoundError(parent_task_id)
    outputs: list[SubtaskOutput] = []
    missing: list[int] = []
    for task in queue.list_tasks(parent_task_id=parent_task_id):
        content = store.read(task.result_location) if task.result_location else None
        if content is None:
            missing.append(task.id)
            continue
        outputs.append(
            SubtaskOutput(task_id=task.id, location=task.result_location or "", content=content),
        )
    return outputs, missing


def subtasks_complete(queue: TaskQueueStore, parent_task_id: int) -> bool:
    """True when the task has subtasks and every one of them is DONE."""

    subtasks = queue.list_tasks(parent_task_id=parent_task_id)
    return bool(subtasks) and all(task.status == TaskStatus.DONE for task in subtasks)


def merge_outputs(
    outputs: list[SubtaskOutput],
    strategy: MergeStrategy,
    *,
    separator: str = DEFAULT_SEPARATOR,
    include_headers: bool = False,
) -> str:
    if strategy == MergeStrategy.JSON_ARRAY:
        return _merge_json_array(outputs)
    if strategy == MergeStrategy.MARKDOWN_SECTIONS:
        return _merge_markdown_sections(outputs)
    parts = [
        f"## {output.source}\n\n{output.content}" if include_headers else output.content
        for output in outputs
    ]
    return separator.join(parts)


def aggregate_subtask_outputs(  # noqa: PLR0913
    queue: TaskQueueStore,
    parent_task_id: int,
    store: StageOutputStore,
    *,
    strategy: MergeStrategy = MergeStrategy.CONCATENATE,
    separator: str = DEFAULT_SEPARATOR,
    include_headers: bool = False,
    save: bool = True,
) -> AggregateResult:
    """Merge the result files of every subtask of ``parent_task_id``.

    Subtasks without a readable result file are listed in ``missing``.
    With ``save`` the merged text is written next to the stage outputs.

    Raises:
        TaskNotFoundError: The parent task does not exist.
        ValidationError: No subtask has a readable result yet.
    """

    outputs, missing = collect_subtask_outputs(queue, parent_task_id, store)
    if not outputs:
        raise ValidationError(f"Task {parent_task_id} has no subtask outputs to aggregate.")

    content = merge_outputs(
        outputs,
        strategy,
        separator=separator,
        include_headers=include_headers,
    )
    result = AggregateResult(
        parent_task_id=parent_task_id,
        strategy=strategy,
        content=content,
        sources=outputs,
        missing=missing,
        subtasks_complete=subtasks_complete(queue, parent_task_id),
    )
    if save:
        suffix = ".json" if strategy == MergeStrategy.JSON_ARRAY else ".md"
        result.output_path = store.write_aggregate(parent_task_id, content, suffix=suffix)
    if missing:
        logger.warning(
            "Task %s aggregated without outputs of subtasks %s",
            parent_task_id,
            ", ".join(str(task_id) for task_id in missing),
        )
    logger.info("Aggregated %s subtask outputs of task %s", len(outputs), parent_task_id)
    return result


def _merge_json_array(outputs: list[SubtaskOutput]) -> str:
    items: list[Any] = []
    for output in outputs:
        try:
            parsed = json.loads(output.content)
        except json.JSONDecodeError:
            items.append({"source": output.source, "content": output.content})
            continue
        if isinstance(parsed, list):
            items.extend(parsed)
        else:
            items.append(parsed)
    return json.dumps(items, ensure_ascii=False, indent=2)


def _merge_markdown_sections(outputs: list[SubtaskOutput]) -> str:
    lines = [
        "# Aggregated Output",
        "",
        f"*Generated from {len(outputs)} subtasks*",
        "",
        "---",
    ]
    for index, output in enumerate(outputs, start=1):
        lines.extend(["", f"## Part {index}: {Path(output.location).stem}", "", output.content])
    return "\n".join(lines) + "\n"
