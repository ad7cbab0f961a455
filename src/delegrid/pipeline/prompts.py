"""Prompt composition for working stages."""

from __future__ import annotations

import json
from typing import Any

from delegrid.pipeline.models import PipelineStage

VERDICT_HINT = "End your review with a line `Verdict: PASS` or `Verdict: FAIL`."


def render_task_definition(payload: str, *, task_id: int) -> str:
    """Render the task payload as the ``initial`` stage input.

    JSON object payloads with ``title``/``description``/``params`` render as a
    markdown brief; anything else is passed through verbatim.
    """

    try:
        parsed: Any = json.loads(payload)
    except json.JSONDecodeError:
        return payload
    if not isinstance(parsed, dict):
        return payload

    title = parsed.get("title") or f"Task {task_id}"
    lines = [f"# Task: {title}", ""]
    description = parsed.get("description")
    if description:
        lines.extend(["## Description", str(description), ""])
    params = parsed.get("params")
    if isinstance(params, dict) and params:
        lines.append("## Parameters")
        lines.extend(
            f"- **{key}**: {json.dumps(value, ensure_ascii=False)}" for key, value in params.items()
        )
    return "\n".join(lines).rstrip() + "\n"


def build_prompt(
    stage: PipelineStage,
    inputs: dict[str, str],
    *,
    audit_feedback: str | None = None,
) -> str:
    sections = [f"# Instructions\n\n{stage.instructions.strip()}"]
    if audit_feedback:
        sections.append(
            "# Audit Feedback\n\n"
            "A previous review rejected this work. Address the following:\n\n"
            f"{audit_feedback.strip()}",
        )
    if inputs:
        rendered = "\n\n".join(
            f"## {name}\n\n{content.strip()}" for name, content in inputs.items()
        )
        sections.append(f"# Inputs\n\n{rendered}")

    expected: list[str] = []
    if stage.output_instructions:
        expected.append(stage.output_instructions.strip())
    if stage.audit is not None:
        if stage.audit.pass_criteria.strip():
            expected.append(f"Pass criteria: {stage.audit.pass_criteria.strip()}")
        expected.append(VERDICT_HINT)
    if expected:
        sections.append("# Expected Output\n\n" + "\n\n".join(expected))

    prompt = "\n\n".join(sections) + "\n"
    if stage.completion_signal:
        prompt += f"\n---\nWhen finished, include: {stage.completion_signal}\n"
    return prompt
