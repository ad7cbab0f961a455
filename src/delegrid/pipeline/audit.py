"""Audit scoring: forbidden patterns and verdict markers."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from delegrid.pipeline.models import AuditVerdict, ForbiddenPattern

logger = logging.getLogger(__name__)

_VERDICT_PATTERN = re.compile(r"verdict\s*:\s*\**\s*(pass|fail)\b", re.IGNORECASE)

VERDICT_SOURCE_MARKER = "marker"
VERDICT_SOURCE_DEFAULT = "default"
VERDICT_SOURCE_FORBIDDEN = "forbidden_pattern"


def find_forbidden(output: str, patterns: Iterable[ForbiddenPattern]) -> list[str]:
    """Return ``pattern (reason)`` for each pattern found, case-insensitively."""

    lowered = output.lower()
    found: list[str] = []
    for item in patterns:
        if item.pattern.lower() in lowered:
            logger.warning("Forbidden pattern found: %s - %s", item.pattern, item.reason)
            found.append(f"{item.pattern} ({item.reason})" if item.reason else item.pattern)
    return found


def extract_verdict(output: str) -> bool | None:
    """A ``verdict: pass`` marker anywhere outranks ``verdict: fail``; None when neither."""

    markers = {match.group(1).lower() for match in _VERDICT_PATTERN.finditer(output)}
    if "pass" in markers:
        return True
    if "fail" in markers:
        return False
    return None


def evaluate_audit(
    output: str,
    patterns: Iterable[ForbiddenPattern],
    *,
    default_verdict: str = "pass",
) -> AuditVerdict:
    forbidden = find_forbidden(output, patterns)
    marker = extract_verdict(output)
    if forbidden:
        return AuditVerdict(
            passed=False,
            forbidden_matches=forbidden,
            verdict_source=VERDICT_SOURCE_FORBIDDEN,
        )
    if marker is None:
        logger.warning("No explicit audit verdict found; defaulting to %s", default_verdict)
        return AuditVerdict(
            passed=default_verdict == "pass",
            forbidden_matches=[],
            verdict_source=VERDICT_SOURCE_DEFAULT,
        )
    return AuditVerdict(passed=marker, forbidden_matches=[], verdict_source=VERDICT_SOURCE_MARKER)
