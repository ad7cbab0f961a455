"""File storage for stage outputs, one file per task and stage."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w.-]+")

AGGREGATED_DIR = "aggregated"


class StageOutputStore:
    """Writes ``<output_dir>/<task_id>_<stage_name>.md``.

    Merged subtask outputs go to ``<output_dir>/aggregated/<task_id>_merged<suffix>``.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def path_for(self, task_id: int, stage_name: str) -> Path:
        safe_name = _UNSAFE_CHARS.sub("_", stage_name).strip("_") or "stage"
        return self.output_dir / f"{task_id}_{safe_name}.md"

    def aggregate_path_for(self, parent_task_id: int, *, suffix: str = ".md") -> Path:
        return self.output_dir / AGGREGATED_DIR / f"{parent_task_id}_merged{suffix}"

    def write(self, task_id: int, stage_name: str, text: str) -> Path:
        path = self.path_for(task_id, stage_name)
        _write_atomic(path, text)
        logger.debug("Saved stage output: %s", path)
        return path

    def write_aggregate(self, parent_task_id: int, text: str, *, suffix: str = ".md") -> Path:
        path = self.aggregate_path_for(parent_task_id, suffix=suffix)
        _write_atomic(path, text)
        logger.info("Saved aggregated output: %s", path)
        return path

    def read(self, location: str) -> str | None:
        path = Path(location)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    temp_path.write_text(text, encoding="utf-8")
    os.replace(temp_path, path)
