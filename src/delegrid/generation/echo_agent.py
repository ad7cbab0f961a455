"""Local demo agent for command generation integration tests."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt instructions to stdout, optionally with a verdict."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text(encoding="utf-8")
    lines = [f"# Echo ({os.getenv('DELEGRID_EXECUTOR_MODEL', 'unknown')})", ""]
    lines.append(_instructions(prompt) or "(no instructions)")
    verdict = os.getenv("DELEGRID_ECHO_VERDICT", "").strip().lower()
    if verdict:
        lines.extend(["", f"Verdict: {verdict.upper()}"])
    sys.stdout.write("\n".join(lines) + "\n")
    return 0


def _instructions(prompt: str) -> str:
    section: list[str] = []
    inside = False
    for line in prompt.splitlines():
        if line.startswith("# "):
            if inside:
                break
            inside = line.strip() == "# Instructions"
            continue
        if inside:
            section.append(line)
    return "\n".join(section).strip()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
