"""Subprocess-based generation client for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path

from delegrid.errors import GenerationCancelled, GenerationFailure
from delegrid.generation.base import CancellationToken

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000


class CommandGenerationClient:
    """Run a CLI command template per prompt and return its stdout."""

    def __init__(  # noqa: PLR0913
        self,
        command_template: str,
        *,
        model: str,
        timeout_seconds: int = 600,
        poll_interval_seconds: float = 0.1,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.env = env

    def generate(self, prompt: str, *, cancellation: CancellationToken | None = None) -> str:
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        with tempfile.TemporaryDirectory(prefix="delegrid_gen_") as workdir:
            prompt_file = Path(workdir) / "prompt.md"
            prompt_file.write_text(prompt, "utf-8")
            stdout_path = Path(workdir) / "stdout.txt"
            stderr_path = Path(workdir) / "stderr.txt"
            run_args, command_head = _build_run_args(
                command_template=self.command_template,
                model=self.model,
                prompt=prompt,
                prompt_file=prompt_file,
            )

            env = os.environ.copy()
            if self.env:
                env.update(self.env)
            env["DELEGRID_EXECUTOR_MODEL"] = self.model

            logger.debug("Running generation command %s for model %s", command_head, self.model)
            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    exit_code = self._run_with_cancellation(
                        run_args=run_args,
                        env=env,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        cancellation=cancellation,
                    )
            except FileNotFoundError as error:
                raise GenerationFailure(
                    f"Generation command not found: {command_head}",
                    transient=False,
                ) from error
            except OSError as error:
                raise GenerationFailure(f"Generation command failed to start: {error}") from error

            stdout = stdout_path.read_text(encoding="utf-8", errors="replace")
            stderr = stderr_path.read_text(encoding="utf-8", errors="replace")

        if exit_code != 0:
            raise GenerationFailure(
                f"Generation command exited with code {exit_code}: "
                f"{stderr[-STDERR_TAIL_CHARS:].strip()}",
            )
        if not stdout.strip():
            raise GenerationFailure("Generation command produced no output.")
        return stdout

    def _run_with_cancellation(
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        stdout_handle,
        stderr_handle,
        cancellation: CancellationToken | None,
    ) -> int:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            env=env,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        start_monotonic = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode

            if cancellation is not None and cancellation.cancelled:
                _terminate_process(process)
                raise GenerationCancelled("Generation cancelled by caller.")

            if time.monotonic() - start_monotonic >= self.timeout_seconds:
                _terminate_process(process)
                raise GenerationFailure(
                    f"Generation command timed out after {self.timeout_seconds}s.",
                )

            time.sleep(self.poll_interval_seconds)


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise GenerationFailure("Generation command template is empty.", transient=False)
    if "{prompt_file}" not in stripped and "{prompt}" not in stripped:
        raise GenerationFailure(
            "Generation command template must include {prompt_file} or {prompt}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise GenerationFailure(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered, posix=os.name != "nt")
    if not argv:
        raise GenerationFailure(
            "Generation command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
