"""Runtime configuration for the queue, registry, pipeline and workers."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_QUEUE_BACKENDS = ("sqlite", "document")
SUPPORTED_VERDICTS = ("pass", "fail")
EXECUTOR_COMMAND_ENV_PREFIX = "DELEGRID_EXECUTOR_COMMAND_"
ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m delegrid.generation.echo_agent "
    "--prompt-file {prompt_file}"
)


@dataclass(slots=True)
class QueueSettings:
    """Task queue backend selection and retry policy."""

    backend: str = "sqlite"
    document_path: Path = Path(".delegrid_tasks.json")
    max_retries: int = 3
    retry_on_failure: bool = True
    lock_timeout_seconds: float = 5.0
    lock_retry_interval_seconds: float = 0.1


@dataclass(slots=True)
class RegistrySettings:
    """Worker registry and slot pool settings."""

    slot_count: int = 4
    unresponsive_after_seconds: int = 90


@dataclass(slots=True)
class PipelineSettings:
    """Stage engine settings."""

    definition_path: Path | None = None
    output_dir: Path = Path("delegrid_outputs")
    max_stage_retries: int = 3
    max_audit_retries: int = 3
    audit_default_verdict: str = "pass"


@dataclass(slots=True)
class GenerationSettings:
    """Executor resolution for the generation capability."""

    default_executor: str = "gpt-4o"
    command_template: str = ECHO_AGENT_COMMAND_TEMPLATE
    executor_commands: dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 600
    cache_ttl_seconds: float = 60.0


@dataclass(slots=True)
class WorkerSettings:
    """Per-process worker identity and polling."""

    worker_id: str = field(default_factory=lambda: f"worker-{os.getpid()}")
    layer: int | None = None
    poll_interval_seconds: float = 2.0
    graceful_shutdown_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".delegrid.db")
    sqlite_busy_timeout_ms: int = 5000
    log_level: str = "WARNING"
    queue: QueueSettings = field(default_factory=QueueSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        pipeline_path = os.getenv("DELEGRID_PIPELINE_PATH", "").strip()
        worker_layer = os.getenv("DELEGRID_WORKER_LAYER", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("DELEGRID_DB_PATH", ".delegrid.db")),
            sqlite_busy_timeout_ms=int(os.getenv("DELEGRID_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("DELEGRID_LOG_LEVEL", "WARNING").upper(),
            queue=QueueSettings(
                backend=os.getenv("DELEGRID_QUEUE_BACKEND", "sqlite").strip().lower(),
                document_path=Path(
                    os.getenv("DELEGRID_QUEUE_DOCUMENT_PATH", ".delegrid_tasks.json"),
                ),
                max_retries=int(os.getenv("DELEGRID_QUEUE_MAX_RETRIES", "3")),
                retry_on_failure=_env_bool("DELEGRID_QUEUE_RETRY_ON_FAILURE", default=True),
                lock_timeout_seconds=float(
                    os.getenv("DELEGRID_QUEUE_LOCK_TIMEOUT_SECONDS", "5.0"),
                ),
                lock_retry_interval_seconds=float(
                    os.getenv("DELEGRID_QUEUE_LOCK_RETRY_INTERVAL_SECONDS", "0.1"),
                ),
            ),
            registry=RegistrySettings(
                slot_count=int(os.getenv("DELEGRID_SLOT_COUNT", "4")),
                unresponsive_after_seconds=int(
                    os.getenv("DELEGRID_UNRESPONSIVE_AFTER_SECONDS", "90"),
                ),
            ),
            pipeline=PipelineSettings(
                definition_path=Path(pipeline_path) if pipeline_path else None,
                output_dir=Path(os.getenv("DELEGRID_OUTPUT_DIR", "delegrid_outputs")),
                max_stage_retries=int(os.getenv("DELEGRID_MAX_STAGE_RETRIES", "3")),
                max_audit_retries=int(os.getenv("DELEGRID_MAX_AUDIT_RETRIES", "3")),
                audit_default_verdict=os.getenv("DELEGRID_AUDIT_DEFAULT_VERDICT", "pass")
                .strip()
                .lower(),
            ),
            generation=GenerationSettings(
                default_executor=os.getenv("DELEGRID_DEFAULT_EXECUTOR", "gpt-4o"),
                command_template=os.getenv(
                    "DELEGRID_GENERATION_COMMAND_TEMPLATE",
                    ECHO_AGENT_COMMAND_TEMPLATE,
                ),
                executor_commands=_collect_executor_commands(),
                timeout_seconds=int(os.getenv("DELEGRID_GENERATION_TIMEOUT_SECONDS", "600")),
                cache_ttl_seconds=float(
                    os.getenv("DELEGRID_EXECUTOR_CACHE_TTL_SECONDS", "60"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("DELEGRID_WORKER_ID", f"worker-{os.getpid()}"),
                layer=int(worker_layer) if worker_layer else None,
                poll_interval_seconds=float(
                    os.getenv("DELEGRID_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("DELEGRID_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("DELEGRID_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.backend not in SUPPORTED_QUEUE_BACKENDS:
            raise ValueError(
                "DELEGRID_QUEUE_BACKEND must be one of: "
                + ", ".join(SUPPORTED_QUEUE_BACKENDS)
                + f" (got {self.queue.backend!r}).",
            )
        if self.queue.max_retries < 1:
            raise ValueError("DELEGRID_QUEUE_MAX_RETRIES must be >= 1.")
        if self.queue.lock_timeout_seconds <= 0:
            raise ValueError("DELEGRID_QUEUE_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.queue.lock_retry_interval_seconds <= 0:
            raise ValueError("DELEGRID_QUEUE_LOCK_RETRY_INTERVAL_SECONDS must be > 0.")
        if self.registry.slot_count < 1:
            raise ValueError("DELEGRID_SLOT_COUNT must be >= 1.")
        if self.registry.unresponsive_after_seconds <= 0:
            raise ValueError("DELEGRID_UNRESPONSIVE_AFTER_SECONDS must be > 0.")
        if self.pipeline.max_stage_retries < 1:
            raise ValueError("DELEGRID_MAX_STAGE_RETRIES must be >= 1.")
        if self.pipeline.max_audit_retries < 0:
            raise ValueError("DELEGRID_MAX_AUDIT_RETRIES must be >= 0.")
        if self.pipeline.audit_default_verdict not in SUPPORTED_VERDICTS:
            raise ValueError("DELEGRID_AUDIT_DEFAULT_VERDICT must be 'pass' or 'fail'.")
        if self.generation.timeout_seconds <= 0:
            raise ValueError("DELEGRID_GENERATION_TIMEOUT_SECONDS must be > 0.")
        if self.generation.cache_ttl_seconds < 0:
            raise ValueError("DELEGRID_EXECUTOR_CACHE_TTL_SECONDS must be >= 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("DELEGRID_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("DELEGRID_WORKER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")

    def command_template_for(self, executor: str) -> str:
        return self.generation.executor_commands.get(
            executor.lower(),
            self.generation.command_template,
        )


def _collect_executor_commands() -> dict[str, str]:
    commands: dict[str, str] = {}
    for key, value in os.environ.items():
        if not key.startswith(EXECUTOR_COMMAND_ENV_PREFIX) or not value.strip():
            continue
        name = key[len(EXECUTOR_COMMAND_ENV_PREFIX) :].lower().replace("__", "-")
        if name:
            commands[name] = value.strip()
    return commands


def _env_bool(name: str, *, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
