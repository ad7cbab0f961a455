from __future__ import annotations

from pathlib import Path

import allure
import pytest

from delegrid.config import (
    ECHO_AGENT_COMMAND_TEMPLATE,
    GenerationSettings,
    PipelineSettings,
    QueueSettings,
    RegistrySettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_without_environment(clean_env) -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == Path(".delegrid.db")
    assert settings.queue.backend == "sqlite"
    assert settings.queue.retry_on_failure is True
    assert settings.registry.slot_count == 4
    assert settings.pipeline.definition_path is None
    assert settings.generation.command_template == ECHO_AGENT_COMMAND_TEMPLATE
    assert settings.generation.executor_commands == {}
    assert settings.worker.layer is None
    assert settings.worker.worker_id.startswith("worker-")


def test_environment_overrides(clean_env, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DELEGRID_QUEUE_BACKEND", " Document ")
    monkeypatch.setenv("DELEGRID_QUEUE_MAX_RETRIES", "5")
    monkeypatch.setenv("DELEGRID_QUEUE_RETRY_ON_FAILURE", "off")
    monkeypatch.setenv("DELEGRID_SLOT_COUNT", "8")
    monkeypatch.setenv("DELEGRID_PIPELINE_PATH", str(tmp_path / "flow.json"))
    monkeypatch.setenv("DELEGRID_AUDIT_DEFAULT_VERDICT", "FAIL")
    monkeypatch.setenv("DELEGRID_WORKER_LAYER", "2")
    monkeypatch.setenv("DELEGRID_WORKER_ID", "night-shift")
    monkeypatch.setenv("DELEGRID_LOG_LEVEL", "debug")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")
    settings.validate()

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.queue.backend == "document"
    assert settings.queue.max_retries == 5
    assert settings.queue.retry_on_failure is False
    assert settings.registry.slot_count == 8
    assert settings.pipeline.definition_path == tmp_path / "flow.json"
    assert settings.pipeline.audit_default_verdict == "fail"
    assert settings.worker.layer == 2
    assert settings.worker.worker_id == "night-shift"
    assert settings.log_level == "DEBUG"


def test_executor_commands_are_collected_from_prefixed_variables(
    clean_env,
    monkeypatch,
) -> None:
    monkeypatch.setenv("DELEGRID_EXECUTOR_COMMAND_REVIEWER", "review-agent {prompt_file}")
    monkeypatch.setenv("DELEGRID_EXECUTOR_COMMAND_GPT__4O", "gpt-agent {prompt}")
    monkeypatch.setenv("DELEGRID_EXECUTOR_COMMAND_EMPTY", "  ")

    settings = Settings.from_env()

    assert settings.generation.executor_commands == {
        "reviewer": "review-agent {prompt_file}",
        "gpt-4o": "gpt-agent {prompt}",
    }
    assert settings.command_template_for("Reviewer") == "review-agent {prompt_file}"
    assert settings.command_template_for("unknown") == ECHO_AGENT_COMMAND_TEMPLATE


def test_invalid_boolean_is_rejected(clean_env, monkeypatch) -> None:
    monkeypatch.setenv("DELEGRID_QUEUE_RETRY_ON_FAILURE", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(sqlite_busy_timeout_ms=0), "BUSY_TIMEOUT"),
        (Settings(queue=QueueSettings(backend="redis")), "QUEUE_BACKEND"),
        (Settings(queue=QueueSettings(max_retries=0)), "QUEUE_MAX_RETRIES"),
        (Settings(queue=QueueSettings(lock_timeout_seconds=0)), "LOCK_TIMEOUT"),
        (Settings(registry=RegistrySettings(slot_count=0)), "SLOT_COUNT"),
        (
            Settings(registry=RegistrySettings(unresponsive_after_seconds=0)),
            "UNRESPONSIVE_AFTER",
        ),
        (Settings(pipeline=PipelineSettings(max_stage_retries=0)), "MAX_STAGE_RETRIES"),
        (Settings(pipeline=PipelineSettings(max_audit_retries=-1)), "MAX_AUDIT_RETRIES"),
        (Settings(pipeline=PipelineSettings(audit_default_verdict="maybe")), "DEFAULT_VERDICT"),
        (Settings(generation=GenerationSettings(timeout_seconds=0)), "TIMEOUT_SECONDS"),
        (Settings(worker=WorkerSettings(poll_interval_seconds=-1)), "POLL_INTERVAL"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_zero_audit_retries_is_allowed() -> None:
    Settings(pipeline=PipelineSettings(max_audit_retries=0)).validate()
