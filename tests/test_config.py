from __future__ import annotations

from pathlib import Path

import allure
import pytest

from brief_queue.config import QueueSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Configuration"),
]


def test_from_env_defaults_match_worker_contract() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".brief_queue.db")
    assert settings.log_level == "INFO"
    assert settings.queue.default_max_attempts == 3
    assert settings.worker.concurrency == 5
    assert settings.worker.poll_interval_seconds == 3.0
    assert settings.worker.job_timeout_seconds == 300.0
    assert settings.worker.shutdown_timeout_seconds == 30.0
    assert settings.worker.stale_after_seconds == 0
    assert settings.worker.worker_id.startswith("worker-")
    settings.validate_for_worker()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BRIEF_QUEUE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("BRIEF_QUEUE_LOG_LEVEL", "debug")
    monkeypatch.setenv("BRIEF_QUEUE_DEFAULT_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("BRIEF_QUEUE_WORKER_ID", "render-node-1")
    monkeypatch.setenv("BRIEF_QUEUE_WORKER_CONCURRENCY", "2")
    monkeypatch.setenv("BRIEF_QUEUE_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("BRIEF_QUEUE_JOB_TIMEOUT_SECONDS", "60")
    monkeypatch.setenv("BRIEF_QUEUE_STALE_AFTER_SECONDS", "120")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.log_level == "DEBUG"
    assert settings.queue.default_max_attempts == 5
    assert settings.worker.worker_id == "render-node-1"
    assert settings.worker.concurrency == 2
    assert settings.worker.poll_interval_seconds == 0.5
    assert settings.worker.job_timeout_seconds == 60.0
    assert settings.worker.stale_after_seconds == 120


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BRIEF_QUEUE_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_non_numeric_env_value_raises(monkeypatch) -> None:
    monkeypatch.setenv("BRIEF_QUEUE_WORKER_CONCURRENCY", "many")

    with pytest.raises(ValueError):
        Settings.from_env()


@pytest.mark.parametrize(
    ("worker", "message"),
    [
        (WorkerSettings(concurrency=0), "WORKER_CONCURRENCY"),
        (WorkerSettings(poll_interval_seconds=-1), "POLL_INTERVAL_SECONDS"),
        (WorkerSettings(job_timeout_seconds=0), "JOB_TIMEOUT_SECONDS"),
        (WorkerSettings(shutdown_timeout_seconds=-1), "SHUTDOWN_TIMEOUT_SECONDS"),
        (WorkerSettings(stale_after_seconds=2, poll_interval_seconds=3), "STALE_AFTER_SECONDS"),
        (WorkerSettings(worker_id=""), "WORKER_ID"),
    ],
)
def test_validate_for_worker_rejects_bad_values(worker: WorkerSettings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(worker=worker).validate_for_worker()


def test_validate_rejects_bad_queue_settings() -> None:
    with pytest.raises(ValueError, match="DEFAULT_MAX_ATTEMPTS"):
        Settings(queue=QueueSettings(default_max_attempts=0)).validate()
    with pytest.raises(ValueError, match="LOG_LEVEL"):
        Settings(log_level="LOUD").validate()
