"""Tests for persistent execution logs."""

from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest

from stagecore.logger import ExecutionLogger


class Ticker:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


def test_complete_task_writes_dated_json(tmp_path) -> None:
    execution_logger = ExecutionLogger(base_dir=tmp_path, now=Ticker(datetime(2026, 3, 1, 9, 0, 0)))

    started = execution_logger.start_task("Fix lint errors", task_type="quality", workflow="Quality Check")
    execution_logger.record_stage("qa", "success", output={"warnings": 0}, agent="qa", duration_seconds=0.5)
    execution_logger.record_retry()
    log = execution_logger.complete_task("success")

    path = tmp_path / ".stagecore" / "logs" / f"2026-03-01_{started.task_id}.json"
    assert path.is_file()
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["status"] == "success"
    assert data["user_input"] == "Fix lint errors"
    assert data["stages"][0]["output"] == {"warnings": 0}
    assert data["retry_count"] == 1
    assert log.duration_seconds == 2.0
    assert execution_logger.get_current_log() is None


def test_task_ids_are_unique(tmp_path) -> None:
    execution_logger = ExecutionLogger(base_dir=tmp_path)

    first = execution_logger.start_task("a").task_id
    second = execution_logger.start_task("b").task_id

    assert first != second
    assert first.startswith("task-")


def test_record_stage_replaces_same_name(tmp_path) -> None:
    execution_logger = ExecutionLogger(base_dir=tmp_path)
    execution_logger.start_task("retry flaky tests")

    execution_logger.record_stage("tester", "error", error="flaky")
    execution_logger.record_stage("tester", "success")

    stages = execution_logger.get_current_log().stages
    assert [(s.name, s.status) for s in stages] == [("tester", "success")]


def test_rollback_sets_status(tmp_path) -> None:
    execution_logger = ExecutionLogger(base_dir=tmp_path)
    execution_logger.start_task("risky change")

    execution_logger.record_rollback()

    current = execution_logger.get_current_log()
    assert current.rollback_executed
    assert current.status == "rollback"


def test_operations_require_active_task(tmp_path) -> None:
    execution_logger = ExecutionLogger(base_dir=tmp_path)

    with pytest.raises(RuntimeError, match="No active task"):
        execution_logger.record_stage("qa", "success")
    with pytest.raises(RuntimeError):
        execution_logger.record_retry()
    with pytest.raises(RuntimeError):
        execution_logger.complete_task("success")


def test_get_logs_between(tmp_path) -> None:
    ticker = Ticker(datetime(2026, 1, 1, 12, 0, 0))
    execution_logger = ExecutionLogger(base_dir=tmp_path, now=ticker)
    for day in (1, 5, 9):
        ticker.current = datetime(2026, 1, day, 12, 0, 0)
        execution_logger.start_task(f"task on day {day}")
        execution_logger.complete_task("success")
    (execution_logger.log_dir / "garbage.json").write_text("{not json", encoding="utf-8")

    logs = execution_logger.get_logs_between(datetime(2026, 1, 2), datetime(2026, 1, 31))

    assert [log.user_input for log in logs] == ["task on day 5", "task on day 9"]


def test_get_logs_between_without_directory(tmp_path) -> None:
    assert ExecutionLogger(base_dir=tmp_path).get_logs_between(datetime.min, datetime.max) == []


def test_render_summary(tmp_path) -> None:
    execution_logger = ExecutionLogger(base_dir=tmp_path)
    execution_logger.start_task("Implement export", workflow="Complex Implementation")
    execution_logger.record_stage("designer", "success", duration_seconds=1.25)
    execution_logger.record_stage("implementer", "error", error="compile error")

    summary = execution_logger.render_summary()

    assert "=== Execution Summary ===" in summary
    assert "Complex Implementation" in summary
    assert "designer: success (1.25s)" in summary
    assert "implementer: error (0.00s) - compile error" in summary
