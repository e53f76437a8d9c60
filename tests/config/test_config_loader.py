"""
Tests for ledger_config -- configuration set loading and validation.
"""

import pytest

from ledger_config import get_active_config
from ledger_config.loader import parse_config, parse_task
from ledger_config.schema import LedgerConfig, SchedulerConfig

from ledger_batch.tasks import RUN_DUE_DAILY, RUN_PERIOD_END, RUN_REVERSALS_DAILY


def write_set(tmp_path, name, body):
    (tmp_path / f"{name}.yaml").write_text(body)
    return tmp_path


class TestDefaultSet:
    def test_loads(self, captured_logs):
        config = get_active_config()

        assert config.name == "default"
        assert config.scheduler == SchedulerConfig()
        assert config.accruals.run_limit_default == 50
        assert config.accruals.run_limit_max == 200
        assert config.system_actor.email == "system@ledger.local"
        assert any(r["message"] == "ledger_config_loaded" for r in captured_logs())

    def test_task_schedules(self):
        config = get_active_config()
        assert {t.code for t in config.tasks} == {RUN_DUE_DAILY, RUN_PERIOD_END, RUN_REVERSALS_DAILY}
        due = config.task(RUN_DUE_DAILY)
        assert (due.daily_hour_utc, due.daily_minute_utc) == (0, 15)
        assert config.task(RUN_PERIOD_END).daily_hour_utc == 23
        assert config.task("unknown") is None

    def test_missing_set(self):
        with pytest.raises(FileNotFoundError):
            get_active_config("does-not-exist")


class TestCustomSet:
    def test_partial_file_uses_defaults(self, tmp_path):
        config_dir = write_set(tmp_path, "small", "scheduler:\n  batch_size: 2\n")

        config = get_active_config("small", config_dir=config_dir)

        assert config.name == "small"
        assert config.scheduler.batch_size == 2
        assert config.scheduler.max_attempts == 5
        assert config.tasks == ()
        assert config.database.url == "sqlite:///ledger.db"

    def test_empty_file(self, tmp_path):
        config = get_active_config("empty", config_dir=write_set(tmp_path, "empty", ""))
        assert config == LedgerConfig(name="empty")

    def test_interval_task(self, tmp_path):
        config_dir = write_set(
            tmp_path,
            "fast",
            "tasks:\n"
            "  accruals.run_due_daily:\n"
            "    schedule_type: interval_seconds\n"
            "    interval_seconds: 60\n"
            "    enabled: false\n",
        )
        task = get_active_config("fast", config_dir=config_dir).task(RUN_DUE_DAILY)
        assert task.schedule_type == "interval_seconds"
        assert task.interval_seconds == 60
        assert not task.enabled

    def test_malformed_yaml(self, tmp_path):
        config_dir = write_set(tmp_path, "broken", "scheduler: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            get_active_config("broken", config_dir=config_dir)

    def test_top_level_must_be_mapping(self, tmp_path):
        config_dir = write_set(tmp_path, "list", "- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            get_active_config("list", config_dir=config_dir)


class TestValidation:
    @pytest.mark.parametrize(
        "data",
        [
            {"scheduler": {"batch_size": 0}},
            {"scheduler": {"max_attempts": -1}},
            {"scheduler": {"poll_interval_seconds": 0}},
            {"scheduler": {"backoff_minutes": []}},
            {"scheduler": {"backoff_minutes": [1, "five"]}},
            {"database": {"url": ""}},
            {"accruals": {"run_limit_default": 300, "run_limit_max": 200}},
            {"scheduler": "fast"},
        ],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ValueError):
            parse_config("bad", data)

    @pytest.mark.parametrize(
        "body",
        [
            {"schedule_type": "cron"},
            {"schedule_type": "interval_seconds"},
            {"schedule_type": "interval_seconds", "interval_seconds": 0},
            {"schedule_type": "daily_at_utc", "daily_hour_utc": 24, "daily_minute_utc": 0},
            {"schedule_type": "daily_at_utc", "daily_hour_utc": 1, "daily_minute_utc": 60},
            {"schedule_type": "daily_at_utc", "daily_hour_utc": 1},
        ],
    )
    def test_invalid_task(self, body):
        with pytest.raises(ValueError):
            parse_task("accruals.run_due_daily", body)

    def test_task_body_must_be_mapping(self):
        with pytest.raises(ValueError):
            parse_task("accruals.run_due_daily", "daily")
