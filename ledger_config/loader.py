"""
Configuration Loader (``ledger_config.loader``).

Responsibility
--------------
Loads a configuration set YAML file and parses it into the frozen
``ledger_config.schema`` dataclasses.  Runtime callers go through
``ledger_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``ValueError`` (wrapping ``yaml.YAMLError``).
* Wrong shape or out-of-range value  -> ``ValueError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import (
    AccrualConfig,
    DatabaseConfig,
    LedgerConfig,
    SchedulerConfig,
    SystemActorConfig,
    TaskScheduleConfig,
)

_SCHEDULE_TYPES = ("daily_at_utc", "interval_seconds")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the file is not valid YAML or not a mapping.
    """
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' must be a mapping")
    return value


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def _optional_int(value: Any, name: str, low: int, high: int) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ValueError(f"{name} must be an integer in [{low}, {high}], got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    defaults = DatabaseConfig()
    url = data.get("url", defaults.url)
    if not isinstance(url, str) or not url:
        raise ValueError("database.url must be a non-empty string")
    return DatabaseConfig(
        url=url,
        echo=bool(data.get("echo", defaults.echo)),
        pool_size=_positive_int(data.get("pool_size", defaults.pool_size), "database.pool_size"),
        max_overflow=int(data.get("max_overflow", defaults.max_overflow)),
    )


def parse_scheduler(data: dict[str, Any]) -> SchedulerConfig:
    defaults = SchedulerConfig()
    poll = data.get("poll_interval_seconds", defaults.poll_interval_seconds)
    if isinstance(poll, bool) or not isinstance(poll, (int, float)) or poll <= 0:
        raise ValueError(f"scheduler.poll_interval_seconds must be > 0, got {poll!r}")

    backoff = data.get("backoff_minutes", list(defaults.backoff_minutes))
    if not isinstance(backoff, list) or not backoff:
        raise ValueError("scheduler.backoff_minutes must be a non-empty list")

    return SchedulerConfig(
        poll_interval_seconds=float(poll),
        batch_size=_positive_int(data.get("batch_size", defaults.batch_size), "scheduler.batch_size"),
        max_attempts=_positive_int(
            data.get("max_attempts", defaults.max_attempts), "scheduler.max_attempts",
        ),
        backoff_minutes=tuple(
            _positive_int(m, "scheduler.backoff_minutes[]") for m in backoff
        ),
    )


def parse_task(code: str, data: dict[str, Any]) -> TaskScheduleConfig:
    if not isinstance(data, dict):
        raise ValueError(f"tasks.{code} must be a mapping")

    schedule_type = data.get("schedule_type", "daily_at_utc")
    if schedule_type not in _SCHEDULE_TYPES:
        raise ValueError(f"tasks.{code}.schedule_type must be one of {_SCHEDULE_TYPES}")

    task = TaskScheduleConfig(
        code=code,
        schedule_type=schedule_type,
        interval_seconds=(
            _positive_int(data["interval_seconds"], f"tasks.{code}.interval_seconds")
            if data.get("interval_seconds") is not None
            else None
        ),
        daily_hour_utc=_optional_int(data.get("daily_hour_utc"), f"tasks.{code}.daily_hour_utc", 0, 23),
        daily_minute_utc=_optional_int(
            data.get("daily_minute_utc"), f"tasks.{code}.daily_minute_utc", 0, 59,
        ),
        enabled=bool(data.get("enabled", True)),
    )

    if schedule_type == "interval_seconds" and task.interval_seconds is None:
        raise ValueError(f"tasks.{code}: interval_seconds schedule requires interval_seconds")
    if schedule_type == "daily_at_utc" and (
        task.daily_hour_utc is None or task.daily_minute_utc is None
    ):
        raise ValueError(f"tasks.{code}: daily_at_utc schedule requires hour and minute")
    return task


def parse_config(name: str, data: dict[str, Any]) -> LedgerConfig:
    """Parse a whole configuration set mapping."""
    accruals = _section(data, "accruals")
    actor = _section(data, "system_actor")
    tasks = _section(data, "tasks")

    accrual_defaults = AccrualConfig()
    run_limit_default = _positive_int(
        accruals.get("run_limit_default", accrual_defaults.run_limit_default),
        "accruals.run_limit_default",
    )
    run_limit_max = _positive_int(
        accruals.get("run_limit_max", accrual_defaults.run_limit_max),
        "accruals.run_limit_max",
    )
    if run_limit_default > run_limit_max:
        raise ValueError("accruals.run_limit_default must not exceed run_limit_max")

    actor_defaults = SystemActorConfig()
    return LedgerConfig(
        name=name,
        database=parse_database(_section(data, "database")),
        scheduler=parse_scheduler(_section(data, "scheduler")),
        tasks=tuple(parse_task(str(code), body) for code, body in sorted(tasks.items())),
        accruals=AccrualConfig(run_limit_default=run_limit_default, run_limit_max=run_limit_max),
        system_actor=SystemActorConfig(
            email=str(actor.get("email", actor_defaults.email)),
            display_name=str(actor.get("display_name", actor_defaults.display_name)),
        ),
    )
