"""
ledger_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way components obtain
    configuration.  It reads ``sets/<set_name>.yaml``, parses it into a
    frozen ``LedgerConfig`` and emits a ``ledger_config_loaded`` record.

Architecture position:
    Configuration.  Sits beside ``ledger_kernel``; the kernel never imports
    from ``ledger_config``.  ``ledger_batch.orchestrator`` and the operator
    scripts are the consumers.

Failure modes:
    - ``FileNotFoundError`` -- no configuration set with that name.
    - ``ValueError`` -- malformed YAML or invalid values.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ledger_config.loader import load_yaml_file, parse_config
from ledger_config.schema import (
    AccrualConfig,
    DatabaseConfig,
    LedgerConfig,
    SchedulerConfig,
    SystemActorConfig,
    TaskScheduleConfig,
)

_logger = logging.getLogger("ledger_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_config(
    set_name: str = "default",
    config_dir: Path | None = None,
) -> LedgerConfig:
    """Load and validate the named configuration set.

    Args:
        set_name: File stem under the sets directory.
        config_dir: Override path to the sets directory.
            Defaults to ledger_config/sets/.

    Raises:
        FileNotFoundError: If the set does not exist.
        ValueError: If the set fails validation.
    """
    sets_dir = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{set_name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Configuration set not found: {path}")

    config = parse_config(set_name, load_yaml_file(path))

    _logger.info(
        "ledger_config_loaded",
        extra={
            "config_set": set_name,
            "task_override_count": len(config.tasks),
            "poll_interval_seconds": config.scheduler.poll_interval_seconds,
        },
    )
    return config


__all__ = [
    "AccrualConfig",
    "DatabaseConfig",
    "LedgerConfig",
    "SchedulerConfig",
    "SystemActorConfig",
    "TaskScheduleConfig",
    "get_active_config",
]
