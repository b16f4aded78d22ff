"""
portfolio_kernel.config -- single public entrypoint for kernel configuration.

Responsibility:
    ``get_active_config()`` is the only way services and the engine factory
    obtain configuration.  No other component reads configuration files
    or environment variables.

Resolution order:
    1. The explicit ``path`` argument.
    2. The ``PORTFOLIO_KERNEL_CONFIG`` environment variable.
    3. The bundled ``defaults.yaml``.

Failure modes:
    - ``ConfigLoadError`` -- file missing, unreadable or malformed.
"""

from __future__ import annotations

import os
from pathlib import Path

from portfolio_kernel.config.loader import load_config
from portfolio_kernel.config.schema import (
    ApprovalSettings,
    DatabaseSettings,
    KernelConfig,
    LoggingSettings,
)
from portfolio_kernel.logging_config import get_logger

logger = get_logger("config")

CONFIG_ENV_VAR = "PORTFOLIO_KERNEL_CONFIG"
DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: str | Path | None = None) -> KernelConfig:
    """The ONLY public configuration entrypoint."""
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or DEFAULTS_PATH
    config = load_config(Path(path))
    logger.info(
        "kernel_config_loaded",
        extra={
            "source": config.source,
            "admin_role": config.approval.admin_role,
            "dialect": config.database.url.split(":", 1)[0],
        },
    )
    return config


__all__ = [
    "get_active_config",
    "KernelConfig",
    "DatabaseSettings",
    "ApprovalSettings",
    "LoggingSettings",
    "CONFIG_ENV_VAR",
    "DEFAULTS_PATH",
]
