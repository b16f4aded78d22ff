"""
Configuration Loader (``portfolio_kernel.config.loader``).

Responsibility
--------------
Loads the kernel's YAML file and parses it into the frozen
``portfolio_kernel.config.schema`` dataclasses.  The single public entry
point for runtime config is ``portfolio_kernel.config.get_active_config()``.

Failure modes
-------------
* Missing or unreadable file, malformed YAML, or a value of the wrong
  type -> ``ConfigLoadError`` naming the file and the problem.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from portfolio_kernel.config.schema import (
    ApprovalSettings,
    DatabaseSettings,
    KernelConfig,
    LoggingSettings,
)
from portfolio_kernel.domain.approval import EnforcementMode
from portfolio_kernel.exceptions import ConfigLoadError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        ConfigLoadError: if the file is missing, unreadable, not valid
            YAML, or its top level is not a mapping.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigLoadError(str(path), exc.strerror or str(exc)) from exc
    except yaml.YAMLError as exc:
        raise ConfigLoadError(str(path), f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigLoadError(str(path), "top level must be a mapping")
    return data


def _section(data: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigLoadError(str(path), f"'{name}' must be a mapping")
    return section


def _typed(section: dict[str, Any], key: str, kind: type | tuple, default: Any, path: Path) -> Any:
    if key not in section or section[key] is None:
        return default
    value = section[key]
    if isinstance(value, bool) and kind is int:
        raise ConfigLoadError(str(path), f"'{key}' must be an integer")
    if not isinstance(value, kind):
        raise ConfigLoadError(str(path), f"'{key}' has the wrong type: {value!r}")
    return value


def parse_database(section: dict[str, Any], path: Path) -> DatabaseSettings:
    d = DatabaseSettings()
    return DatabaseSettings(
        url=_typed(section, "url", str, d.url, path),
        echo=_typed(section, "echo", bool, d.echo, path),
        pool_size=_typed(section, "pool_size", int, d.pool_size, path),
        max_overflow=_typed(section, "max_overflow", int, d.max_overflow, path),
        statement_timeout_ms=_typed(
            section, "statement_timeout_ms", int, d.statement_timeout_ms, path
        ),
    )


def parse_approval(section: dict[str, Any], path: Path) -> ApprovalSettings:
    d = ApprovalSettings()
    quorum = _typed(
        section, "role_based_default_quorum", int, d.role_based_default_quorum, path
    )
    if quorum < 1:
        raise ConfigLoadError(str(path), "'role_based_default_quorum' must be at least 1")
    mode = _typed(section, "enforcement_mode", str, d.enforcement_mode, path).upper()
    if mode not in (EnforcementMode.BLOCKING.value, EnforcementMode.ADVISORY.value):
        raise ConfigLoadError(
            str(path), f"'enforcement_mode' must be BLOCKING or ADVISORY, got {mode!r}"
        )
    return ApprovalSettings(
        admin_role=_typed(section, "admin_role", str, d.admin_role, path),
        role_based_default_quorum=quorum,
        default_request_ttl_hours=_typed(
            section, "default_request_ttl_hours", int, d.default_request_ttl_hours, path
        ),
        unassigned_node_code=_typed(
            section, "unassigned_node_code", str, d.unassigned_node_code, path
        ),
        supersede_pending_requests=_typed(
            section, "supersede_pending_requests", bool, d.supersede_pending_requests, path
        ),
        enforcement_enabled=_typed(
            section, "enforcement_enabled", bool, d.enforcement_enabled, path
        ),
        enforcement_mode=mode,
    )


def parse_logging(section: dict[str, Any], path: Path) -> LoggingSettings:
    return LoggingSettings(level=_typed(section, "level", str, "INFO", path).upper())


def load_config(path: Path) -> KernelConfig:
    """Parse the YAML file at *path* into a ``KernelConfig``."""
    data = load_yaml_file(path)
    return KernelConfig(
        database=parse_database(_section(data, "database", path), path),
        approval=parse_approval(_section(data, "approval", path), path),
        logging=parse_logging(_section(data, "logging", path), path),
        source=str(path),
    )
