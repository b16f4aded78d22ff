"""
KernelConfig schema.

Typed, frozen view of the kernel's YAML configuration.  The loader parses
raw YAML into these types; nothing else in the kernel reads YAML.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings for ``db.engine.init_engine_from_config``."""

    url: str = "sqlite:///:memory:"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 5
    statement_timeout_ms: int | None = 15000

    @property
    def statement_timeout_seconds(self) -> float | None:
        if self.statement_timeout_ms is None:
            return None
        return self.statement_timeout_ms / 1000


@dataclass(frozen=True)
class ApprovalSettings:
    """Tunables for chain resolution and the request engine."""

    admin_role: str = "ADMIN"
    role_based_default_quorum: int = 1
    default_request_ttl_hours: int | None = None
    unassigned_node_code: str = "UNASSIGNED"
    supersede_pending_requests: bool = True
    # check_approval gate: off means every operation is allowed
    enforcement_enabled: bool = True
    enforcement_mode: str = "BLOCKING"


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KernelConfig:
    """Complete kernel configuration."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source: str | None = None
