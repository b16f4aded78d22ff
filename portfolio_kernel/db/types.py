"""
Module: portfolio_kernel.db.types
Responsibility: Column types shared by every model.  Centralizes the UTC
    timestamp convention and the string widths used for codes, names and
    hashes so that all tables agree on them.
Architecture position: Kernel > DB.  May be imported by models/ and
    services/.  MUST NOT import from either.

Invariants enforced:
    - Every timestamp leaving the database is timezone-aware UTC, whatever
      the backend stores.  SQLite has no timezone support, so values are
      written there as naive UTC and re-tagged on load.
"""

from datetime import datetime, timezone
from typing import Annotated

from sqlalchemy import DateTime, String
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime, normalized to UTC on the way in and out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Node codes, enum values, role names
ShortCode = Annotated[str, String(100)]

# Display names
Name = Annotated[str, String(255)]

# Free text (reasons, comments, descriptions)
LongText = Annotated[str, String(4000)]

# Materialized path: "/" + id + "/" per ancestor
TreePath = Annotated[str, String(4000)]


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
