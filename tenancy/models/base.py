"""Shared column mixins and time helpers for the ORM models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey, func
from sqlalchemy.orm import declared_attr

from tenancy.db_base import Base

__all__ = ["Base", "TimestampMixin", "TenantScopedMixin", "generate_uuid", "utcnow", "ensure_aware"]


def generate_uuid() -> str:
    """String UUID4 primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """
    Return value as a timezone-aware UTC datetime.

    SQLite drops tzinfo on round-trip; values read back from it are
    treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampMixin:
    """created_at / updated_at, both UTC."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Row creation time (UTC)"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Last modification time (UTC)"
    )


class TenantScopedMixin:
    """
    Owning-tenant foreign key.

    Rows are deleted with their tenant at the database level only; the
    application never deletes tenants.
    """

    @declared_attr
    def tenant_id(cls):
        return Column(
            String(36),
            ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
            comment="Owning tenant"
        )
