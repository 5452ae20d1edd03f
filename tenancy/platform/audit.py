"""
Audit log sink for tenant lifecycle, marketplace and trial events.

Rows in tenant_audit_logs are only ever inserted. Metadata passes through
PIIRedactor before it is stored. Callers commit their own state change first
and then call write_audit_log_sync(); a failed audit write goes to the
"audit.fallback" logger and leaves the caller's change in place.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, FrozenSet

from fastapi import Request
from sqlalchemy import Column, String, DateTime, Text, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from tenancy.db_base import Base

# JSONB on Postgres, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")


class AuditAction(str, Enum):
    """Audited actions. Values are the persisted action strings."""

    # Tenant lifecycle
    TENANT_CREATED = "tenant.created"
    TENANT_ACTIVATED = "tenant.activated"
    TENANT_SUSPENDED = "tenant.suspended"
    TENANT_CANCELLED = "tenant.cancelled"

    # Subscriptions
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_EXPIRED = "subscription.expired"

    # Entitlements
    FEATURE_OVERRIDE_SET = "feature.override_set"

    # Marketplace notifications
    MARKETPLACE_PLAN_CHANGED = "marketplace.plan_changed"
    MARKETPLACE_QUANTITY_CHANGED = "marketplace.quantity_changed"
    MARKETPLACE_SUBSCRIPTION_RENEWED = "marketplace.subscription_renewed"
    MARKETPLACE_WEBHOOK_FAILED = "marketplace.webhook_failed"

    # Trials
    TRIAL_REMINDER_SENT = "trial.reminder_sent"
    TRIAL_EXPIRED = "trial.expired"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class PIIRedactor:
    """
    Masks personal data and credentials in audit metadata.

    Keys are matched case-insensitively at any depth. Email addresses keep
    their domain; every other sensitive value becomes MASK.
    """

    REDACTED_FIELDS: FrozenSet[str] = frozenset({
        "email",
        "primary_email",
        "email_id",
        "phone",
        "phone_number",
        "token",
        "purchase_token",
        "access_token",
        "client_secret",
        "password",
        "secret",
        "national_id",
        "emirates_id",
    })

    EMAIL_FIELDS: FrozenSet[str] = frozenset({"email", "primary_email", "email_id"})

    MASK = "[REDACTED]"

    @classmethod
    def redact(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Recursively redact PII from a dictionary."""
        if not isinstance(data, dict):
            return data
        return cls._scrub(data)

    @classmethod
    def _scrub(cls, d: dict[str, Any]) -> dict[str, Any]:
        result = {}
        for key, value in d.items():
            lower_key = key.lower()
            if lower_key in cls.REDACTED_FIELDS:
                result[key] = cls._mask(lower_key, value)
            elif isinstance(value, dict):
                result[key] = cls._scrub(value)
            elif isinstance(value, list):
                result[key] = [
                    cls._scrub(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                result[key] = value
        return result

    @classmethod
    def _mask(cls, key: str, value: Any) -> str:
        if key in cls.EMAIL_FIELDS and isinstance(value, str) and "@" in value:
            return f"***@{value.split('@', 1)[1]}"
        return cls.MASK


class AuditLog(Base):
    """One immutable audit row."""
    __tablename__ = "tenant_audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)  # NULL for system events
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True)
    previous_state = Column(String(50), nullable=True)
    new_state = Column(String(50), nullable=True)
    event_metadata = Column(JSONType, nullable=False, default=dict)
    severity = Column(String(20), nullable=False, default=AuditSeverity.INFO.value)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    request_id = Column(String(64), nullable=True)
    source = Column(String(50), nullable=False, default="system")  # api, webhook, worker, system
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_tenant_audit_logs_tenant_timestamp", "tenant_id", "timestamp"),
        Index("ix_tenant_audit_logs_tenant_action", "tenant_id", "action"),
    )


@dataclass
class AuditEvent:
    """An audit event before it is persisted."""
    tenant_id: str
    action: AuditAction
    user_id: Optional[str] = None
    resource_type: Optional[str] = "tenant"
    resource_id: Optional[str] = None
    previous_state: Optional[str] = None
    new_state: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    severity: AuditSeverity = AuditSeverity.INFO
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    source: str = "system"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Column values for AuditLog, with metadata scrubbed."""
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": _enum_value(self.action),
            "resource_type": self.resource_type,
            "resource_id": self.resource_id if self.resource_id is not None else self.tenant_id,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "event_metadata": PIIRedactor.redact(self.metadata),
            "severity": _enum_value(self.severity),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "request_id": self.request_id,
            "source": self.source,
            "timestamp": self.timestamp,
        }


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def extract_client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Return (ip, user agent), preferring the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None

    return ip_address, request.headers.get("User-Agent")


def write_audit_log_sync(db: Session, event: AuditEvent) -> Optional[AuditLog]:
    """
    Insert one audit row and commit it.

    Returns the AuditLog row, or None when the insert failed and the event
    was sent to the fallback logger instead. Never raises.
    """
    audit_id = str(uuid.uuid4())
    try:
        audit_log = AuditLog(id=audit_id, **event.to_dict())
        db.add(audit_log)
        db.commit()

        logger.info(
            "Audit event recorded",
            extra={
                "audit_id": audit_id,
                "tenant_id": event.tenant_id,
                "action": _enum_value(event.action),
                "severity": _enum_value(event.severity),
                "source": event.source,
            }
        )
        return audit_log

    except Exception as e:
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.error(
                "Rollback after audit failure also failed",
                extra={"audit_id": audit_id, "error": str(rollback_error)},
            )

        _log_to_fallback(event, audit_id, str(e))
        return None


def _log_to_fallback(event: AuditEvent, audit_id: str, error_reason: str) -> None:
    entry = {
        "event_id": audit_id,
        "tenant_id": event.tenant_id,
        "user_id": event.user_id,
        "action": _enum_value(event.action),
        "severity": _enum_value(event.severity),
        "previous_state": event.previous_state,
        "new_state": event.new_state,
        "timestamp": event.timestamp.isoformat(),
        "source": event.source,
        "metadata": PIIRedactor.redact(event.metadata),
        "reason": error_reason,
    }
    fallback_logger.error(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(entry, default=str)},
    )


def query_audit_logs(
    db: Session,
    tenant_id: str,
    actions: Optional[list[AuditAction]] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 1000,
) -> list[AuditLog]:
    """Return a tenant's audit events, newest first."""
    query = db.query(AuditLog).filter(AuditLog.tenant_id == tenant_id)

    if actions:
        query = query.filter(AuditLog.action.in_([_enum_value(a) for a in actions]))
    if start_date:
        query = query.filter(AuditLog.timestamp >= start_date)
    if end_date:
        query = query.filter(AuditLog.timestamp <= end_date)

    return query.order_by(AuditLog.timestamp.desc()).limit(limit).all()
