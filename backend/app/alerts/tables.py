"""
ORM tables for the plate alert engine.

═══════════════════════════════════════════════════════════════════════════
SCHEMA
═══════════════════════════════════════════════════════════════════════════

    users ─┬─< plate_registrations      (fingerprint NOT unique)
           ├─< device_tokens            (token unique, ≤ 5 per user)
           ├── user_stats               (derived counters)
           └─< alerts ─┬─< alert_recipients    (one per fanout member)
                       ├─< recipient_transitions (transition log)
                       └─< delivery_logs         (dispatch audit)

Every foreign key cascades on delete: removing a user removes their
registrations, tokens and stats; removing an alert removes its recipients,
transition log and audit rows.

Indexes cover the fanout lookup (fingerprint), the expiry sweep
(status, expires_at) and every foreign key.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.database import Base, UTCDateTime, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    reputation_score: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    last_active_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    stats: Mapped[Optional["UserStats"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True,
    )


class UserStats(Base):
    __tablename__ = "user_stats"

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True,
    )
    plates_registered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    alerts_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    alerts_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    alerts_acknowledged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    alerts_resolved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    response_samples: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_response_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    user: Mapped[User] = relationship(back_populates="stats")

    def to_dict(self) -> dict:
        return {
            "plates_registered": self.plates_registered,
            "alerts_sent": self.alerts_sent,
            "alerts_received": self.alerts_received,
            "alerts_acknowledged": self.alerts_acknowledged,
            "alerts_resolved": self.alerts_resolved,
            "response_samples": self.response_samples,
            "average_response_seconds": round(self.average_response_seconds, 1),
        }


class PlateRegistration(Base):
    __tablename__ = "plate_registrations"
    __table_args__ = (
        UniqueConstraint("user_id", "fingerprint", name="uq_plate_registration_user_fingerprint"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    registered_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        CheckConstraint(
            "urgency IN ('low', 'normal', 'high', 'urgent')",
            name="ck_alerts_urgency",
        ),
        CheckConstraint(
            "status IN ('sent', 'delivered', 'acknowledged', 'resolved', 'expired', 'cancelled')",
            name="ck_alerts_status",
        ),
        CheckConstraint("expires_at > sent_at", name="ck_alerts_expiry_after_send"),
        Index("ix_alerts_status_expires_at", "status", "expires_at"),
    )

    alert_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    sender_id: Mapped[str] = mapped_column(
        ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    urgency: Mapped[str] = mapped_column(String(16), nullable=False)
    custom_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="sent", nullable=False)
    escalation_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    recipients: Mapped[List["AlertRecipient"]] = relationship(
        back_populates="alert",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AlertRecipient.user_id",
    )

    def to_dict(self, *, include_recipients: bool = True) -> dict:
        data = {
            "alert_id": self.alert_id,
            "sender_id": self.sender_id,
            "fingerprint": self.fingerprint,
            "urgency": self.urgency,
            "custom_message": self.custom_message,
            "status": self.status,
            "escalation_step": self.escalation_step,
            "sent_at": self.sent_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "expires_at": self.expires_at.isoformat(),
        }
        if include_recipients:
            data["recipients"] = [r.to_dict() for r in self.recipients]
        return data


class AlertRecipient(Base):
    __tablename__ = "alert_recipients"
    __table_args__ = (
        UniqueConstraint("alert_id", "user_id", name="uq_alert_recipient"),
        CheckConstraint(
            "status IN ('sent', 'delivered', 'acknowledged', 'resolved', 'ignored')",
            name="ck_alert_recipients_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    alert_id: Mapped[str] = mapped_column(
        ForeignKey("alerts.alert_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    status: Mapped[str] = mapped_column(String(16), default="sent", nullable=False, index=True)
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    alert: Mapped[Alert] = relationship(back_populates="recipients")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "response": self.response,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "acknowledged_at": (
                self.acknowledged_at.isoformat() if self.acknowledged_at else None
            ),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


class RecipientTransition(Base):
    """
    Append-only transition log.

    The unique key makes each (alert, user, to_status) happen once, so
    reputation and stats side effects keyed on an inserted row are applied
    at most once even when a transition request is retried.
    """
    __tablename__ = "recipient_transitions"
    __table_args__ = (
        UniqueConstraint("alert_id", "user_id", "to_status", name="uq_recipient_transition"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(
        ForeignKey("alerts.alert_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class DeviceToken(Base):
    __tablename__ = "device_tokens"
    __table_args__ = (
        CheckConstraint("platform IN ('android', 'ios', 'web')", name="ck_device_tokens_platform"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    token: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    platform: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    last_registered_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class DeliveryLog(Base):
    """Audit row: one per recipient per dispatch."""
    __tablename__ = "delivery_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(
        ForeignKey("alerts.alert_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    urgency: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_targeted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_invalid: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    provider_codes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "step": self.step,
            "urgency": self.urgency,
            "title": self.title,
            "tokens_targeted": self.tokens_targeted,
            "tokens_succeeded": self.tokens_succeeded,
            "tokens_invalid": self.tokens_invalid,
            "provider_codes": (
                self.provider_codes.split(",") if self.provider_codes else []
            ),
            "sent_at": self.sent_at.isoformat(),
        }
