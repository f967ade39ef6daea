"""
models.py — Shared enums and value objects for the plate alert engine.

Defines:
    • UrgencyLevel      — reporter-chosen urgency tier
    • AlertStatus       — aggregate alert lifecycle
    • RecipientStatus   — per-recipient lifecycle (forward-only lattice)
    • ResponseKind      — fixed vocabulary of recipient replies
    • Platform          — device platform for push tokens
    • DeliveryOutcome   — closed classification of a push attempt
    • RenderedMessage   — escalation template output
    • DeviceDelivery    — one device push attempt
    • DeliveryReport    — aggregate dispatch result

═══════════════════════════════════════════════════════════════════════════
RECIPIENT STATUS LATTICE
═══════════════════════════════════════════════════════════════════════════

    sent ──► delivered ──► acknowledged ──► resolved
      │          │      └─► ignored ──────┘
      └──────────┴──────────────────────────► (any later rank)

Ranks:  sent=0, delivered=1, acknowledged=ignored=2, resolved=3

A transition is legal only when it moves to a strictly higher rank.
Re-requesting the current status is an idempotent no-op. `resolved` is
terminal: any other request after it is rejected.

═══════════════════════════════════════════════════════════════════════════
ALERT AGGREGATE STATUS
═══════════════════════════════════════════════════════════════════════════

    sent ──► delivered ──► acknowledged ──► resolved
      └──────────┴──────────────┴─────────► expired | cancelled

The aggregate only ratchets forward; resolved/expired/cancelled are
terminal and never regress.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class UrgencyLevel(str, Enum):
    """Urgency tier chosen by the reporter."""
    LOW    = "low"
    NORMAL = "normal"
    HIGH   = "high"
    URGENT = "urgent"

    @classmethod
    def _missing_(cls, value: object) -> Optional["UrgencyLevel"]:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "emergency":
                return cls.URGENT
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class AlertStatus(str, Enum):
    """Aggregate alert state; may lag individual recipient states."""
    SENT         = "sent"
    DELIVERED    = "delivered"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED     = "resolved"
    EXPIRED      = "expired"
    CANCELLED    = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ALERT_STATUSES


TERMINAL_ALERT_STATUSES = frozenset({
    AlertStatus.RESOLVED,
    AlertStatus.EXPIRED,
    AlertStatus.CANCELLED,
})


class RecipientStatus(str, Enum):
    """Per-recipient delivery/response state."""
    SENT         = "sent"
    DELIVERED    = "delivered"
    ACKNOWLEDGED = "acknowledged"
    IGNORED      = "ignored"
    RESOLVED     = "resolved"

    @property
    def rank(self) -> int:
        return RECIPIENT_STATUS_RANK[self]


RECIPIENT_STATUS_RANK: Dict[RecipientStatus, int] = {
    RecipientStatus.SENT:         0,
    RecipientStatus.DELIVERED:    1,
    RecipientStatus.ACKNOWLEDGED: 2,
    RecipientStatus.IGNORED:      2,
    RecipientStatus.RESOLVED:     3,
}

# Recipients that have not answered yet: escalation and expiry targets
PENDING_RECIPIENT_STATUSES = (RecipientStatus.SENT, RecipientStatus.DELIVERED)


class ResponseKind(str, Enum):
    """What a recipient can reply to an alert."""
    ON_MY_WAY  = "on_my_way"
    MOVING_NOW = "moving_now"
    CANT_MOVE  = "cant_move"


class Platform(str, Enum):
    """Device platform of a push token."""
    ANDROID = "android"
    IOS     = "ios"
    WEB     = "web"


class DeliveryPriority(str, Enum):
    """Provider delivery priority."""
    NORMAL = "normal"
    HIGH   = "high"


class DeliveryOutcome(str, Enum):
    """
    Closed classification of one push attempt.

    Provider error strings are mapped onto this at the channel boundary;
    the raw code only travels in logs and the delivery audit log.
    """
    SUCCESS       = "success"
    INVALID_TOKEN = "invalid_token"   # permanently dead, prune the device
    TRANSIENT     = "transient"       # anything else, next escalation retries


# ═══════════════════════════════════════════════════════════════════════════
# Value objects
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RenderedMessage:
    """Escalation policy output for one (urgency, step)."""
    title: str
    body: str
    priority: DeliveryPriority
    sound: str
    color: str
    step: int

    @property
    def android_sound(self) -> str:
        return self.sound.rsplit(".", 1)[0]

    @property
    def channel_id(self) -> str:
        return f"plate_alert_{self.android_sound}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "priority": self.priority.value,
            "sound": self.sound,
            "color": self.color,
            "step": self.step,
        }


@dataclass(frozen=True)
class DeviceTarget:
    """A live device registration selected for dispatch."""
    user_id: str
    token: str
    platform: Platform


@dataclass
class DeviceDelivery:
    """Result of pushing to a single device."""
    user_id: str
    token: str
    platform: Platform
    outcome: DeliveryOutcome
    provider_code: Optional[str] = None
    http_status: Optional[int] = None
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: datetime = field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.outcome == DeliveryOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "token_prefix": self.token[:12] + "...",
            "platform": self.platform.value,
            "outcome": self.outcome.value,
            "provider_code": self.provider_code,
            "http_status": self.http_status,
            "error_message": self.error_message,
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass
class DeliveryReport:
    """Aggregate dispatch result — enough detail for audit logging."""
    alert_id: str
    step: int
    recipients_targeted: int = 0
    devices: List[DeviceDelivery] = field(default_factory=list)
    invalid_removed: int = 0
    recipients_delivered: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def targeted(self) -> int:
        return len(self.devices)

    @property
    def succeeded(self) -> int:
        return sum(1 for d in self.devices if d.outcome == DeliveryOutcome.SUCCESS)

    @property
    def transient_failed(self) -> int:
        return sum(1 for d in self.devices if d.outcome == DeliveryOutcome.TRANSIENT)

    @property
    def invalid_tokens(self) -> int:
        return sum(1 for d in self.devices if d.outcome == DeliveryOutcome.INVALID_TOKEN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "step": self.step,
            "recipients_targeted": self.recipients_targeted,
            "targeted": self.targeted,
            "succeeded": self.succeeded,
            "transient_failed": self.transient_failed,
            "invalid_removed": self.invalid_removed,
            "recipients_delivered": list(self.recipients_delivered),
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "devices": [d.to_dict() for d in self.devices],
        }
