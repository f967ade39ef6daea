"""
escalation.py — Urgency tier × escalation step → push message.

═══════════════════════════════════════════════════════════════════════════
PRIORITY POLICY
═══════════════════════════════════════════════════════════════════════════

    Urgency    Step 0     Step ≥ 1
    ───────    ───────    ────────
    low        normal     normal
    normal     normal     high
    high       high       high
    urgent     high       high

The first attempt at `normal` urgency is deliberately low-pressure; any
re-send is delivered at high priority.

═══════════════════════════════════════════════════════════════════════════
LADDERS
═══════════════════════════════════════════════════════════════════════════

Each tier has a fixed ladder of templates. Steps past the end plateau on
the last (harshest) entry. A reporter's custom text replaces only the
step-0 body; later steps always use the ladder.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from backend.app.alerts.models import (
    DeliveryPriority,
    RenderedMessage,
    ResponseKind,
    UrgencyLevel,
)
from backend.app.core.errors import ValidationError

MAX_CUSTOM_MESSAGE_LENGTH = 280

# (title, body) per step
ESCALATION_LADDERS: Dict[UrgencyLevel, List[Tuple[str, str]]] = {
    UrgencyLevel.LOW: [
        ("Gentle Reminder - Yuh Blockin'",
         "Yuh car blocking someone, easy nuh! Please check when convenient."),
        ("Follow Up - Still Blocked",
         "Still blocking, bredrin - when yuh free to move?"),
        ("Final Reminder",
         "Respek - please move when convenient. Thanks!"),
    ],
    UrgencyLevel.NORMAL: [
        ("Parking Alert - Yuh Blockin'!",
         "Yuh car blocking someone - please check and move!"),
        ("Urgent - Still Blocking",
         "Still blocked - need yuh to move now, please!"),
        ("Very Urgent - Move Now",
         "Yuh blocking traffic - move immediately!"),
    ],
    UrgencyLevel.HIGH: [
        ("URGENT - YUH BLOCKIN'!",
         "YUH BLOCKIN' - Move immediately!"),
        ("VERY URGENT - MOVE NOW!",
         "MOVE YUH CAR RIGHT NOW!"),
        ("CRITICAL - EMERGENCY BLOCKING!",
         "EMERGENCY BLOCKING - MOVE NOW!"),
    ],
    UrgencyLevel.URGENT: [
        ("EMERGENCY - BLOCKING ACCESS!",
         "BLOCKING EMERGENCY ACCESS - MOVE IMMEDIATELY!"),
        ("CRITICAL EMERGENCY!",
         "MOVE IMMEDIATELY - EMERGENCY SERVICES NEEDED!"),
        ("AUTHORITIES NOTIFIED",
         "Emergency services have been notified!"),
    ],
}

SOUNDS: Dict[UrgencyLevel, str] = {
    UrgencyLevel.LOW:    "low_alert_1.wav",
    UrgencyLevel.NORMAL: "normal_alert.wav",
    UrgencyLevel.HIGH:   "high_alert_1.wav",
    UrgencyLevel.URGENT: "high_alert_1.wav",
}

COLORS: Dict[UrgencyLevel, str] = {
    UrgencyLevel.LOW:    "#4CAF50",
    UrgencyLevel.NORMAL: "#2196F3",
    UrgencyLevel.HIGH:   "#FF9800",
    UrgencyLevel.URGENT: "#F44336",
}

RESPONSE_MESSAGES: Dict[ResponseKind, Tuple[str, str]] = {
    ResponseKind.ON_MY_WAY: (
        "Response Received!",
        'Car owner says: "On mi way!" - ETA 5-10 minutes',
    ),
    ResponseKind.MOVING_NOW: (
        "Car Moving Now!",
        "Owner is moving the car right now!",
    ),
    ResponseKind.CANT_MOVE: (
        "Owner Responds",
        "Owner says they can't move right now. Please be patient.",
    ),
}


def ladder_length(urgency: UrgencyLevel) -> int:
    return len(ESCALATION_LADDERS[UrgencyLevel(urgency)])


def delivery_priority(urgency: UrgencyLevel, step: int) -> DeliveryPriority:
    urgency = UrgencyLevel(urgency)
    if urgency in (UrgencyLevel.URGENT, UrgencyLevel.HIGH):
        return DeliveryPriority.HIGH
    if urgency == UrgencyLevel.NORMAL and step > 0:
        return DeliveryPriority.HIGH
    return DeliveryPriority.NORMAL


def clean_custom_message(message: Optional[str]) -> Optional[str]:
    """Trim; blank means no custom text. Over-long text is a ValidationError."""
    if message is None:
        return None
    text = message.strip()
    if not text:
        return None
    if len(text) > MAX_CUSTOM_MESSAGE_LENGTH:
        raise ValidationError(
            f"Custom message exceeds {MAX_CUSTOM_MESSAGE_LENGTH} characters",
            field="message",
        )
    return text


def render(
    urgency: UrgencyLevel,
    step: int,
    custom_message: Optional[str] = None,
) -> RenderedMessage:
    """Pure: template, priority, sound and colour for one escalation step."""
    try:
        urgency = UrgencyLevel(urgency)
    except ValueError:
        raise ValidationError(f"Unknown urgency '{urgency}'", field="urgency")
    if step < 0:
        raise ValidationError("Escalation step must be >= 0", field="step")

    ladder = ESCALATION_LADDERS[urgency]
    index = min(step, len(ladder) - 1)
    title, body = ladder[index]
    custom = clean_custom_message(custom_message)
    if index == 0 and custom:
        body = custom

    return RenderedMessage(
        title=title,
        body=body,
        priority=delivery_priority(urgency, step),
        sound=SOUNDS[urgency],
        color=COLORS[urgency],
        step=step,
    )


def render_response(response: ResponseKind) -> RenderedMessage:
    """Message pushed back to the reporter when a recipient responds."""
    title, body = RESPONSE_MESSAGES[ResponseKind(response)]
    return RenderedMessage(
        title=title,
        body=body,
        priority=DeliveryPriority.NORMAL,
        sound=SOUNDS[UrgencyLevel.NORMAL],
        color=COLORS[UrgencyLevel.LOW],
        step=0,
    )
