"""
Pydantic schemas for the plate alert API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.alerts.models import Platform, ResponseKind, UrgencyLevel


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ReportBlockageRequest(BaseModel):
    """
    Request body for POST /api/v1/alerts.

    Clients send the plate fingerprint; `plate` is accepted as a
    convenience and hashed server-side when no fingerprint is given.
    """
    fingerprint: Optional[str] = Field(
        None, max_length=128,
        description="HMAC-SHA256 fingerprint of the plate",
    )
    plate: Optional[str] = Field(
        None, max_length=32,
        description="Plain plate text; hashed and discarded",
        examples=["ABC 123"],
    )
    urgency: UrgencyLevel = Field(
        UrgencyLevel.NORMAL,
        description="low | normal | high | urgent (alias: emergency)",
    )
    message: Optional[str] = Field(None, max_length=280)
    ttl_minutes: Optional[int] = Field(None, ge=1, le=24 * 60)

    @field_validator("urgency", mode="before")
    @classmethod
    def _urgency_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            return UrgencyLevel(v)
        return v


class RespondRequest(BaseModel):
    response: ResponseKind = Field(..., examples=["on_my_way"])


class RegisterPlateRequest(BaseModel):
    fingerprint: Optional[str] = Field(None, max_length=128)
    plate: Optional[str] = Field(None, max_length=32, examples=["ABC 123"])


class RegisterDeviceRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    platform: Platform = Field(..., examples=["android"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class DeliverySummaryOut(BaseModel):
    step: int
    recipients_targeted: int
    targeted: int
    succeeded: int
    transient_failed: int
    invalid_removed: int
    recipients_delivered: List[str] = []


class ReportBlockageResponse(BaseModel):
    alert_id: str
    status: str
    recipient_count: int
    expires_at: str
    delivery: Optional[DeliverySummaryOut] = None
    dispatch_error: Optional[str] = None


class RecipientOut(BaseModel):
    user_id: str
    status: str
    response: Optional[str] = None
    delivered_at: Optional[str] = None
    acknowledged_at: Optional[str] = None
    resolved_at: Optional[str] = None


class AlertOut(BaseModel):
    alert_id: str
    sender_id: str
    fingerprint: str
    urgency: str
    custom_message: Optional[str] = None
    status: str
    escalation_step: int
    sent_at: str
    delivered_at: Optional[str] = None
    expires_at: str
    recipients: List[RecipientOut] = []


class TransitionResponse(BaseModel):
    alert_id: str
    status: str
    applied: bool = Field(..., description="False when the request was a repeat")


class DeliveryLogOut(BaseModel):
    user_id: str
    step: int
    urgency: str
    title: str
    tokens_targeted: int
    tokens_succeeded: int
    tokens_invalid: int
    provider_codes: List[str] = []
    sent_at: str


class PlateRegistrationResponse(BaseModel):
    fingerprint: str
    created: bool


class PlatesResponse(BaseModel):
    fingerprints: List[str]


class DeviceRegistrationResponse(BaseModel):
    token_prefix: str
    platform: Platform
    evicted: int = 0


class UserProfileOut(BaseModel):
    user_id: str
    reputation_score: int
    is_premium: bool
    created_at: str
    last_active_at: str
    stats: Optional[Dict[str, Any]] = None
