"""
fanout.py — Plate fingerprint → recipient set.

A fingerprint is a one-way HMAC-SHA256 of the normalised plate text, so the
service never stores plate numbers. Registrations are non-unique: a family
can all register the same car and every one of them is alerted.

The reporter is not excluded from their own fanout. Someone who registered
the plate and then reports it receives the alert like any other registrant.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from typing import Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.alerts.tables import PlateRegistration
from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_FINGERPRINT_LENGTH = 128
_FINGERPRINT_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_plate(plate: str) -> str:
    """Trim, upper-case and drop all whitespace: ' abc 123 ' → 'ABC123'."""
    return _WHITESPACE_RE.sub("", plate.strip().upper())


def fingerprint_plate(plate: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of the normalised plate."""
    normalized = normalize_plate(plate)
    if not normalized:
        raise ValidationError("Plate number is empty", field="plate")
    return hmac.new(
        secret.encode("utf-8"), normalized.encode("utf-8"), hashlib.sha256,
    ).hexdigest()


def validate_fingerprint(fingerprint: str) -> str:
    """Return the stripped fingerprint or raise ValidationError."""
    if not isinstance(fingerprint, str) or not fingerprint.strip():
        raise ValidationError("Plate fingerprint is required", field="fingerprint")
    value = fingerprint.strip()
    if len(value) > MAX_FINGERPRINT_LENGTH or not _FINGERPRINT_RE.match(value):
        raise ValidationError("Plate fingerprint is malformed", field="fingerprint")
    return value


async def resolve_recipients(session: AsyncSession, fingerprint: str) -> Set[str]:
    """
    Distinct set of users with a live registration for `fingerprint`.

    Pure read. An empty set is a valid answer, not an error.
    """
    result = await session.execute(
        select(PlateRegistration.user_id)
        .where(PlateRegistration.fingerprint == fingerprint)
        .distinct()
    )
    recipients = set(result.scalars().all())
    logger.debug("Fingerprint %s… resolves to %d recipient(s)", fingerprint[:8], len(recipients))
    return recipients
