"""
FastAPI dependencies: caller identity and the services built in the lifespan.

Authentication happens upstream; the gateway forwards the authenticated
user id in `X-User-ID`. Authorization is checked by the workflow.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from backend.app.alerts.accounts import AccountService, validate_user_id
from backend.app.alerts.fanout import fingerprint_plate, validate_fingerprint
from backend.app.alerts.workflow import AlertWorkflow
from backend.app.core.config import settings
from backend.app.core.errors import ValidationError


async def get_caller_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    if not x_user_id:
        raise ValidationError("X-User-ID header is required", field="X-User-ID")
    return validate_user_id(x_user_id)


def get_workflow(request: Request) -> AlertWorkflow:
    return request.app.state.workflow


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def resolve_fingerprint(fingerprint: Optional[str], plate: Optional[str]) -> str:
    """Prefer an explicit fingerprint; otherwise hash the plate text."""
    if fingerprint:
        return validate_fingerprint(fingerprint)
    if plate:
        return fingerprint_plate(plate, settings.PLATE_HASH_SECRET)
    raise ValidationError("Either fingerprint or plate is required", field="fingerprint")
