"""
FastAPI routes: plate registrations.

    POST   /api/v1/plates                 — register interest in a plate
    GET    /api/v1/plates                 — caller's fingerprints
    DELETE /api/v1/plates/{fingerprint}   — drop the caller's registration
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from backend.app.alerts.accounts import AccountService
from backend.app.api.deps import get_accounts, get_caller_id, resolve_fingerprint
from backend.app.api.schemas import (
    PlateRegistrationResponse,
    PlatesResponse,
    RegisterPlateRequest,
)

router = APIRouter(prefix="/api/v1/plates", tags=["plates"])


@router.post("", response_model=PlateRegistrationResponse)
async def register_plate(
    request: RegisterPlateRequest,
    response: Response,
    caller_id: str = Depends(get_caller_id),
    accounts: AccountService = Depends(get_accounts),
):
    fingerprint = resolve_fingerprint(request.fingerprint, request.plate)
    created = await accounts.register_plate(caller_id, fingerprint)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return PlateRegistrationResponse(fingerprint=fingerprint, created=created)


@router.get("", response_model=PlatesResponse)
async def list_plates(
    caller_id: str = Depends(get_caller_id),
    accounts: AccountService = Depends(get_accounts),
):
    return PlatesResponse(fingerprints=await accounts.list_plates(caller_id))


@router.delete("/{fingerprint}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_plate(
    fingerprint: str,
    caller_id: str = Depends(get_caller_id),
    accounts: AccountService = Depends(get_accounts),
):
    await accounts.unregister_plate(caller_id, fingerprint)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
