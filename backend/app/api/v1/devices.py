"""
FastAPI routes: push device tokens.

    POST   /api/v1/devices           — register/refresh a token (cap 5 per user)
    DELETE /api/v1/devices/{token}   — remove one of the caller's tokens
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from backend.app.alerts.accounts import AccountService
from backend.app.api.deps import get_accounts, get_caller_id
from backend.app.api.schemas import DeviceRegistrationResponse, RegisterDeviceRequest

router = APIRouter(prefix="/api/v1/devices", tags=["devices"])


@router.post("", response_model=DeviceRegistrationResponse)
async def register_device(
    request: RegisterDeviceRequest,
    caller_id: str = Depends(get_caller_id),
    accounts: AccountService = Depends(get_accounts),
):
    evicted = await accounts.register_device(caller_id, request.token, request.platform.value)
    return DeviceRegistrationResponse(
        token_prefix=request.token[:12] + "...",
        platform=request.platform,
        evicted=len(evicted),
    )


@router.delete("/{token}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_device(
    token: str,
    caller_id: str = Depends(get_caller_id),
    accounts: AccountService = Depends(get_accounts),
):
    await accounts.unregister_device(caller_id, token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
