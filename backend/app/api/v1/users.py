"""
FastAPI routes: the caller's own profile.

    GET /api/v1/users/me   — reputation, premium flag and stats
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.alerts.accounts import AccountService
from backend.app.api.deps import get_accounts, get_caller_id
from backend.app.api.schemas import UserProfileOut

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.get("/me", response_model=UserProfileOut)
async def me(
    caller_id: str = Depends(get_caller_id),
    accounts: AccountService = Depends(get_accounts),
):
    await accounts.touch_user(caller_id)
    return UserProfileOut(**await accounts.get_profile(caller_id))
