"""
accounts.py — Users, plate registrations and push device tokens.

Users are created lazily the first time an identity shows up (report,
registration, device sign-up) together with their stats row, so every
later counter update can be a plain UPDATE.

Device tokens:
    • A token string identifies one app install, so it is unique across
      users; re-registering it moves it to the current caller.
    • At most `max_devices` live tokens per user. Registering beyond the
      cap evicts the least recently registered token.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.alerts.fanout import validate_fingerprint
from backend.app.alerts.models import DeviceTarget, Platform
from backend.app.alerts.tables import (
    DeviceToken,
    PlateRegistration,
    User,
    UserStats,
)
from backend.app.core.database import utcnow
from backend.app.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_TOKEN_LENGTH = 512


def validate_user_id(user_id: Optional[str]) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("User id is required", field="user_id")
    if len(user_id) > 128:
        raise ValidationError("User id is too long", field="user_id")
    return user_id.strip()


async def ensure_user(session: AsyncSession, user_id: str, now: datetime) -> User:
    """Fetch or create a user (and their stats row); bumps last_active_at."""
    user = await session.get(User, user_id)
    if user is None:
        user = User(user_id=user_id, created_at=now, last_active_at=now)
        session.add(user)
        session.add(UserStats(user_id=user_id, updated_at=now))
        await session.flush()
        logger.info("Created user %s", user_id, extra={"user_id": user_id})
    else:
        user.last_active_at = now
    return user


async def bump_stat(session: AsyncSession, user_id: str, column: str, delta: int, now: datetime) -> None:
    """Atomic counter update on user_stats (never below zero)."""
    col = getattr(UserStats, column)
    await session.execute(
        update(UserStats)
        .where(UserStats.user_id == user_id)
        .values({column: case((col + delta < 0, 0), else_=col + delta), "updated_at": now})
    )


async def load_device_targets(
    session: AsyncSession, user_ids: Iterable[str],
) -> Dict[str, List[DeviceTarget]]:
    """Live device tokens grouped by user."""
    ids = list(user_ids)
    targets: Dict[str, List[DeviceTarget]] = {uid: [] for uid in ids}
    if not ids:
        return targets
    result = await session.execute(
        select(DeviceToken)
        .where(DeviceToken.user_id.in_(ids))
        .order_by(DeviceToken.user_id, DeviceToken.last_registered_at.desc())
    )
    for row in result.scalars():
        targets[row.user_id].append(
            DeviceTarget(user_id=row.user_id, token=row.token, platform=Platform(row.platform))
        )
    return targets


async def remove_device_tokens(session: AsyncSession, user_id: str, tokens: Iterable[str]) -> int:
    """Delete the given tokens of one user in a single statement."""
    token_list = list(tokens)
    if not token_list:
        return 0
    result = await session.execute(
        delete(DeviceToken)
        .where(DeviceToken.user_id == user_id, DeviceToken.token.in_(token_list))
    )
    return result.rowcount or 0


class AccountService:
    """Registration boundary for plates and devices."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_devices: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.max_devices = max_devices
        self.clock = clock

    async def touch_user(self, user_id: str) -> User:
        user_id = validate_user_id(user_id)
        async with self.session_factory() as session, session.begin():
            return await ensure_user(session, user_id, self.clock())

    async def get_profile(self, user_id: str) -> Dict[str, object]:
        user_id = validate_user_id(user_id)
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User", user_id=user_id)
            stats = await session.get(UserStats, user_id)
            return {
                "user_id": user.user_id,
                "reputation_score": user.reputation_score,
                "is_premium": user.is_premium,
                "created_at": user.created_at.isoformat(),
                "last_active_at": user.last_active_at.isoformat(),
                "stats": stats.to_dict() if stats else None,
            }

    # ── Plates ──

    async def register_plate(self, user_id: str, fingerprint: str) -> bool:
        """
        Register interest in a fingerprint. Returns False when the caller
        already held that registration (idempotent).
        """
        user_id = validate_user_id(user_id)
        fingerprint = validate_fingerprint(fingerprint)
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            await ensure_user(session, user_id, now)
            existing = await session.scalar(
                select(PlateRegistration.id).where(
                    PlateRegistration.user_id == user_id,
                    PlateRegistration.fingerprint == fingerprint,
                )
            )
            if existing is not None:
                return False
            session.add(PlateRegistration(
                user_id=user_id, fingerprint=fingerprint, registered_at=now,
            ))
            await bump_stat(session, user_id, "plates_registered", 1, now)
        logger.info("Plate registered", extra={"user_id": user_id})
        return True

    async def unregister_plate(self, user_id: str, fingerprint: str) -> None:
        """Remove the caller's own registration; other users' stay intact."""
        user_id = validate_user_id(user_id)
        fingerprint = validate_fingerprint(fingerprint)
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                delete(PlateRegistration).where(
                    PlateRegistration.user_id == user_id,
                    PlateRegistration.fingerprint == fingerprint,
                )
            )
            if not result.rowcount:
                raise NotFoundError("PlateRegistration", user_id=user_id)
            await bump_stat(session, user_id, "plates_registered", -result.rowcount, now)

    async def list_plates(self, user_id: str) -> List[str]:
        user_id = validate_user_id(user_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(PlateRegistration.fingerprint)
                .where(PlateRegistration.user_id == user_id)
                .order_by(PlateRegistration.registered_at)
            )
            return list(result.scalars())

    # ── Devices ──

    async def register_device(self, user_id: str, token: str, platform: str) -> List[str]:
        """
        Register or refresh a push token. Returns the tokens evicted to keep
        the user at or below the cap.
        """
        user_id = validate_user_id(user_id)
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("Device token is required", field="token")
        token = token.strip()
        if len(token) > MAX_TOKEN_LENGTH:
            raise ValidationError("Device token is too long", field="token")
        try:
            platform_value = Platform(str(platform).lower()).value
        except ValueError:
            raise ValidationError(
                f"Unsupported platform '{platform}'",
                field="platform",
                allowed=[p.value for p in Platform],
            )

        now = self.clock()
        async with self.session_factory() as session, session.begin():
            await ensure_user(session, user_id, now)
            row = await session.scalar(select(DeviceToken).where(DeviceToken.token == token))
            if row is None:
                session.add(DeviceToken(
                    user_id=user_id, token=token, platform=platform_value,
                    created_at=now, last_registered_at=now,
                ))
            else:
                if row.user_id != user_id:
                    logger.info(
                        "Device token moved from %s to %s", row.user_id, user_id,
                        extra={"user_id": user_id},
                    )
                row.user_id = user_id
                row.platform = platform_value
                row.last_registered_at = now
            await session.flush()

            result = await session.execute(
                # The token registering now always survives
                select(DeviceToken.token)
                .where(DeviceToken.user_id == user_id, DeviceToken.token != token)
                .order_by(
                    DeviceToken.last_registered_at.desc(),
                    DeviceToken.created_at.desc(),
                    DeviceToken.id.desc(),
                )
                .offset(max(self.max_devices - 1, 0))
            )
            evicted = list(result.scalars())
            if evicted:
                await remove_device_tokens(session, user_id, evicted)
                logger.info(
                    "Evicted %d device token(s) over cap %d", len(evicted), self.max_devices,
                    extra={"user_id": user_id},
                )
        return evicted

    async def unregister_device(self, user_id: str, token: str) -> None:
        user_id = validate_user_id(user_id)
        async with self.session_factory() as session, session.begin():
            removed = await remove_device_tokens(session, user_id, [token])
            if not removed:
                raise NotFoundError("DeviceToken", user_id=user_id)

    async def list_devices(self, user_id: str) -> List[DeviceTarget]:
        user_id = validate_user_id(user_id)
        async with self.session_factory() as session:
            targets = await load_device_targets(session, [user_id])
        return targets[user_id]
