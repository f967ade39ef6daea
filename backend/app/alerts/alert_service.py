"""
alert_service.py — Alert and per-recipient state store.

The store is the only component that mutates alerts and recipients. Every
public operation opens its own unit of work on the injected session factory
so callers never share a transaction across an I/O wait.

═══════════════════════════════════════════════════════════════════════════
ALERT CREATION (FANOUT)
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Validate        │  sender, fingerprint, urgency, text, ttl
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Resolve         │  PlateRegistration → distinct user ids
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. One transaction │  INSERT alert
    │                     │  INSERT one alert_recipient per user (status=sent)
    │                     │  sender.alerts_sent += 1
    │                     │  recipients.alerts_received += 1
    └─────────────────────┘

An empty fanout still persists the alert; dispatch is skipped downstream.

═══════════════════════════════════════════════════════════════════════════
TRANSITIONS & SIDE EFFECTS
═══════════════════════════════════════════════════════════════════════════

    Target          Reputation                    Stats
    ──────────      ──────────────────────────    ───────────────────────────
    delivered       —                             —
    acknowledged    recipient +5                  recipient.alerts_acknowledged
    resolved        recipient +15, sender +10     recipient.alerts_resolved
    ignored         —                             —

The first acknowledged-or-resolved transition of a recipient also feeds the
running average response time (seconds since alert.sent_at).

Every applied transition inserts a row into recipient_transitions, whose
unique key (alert, user, to_status) is the at-most-once guard for the side
effects above. Re-requesting the current status is a no-op.

Aggregate alert status is a ratchet applied with a conditional UPDATE:

    recipient → delivered      alert: sent → delivered
    recipient → acknowledged   alert: sent|delivered → acknowledged
    recipient → resolved       alert: sent|delivered|acknowledged → resolved

Expired and cancelled alerts keep their status. A late resolve on an expired
alert still credits the recipient. Only a resolve stops expiry: an alert that
was acknowledged but never resolved expires like any other.

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

    • In-process: one asyncio.Lock per (alert_id, user_id).
    • Across processes: SELECT … FOR UPDATE on the alert row, then the
      recipient row, plus the `version` column (optimistic). A stale
      version is retried once; the retry re-reads the current status and
      is evaluated against it.
    • Lock order is alert first, recipients second in every writer
      (transitions, mark_delivered, the expiry sweep).
    • Escalation claims its step with one conditional UPDATE on
      escalation_step, so a step is dispatched at most once.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import defaultdict
from datetime import datetime, timedelta
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from backend.app.alerts.accounts import (
    bump_stat,
    ensure_user,
    load_device_targets,
    remove_device_tokens,
    validate_user_id,
)
from backend.app.alerts.escalation import clean_custom_message
from backend.app.alerts.fanout import resolve_recipients, validate_fingerprint
from backend.app.alerts.models import (
    PENDING_RECIPIENT_STATUSES,
    AlertStatus,
    DeliveryOutcome,
    DeviceDelivery,
    DeviceTarget,
    RecipientStatus,
    UrgencyLevel,
)
from backend.app.alerts.tables import (
    Alert,
    AlertRecipient,
    DeliveryLog,
    PlateRegistration,
    RecipientTransition,
    User,
    UserStats,
)
from backend.app.core.config import settings
from backend.app.core.database import utcnow
from backend.app.core.errors import InvalidTransition, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Reputation deltas ──
ACK_RECIPIENT_POINTS = 5
RESOLVE_RECIPIENT_POINTS = 15
RESOLVE_SENDER_POINTS = 10

# Alert statuses a recipient transition may ratchet the aggregate from
_AGGREGATE_RATCHET: Dict[RecipientStatus, Tuple[AlertStatus, Tuple[AlertStatus, ...]]] = {
    RecipientStatus.DELIVERED: (
        AlertStatus.DELIVERED, (AlertStatus.SENT,),
    ),
    RecipientStatus.ACKNOWLEDGED: (
        AlertStatus.ACKNOWLEDGED, (AlertStatus.SENT, AlertStatus.DELIVERED),
    ),
    RecipientStatus.RESOLVED: (
        AlertStatus.RESOLVED,
        (AlertStatus.SENT, AlertStatus.DELIVERED, AlertStatus.ACKNOWLEDGED),
    ),
}

# No recipient has resolved yet: escalation and expiry still apply
_OPEN_ALERT_STATUSES = (AlertStatus.SENT, AlertStatus.DELIVERED, AlertStatus.ACKNOWLEDGED)


class KeyedLocks:
    """asyncio.Lock per key; unused locks are garbage-collected."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: Tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


def parse_recipient_status(value: str) -> RecipientStatus:
    try:
        return RecipientStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown recipient status '{value}'",
            field="status",
            allowed=[s.value for s in RecipientStatus],
        )


def parse_urgency(value: str) -> UrgencyLevel:
    try:
        return UrgencyLevel(value)
    except ValueError:
        raise ValidationError(
            f"Unknown urgency '{value}'",
            field="urgency",
            allowed=[u.value for u in UrgencyLevel],
        )


class AlertStore:
    """
    Transactional owner of alerts, recipients and their side effects.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Each operation opens and commits its own session.
    clock : callable
        Returns the current UTC time; injected for deterministic tests.
    ttl_minutes : dict, optional
        Default time-to-live per urgency value.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
        ttl_minutes: Optional[Dict[str, int]] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.ttl_minutes = ttl_minutes or settings.alert_ttl_minutes
        self._locks = KeyedLocks()

    def default_ttl(self, urgency: UrgencyLevel) -> timedelta:
        return timedelta(minutes=self.ttl_minutes[UrgencyLevel(urgency).value])

    # ═══════════════════════════════════════════════════════════════════════
    # Creation
    # ═══════════════════════════════════════════════════════════════════════

    async def create_alert(
        self,
        sender_id: str,
        fingerprint: str,
        urgency: str,
        message: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> Alert:
        """
        Persist an alert and its full recipient set atomically.

        Raises
        ------
        ValidationError
            Before any mutation, for malformed input or a non-positive ttl.
        """
        sender_id = validate_user_id(sender_id)
        fingerprint = validate_fingerprint(fingerprint)
        level = parse_urgency(urgency)
        custom = clean_custom_message(message)
        if ttl is None:
            ttl = self.default_ttl(level)
        elif ttl <= timedelta(0):
            raise ValidationError("TTL must be positive", field="ttl")

        now = self.clock()
        async with self.session_factory() as session, session.begin():
            await ensure_user(session, sender_id, now)
            recipient_ids = sorted(await resolve_recipients(session, fingerprint))

            alert = Alert(
                sender_id=sender_id,
                fingerprint=fingerprint,
                urgency=level.value,
                custom_message=custom,
                status=AlertStatus.SENT.value,
                escalation_step=0,
                sent_at=now,
                expires_at=now + ttl,
                updated_at=now,
            )
            alert.recipients = [
                AlertRecipient(user_id=uid, status=RecipientStatus.SENT.value, updated_at=now)
                for uid in recipient_ids
            ]
            session.add(alert)
            await session.flush()

            await bump_stat(session, sender_id, "alerts_sent", 1, now)
            if recipient_ids:
                await session.execute(
                    update(UserStats)
                    .where(UserStats.user_id.in_(recipient_ids))
                    .values(alerts_received=UserStats.alerts_received + 1, updated_at=now)
                )

        logger.info(
            "Alert created with %d recipient(s)", len(recipient_ids),
            extra={"alert_id": alert.alert_id, "user_id": sender_id, "urgency": level.value},
        )
        return alert

    # ═══════════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════════

    async def get_alert(self, alert_id: str) -> Alert:
        """Alert with recipients; overdue alerts are expired first."""
        await self.expire_overdue(alert_id=alert_id)
        async with self.session_factory() as session:
            alert = await session.scalar(
                select(Alert)
                .options(selectinload(Alert.recipients))
                .where(Alert.alert_id == alert_id)
            )
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            return alert

    async def get_recipient_ids(
        self,
        alert_id: str,
        statuses: Optional[Iterable[RecipientStatus]] = None,
    ) -> List[str]:
        stmt = select(AlertRecipient.user_id).where(AlertRecipient.alert_id == alert_id)
        if statuses is not None:
            stmt = stmt.where(AlertRecipient.status.in_([RecipientStatus(s).value for s in statuses]))
        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(AlertRecipient.user_id))
            return list(result.scalars())

    async def list_delivery_logs(self, alert_id: str) -> List[DeliveryLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryLog)
                .where(DeliveryLog.alert_id == alert_id)
                .order_by(DeliveryLog.id)
            )
            return list(result.scalars())

    async def device_targets(self, user_ids: Iterable[str]) -> Dict[str, List[DeviceTarget]]:
        async with self.session_factory() as session:
            return await load_device_targets(session, user_ids)

    # ═══════════════════════════════════════════════════════════════════════
    # Recipient transitions
    # ═══════════════════════════════════════════════════════════════════════

    async def _serialized(
        self,
        alert_id: str,
        user_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Run `operation` under the (alert, user) lock, retrying once on a stale version."""
        async with self._locks.get((alert_id, user_id)):
            try:
                return await operation()
            except StaleDataError:
                logger.info(
                    "Recipient row changed concurrently; retrying",
                    extra={"alert_id": alert_id, "user_id": user_id},
                )
                return await operation()

    async def transition_recipient(
        self,
        alert_id: str,
        user_id: str,
        new_status: str,
        response: Optional[str] = None,
    ) -> bool:
        """
        Move one recipient forward through the status lattice.

        Returns True when the transition was applied, False when the
        recipient was already in `new_status` (no side effects).

        Raises
        ------
        NotFoundError
            Unknown alert, or the user is not a recipient of it.
        InvalidTransition
            Backward, sideways or post-resolved request, or a cancelled alert.
        """
        target = parse_recipient_status(new_status)
        await self.expire_overdue(alert_id=alert_id)

        async def _apply() -> bool:
            return await self._apply_transition(alert_id, user_id, target, response)

        try:
            return await self._serialized(alert_id, user_id, _apply)
        except IntegrityError:
            # Transition log already holds (alert, user, target)
            logger.info(
                "Transition to %s already recorded", target.value,
                extra={"alert_id": alert_id, "user_id": user_id},
            )
            return False

    async def _apply_transition(
        self,
        alert_id: str,
        user_id: str,
        target: RecipientStatus,
        response: Optional[str],
    ) -> bool:
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            # Lock order everywhere: alert row, then recipient rows
            alert = await session.get(Alert, alert_id, with_for_update=True)
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)

            recipient = await session.scalar(
                select(AlertRecipient)
                .where(AlertRecipient.alert_id == alert_id, AlertRecipient.user_id == user_id)
                .with_for_update()
            )
            if recipient is None:
                raise NotFoundError("AlertRecipient", alert_id=alert_id, user_id=user_id)

            current = RecipientStatus(recipient.status)
            if current == target:
                return False
            if alert.status == AlertStatus.CANCELLED.value:
                raise InvalidTransition(
                    AlertStatus.CANCELLED.value, target.value, alert_id=alert_id, user_id=user_id,
                )
            if current == RecipientStatus.RESOLVED or target.rank <= current.rank:
                raise InvalidTransition(
                    current.value, target.value, alert_id=alert_id, user_id=user_id,
                )

            first_response = (
                target in (RecipientStatus.ACKNOWLEDGED, RecipientStatus.RESOLVED)
                and recipient.acknowledged_at is None
                and recipient.resolved_at is None
            )

            recipient.status = target.value
            recipient.updated_at = now
            if response is not None:
                recipient.response = response
            if target == RecipientStatus.DELIVERED and recipient.delivered_at is None:
                recipient.delivered_at = now
            elif target == RecipientStatus.ACKNOWLEDGED:
                recipient.acknowledged_at = now
            elif target == RecipientStatus.RESOLVED:
                recipient.resolved_at = now

            session.add(RecipientTransition(
                alert_id=alert_id, user_id=user_id,
                from_status=current.value, to_status=target.value, created_at=now,
            ))
            await session.flush()

            await self._apply_side_effects(session, alert, user_id, target, now)
            if first_response:
                await self._record_response_time(
                    session, user_id, (now - alert.sent_at).total_seconds(), now,
                )
            await self._ratchet_alert(session, alert_id, target, now)

        logger.info(
            "Recipient %s → %s", current.value, target.value,
            extra={"alert_id": alert_id, "user_id": user_id},
        )
        return True

    async def _apply_side_effects(
        self,
        session: AsyncSession,
        alert: Alert,
        user_id: str,
        target: RecipientStatus,
        now: datetime,
    ) -> None:
        if target == RecipientStatus.ACKNOWLEDGED:
            await self._adjust_reputation(session, user_id, ACK_RECIPIENT_POINTS)
            await bump_stat(session, user_id, "alerts_acknowledged", 1, now)
        elif target == RecipientStatus.RESOLVED:
            await self._adjust_reputation(session, user_id, RESOLVE_RECIPIENT_POINTS)
            await self._adjust_reputation(session, alert.sender_id, RESOLVE_SENDER_POINTS)
            await bump_stat(session, user_id, "alerts_resolved", 1, now)

    @staticmethod
    async def _adjust_reputation(session: AsyncSession, user_id: str, delta: int) -> None:
        await session.execute(
            update(User)
            .where(User.user_id == user_id)
            .values(reputation_score=User.reputation_score + delta)
        )

    @staticmethod
    async def _record_response_time(
        session: AsyncSession, user_id: str, seconds: float, now: datetime,
    ) -> None:
        # SET expressions read the pre-update row on every backend
        await session.execute(
            update(UserStats)
            .where(UserStats.user_id == user_id)
            .values(
                average_response_seconds=(
                    UserStats.average_response_seconds * UserStats.response_samples + seconds
                ) / (UserStats.response_samples + 1),
                response_samples=UserStats.response_samples + 1,
                updated_at=now,
            )
        )

    @staticmethod
    async def _ratchet_alert(
        session: AsyncSession, alert_id: str, target: RecipientStatus, now: datetime,
    ) -> None:
        rule = _AGGREGATE_RATCHET.get(target)
        if rule is None:
            return
        new_status, allowed_from = rule
        values: Dict[str, object] = {"status": new_status.value, "updated_at": now}
        await session.execute(
            update(Alert)
            .where(
                Alert.alert_id == alert_id,
                Alert.status.in_([s.value for s in allowed_from]),
            )
            .values(values)
        )
        if target == RecipientStatus.DELIVERED:
            await session.execute(
                update(Alert)
                .where(Alert.alert_id == alert_id, Alert.delivered_at.is_(None))
                .values(delivered_at=now)
            )

    async def mark_delivered(self, alert_id: str, user_id: str) -> bool:
        """
        Record that at least one device of `user_id` accepted the push.

        Idempotent: `delivered_at` is set once and later calls return False.
        A recipient that already answered keeps its status.
        """
        async def _apply() -> bool:
            now = self.clock()
            async with self.session_factory() as session, session.begin():
                if await session.get(Alert, alert_id, with_for_update=True) is None:
                    raise NotFoundError("Alert", alert_id=alert_id)
                recipient = await session.scalar(
                    select(AlertRecipient)
                    .where(AlertRecipient.alert_id == alert_id, AlertRecipient.user_id == user_id)
                    .with_for_update()
                )
                if recipient is None:
                    raise NotFoundError("AlertRecipient", alert_id=alert_id, user_id=user_id)
                if recipient.delivered_at is not None:
                    return False

                recipient.delivered_at = now
                recipient.updated_at = now
                if recipient.status == RecipientStatus.SENT.value:
                    recipient.status = RecipientStatus.DELIVERED.value
                    session.add(RecipientTransition(
                        alert_id=alert_id, user_id=user_id,
                        from_status=RecipientStatus.SENT.value,
                        to_status=RecipientStatus.DELIVERED.value,
                        created_at=now,
                    ))
                await session.flush()
                await self._ratchet_alert(session, alert_id, RecipientStatus.DELIVERED, now)
            return True

        try:
            return await self._serialized(alert_id, user_id, _apply)
        except IntegrityError:
            return False

    # ═══════════════════════════════════════════════════════════════════════
    # Alert-level lifecycle
    # ═══════════════════════════════════════════════════════════════════════

    async def advance_escalation(self, alert_id: str, from_step: int) -> Alert:
        """
        Claim step `from_step + 1` of an open alert and return the alert.

        The counter moves in one conditional UPDATE, only while it still
        reads `from_step`. Of two concurrent escalations from the same step
        exactly one wins; the other gets InvalidTransition.
        """
        await self.expire_overdue(alert_id=alert_id)
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Alert)
                .where(
                    Alert.alert_id == alert_id,
                    Alert.escalation_step == from_step,
                    Alert.status.in_([s.value for s in _OPEN_ALERT_STATUSES]),
                )
                .values(escalation_step=from_step + 1, updated_at=now)
            )
            alert = await session.get(Alert, alert_id, populate_existing=True)
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            if result.rowcount != 1:
                if AlertStatus(alert.status).is_terminal:
                    raise InvalidTransition(alert.status, "escalated", alert_id=alert_id)
                raise InvalidTransition(
                    f"step {alert.escalation_step}", f"step {from_step + 1}", alert_id=alert_id,
                )
        logger.info(
            "Alert escalated to step %d", alert.escalation_step,
            extra={"alert_id": alert_id, "step": alert.escalation_step},
        )
        return alert

    async def rewind_escalation(self, alert_id: str, step: int) -> bool:
        """Release a claimed `step` whose dispatch never went out."""
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Alert)
                .where(Alert.alert_id == alert_id, Alert.escalation_step == step)
                .values(escalation_step=step - 1, updated_at=self.clock())
            )
        released = result.rowcount == 1
        if released:
            logger.info(
                "Escalation step %d released", step,
                extra={"alert_id": alert_id, "step": step},
            )
        return released

    async def cancel_alert(self, alert_id: str) -> Alert:
        """Cancel a non-terminal alert. Recipients keep their status."""
        await self.expire_overdue(alert_id=alert_id)
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            alert = await session.get(Alert, alert_id, with_for_update=True)
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            if AlertStatus(alert.status).is_terminal:
                raise InvalidTransition(alert.status, AlertStatus.CANCELLED.value, alert_id=alert_id)
            alert.status = AlertStatus.CANCELLED.value
            alert.updated_at = now
        logger.info("Alert cancelled", extra={"alert_id": alert_id})
        return alert

    async def expire_overdue(self, alert_id: Optional[str] = None) -> int:
        """
        Expire unresolved alerts once `now` is past `expires_at`.

        Covers sent, delivered and acknowledged alerts. Recipients still in
        sent/delivered become `ignored` (logged, no reputation effect).
        Recipients that already answered are untouched. Limited to one
        alert when `alert_id` is given (the on-read path).

        Rows are locked alert first, then recipients, the same order a
        recipient transition takes them.

        Returns
        -------
        int
            Number of alerts expired.
        """
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            stmt = select(Alert.alert_id).where(
                Alert.status.in_([s.value for s in _OPEN_ALERT_STATUSES]),
                Alert.expires_at < now,
            )
            if alert_id is not None:
                stmt = stmt.where(Alert.alert_id == alert_id)
            stmt = stmt.order_by(Alert.alert_id).with_for_update()
            expired_ids = list((await session.execute(stmt)).scalars())
            if not expired_ids:
                return 0

            await session.execute(
                update(Alert)
                .where(
                    Alert.alert_id.in_(expired_ids),
                    Alert.status.in_([s.value for s in _OPEN_ALERT_STATUSES]),
                )
                .values(status=AlertStatus.EXPIRED.value, updated_at=now)
            )

            pending = await session.execute(
                select(AlertRecipient).where(
                    AlertRecipient.alert_id.in_(expired_ids),
                    AlertRecipient.status.in_([s.value for s in PENDING_RECIPIENT_STATUSES]),
                )
                .order_by(AlertRecipient.alert_id, AlertRecipient.user_id)
                .with_for_update()
            )
            for recipient in pending.scalars():
                session.add(RecipientTransition(
                    alert_id=recipient.alert_id, user_id=recipient.user_id,
                    from_status=recipient.status, to_status=RecipientStatus.IGNORED.value,
                    created_at=now,
                ))
                recipient.status = RecipientStatus.IGNORED.value
                recipient.updated_at = now

        logger.info("Expired %d overdue alert(s)", len(expired_ids))
        return len(expired_ids)

    async def purge_older_than(self, days: int) -> int:
        """Delete alerts sent before the retention window (cascades to children)."""
        if days <= 0:
            raise ValidationError("Retention must be at least one day", field="days")
        cutoff = self.clock() - timedelta(days=days)
        async with self.session_factory() as session, session.begin():
            result = await session.execute(delete(Alert).where(Alert.sent_at < cutoff))
            purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d alert(s) older than %d days", purged, days)
        return purged

    # ═══════════════════════════════════════════════════════════════════════
    # Devices & audit
    # ═══════════════════════════════════════════════════════════════════════

    async def remove_invalid_tokens(self, tokens_by_user: Dict[str, List[str]]) -> int:
        """One DELETE per affected user, all in a single transaction."""
        removed = 0
        async with self.session_factory() as session, session.begin():
            for user_id, tokens in tokens_by_user.items():
                removed += await remove_device_tokens(session, user_id, tokens)
        return removed

    async def record_delivery_logs(
        self,
        alert_id: str,
        step: int,
        urgency: str,
        title: str,
        recipient_ids: Sequence[str],
        devices: Sequence[DeviceDelivery],
    ) -> None:
        """Write one audit row per recipient for a dispatch."""
        by_user: Dict[str, List[DeviceDelivery]] = defaultdict(list)
        for delivery in devices:
            by_user[delivery.user_id].append(delivery)

        now = self.clock()
        async with self.session_factory() as session, session.begin():
            for user_id in recipient_ids:
                user_devices = by_user.get(user_id, [])
                codes = sorted({d.provider_code for d in user_devices if d.provider_code})
                session.add(DeliveryLog(
                    alert_id=alert_id,
                    user_id=user_id,
                    step=step,
                    urgency=urgency,
                    title=title,
                    tokens_targeted=len(user_devices),
                    tokens_succeeded=sum(1 for d in user_devices if d.succeeded),
                    tokens_invalid=sum(
                        1 for d in user_devices if d.outcome == DeliveryOutcome.INVALID_TOKEN
                    ),
                    provider_codes=",".join(codes) or None,
                    sent_at=now,
                ))

    # ═══════════════════════════════════════════════════════════════════════
    # Stats
    # ═══════════════════════════════════════════════════════════════════════

    async def recompute_user_stats(self, user_id: str) -> UserStats:
        """Rebuild a user's counters from registrations, alerts and the transition log."""
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            stats = await session.get(UserStats, user_id)
            if stats is None:
                raise NotFoundError("User", user_id=user_id)

            stats.plates_registered = await session.scalar(
                select(func.count()).select_from(PlateRegistration)
                .where(PlateRegistration.user_id == user_id)
            ) or 0
            stats.alerts_sent = await session.scalar(
                select(func.count()).select_from(Alert).where(Alert.sender_id == user_id)
            ) or 0
            stats.alerts_received = await session.scalar(
                select(func.count()).select_from(AlertRecipient)
                .where(AlertRecipient.user_id == user_id)
            ) or 0
            stats.alerts_acknowledged = await self._count_transitions(
                session, user_id, RecipientStatus.ACKNOWLEDGED,
            )
            stats.alerts_resolved = await self._count_transitions(
                session, user_id, RecipientStatus.RESOLVED,
            )

            rows = await session.execute(
                select(Alert.sent_at, AlertRecipient.acknowledged_at, AlertRecipient.resolved_at)
                .join(Alert, Alert.alert_id == AlertRecipient.alert_id)
                .where(AlertRecipient.user_id == user_id)
            )
            samples: List[float] = []
            for sent_at, acknowledged_at, resolved_at in rows:
                answered = [t for t in (acknowledged_at, resolved_at) if t is not None]
                if answered:
                    samples.append((min(answered) - sent_at).total_seconds())
            stats.response_samples = len(samples)
            stats.average_response_seconds = sum(samples) / len(samples) if samples else 0.0
            stats.updated_at = now

        logger.info("Recomputed stats", extra={"user_id": user_id})
        return stats

    @staticmethod
    async def _count_transitions(
        session: AsyncSession, user_id: str, status: RecipientStatus,
    ) -> int:
        return await session.scalar(
            select(func.count()).select_from(RecipientTransition)
            .where(
                RecipientTransition.user_id == user_id,
                RecipientTransition.to_status == status.value,
            )
        ) or 0
