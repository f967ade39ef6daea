"""
dispatcher.py — Push delivery to every device of a recipient set.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Render          │  escalation.render(urgency, step, custom text)
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Devices         │  live DeviceTokens of every recipient
    │                     │  none at all → empty report, no token exchange
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Credential      │  one access token for the whole batch
    │                     │  CredentialError → abort, nothing mutated
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Fan out         │  one push per device, concurrently,
    │                     │  bounded by a semaphore; failures are isolated
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5. Apply outcomes  │  invalid tokens → one DELETE per user
    │                     │  ≥1 success   → mark_delivered(recipient)
    │                     │  audit row per recipient (delivery_logs)
    └─────────────────────┘

Transient failures are reported, never retried here: the next escalation
step is the retry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from backend.app.alerts import escalation
from backend.app.alerts.alert_service import AlertStore
from backend.app.alerts.channels.credentials import PushCredentials
from backend.app.alerts.channels.fcm_push import FcmPushChannel
from backend.app.alerts.models import (
    DeliveryOutcome,
    DeliveryReport,
    DeviceDelivery,
    DeviceTarget,
    RenderedMessage,
    ResponseKind,
    UrgencyLevel,
)
from backend.app.core.errors import CredentialError

logger = logging.getLogger(__name__)


class PushDispatcher:
    """
    Parameters
    ----------
    store : AlertStore
        Device lookup, token pruning, delivery marking and audit.
    channel : FcmPushChannel
    credentials : PushCredentials, optional
        None when the provider is not configured; any batch with devices
        then fails with CredentialError.
    max_concurrency : int
        Upper bound on in-flight provider calls.
    """

    def __init__(
        self,
        store: AlertStore,
        channel: FcmPushChannel,
        credentials: Optional[PushCredentials],
        *,
        max_concurrency: int = 20,
    ):
        self.store = store
        self.channel = channel
        self.credentials = credentials
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def deliver(
        self,
        recipient_ids: Iterable[str],
        alert_id: str,
        urgency: str,
        step: int,
        custom_message: Optional[str] = None,
    ) -> DeliveryReport:
        """
        Push the rendered step to all devices of `recipient_ids`.

        Raises
        ------
        CredentialError
            No access token could be obtained; no device was contacted and
            no alert or recipient state changed.
        """
        recipients = sorted(set(recipient_ids))
        report = DeliveryReport(alert_id=alert_id, step=step, recipients_targeted=len(recipients))
        message = escalation.render(urgency, step, custom_message)
        urgency = UrgencyLevel(urgency).value
        if not recipients:
            report.completed_at = datetime.now(timezone.utc)
            return report

        targets = await self.store.device_targets(recipients)
        devices = [t for uid in recipients for t in targets.get(uid, [])]
        if devices:
            access_token = await self._access_token()
            started = time.perf_counter()
            report.devices = await self._fan_out(
                devices, message, alert_id, urgency, "parking_alert", access_token,
            )
            logger.info(
                "Dispatched step %d to %d device(s): %d ok, %d invalid, %d transient",
                step, report.targeted, report.succeeded,
                report.invalid_tokens, report.transient_failed,
                extra={
                    "alert_id": alert_id,
                    "urgency": urgency,
                    "step": step,
                    "device_count": report.targeted,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
        else:
            logger.info(
                "No registered devices for %d recipient(s)", len(recipients),
                extra={"alert_id": alert_id, "step": step, "device_count": 0},
            )

        report.invalid_removed = await self._prune_invalid(report.devices)

        delivered_users = sorted({d.user_id for d in report.devices if d.succeeded})
        for user_id in delivered_users:
            await self.store.mark_delivered(alert_id, user_id)
        report.recipients_delivered = delivered_users

        await self.store.record_delivery_logs(
            alert_id, step, urgency, message.title, recipients, report.devices,
        )
        report.completed_at = datetime.now(timezone.utc)
        return report

    async def notify_sender(
        self,
        sender_id: str,
        alert_id: str,
        response: ResponseKind,
    ) -> DeliveryReport:
        """Push the recipient's reply back to the reporter's devices."""
        report = DeliveryReport(alert_id=alert_id, step=0, recipients_targeted=1)
        targets = await self.store.device_targets([sender_id])
        devices = targets.get(sender_id, [])
        if devices:
            access_token = await self._access_token()
            message = escalation.render_response(response)
            report.devices = await self._fan_out(
                devices, message, alert_id, "normal", "alert_response", access_token,
            )
            report.invalid_removed = await self._prune_invalid(report.devices)
            logger.info(
                "Response '%s' pushed to sender: %d/%d device(s)",
                ResponseKind(response).value, report.succeeded, report.targeted,
                extra={"alert_id": alert_id, "user_id": sender_id, "device_count": report.targeted},
            )
        report.completed_at = datetime.now(timezone.utc)
        return report

    # ── internals ──

    async def _access_token(self) -> str:
        if self.credentials is None:
            raise CredentialError("push provider is not configured")
        return await self.credentials.get_access_token()

    async def _fan_out(
        self,
        devices: Sequence[DeviceTarget],
        message: RenderedMessage,
        alert_id: str,
        urgency: str,
        kind: str,
        access_token: str,
    ) -> List[DeviceDelivery]:
        return list(await asyncio.gather(*(
            self._send_one(target, message, alert_id, urgency, kind, access_token)
            for target in devices
        )))

    async def _send_one(
        self,
        target: DeviceTarget,
        message: RenderedMessage,
        alert_id: str,
        urgency: str,
        kind: str,
        access_token: str,
    ) -> DeviceDelivery:
        async with self._semaphore:
            try:
                return await self.channel.send(
                    target, message, alert_id, urgency, access_token, kind=kind,
                )
            except Exception as exc:
                logger.exception(
                    "Unexpected push failure", extra={"alert_id": alert_id, "user_id": target.user_id},
                )
                return DeviceDelivery(
                    user_id=target.user_id,
                    token=target.token,
                    platform=target.platform,
                    outcome=DeliveryOutcome.TRANSIENT,
                    provider_code="INTERNAL_ERROR",
                    error_message=str(exc),
                )

    async def _prune_invalid(self, devices: Sequence[DeviceDelivery]) -> int:
        invalid: Dict[str, List[str]] = defaultdict(list)
        for delivery in devices:
            if delivery.outcome == DeliveryOutcome.INVALID_TOKEN:
                invalid[delivery.user_id].append(delivery.token)
        if not invalid:
            return 0
        removed = await self.store.remove_invalid_tokens(dict(invalid))
        logger.info(
            "Removed %d invalid device token(s) across %d user(s)", removed, len(invalid),
            extra={"device_count": removed, "outcome": DeliveryOutcome.INVALID_TOKEN.value},
        )
        return removed
