"""
workflow.py — Request-facing alert operations.

Ties the fanout/state store to the dispatcher and enforces who may do what:

    Operation        Caller must be
    ─────────────    ─────────────────────────
    report           anyone (becomes the sender)
    respond/resolve  a recipient of the alert
    get              the sender or a recipient
    escalate         the sender
    cancel           the sender
    deliveries       the sender

A report always yields an alert id. Delivery problems (no devices, provider
credential failure, per-device errors) are visible in the delivery report
and audit log, never as a failure of the report itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from backend.app.alerts.alert_service import AlertStore
from backend.app.alerts.dispatcher import PushDispatcher
from backend.app.alerts.models import (
    PENDING_RECIPIENT_STATUSES,
    AlertStatus,
    DeliveryReport,
    RecipientStatus,
    ResponseKind,
)
from backend.app.alerts.tables import Alert, DeliveryLog
from backend.app.core.errors import (
    CredentialError,
    ForbiddenError,
    InvalidTransition,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class BlockageReport:
    """Outcome of a report: the persisted alert plus its first dispatch."""
    alert: Alert
    delivery: Optional[DeliveryReport] = None
    dispatch_error: Optional[str] = None

    @property
    def alert_id(self) -> str:
        return self.alert.alert_id


def parse_response_kind(value: str) -> ResponseKind:
    try:
        return ResponseKind(value)
    except ValueError:
        raise ValidationError(
            f"Unknown response '{value}'",
            field="response",
            allowed=[r.value for r in ResponseKind],
        )


class AlertWorkflow:
    def __init__(self, store: AlertStore, dispatcher: PushDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def report_blockage(
        self,
        sender_id: str,
        fingerprint: str,
        urgency: str,
        message: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> BlockageReport:
        alert = await self.store.create_alert(sender_id, fingerprint, urgency, message, ttl)
        result = BlockageReport(alert=alert)
        recipient_ids = [r.user_id for r in alert.recipients]
        if not recipient_ids:
            logger.info("No registered recipients; dispatch skipped", extra={"alert_id": alert.alert_id})
            return result

        try:
            result.delivery = await self.dispatcher.deliver(
                recipient_ids, alert.alert_id, alert.urgency, 0, alert.custom_message,
            )
        except CredentialError as exc:
            logger.error(
                "Initial dispatch aborted: %s", exc.message,
                extra={"alert_id": alert.alert_id},
            )
            result.dispatch_error = exc.message
        return result

    async def respond(self, alert_id: str, user_id: str, response: str) -> bool:
        """Recipient acknowledges with a reply; the sender is told best-effort."""
        kind = parse_response_kind(response)
        applied = await self.store.transition_recipient(
            alert_id, user_id, RecipientStatus.ACKNOWLEDGED.value, response=kind.value,
        )
        if applied:
            alert = await self.store.get_alert(alert_id)
            try:
                await self.dispatcher.notify_sender(alert.sender_id, alert_id, kind)
            except CredentialError as exc:
                logger.warning(
                    "Could not notify sender of response: %s", exc.message,
                    extra={"alert_id": alert_id, "user_id": alert.sender_id},
                )
        return applied

    async def resolve(self, alert_id: str, user_id: str) -> bool:
        return await self.store.transition_recipient(
            alert_id, user_id, RecipientStatus.RESOLVED.value,
        )

    async def escalate(self, alert_id: str, caller_id: str) -> DeliveryReport:
        """
        Re-send the next ladder step to recipients that have not answered.

        The step is claimed before anything is sent, so concurrent calls
        never send the same step twice. A credential failure releases the
        claim and leaves the alert as it was.
        """
        alert = await self.store.get_alert(alert_id)
        self._require_sender(alert, caller_id)
        if AlertStatus(alert.status).is_terminal:
            raise InvalidTransition(alert.status, "escalated", alert_id=alert_id)

        claimed = await self.store.advance_escalation(alert_id, alert.escalation_step)
        step = claimed.escalation_step
        pending = await self.store.get_recipient_ids(alert_id, PENDING_RECIPIENT_STATUSES)
        try:
            return await self.dispatcher.deliver(
                pending, alert_id, alert.urgency, step, alert.custom_message,
            )
        except CredentialError:
            await self.store.rewind_escalation(alert_id, step)
            raise

    async def cancel(self, alert_id: str, caller_id: str) -> Alert:
        alert = await self.store.get_alert(alert_id)
        self._require_sender(alert, caller_id)
        return await self.store.cancel_alert(alert_id)

    async def get_alert(self, alert_id: str, caller_id: str) -> Alert:
        alert = await self.store.get_alert(alert_id)
        if caller_id != alert.sender_id and caller_id not in {r.user_id for r in alert.recipients}:
            raise ForbiddenError("Alert", caller_id, alert_id=alert_id)
        return alert

    async def deliveries(self, alert_id: str, caller_id: str) -> List[DeliveryLog]:
        alert = await self.store.get_alert(alert_id)
        self._require_sender(alert, caller_id)
        return await self.store.list_delivery_logs(alert_id)

    @staticmethod
    def _require_sender(alert: Alert, caller_id: str) -> None:
        if caller_id != alert.sender_id:
            raise ForbiddenError("Alert", caller_id, alert_id=alert.alert_id)
