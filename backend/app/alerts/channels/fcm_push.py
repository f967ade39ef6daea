"""
fcm_push.py — Firebase Cloud Messaging (HTTP v1) push channel.

One HTTPS call per device:

    POST {base}/v1/projects/{project}/messages:send
    Authorization: Bearer <access token>
    {"message": {token, notification, data, android|apns|webpush}}

The data payload always carries `tag` = alert id so a re-sent escalation
replaces the previous notification on the device instead of stacking.

═══════════════════════════════════════════════════════════════════════════
OUTCOME CLASSIFICATION
═══════════════════════════════════════════════════════════════════════════

    Provider signal                                   Outcome
    ──────────────────────────────────────────────    ──────────────
    2xx                                               SUCCESS
    errorCode UNREGISTERED / SENDER_ID_MISMATCH       INVALID_TOKEN
    INVALID_ARGUMENT naming the registration token    INVALID_TOKEN
    messaging/invalid-registration-token              INVALID_TOKEN
    messaging/registration-token-not-registered       INVALID_TOKEN
    timeout, transport error, 401, 429, 5xx, other    TRANSIENT

The raw provider code is kept on the DeviceDelivery for logs and the
delivery audit only.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from backend.app.alerts.models import (
    DeliveryOutcome,
    DeliveryPriority,
    DeviceDelivery,
    DeviceTarget,
    Platform,
    RenderedMessage,
)
from backend.app.core.config import settings
from backend.app.core.errors import DeliveryError

logger = logging.getLogger(__name__)

INVALID_TOKEN_CODES = frozenset({
    "UNREGISTERED",
    "SENDER_ID_MISMATCH",
    "messaging/invalid-registration-token",
    "messaging/registration-token-not-registered",
})

# Only an invalid-argument error that names the token means the token is dead
AMBIGUOUS_TOKEN_CODES = frozenset({
    "INVALID_ARGUMENT",
    "messaging/invalid-argument",
})

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"


def _error_code(body: Any) -> Tuple[Optional[str], str]:
    """Pull (errorCode, message) out of an FCM v1 error body."""
    if not isinstance(body, dict):
        return None, ""
    error = body.get("error")
    if isinstance(error, str):
        return error, body.get("message", "") or ""
    if not isinstance(error, dict):
        return None, ""
    message = error.get("message", "") or ""
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            return detail["errorCode"], message
    return error.get("status"), message


def classify_error(http_status: Optional[int], body: Any) -> Tuple[DeliveryOutcome, Optional[str]]:
    """
    Map a failed provider response onto the closed outcome set.

    Returns
    -------
    (DeliveryOutcome, provider_code)
    """
    code, message = _error_code(body)
    if code in INVALID_TOKEN_CODES:
        return DeliveryOutcome.INVALID_TOKEN, code
    if code in AMBIGUOUS_TOKEN_CODES and "registration token" in message.lower():
        return DeliveryOutcome.INVALID_TOKEN, code
    return DeliveryOutcome.TRANSIENT, code or (f"HTTP_{http_status}" if http_status else None)


def build_message(
    target: DeviceTarget,
    message: RenderedMessage,
    alert_id: str,
    urgency: str,
    *,
    kind: str = "parking_alert",
) -> Dict[str, Any]:
    """FCM v1 `message` object for one device."""
    high = message.priority == DeliveryPriority.HIGH
    fcm: Dict[str, Any] = {
        "token": target.token,
        "notification": {"title": message.title, "body": message.body},
        "data": {
            "alert_id": alert_id,
            "urgency": urgency,
            "step": str(message.step),
            "tag": alert_id,
            "type": kind,
            "click_action": CLICK_ACTION,
        },
    }

    if target.platform == Platform.ANDROID:
        fcm["android"] = {
            "priority": "high" if high else "normal",
            "notification": {
                "tag": alert_id,
                "sound": message.android_sound,
                "channel_id": message.channel_id,
                "color": message.color,
                "notification_priority": "PRIORITY_MAX" if high else "PRIORITY_DEFAULT",
            },
        }
    elif target.platform == Platform.IOS:
        fcm["apns"] = {
            "headers": {
                "apns-priority": "10" if high else "5",
                "apns-push-type": "alert",
                "apns-collapse-id": alert_id,
            },
            "payload": {
                "aps": {
                    "alert": {"title": message.title, "body": message.body},
                    "sound": message.sound,
                    "badge": 1,
                    "thread-id": alert_id,
                    "category": kind,
                    "mutable-content": 1,
                },
            },
        }
    else:
        fcm["webpush"] = {
            "headers": {"Urgency": "high" if high else "normal"},
            "notification": {
                "title": message.title,
                "body": message.body,
                "tag": alert_id,
                "renotify": True,
            },
        }
    return fcm


class FcmPushChannel:
    """
    Sends single-device pushes. `send` never raises: every failure is
    folded into the returned DeviceDelivery.
    """

    def __init__(
        self,
        project_id: str,
        *,
        base_url: str = settings.FCM_BASE_URL,
        timeout_seconds: float = settings.PUSH_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.project_id = project_id
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = client
        self._owns_client = client is None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/v1/projects/{self.project_id}/messages:send"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(
        self,
        target: DeviceTarget,
        message: RenderedMessage,
        alert_id: str,
        urgency: str,
        access_token: str,
        *,
        kind: str = "parking_alert",
    ) -> DeviceDelivery:
        """
        Push one notification to one device.

        Parameters
        ----------
        target : DeviceTarget
        message : RenderedMessage
        alert_id : str
            Also used as the on-device replacement tag.
        urgency : str
        access_token : str
            Bearer token from PushCredentials.

        Returns
        -------
        DeviceDelivery
        """
        started = time.perf_counter()
        try:
            message_id = await self._post(
                build_message(target, message, alert_id, urgency, kind=kind), access_token,
            )
        except DeliveryError as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 1)
            level = logging.INFO if exc.outcome == DeliveryOutcome.INVALID_TOKEN.value else logging.WARNING
            logger.log(
                level,
                "Push to %s device failed: %s", target.platform.value, exc.message,
                extra={
                    "alert_id": alert_id,
                    "user_id": target.user_id,
                    "outcome": exc.outcome,
                    "provider_code": exc.provider_code,
                    "status_code": exc.http_status,
                    "duration_ms": duration_ms,
                },
            )
            return DeviceDelivery(
                user_id=target.user_id,
                token=target.token,
                platform=target.platform,
                outcome=DeliveryOutcome(exc.outcome),
                provider_code=exc.provider_code,
                http_status=exc.http_status,
                error_message=exc.message,
            )

        logger.debug(
            "Push to %s device delivered", target.platform.value,
            extra={
                "alert_id": alert_id,
                "user_id": target.user_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return DeviceDelivery(
            user_id=target.user_id,
            token=target.token,
            platform=target.platform,
            outcome=DeliveryOutcome.SUCCESS,
            http_status=200,
            message_id=message_id,
        )

    async def _post(self, fcm_message: Dict[str, Any], access_token: str) -> Optional[str]:
        client = await self._get_client()
        try:
            response = await client.post(
                self.endpoint,
                json={"message": fcm_message},
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError(
                f"timed out after {self.timeout_seconds}s",
                outcome=DeliveryOutcome.TRANSIENT.value,
                provider_code="TIMEOUT",
            ) from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(
                f"transport error: {exc}",
                outcome=DeliveryOutcome.TRANSIENT.value,
                provider_code="TRANSPORT_ERROR",
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_success:
            return body.get("name") if isinstance(body, dict) else None

        outcome, code = classify_error(response.status_code, body)
        _, provider_message = _error_code(body)
        raise DeliveryError(
            provider_message or f"HTTP {response.status_code}",
            outcome=outcome.value,
            provider_code=code,
            http_status=response.status_code,
        )
