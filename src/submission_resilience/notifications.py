"""Admin alert delivery (webhook/slack/email)."""

from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from typing import TYPE_CHECKING, Any

import httpx
import structlog

if TYPE_CHECKING:
    from submission_resilience.config import AlertSettings
    from submission_resilience.errors import StandardError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class AlertNotifier:
    """Send alert-worthy errors to every configured channel.

    Channels are independent: a failing webhook does not stop the Slack
    message or the email. Delivery failures are logged, never raised.
    """

    def __init__(
        self,
        settings: AlertSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client

    @property
    def enabled(self) -> bool:
        s = self._settings
        return bool(s.webhook_url or s.slack_webhook_url or (s.smtp_host and s.recipient))

    async def notify(self, error: StandardError) -> None:
        payload: dict[str, Any] = {
            "event": "resilience_alert",
            "error_id": error.id,
            "kind": error.kind.value,
            "code": error.code.value,
            "message": error.message,
            "operation_name": error.context.get("operation_name"),
            "timestamp": error.timestamp.isoformat(),
        }

        tasks: list[asyncio.Task[None]] = []
        if self._settings.webhook_url:
            tasks.append(
                asyncio.create_task(self._post(self._settings.webhook_url, payload))
            )
        if self._settings.slack_webhook_url:
            slack_payload = {
                "text": f"[{error.code.value}] {error.id}: {error.message}"
            }
            tasks.append(
                asyncio.create_task(
                    self._post(self._settings.slack_webhook_url, slack_payload)
                )
            )
        if self._settings.smtp_host and self._settings.recipient:
            tasks.append(asyncio.create_task(asyncio.to_thread(self._send_email, error)))

        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.warning(
                    "admin_alert_failed",
                    error_id=error.id,
                    reason=str(result) or type(result).__name__,
                )

    async def _post(self, url: str, payload: dict[str, Any]) -> None:
        if self._client is not None:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()

    def _send_email(self, error: StandardError) -> None:
        smtp_host = self._settings.smtp_host
        recipient = self._settings.recipient
        if smtp_host is None or recipient is None:
            return

        msg = EmailMessage()
        msg["Subject"] = f"submission-resilience alert: {error.code.value}"
        msg["From"] = self._settings.smtp_username or "submission-resilience@localhost"
        msg["To"] = recipient
        msg.set_content(
            f"Error: {error.id}\n"
            f"Kind: {error.kind.value}\n"
            f"Code: {error.code.value}\n"
            f"At: {error.timestamp.isoformat()}\n\n"
            f"{error.message}"
        )

        with smtplib.SMTP(
            smtp_host, self._settings.smtp_port, timeout=self._settings.timeout_seconds
        ) as smtp:
            if self._settings.smtp_username and self._settings.smtp_password:
                smtp.starttls()
                smtp.login(self._settings.smtp_username, self._settings.smtp_password)
            smtp.send_message(msg)
