"""
Outbound email notifications for new submissions.

The route hands the stored record to Notifier.submit(), which records the
attempt right away and delivers in a background task. Delivery never
affects the HTTP response: failures are logged and counted only.
"""

import asyncio
import html
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import httpx

from anonbox.config import Settings
from anonbox.metrics import record_notification_outcome
from anonbox.schemas import AbandonedMessageRecord, MessageRecord
from anonbox.utils import Clock, utc_now

logger = logging.getLogger(__name__)

Record = Union[MessageRecord, AbandonedMessageRecord]

# Attempts kept in memory for inspection
ATTEMPT_HISTORY = 100


class NotificationError(Exception):
    """Raised by a sender when the provider did not accept the email."""


@dataclass(frozen=True)
class Notification:
    subject: str
    text: str
    html: str


@dataclass
class NotificationAttempt:
    record_id: int
    subject: str
    queued_at: datetime
    status: str = "pending"  # pending, sent, failed, disabled
    error: Optional[str] = None


def _summary_rows(record: Record) -> list[tuple[str, str]]:
    agent = record.user_agent
    rows = [
        ("Time", record.timestamp),
        ("IP", record.ip),
        ("Location", record.location),
    ]
    if record.coordinates is not None:
        coords = record.coordinates
        accuracy = f" (±{coords.accuracy:.0f} m)" if coords.accuracy is not None else ""
        rows.append(("Coordinates", f"{coords.latitude}, {coords.longitude}{accuracy}"))
    rows += [
        ("Browser", f"{agent.browser} {agent.browser_version}"),
        ("OS", f"{agent.os} {agent.os_version}"),
        ("Device", agent.device_type),
        ("Source", record.source),
        ("Referrer", record.referrer),
        ("Language", record.language),
    ]
    if record.phone:
        rows.append(("Phone", record.phone))
    if record.share_tag is not None:
        rows.append(("Share tag", str(record.share_tag)))
    if record.time_on_page is not None:
        rows.append(("Time on page", str(record.time_on_page)))
    if isinstance(record, AbandonedMessageRecord):
        rows.append(("Reason", record.reason))
    return rows


def render_notification(record: Record) -> Notification:
    """Build the plain-text and HTML email for a stored record."""
    if isinstance(record, AbandonedMessageRecord):
        subject = "Abandoned draft captured"
        heading = "Someone started typing but left"
        body = record.partial_message
    else:
        subject = "New anonymous message"
        heading = "You received a new anonymous message"
        body = record.message

    rows = _summary_rows(record)

    text_body = "\n".join(
        [heading, "", body, "", "---"] + [f"{label}: {value}" for label, value in rows]
    )

    table_rows = "".join(
        f'<tr><td style="padding: 4px 12px 4px 0; color: #6b7280;">{html.escape(label)}</td>'
        f'<td style="padding: 4px 0;">{html.escape(value)}</td></tr>'
        for label, value in rows
    )
    html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="margin-top: 0;">{html.escape(heading)}</h2>
    <blockquote style="font-size: 16px; background: #f9fafb; border-left: 4px solid #6366f1; margin: 0 0 24px 0; padding: 12px 16px; white-space: pre-wrap;">{html.escape(body)}</blockquote>
    <table style="font-size: 13px; border-collapse: collapse;">{table_rows}</table>
</body>
</html>
"""
    return Notification(subject=subject, text=text_body, html=html_body)


class EmailSender:
    """Sends email through a Resend-style HTTP API (POST JSON with a bearer key)."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        recipients: list[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.sender = sender
        self.recipients = recipients
        self.client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["EmailSender"]:
        """Build a sender, or None when the email settings are incomplete."""
        if not settings.email_enabled:
            logger.info("Email settings incomplete, notifications disabled")
            return None
        recipients = [address.strip() for address in settings.EMAIL_TO.split(",") if address.strip()]
        return cls(
            api_url=settings.EMAIL_API_URL,
            api_key=settings.EMAIL_API_KEY,
            sender=settings.EMAIL_FROM,
            recipients=recipients,
        )

    async def send(self, notification: Notification) -> None:
        payload = {
            "from": self.sender,
            "to": self.recipients,
            "subject": notification.subject,
            "text": notification.text,
            "html": notification.html,
        }
        try:
            response = await self.client.post(self.api_url, json=payload)
        except httpx.RequestError as e:
            raise NotificationError(f"email request failed: {e.__class__.__name__}") from e
        if response.status_code >= 400:
            raise NotificationError(
                f"email provider answered HTTP {response.status_code}: {response.text[:200]}"
            )

    async def aclose(self) -> None:
        await self.client.aclose()


class Notifier:
    """
    Fire-and-forget notification queue.

    submit() must be called from a running event loop; it returns
    immediately with the attempt, whose status is updated once delivery
    finishes.
    """

    def __init__(self, sender: Optional[EmailSender] = None, clock: Clock = utc_now):
        self.sender = sender
        self.clock = clock
        self.attempts: deque[NotificationAttempt] = deque(maxlen=ATTEMPT_HISTORY)
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.sender is not None

    def submit(self, record: Record) -> NotificationAttempt:
        notification = render_notification(record)
        attempt = NotificationAttempt(
            record_id=record.id,
            subject=notification.subject,
            queued_at=self.clock(),
        )
        self.attempts.append(attempt)

        if self.sender is None:
            attempt.status = "disabled"
            record_notification_outcome("disabled")
            logger.debug(f"Notification for record {record.id} skipped, no email sender configured")
            return attempt

        task = asyncio.get_running_loop().create_task(self._deliver(attempt, notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return attempt

    async def _deliver(self, attempt: NotificationAttempt, notification: Notification) -> None:
        try:
            await self.sender.send(notification)
        except Exception as e:
            attempt.status = "failed"
            attempt.error = str(e)
            record_notification_outcome("failed")
            logger.error(f"Failed to send notification for record {attempt.record_id}: {e}", exc_info=True)
            return
        attempt.status = "sent"
        record_notification_outcome("sent")
        logger.info(f"Notification sent for record {attempt.record_id}")

    async def drain(self) -> None:
        """Wait for deliveries still in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self.sender is not None:
            await self.sender.aclose()
