"""
Tests for notification rendering, the HTTP email sender and the Notifier.
"""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from anonbox.config import Settings
from anonbox.notifications import (
    EmailSender,
    NotificationError,
    Notifier,
    render_notification,
)
from anonbox.schemas import AbandonedMessageRecord, Coordinates, MessageRecord, UserAgentInfo

from tests.fakes import START, RecordingSender, TickingClock


@pytest.fixture
def message_record():
    return MessageRecord(
        id=1765706400000,
        timestamp="2025-12-14T10:00:00.000Z",
        message="<b>you rock</b>",
        ip="8.8.8.8",
        location="Pune, India",
        coordinates=Coordinates(latitude=18.52, longitude=73.85, accuracy=30),
        user_agent=UserAgentInfo(browser="Chrome", browser_version="120.0.0", os="Windows", os_version="10"),
        referrer="https://www.instagram.com/",
        source="Instagram",
        language="en-US",
        phone="+919876543210",
        share_tag="story-1",
    )


@pytest.fixture
def abandoned_record():
    return AbandonedMessageRecord(
        id=1765706401000,
        timestamp="2025-12-14T10:00:01.000Z",
        partial_message="I wanted to",
        reason="inactivity_2min",
        ip="127.0.0.1",
        location="Local/Localhost",
    )


class TestRender:
    def test_message_summary(self, message_record):
        notification = render_notification(message_record)

        assert notification.subject == "New anonymous message"
        assert "<b>you rock</b>" in notification.text
        assert "Location: Pune, India" in notification.text
        assert "Coordinates: 18.52, 73.85 (±30 m)" in notification.text
        assert "Browser: Chrome 120.0.0" in notification.text
        assert "Source: Instagram" in notification.text
        assert "Phone: +919876543210" in notification.text
        assert "Share tag: story-1" in notification.text

    def test_html_is_escaped(self, message_record):
        notification = render_notification(message_record)

        assert "&lt;b&gt;you rock&lt;/b&gt;" in notification.html
        assert "<b>you rock</b>" not in notification.html

    def test_abandoned_summary(self, abandoned_record):
        notification = render_notification(abandoned_record)

        assert notification.subject == "Abandoned draft captured"
        assert "I wanted to" in notification.text
        assert "Reason: inactivity_2min" in notification.text
        assert "Phone" not in notification.text


class TestEmailSender:
    def make_sender(self, handler):
        return EmailSender(
            api_url="https://mail.test/emails",
            api_key="re_test",
            sender="box@example.com",
            recipients=["me@example.com"],
            transport=httpx.MockTransport(handler),
        )

    def test_posts_payload_with_bearer_key(self, message_record):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "email-1"})

        sender = self.make_sender(handler)
        notification = render_notification(message_record)

        async def _run():
            await sender.send(notification)
            await sender.aclose()

        asyncio.run(_run())

        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://mail.test/emails"
        assert request.headers["authorization"] == "Bearer re_test"
        body = json.loads(request.content)
        assert body["from"] == "box@example.com"
        assert body["to"] == ["me@example.com"]
        assert body["subject"] == "New anonymous message"
        assert body["text"] == notification.text
        assert body["html"] == notification.html

    def test_provider_error_raises(self, message_record):
        sender = self.make_sender(lambda request: httpx.Response(422, json={"message": "bad from"}))

        with pytest.raises(NotificationError, match="422"):
            asyncio.run(sender.send(render_notification(message_record)))

    def test_network_error_raises(self, message_record):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sender = self.make_sender(handler)

        with pytest.raises(NotificationError):
            asyncio.run(sender.send(render_notification(message_record)))

    def test_from_settings_requires_all_fields(self):
        assert EmailSender.from_settings(Settings(EMAIL_API_KEY="k", EMAIL_FROM="a@example.com")) is None

    def test_from_settings_splits_recipients(self):
        sender = EmailSender.from_settings(Settings(
            EMAIL_API_KEY="k", EMAIL_FROM="a@example.com", EMAIL_TO="b@example.com, c@example.com",
        ))

        assert sender.recipients == ["b@example.com", "c@example.com"]
        asyncio.run(sender.aclose())


class TestNotifier:
    def test_submit_records_attempt_before_delivery(self, message_record):
        """The attempt is visible immediately with its queue time from the clock."""
        sender = RecordingSender()
        notifier = Notifier(sender=sender, clock=TickingClock())

        async def _run():
            attempt = notifier.submit(message_record)
            assert attempt.status == "pending"
            assert sender.sent == []
            await notifier.drain()
            return attempt

        attempt = asyncio.run(_run())

        assert attempt.queued_at == START
        assert attempt.record_id == message_record.id
        assert attempt.status == "sent"
        assert len(sender.sent) == 1

    def test_failure_is_recorded_not_raised(self, message_record):
        notifier = Notifier(sender=RecordingSender(fail=True), clock=TickingClock())

        async def _run():
            notifier.submit(message_record)
            await notifier.drain()

        asyncio.run(_run())

        assert notifier.attempts[0].status == "failed"
        assert "provider rejected" in notifier.attempts[0].error

    def test_disabled_without_sender(self, message_record):
        notifier = Notifier(sender=None, clock=TickingClock())

        async def _run():
            return notifier.submit(message_record)

        attempt = asyncio.run(_run())

        assert not notifier.enabled
        assert attempt.status == "disabled"

    def test_attempt_history_is_bounded(self, message_record):
        notifier = Notifier(sender=None, clock=TickingClock())

        async def _run():
            for _ in range(250):
                notifier.submit(message_record)

        asyncio.run(_run())

        assert len(notifier.attempts) == 100

    def test_queued_at_uses_injected_clock(self, abandoned_record):
        clock = TickingClock(start=datetime(2030, 1, 1, tzinfo=timezone.utc))
        notifier = Notifier(sender=None, clock=clock)

        async def _run():
            return notifier.submit(abandoned_record)

        assert asyncio.run(_run()).queued_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
