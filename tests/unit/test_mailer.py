"""Unit tests for outbound mail: HttpMailer against a mock transport and
the fire-and-forget Notifier.
"""

from __future__ import annotations

import json

import httpx
import pytest

from concierge.core.exceptions import NotificationError
from concierge.services.mailer import HttpMailer, LoggingMailer, Notifier, TemplateKind
from tests.conftest import RecordingMailer


class TestHttpMailer:
    @pytest.mark.asyncio
    async def test_posts_template_request(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"id": "m-1"})

        mailer = HttpMailer(
            "https://mail.test/send",
            "secret-key",
            "bookings@acme.test",
            transport=httpx.MockTransport(handler),
        )
        await mailer.send(
            "pat@example.com",
            TemplateKind.BOOKING_CONFIRMATION,
            {"date": "2026-10-19", "slot": "10:00"},
        )

        request = seen[0]
        assert request.headers["Authorization"] == "Bearer secret-key"
        body = json.loads(request.content)
        assert body == {
            "from": "bookings@acme.test",
            "to": ["pat@example.com"],
            "template": "booking_confirmation",
            "data": {"date": "2026-10-19", "slot": "10:00"},
        }

    @pytest.mark.asyncio
    async def test_provider_error_raises_notification_error(self) -> None:
        mailer = HttpMailer(
            "https://mail.test/send",
            "secret-key",
            "bookings@acme.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(NotificationError):
            await mailer.send("pat@example.com", TemplateKind.ESCALATION, {})

    @pytest.mark.asyncio
    async def test_network_error_raises_notification_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        mailer = HttpMailer(
            "https://mail.test/send",
            "secret-key",
            "bookings@acme.test",
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(NotificationError):
            await mailer.send("pat@example.com", TemplateKind.ESCALATION, {})


class TestNotifier:
    @pytest.mark.asyncio
    async def test_delivers_in_background(self) -> None:
        mailer = RecordingMailer()
        notifier = Notifier(mailer)

        task = notifier.notify("owner@acme.test", TemplateKind.ESCALATION, {"title": "Help"})
        assert task is not None
        await notifier.drain()

        assert mailer.sent == [("owner@acme.test", TemplateKind.ESCALATION, {"title": "Help"})]

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self) -> None:
        notifier = Notifier(RecordingMailer(fail=True))
        task = notifier.notify("owner@acme.test", TemplateKind.ESCALATION, {})
        await notifier.drain()
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_swallowed(self) -> None:
        class BrokenMailer(RecordingMailer):
            async def send(self, recipient, template_kind, template_data) -> None:
                raise KeyError("template_data")

        notifier = Notifier(BrokenMailer())
        task = notifier.notify("owner@acme.test", TemplateKind.ESCALATION, {})
        await notifier.drain()
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_missing_recipient_is_skipped(self) -> None:
        mailer = RecordingMailer()
        notifier = Notifier(mailer)
        assert notifier.notify(None, TemplateKind.BOOKING_OWNER_NOTICE, {}) is None
        assert notifier.notify("", TemplateKind.BOOKING_OWNER_NOTICE, {}) is None
        await notifier.drain()
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_logging_mailer_never_fails(self) -> None:
        await LoggingMailer().send("pat@example.com", TemplateKind.ESCALATION, {"a": 1})
