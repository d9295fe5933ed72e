"""Outbound e-mail notifications.

Template design lives with the mail provider; this module only names the
template and supplies its data. Sends are fire-and-forget: a failed
notification is logged and never fails the operation that triggered it.
"""

from __future__ import annotations

import asyncio
import enum
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from concierge.core.exceptions import NotificationError

logger = structlog.get_logger(__name__)

_TIMEOUT_SECONDS = 10.0


class TemplateKind(str, enum.Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    BOOKING_OWNER_NOTICE = "booking_owner_notice"
    ESCALATION = "escalation"


class Mailer(ABC):
    @abstractmethod
    async def send(
        self, recipient: str, template_kind: TemplateKind, template_data: dict[str, Any]
    ) -> None:
        """Deliver one templated mail. Raises NotificationError on failure."""
        ...


class HttpMailer(Mailer):
    """Posts templated mail requests to a transactional mail HTTP API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender
        self._transport = transport

    async def send(
        self, recipient: str, template_kind: TemplateKind, template_data: dict[str, Any]
    ) -> None:
        payload = {
            "from": self._sender,
            "to": [recipient],
            "template": TemplateKind(template_kind).value,
            "data": template_data,
        }
        try:
            async with httpx.AsyncClient(
                timeout=_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = await client.post(
                    self._api_url,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Mail delivery failed: {e}") from e

        logger.info(
            "mail_sent",
            template=TemplateKind(template_kind).value,
            status_code=response.status_code,
        )


class LoggingMailer(Mailer):
    """Used when no mail API is configured (development and tests)."""

    async def send(
        self, recipient: str, template_kind: TemplateKind, template_data: dict[str, Any]
    ) -> None:
        logger.info(
            "mail_logged",
            recipient=recipient,
            template=TemplateKind(template_kind).value,
            fields=sorted(template_data),
        )


class Notifier:
    """Schedules mail sends as background tasks.

    Holds a reference to every in-flight task so none is garbage
    collected mid-send; ``drain()`` waits for them (shutdown and tests).
    """

    def __init__(self, mailer: Mailer) -> None:
        self._mailer = mailer
        self._pending: set[asyncio.Task] = set()

    def notify(
        self,
        recipient: str | None,
        template_kind: TemplateKind,
        template_data: dict[str, Any],
    ) -> asyncio.Task | None:
        if not recipient:
            logger.debug("notification_skipped_no_recipient", template=template_kind.value)
            return None
        task = asyncio.create_task(
            self._deliver(recipient, template_kind, template_data)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(
        self,
        recipient: str,
        template_kind: TemplateKind,
        template_data: dict[str, Any],
    ) -> None:
        # Runs as a background task: nothing may propagate to the event loop.
        try:
            await self._mailer.send(recipient, template_kind, template_data)
        except NotificationError as e:
            logger.warning(
                "notification_failed",
                template=template_kind.value,
                error=e.message,
            )
        except Exception as e:
            logger.error(
                "notification_task_error",
                template=template_kind.value,
                error=str(e),
            )

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
