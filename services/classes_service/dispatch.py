"""Fire-and-forget delivery of audit events and class notifications.

Delivery runs after the unit of work has committed. Failures are logged
and swallowed: a lost notification never undoes a booking.
"""

import asyncio
from typing import Iterable, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.service_client import internal_post
from services.classes_service.events import AuditEvent, Notification

logger = get_logger(__name__)


class EventDispatcher:
    """Posts events to the audit and communications services."""

    def __init__(
        self,
        *,
        audit_url: Optional[str] = None,
        communications_url: Optional[str] = None,
        calling_service: str = "classes",
    ):
        settings = get_settings()
        self.audit_url = audit_url or settings.AUDIT_SERVICE_URL
        self.communications_url = communications_url or settings.COMMUNICATIONS_SERVICE_URL
        self.calling_service = calling_service

    async def _post(self, service_url: str, path: str, payload: dict, label: str) -> None:
        try:
            response = await internal_post(
                service_url=service_url,
                path=path,
                calling_service=self.calling_service,
                json=payload,
            )
            if response.status_code >= 400:
                logger.warning(
                    "%s delivery rejected with %d: %s",
                    label,
                    response.status_code,
                    response.text[:200],
                )
        except httpx.HTTPError as exc:
            logger.warning("%s delivery failed: %s", label, exc)

    async def audit(self, event: AuditEvent) -> None:
        await self._post(
            self.audit_url,
            "/internal/audit/events",
            event.model_dump(mode="json"),
            f"Audit {event.action_type}",
        )

    async def notify(self, notification: Notification) -> None:
        await self._post(
            self.communications_url,
            "/internal/notifications/classes",
            notification.model_dump(mode="json"),
            f"Notification {notification.kind}",
        )

    async def publish(
        self,
        audits: Iterable[AuditEvent] = (),
        notifications: Iterable[Notification] = (),
    ) -> None:
        tasks = [self.audit(event) for event in audits]
        tasks += [self.notify(notification) for notification in notifications]
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Event delivery raised: %s", result)


def get_event_dispatcher() -> EventDispatcher:
    """FastAPI dependency."""
    return EventDispatcher()
