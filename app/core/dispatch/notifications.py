# app/core/dispatch/notifications.py
"""
Notification Dispatcher.

Turns transition events into addressed notifications using a declarative
table (``TEMPLATES``), records them in the ``NotificationStore`` and hands
them to the push provider.

Push is fire-and-forget relative to the job mutation. ``publish`` records
the notifications in the store synchronously, in emission order, and only
enqueues the push; a single consumer task pushes in FIFO order. Push
failures, including a full queue, are logged and counted and never lose
client-visible state.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.core.dispatch.domain import Actor, Notification, Role, TransitionEvent
from app.core.dispatch.errors import NotFoundError, UpstreamUnavailable
from app.core.dispatch.ports import PushSender
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class Audience(str, Enum):
    DRIVER = "driver"
    CUSTOMER = "customer"
    ROLES = "roles"


@dataclass(frozen=True)
class NotificationTemplate:
    audience: Audience
    title: str
    body: str
    payload_type: str
    roles: frozenset[Role] = frozenset()


# event tag -> who hears about it and what they read
TEMPLATES: dict[str, NotificationTemplate] = {
    "job_assigned": NotificationTemplate(
        audience=Audience.DRIVER,
        title="New Job Assignment",
        body="You have been assigned job #{job}",
        payload_type="job_assignment",
    ),
    "en_route_pickup": NotificationTemplate(
        audience=Audience.CUSTOMER,
        title="Driver En Route",
        body="Your driver is heading to the pickup location for job #{job}",
        payload_type="status_update",
    ),
    "arrived_pickup": NotificationTemplate(
        audience=Audience.CUSTOMER,
        title="Driver Arrived",
        body="Your driver has arrived at the pickup location for job #{job}",
        payload_type="status_update",
    ),
    "en_route_delivery": NotificationTemplate(
        audience=Audience.CUSTOMER,
        title="En Route to Delivery",
        body="Your shipment is on the way for job #{job}",
        payload_type="status_update",
    ),
    "delivered": NotificationTemplate(
        audience=Audience.CUSTOMER,
        title="Delivery Complete",
        body="Your shipment has been delivered for job #{job}",
        payload_type="delivery_complete",
    ),
    "job_cancelled": NotificationTemplate(
        audience=Audience.CUSTOMER,
        title="Job Cancelled",
        body="Job #{job} has been cancelled",
        payload_type="job_cancelled",
    ),
    "new_job_created": NotificationTemplate(
        audience=Audience.ROLES,
        title="New Job Created",
        body="Job #{job} needs to be assigned",
        payload_type="new_job",
        roles=frozenset({Role.DISPATCHER, Role.ADMIN}),
    ),
    "driver_registered": NotificationTemplate(
        audience=Audience.ROLES,
        title="New Driver Registration",
        body="Driver {driver} is waiting for approval",
        payload_type="driver_registration",
        roles=frozenset({Role.ADMIN}),
    ),
}


def on_transition(event: TransitionEvent) -> list[Notification]:
    """
    Map an event to zero or more notifications. No delivery, no storage.

    Unknown tags, and single-recipient templates whose recipient is absent
    from the event, produce nothing.
    """
    template = TEMPLATES.get(event.tag)
    if template is None:
        return []

    payload = {
        "type": template.payload_type,
        "event": event.tag,
        "job_id": event.job_id,
        "job_number": event.job_number,
    }
    if event.status is not None:
        payload["status"] = event.status.value
    if event.subject == "driver":
        payload["driver_id"] = event.driver_id

    body = template.body.format(
        job=event.job_number or event.job_id or "",
        driver=event.driver_id or "",
    )

    if template.audience == Audience.ROLES:
        return [Notification(
            id=uuid.uuid4().hex,
            title=template.title,
            body=body,
            payload=payload,
            roles=template.roles,
        )]

    recipient = event.driver_id if template.audience == Audience.DRIVER else event.customer_id
    if not recipient:
        logger.warning(f"No {template.audience.value} on event {event.tag} for job {event.job_id}")
        return []

    return [Notification(
        id=uuid.uuid4().hex,
        title=template.title,
        body=body,
        payload=payload,
        recipient_id=recipient,
    )]


# ============================================================================
# STORE
# ============================================================================

class NotificationStore:
    """
    In-memory inbox. Read state is per user: a role broadcast is read
    independently by each dispatcher/admin who acknowledges it.
    """

    def __init__(self, max_items: int = 10000) -> None:
        self._items: OrderedDict[str, Notification] = OrderedDict()
        self._max_items = max_items

    def add(self, notification: Notification) -> None:
        self._items[notification.id] = notification
        while len(self._items) > self._max_items:
            self._items.popitem(last=False)

    def get(self, notification_id: str) -> Optional[Notification]:
        return self._items.get(notification_id)

    def __len__(self) -> int:
        return len(self._items)

    def list_for(
        self,
        actor: Actor,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Notification]:
        """Notifications addressed to ``actor``, newest first."""
        result = []
        for notification in reversed(self._items.values()):
            if not notification.is_addressed_to(actor):
                continue
            if unread_only and notification.is_read_by(actor.id):
                continue
            result.append(notification)
            if limit is not None and len(result) >= limit:
                break
        return result

    def unread_count(self, actor: Actor) -> int:
        return sum(
            1 for n in self._items.values()
            if n.is_addressed_to(actor) and not n.is_read_by(actor.id)
        )

    def mark_read(self, notification_id: str, actor: Actor) -> Notification:
        notification = self._items.get(notification_id)
        if notification is None or not notification.is_addressed_to(actor):
            raise NotFoundError(f"Notification {notification_id} not found")
        notification.read_by.add(actor.id)
        return notification

    def mark_all_read(self, actor: Actor) -> int:
        updated = 0
        for notification in self._items.values():
            if notification.is_addressed_to(actor) and not notification.is_read_by(actor.id):
                notification.read_by.add(actor.id)
                updated += 1
        return updated


# ============================================================================
# DISPATCHER
# ============================================================================

class NotificationDispatcher:
    def __init__(
        self,
        store: NotificationStore,
        push: PushSender,
        *,
        push_timeout_seconds: float = 5.0,
        queue_max: int = 10000,
    ) -> None:
        self._store = store
        self._push = push
        self._push_timeout = push_timeout_seconds
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=queue_max)
        self._consumer: Optional[asyncio.Task] = None

    @property
    def store(self) -> NotificationStore:
        return self._store

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @staticmethod
    def on_transition(event: TransitionEvent) -> list[Notification]:
        return on_transition(event)

    def publish(self, event: TransitionEvent) -> list[Notification]:
        """
        Record the event's notifications and enqueue their push.

        Never blocks and never raises to the caller. A full queue only
        drops the push; the notifications are already in the store.
        """
        notifications = on_transition(event)
        for notification in notifications:
            self._record(notification)
            try:
                self._queue.put_nowait(notification)
            except asyncio.QueueFull:
                DispatchMetrics.notification_failed("queue_full")
                logger.error(
                    f"Notification queue full; push skipped for {event.tag} "
                    f"(job {event.job_id}, notification {notification.id})"
                )
        return notifications

    async def deliver(self, notification: Notification) -> bool:
        """Record, then push under a bounded timeout. Returns push success."""
        self._record(notification)
        return await self._send(notification)

    def _record(self, notification: Notification) -> None:
        self._store.add(notification)
        DispatchMetrics.notification_created(notification.payload.get("event", "unknown"))

    async def _send(self, notification: Notification) -> bool:
        provider = self._push.name
        roles = sorted(role.value for role in notification.roles) or None
        try:
            sent = await asyncio.wait_for(
                self._push.send(
                    notification.recipient_id,
                    notification.title,
                    notification.body,
                    {**notification.payload, "notification_id": notification.id},
                    roles=roles,
                ),
                timeout=self._push_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Push via {provider} timed out for notification {notification.id}")
            sent = False
        except UpstreamUnavailable as exc:
            logger.warning(f"Push via {provider} unavailable for notification {notification.id}: {exc.detail}")
            sent = False
        except Exception:
            logger.exception(f"Push via {provider} failed for notification {notification.id}")
            sent = False

        if sent:
            notification.delivered = True
            DispatchMetrics.notification_sent(provider)
        else:
            DispatchMetrics.notification_failed(provider)
        return sent

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._send(notification)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._consumer = asyncio.create_task(self._run(), name="notification-dispatcher")
        logger.info("Notification dispatcher started")

    async def drain(self) -> None:
        """Push everything queued so far."""
        if self.is_running:
            await self._queue.join()
            return
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self._send(notification)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        await self.drain()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.info("Notification dispatcher stopped")
