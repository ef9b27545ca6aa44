# tests/test_notifications.py
"""Tests for the event -> notification table, the inbox store and the dispatcher."""
from __future__ import annotations

import asyncio

import pytest

from app.core.dispatch.domain import Actor, JobStatus, Notification, Role, TransitionEvent
from app.core.dispatch.errors import NotFoundError, UpstreamUnavailable
from app.core.dispatch.notifications import (
    TEMPLATES,
    NotificationDispatcher,
    NotificationStore,
    on_transition,
)
from app.infra.metrics import get_metrics_collector
from tests.factories import ADMIN, CUSTOMER, DISPATCHER, RecordingPush, driver_actor


def _event(tag: str, **kwargs) -> TransitionEvent:
    values = {
        "job_id": "job-1",
        "job_number": "JOB12345678ABCD",
        "customer_id": "C1",
        "driver_id": "D1",
    }
    values.update(kwargs)
    return TransitionEvent(tag=tag, **values)


class SlowPush(RecordingPush):
    async def send(self, recipient, title, body, payload, roles=None) -> bool:
        await asyncio.sleep(5)
        return True


# ============================================================================
# on_transition()
# ============================================================================

class TestOnTransition:
    def test_job_assigned_goes_to_driver(self):
        [n] = on_transition(_event("job_assigned", status=JobStatus.ASSIGNED))
        assert n.recipient_id == "D1"
        assert n.title == "New Job Assignment"
        assert "JOB12345678ABCD" in n.body
        assert n.payload == {
            "type": "job_assignment",
            "event": "job_assigned",
            "job_id": "job-1",
            "job_number": "JOB12345678ABCD",
            "status": "assigned",
        }

    @pytest.mark.parametrize("tag", ["en_route_pickup", "arrived_pickup", "en_route_delivery", "delivered", "job_cancelled"])
    def test_customer_facing_tags(self, tag):
        [n] = on_transition(_event(tag))
        assert n.recipient_id == "C1"

    def test_new_job_broadcasts_to_staff(self):
        [n] = on_transition(_event("new_job_created", driver_id=None))
        assert n.is_broadcast
        assert n.roles == frozenset({Role.DISPATCHER, Role.ADMIN})

    def test_driver_registration_to_admins(self):
        event = TransitionEvent(tag="driver_registered", driver_id="D7", subject="driver")
        [n] = on_transition(event)
        assert n.roles == frozenset({Role.ADMIN})
        assert n.payload["driver_id"] == "D7"
        assert "D7" in n.body

    @pytest.mark.parametrize("tag", ["picked_up", "arrived_delivery", "job_unassigned", "on_hold", "unknown"])
    def test_unmapped_tags_produce_nothing(self, tag):
        assert on_transition(_event(tag)) == []

    def test_missing_recipient_produces_nothing(self):
        assert on_transition(_event("job_assigned", driver_id=None)) == []

    def test_every_template_has_title_and_body(self):
        for tag, template in TEMPLATES.items():
            assert template.title, tag
            assert template.body, tag


# ============================================================================
# NotificationStore
# ============================================================================

class TestStore:
    def test_list_newest_first_and_scoped(self):
        store = NotificationStore()
        first = Notification(id="n1", title="a", body="a", recipient_id="C1")
        second = Notification(id="n2", title="b", body="b", recipient_id="C1")
        other = Notification(id="n3", title="c", body="c", recipient_id="C2")
        for n in (first, second, other):
            store.add(n)

        assert [n.id for n in store.list_for(CUSTOMER)] == ["n2", "n1"]
        assert [n.id for n in store.list_for(CUSTOMER, limit=1)] == ["n2"]

    def test_broadcast_read_state_per_user(self):
        store = NotificationStore()
        store.add(Notification(id="n1", title="t", body="b", roles=frozenset({Role.DISPATCHER, Role.ADMIN})))

        store.mark_read("n1", DISPATCHER)
        assert store.unread_count(DISPATCHER) == 0
        assert store.unread_count(ADMIN) == 1
        assert store.list_for(ADMIN, unread_only=True)[0].id == "n1"

    def test_mark_read_not_addressed(self):
        store = NotificationStore()
        store.add(Notification(id="n1", title="t", body="b", recipient_id="C1"))
        with pytest.raises(NotFoundError):
            store.mark_read("n1", driver_actor("D1"))
        with pytest.raises(NotFoundError):
            store.mark_read("missing", CUSTOMER)

    def test_mark_all_read(self):
        store = NotificationStore()
        for i in range(3):
            store.add(Notification(id=f"n{i}", title="t", body="b", recipient_id="C1"))
        assert store.mark_all_read(CUSTOMER) == 3
        assert store.mark_all_read(CUSTOMER) == 0
        assert store.unread_count(CUSTOMER) == 0

    def test_oldest_evicted_at_capacity(self):
        store = NotificationStore(max_items=2)
        for i in range(3):
            store.add(Notification(id=f"n{i}", title="t", body="b", recipient_id="C1"))
        assert len(store) == 2
        assert store.get("n0") is None


# ============================================================================
# NotificationDispatcher
# ============================================================================

class TestDispatcher:
    @pytest.mark.asyncio
    async def test_deliver_records_then_pushes(self):
        push = RecordingPush()
        dispatcher = NotificationDispatcher(NotificationStore(), push)
        [n] = on_transition(_event("job_assigned"))

        assert await dispatcher.deliver(n) is True
        assert dispatcher.store.get(n.id).delivered is True
        assert push.sent[0]["recipient"] == "D1"
        assert push.sent[0]["payload"]["notification_id"] == n.id
        assert push.sent[0]["roles"] is None

    @pytest.mark.asyncio
    async def test_broadcast_push_carries_roles(self):
        push = RecordingPush()
        dispatcher = NotificationDispatcher(NotificationStore(), push)
        [n] = on_transition(_event("new_job_created"))

        await dispatcher.deliver(n)
        assert push.sent[0]["recipient"] is None
        assert push.sent[0]["roles"] == ["admin", "dispatcher"]

    @pytest.mark.asyncio
    async def test_push_failure_still_recorded(self):
        dispatcher = NotificationDispatcher(NotificationStore(), RecordingPush(fail=True))
        [n] = on_transition(_event("delivered"))

        assert await dispatcher.deliver(n) is False
        stored = dispatcher.store.get(n.id)
        assert stored is not None
        assert stored.delivered is False
        assert get_metrics_collector().get_counter("notifications_failed", provider="recording") == 1

    @pytest.mark.asyncio
    async def test_push_exception_is_contained(self):
        push = RecordingPush(raise_exc=UpstreamUnavailable("push down"))
        dispatcher = NotificationDispatcher(NotificationStore(), push)
        [n] = on_transition(_event("delivered"))

        assert await dispatcher.deliver(n) is False
        assert dispatcher.store.get(n.id) is not None

    @pytest.mark.asyncio
    async def test_unexpected_push_error_is_contained(self):
        push = RecordingPush(raise_exc=RuntimeError("bug"))
        dispatcher = NotificationDispatcher(NotificationStore(), push)
        [n] = on_transition(_event("delivered"))
        assert await dispatcher.deliver(n) is False

    @pytest.mark.asyncio
    async def test_push_timeout_is_bounded(self):
        dispatcher = NotificationDispatcher(NotificationStore(), SlowPush(), push_timeout_seconds=0.05)
        [n] = on_transition(_event("delivered"))

        assert await asyncio.wait_for(dispatcher.deliver(n), timeout=1) is False
        assert dispatcher.store.get(n.id) is not None

    @pytest.mark.asyncio
    async def test_fifo_processing(self):
        push = RecordingPush()
        dispatcher = NotificationDispatcher(NotificationStore(), push)
        await dispatcher.start()
        try:
            for tag in ("en_route_pickup", "arrived_pickup", "en_route_delivery", "delivered"):
                dispatcher.publish(_event(tag))
            await dispatcher.drain()
        finally:
            await dispatcher.stop()

        assert [p["payload"]["event"] for p in push.sent] == [
            "en_route_pickup", "arrived_pickup", "en_route_delivery", "delivered",
        ]
        assert not dispatcher.is_running

    @pytest.mark.asyncio
    async def test_queue_full_skips_push_but_keeps_notification(self):
        push = RecordingPush()
        dispatcher = NotificationDispatcher(NotificationStore(), push, queue_max=1)
        dispatcher.publish(_event("en_route_delivery"))
        dispatcher.publish(_event("delivered"))

        assert get_metrics_collector().get_counter("notifications_failed", provider="queue_full") == 1
        await dispatcher.drain()

        inbox = dispatcher.store.list_for(CUSTOMER)
        assert [n.payload["event"] for n in inbox] == ["delivered", "en_route_delivery"]
        assert [p["payload"]["event"] for p in push.sent] == ["en_route_delivery"]
        assert inbox[0].delivered is False

    @pytest.mark.asyncio
    async def test_publish_records_before_push(self):
        push = RecordingPush()
        dispatcher = NotificationDispatcher(NotificationStore(), push)

        [n] = dispatcher.publish(_event("job_assigned"))

        assert dispatcher.store.get(n.id) is n
        assert push.sent == []
        await dispatcher.drain()
        assert n.delivered is True

    @pytest.mark.asyncio
    async def test_drain_without_consumer_processes_inline(self):
        push = RecordingPush()
        dispatcher = NotificationDispatcher(NotificationStore(), push)
        dispatcher.publish(_event("job_assigned"))
        await dispatcher.drain()
        assert len(push.sent) == 1

    def test_read_view_for_staff(self):
        n = Notification(id="n1", title="t", body="b", roles=frozenset({Role.ADMIN}))
        assert n.to_dict(Actor("a1", Role.ADMIN))["roles"] == ["admin"]
