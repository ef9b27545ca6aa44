# tests/test_driver_registry.py
"""
Tests for the driver registry: lifecycle, eligibility matching,
reservations and write-through rollback.
"""
from __future__ import annotations

import pytest

from app.core.dispatch.domain import DriverStatus
from app.core.dispatch.driver_registry import DriverRegistry, EligibilityCriteria
from app.core.dispatch.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from app.infra.fake_backend import FakeBackendClient
from tests.factories import (
    ADMIN,
    CUSTOMER,
    DEPOT,
    DISPATCHER,
    FAR,
    NEAR,
    driver_actor,
    make_driver,
    make_sample,
)


async def _registry_with(*drivers, backend=None, **kwargs) -> DriverRegistry:
    registry = DriverRegistry(backend, **kwargs)
    for driver in drivers:
        await registry.upsert_driver(driver)
    return registry


# ============================================================================
# Registration lifecycle
# ============================================================================

class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_emits_event(self):
        events = []
        registry = DriverRegistry(event_sink=events.append)

        driver = await registry.register("Dana Levi", driver_id="D1")

        assert driver.status == DriverStatus.PENDING_APPROVAL
        assert len(events) == 1
        assert events[0].tag == "driver_registered"
        assert events[0].driver_id == "D1"
        assert events[0].subject == "driver"

    @pytest.mark.asyncio
    async def test_duplicate_conflicts(self):
        registry = DriverRegistry()
        await registry.register("A", driver_id="D1")
        with pytest.raises(ConflictError):
            await registry.register("B", driver_id="D1")

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            await DriverRegistry().register("   ", driver_id="D1")

    @pytest.mark.asyncio
    async def test_driver_registers_only_self(self):
        with pytest.raises(ForbiddenError):
            await DriverRegistry().register("A", driver_id="D2", actor=driver_actor("D1"))

    @pytest.mark.asyncio
    async def test_approve_requires_admin(self):
        registry = DriverRegistry()
        await registry.register("A", driver_id="D1")
        with pytest.raises(ForbiddenError):
            await registry.approve("D1", DISPATCHER)

        approved = await registry.approve("D1", ADMIN)
        assert approved.status == DriverStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_approve_twice_rejected(self):
        registry = DriverRegistry()
        await registry.register("A", driver_id="D1")
        await registry.approve("D1", ADMIN)
        with pytest.raises(InvalidTransitionError):
            await registry.approve("D1", ADMIN)

    @pytest.mark.asyncio
    async def test_punch_in_and_out(self):
        registry = DriverRegistry()
        await registry.register("A", driver_id="D1")
        await registry.approve("D1", ADMIN)

        assert (await registry.punch_in("D1", driver_actor("D1"))).status == DriverStatus.AVAILABLE
        assert (await registry.punch_out("D1", driver_actor("D1"))).status == DriverStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_pending_driver_cannot_punch_in(self):
        registry = DriverRegistry()
        await registry.register("A", driver_id="D1")
        with pytest.raises(ConflictError):
            await registry.punch_in("D1")

    @pytest.mark.asyncio
    async def test_other_driver_cannot_punch(self):
        registry = await _registry_with(make_driver("D1", status=DriverStatus.OFFLINE))
        with pytest.raises(ForbiddenError):
            await registry.punch_in("D1", driver_actor("D2"))

    @pytest.mark.asyncio
    async def test_suspend_blocked_while_holding_job(self):
        registry = await _registry_with(make_driver("D1"))
        await registry.reserve("D1", "job-1")
        with pytest.raises(ConflictError):
            await registry.suspend("D1", ADMIN)


# ============================================================================
# Status and reviews
# ============================================================================

class TestStatus:
    @pytest.mark.asyncio
    async def test_unknown_driver(self):
        with pytest.raises(NotFoundError):
            await DriverRegistry().set_status("nope", DriverStatus.OFFLINE)

    @pytest.mark.asyncio
    async def test_available_rejected_while_holding_job(self):
        registry = await _registry_with(make_driver("D1"))
        await registry.reserve("D1", "job-1")
        with pytest.raises(ConflictError):
            await registry.set_status("D1", DriverStatus.AVAILABLE)
        assert registry.get("D1").status == DriverStatus.BUSY

    @pytest.mark.asyncio
    async def test_break_allowed_while_holding_job(self):
        registry = await _registry_with(make_driver("D1"))
        await registry.reserve("D1", "job-1")
        driver = await registry.set_status("D1", DriverStatus.BREAK, driver_actor("D1"))
        assert driver.status == DriverStatus.BREAK
        assert driver.active_job_id == "job-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [driver_actor("D1"), DISPATCHER, ADMIN])
    @pytest.mark.parametrize("from_status,to_status", [
        (DriverStatus.OFFLINE, DriverStatus.AVAILABLE),
        (DriverStatus.AVAILABLE, DriverStatus.BREAK),
        (DriverStatus.BREAK, DriverStatus.OFFLINE),
    ])
    async def test_shift_changes_allowed(self, actor, from_status, to_status):
        registry = await _registry_with(make_driver("D1", status=from_status))
        driver = await registry.set_status("D1", to_status, actor)
        assert driver.status == to_status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [driver_actor("D1"), DISPATCHER])
    @pytest.mark.parametrize("to_status", [
        DriverStatus.BUSY,
        DriverStatus.PENDING_APPROVAL,
        DriverStatus.SUSPENDED,
    ])
    async def test_non_shift_targets_forbidden(self, actor, to_status):
        registry = await _registry_with(make_driver("D1"))
        with pytest.raises(ForbiddenError):
            await registry.set_status("D1", to_status, actor)
        assert registry.get("D1").status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [driver_actor("D1"), DISPATCHER])
    @pytest.mark.parametrize("from_status", [DriverStatus.PENDING_APPROVAL, DriverStatus.SUSPENDED])
    @pytest.mark.parametrize("to_status", [DriverStatus.AVAILABLE, DriverStatus.OFFLINE, DriverStatus.BREAK])
    async def test_gated_driver_cannot_leave_on_own(self, actor, from_status, to_status):
        registry = await _registry_with(make_driver("D1", status=from_status))
        with pytest.raises(ConflictError):
            await registry.set_status("D1", to_status, actor)
        assert registry.get("D1").status == from_status
        assert registry.find_eligible() == []

    @pytest.mark.asyncio
    async def test_admin_reinstates_suspended_driver(self):
        registry = await _registry_with(make_driver("D1", status=DriverStatus.SUSPENDED))
        driver = await registry.set_status("D1", DriverStatus.OFFLINE, ADMIN)
        assert driver.status == DriverStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_admin_cannot_mark_idle_driver_busy(self):
        registry = await _registry_with(make_driver("D1"))
        with pytest.raises(ConflictError):
            await registry.set_status("D1", DriverStatus.BUSY, ADMIN)

    @pytest.mark.asyncio
    async def test_registered_driver_cannot_self_activate(self):
        registry = DriverRegistry()
        await registry.register("Avi", driver_id="D9", actor=driver_actor("D9"))

        with pytest.raises(ConflictError):
            await registry.punch_in("D9", driver_actor("D9"))
        with pytest.raises(ConflictError):
            await registry.set_status("D9", DriverStatus.AVAILABLE, driver_actor("D9"))
        assert registry.get("D9").status == DriverStatus.PENDING_APPROVAL


class TestReviews:
    @pytest.mark.asyncio
    async def test_rating_is_rounded_mean(self):
        registry = await _registry_with(make_driver("D1"))
        await registry.add_review("D1", 5, CUSTOMER)
        await registry.add_review("D1", 4, CUSTOMER)
        rating = await registry.add_review("D1", 4, CUSTOMER)
        assert rating == 4.3
        assert registry.rating("D1") == 4.3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score", [0, 6, True])
    async def test_invalid_score_rejected(self, score):
        registry = await _registry_with(make_driver("D1"))
        with pytest.raises(ValidationError):
            await registry.add_review("D1", score, CUSTOMER)

    @pytest.mark.asyncio
    async def test_driver_cannot_review(self):
        registry = await _registry_with(make_driver("D1"))
        with pytest.raises(ForbiddenError):
            await registry.add_review("D1", 5, driver_actor("D2"))


# ============================================================================
# find_eligible()
# ============================================================================

class TestFindEligible:
    @pytest.mark.asyncio
    async def test_radius_and_distance_order(self):
        registry = await _registry_with(
            make_driver("far", coordinate=FAR),
            make_driver("near", coordinate=NEAR),
            make_driver("depot", coordinate=DEPOT),
        )

        drivers = registry.find_eligible(EligibilityCriteria(near=DEPOT, radius_m=5_000))
        assert [d.id for d in drivers] == ["depot", "near"]

    @pytest.mark.asyncio
    async def test_rating_order_without_reference_point(self):
        registry = await _registry_with(
            make_driver("b", reviews=[4]),
            make_driver("a", reviews=[4]),
            make_driver("c", reviews=[5]),
        )
        assert [d.id for d in registry.find_eligible()] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_equal_distance_ties_break_by_id(self):
        registry = await _registry_with(
            make_driver("D2", coordinate=NEAR),
            make_driver("D1", coordinate=NEAR),
        )
        drivers = registry.find_eligible(EligibilityCriteria(near=DEPOT))
        assert [d.id for d in drivers] == ["D1", "D2"]

    @pytest.mark.asyncio
    async def test_only_available_drivers(self):
        registry = await _registry_with(
            make_driver("on", status=DriverStatus.AVAILABLE),
            make_driver("off", status=DriverStatus.OFFLINE),
            make_driver("busy", status=DriverStatus.BUSY),
        )
        assert [d.id for d in registry.find_eligible()] == ["on"]

    @pytest.mark.asyncio
    async def test_vehicle_type_case_insensitive(self):
        registry = await _registry_with(
            make_driver("van", vehicle_type="Van"),
            make_driver("truck", vehicle_type="truck"),
            make_driver("none", vehicle_type=None),
        )
        drivers = registry.find_eligible(EligibilityCriteria(vehicle_type="VAN"))
        assert [d.id for d in drivers] == ["van"]

    @pytest.mark.asyncio
    async def test_stale_location_excluded_with_reference_point(self):
        registry = await _registry_with(
            make_driver("fresh", coordinate=NEAR),
            make_driver("stale", coordinate=NEAR, location_age=3600),
            make_driver("unknown", coordinate=None),
        )
        drivers = registry.find_eligible(EligibilityCriteria(near=DEPOT))
        assert [d.id for d in drivers] == ["fresh"]

    @pytest.mark.asyncio
    async def test_limit(self):
        registry = await _registry_with(*(make_driver(f"D{i}") for i in range(5)))
        assert len(registry.find_eligible(EligibilityCriteria(limit=2))) == 2

    def test_radius_without_reference_point_rejected(self):
        with pytest.raises(ValidationError):
            DriverRegistry().find_eligible(EligibilityCriteria(radius_m=100))

    def test_negative_radius_rejected(self):
        with pytest.raises(ValidationError):
            DriverRegistry().find_eligible(EligibilityCriteria(near=DEPOT, radius_m=-1))


# ============================================================================
# Location listener
# ============================================================================

class TestUpdateLocation:
    @pytest.mark.asyncio
    async def test_newer_sample_applied(self):
        registry = await _registry_with(make_driver("D1", coordinate=DEPOT, location_age=60))
        sample = make_sample(FAR)
        registry.update_location("D1", sample)
        assert registry.get("D1").location == sample

    @pytest.mark.asyncio
    async def test_older_sample_ignored(self):
        registry = await _registry_with(make_driver("D1", coordinate=DEPOT))
        registry.update_location("D1", make_sample(FAR, age_seconds=600))
        assert registry.get("D1").location.coordinate == DEPOT

    def test_unknown_subject_ignored(self):
        registry = DriverRegistry()
        registry.update_location("customer-device", make_sample())
        assert not registry.exists("customer-device")

    @pytest.mark.asyncio
    async def test_wired_to_tracker(self, tracker, registry):
        await registry.upsert_driver(make_driver("D1", coordinate=None))
        await tracker.record_sample("D1", make_sample(NEAR))
        await tracker.drain()
        assert registry.get("D1").location.coordinate == NEAR


# ============================================================================
# Reservations and persistence
# ============================================================================

class TestReservation:
    @pytest.mark.asyncio
    async def test_reserve_and_release(self):
        registry = await _registry_with(make_driver("D1"))

        before = await registry.reserve("D1", "job-1")
        assert before.status == DriverStatus.AVAILABLE
        assert registry.get("D1").active_job_id == "job-1"
        assert registry.get("D1").status == DriverStatus.BUSY

        await registry.release("D1", "job-1")
        assert registry.get("D1").active_job_id is None
        assert registry.get("D1").status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_reserve_busy_driver_conflicts(self):
        registry = await _registry_with(make_driver("D1"))
        await registry.reserve("D1", "job-1")
        with pytest.raises(ConflictError):
            await registry.reserve("D1", "job-2")

    @pytest.mark.asyncio
    async def test_release_keeps_break_status(self):
        registry = await _registry_with(make_driver("D1"))
        await registry.reserve("D1", "job-1")
        await registry.set_status("D1", DriverStatus.BREAK)

        await registry.release("D1", "job-1")
        assert registry.get("D1").status == DriverStatus.BREAK

    @pytest.mark.asyncio
    async def test_release_other_job_is_skipped(self):
        registry = await _registry_with(make_driver("D1"))
        await registry.reserve("D1", "job-1")
        assert await registry.release("D1", "job-2") is None
        assert registry.get("D1").active_job_id == "job-1"

    @pytest.mark.asyncio
    async def test_failed_save_rolls_back(self):
        backend = FakeBackendClient()
        registry = await _registry_with(make_driver("D1"), backend=backend)
        backend.fail_saves = True

        with pytest.raises(UpstreamUnavailable):
            await registry.reserve("D1", "job-1")

        driver = registry.get("D1")
        assert driver.status == DriverStatus.AVAILABLE
        assert driver.active_job_id is None

    @pytest.mark.asyncio
    async def test_failed_register_leaves_no_record(self):
        backend = FakeBackendClient()
        backend.fail_saves = True
        registry = DriverRegistry(backend)

        with pytest.raises(UpstreamUnavailable):
            await registry.register("A", driver_id="D1")
        assert not registry.exists("D1")

    @pytest.mark.asyncio
    async def test_writes_are_persisted(self):
        backend = FakeBackendClient()
        registry = await _registry_with(make_driver("D1"), backend=backend)
        await registry.reserve("D1", "job-1")
        assert backend.drivers["D1"].active_job_id == "job-1"


class TestLoadFromBackend:
    @pytest.mark.asyncio
    async def test_load_retries_transient_failures(self):
        backend = FakeBackendClient()
        backend.drivers["D1"] = make_driver("D1")
        backend.load_failures = 2

        registry = DriverRegistry(backend)
        assert await registry.load_from_backend() == 1
        assert backend.load_calls == 3
        assert registry.exists("D1")

    @pytest.mark.asyncio
    async def test_load_gives_up_after_retries(self):
        backend = FakeBackendClient()
        backend.load_failures = 10

        with pytest.raises(UpstreamUnavailable):
            await DriverRegistry(backend).load_from_backend()

    @pytest.mark.asyncio
    async def test_in_memory_records_win(self):
        backend = FakeBackendClient()
        registry = await _registry_with(make_driver("D1", name="Local"), backend=backend)
        backend.drivers["D1"] = make_driver("D1", name="Remote")

        assert await registry.load_from_backend() == 0
        assert registry.get("D1").name == "Local"

    @pytest.mark.asyncio
    async def test_listing_sorted_by_id(self):
        registry = await _registry_with(make_driver("b"), make_driver("a"))
        assert [d.id for d in registry.list()] == ["a", "b"]
