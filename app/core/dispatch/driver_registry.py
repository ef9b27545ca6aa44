# app/core/dispatch/driver_registry.py
"""
Driver Registry.

Single writer for driver records. Every write runs under a per-driver
``asyncio.Lock`` and is persisted write-through to the backend; a failed
save restores the previous in-memory record and raises
``UpstreamUnavailable``.

Invariant: a driver holds at most one active job (``active_job_id``) and
cannot become ``available`` while holding one. Only the job engine calls
``reserve`` / ``release``.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.dispatch.authz import authorize_driver_self, require_role
from app.core.dispatch.domain import (
    Actor,
    Coordinate,
    Driver,
    DriverStatus,
    LocationSample,
    Role,
    TransitionEvent,
    Vehicle,
)
from app.core.dispatch.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from app.core.dispatch.location_tracker import distance
from app.core.dispatch.ports import BackendClient
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

EventSink = Callable[[TransitionEvent], None]

# Statuses that release() must not overwrite with "available".
_STICKY_ON_RELEASE = frozenset({
    DriverStatus.OFFLINE,
    DriverStatus.SUSPENDED,
    DriverStatus.BREAK,
})

# What drivers and dispatchers may set through set_status().
SHIFT_STATUSES = frozenset({
    DriverStatus.AVAILABLE,
    DriverStatus.OFFLINE,
    DriverStatus.BREAK,
})

# Entered and left only through admin operations.
GATED_STATUSES = frozenset({
    DriverStatus.PENDING_APPROVAL,
    DriverStatus.SUSPENDED,
})

MIN_REVIEW_SCORE = 1
MAX_REVIEW_SCORE = 5


@dataclass(frozen=True)
class EligibilityCriteria:
    """
    Filters for ``find_eligible``. Status is always ``available``.

    ``radius_m`` requires ``near``. With ``near`` set, drivers without a
    location fresher than ``max_location_age_seconds`` are excluded.
    """
    near: Optional[Coordinate] = None
    radius_m: Optional[float] = None
    vehicle_type: Optional[str] = None
    max_location_age_seconds: Optional[float] = None
    limit: Optional[int] = None


class DriverRegistry:
    def __init__(
        self,
        backend: Optional[BackendClient] = None,
        *,
        stale_after_seconds: float = 600,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._backend = backend
        self._stale_after = stale_after_seconds
        self._event_sink = event_sink
        self._drivers: dict[str, Driver] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _require(self, driver_id: str) -> Driver:
        driver = self._drivers.get(driver_id)
        if driver is None:
            raise NotFoundError(f"Driver {driver_id} not found")
        return driver

    async def _commit(self, previous: Optional[Driver], updated: Driver) -> Driver:
        """Install ``updated`` and persist it; restore ``previous`` if the save fails."""
        self._drivers[updated.id] = updated
        if self._backend is None:
            return updated.snapshot()
        try:
            await self._backend.save_driver(updated)
        except UpstreamUnavailable:
            if previous is None:
                self._drivers.pop(updated.id, None)
            else:
                self._drivers[updated.id] = previous
            logger.warning(f"Driver {updated.id} save failed; in-memory state rolled back")
            raise
        return updated.snapshot()

    async def _update(self, driver_id: str, mutate: Callable[[Driver], None]) -> Driver:
        async with self._locks[driver_id]:
            previous = self._require(driver_id)
            updated = previous.snapshot()
            mutate(updated)
            return await self._commit(previous, updated)

    def _emit(self, event: TransitionEvent) -> None:
        if self._event_sink is not None:
            self._event_sink(event)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get(self, driver_id: str) -> Driver:
        return self._require(driver_id).snapshot()

    def exists(self, driver_id: str) -> bool:
        return driver_id in self._drivers

    def list(
        self,
        status: Optional[DriverStatus] = None,
        vehicle_type: Optional[str] = None,
    ) -> list[Driver]:
        wanted_vehicle = vehicle_type.casefold() if vehicle_type else None
        drivers = []
        for driver in sorted(self._drivers.values(), key=lambda d: d.id):
            if status is not None and driver.status != status:
                continue
            if wanted_vehicle and not _vehicle_matches(driver, wanted_vehicle):
                continue
            drivers.append(driver.snapshot())
        return drivers

    def rating(self, driver_id: str) -> float:
        return self._require(driver_id).rating

    def find_eligible(self, criteria: EligibilityCriteria = EligibilityCriteria()) -> list[Driver]:
        """
        Available drivers matching ``criteria``.

        Ordered by ascending distance from ``near`` when given, otherwise
        by descending rating. Ties are broken by driver id.
        """
        if criteria.radius_m is not None:
            if criteria.near is None:
                raise ValidationError("radius_m requires a reference point (near)")
            if criteria.radius_m < 0:
                raise ValidationError("radius_m must be >= 0")

        max_age = (
            criteria.max_location_age_seconds
            if criteria.max_location_age_seconds is not None
            else self._stale_after
        )
        wanted_vehicle = criteria.vehicle_type.casefold() if criteria.vehicle_type else None

        matches: list[tuple[float, Driver]] = []
        for driver in self._drivers.values():
            if driver.status != DriverStatus.AVAILABLE:
                continue
            if wanted_vehicle and not _vehicle_matches(driver, wanted_vehicle):
                continue

            if criteria.near is None:
                matches.append((0.0, driver))
                continue

            if driver.location is None or driver.location.age_seconds() > max_age:
                continue
            meters = distance(criteria.near, driver.location.coordinate)
            if criteria.radius_m is not None and meters > criteria.radius_m:
                continue
            matches.append((meters, driver))

        if criteria.near is not None:
            matches.sort(key=lambda item: (item[0], item[1].id))
        else:
            matches.sort(key=lambda item: (-item[1].rating, item[1].id))

        drivers = [driver.snapshot() for _, driver in matches]
        if criteria.limit is not None:
            drivers = drivers[:criteria.limit]
        return drivers

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def upsert_driver(self, driver: Driver) -> Driver:
        """Insert or replace a driver record keyed by id."""
        if not driver.id:
            raise ValidationError("driver id is required")
        async with self._locks[driver.id]:
            previous = self._drivers.get(driver.id)
            return await self._commit(previous, driver.snapshot())

    async def register(
        self,
        name: str,
        *,
        driver_id: Optional[str] = None,
        vehicle: Optional[Vehicle] = None,
        actor: Optional[Actor] = None,
    ) -> Driver:
        """New driver in ``pending_approval``; emits ``driver_registered``."""
        if not name or not name.strip():
            raise ValidationError("name is required")
        driver_id = driver_id or uuid.uuid4().hex
        if actor is not None and actor.role == Role.DRIVER and actor.id != driver_id:
            raise ForbiddenError("Drivers register under their own id")

        async with self._locks[driver_id]:
            if driver_id in self._drivers:
                raise ConflictError(f"Driver {driver_id} already registered")
            driver = Driver(
                id=driver_id,
                name=name.strip(),
                status=DriverStatus.PENDING_APPROVAL,
                vehicle=vehicle,
            )
            snapshot = await self._commit(None, driver)

        audit_event("driver.register", driver_id=driver_id, actor_id=actor.id if actor else None)
        self._emit(TransitionEvent(
            tag="driver_registered",
            driver_id=driver_id,
            subject="driver",
        ))
        logger.info(f"Driver {driver_id} registered (pending approval)")
        return snapshot

    async def approve(self, driver_id: str, actor: Optional[Actor] = None) -> Driver:
        """pending_approval -> offline. The driver punches in on their own."""
        require_role(actor, Role.ADMIN, action="approve drivers")

        def mutate(driver: Driver) -> None:
            if driver.status != DriverStatus.PENDING_APPROVAL:
                raise InvalidTransitionError(
                    f"Driver {driver_id} is '{driver.status.value}', not pending approval"
                )
            driver.status = DriverStatus.OFFLINE

        snapshot = await self._update(driver_id, mutate)
        audit_event("driver.approve", driver_id=driver_id, actor_id=actor.id if actor else None)
        return snapshot

    async def suspend(self, driver_id: str, actor: Optional[Actor] = None) -> Driver:
        require_role(actor, Role.ADMIN, action="suspend drivers")

        def mutate(driver: Driver) -> None:
            if driver.active_job_id is not None:
                raise ConflictError(f"Driver {driver_id} holds job {driver.active_job_id}")
            driver.status = DriverStatus.SUSPENDED

        snapshot = await self._update(driver_id, mutate)
        audit_event("driver.suspend", driver_id=driver_id, actor_id=actor.id if actor else None)
        return snapshot

    async def set_status(
        self,
        driver_id: str,
        status: DriverStatus,
        actor: Optional[Actor] = None,
    ) -> Driver:
        """
        Shift status change. Drivers and dispatchers may only move between
        available, offline and break; busy follows assignment, and leaving
        pending_approval or suspended takes an admin.
        """
        authorize_driver_self(actor, driver_id, "change status")
        privileged = actor is None or actor.role == Role.ADMIN
        if not privileged and status not in SHIFT_STATUSES:
            raise ForbiddenError(f"Status '{status.value}' is not set by {actor.role.value}s")

        def mutate(driver: Driver) -> None:
            if not privileged and driver.status in GATED_STATUSES:
                raise ConflictError(
                    f"Driver {driver_id} is '{driver.status.value}'; an admin must change it"
                )
            if status == DriverStatus.AVAILABLE and driver.active_job_id is not None:
                raise ConflictError(
                    f"Driver {driver_id} still holds job {driver.active_job_id}"
                )
            if status == DriverStatus.BUSY and driver.active_job_id is None:
                raise ConflictError(f"Driver {driver_id} holds no job and cannot be busy")
            if status in GATED_STATUSES and driver.active_job_id is not None:
                raise ConflictError(f"Driver {driver_id} holds job {driver.active_job_id}")
            driver.status = status

        snapshot = await self._update(driver_id, mutate)
        logger.info(f"Driver {driver_id} status -> {status.value}")
        return snapshot

    async def punch_in(self, driver_id: str, actor: Optional[Actor] = None) -> Driver:
        authorize_driver_self(actor, driver_id, "punch in")

        def mutate(driver: Driver) -> None:
            if driver.status in (DriverStatus.SUSPENDED, DriverStatus.PENDING_APPROVAL):
                raise ConflictError(f"Driver {driver_id} is '{driver.status.value}' and cannot punch in")
            if driver.active_job_id is not None:
                driver.status = DriverStatus.BUSY
            else:
                driver.status = DriverStatus.AVAILABLE

        return await self._update(driver_id, mutate)

    async def punch_out(self, driver_id: str, actor: Optional[Actor] = None) -> Driver:
        authorize_driver_self(actor, driver_id, "punch out")

        def mutate(driver: Driver) -> None:
            if driver.status in (DriverStatus.SUSPENDED, DriverStatus.PENDING_APPROVAL):
                return
            driver.status = DriverStatus.OFFLINE

        return await self._update(driver_id, mutate)

    async def add_review(self, driver_id: str, score: float, actor: Optional[Actor] = None) -> float:
        """Record a 1-5 score and return the new rating."""
        require_role(actor, Role.CUSTOMER, Role.DISPATCHER, Role.ADMIN, action="review drivers")
        if isinstance(score, bool) or not MIN_REVIEW_SCORE <= score <= MAX_REVIEW_SCORE:
            raise ValidationError(f"score must be between {MIN_REVIEW_SCORE} and {MAX_REVIEW_SCORE}")

        snapshot = await self._update(driver_id, lambda driver: driver.reviews.append(score))
        return snapshot.rating

    def update_location(self, driver_id: str, sample: LocationSample) -> None:
        """
        Location Tracker listener. Unknown subjects (customer devices) are
        ignored; location is telemetry and is not persisted from here.
        """
        driver = self._drivers.get(driver_id)
        if driver is None:
            return
        if driver.location is not None and sample.timestamp < driver.location.timestamp:
            return
        driver.location = sample

    # ------------------------------------------------------------------
    # engine-only
    # ------------------------------------------------------------------

    async def reserve(self, driver_id: str, job_id: str) -> Driver:
        """
        Bind ``job_id`` to the driver and mark them busy.

        Returns the driver as it was before the reservation so the caller
        can ``restore`` it if its own write fails.
        """
        async with self._locks[driver_id]:
            previous = self._require(driver_id)
            if previous.status != DriverStatus.AVAILABLE:
                raise ConflictError(
                    f"Driver {driver_id} is '{previous.status.value}', not available"
                )
            if previous.active_job_id is not None:
                raise ConflictError(
                    f"Driver {driver_id} already holds job {previous.active_job_id}"
                )
            updated = previous.snapshot()
            updated.status = DriverStatus.BUSY
            updated.active_job_id = job_id
            await self._commit(previous, updated)
            return previous.snapshot()

    async def release(self, driver_id: str, job_id: str) -> Optional[Driver]:
        """
        Unbind ``job_id``. The driver goes back to ``available`` unless they
        are offline, on break or suspended. Returns the pre-release record,
        or None if the driver was not holding ``job_id``.
        """
        async with self._locks[driver_id]:
            previous = self._drivers.get(driver_id)
            if previous is None:
                logger.warning(f"Release of unknown driver {driver_id} for job {job_id}")
                return None
            if previous.active_job_id != job_id:
                logger.warning(
                    f"Driver {driver_id} holds {previous.active_job_id!r}, not {job_id}; release skipped"
                )
                return None
            updated = previous.snapshot()
            updated.active_job_id = None
            if updated.status not in _STICKY_ON_RELEASE:
                updated.status = DriverStatus.AVAILABLE
            await self._commit(previous, updated)
            return previous.snapshot()

    async def restore(self, snapshot: Driver) -> None:
        """
        Put a driver back to ``snapshot`` after a failed job write.
        Best effort: a second backend failure is logged, the in-memory
        record is restored regardless.
        """
        async with self._locks[snapshot.id]:
            current = self._drivers.get(snapshot.id)
            if current is not None:
                snapshot.location = current.location
            self._drivers[snapshot.id] = snapshot
            if self._backend is None:
                return
            try:
                await self._backend.save_driver(snapshot)
            except UpstreamUnavailable as exc:
                logger.error(f"Driver {snapshot.id} restore not persisted: {exc.detail}")

    async def load_from_backend(self) -> int:
        """Hydrate from the backend. Existing in-memory records win."""
        if self._backend is None:
            return 0
        drivers = await self._backend.load_drivers()
        loaded = 0
        for driver in drivers:
            if driver.id in self._drivers:
                continue
            self._drivers[driver.id] = driver
            loaded += 1
        logger.info(f"Loaded {loaded} drivers from backend")
        return loaded


def _vehicle_matches(driver: Driver, wanted: str) -> bool:
    return driver.vehicle is not None and driver.vehicle.type.casefold() == wanted
