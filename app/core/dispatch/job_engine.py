# app/core/dispatch/job_engine.py
"""
Job Lifecycle Engine.

The only writer of job status. Mutations on the same job are serialized
by a per-job ``asyncio.Lock``; when a driver is involved the registry's
per-driver lock is taken inside it (lock order: job, then driver).

Every mutating call returns ``TransitionResult(job=<snapshot>, events=[...])``.
Re-applying the status a job already has is a no-op success with no
events, so device retries are harmless.

Write-through: the driver is updated first, then the job. If the job save
fails the driver is restored and ``UpstreamUnavailable`` propagates.
"""
from __future__ import annotations

import asyncio
import secrets
import string
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Optional

from app.core.dispatch.authz import (
    authorize_cancel,
    authorize_create,
    authorize_job_read,
    authorize_transition,
    require_staff,
)
from app.core.dispatch.domain import (
    Actor,
    Coordinate,
    Job,
    JobSpec,
    JobStatus,
    JobType,
    LocationSample,
    Priority,
    Role,
    StatusChange,
    TransitionEvent,
    TransitionResult,
    utcnow,
)
from app.core.dispatch.driver_registry import DriverRegistry
from app.core.dispatch.errors import (
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from app.core.dispatch.location_tracker import (
    LocationTracker,
    distance,
    estimate_duration_minutes,
    format_distance,
    format_duration,
)
from app.core.dispatch.ports import BackendClient
from app.core.dispatch.state_machine import (
    ENGINE_ONLY_TARGETS,
    can_transition,
    is_resume,
)
from app.infra.audit_log import audit_event
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

EventSink = Callable[[TransitionEvent], None]

_CODE_ALPHABET = string.digits + string.ascii_uppercase

# Statuses in which the route view shows the driver and an ETA
_BEFORE_PICKUP = frozenset({JobStatus.ASSIGNED, JobStatus.EN_ROUTE_PICKUP, JobStatus.ARRIVED_PICKUP})
_UNDER_WAY = _BEFORE_PICKUP | {JobStatus.PICKED_UP, JobStatus.EN_ROUTE_DELIVERY, JobStatus.ARRIVED_DELIVERY}


def generate_job_number() -> str:
    """``JOB`` + last 8 digits of the epoch millis + 4 base36 chars."""
    millis = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    return f"JOB{millis}{suffix}"


def generate_tracking_code() -> str:
    millis = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"TRK{millis}{suffix}"


def _actor_id(actor: Optional[Actor]) -> Optional[str]:
    return actor.id if actor else None


def _reject(detail: str, reason: str) -> InvalidTransitionError:
    DispatchMetrics.transition_rejected(reason)
    return InvalidTransitionError(detail)


class JobEngine:
    def __init__(
        self,
        registry: DriverRegistry,
        tracker: Optional[LocationTracker] = None,
        backend: Optional[BackendClient] = None,
        *,
        event_sink: Optional[EventSink] = None,
        average_speed_kmh: float = 50.0,
        stale_after_seconds: float = 600,
    ) -> None:
        self._registry = registry
        self._tracker = tracker
        self._backend = backend
        self._event_sink = event_sink
        self._average_speed = average_speed_kmh
        self._stale_after = stale_after_seconds
        self._jobs: dict[str, Job] = {}
        self._by_tracking_code: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._sequences: defaultdict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _fresh_driver_sample(self, driver_id: str) -> Optional[LocationSample]:
        """Tracker position first, then the registry copy; stale fixes count as unknown."""
        sample = None
        if self._tracker is not None:
            sample = self._tracker.current_location(driver_id, max_age_seconds=self._stale_after)
        if sample is None and self._registry.exists(driver_id):
            location = self._registry.get(driver_id).location
            if location is not None and location.age_seconds() <= self._stale_after:
                sample = location
        return sample

    async def _commit(self, previous: Optional[Job], updated: Job) -> None:
        self._jobs[updated.id] = updated
        self._by_tracking_code[updated.tracking_code] = updated.id
        if self._backend is None:
            return
        try:
            await self._backend.save_job(updated)
        except UpstreamUnavailable:
            if previous is None:
                self._jobs.pop(updated.id, None)
                self._by_tracking_code.pop(updated.tracking_code, None)
            else:
                self._jobs[updated.id] = previous
            logger.warning(f"Job {updated.id} save failed; in-memory state rolled back")
            raise

    def _advance(
        self,
        job: Job,
        target: JobStatus,
        actor: Optional[Actor],
        coordinate: Optional[Coordinate] = None,
        note: str = "",
    ) -> Job:
        """Copy of ``job`` moved to ``target`` with a history entry."""
        now = utcnow()
        updated = job.snapshot()
        updated.status = target
        updated.updated_at = now
        updated.status_history.append(StatusChange(
            status=target,
            at=now,
            actor_id=_actor_id(actor),
            coordinate=coordinate,
            note=note,
        ))
        if target == JobStatus.PICKED_UP:
            updated.actual_pickup_at = now
        elif target == JobStatus.DELIVERED:
            updated.actual_delivery_at = now
        return updated

    def _event(
        self,
        job: Job,
        tag: str,
        previous_status: Optional[JobStatus],
        driver_id: Optional[str] = None,
    ) -> TransitionEvent:
        self._sequences[job.id] += 1
        return TransitionEvent(
            tag=tag,
            job_id=job.id,
            job_number=job.job_number,
            status=job.status,
            previous_status=previous_status,
            customer_id=job.customer_id,
            driver_id=driver_id or job.driver_id,
            sequence=self._sequences[job.id],
        )

    def _emit(self, events: list[TransitionEvent]) -> None:
        for event in events:
            if event.status is not None:
                DispatchMetrics.job_transition(event.status.value)
            if self._event_sink is not None:
                self._event_sink(event)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self, spec: JobSpec, actor: Optional[Actor] = None) -> TransitionResult:
        missing = [
            name for name, value in (
                ("customer_id", spec.customer_id),
                ("pickup", spec.pickup),
                ("delivery", spec.delivery),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if spec.type == JobType.SCHEDULED and spec.scheduled_at is None:
            raise ValidationError("scheduled jobs require scheduled_at")

        authorize_create(actor, spec.customer_id)

        meters = distance(spec.pickup.coordinate, spec.delivery.coordinate)
        now = utcnow()
        job = Job(
            id=uuid.uuid4().hex,
            job_number=generate_job_number(),
            tracking_code=generate_tracking_code(),
            customer_id=spec.customer_id,
            pickup=spec.pickup,
            delivery=spec.delivery,
            type=spec.type,
            priority=spec.priority,
            scheduled_at=spec.scheduled_at,
            distance_m=round(meters, 1),
            estimated_duration_min=estimate_duration_minutes(meters, self._average_speed),
            cargo=dict(spec.cargo),
            status_history=[StatusChange(status=JobStatus.PENDING, at=now, actor_id=_actor_id(actor))],
            created_at=now,
            updated_at=now,
        )

        async with self._locks[job.id]:
            await self._commit(None, job)
            events = [self._event(job, "new_job_created", None)]
            self._emit(events)

        DispatchMetrics.job_created(job.type.value)
        audit_event("job.create", job_id=job.id, actor_id=_actor_id(actor), detail=job.job_number)
        LogContext(logger, actor_id=_actor_id(actor), job_id=job.id).info(
            f"Job {job.job_number} created ({job.type.value}, {job.priority.value})"
        )
        return TransitionResult(job=job.snapshot(), events=events)

    # ------------------------------------------------------------------
    # assignment
    # ------------------------------------------------------------------

    async def assign(self, job_id: str, driver_id: str, actor: Optional[Actor] = None) -> TransitionResult:
        require_staff(actor, "assign jobs")

        async with self._locks[job_id]:
            job = self._require(job_id)

            if job.status == JobStatus.ASSIGNED and job.driver_id == driver_id:
                return TransitionResult(job=job.snapshot())

            assignable = job.status == JobStatus.PENDING or (
                job.status == JobStatus.ON_HOLD and job.held_from == JobStatus.PENDING
            )
            if not assignable:
                if job.driver_id is not None:
                    raise _reject(
                        f"Job {job.job_number} is already bound to driver {job.driver_id}",
                        "already_assigned",
                    )
                raise _reject(
                    f"Cannot assign job {job.job_number} in status '{job.status.value}'",
                    "not_assignable",
                )

            driver_before = await self._registry.reserve(driver_id, job_id)

            updated = self._advance(job, JobStatus.ASSIGNED, actor)
            updated.driver_id = driver_id
            updated.held_from = None
            try:
                await self._commit(job, updated)
            except UpstreamUnavailable:
                await self._registry.restore(driver_before)
                raise

            events = [self._event(updated, "job_assigned", job.status)]
            self._emit(events)

        audit_event("job.assign", job_id=job_id, driver_id=driver_id, actor_id=_actor_id(actor))
        return TransitionResult(job=updated.snapshot(), events=events)

    async def unassign(self, job_id: str, actor: Optional[Actor] = None) -> TransitionResult:
        require_staff(actor, "unassign jobs")

        async with self._locks[job_id]:
            job = self._require(job_id)

            if job.status == JobStatus.PENDING and job.driver_id is None:
                return TransitionResult(job=job.snapshot())
            if job.status != JobStatus.ASSIGNED:
                raise _reject(
                    f"Cannot unassign job {job.job_number} in status '{job.status.value}'",
                    "not_unassignable",
                )

            driver_id = job.driver_id
            driver_before = await self._registry.release(driver_id, job_id)

            updated = self._advance(job, JobStatus.PENDING, actor, note="unassigned")
            updated.driver_id = None
            try:
                await self._commit(job, updated)
            except UpstreamUnavailable:
                if driver_before is not None:
                    await self._registry.restore(driver_before)
                raise

            events = [self._event(updated, "job_unassigned", job.status, driver_id=driver_id)]
            self._emit(events)

        audit_event("job.unassign", job_id=job_id, driver_id=driver_id, actor_id=_actor_id(actor))
        return TransitionResult(job=updated.snapshot(), events=events)

    # ------------------------------------------------------------------
    # status transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        job_id: str,
        target: JobStatus,
        location: Optional[Coordinate] = None,
        actor: Optional[Actor] = None,
        note: str = "",
    ) -> TransitionResult:
        async with self._locks[job_id]:
            job = self._require(job_id)

            if target == JobStatus.CANCELLED:
                if job.status == JobStatus.CANCELLED:
                    authorize_job_read(actor, job)
                    return TransitionResult(job=job.snapshot())
                authorize_cancel(actor, job)
                updated, events = await self._cancel_locked(job, actor, location, note)
            else:
                authorize_transition(actor, job, target)
                if target == job.status:
                    return TransitionResult(job=job.snapshot())
                updated, events = await self._transition_locked(job, target, actor, location, note)
            self._emit(events)

        audit_event(
            "job.status",
            job_id=job_id,
            driver_id=job.driver_id,
            actor_id=_actor_id(actor),
            detail=f"{job.status.value} -> {updated.status.value}",
        )
        return TransitionResult(job=updated.snapshot(), events=events)

    async def _transition_locked(
        self,
        job: Job,
        target: JobStatus,
        actor: Optional[Actor],
        location: Optional[Coordinate],
        note: str,
    ) -> tuple[Job, list[TransitionEvent]]:
        if job.is_terminal:
            raise _reject(
                f"Job {job.job_number} is '{job.status.value}' (terminal)",
                "terminal",
            )
        resuming = is_resume(job.status, target, job.held_from)
        if target in ENGINE_ONLY_TARGETS and not resuming:
            raise _reject(
                f"'{target.value}' is only reachable through assign/unassign",
                "engine_only",
            )
        if not can_transition(job.status, target, job.held_from):
            raise _reject(
                f"Invalid transition {job.status.value} -> {target.value} for job {job.job_number}",
                "not_adjacent",
            )

        updated = self._advance(job, target, actor, location, note)
        if target == JobStatus.ON_HOLD:
            updated.held_from = job.status
        elif resuming:
            updated.held_from = None

        driver_before = None
        if target == JobStatus.DELIVERED and job.driver_id is not None:
            driver_before = await self._registry.release(job.driver_id, job.id)

        try:
            await self._commit(job, updated)
        except UpstreamUnavailable:
            if driver_before is not None:
                await self._registry.restore(driver_before)
            raise

        LogContext(logger, actor_id=_actor_id(actor), job_id=job.id, driver_id=job.driver_id).info(
            f"Job {job.job_number}: {job.status.value} -> {target.value}"
        )
        return updated, [self._event(updated, target.value, job.status)]

    async def cancel(
        self,
        job_id: str,
        actor: Optional[Actor] = None,
        note: str = "",
    ) -> TransitionResult:
        return await self.transition(job_id, JobStatus.CANCELLED, actor=actor, note=note)

    async def _cancel_locked(
        self,
        job: Job,
        actor: Optional[Actor],
        location: Optional[Coordinate],
        note: str,
    ) -> tuple[Job, list[TransitionEvent]]:
        if job.is_terminal:
            raise _reject(
                f"Job {job.job_number} is '{job.status.value}' (terminal)",
                "terminal",
            )

        driver_id = job.driver_id
        updated = self._advance(job, JobStatus.CANCELLED, actor, location, note)
        updated.driver_id = None
        updated.held_from = None

        driver_before = None
        if driver_id is not None:
            driver_before = await self._registry.release(driver_id, job.id)

        try:
            await self._commit(job, updated)
        except UpstreamUnavailable:
            if driver_before is not None:
                await self._registry.restore(driver_before)
            raise

        LogContext(logger, actor_id=_actor_id(actor), job_id=job.id, driver_id=driver_id).info(
            f"Job {job.job_number} cancelled from '{job.status.value}'"
        )
        return updated, [self._event(updated, "job_cancelled", job.status, driver_id=driver_id)]

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get(self, job_id: str, actor: Optional[Actor] = None) -> Job:
        job = self._require(job_id)
        authorize_job_read(actor, job)
        return job.snapshot()

    def list(
        self,
        status: Optional[JobStatus] = None,
        priority: Optional[Priority] = None,
        driver_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> list[Job]:
        """Newest first. Customers and drivers only ever see their own jobs."""
        if actor is not None and actor.role == Role.CUSTOMER:
            customer_id = actor.id
        elif actor is not None and actor.role == Role.DRIVER:
            driver_id = actor.id

        jobs = [
            job for job in self._jobs.values()
            if (status is None or job.status == status)
            and (priority is None or job.priority == priority)
            and (driver_id is None or job.driver_id == driver_id)
            and (customer_id is None or job.customer_id == customer_id)
        ]
        jobs.sort(key=lambda j: (j.created_at, j.id), reverse=True)
        return [job.snapshot() for job in jobs]

    def find_by_tracking_code(self, tracking_code: str) -> Job:
        job_id = self._by_tracking_code.get(tracking_code.strip().upper())
        if job_id is None:
            raise NotFoundError(f"Tracking code {tracking_code} not found")
        return self._require(job_id).snapshot()

    def tracking_view(self, tracking_code: str) -> dict[str, Any]:
        """
        Public shipment view. Contains no customer identity and only the
        driver's first name; the driver position is included while the
        job is in progress and the fix is fresh.
        """
        job = self.find_by_tracking_code(tracking_code)

        driver_view = None
        if job.driver_id is not None and self._registry.exists(job.driver_id):
            driver = self._registry.get(job.driver_id)
            driver_view = {
                "first_name": driver.name.split()[0] if driver.name else "",
                "vehicle_type": driver.vehicle.type if driver.vehicle else None,
                "location": None,
            }
            if not job.is_terminal:
                sample = self._fresh_driver_sample(job.driver_id)
                if sample is not None:
                    driver_view["location"] = {
                        **sample.coordinate.to_dict(),
                        "timestamp": sample.timestamp.isoformat(),
                    }

        return {
            "job_number": job.job_number,
            "tracking_code": job.tracking_code,
            "type": job.type.value,
            "status": job.status.value,
            "pickup": job.pickup.to_dict(),
            "delivery": job.delivery.to_dict(),
            "scheduled_at": job.scheduled_at.isoformat() if job.scheduled_at else None,
            "estimated_duration_min": job.estimated_duration_min,
            "distance_m": job.distance_m,
            "created_at": job.created_at.isoformat(),
            "actual_pickup_at": job.actual_pickup_at.isoformat() if job.actual_pickup_at else None,
            "actual_delivery_at": job.actual_delivery_at.isoformat() if job.actual_delivery_at else None,
            "driver": driver_view,
            "status_history": [
                {"status": change.status.value, "at": change.at.isoformat()}
                for change in job.status_history
            ],
        }

    def route_view(self, job_id: str, actor: Optional[Actor] = None) -> dict[str, Any]:
        """
        Route of one job for its customer, its driver or staff.

        While the driver is under way the view carries their fresh position
        and the distance and ETA to the next stop (pickup until picked up,
        then delivery).
        """
        job = self.get(job_id, actor)

        view: dict[str, Any] = {
            "job_id": job.id,
            "job_number": job.job_number,
            "status": job.status.value,
            "pickup": {
                **job.pickup.to_dict(),
                "actual_time": job.actual_pickup_at.isoformat() if job.actual_pickup_at else None,
            },
            "delivery": {
                **job.delivery.to_dict(),
                "actual_time": job.actual_delivery_at.isoformat() if job.actual_delivery_at else None,
            },
            "scheduled_at": job.scheduled_at.isoformat() if job.scheduled_at else None,
            "distance_m": job.distance_m,
            "distance": format_distance(job.distance_m or 0),
            "estimated_duration_min": job.estimated_duration_min,
            "estimated_duration": format_duration((job.estimated_duration_min or 0) * 60),
            "driver_location": None,
            "next_stop": None,
        }

        if job.driver_id is None or job.status not in _UNDER_WAY:
            return view

        sample = self._fresh_driver_sample(job.driver_id)
        if sample is None:
            return view

        view["driver_location"] = sample.to_dict()
        heading_to_pickup = job.status in _BEFORE_PICKUP
        stop = job.pickup if heading_to_pickup else job.delivery
        remaining = distance(sample.coordinate, stop.coordinate)
        eta_min = estimate_duration_minutes(remaining, self._average_speed)
        view["next_stop"] = {
            "kind": "pickup" if heading_to_pickup else "delivery",
            "distance_m": round(remaining, 1),
            "distance": format_distance(remaining),
            "eta_min": eta_min,
            "eta": format_duration(eta_min * 60),
        }
        return view
