# app/core/dispatch/domain.py
from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from app.core.dispatch.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    EN_ROUTE_PICKUP = "en_route_pickup"
    ARRIVED_PICKUP = "arrived_pickup"
    PICKED_UP = "picked_up"
    EN_ROUTE_DELIVERY = "en_route_delivery"
    ARRIVED_DELIVERY = "arrived_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


class JobType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"
    EMERGENCY = "emergency"
    SCHEDULED = "scheduled"
    RETURN = "return"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DriverStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"
    BREAK = "break"
    PENDING_APPROVAL = "pending_approval"
    SUSPENDED = "suspended"


class Role(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    DISPATCHER = "dispatcher"
    ADMIN = "admin"


# Statuses in which a job carries a driver reference.
BOUND_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.EN_ROUTE_PICKUP,
    JobStatus.ARRIVED_PICKUP,
    JobStatus.PICKED_UP,
    JobStatus.EN_ROUTE_DELIVERY,
    JobStatus.ARRIVED_DELIVERY,
    JobStatus.DELIVERED,
})

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.DELIVERED,
    JobStatus.CANCELLED,
})


# ============================================================================
# GEO VALUES
# ============================================================================

@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValidationError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValidationError(f"longitude out of range: {self.longitude}")

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class LocationSample:
    """One device position fix. Superseded by any newer sample for the same subject."""
    coordinate: Coordinate
    timestamp: datetime = field(default_factory=utcnow)
    speed: Optional[float] = None      # m/s
    heading: Optional[float] = None    # degrees, 0..360
    accuracy: Optional[float] = None   # meters

    def __post_init__(self) -> None:
        if self.speed is not None and self.speed < 0:
            raise ValidationError("speed must be >= 0")
        if self.heading is not None and not 0.0 <= self.heading <= 360.0:
            raise ValidationError("heading must be within 0..360")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or utcnow()) - self.timestamp).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.coordinate.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "speed": self.speed,
            "heading": self.heading,
            "accuracy": self.accuracy,
        }


@dataclass(frozen=True)
class Location:
    """Coordinate plus the free-text address the customer entered."""
    coordinate: Coordinate
    address: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {**self.coordinate.to_dict(), "address": self.address}


# ============================================================================
# JOB
# ============================================================================

@dataclass(frozen=True)
class StatusChange:
    status: JobStatus
    at: datetime
    actor_id: Optional[str] = None
    coordinate: Optional[Coordinate] = None
    note: str = ""


@dataclass
class JobSpec:
    """
    Input for job creation. Everything is optional here so that creation
    can report exactly which required fields are missing.
    """
    customer_id: Optional[str] = None
    pickup: Optional[Location] = None
    delivery: Optional[Location] = None
    type: JobType = JobType.DELIVERY
    priority: Priority = Priority.MEDIUM
    scheduled_at: Optional[datetime] = None
    cargo: dict[str, Any] = field(default_factory=dict)


@dataclass
class Job:
    id: str
    job_number: str
    tracking_code: str
    customer_id: str
    pickup: Location
    delivery: Location
    type: JobType = JobType.DELIVERY
    priority: Priority = Priority.MEDIUM
    status: JobStatus = JobStatus.PENDING
    driver_id: Optional[str] = None
    held_from: Optional[JobStatus] = None
    scheduled_at: Optional[datetime] = None
    estimated_duration_min: Optional[int] = None
    distance_m: Optional[float] = None
    cargo: dict[str, Any] = field(default_factory=dict)
    status_history: list[StatusChange] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    actual_pickup_at: Optional[datetime] = None
    actual_delivery_at: Optional[datetime] = None

    @property
    def effective_status(self) -> JobStatus:
        """The status that governs driver binding; ``on_hold`` defers to ``held_from``."""
        if self.status == JobStatus.ON_HOLD and self.held_from is not None:
            return self.held_from
        return self.status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def driver_binding_consistent(self) -> bool:
        return (self.driver_id is not None) == (self.effective_status in BOUND_STATUSES)

    def snapshot(self) -> "Job":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_number": self.job_number,
            "tracking_code": self.tracking_code,
            "type": self.type.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "held_from": self.held_from.value if self.held_from else None,
            "customer_id": self.customer_id,
            "driver_id": self.driver_id,
            "pickup": self.pickup.to_dict(),
            "delivery": self.delivery.to_dict(),
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "estimated_duration_min": self.estimated_duration_min,
            "distance_m": self.distance_m,
            "cargo": self.cargo,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "actual_pickup_at": self.actual_pickup_at.isoformat() if self.actual_pickup_at else None,
            "actual_delivery_at": self.actual_delivery_at.isoformat() if self.actual_delivery_at else None,
            "status_history": [
                {
                    "status": change.status.value,
                    "at": change.at.isoformat(),
                    "actor_id": change.actor_id,
                    "location": change.coordinate.to_dict() if change.coordinate else None,
                    "note": change.note,
                }
                for change in self.status_history
            ],
        }


# ============================================================================
# DRIVER
# ============================================================================

@dataclass(frozen=True)
class Vehicle:
    type: str
    plate: str = ""
    capacity: Optional[str] = None


def compute_rating(scores: Iterable[float]) -> float:
    """Mean review score rounded half-up to one decimal; 0 with no reviews."""
    scores = list(scores)
    if not scores:
        return 0
    mean = sum(scores) / len(scores)
    return math.floor(mean * 10 + 0.5) / 10


@dataclass
class Driver:
    id: str
    name: str = ""
    status: DriverStatus = DriverStatus.PENDING_APPROVAL
    location: Optional[LocationSample] = None
    vehicle: Optional[Vehicle] = None
    reviews: list[float] = field(default_factory=list)
    active_job_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def rating(self) -> float:
        return compute_rating(self.reviews)

    def snapshot(self) -> "Driver":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "location": self.location.to_dict() if self.location else None,
            "vehicle": {
                "type": self.vehicle.type,
                "plate": self.vehicle.plate,
                "capacity": self.vehicle.capacity,
            } if self.vehicle else None,
            "rating": self.rating,
            "review_count": len(self.reviews),
            "active_job_id": self.active_job_id,
            "created_at": self.created_at.isoformat(),
        }


# ============================================================================
# EVENTS & NOTIFICATIONS
# ============================================================================

@dataclass(frozen=True)
class TransitionEvent:
    """
    Emitted by the job engine (and the driver registry) on every state change.
    ``sequence`` is monotonic per job so consumers can check ordering.
    """
    tag: str
    job_id: Optional[str] = None
    job_number: str = ""
    status: Optional[JobStatus] = None
    previous_status: Optional[JobStatus] = None
    customer_id: Optional[str] = None
    driver_id: Optional[str] = None
    sequence: int = 0
    subject: str = "job"
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class TransitionResult:
    """New job state plus the events the change produced (empty for no-ops)."""
    job: Job
    events: list[TransitionEvent] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.events)


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.DISPATCHER, Role.ADMIN)


@dataclass
class Notification:
    id: str
    title: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)
    recipient_id: Optional[str] = None
    roles: frozenset[Role] = frozenset()
    read_by: set[str] = field(default_factory=set)
    delivered: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_broadcast(self) -> bool:
        return self.recipient_id is None

    def is_addressed_to(self, actor: Actor) -> bool:
        if self.recipient_id is not None:
            return self.recipient_id == actor.id
        return actor.role in self.roles

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by

    def to_dict(self, reader: Optional[Actor] = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "payload": self.payload,
            "recipient_id": self.recipient_id,
            "roles": sorted(role.value for role in self.roles),
            "read": self.is_read_by(reader.id) if reader else bool(self.read_by),
            "delivered": self.delivered,
            "created_at": self.created_at.isoformat(),
        }
