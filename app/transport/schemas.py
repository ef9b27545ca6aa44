# app/transport/schemas.py
"""
Request models for the dispatch HTTP API.

Routes accept a raw ``dict`` and validate it with these models, so a
malformed body becomes a 400 ``{"error": ...}`` like every other
validation failure.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from app.core.dispatch.domain import (
    Coordinate,
    DriverStatus,
    JobStatus,
    JobType,
    Location,
    LocationSample,
    Priority,
    Vehicle,
)


class CoordinateIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def to_domain(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)


class LocationIn(CoordinateIn):
    address: str = Field(default="", max_length=500)

    def to_location(self) -> Location:
        return Location(coordinate=self.to_domain(), address=self.address)


class VehicleIn(BaseModel):
    type: str = Field(..., min_length=1, max_length=64)
    plate: str = Field(default="", max_length=32)
    capacity: str | None = Field(default=None, max_length=64)

    def to_domain(self) -> Vehicle:
        return Vehicle(type=self.type, plate=self.plate, capacity=self.capacity)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class CreateJobRequest(BaseModel):
    """Customers may omit ``customer_id``; it defaults to their own id."""

    customer_id: str | None = Field(default=None, max_length=128)
    pickup: LocationIn
    delivery: LocationIn
    type: JobType = JobType.DELIVERY
    priority: Priority = Priority.MEDIUM
    scheduled_at: datetime | None = None
    cargo: dict[str, Any] = Field(default_factory=dict)


class AssignJobRequest(BaseModel):
    driver_id: str = Field(..., min_length=1, max_length=128)


class StatusUpdateRequest(BaseModel):
    status: JobStatus
    location: CoordinateIn | None = None
    note: str = Field(default="", max_length=500)


class CancelJobRequest(BaseModel):
    note: str = Field(default="", max_length=500)


# ---------------------------------------------------------------------------
# Drivers
# ---------------------------------------------------------------------------

class RegisterDriverRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    driver_id: str | None = Field(default=None, max_length=128)
    vehicle: VehicleIn | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be blank")
        return v.strip()


class DriverStatusRequest(BaseModel):
    status: DriverStatus


class PunchRequest(BaseModel):
    action: Literal["in", "out"]


class ReviewRequest(BaseModel):
    score: int = Field(..., ge=1, le=5)


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------

class LocationSampleRequest(CoordinateIn):
    """Drivers and customers report for themselves; staff may name a subject."""

    subject_id: str | None = Field(default=None, max_length=128)
    speed: float | None = Field(default=None, ge=0)
    heading: float | None = Field(default=None, ge=0, le=360)
    accuracy: float | None = Field(default=None, ge=0)
    timestamp: datetime | None = None

    def to_sample(self) -> LocationSample:
        kwargs: dict[str, Any] = {}
        if self.timestamp is not None:
            kwargs["timestamp"] = self.timestamp
        return LocationSample(
            coordinate=self.to_domain(),
            speed=self.speed,
            heading=self.heading,
            accuracy=self.accuracy,
            **kwargs,
        )


class OptimizeRouteRequest(BaseModel):
    start: CoordinateIn
    destinations: list[CoordinateIn] = Field(..., min_length=1, max_length=50)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class MarkReadRequest(BaseModel):
    notification_id: str = Field(..., min_length=1, max_length=64)
