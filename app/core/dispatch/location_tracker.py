# app/core/dispatch/location_tracker.py
"""
Location Tracker.

Keeps the last-known position per subject (driver or customer device) and
forwards every accepted sample to the backend on a background task.
Forwarding is best-effort telemetry: failures are logged and counted,
never raised to the caller.

Freshness: a sample older than the stored one for the same subject is
dropped, so out-of-order retries from a device cannot move it backwards.
"""
from __future__ import annotations

import asyncio
import math
from collections import Counter
from datetime import datetime
from typing import Callable, Iterable, Optional

from app.core.dispatch.domain import Coordinate, LocationSample
from app.core.dispatch.errors import UpstreamUnavailable, ValidationError
from app.core.dispatch.ports import BackendClient
from app.infra.logging_config import get_logger, mask_coordinates
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

EARTH_RADIUS_M = 6_371_000.0

SampleListener = Callable[[str, LocationSample], None]


# ============================================================================
# GEO HELPERS
# ============================================================================

def distance(a: Coordinate, b: Coordinate) -> float:
    """Haversine great-circle distance in meters."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = abs(lat2 - lat1)
    dlon = abs(math.radians(b.longitude) - math.radians(a.longitude))

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def format_distance(meters: float) -> str:
    """``850 m`` below one kilometer, ``12.3 km`` above."""
    if meters < 1000:
        return f"{math.floor(meters + 0.5)} m"
    return f"{meters / 1000:.1f} km"


def format_duration(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def estimate_duration_minutes(distance_m: float, average_speed_kmh: float = 50.0) -> int:
    """
    Rough door-to-door estimate: driving time at ``average_speed_kmh``
    plus a 2 minutes/km buffer for stops and traffic.
    """
    if average_speed_kmh <= 0:
        raise ValidationError("average_speed_kmh must be > 0")
    km = distance_m / 1000
    travel = math.ceil(km / average_speed_kmh * 60)
    buffer = math.ceil(km * 2)
    return travel + buffer


# ============================================================================
# TRACKER
# ============================================================================

class LocationTracker:
    def __init__(
        self,
        backend: Optional[BackendClient] = None,
        *,
        forward_enabled: bool = True,
        route_timeout_seconds: float = 5.0,
    ) -> None:
        self._backend = backend
        self._forward_enabled = forward_enabled and backend is not None
        self._route_timeout = route_timeout_seconds
        self._current: dict[str, LocationSample] = {}
        self._listeners: list[SampleListener] = []
        self._pending: set[asyncio.Task] = set()

    def add_listener(self, listener: SampleListener) -> None:
        """Register a callback invoked with every accepted sample."""
        self._listeners.append(listener)

    async def record_sample(self, subject_id: str, sample: LocationSample) -> bool:
        """
        Store ``sample`` as the subject's current location.

        Returns False when the sample was dropped for being older than the
        stored one. Never waits on the backend.
        """
        if not subject_id:
            raise ValidationError("subject_id is required")

        current = self._current.get(subject_id)
        if current is not None and sample.timestamp < current.timestamp:
            logger.debug(
                f"Dropping stale sample for {subject_id} "
                f"({sample.timestamp.isoformat()} < {current.timestamp.isoformat()})"
            )
            return False

        self._current[subject_id] = sample
        DispatchMetrics.location_sample()

        for listener in self._listeners:
            listener(subject_id, sample)

        if self._forward_enabled:
            task = asyncio.create_task(self._forward(subject_id, sample))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return True

    async def _forward(self, subject_id: str, sample: LocationSample) -> None:
        try:
            await self._backend.forward_location(subject_id, sample)
        except UpstreamUnavailable as exc:
            DispatchMetrics.location_forward_failed()
            logger.warning(
                f"Location forward failed for {subject_id} at "
                f"{mask_coordinates(sample.coordinate.latitude, sample.coordinate.longitude)}: {exc.detail}"
            )
        except Exception:
            DispatchMetrics.location_forward_failed()
            logger.exception(f"Unexpected error forwarding location for {subject_id}")

    def current_location(
        self,
        subject_id: str,
        max_age_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[LocationSample]:
        """Last sample for the subject, or None if unknown (or older than ``max_age_seconds``)."""
        sample = self._current.get(subject_id)
        if sample is None:
            return None
        if max_age_seconds is not None and sample.age_seconds(now) > max_age_seconds:
            return None
        return sample

    async def request_optimized_route(
        self,
        start: Coordinate,
        destinations: Iterable[Coordinate],
    ) -> list[Coordinate]:
        """
        Ask the backend for the best visiting order.

        Any failure (timeout, upstream error, malformed answer) falls back
        to ``destinations`` in their original order.
        """
        destinations = list(destinations)
        if len(destinations) < 2 or self._backend is None:
            return destinations

        try:
            ordered = await asyncio.wait_for(
                self._backend.optimize_route(start, list(destinations)),
                timeout=self._route_timeout,
            )
        except asyncio.TimeoutError:
            DispatchMetrics.upstream_error("optimize_route")
            logger.warning(f"Route optimization timed out after {self._route_timeout}s; keeping original order")
            return destinations
        except UpstreamUnavailable as exc:
            DispatchMetrics.upstream_error("optimize_route")
            logger.warning(f"Route optimization unavailable: {exc.detail}; keeping original order")
            return destinations

        if Counter(ordered) != Counter(destinations):
            logger.warning("Route optimization returned a different stop set; keeping original order")
            return destinations
        return list(ordered)

    async def drain(self) -> None:
        """Wait for in-flight forwards. Used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_forwards(self) -> int:
        return len(self._pending)
