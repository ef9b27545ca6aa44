# app/infra/fake_backend.py
"""
In-memory backend for dev and tests.

Same interface as ``HttpBackendClient``. Failure injection flags make the
write-through rollback, retry and best-effort paths testable without a
network:

    backend = FakeBackendClient()
    backend.fail_saves = True          # save_job / save_driver raise
    backend.load_failures = 2          # first two load_drivers calls fail
    backend.route_delay = 10           # optimize_route sleeps (timeout tests)
"""
from __future__ import annotations

import asyncio
import copy

from app.config import settings
from app.core.dispatch.domain import Coordinate, Driver, Job, LocationSample
from app.core.dispatch.errors import UpstreamUnavailable
from app.core.dispatch.location_tracker import distance
from app.infra.logging_config import get_logger
from app.infra.upstream_resilience import retry_on_upstream_error

logger = get_logger(__name__)


class FakeBackendClient:
    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}
        self.drivers: dict[str, Driver] = {}
        self.locations: list[tuple[str, LocationSample]] = []

        self.fail_saves = False
        self.fail_forward = False
        self.fail_route = False
        self.route_delay: float = 0.0
        self.load_failures = 0

        self.save_calls = 0
        self.load_calls = 0

    async def save_job(self, job: Job) -> None:
        self.save_calls += 1
        if self.fail_saves:
            raise UpstreamUnavailable(f"fake backend: save_job {job.id} failed")
        self.jobs[job.id] = copy.deepcopy(job)

    async def save_driver(self, driver: Driver) -> None:
        self.save_calls += 1
        if self.fail_saves:
            raise UpstreamUnavailable(f"fake backend: save_driver {driver.id} failed")
        self.drivers[driver.id] = copy.deepcopy(driver)

    @retry_on_upstream_error(
        max_retries=settings.upstream_max_retries,
        initial_delay=0,
        operation="load_drivers",
    )
    async def load_drivers(self) -> list[Driver]:
        self.load_calls += 1
        if self.load_failures > 0:
            self.load_failures -= 1
            raise UpstreamUnavailable("fake backend: load_drivers failed")
        return [copy.deepcopy(d) for d in self.drivers.values()]

    async def forward_location(self, subject_id: str, sample: LocationSample) -> None:
        if self.fail_forward:
            raise UpstreamUnavailable("fake backend: forward_location failed")
        self.locations.append((subject_id, sample))

    async def optimize_route(
        self,
        start: Coordinate,
        destinations: list[Coordinate],
    ) -> list[Coordinate]:
        """Nearest-neighbour ordering from ``start``."""
        if self.route_delay:
            await asyncio.sleep(self.route_delay)
        if self.fail_route:
            raise UpstreamUnavailable("fake backend: optimize_route failed")

        remaining = list(destinations)
        ordered: list[Coordinate] = []
        current = start
        while remaining:
            nearest = min(remaining, key=lambda stop: distance(current, stop))
            remaining.remove(nearest)
            ordered.append(nearest)
            current = nearest
        return ordered

    async def close(self) -> None:
        logger.debug("Fake backend closed")
