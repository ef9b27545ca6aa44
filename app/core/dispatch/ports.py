# app/core/dispatch/ports.py
from __future__ import annotations
from typing import Any, Optional, Protocol
from app.core.dispatch.domain import Coordinate, Driver, Job, LocationSample


# ============================================================================
# BACKEND (remote persistence / API)
# ============================================================================

class BackendClient(Protocol):
    async def save_job(self, job: Job) -> None:
        """Write-through persist. Raises UpstreamUnavailable on failure."""
        ...

    async def save_driver(self, driver: Driver) -> None: ...

    async def load_drivers(self) -> list[Driver]:
        """Idempotent read; callers may retry on UpstreamUnavailable."""
        ...

    async def forward_location(self, subject_id: str, sample: LocationSample) -> None: ...

    async def optimize_route(
        self,
        start: Coordinate,
        destinations: list[Coordinate],
    ) -> list[Coordinate]:
        """
        Return ``destinations`` reordered for the shortest trip.
        Raises UpstreamUnavailable if the endpoint cannot answer.
        """
        ...

    async def close(self) -> None: ...


# ============================================================================
# PUSH DELIVERY
# ============================================================================

class PushSender(Protocol):
    @property
    def name(self) -> str: ...

    async def send(
        self,
        recipient: Optional[str],
        title: str,
        body: str,
        payload: dict[str, Any],
        roles: Optional[list[str]] = None,
    ) -> bool:
        """
        True if the provider accepted the message.
        ``recipient`` is None for role broadcasts.
        """
        ...
