# app/infra/backend_client.py
"""
JSON-over-HTTP client for the dispatch backend.

Endpoints (relative to ``settings.backend_base_url``):
- ``PUT  /jobs/{id}``                 write-through job save
- ``PUT  /drivers/{id}``              write-through driver save
- ``GET  /drivers``                   driver hydration (retried)
- ``POST /tracking/location``         location forwarding
- ``POST /tracking/optimize-route``   stop ordering

Every transport failure surfaces as ``UpstreamUnavailable``. 4xx answers
are marked non-retryable so the retry decorator gives up immediately.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import aiohttp

from app.config import settings
from app.core.dispatch.domain import (
    Coordinate,
    Driver,
    DriverStatus,
    Job,
    LocationSample,
    Vehicle,
)
from app.core.dispatch.errors import UpstreamUnavailable, ValidationError
from app.infra.http_client import get_backend_session
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics, Timer
from app.infra.upstream_resilience import RETRYABLE_STATUSES, retry_on_upstream_error

logger = get_logger(__name__)


# ============================================================================
# PAYLOAD MAPPING
# ============================================================================

def sample_to_payload(subject_id: str, sample: LocationSample) -> dict[str, Any]:
    return {"subjectId": subject_id, **sample.to_dict()}


def driver_from_payload(data: dict[str, Any]) -> Driver:
    """Build a Driver from a backend record. Unknown statuses fall back to offline."""
    try:
        status = DriverStatus(data.get("status") or DriverStatus.OFFLINE.value)
    except ValueError:
        logger.warning(f"Unknown driver status {data.get('status')!r} for {data.get('id')}")
        status = DriverStatus.OFFLINE

    vehicle = None
    raw_vehicle = data.get("vehicle")
    if isinstance(raw_vehicle, dict) and raw_vehicle.get("type"):
        vehicle = Vehicle(
            type=raw_vehicle["type"],
            plate=raw_vehicle.get("plate") or "",
            capacity=raw_vehicle.get("capacity"),
        )

    location = None
    raw_location = data.get("location")
    if isinstance(raw_location, dict) and raw_location.get("latitude") is not None:
        timestamp = raw_location.get("timestamp")
        location = LocationSample(
            coordinate=Coordinate(
                latitude=float(raw_location["latitude"]),
                longitude=float(raw_location["longitude"]),
            ),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.fromtimestamp(0, tz=timezone.utc),
            speed=raw_location.get("speed"),
            heading=raw_location.get("heading"),
            accuracy=raw_location.get("accuracy"),
        )

    return Driver(
        id=str(data["id"]),
        name=data.get("name") or "",
        status=status,
        vehicle=vehicle,
        location=location,
        reviews=[float(s) for s in data.get("reviews") or []],
        active_job_id=data.get("active_job_id"),
    )


def _unwrap(body: Any) -> Any:
    """The backend wraps payloads as ``{"success": true, "data": ...}``."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


# ============================================================================
# CLIENT
# ============================================================================

class HttpBackendClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        session: aiohttp.ClientSession | None = None,
        route_timeout_seconds: float | None = None,
    ) -> None:
        base = base_url or settings.backend_base_url
        if not base:
            raise ValueError("backend_base_url is required for the HTTP backend")
        self._base_url = base.rstrip("/")
        self._api_token = api_token if api_token is not None else settings.backend_api_token
        self._session = session
        self._route_timeout = route_timeout_seconds or settings.route_optimization_timeout_seconds

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: aiohttp.ClientTimeout | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        session = self._session or get_backend_session()
        operation = path.strip("/").split("/")[0]
        try:
            with Timer("backend_request_seconds", method=method):
                async with session.request(
                    method,
                    url,
                    json=json,
                    headers=self._headers(),
                    timeout=timeout,
                ) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        DispatchMetrics.upstream_error(operation)
                        raise UpstreamUnavailable(
                            f"{method} {path} returned {resp.status}: {text[:200]}",
                            retryable=resp.status in RETRYABLE_STATUSES,
                        )
                    if resp.status == 204:
                        return None
                    return _unwrap(await resp.json(content_type=None))
        except TimeoutError as exc:
            DispatchMetrics.upstream_error(operation)
            raise UpstreamUnavailable(f"{method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            DispatchMetrics.upstream_error(operation)
            raise UpstreamUnavailable(f"{method} {path} failed: {type(exc).__name__}") from exc

    async def save_job(self, job: Job) -> None:
        await self._request("PUT", f"/jobs/{job.id}", json=job.to_dict())

    async def save_driver(self, driver: Driver) -> None:
        await self._request("PUT", f"/drivers/{driver.id}", json=driver.to_dict())

    @retry_on_upstream_error(
        max_retries=settings.upstream_max_retries,
        initial_delay=settings.upstream_retry_base_delay,
        max_delay=settings.upstream_retry_max_delay,
        operation="load_drivers",
    )
    async def load_drivers(self) -> list[Driver]:
        body = await self._request("GET", "/drivers")
        records = body.get("drivers", []) if isinstance(body, dict) else body or []
        drivers = []
        for record in records:
            try:
                drivers.append(driver_from_payload(record))
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                logger.warning(f"Skipping malformed driver record: {exc}")
        return drivers

    async def forward_location(self, subject_id: str, sample: LocationSample) -> None:
        await self._request("POST", "/tracking/location", json=sample_to_payload(subject_id, sample))

    async def optimize_route(
        self,
        start: Coordinate,
        destinations: list[Coordinate],
    ) -> list[Coordinate]:
        body = await self._request(
            "POST",
            "/tracking/optimize-route",
            json={
                "start_location": start.to_dict(),
                "destinations": [d.to_dict() for d in destinations],
            },
            timeout=aiohttp.ClientTimeout(total=self._route_timeout),
        )
        waypoints = body.get("optimized_route") if isinstance(body, dict) else None
        if not isinstance(waypoints, list):
            raise UpstreamUnavailable("optimize-route answered without optimized_route", retryable=False)
        try:
            return [
                Coordinate(latitude=float(w["latitude"]), longitude=float(w["longitude"]))
                for w in waypoints
            ]
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise UpstreamUnavailable(f"optimize-route returned malformed waypoints: {exc}", retryable=False) from exc

    async def close(self) -> None:
        # Shared sessions are closed by close_all_sessions() at shutdown.
        return None
