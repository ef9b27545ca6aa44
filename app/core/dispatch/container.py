# app/core/dispatch/container.py
"""
Composition root for the dispatch core.

The backend implementation is chosen here, once, from
``settings.backend_mode``; business code only sees the ``BackendClient``
interface.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.config import Settings, settings as default_settings
from app.core.dispatch.driver_registry import DriverRegistry
from app.core.dispatch.job_engine import JobEngine
from app.core.dispatch.location_tracker import LocationTracker
from app.core.dispatch.notifications import NotificationDispatcher, NotificationStore
from app.core.dispatch.ports import BackendClient, PushSender
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class DispatchContainer:
    backend: BackendClient
    tracker: LocationTracker
    registry: DriverRegistry
    engine: JobEngine
    notifications: NotificationDispatcher

    async def start(self) -> None:
        await self.notifications.start()

    async def stop(self) -> None:
        await self.tracker.drain()
        await self.notifications.stop()
        await self.backend.close()


def build_backend(s: Settings) -> BackendClient:
    if s.backend_mode == "http":
        from app.infra.backend_client import HttpBackendClient
        return HttpBackendClient(
            base_url=s.backend_base_url,
            api_token=s.backend_api_token,
            route_timeout_seconds=s.route_optimization_timeout_seconds,
        )
    from app.infra.fake_backend import FakeBackendClient
    return FakeBackendClient()


def build_container(
    s: Optional[Settings] = None,
    *,
    backend: Optional[BackendClient] = None,
    push: Optional[PushSender] = None,
) -> DispatchContainer:
    s = s or default_settings
    backend = backend or build_backend(s)
    if push is None:
        from app.infra.push_providers import get_push_provider
        push = get_push_provider(s.push_provider)

    notifications = NotificationDispatcher(
        NotificationStore(),
        push,
        push_timeout_seconds=s.push_timeout_seconds,
        queue_max=s.notification_queue_max,
    )
    tracker = LocationTracker(
        backend,
        forward_enabled=s.location_forward_enabled,
        route_timeout_seconds=s.route_optimization_timeout_seconds,
    )
    registry = DriverRegistry(
        backend,
        stale_after_seconds=s.location_stale_after_seconds,
        event_sink=notifications.publish,
    )
    tracker.add_listener(registry.update_location)
    engine = JobEngine(
        registry,
        tracker,
        backend,
        event_sink=notifications.publish,
        average_speed_kmh=s.average_speed_kmh,
        stale_after_seconds=s.location_stale_after_seconds,
    )

    logger.info(
        f"Dispatch container built (backend={type(backend).__name__}, push={push.name})"
    )
    return DispatchContainer(
        backend=backend,
        tracker=tracker,
        registry=registry,
        engine=engine,
        notifications=notifications,
    )


_container: Optional[DispatchContainer] = None


def get_container() -> DispatchContainer:
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Optional[DispatchContainer]) -> None:
    """Swap the process-wide container (app lifespan, tests)."""
    global _container
    _container = container
