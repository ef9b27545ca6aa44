# app/transport/http_app.py
"""
HTTP surface of the dispatch core.

Security layers:
1. Public: health checks and shipment tracking by tracking code
2. Gateway-authenticated: everything else (actor from X-Actor-* headers)
3. Role-guarded: staff-only and admin-only routes
4. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.dispatch.container import DispatchContainer, build_container, set_container
from app.core.dispatch.domain import Actor, DriverStatus, JobSpec, JobStatus, Priority, Role
from app.core.dispatch.driver_registry import EligibilityCriteria
from app.core.dispatch.errors import DispatchError, ForbiddenError, UpstreamUnavailable
from app.core.dispatch.location_tracker import distance
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.schemas import (
    AssignJobRequest,
    CancelJobRequest,
    CoordinateIn,
    CreateJobRequest,
    DriverStatusRequest,
    LocationSampleRequest,
    MarkReadRequest,
    OptimizeRouteRequest,
    PunchRequest,
    RegisterDriverRequest,
    ReviewRequest,
    StatusUpdateRequest,
)
from app.transport.security import (
    SecurityHeaders,
    require_actor,
    require_admin,
    require_staff,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_dispatch(request: Request) -> DispatchContainer:
    """Get the dispatch container from app state"""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return container


def _parse(model, payload: dict):
    try:
        return model(**payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {value}")


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, backend={settings.backend_mode}, "
        f"push={settings.push_provider}"
    )

    if settings.is_production and settings.log_level.upper() == "DEBUG":
        logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
        raise RuntimeError("LOG_LEVEL=DEBUG in production")

    from app.transport.security import check_configured_tokens
    check_configured_tokens()

    container = build_container(settings)
    set_container(container)
    fastapi_app.state.container = container
    await container.start()

    try:
        loaded = await container.registry.load_from_backend()
        logger.info(f"Driver registry loaded: {loaded} driver(s)")
    except UpstreamUnavailable as exc:
        # Start anyway; drivers re-register through the API
        logger.warning(f"Driver registry not loaded: {exc.detail}")

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    await container.stop()

    # Close all shared HTTP sessions
    from app.infra.http_client import close_all_sessions
    await close_all_sessions()

    set_container(None)
    fastapi_app.state.container = None
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Truck Dispatch",
    description="Job lifecycle, driver matching, live tracking and notifications",
    version="1.0.0",
    lifespan=lifespan,
    # Security: Completely disable docs in production (None, not conditional URL)
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# CORS - Restrictive in production
if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization", "X-Actor-Id", "X-Actor-Role"],
    )
else:
    # More permissive in dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Domain errors carry their own status code"""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}", extra={"status_code": exc.status_code})
    else:
        logger.info(f"Request rejected ({exc.status_code}): {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    error_message = sanitize_error_message(exc, settings.is_production)

    return JSONResponse(
        status_code=500,
        content={"error": error_message},
    )


# ============================================================================
# PUBLIC ENDPOINTS (No authentication required)
# ============================================================================

@app.get("/", include_in_schema=False)
def root_public():
    """
    Public root - minimal HTML page confirming the service is running.
    No sensitive information exposed.
    """
    return HTMLResponse(
        "<!doctype html><html><head><meta charset='utf-8'>"
        "<title>Truck Dispatch</title></head><body>"
        "<h3>Truck Dispatch</h3><p>Service is running.</p>"
        "</body></html>"
    )


@app.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Used by load balancers, monitoring, etc.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(request: Request):
    """
    Readiness check - PUBLIC endpoint.
    Ready once the container is built and the notification dispatcher runs.
    """
    container = getattr(request.app.state, "container", None)
    if container is None or not container.notifications.is_running:
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.get("/tracking/track/{tracking_code}")
def track_shipment(tracking_code: str, dispatch: DispatchContainer = Depends(get_dispatch)):
    """Public shipment view by tracking code. No customer identity."""
    return dispatch.engine.tracking_view(tracking_code)


# ============================================================================
# METRICS (admin only)
# ============================================================================

@app.get("/metrics")
def metrics(actor: Actor = Depends(require_admin)):
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


# ============================================================================
# JOBS
# ============================================================================

@app.post("/jobs", status_code=201)
async def create_job(
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(CreateJobRequest, payload)
    customer_id = req.customer_id
    if customer_id is None and actor.role == Role.CUSTOMER:
        customer_id = actor.id

    spec = JobSpec(
        customer_id=customer_id,
        pickup=req.pickup.to_location(),
        delivery=req.delivery.to_location(),
        type=req.type,
        priority=req.priority,
        scheduled_at=req.scheduled_at,
        cargo=req.cargo,
    )
    result = await dispatch.engine.create(spec, actor)
    return result.job.to_dict()


@app.get("/jobs")
def list_jobs(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    driver_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    jobs = dispatch.engine.list(
        status=_parse_enum(JobStatus, status, "status"),
        priority=_parse_enum(Priority, priority, "priority"),
        driver_id=driver_id,
        customer_id=customer_id,
        actor=actor,
    )
    return {"jobs": [job.to_dict() for job in jobs], "count": len(jobs)}


@app.get("/jobs/{job_id}")
def get_job(
    job_id: str,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    return dispatch.engine.get(job_id, actor).to_dict()


@app.post("/jobs/{job_id}/assign")
async def assign_job(
    job_id: str,
    payload: dict,
    actor: Actor = Depends(require_staff),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(AssignJobRequest, payload)
    result = await dispatch.engine.assign(job_id, req.driver_id, actor)
    return {"job": result.job.to_dict(), "changed": result.changed}


@app.post("/jobs/{job_id}/unassign")
async def unassign_job(
    job_id: str,
    actor: Actor = Depends(require_staff),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    result = await dispatch.engine.unassign(job_id, actor)
    return {"job": result.job.to_dict(), "changed": result.changed}


@app.put("/jobs/{job_id}/status")
async def update_job_status(
    job_id: str,
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(StatusUpdateRequest, payload)
    location = req.location.to_domain() if req.location else None
    result = await dispatch.engine.transition(
        job_id, req.status, location=location, actor=actor, note=req.note,
    )
    return {"job": result.job.to_dict(), "changed": result.changed}


@app.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    payload: Optional[dict] = None,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(CancelJobRequest, payload or {})
    result = await dispatch.engine.cancel(job_id, actor, note=req.note)
    return {"job": result.job.to_dict(), "changed": result.changed}


@app.get("/jobs/{job_id}/eligible-drivers")
def eligible_drivers_for_job(
    job_id: str,
    radius_m: Optional[float] = None,
    vehicle_type: Optional[str] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(require_staff),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    """Available drivers nearest to the job's pickup point."""
    job = dispatch.engine.get(job_id, actor)
    near = job.pickup.coordinate
    drivers = dispatch.registry.find_eligible(EligibilityCriteria(
        near=near,
        radius_m=radius_m,
        vehicle_type=vehicle_type,
        limit=limit,
    ))
    return {
        "drivers": [
            {**d.to_dict(), "distance_m": round(distance(near, d.location.coordinate), 1)}
            for d in drivers
        ],
        "count": len(drivers),
    }


# ============================================================================
# DRIVERS
# ============================================================================

@app.get("/drivers")
def list_drivers(
    status: Optional[str] = None,
    vehicle_type: Optional[str] = None,
    actor: Actor = Depends(require_staff),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    drivers = dispatch.registry.list(
        status=_parse_enum(DriverStatus, status, "status"),
        vehicle_type=vehicle_type,
    )
    return {"drivers": [d.to_dict() for d in drivers], "count": len(drivers)}


@app.get("/drivers/available")
def available_drivers(
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_m: Optional[float] = None,
    vehicle_type: Optional[str] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(require_staff),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    near = None
    if latitude is not None or longitude is not None:
        if latitude is None or longitude is None:
            raise HTTPException(status_code=400, detail="latitude and longitude go together")
        near = _parse(CoordinateIn, {"latitude": latitude, "longitude": longitude}).to_domain()

    drivers = dispatch.registry.find_eligible(EligibilityCriteria(
        near=near,
        radius_m=radius_m,
        vehicle_type=vehicle_type,
        limit=limit,
    ))

    items = []
    for driver in drivers:
        item = driver.to_dict()
        if near is not None:
            item["distance_m"] = round(distance(near, driver.location.coordinate), 1)
        items.append(item)
    return {"drivers": items, "count": len(items)}


@app.get("/drivers/{driver_id}")
def get_driver(
    driver_id: str,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    if not actor.is_staff and actor.id != driver_id:
        raise ForbiddenError("Cannot view another driver")
    return dispatch.registry.get(driver_id).to_dict()


@app.post("/drivers/register", status_code=201)
async def register_driver(
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(RegisterDriverRequest, payload)
    if actor.role == Role.CUSTOMER:
        raise ForbiddenError("Customers cannot register drivers")
    driver_id = req.driver_id
    if driver_id is None and actor.role == Role.DRIVER:
        driver_id = actor.id
    driver = await dispatch.registry.register(
        req.name,
        driver_id=driver_id,
        vehicle=req.vehicle.to_domain() if req.vehicle else None,
        actor=actor,
    )
    return driver.to_dict()


@app.post("/drivers/{driver_id}/approve")
async def approve_driver(
    driver_id: str,
    actor: Actor = Depends(require_admin),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    return (await dispatch.registry.approve(driver_id, actor)).to_dict()


@app.post("/drivers/{driver_id}/suspend")
async def suspend_driver(
    driver_id: str,
    actor: Actor = Depends(require_admin),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    return (await dispatch.registry.suspend(driver_id, actor)).to_dict()


@app.put("/drivers/{driver_id}/status")
async def set_driver_status(
    driver_id: str,
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(DriverStatusRequest, payload)
    return (await dispatch.registry.set_status(driver_id, req.status, actor)).to_dict()


@app.post("/drivers/{driver_id}/punch")
async def punch_driver(
    driver_id: str,
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(PunchRequest, payload)
    if req.action == "in":
        driver = await dispatch.registry.punch_in(driver_id, actor)
    else:
        driver = await dispatch.registry.punch_out(driver_id, actor)
    return driver.to_dict()


@app.post("/drivers/{driver_id}/reviews", status_code=201)
async def review_driver(
    driver_id: str,
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(ReviewRequest, payload)
    rating = await dispatch.registry.add_review(driver_id, req.score, actor)
    return {"driver_id": driver_id, "rating": rating}


# ============================================================================
# TRACKING
# ============================================================================

@app.post("/tracking/location")
async def report_location(
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(LocationSampleRequest, payload)
    subject_id = actor.id
    if req.subject_id and req.subject_id != actor.id:
        if not actor.is_staff:
            raise ForbiddenError("Cannot report location for another subject")
        subject_id = req.subject_id

    accepted = await dispatch.tracker.record_sample(subject_id, req.to_sample())
    return {"accepted": accepted}


@app.get("/tracking/location/{subject_id}")
def get_location(
    subject_id: str,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    if not actor.is_staff and actor.id != subject_id:
        raise ForbiddenError("Cannot view another subject's location")
    sample = dispatch.tracker.current_location(subject_id)
    if sample is None:
        raise HTTPException(status_code=404, detail="Location not found")
    return {"subject_id": subject_id, "location": sample.to_dict()}


@app.post("/tracking/optimize-route")
async def optimize_route(
    payload: dict,
    actor: Actor = Depends(require_staff),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(OptimizeRouteRequest, payload)
    ordered = await dispatch.tracker.request_optimized_route(
        req.start.to_domain(),
        [d.to_domain() for d in req.destinations],
    )
    return {"route": [c.to_dict() for c in ordered]}


@app.get("/tracking/route/{job_id}")
def job_route(
    job_id: str,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    """Stops, estimates and live driver ETA for the job's customer, driver or staff."""
    return dispatch.engine.route_view(job_id, actor)


@app.get("/tracking/drivers/active")
def active_drivers(
    actor: Actor = Depends(require_staff),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    """Drivers on shift (available or busy) with their freshest known position."""
    drivers = [
        d for d in dispatch.registry.list()
        if d.status in (DriverStatus.AVAILABLE, DriverStatus.BUSY)
    ]
    items = []
    for driver in drivers:
        sample = dispatch.tracker.current_location(
            driver.id, max_age_seconds=settings.location_stale_after_seconds
        )
        items.append({
            "driver_id": driver.id,
            "name": driver.name,
            "status": driver.status.value,
            "active_job_id": driver.active_job_id,
            "location": sample.to_dict() if sample else None,
        })
    return {"drivers": items, "count": len(items)}


# ============================================================================
# NOTIFICATIONS
# ============================================================================

@app.get("/notifications")
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    if limit < 1 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
    store = dispatch.notifications.store
    items = store.list_for(actor, unread_only=unread_only, limit=limit)
    return {
        "notifications": [n.to_dict(actor) for n in items],
        "unread_count": store.unread_count(actor),
    }


@app.get("/notifications/unread-count")
def unread_notification_count(
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    return {"unread_count": dispatch.notifications.store.unread_count(actor)}


@app.post("/notifications/read")
def mark_notification_read(
    payload: dict,
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    req = _parse(MarkReadRequest, payload)
    notification = dispatch.notifications.store.mark_read(req.notification_id, actor)
    return notification.to_dict(actor)


@app.post("/notifications/read-all")
def mark_all_notifications_read(
    actor: Actor = Depends(require_actor),
    dispatch: DispatchContainer = Depends(get_dispatch),
):
    return {"updated": dispatch.notifications.store.mark_all_read(actor)}


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """
    Catch-all route for undefined endpoints.
    Returns generic 404 without revealing information.
    """
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # Disable in prod (use middleware logging)
        server_header=False,
        date_header=False,
    )
