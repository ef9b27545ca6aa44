# app/core/dispatch/authz.py
"""
Role checks for dispatch mutations.

``actor=None`` means a trusted internal caller (worker, lifespan hydration,
tests) and always passes. The HTTP layer never passes None.
"""
from __future__ import annotations

from typing import Optional

from app.core.dispatch.domain import Actor, Job, JobStatus, Role
from app.core.dispatch.errors import ForbiddenError
from app.core.dispatch.state_machine import DRIVER_SETTABLE


def require_role(actor: Optional[Actor], *roles: Role, action: str) -> None:
    if actor is None:
        return
    if actor.role not in roles:
        raise ForbiddenError(f"Role '{actor.role.value}' may not {action}")


def require_staff(actor: Optional[Actor], action: str) -> None:
    require_role(actor, Role.DISPATCHER, Role.ADMIN, action=action)


def authorize_create(actor: Optional[Actor], customer_id: Optional[str]) -> None:
    require_role(actor, Role.CUSTOMER, Role.DISPATCHER, Role.ADMIN, action="create jobs")
    if actor is not None and actor.role == Role.CUSTOMER and customer_id != actor.id:
        raise ForbiddenError("Customers may only create jobs for themselves")


def authorize_transition(actor: Optional[Actor], job: Job, target: JobStatus) -> None:
    if actor is None or actor.is_staff:
        return
    if actor.role == Role.DRIVER and job.driver_id == actor.id and target in DRIVER_SETTABLE:
        return
    raise ForbiddenError(f"Role '{actor.role.value}' may not set status '{target.value}' on this job")


def authorize_cancel(actor: Optional[Actor], job: Job) -> None:
    if actor is None or actor.is_staff:
        return
    if (
        actor.role == Role.CUSTOMER
        and job.customer_id == actor.id
        and job.status == JobStatus.PENDING
    ):
        return
    raise ForbiddenError("Only staff, or the owning customer while the job is pending, may cancel")


def authorize_job_read(actor: Optional[Actor], job: Job) -> None:
    if actor is None or actor.is_staff:
        return
    if actor.role == Role.CUSTOMER and job.customer_id == actor.id:
        return
    if actor.role == Role.DRIVER and job.driver_id == actor.id:
        return
    raise ForbiddenError("Not allowed to view this job")


def authorize_driver_self(actor: Optional[Actor], driver_id: str, action: str) -> None:
    """The driver themself, or staff."""
    if actor is None or actor.is_staff:
        return
    if actor.role == Role.DRIVER and actor.id == driver_id:
        return
    raise ForbiddenError(f"Not allowed to {action} for driver {driver_id}")
