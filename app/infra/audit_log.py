# app/infra/audit_log.py
"""
Audit logging for dispatch mutations.

Records job and driver state changes (create, assign, status change,
cancel, driver approval) to a dedicated audit logger, separate from the
application log, with structured context.

Events are logged at INFO level to a logger named "audit" so they
can be routed to a separate file / sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    job_id: str | None = None,
    driver_id: str | None = None,
    actor_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "job.assign", "driver.approve")
        job_id: Job affected (if applicable)
        driver_id: Driver affected (if applicable)
        actor_id: Who performed the action (None = system)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "job_id": job_id or "",
        "driver_id": driver_id or "",
        "actor_id": actor_id or "system",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} job={job_id or '-'} driver={driver_id or '-'} "
        f"actor={actor_id or 'system'} {detail}",
        extra=record,
    )
