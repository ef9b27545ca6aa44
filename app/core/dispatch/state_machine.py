# app/core/dispatch/state_machine.py
"""
Job status adjacency.

Happy path::

    pending -> assigned -> en_route_pickup -> arrived_pickup -> picked_up
            -> en_route_delivery -> arrived_delivery -> delivered

``cancelled`` and ``on_hold`` are reachable from every non-terminal status.
A held job may only resume to the status it was held from (``held_from``)
or be cancelled.
"""
from __future__ import annotations

from typing import Optional

from app.core.dispatch.domain import JobStatus, TERMINAL_STATUSES

HAPPY_PATH: tuple[JobStatus, ...] = (
    JobStatus.PENDING,
    JobStatus.ASSIGNED,
    JobStatus.EN_ROUTE_PICKUP,
    JobStatus.ARRIVED_PICKUP,
    JobStatus.PICKED_UP,
    JobStatus.EN_ROUTE_DELIVERY,
    JobStatus.ARRIVED_DELIVERY,
    JobStatus.DELIVERED,
)

# Forward edges of the happy path. cancelled/on_hold are added below.
_FORWARD: dict[JobStatus, JobStatus] = {
    src: dst for src, dst in zip(HAPPY_PATH, HAPPY_PATH[1:])
}

# Statuses a bound driver may set on their own job.
DRIVER_SETTABLE: frozenset[JobStatus] = frozenset({
    JobStatus.EN_ROUTE_PICKUP,
    JobStatus.ARRIVED_PICKUP,
    JobStatus.PICKED_UP,
    JobStatus.EN_ROUTE_DELIVERY,
    JobStatus.ARRIVED_DELIVERY,
    JobStatus.DELIVERED,
})

# assign/unassign own these edges; transition() must not take them.
ENGINE_ONLY_TARGETS: frozenset[JobStatus] = frozenset({
    JobStatus.PENDING,
    JobStatus.ASSIGNED,
})


def next_statuses(current: JobStatus, held_from: Optional[JobStatus] = None) -> frozenset[JobStatus]:
    """All statuses directly reachable from ``current``."""
    if current in TERMINAL_STATUSES:
        return frozenset()
    if current == JobStatus.ON_HOLD:
        targets = {held_from} if held_from is not None else set()
        # assign edge out of a hold placed on a pending job
        if held_from == JobStatus.PENDING:
            targets.add(JobStatus.ASSIGNED)
        return frozenset(targets | {JobStatus.CANCELLED})

    targets = {JobStatus.CANCELLED, JobStatus.ON_HOLD}
    forward = _FORWARD.get(current)
    if forward is not None:
        targets.add(forward)
    # unassign edge
    if current == JobStatus.ASSIGNED:
        targets.add(JobStatus.PENDING)
    return frozenset(targets)


def can_transition(
    current: JobStatus,
    target: JobStatus,
    held_from: Optional[JobStatus] = None,
) -> bool:
    return target in next_statuses(current, held_from)


def is_resume(current: JobStatus, target: JobStatus, held_from: Optional[JobStatus]) -> bool:
    return current == JobStatus.ON_HOLD and held_from is not None and target == held_from


def is_valid_walk(statuses: list[JobStatus]) -> bool:
    """
    Check that a recorded status history is a walk over the adjacency graph.

    ``held_from`` is reconstructed along the way: entering ``on_hold``
    remembers the previous status.
    """
    if not statuses or statuses[0] != JobStatus.PENDING:
        return False
    held_from: Optional[JobStatus] = None
    for prev, nxt in zip(statuses, statuses[1:]):
        if not can_transition(prev, nxt, held_from):
            return False
        if nxt == JobStatus.ON_HOLD:
            held_from = prev
        elif prev == JobStatus.ON_HOLD:
            held_from = None
    return True
