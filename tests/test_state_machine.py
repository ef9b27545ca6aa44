# tests/test_state_machine.py
"""Tests for job status adjacency."""
from __future__ import annotations

import pytest

from app.core.dispatch.domain import JobStatus as S
from app.core.dispatch.state_machine import (
    HAPPY_PATH,
    can_transition,
    is_resume,
    is_valid_walk,
    next_statuses,
)


class TestAdjacency:
    @pytest.mark.parametrize("src,dst", list(zip(HAPPY_PATH, HAPPY_PATH[1:])))
    def test_happy_path_edges(self, src, dst):
        assert can_transition(src, dst)

    @pytest.mark.parametrize("status", [s for s in HAPPY_PATH if s != S.DELIVERED])
    def test_cancel_and_hold_from_every_live_status(self, status):
        assert can_transition(status, S.CANCELLED)
        assert can_transition(status, S.ON_HOLD)

    def test_skipping_steps_rejected(self):
        assert not can_transition(S.PENDING, S.DELIVERED)
        assert not can_transition(S.ASSIGNED, S.PICKED_UP)

    def test_no_backwards_edges_except_unassign(self):
        assert can_transition(S.ASSIGNED, S.PENDING)
        assert not can_transition(S.PICKED_UP, S.ARRIVED_PICKUP)
        assert not can_transition(S.EN_ROUTE_PICKUP, S.ASSIGNED)

    @pytest.mark.parametrize("terminal", [S.DELIVERED, S.CANCELLED])
    def test_terminal_statuses_have_no_exits(self, terminal):
        assert next_statuses(terminal) == frozenset()


class TestOnHold:
    def test_resume_only_to_held_from(self):
        assert next_statuses(S.ON_HOLD, S.PICKED_UP) == frozenset({S.PICKED_UP, S.CANCELLED})

    def test_hold_from_pending_allows_assign(self):
        assert next_statuses(S.ON_HOLD, S.PENDING) == frozenset({S.PENDING, S.ASSIGNED, S.CANCELLED})

    def test_is_resume(self):
        assert is_resume(S.ON_HOLD, S.ASSIGNED, S.ASSIGNED)
        assert not is_resume(S.ON_HOLD, S.EN_ROUTE_PICKUP, S.ASSIGNED)
        assert not is_resume(S.ASSIGNED, S.ASSIGNED, None)


class TestValidWalk:
    def test_full_happy_path(self):
        assert is_valid_walk(list(HAPPY_PATH))

    def test_must_start_pending(self):
        assert not is_valid_walk([S.ASSIGNED, S.EN_ROUTE_PICKUP])
        assert not is_valid_walk([])

    def test_hold_and_resume(self):
        walk = [S.PENDING, S.ASSIGNED, S.EN_ROUTE_PICKUP, S.ON_HOLD, S.EN_ROUTE_PICKUP, S.ARRIVED_PICKUP]
        assert is_valid_walk(walk)

    def test_resume_to_other_status_invalid(self):
        walk = [S.PENDING, S.ASSIGNED, S.ON_HOLD, S.EN_ROUTE_PICKUP]
        assert not is_valid_walk(walk)

    def test_jump_invalid(self):
        assert not is_valid_walk([S.PENDING, S.DELIVERED])
