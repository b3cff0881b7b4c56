"""Matching tests: eligibility, tie-breaking, capacity and concurrent attempts."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import os
import sys
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_matcher"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DISPATCH_DB_PATH"] = str(TMP / "dispatch.db")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from courier_dispatch.core.config import Settings  # noqa: E402
from courier_dispatch.core.errors import InvalidState, NotFound  # noqa: E402
from courier_dispatch.models.dispatch import (  # noqa: E402
    AssignmentStatus,
    CustomerInfo,
    FailureReason,
    LedgerFilters,
    OrderCreateRequest,
    OrderItem,
    OrderStatus,
    PartnerCreateRequest,
    PartnerStatus,
    PartnerUpdateRequest,
)
from courier_dispatch.services.dispatch_engine import DispatchEngine  # noqa: E402
from courier_dispatch.services.dispatch_state import DispatchStateStore  # noqa: E402
from courier_dispatch.services.matcher import AssignmentMatcher  # noqa: E402


def _engine(tmp_path, capacity: int = 5) -> DispatchEngine:
    settings = Settings(capacity_ceiling=capacity, lock_timeout_seconds=10.0)
    return DispatchEngine(DispatchStateStore(tmp_path / "dispatch.db"), settings=settings)


def _order(engine: DispatchEngine, area: str):
    return engine.create_order(
        OrderCreateRequest(
            customer=CustomerInfo(name="Customer"),
            area=area,
            items=[OrderItem(name="Burrito", quantity=1, price=Decimal("9.00"))],
            scheduled_for=datetime.now(timezone.utc) + timedelta(hours=1),
        ),
        actor="tester",
    )


def _partner(engine: DispatchEngine, email: str, areas, **extra):
    return engine.create_partner(
        PartnerCreateRequest(name=email.split("@")[0], email=email, password="pw-123", areas=areas, **extra),
        actor="tester",
    )


def test_match_selects_partner_serving_the_order_area(tmp_path):
    engine = _engine(tmp_path)
    order = _order(engine, "North")
    north = _partner(engine, "p1@example.com", ["North"])
    _partner(engine, "p2@example.com", ["South"])

    result = engine.run_assignment(order.order_id, actor="tester")

    assert result.status == AssignmentStatus.SUCCESS
    assert result.partner_id == north.partner_id
    assert result.reason is None
    assigned = engine.get_order(order.order_id)
    assert assigned.status == OrderStatus.ASSIGNED
    assert assigned.assigned_to == north.partner_id
    assert assigned.version == 2
    assert engine.get_partner(north.partner_id).current_load == 1

    entries = engine.list_assignments(LedgerFilters(order_id=order.order_id))
    assert len(entries) == 1
    assert entries[0].status == AssignmentStatus.SUCCESS
    assert entries[0].partner_id == north.partner_id


def test_match_records_failure_when_nobody_serves_the_area(tmp_path):
    engine = _engine(tmp_path)
    order = _order(engine, "East")
    _partner(engine, "p1@example.com", ["North"])

    result = engine.run_assignment(order.order_id, actor="tester")

    assert result.status == AssignmentStatus.FAILED
    assert result.reason == FailureReason.NO_PARTNER_IN_AREA
    assert result.partner_id is None
    assert engine.get_order(order.order_id).status == OrderStatus.PENDING
    entries = engine.list_assignments(LedgerFilters(order_id=order.order_id))
    assert [e.reason for e in entries] == [FailureReason.NO_PARTNER_IN_AREA]


def test_area_match_is_exact_and_case_sensitive(tmp_path):
    engine = _engine(tmp_path)
    order = _order(engine, "north")
    _partner(engine, "p1@example.com", ["North"])

    result = engine.run_assignment(order.order_id, actor="tester")
    assert result.reason == FailureReason.NO_PARTNER_IN_AREA


def test_inactive_partner_is_never_selected(tmp_path):
    engine = _engine(tmp_path)
    order = _order(engine, "North")
    _partner(engine, "p1@example.com", ["North"], status=PartnerStatus.INACTIVE)

    result = engine.run_assignment(order.order_id, actor="tester")
    assert result.status == AssignmentStatus.FAILED
    assert result.reason == FailureReason.NO_PARTNER_IN_AREA


def test_capacity_failure_then_success_after_delivery(tmp_path):
    engine = _engine(tmp_path, capacity=1)
    partner = _partner(engine, "p1@example.com", ["North"])
    first = _order(engine, "North")
    second = _order(engine, "North")

    assert engine.run_assignment(first.order_id, actor="tester").partner_id == partner.partner_id

    blocked = engine.run_assignment(second.order_id, actor="tester")
    assert blocked.status == AssignmentStatus.FAILED
    assert blocked.reason == FailureReason.ALL_AT_CAPACITY
    assert engine.get_partner(partner.partner_id).current_load == 1

    engine.mark_picked(first.order_id, actor="tester")
    engine.mark_delivered(first.order_id, actor="tester")
    assert engine.get_partner(partner.partner_id).current_load == 0

    retried = engine.run_assignment(second.order_id, actor="tester")
    assert retried.status == AssignmentStatus.SUCCESS
    assert retried.partner_id == partner.partner_id
    statuses = [e.status for e in engine.list_assignments(LedgerFilters(order_id=second.order_id))]
    assert statuses == [AssignmentStatus.FAILED, AssignmentStatus.SUCCESS]


def test_lowest_load_wins_then_highest_rating_then_earliest(tmp_path):
    engine = _engine(tmp_path)
    early = _partner(engine, "early@example.com", ["North"], rating=4.0)
    late = _partner(engine, "late@example.com", ["North"], rating=4.0)
    star = _partner(engine, "star@example.com", ["North"], rating=4.9)

    picks = [engine.run_assignment(_order(engine, "North").order_id, actor="tester").partner_id for _ in range(3)]

    # Equal load: rating decides, then onboarding order; load then spreads the rest.
    assert picks == [star.partner_id, early.partner_id, late.partner_id]


def test_rating_change_affects_next_selection(tmp_path):
    engine = _engine(tmp_path)
    first = _partner(engine, "a@example.com", ["North"], rating=4.0)
    second = _partner(engine, "b@example.com", ["North"], rating=4.0)
    engine.update_partner(second.partner_id, PartnerUpdateRequest(rating=5.0), actor="admin")

    result = engine.run_assignment(_order(engine, "North").order_id, actor="tester")
    assert result.partner_id == second.partner_id
    assert result.partner_id != first.partner_id


def test_matching_a_non_pending_order_is_invalid_state(tmp_path):
    engine = _engine(tmp_path)
    order = _order(engine, "North")
    _partner(engine, "p1@example.com", ["North"])
    engine.run_assignment(order.order_id, actor="tester")

    with pytest.raises(InvalidState):
        engine.run_assignment(order.order_id, actor="tester")
    successes = engine.list_assignments(LedgerFilters(order_id=order.order_id, status=AssignmentStatus.SUCCESS))
    assert len(successes) == 1


def test_matching_unknown_order_is_not_found(tmp_path):
    engine = _engine(tmp_path)
    with pytest.raises(NotFound):
        engine.run_assignment("ORD-424242", actor="tester")
    assert engine.list_assignments() == []


def test_capacity_ceiling_must_be_positive(tmp_path):
    engine = _engine(tmp_path)
    with pytest.raises(ValueError):
        AssignmentMatcher(engine.state, engine.lifecycle, capacity_ceiling=0)


def test_concurrent_matches_on_one_order_produce_one_success(tmp_path):
    engine = _engine(tmp_path)
    order = _order(engine, "North")
    _partner(engine, "p1@example.com", ["North"])
    _partner(engine, "p2@example.com", ["North"])

    def _attempt(_):
        try:
            return engine.run_assignment(order.order_id, actor="racer").status
        except InvalidState:
            return "invalid_state"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(_attempt, range(2)))

    assert outcomes.count(AssignmentStatus.SUCCESS) == 1
    assert outcomes.count("invalid_state") == 1
    successes = engine.list_assignments(LedgerFilters(order_id=order.order_id, status=AssignmentStatus.SUCCESS))
    assert len(successes) == 1
    loads = sorted(p.current_load for p in engine.list_partners())
    assert loads == [0, 1]


def test_concurrent_orders_never_push_a_partner_past_capacity(tmp_path):
    engine = _engine(tmp_path, capacity=2)
    partner = _partner(engine, "solo@example.com", ["North"])
    order_ids = [_order(engine, "North").order_id for _ in range(6)]

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda oid: engine.run_assignment(oid, actor="racer"), order_ids))

    assert sum(1 for r in results if r.status == AssignmentStatus.SUCCESS) == 2
    assert all(r.reason == FailureReason.ALL_AT_CAPACITY for r in results if r.status == AssignmentStatus.FAILED)
    assert engine.get_partner(partner.partner_id).current_load == 2


def test_batch_run_defaults_to_pending_orders_and_collects_errors(tmp_path):
    engine = _engine(tmp_path)
    _partner(engine, "p1@example.com", ["North"])
    served = _order(engine, "North")
    unserved = _order(engine, "Harbor")

    batch = engine.run_batch(None, actor="tester")
    assert batch.assigned == 1
    assert batch.failed == 1
    assert {r.order_id for r in batch.results} == {served.order_id, unserved.order_id}

    again = engine.run_batch([served.order_id, "ORD-999999"], actor="tester")
    assert again.results == []
    assert len(again.errors) == 2
