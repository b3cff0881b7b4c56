"""Orchestration layer between the HTTP surface and the dispatch core."""
from __future__ import annotations

import random
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.core.logging import logger
from courier_dispatch.models.dispatch import (
    AssignmentLedgerEntry,
    AssignmentMetricsSnapshot,
    AssignmentStats,
    AssignmentStatus,
    BatchAssignmentResult,
    CustomerInfo,
    DashboardSummary,
    LedgerEntryId,
    LedgerFilters,
    LocationPerformance,
    MatchResult,
    OrderCreateRequest,
    OrderFilters,
    OrderId,
    OrderItem,
    OrderRecord,
    PartnerCreateRequest,
    PartnerFilters,
    PartnerId,
    PartnerMetricsSummary,
    PartnerRecord,
    PartnerUpdateRequest,
    TrendBucket,
    TrendBucketing,
)
from courier_dispatch.services.dispatch_state import DispatchStateStore
from courier_dispatch.services.interfaces import DispatchState
from courier_dispatch.services.lifecycle import LifecycleController
from courier_dispatch.services.locks import KeyedLockRegistry
from courier_dispatch.services.matcher import AssignmentMatcher
from courier_dispatch.services.metrics import MetricsAggregator


class DispatchEngine:
    """Wires the stores, matcher, lifecycle controller and aggregator together."""

    DEMO_AREAS = ["North", "South", "East", "West", "Central"]
    DEMO_UNSERVED_AREA = "Harbor"
    DEMO_MENU = [
        ("Margherita Pizza", Decimal("11.50")),
        ("Chicken Wrap", Decimal("7.25")),
        ("Caesar Salad", Decimal("8.00")),
        ("Iced Tea", Decimal("2.50")),
        ("Brownie", Decimal("3.75")),
    ]

    def __init__(self, state: DispatchState, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.state = state
        self.lifecycle = LifecycleController(
            state,
            order_locks=KeyedLockRegistry("order", self.settings.lock_timeout_seconds),
            partner_locks=KeyedLockRegistry("partner", self.settings.lock_timeout_seconds),
        )
        self.matcher = AssignmentMatcher(state, self.lifecycle, self.settings.capacity_ceiling)
        self.metrics = MetricsAggregator(state, max_trend_buckets=self.settings.trend_max_buckets)

    # -------------------- orders --------------------

    def create_order(self, request: OrderCreateRequest, actor: str) -> OrderRecord:
        order = self.state.create_order(request)
        self.state.record_timeline_event(
            order.order_id,
            event_type="order_created",
            actor=actor,
            details={"area": order.area, "total_amount": str(order.total_amount)},
        )
        logger.info("Order created", order_id=order.order_id, area=order.area, actor=actor)
        return order

    def get_order(self, order_id: OrderId) -> OrderRecord:
        return self.state.get_order(order_id)

    def list_orders(self, filters: Optional[OrderFilters] = None) -> List[OrderRecord]:
        return self.state.list_orders(filters)

    def timeline(self, order_id: OrderId) -> Dict[str, Any]:
        order = self.state.get_order(order_id)
        return {
            "order": order,
            "events": self.state.list_timeline(order_id),
            "assignments": self.state.query_entries(LedgerFilters(order_id=order_id)),
        }

    # -------------------- partners --------------------

    def create_partner(self, request: PartnerCreateRequest, actor: str) -> PartnerRecord:
        partner = self.state.create_partner(request)
        logger.info("Partner onboarded", partner_id=partner.partner_id, areas=partner.areas, actor=actor)
        return partner

    def update_partner(self, partner_id: PartnerId, request: PartnerUpdateRequest, actor: str) -> PartnerRecord:
        with self.lifecycle.partner_locks.hold(partner_id):
            partner = self.state.update_partner(partner_id, request)
        logger.info(
            "Partner updated",
            partner_id=partner_id,
            fields=sorted(request.model_dump(exclude_none=True).keys()),
            actor=actor,
        )
        return partner

    def get_partner(self, partner_id: PartnerId) -> PartnerRecord:
        return self.state.get_partner(partner_id)

    def list_partners(self, filters: Optional[PartnerFilters] = None) -> List[PartnerRecord]:
        return self.state.list_partners(filters)

    # -------------------- assignment --------------------

    def run_assignment(self, order_id: OrderId, actor: str) -> MatchResult:
        return self.matcher.match(order_id, actor=actor)

    def run_batch(self, order_ids: Optional[List[OrderId]], actor: str) -> BatchAssignmentResult:
        result = self.matcher.match_batch(order_ids, actor=actor)
        logger.info(
            "Batch assignment finished",
            requested=len(result.results) + len(result.errors),
            assigned=result.assigned,
            failed=result.failed,
            errors=len(result.errors),
        )
        return result

    def list_assignments(self, filters: Optional[LedgerFilters] = None) -> List[AssignmentLedgerEntry]:
        return self.state.query_entries(filters)

    def get_assignment(self, entry_id: LedgerEntryId) -> AssignmentLedgerEntry:
        return self.state.get_entry(entry_id)

    # -------------------- lifecycle --------------------

    def mark_picked(self, order_id: OrderId, actor: str, expected_version: Optional[int] = None) -> OrderRecord:
        return self.lifecycle.mark_picked(order_id, actor=actor, expected_version=expected_version)

    def mark_delivered(self, order_id: OrderId, actor: str, expected_version: Optional[int] = None) -> OrderRecord:
        return self.lifecycle.mark_delivered(order_id, actor=actor, expected_version=expected_version)

    def cancel(self, order_id: OrderId, actor: str, expected_version: Optional[int] = None) -> OrderRecord:
        return self.lifecycle.cancel(order_id, actor=actor, expected_version=expected_version)

    # -------------------- metrics --------------------

    def assignment_metrics(self) -> AssignmentMetricsSnapshot:
        return self.metrics.assignment_metrics()

    def order_trends(
        self,
        bucketing: Optional[TrendBucketing] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[TrendBucket]:
        bucketing = bucketing or TrendBucketing(self.settings.trend_default_bucketing)
        return self.metrics.order_trends(bucketing=bucketing, start=start, end=end)

    def location_performance(self) -> List[LocationPerformance]:
        return self.metrics.location_performance()

    def partner_summary(self) -> PartnerMetricsSummary:
        return self.metrics.partner_summary()

    def assignment_stats(self, from_date: Optional[datetime], to_date: Optional[datetime]) -> AssignmentStats:
        return self.metrics.assignment_stats(from_date=from_date, to_date=to_date)

    def dashboard_summary(self) -> DashboardSummary:
        return self.metrics.dashboard_summary()

    # -------------------- demo data --------------------

    def seed_demo(self, seed: int, partners: int, orders: int, actor: str) -> Dict[str, Any]:
        """Reset the store and play a small synthetic day through the real engine."""
        if not self.settings.is_demo_mode():
            raise RuntimeError("Demo seed is disabled in production mode.")
        if not isinstance(self.state, DispatchStateStore):
            raise RuntimeError("Demo seed requires the sqlite dispatch store.")

        rng = random.Random(seed)
        self.state.reset()

        partner_ids: List[str] = []
        for idx in range(partners):
            areas = rng.sample(self.DEMO_AREAS, k=rng.randint(1, 2))
            partner = self.create_partner(
                PartnerCreateRequest(
                    name=f"Demo Partner {idx + 1}",
                    email=f"partner{idx + 1}@demo.local",
                    phone=f"555-01{idx:02d}",
                    password=f"demo-{seed}-{idx}",
                    areas=areas,
                    rating=round(rng.uniform(3.5, 5.0), 1),
                ),
                actor=actor,
            )
            partner_ids.append(partner.partner_id)

        order_ids: List[str] = []
        now = datetime.now(timezone.utc)
        for idx in range(orders):
            area = self.DEMO_UNSERVED_AREA if rng.random() < 0.1 else rng.choice(self.DEMO_AREAS)
            items = [
                OrderItem(name=name, quantity=rng.randint(1, 3), price=price)
                for name, price in rng.sample(self.DEMO_MENU, k=rng.randint(1, 3))
            ]
            order = self.create_order(
                OrderCreateRequest(
                    customer=CustomerInfo(name=f"Customer {idx + 1}", phone=f"555-02{idx:02d}", address=f"{idx + 1} Main St"),
                    area=area,
                    items=items,
                    scheduled_for=now + timedelta(hours=rng.randint(1, 48)),
                ),
                actor=actor,
            )
            order_ids.append(order.order_id)

        batch = self.run_batch(None, actor=actor)
        for outcome in batch.results:
            if outcome.status != AssignmentStatus.SUCCESS:
                continue
            roll = rng.random()
            if roll < 0.6:
                self.mark_picked(outcome.order_id, actor=actor)
                if roll < 0.4:
                    self.mark_delivered(outcome.order_id, actor=actor)

        return {
            "partners_created": len(partner_ids),
            "orders_created": len(order_ids),
            "assigned": batch.assigned,
            "failed": batch.failed,
            "partner_ids": partner_ids,
            "order_ids": order_ids,
        }


@lru_cache()
def get_dispatch_engine() -> DispatchEngine:
    """Default engine for the HTTP surface, backed by the configured sqlite store."""
    return DispatchEngine(DispatchStateStore())
