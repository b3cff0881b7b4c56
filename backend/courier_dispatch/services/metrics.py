"""Derived dashboard metrics, recomputed from current store state on every read."""
from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union

from courier_dispatch.models.dispatch import (
    AssignmentLedgerEntry,
    AssignmentMetricsSnapshot,
    AssignmentStats,
    AssignmentStatus,
    DashboardSummary,
    FailureReasonCount,
    LedgerFilters,
    LocationPerformance,
    OrderRecord,
    OrderStatus,
    PartnerMetricsSummary,
    PartnerStatus,
    TrendBucket,
    TrendBucketing,
    ensure_utc,
)
from courier_dispatch.services.interfaces import DispatchState


def success_rate(entries: List[AssignmentLedgerEntry]) -> float:
    """Percentage of successful attempts; 0 when there were no attempts."""
    if not entries:
        return 0.0
    successes = sum(1 for entry in entries if entry.status == AssignmentStatus.SUCCESS)
    return successes / len(entries) * 100


def bucket_start(value: Union[date, datetime], bucketing: TrendBucketing) -> date:
    day = ensure_utc(value).date() if isinstance(value, datetime) else value
    if bucketing == TrendBucketing.DAY:
        return day
    if bucketing == TrendBucketing.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def next_bucket(start: date, bucketing: TrendBucketing) -> date:
    if bucketing == TrendBucketing.DAY:
        return start + timedelta(days=1)
    if bucketing == TrendBucketing.WEEK:
        return start + timedelta(days=7)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def bucket_count(first: date, last: date, bucketing: TrendBucketing) -> int:
    """Number of buckets from ``first`` to ``last`` inclusive; both are bucket starts."""
    if bucketing == TrendBucketing.DAY:
        return (last - first).days + 1
    if bucketing == TrendBucketing.WEEK:
        return (last - first).days // 7 + 1
    return (last.year - first.year) * 12 + last.month - first.month + 1


def bucket_label(start: date, bucketing: TrendBucketing) -> str:
    if bucketing == TrendBucketing.DAY:
        return start.isoformat()
    if bucketing == TrendBucketing.WEEK:
        year, week, _ = start.isocalendar()
        return f"{year}-W{week:02d}"
    return start.strftime("%b %Y")


class MetricsAggregator:
    """Read-only views over orders, partners and the assignment ledger."""

    TOP_AREAS_LIMIT = 3

    def __init__(self, state: DispatchState, max_trend_buckets: int = 3660) -> None:
        if max_trend_buckets < 1:
            raise ValueError("max_trend_buckets must be >= 1")
        self.state = state
        self.max_trend_buckets = max_trend_buckets

    def assignment_metrics(self) -> AssignmentMetricsSnapshot:
        with self.state.snapshot():
            entries = self.state.query_entries()

        reasons = Counter(
            entry.reason.value
            for entry in entries
            if entry.status == AssignmentStatus.FAILED and entry.reason is not None
        )
        histogram = sorted(reasons.items(), key=lambda item: (-item[1], item[0]))
        return AssignmentMetricsSnapshot(
            total_assigned=sum(1 for entry in entries if entry.status == AssignmentStatus.SUCCESS),
            success_rate=success_rate(entries),
            failure_reasons=[FailureReasonCount(reason=reason, count=count) for reason, count in histogram],
        )

    def order_trends(
        self,
        bucketing: TrendBucketing = TrendBucketing.MONTH,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[TrendBucket]:
        """Dense time series of orders placed and orders delivered per bucket.

        Orders are bucketed by ``created_at``. Without an explicit range the
        series spans the earliest to the latest order; empty buckets in between
        are kept with zero counts.
        """
        with self.state.snapshot():
            orders = self.state.list_orders()

        totals: Counter = Counter()
        delivered: Counter = Counter()
        for order in orders:
            key = bucket_start(order.created_at, bucketing)
            totals[key] += 1
            if order.status == OrderStatus.DELIVERED:
                delivered[key] += 1

        if start and end and start > end:
            raise ValueError("Trend start must not be after trend end")

        first = bucket_start(start, bucketing) if start else (min(totals) if totals else None)
        last = bucket_start(end, bucketing) if end else (max(totals) if totals else None)
        first = first or last
        last = last or first
        if first is None or first > last:
            return []
        span = bucket_count(first, last, bucketing)
        if span > self.max_trend_buckets:
            raise ValueError(
                f"Trend range covers {span} {bucketing.value} buckets; the limit is {self.max_trend_buckets}"
            )

        series: List[TrendBucket] = []
        cursor = first
        while True:
            series.append(
                TrendBucket(
                    bucket=cursor,
                    label=bucket_label(cursor, bucketing),
                    orders=totals.get(cursor, 0),
                    success=delivered.get(cursor, 0),
                )
            )
            # Stop before stepping so the last bucket may sit at the end of the calendar.
            if cursor >= last:
                break
            cursor = next_bucket(cursor, bucketing)
        return series

    def location_performance(self) -> List[LocationPerformance]:
        with self.state.snapshot():
            orders = self.state.list_orders()
            partners = self.state.list_partners()

        completed: Counter = Counter()
        areas = set()
        for order in orders:
            areas.add(order.area)
            if order.status == OrderStatus.DELIVERED:
                completed[order.area] += 1

        coverage: Counter = Counter()
        for partner in partners:
            for area in partner.areas:
                areas.add(area)
                coverage[area] += 1

        rows = [
            LocationPerformance(area=area, completed_orders=completed.get(area, 0), partner_count=coverage.get(area, 0))
            for area in areas
        ]
        return sorted(rows, key=lambda row: (-row.completed_orders, row.area))

    def partner_summary(self) -> PartnerMetricsSummary:
        with self.state.snapshot():
            partners = self.state.list_partners()

        active = [partner for partner in partners if partner.status == PartnerStatus.ACTIVE]
        avg_rating = round(sum(p.metrics.rating for p in active) / len(active), 2) if active else 0.0
        coverage = Counter(area for partner in active for area in partner.areas)
        top_areas = [area for area, _ in sorted(coverage.items(), key=lambda item: (-item[1], item[0]))]
        return PartnerMetricsSummary(
            total_partners=len(partners),
            total_active=len(active),
            avg_rating=avg_rating,
            top_areas=top_areas[: self.TOP_AREAS_LIMIT],
        )

    def assignment_stats(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> AssignmentStats:
        with self.state.snapshot():
            entries = self.state.query_entries(LedgerFilters(from_date=from_date, to_date=to_date))
            orders: Dict[str, OrderRecord] = {order.order_id: order for order in self.state.list_orders()}

        successes = [entry for entry in entries if entry.status == AssignmentStatus.SUCCESS]
        waits = [
            (ensure_utc(entry.created_at) - ensure_utc(orders[entry.order_id].created_at)).total_seconds()
            for entry in successes
            if entry.order_id in orders
        ]
        return AssignmentStats(
            from_date=from_date,
            to_date=to_date,
            total_assignments=len(entries),
            successful_assignments=len(successes),
            failed_assignments=len(entries) - len(successes),
            average_response_seconds=round(sum(waits) / len(waits), 2) if waits else 0.0,
        )

    def dashboard_summary(self) -> DashboardSummary:
        with self.state.snapshot():
            orders = self.state.list_orders()
            partners = self.state.list_partners()
            entries = self.state.query_entries()

        by_status = Counter(order.status for order in orders)
        return DashboardSummary(
            total_orders=len(orders),
            pending_orders=by_status.get(OrderStatus.PENDING, 0),
            assigned_orders=by_status.get(OrderStatus.ASSIGNED, 0),
            picked_orders=by_status.get(OrderStatus.PICKED, 0),
            delivered_orders=by_status.get(OrderStatus.DELIVERED, 0),
            total_partners=len(partners),
            active_partners=sum(1 for partner in partners if partner.status == PartnerStatus.ACTIVE),
            assignment_success_rate=success_rate(entries),
        )
