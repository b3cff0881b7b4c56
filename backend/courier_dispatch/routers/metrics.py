"""Read-only operational metrics derived from orders, partners and the ledger."""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from courier_dispatch.core.auth import CallerContext, get_caller_context
from courier_dispatch.core.logging import logger
from courier_dispatch.models.dispatch import (
    AssignmentMetricsSnapshot,
    AssignmentStats,
    DashboardSummary,
    LocationPerformance,
    PartnerMetricsSummary,
    TrendBucket,
    TrendBucketing,
    ensure_utc,
)
from courier_dispatch.services.dispatch_engine import DispatchEngine, get_dispatch_engine

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/assignments", response_model=AssignmentMetricsSnapshot)
def assignment_metrics(
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.assignment_metrics()


@router.get("/trends", response_model=List[TrendBucket])
def order_trends(
    bucketing: Optional[TrendBucketing] = Query(default=None),
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    try:
        return engine.order_trends(bucketing=bucketing, start=start, end=end)
    except ValueError as exc:
        logger.warning("Rejected trend query", start=str(start), end=str(end), error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/locations", response_model=List[LocationPerformance])
def location_performance(
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.location_performance()


@router.get("/partners", response_model=PartnerMetricsSummary)
def partner_summary(
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.partner_summary()


@router.get("/assignments/stats", response_model=AssignmentStats)
def assignment_stats(
    from_date: Optional[datetime] = Query(default=None, alias="fromDate"),
    to_date: Optional[datetime] = Query(default=None, alias="toDate"),
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    if from_date:
        from_date = ensure_utc(from_date)
    if to_date:
        to_date = ensure_utc(to_date)
    if from_date and to_date and from_date > to_date:
        raise HTTPException(status_code=400, detail="fromDate must not be after toDate")
    return engine.assignment_stats(from_date=from_date, to_date=to_date)


@router.get("/dashboard", response_model=DashboardSummary)
def dashboard_summary(
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.dashboard_summary()
