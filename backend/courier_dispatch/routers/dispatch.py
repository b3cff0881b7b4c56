"""API routes for orders, partners, assignment runs and lifecycle transitions."""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder

from courier_dispatch.core.auth import CallerContext, get_caller_context, require_roles
from courier_dispatch.core.errors import ConcurrencyConflict, DispatchError, NotFound
from courier_dispatch.core.logging import logger
from courier_dispatch.models.dispatch import (
    AssignmentLedgerEntry,
    AssignmentRunRequest,
    AssignmentStatus,
    BatchAssignmentRequest,
    BatchAssignmentResult,
    DemoSeedRequest,
    LedgerFilters,
    LifecycleTransitionRequest,
    MatchResult,
    OrderCreateRequest,
    OrderFilters,
    OrderRecord,
    OrderStatus,
    PartnerCreateRequest,
    PartnerFilters,
    PartnerRecord,
    PartnerStatus,
    PartnerUpdateRequest,
)
from courier_dispatch.services.dispatch_engine import DispatchEngine, get_dispatch_engine

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


def _http_error(exc: DispatchError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, ConcurrencyConflict):
        return HTTPException(status_code=409, detail={"error": exc.message, "retryable": True})
    return HTTPException(status_code=409, detail=exc.message)


def _idempotency_lookup(engine: DispatchEngine, operation: str, key: str | None):
    if not key:
        return None
    return engine.state.get_idempotent(f"{operation}:{key.strip()}")


def _idempotency_store(engine: DispatchEngine, operation: str, key: str | None, response) -> None:
    if not key:
        return
    engine.state.set_idempotent(f"{operation}:{key.strip()}", jsonable_encoder(response))


# -------------------- orders --------------------

@router.post("/orders", response_model=OrderRecord)
def create_order(
    request: OrderCreateRequest,
    context: CallerContext = Depends(require_roles("operator", "admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(engine, "create_order", idempotency_key)
    if cached:
        return cached
    response = engine.create_order(request, actor=context.actor)
    _idempotency_store(engine, "create_order", idempotency_key, response)
    return response


@router.get("/orders", response_model=List[OrderRecord])
def list_orders(
    status: Optional[OrderStatus] = Query(default=None),
    area: Optional[str] = Query(default=None),
    created_on: Optional[date] = Query(default=None, alias="date"),
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.list_orders(OrderFilters(status=status, area=area, created_on=created_on))


@router.get("/orders/{order_id}", response_model=OrderRecord)
def get_order(
    order_id: str,
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    try:
        return engine.get_order(order_id)
    except DispatchError as exc:
        raise _http_error(exc)


@router.get("/orders/{order_id}/timeline")
def order_timeline(
    order_id: str,
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    try:
        return engine.timeline(order_id)
    except DispatchError as exc:
        raise _http_error(exc)


@router.post("/orders/{order_id}/assign", response_model=MatchResult)
def assign_order(
    order_id: str,
    context: CallerContext = Depends(require_roles("operator", "admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return run_assignment(AssignmentRunRequest(order_id=order_id), context, engine, idempotency_key)


def _transition(
    action: str,
    order_id: str,
    request: Optional[LifecycleTransitionRequest],
    context: CallerContext,
    engine: DispatchEngine,
    idempotency_key: str | None,
):
    cached = _idempotency_lookup(engine, f"{action}:{order_id}", idempotency_key)
    if cached:
        return cached
    handler = {
        "pick": engine.mark_picked,
        "deliver": engine.mark_delivered,
        "cancel": engine.cancel,
    }[action]
    expected_version = request.expected_version if request else None
    try:
        response = handler(order_id, actor=context.actor, expected_version=expected_version)
    except DispatchError as exc:
        logger.warning("Order transition rejected", order_id=order_id, action=action, error=exc.message)
        raise _http_error(exc)
    _idempotency_store(engine, f"{action}:{order_id}", idempotency_key, response)
    return response


@router.post("/orders/{order_id}/pick", response_model=OrderRecord)
def mark_picked(
    order_id: str,
    request: Optional[LifecycleTransitionRequest] = None,
    context: CallerContext = Depends(require_roles("operator", "admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return _transition("pick", order_id, request, context, engine, idempotency_key)


@router.post("/orders/{order_id}/deliver", response_model=OrderRecord)
def mark_delivered(
    order_id: str,
    request: Optional[LifecycleTransitionRequest] = None,
    context: CallerContext = Depends(require_roles("operator", "admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return _transition("deliver", order_id, request, context, engine, idempotency_key)


@router.post("/orders/{order_id}/cancel", response_model=OrderRecord)
def cancel_order(
    order_id: str,
    request: Optional[LifecycleTransitionRequest] = None,
    context: CallerContext = Depends(require_roles("operator", "admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return _transition("cancel", order_id, request, context, engine, idempotency_key)


# -------------------- assignments --------------------

@router.get("/assignments", response_model=List[AssignmentLedgerEntry])
def list_assignments(
    order_id: Optional[str] = Query(default=None, alias="orderId"),
    partner_id: Optional[str] = Query(default=None, alias="partnerId"),
    status: Optional[AssignmentStatus] = Query(default=None),
    from_date: Optional[datetime] = Query(default=None, alias="fromDate"),
    to_date: Optional[datetime] = Query(default=None, alias="toDate"),
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.list_assignments(
        LedgerFilters(
            order_id=order_id,
            partner_id=partner_id,
            status=status,
            from_date=from_date,
            to_date=to_date,
        )
    )


@router.post("/assignments/run", response_model=MatchResult)
def run_assignment(
    request: AssignmentRunRequest,
    context: CallerContext = Depends(require_roles("operator", "admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(engine, f"assign:{request.order_id}", idempotency_key)
    if cached:
        return cached
    try:
        response = engine.run_assignment(request.order_id, actor=context.actor)
    except DispatchError as exc:
        logger.warning("Assignment run rejected", order_id=request.order_id, error=exc.message)
        raise _http_error(exc)
    _idempotency_store(engine, f"assign:{request.order_id}", idempotency_key, response)
    return response


@router.post("/assignments/run-batch", response_model=BatchAssignmentResult)
def run_batch_assignment(
    request: BatchAssignmentRequest,
    context: CallerContext = Depends(require_roles("operator", "admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.run_batch(request.order_ids, actor=context.actor)


@router.get("/assignments/{entry_id}", response_model=AssignmentLedgerEntry)
def get_assignment(
    entry_id: str,
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    try:
        return engine.get_assignment(entry_id)
    except DispatchError as exc:
        raise _http_error(exc)


# -------------------- partners --------------------

@router.post("/partners", response_model=PartnerRecord)
def create_partner(
    request: PartnerCreateRequest,
    context: CallerContext = Depends(require_roles("admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    try:
        return engine.create_partner(request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc)


@router.get("/partners", response_model=List[PartnerRecord])
def list_partners(
    area: Optional[str] = Query(default=None),
    status: Optional[PartnerStatus] = Query(default=None),
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    return engine.list_partners(PartnerFilters(area=area, status=status))


@router.get("/partners/{partner_id}", response_model=PartnerRecord)
def get_partner(
    partner_id: str,
    context: CallerContext = Depends(get_caller_context),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    try:
        return engine.get_partner(partner_id)
    except DispatchError as exc:
        raise _http_error(exc)


@router.patch("/partners/{partner_id}", response_model=PartnerRecord)
def update_partner(
    partner_id: str,
    request: PartnerUpdateRequest,
    context: CallerContext = Depends(require_roles("admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    try:
        return engine.update_partner(partner_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc)


# -------------------- demo --------------------

@router.post("/seed")
def seed_demo(
    request: DemoSeedRequest,
    context: CallerContext = Depends(require_roles("admin")),
    engine: DispatchEngine = Depends(get_dispatch_engine),
):
    if not engine.settings.is_demo_mode():
        raise HTTPException(status_code=403, detail="Demo seed is disabled in production mode.")
    try:
        return engine.seed_demo(
            seed=request.seed,
            partners=request.partners,
            orders=request.orders,
            actor=context.actor,
        )
    except Exception as exc:
        logger.error("Failed to seed demo data", error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
