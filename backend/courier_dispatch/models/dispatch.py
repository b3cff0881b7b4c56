"""Domain models for order-to-partner dispatch, lifecycle and metrics."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, NewType, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


OrderId = NewType("OrderId", str)
PartnerId = NewType("PartnerId", str)
LedgerEntryId = NewType("LedgerEntryId", str)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OrderStatus(str, Enum):
    """Lifecycle status for an order."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED = "picked"
    DELIVERED = "delivered"


# Statuses in which an order must reference its partner.
ASSIGNED_STATUSES = frozenset({OrderStatus.ASSIGNED, OrderStatus.PICKED, OrderStatus.DELIVERED})


class PartnerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AssignmentStatus(str, Enum):
    """Outcome of a single assignment attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why an assignment attempt found no partner."""

    NO_PARTNER_IN_AREA = "no eligible partner in area"
    ALL_AT_CAPACITY = "all eligible partners at capacity"


class TrendBucketing(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


# ---- Orders ----

class CustomerInfo(BaseModel):
    name: str = Field(min_length=1)
    phone: str = ""
    address: str = ""


class OrderItem(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


def items_total(items: List[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


class OrderCreateRequest(BaseModel):
    """Request payload to place a new order."""

    customer: CustomerInfo
    area: str = Field(min_length=1)
    items: List[OrderItem] = Field(min_length=1)
    scheduled_for: datetime
    total_amount: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_total(self) -> "OrderCreateRequest":
        if self.total_amount is not None and self.total_amount != items_total(self.items):
            raise ValueError(
                f"total_amount {self.total_amount} does not match item total {items_total(self.items)}"
            )
        return self


class OrderRecord(BaseModel):
    """Persisted order record."""

    order_id: OrderId
    order_number: str
    customer: CustomerInfo
    area: str = Field(min_length=1)
    items: List[OrderItem] = Field(min_length=1)
    total_amount: Decimal
    scheduled_for: datetime
    status: OrderStatus = OrderStatus.PENDING
    assigned_to: Optional[PartnerId] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_invariants(self) -> "OrderRecord":
        if self.total_amount != items_total(self.items):
            raise ValueError(f"Order {self.order_id} total does not equal the sum of its items")
        if (self.status in ASSIGNED_STATUSES) != (self.assigned_to is not None):
            raise ValueError(
                f"Order {self.order_id} in status '{self.status.value}' "
                f"must {'' if self.status in ASSIGNED_STATUSES else 'not '}reference a partner"
            )
        return self


class OrderFilters(BaseModel):
    status: Optional[OrderStatus] = None
    area: Optional[str] = None
    created_on: Optional[date] = Field(default=None, description="Calendar day (UTC) the order was created")


# ---- Partners ----

class PartnerShift(BaseModel):
    start: str = Field(default="09:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str = Field(default="17:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class PartnerMetrics(BaseModel):
    rating: float = Field(default=5.0, ge=0, le=5)
    completed_orders: int = Field(default=0, ge=0)
    cancelled_orders: int = Field(default=0, ge=0)


def _clean_areas(value: List[str]) -> List[str]:
    seen: List[str] = []
    for area in value:
        if not area:
            raise ValueError("Partner areas must be non-empty labels")
        if area not in seen:
            seen.append(area)
    if not seen:
        raise ValueError("Partner must serve at least one area")
    return seen


class PartnerCreateRequest(BaseModel):
    """Onboarding payload for a delivery partner."""

    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = ""
    password: SecretStr
    areas: List[str] = Field(min_length=1)
    shift: PartnerShift = Field(default_factory=PartnerShift)
    status: PartnerStatus = PartnerStatus.ACTIVE
    rating: float = Field(default=5.0, ge=0, le=5)

    @field_validator("areas")
    @classmethod
    def _areas(cls, value: List[str]) -> List[str]:
        return _clean_areas(value)


class PartnerUpdateRequest(BaseModel):
    """Administrator patch; load and order counters are not editable here."""

    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = Field(default=None, min_length=3)
    phone: Optional[str] = None
    areas: Optional[List[str]] = None
    shift: Optional[PartnerShift] = None
    status: Optional[PartnerStatus] = None
    rating: Optional[float] = Field(default=None, ge=0, le=5)

    @field_validator("areas")
    @classmethod
    def _areas(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return None if value is None else _clean_areas(value)


class PartnerRecord(BaseModel):
    """Persisted partner record. The credential lives outside this model."""

    partner_id: PartnerId
    name: str
    email: str
    phone: str = ""
    areas: List[str]
    shift: PartnerShift = Field(default_factory=PartnerShift)
    status: PartnerStatus = PartnerStatus.ACTIVE
    current_load: int = Field(default=0, ge=0)
    metrics: PartnerMetrics = Field(default_factory=PartnerMetrics)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("areas")
    @classmethod
    def _areas(cls, value: List[str]) -> List[str]:
        return _clean_areas(value)


class PartnerFilters(BaseModel):
    area: Optional[str] = None
    status: Optional[PartnerStatus] = None


# ---- Assignment ledger ----

class AssignmentLedgerEntry(BaseModel):
    """One assignment attempt. Entries are never modified once appended."""

    entry_id: LedgerEntryId
    order_id: OrderId
    partner_id: Optional[PartnerId] = None
    status: AssignmentStatus
    reason: Optional[FailureReason] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_shape(self) -> "AssignmentLedgerEntry":
        if self.status == AssignmentStatus.SUCCESS:
            if self.partner_id is None or self.reason is not None:
                raise ValueError("Successful assignment needs a partner and no failure reason")
        elif self.reason is None or self.partner_id is not None:
            raise ValueError("Failed assignment needs a reason and no partner")
        return self


class LedgerFilters(BaseModel):
    order_id: Optional[OrderId] = None
    partner_id: Optional[PartnerId] = None
    status: Optional[AssignmentStatus] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


class MatchResult(BaseModel):
    """Outcome of ``match``; a failed match is data, not an exception."""

    order_id: OrderId
    status: AssignmentStatus
    partner_id: Optional[PartnerId] = None
    reason: Optional[FailureReason] = None
    entry: AssignmentLedgerEntry


class AssignmentRunRequest(BaseModel):
    order_id: OrderId


class BatchAssignmentRequest(BaseModel):
    order_ids: Optional[List[OrderId]] = Field(default=None, description="Defaults to every pending order")


class BatchAssignmentResult(BaseModel):
    results: List[MatchResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    assigned: int = 0
    failed: int = 0


class LifecycleTransitionRequest(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=1)


# ---- Timeline ----

class TimelineEvent(BaseModel):
    """Operational event associated with an order."""

    event_id: str
    order_id: OrderId
    event_type: str
    actor: str
    timestamp: datetime = Field(default_factory=_utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


# ---- Derived metrics ----

class FailureReasonCount(BaseModel):
    reason: str
    count: int


class AssignmentMetricsSnapshot(BaseModel):
    total_assigned: int
    success_rate: float
    failure_reasons: List[FailureReasonCount] = Field(default_factory=list)


class TrendBucket(BaseModel):
    bucket: date
    label: str
    orders: int
    success: int


class LocationPerformance(BaseModel):
    area: str
    completed_orders: int
    partner_count: int


class PartnerMetricsSummary(BaseModel):
    total_partners: int
    total_active: int
    avg_rating: float
    top_areas: List[str] = Field(default_factory=list)


class AssignmentStats(BaseModel):
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    total_assignments: int
    successful_assignments: int
    failed_assignments: int
    average_response_seconds: float


class DashboardSummary(BaseModel):
    total_orders: int
    pending_orders: int
    assigned_orders: int
    picked_orders: int
    delivered_orders: int
    total_partners: int
    active_partners: int
    assignment_success_rate: float


class DemoSeedRequest(BaseModel):
    seed: int = 7
    partners: int = Field(default=8, ge=1, le=200)
    orders: int = Field(default=25, ge=0, le=2000)
