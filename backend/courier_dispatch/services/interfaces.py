"""Store contracts consumed by the matcher, lifecycle controller and aggregator.

Components receive these as constructor arguments, so any implementation
(the sqlite ``DispatchStateStore`` or an in-memory fake) can be substituted.
"""
from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Dict, List, Optional, Protocol

from courier_dispatch.models.dispatch import (
    AssignmentLedgerEntry,
    LedgerEntryId,
    LedgerFilters,
    OrderCreateRequest,
    OrderFilters,
    OrderId,
    OrderRecord,
    PartnerCreateRequest,
    PartnerFilters,
    PartnerId,
    PartnerRecord,
    PartnerUpdateRequest,
)


class OrderStore(Protocol):
    """Order source. Orders are never deleted."""

    def create_order(self, request: OrderCreateRequest) -> OrderRecord:
        ...

    def get_order(self, order_id: OrderId) -> OrderRecord:
        """Return the order or raise ``NotFound``."""
        ...

    def list_orders(self, filters: Optional[OrderFilters] = None) -> List[OrderRecord]:
        ...

    def save_order(self, order: OrderRecord) -> OrderRecord:
        """Persist a mutated order. Reserved for the matcher and lifecycle controller."""
        ...


class PartnerDirectory(Protocol):
    """Partner source."""

    def create_partner(self, request: PartnerCreateRequest) -> PartnerRecord:
        ...

    def get_partner(self, partner_id: PartnerId) -> PartnerRecord:
        """Return the partner or raise ``NotFound``."""
        ...

    def list_partners(self, filters: Optional[PartnerFilters] = None) -> List[PartnerRecord]:
        ...

    def update_partner(self, partner_id: PartnerId, request: PartnerUpdateRequest) -> PartnerRecord:
        """Apply administrator fields only."""
        ...

    def save_partner(self, partner: PartnerRecord) -> PartnerRecord:
        """Persist load/metric changes. Reserved for the matcher and lifecycle controller."""
        ...


class AssignmentLedger(Protocol):
    """Append-only sink of assignment attempts."""

    def append_entry(self, entry: AssignmentLedgerEntry) -> None:
        ...

    def get_entry(self, entry_id: LedgerEntryId) -> AssignmentLedgerEntry:
        ...

    def query_entries(self, filters: Optional[LedgerFilters] = None) -> List[AssignmentLedgerEntry]:
        ...

    def next_entry_id(self) -> LedgerEntryId:
        ...


class DispatchState(OrderStore, PartnerDirectory, AssignmentLedger, Protocol):
    """The three stores plus the atomicity and timeline hooks the core needs."""

    def transaction(self) -> AbstractContextManager[None]:
        """Group writes so they all commit or none do."""
        ...

    def snapshot(self) -> AbstractContextManager[None]:
        """Hold writers off while a multi-store read runs."""
        ...

    def record_timeline_event(
        self,
        order_id: OrderId,
        event_type: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...

    def list_timeline(self, order_id: Optional[OrderId] = None, limit: int = 300) -> List[Dict[str, Any]]:
        ...

    def get_idempotent(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def set_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        ...
