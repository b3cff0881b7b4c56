"""Order-to-partner matching."""
from __future__ import annotations

from typing import List, Optional, Tuple

from courier_dispatch.core.errors import ConcurrencyConflict, InvalidState, NotFound
from courier_dispatch.core.logging import logger
from courier_dispatch.models.dispatch import (
    AssignmentLedgerEntry,
    AssignmentStatus,
    BatchAssignmentResult,
    FailureReason,
    MatchResult,
    OrderFilters,
    OrderId,
    OrderRecord,
    OrderStatus,
    PartnerFilters,
    PartnerRecord,
    PartnerStatus,
    ensure_utc,
)
from courier_dispatch.services.interfaces import DispatchState
from courier_dispatch.services.lifecycle import LifecycleController
from courier_dispatch.services.locks import retry_conflict_once


def covers_area(partner: PartnerRecord, area: str) -> bool:
    """Active partner whose service areas contain ``area`` (exact, case-sensitive)."""
    return partner.status == PartnerStatus.ACTIVE and area in partner.areas


def is_eligible(partner: PartnerRecord, area: str, capacity_ceiling: int) -> bool:
    return covers_area(partner, area) and partner.current_load < capacity_ceiling


def selection_key(partner: PartnerRecord) -> Tuple:
    """Lowest load, then highest rating, then earliest onboarding."""
    return (
        partner.current_load,
        -partner.metrics.rating,
        ensure_utc(partner.created_at),
        partner.partner_id,
    )


def rank_candidates(partners: List[PartnerRecord], area: str, capacity_ceiling: int) -> List[PartnerRecord]:
    eligible = [partner for partner in partners if is_eligible(partner, area, capacity_ceiling)]
    return sorted(eligible, key=selection_key)


class AssignmentMatcher:
    """Picks a partner for a pending order and records every attempt in the ledger."""

    def __init__(self, state: DispatchState, lifecycle: LifecycleController, capacity_ceiling: int) -> None:
        if capacity_ceiling < 1:
            raise ValueError("capacity_ceiling must be >= 1")
        self.state = state
        self.lifecycle = lifecycle
        self.capacity_ceiling = capacity_ceiling

    def match(self, order_id: OrderId, actor: str = "system") -> MatchResult:
        return retry_conflict_once(
            lambda: self._match_once(order_id, actor),
            action="match",
            key=order_id,
        )

    def match_batch(self, order_ids: Optional[List[OrderId]], actor: str = "system") -> BatchAssignmentResult:
        """Match each order in turn; omitted ids mean every pending order, oldest first."""
        if order_ids is None:
            order_ids = [order.order_id for order in self.state.list_orders(OrderFilters(status=OrderStatus.PENDING))]

        result = BatchAssignmentResult()
        for order_id in order_ids:
            try:
                outcome = self.match(order_id, actor=actor)
            except (NotFound, InvalidState, ConcurrencyConflict) as exc:
                result.errors.append(f"{order_id}: {exc}")
                continue
            result.results.append(outcome)
            if outcome.status == AssignmentStatus.SUCCESS:
                result.assigned += 1
            else:
                result.failed += 1
        return result

    def _match_once(self, order_id: OrderId, actor: str) -> MatchResult:
        with self.lifecycle.order_locks.hold(order_id):
            order = self.state.get_order(order_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidState(
                    f"Order {order_id} is '{order.status.value}'; only pending orders can be matched",
                    order_id=order_id,
                    status=order.status.value,
                )

            in_area = [
                partner
                for partner in self.state.list_partners(PartnerFilters(area=order.area, status=PartnerStatus.ACTIVE))
                if covers_area(partner, order.area)
            ]
            if not in_area:
                return self._record_failure(order, FailureReason.NO_PARTNER_IN_AREA, actor)

            for candidate in rank_candidates(in_area, order.area, self.capacity_ceiling):
                with self.lifecycle.partner_locks.hold(candidate.partner_id):
                    with self.state.transaction():
                        # Re-read under the partner lock: another order may have taken the last slot.
                        partner = self.state.get_partner(candidate.partner_id)
                        if not is_eligible(partner, order.area, self.capacity_ceiling):
                            continue
                        entry = AssignmentLedgerEntry(
                            entry_id=self.state.next_entry_id(),
                            order_id=order.order_id,
                            partner_id=partner.partner_id,
                            status=AssignmentStatus.SUCCESS,
                        )
                        self.state.append_entry(entry)
                        _, partner = self.lifecycle.assign(order, partner, actor)

                logger.info(
                    "Order matched",
                    order_id=order_id,
                    partner_id=partner.partner_id,
                    area=order.area,
                    partner_load=partner.current_load,
                    entry_id=entry.entry_id,
                )
                return MatchResult(
                    order_id=order.order_id,
                    status=AssignmentStatus.SUCCESS,
                    partner_id=partner.partner_id,
                    entry=entry,
                )

            return self._record_failure(order, FailureReason.ALL_AT_CAPACITY, actor)

    def _record_failure(self, order: OrderRecord, reason: FailureReason, actor: str) -> MatchResult:
        with self.state.transaction():
            entry = AssignmentLedgerEntry(
                entry_id=self.state.next_entry_id(),
                order_id=order.order_id,
                status=AssignmentStatus.FAILED,
                reason=reason,
            )
            self.state.append_entry(entry)
            self.state.record_timeline_event(
                order.order_id,
                event_type="assignment_failed",
                actor=actor,
                details={"reason": reason.value, "area": order.area},
            )
        logger.info("Order not matched", order_id=order.order_id, area=order.area, reason=reason.value)
        return MatchResult(
            order_id=order.order_id,
            status=AssignmentStatus.FAILED,
            reason=reason,
            entry=entry,
        )
