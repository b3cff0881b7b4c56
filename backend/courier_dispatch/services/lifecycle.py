"""Order lifecycle state machine and the partner bookkeeping tied to it."""
from __future__ import annotations

from typing import Dict, FrozenSet, Optional, Tuple

from courier_dispatch.core.errors import ConcurrencyConflict, InvalidState, InvalidTransition
from courier_dispatch.core.logging import logger
from courier_dispatch.models.dispatch import (
    OrderId,
    OrderRecord,
    OrderStatus,
    PartnerRecord,
)
from courier_dispatch.services.interfaces import DispatchState
from courier_dispatch.services.locks import KeyedLockRegistry, retry_conflict_once


class LifecycleController:
    """Advances orders pending -> assigned -> picked -> delivered.

    Each transition checks the current status under the order's lock, so a
    retried call finds the order already moved and fails with
    ``InvalidTransition`` instead of applying its side effects twice.
    """

    # action -> (statuses it may start from, status it leads to)
    TRANSITIONS: Dict[str, Tuple[FrozenSet[OrderStatus], OrderStatus]] = {
        "assign": (frozenset({OrderStatus.PENDING}), OrderStatus.ASSIGNED),
        "pick": (frozenset({OrderStatus.ASSIGNED}), OrderStatus.PICKED),
        "deliver": (frozenset({OrderStatus.PICKED}), OrderStatus.DELIVERED),
        "cancel": (frozenset({OrderStatus.ASSIGNED, OrderStatus.PICKED}), OrderStatus.PENDING),
    }

    def __init__(
        self,
        state: DispatchState,
        order_locks: KeyedLockRegistry,
        partner_locks: KeyedLockRegistry,
    ) -> None:
        self.state = state
        self.order_locks = order_locks
        self.partner_locks = partner_locks

    @classmethod
    def _check(cls, action: str, order: OrderRecord) -> OrderStatus:
        allowed, target = cls.TRANSITIONS[action]
        if order.status not in allowed:
            requested = "cancelled" if action == "cancel" else target.value
            raise InvalidTransition(order.order_id, order.status.value, requested)
        return target

    def assign(self, order: OrderRecord, partner: PartnerRecord, actor: str) -> Tuple[OrderRecord, PartnerRecord]:
        """Apply pending -> assigned.

        Caller must hold both records' locks and an open store transaction, and
        must append the matching success ledger entry in that same transaction.
        """
        target = self._check("assign", order)
        updated_order = self.state.save_order(
            order.model_copy(
                update={"status": target, "assigned_to": partner.partner_id, "version": order.version + 1}
            )
        )
        updated_partner = self.state.save_partner(
            partner.model_copy(update={"current_load": partner.current_load + 1})
        )
        self.state.record_timeline_event(
            order.order_id,
            event_type="order_assigned",
            actor=actor,
            details={"partner_id": partner.partner_id, "partner_load": updated_partner.current_load},
        )
        return updated_order, updated_partner

    def mark_picked(self, order_id: OrderId, actor: str = "system", expected_version: Optional[int] = None) -> OrderRecord:
        return retry_conflict_once(
            lambda: self._transition("pick", order_id, actor, expected_version),
            action="pick",
            key=order_id,
        )

    def mark_delivered(self, order_id: OrderId, actor: str = "system", expected_version: Optional[int] = None) -> OrderRecord:
        return retry_conflict_once(
            lambda: self._transition("deliver", order_id, actor, expected_version),
            action="deliver",
            key=order_id,
        )

    def cancel(self, order_id: OrderId, actor: str = "system", expected_version: Optional[int] = None) -> OrderRecord:
        return retry_conflict_once(
            lambda: self._transition("cancel", order_id, actor, expected_version),
            action="cancel",
            key=order_id,
        )

    def _transition(
        self,
        action: str,
        order_id: OrderId,
        actor: str,
        expected_version: Optional[int],
    ) -> OrderRecord:
        with self.order_locks.hold(order_id):
            order = self.state.get_order(order_id)
            if expected_version is not None and expected_version != order.version:
                raise ConcurrencyConflict(
                    f"Version conflict for {order_id}. expected={expected_version} current={order.version}",
                    order_id=order_id,
                )
            target = self._check(action, order)
            partner_id = order.assigned_to
            if partner_id is None:
                raise InvalidState(f"Order {order_id} has no assigned partner", order_id=order_id)

            with self.partner_locks.hold(partner_id):
                with self.state.transaction():
                    partner = self.state.get_partner(partner_id)
                    order_update = {"status": target, "version": order.version + 1}
                    partner_update = {}
                    if action in {"deliver", "cancel"}:
                        if partner.current_load <= 0:
                            logger.warning(
                                "Partner load already zero on release",
                                partner_id=partner_id,
                                order_id=order_id,
                                action=action,
                            )
                        metrics = partner.metrics.model_copy()
                        if action == "deliver":
                            metrics.completed_orders += 1
                        else:
                            metrics.cancelled_orders += 1
                            order_update["assigned_to"] = None
                        partner_update = {
                            "current_load": max(0, partner.current_load - 1),
                            "metrics": metrics,
                        }

                    updated = self.state.save_order(order.model_copy(update=order_update))
                    if partner_update:
                        self.state.save_partner(partner.model_copy(update=partner_update))
                    self.state.record_timeline_event(
                        order_id,
                        event_type=f"order_{'cancelled' if action == 'cancel' else target.value}",
                        actor=actor,
                        details={
                            "from_status": order.status.value,
                            "to_status": target.value,
                            "partner_id": partner_id,
                            "version": updated.version,
                        },
                    )

        logger.info(
            "Order transitioned",
            order_id=order_id,
            action=action,
            from_status=order.status.value,
            to_status=target.value,
            partner_id=partner_id,
        )
        return updated
