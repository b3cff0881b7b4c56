"""Typed failures raised by the dispatch core.

An unmatched order is not an error: it is a recorded ``failed`` ledger entry
returned to the caller as data.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for dispatch core failures."""

    retryable = False

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(DispatchError):
    """A referenced order, partner or ledger entry does not exist."""

    def __init__(self, kind: str, ref: str) -> None:
        super().__init__(f"{kind} '{ref}' not found", kind=kind, ref=ref)
        self.kind = kind
        self.ref = ref


class InvalidState(DispatchError):
    """Operation attempted against a record whose status forbids it."""


class InvalidTransition(DispatchError):
    """Lifecycle transition attempted out of sequence."""

    def __init__(self, order_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid status transition {current} -> {requested} for order {order_id}",
            order_id=order_id,
            current=current,
            requested=requested,
        )
        self.order_id = order_id
        self.current = current
        self.requested = requested


class ConcurrencyConflict(DispatchError):
    """Lost the mutual-exclusion race for an order or partner; safe to retry."""

    retryable = True
