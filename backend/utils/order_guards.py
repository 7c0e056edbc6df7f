from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from bson import ObjectId
from fastapi import HTTPException

from models.order import DisputeParty, Order, OrderStatus
from models.payment import Payment, PaymentStatus
from models.user import Identity
from utils.errors import (
    OrderFailure,
    amount_mismatch,
    duplicate_payment,
    not_found,
    precondition_failed,
    unauthorized,
)
from utils.money import amounts_match, from_minor_units


# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value: str, name: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


# -------------------------------
# Transition guard table
# -------------------------------

class Transition(str, Enum):
    ACCEPT = "accept"
    PAY = "pay"
    CONFIRM_PAYMENT = "confirm_payment"
    SHIP = "ship"
    COMPLETE = "complete"
    SELLER_CANCEL = "seller_cancel"
    BUYER_CANCEL = "buyer_cancel"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    EXPIRE_PAYMENT = "expire_payment"


class Party(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"
    STRANGER = "stranger"


def party_for(order: Order, identity: Identity) -> Party:
    if identity.is_system:
        return Party.SYSTEM
    if identity.user_id == order.buyer_id:
        return Party.BUYER
    if identity.user_id == order.seller_id:
        return Party.SELLER
    if identity.is_admin:
        return Party.ADMIN
    return Party.STRANGER


# check(order, payment, ctx) -> failure or None
Check = Callable[[Order, Optional[Payment], dict], Optional[OrderFailure]]


@dataclass(frozen=True)
class Guard:
    parties: frozenset = frozenset()
    admin_only: bool = False
    system_only: bool = False
    checks: tuple = field(default_factory=tuple)

    def authorize(self, order: Order, identity: Identity) -> OrderFailure | None:
        if self.admin_only:
            return None if identity.is_admin else unauthorized()
        if self.system_only:
            return None if identity.is_system else unauthorized("system access required")
        # wrong party looks exactly like a missing order
        if party_for(order, identity) not in self.parties:
            return not_found()
        return None


def _status_in(*statuses: OrderStatus, reason: str) -> Check:
    allowed = frozenset(statuses)

    def check(order, payment, ctx):
        if order.status not in allowed:
            return precondition_failed(reason)
        return None

    return check


def _not_shipped(order, payment, ctx):
    if order.seller_shipped:
        return precondition_failed("already shipped")
    return None


def _shipped(order, payment, ctx):
    if not order.seller_shipped:
        return precondition_failed("seller has not shipped the order")
    return None


def _no_open_dispute(order, payment, ctx):
    if order.status == OrderStatus.DISPUTED:
        return precondition_failed("order is under dispute")
    return None


def _no_dispute_raised(order, payment, ctx):
    if order.dispute_raised:
        if order.dispute_resolved:
            return precondition_failed("order already completed")
        return precondition_failed("order is under dispute")
    return None


def _escrow_held(order, payment, ctx):
    if payment is None or not payment.is_held:
        return precondition_failed("payment not held in escrow")
    return None


def _no_payment(order, payment, ctx):
    if payment is not None and payment.status != PaymentStatus.FAILED:
        return duplicate_payment()
    return None


def _amount_matches(order, payment, ctx):
    amount = ctx.get("amount")
    try:
        matches = amount is not None and amounts_match(amount, order.total_minor)
    except ValueError:
        matches = False
    if not matches:
        return amount_mismatch(amount, str(from_minor_units(order.total_minor)))
    return None


def _intent_pending(order, payment, ctx):
    intent_id = ctx.get("intent_id")
    if payment is None or payment.id != intent_id or payment.status != PaymentStatus.PENDING:
        return precondition_failed("payment intent is no longer pending")
    return None


def _dispute_reason_given(order, payment, ctx):
    if not (ctx.get("reason") or "").strip():
        return precondition_failed("dispute reason is required")
    return None


def _dispute_not_raised(order, payment, ctx):
    if order.dispute_raised:
        return precondition_failed("dispute already raised")
    return None


def _dispute_open(order, payment, ctx):
    if not order.dispute_raised:
        return precondition_failed("no dispute raised on this order")
    if order.dispute_resolved:
        return precondition_failed("dispute already resolved")
    return None


def _winner_valid(order, payment, ctx):
    if ctx.get("winner") not in (DisputeParty.BUYER, DisputeParty.SELLER):
        return precondition_failed("winner must be buyer or seller")
    return None


def _resolution_given(order, payment, ctx):
    if not (ctx.get("resolution") or "").strip():
        return precondition_failed("resolution is required")
    return None


def _no_refund_in_flight(order, payment, ctx):
    # the refund's own completion step passes settling_refund
    if payment is not None and payment.refund_in_flight and not ctx.get("settling_refund"):
        return precondition_failed("refund in progress", retryable=True)
    return None


BUYER = frozenset({Party.BUYER})
SELLER = frozenset({Party.SELLER})
BUYER_OR_SELLER = frozenset({Party.BUYER, Party.SELLER})

GUARDS: dict[Transition, Guard] = {
    Transition.ACCEPT: Guard(
        parties=SELLER,
        checks=(
            _status_in(OrderStatus.PENDING, reason="order not pending"),
        ),
    ),
    Transition.PAY: Guard(
        parties=BUYER,
        checks=(
            _status_in(OrderStatus.ACCEPTED, reason="order not accepted"),
            _no_payment,
            _amount_matches,
        ),
    ),
    Transition.CONFIRM_PAYMENT: Guard(
        parties=BUYER,
        checks=(
            _status_in(OrderStatus.ACCEPTED, reason="order is no longer awaiting payment"),
            _intent_pending,
        ),
    ),
    Transition.SHIP: Guard(
        parties=SELLER,
        checks=(
            _not_shipped,
            _no_open_dispute,
            _status_in(OrderStatus.CONFIRMED, reason="order not confirmed"),
            _escrow_held,
            _no_refund_in_flight,
        ),
    ),
    Transition.COMPLETE: Guard(
        parties=BUYER,
        checks=(
            _no_dispute_raised,
            _shipped,
            _status_in(OrderStatus.SHIPPED, reason="order already completed"),
            _no_refund_in_flight,
        ),
    ),
    Transition.SELLER_CANCEL: Guard(
        parties=SELLER,
        checks=(
            _not_shipped,
            _no_open_dispute,
            _status_in(
                OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.CONFIRMED,
                reason="order can no longer be cancelled",
            ),
            _no_refund_in_flight,
        ),
    ),
    Transition.BUYER_CANCEL: Guard(
        parties=BUYER,
        checks=(
            _status_in(OrderStatus.PENDING, reason="order can only be cancelled by the buyer while pending"),
        ),
    ),
    Transition.RAISE_DISPUTE: Guard(
        parties=BUYER_OR_SELLER,
        checks=(
            _dispute_not_raised,
            _status_in(
                OrderStatus.ACCEPTED, OrderStatus.CONFIRMED, OrderStatus.SHIPPED,
                reason="order cannot be disputed in its current state",
            ),
            _dispute_reason_given,
            _no_refund_in_flight,
        ),
    ),
    Transition.RESOLVE_DISPUTE: Guard(
        admin_only=True,
        checks=(
            _dispute_open,
            _winner_valid,
            _resolution_given,
            _no_refund_in_flight,
        ),
    ),
    Transition.EXPIRE_PAYMENT: Guard(
        system_only=True,
        checks=(
            _status_in(OrderStatus.ACCEPTED, reason="order not accepted"),
        ),
    ),
}


def evaluate(
    transition: Transition,
    order: Order,
    identity: Identity,
    *,
    payment: Payment | None = None,
    **ctx,
) -> OrderFailure | None:
    """
    Single authority on whether `identity` may apply `transition` to `order`.
    Returns the first failing condition, or None when the transition is allowed.
    """
    guard = GUARDS[transition]

    failure = guard.authorize(order, identity)
    if failure:
        return failure

    for check in guard.checks:
        failure = check(order, payment, ctx)
        if failure:
            return failure

    return None


# -------------------------------
# UI hints
# -------------------------------

_ACTION_HINTS = {
    "can_accept": Transition.ACCEPT,
    "can_pay": Transition.PAY,
    "can_ship": Transition.SHIP,
    "can_complete": Transition.COMPLETE,
    "can_buyer_cancel": Transition.BUYER_CANCEL,
    "can_seller_cancel": Transition.SELLER_CANCEL,
    "can_dispute": Transition.RAISE_DISPUTE,
}


def allowed_actions(order: Order, identity: Identity, payment: Payment | None = None) -> dict[str, bool]:
    """
    Which transitions `identity` could apply right now, read off the same
    guard table. Request inputs (amount, dispute reason) are assumed valid.
    """
    assumed = {"amount": from_minor_units(order.total_minor), "reason": "supplied by caller"}
    return {
        name: evaluate(transition, order, identity, payment=payment, **assumed) is None
        for name, transition in _ACTION_HINTS.items()
    }
