from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.user import Identity
from utils.errors import unwrap_or_raise
from utils.order_guards import Party, parse_object_id
from utils.order_machine import OrderStateMachine, get_order_machine
from utils.security import get_current_identity
from utils.serializers import serialize_order, serialize_timeline_event


router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)


class CreateOrderRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


class ShipOrderRequest(BaseModel):
    proof: str | None = None


class CancelOrderRequest(BaseModel):
    reason: str | None = None


class DisputeRequest(BaseModel):
    reason: str = Field(..., max_length=2000)


# ======================================================
# CREATE ORDER (BUYER)
# ======================================================

@router.post("", status_code=201)
async def create_order(
    payload: CreateOrderRequest,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    product_id = parse_object_id(payload.product_id, "product_id")
    order = unwrap_or_raise(await machine.create_order(identity, product_id, payload.quantity))
    return serialize_order(order)


# ======================================================
# READS
# ======================================================

@router.get("")
async def list_my_orders(
    role: Literal["buyer", "seller"] = "buyer",
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    orders = unwrap_or_raise(await machine.list_orders(identity, role))
    return [serialize_order(o) for o in orders]


@router.get("/by-conversation/{conversation_id}")
async def get_conversation_order(
    conversation_id: str,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    view = unwrap_or_raise(
        await machine.get_conversation_order(identity, parse_object_id(conversation_id, "conversation_id"))
    )
    if view is None:
        return {"has_active_order": False}

    payment = view["payment"]
    return {
        "has_active_order": True,
        "order": serialize_order(view["order"]),
        "payment_status": payment.status.value if payment else None,
        "escrow_status": payment.escrow_status.value if payment and payment.escrow_status else None,
        "is_buyer": view["party"] == Party.BUYER,
        "is_seller": view["party"] == Party.SELLER,
        **view["actions"],
    }


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    order = unwrap_or_raise(await machine.get_order(identity, parse_object_id(order_id, "order_id")))
    return serialize_order(order)


@router.get("/{order_id}/timeline")
async def get_order_timeline(
    order_id: str,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    events = unwrap_or_raise(await machine.get_timeline(identity, parse_object_id(order_id, "order_id")))
    return [serialize_timeline_event(e) for e in events]


# ======================================================
# SELLER: ACCEPT / SHIP
# ======================================================

@router.post("/{order_id}/accept")
async def accept_order(
    order_id: str,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    order = unwrap_or_raise(await machine.accept_order(identity, parse_object_id(order_id, "order_id")))
    return serialize_order(order)


@router.post("/{order_id}/ship")
async def ship_order(
    order_id: str,
    payload: ShipOrderRequest | None = None,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    proof = payload.proof if payload else None
    order = unwrap_or_raise(await machine.ship_order(identity, parse_object_id(order_id, "order_id"), proof))
    return serialize_order(order)


# ======================================================
# BUYER: CONFIRM RECEIPT
# ======================================================

@router.post("/{order_id}/complete")
async def complete_order(
    order_id: str,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    order = unwrap_or_raise(await machine.complete_order(identity, parse_object_id(order_id, "order_id")))
    return serialize_order(order)


# ======================================================
# CANCEL (BUYER WHILE PENDING, SELLER BEFORE SHIPPING)
# ======================================================

@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    payload: CancelOrderRequest | None = None,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    reason = payload.reason if payload else None
    order = unwrap_or_raise(await machine.cancel_order(identity, parse_object_id(order_id, "order_id"), reason))
    return serialize_order(order)


# ======================================================
# DISPUTE (BUYER OR SELLER)
# ======================================================

@router.post("/{order_id}/dispute")
async def raise_dispute(
    order_id: str,
    payload: DisputeRequest,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    order = unwrap_or_raise(
        await machine.raise_dispute(identity, parse_object_id(order_id, "order_id"), payload.reason)
    )
    return {
        "message": "Dispute raised. Admin will review your case.",
        "order": serialize_order(order),
    }
