from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.user import Identity
from utils.errors import unwrap_or_raise
from utils.order_guards import parse_object_id
from utils.order_machine import OrderStateMachine, get_order_machine
from utils.security import get_current_identity
from utils.serializers import (
    serialize_order,
    serialize_payment,
    serialize_payment_history_entry,
    serialize_receipt,
)


router = APIRouter(
    prefix="/api/payments",
    tags=["Payments"]
)


class PaymentRequest(BaseModel):
    order_id: str
    amount: Decimal = Field(..., gt=0)
    method: str
    reference: str | None = Field(None, max_length=120)
    # card / e-wallet fields forwarded to the gateway, never stored
    method_details: dict | None = None


# ======================================================
# PAY (BUYER) -> ESCROW HELD
# ======================================================

@router.post("", status_code=201)
async def pay(
    payload: PaymentRequest,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    payment = unwrap_or_raise(
        await machine.pay(
            identity,
            parse_object_id(payload.order_id, "order_id"),
            payload.amount,
            payload.method,
            reference=payload.reference,
            method_details=payload.method_details,
        )
    )
    return {
        "message": "Payment held in escrow",
        "payment_reference": payment.reference,
        "payment": serialize_payment(payment),
    }


# ======================================================
# ESCROW STATUS
# ======================================================

@router.get("/escrow/{order_id}")
async def get_escrow(
    order_id: str,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    escrow = unwrap_or_raise(await machine.get_escrow(identity, parse_object_id(order_id, "order_id")))
    return {
        "order": serialize_order(escrow["order"]),
        "payment": serialize_payment(escrow["payment"]),
        "can_release": escrow["can_release"],
        "can_refund": escrow["can_refund"],
    }


# ======================================================
# HISTORY / RECEIPT
# ======================================================

@router.get("/history")
async def payment_history(
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    history = unwrap_or_raise(await machine.list_payment_history(identity))
    return {"payments": [serialize_payment_history_entry(entry) for entry in history]}


@router.get("/receipt/{payment_id}")
async def get_receipt(
    payment_id: str,
    identity: Identity = Depends(get_current_identity),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    receipt = unwrap_or_raise(await machine.get_receipt(identity, parse_object_id(payment_id, "payment_id")))
    return {"receipt": serialize_receipt(receipt["payment"], receipt["order"])}
