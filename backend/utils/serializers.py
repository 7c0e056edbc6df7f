from bson import ObjectId
from datetime import datetime

from config.constants import PAYMENT_METHOD_LABELS
from models.order import Order
from models.payment import Payment
from utils.money import from_minor_units


def serialize_object_id(value):
    return str(value) if isinstance(value, ObjectId) else value


def serialize_datetime(value):
    return value.isoformat() if isinstance(value, datetime) else None


def _money(minor: int) -> str:
    return str(from_minor_units(minor))


def serialize_order(order: Order) -> dict:
    dispute = order.dispute
    return {
        "id": str(order.id),
        "buyer_id": serialize_object_id(order.buyer_id),
        "seller_id": serialize_object_id(order.seller_id),
        "product_id": serialize_object_id(order.product_id),
        "product_name": order.product_name,

        "quantity": order.quantity,
        "unit_price": _money(order.unit_price_minor),
        "total": _money(order.total_minor),

        "status": order.status.value,
        "conversation_id": serialize_object_id(order.conversation_id),
        "shipment_proof": order.shipment_proof,
        "cancelled_by": order.cancelled_by,
        "cancel_reason": order.cancel_reason,

        "seller_confirmed": order.seller_confirmed,
        "seller_shipped": order.seller_shipped,
        "buyer_confirmed_receipt": order.buyer_confirmed_receipt,
        "can_cancel_buyer": order.can_cancel_buyer,

        "dispute_raised": order.dispute_raised,
        "dispute_resolved": order.dispute_resolved,
        "dispute_raised_by": order.dispute_raised_by.value,
        "dispute_winner": order.dispute_winner.value,
        "dispute_reason": order.dispute_reason,
        "dispute_resolution": order.dispute_resolution,
        "dispute_raised_at": serialize_datetime(dispute.raised_at) if dispute else None,
        "dispute_resolved_at": serialize_datetime(dispute.resolved_at) if dispute else None,

        "created_at": serialize_datetime(order.created_at),
        "updated_at": serialize_datetime(order.updated_at),
        "accepted_at": serialize_datetime(order.accepted_at),
        "paid_at": serialize_datetime(order.paid_at),
        "shipped_at": serialize_datetime(order.shipped_at),
        "completion_date": serialize_datetime(order.completion_date),
        "cancelled_at": serialize_datetime(order.cancelled_at),
    }


def serialize_payment(payment: Payment) -> dict:
    return {
        "id": str(payment.id),
        "order_id": serialize_object_id(payment.order_id),
        "buyer_id": serialize_object_id(payment.buyer_id),
        "seller_id": serialize_object_id(payment.seller_id),
        "amount": _money(payment.amount_minor),
        "method": payment.method,
        "reference": payment.reference,
        "status": payment.status.value,
        "escrow_status": payment.escrow_status.value if payment.escrow_status else None,
        "refund_id": payment.refund_id,
        "refund_reason": payment.refund_reason,
        "refund_in_progress": payment.refund_in_flight,
        "created_at": serialize_datetime(payment.created_at),
        "completed_at": serialize_datetime(payment.completed_at),
        "released_at": serialize_datetime(payment.released_at),
        "refunded_at": serialize_datetime(payment.refunded_at),
    }


def serialize_timeline_event(event: dict) -> dict:
    return {
        "event": event["event"],
        "actor_role": event.get("actor_role"),
        "actor_id": serialize_object_id(event.get("actor_id")),
        "metadata": {k: serialize_object_id(v) for k, v in (event.get("metadata") or {}).items()},
        "created_at": serialize_datetime(event.get("created_at")),
    }


def serialize_payment_history_entry(entry: dict) -> dict:
    order = entry["order"]
    return {
        **serialize_payment(entry["payment"]),
        "product_name": order.product_name if order else None,
        "quantity": order.quantity if order else None,
        "user_role": entry["role"].value,
    }


def serialize_receipt(payment: Payment, order: Order | None) -> dict:
    return {
        "receipt_id": str(payment.id),
        "date": serialize_datetime(payment.completed_at or payment.created_at),
        "order_id": serialize_object_id(payment.order_id),
        "product_name": order.product_name if order else None,
        "quantity": order.quantity if order else None,
        "amount": _money(payment.amount_minor),
        "payment_method": payment.method,
        "payment_method_label": PAYMENT_METHOD_LABELS.get(payment.method, payment.method),
        "reference": payment.reference,
        "buyer_id": serialize_object_id(payment.buyer_id),
        "seller_id": serialize_object_id(payment.seller_id),
        "status": payment.status.value,
        "escrow_status": payment.escrow_status.value if payment.escrow_status else None,
        "refund_id": payment.refund_id,
    }
