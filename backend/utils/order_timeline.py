from datetime import datetime
from bson import ObjectId

# Event names
ORDER_CREATED = "ORDER_CREATED"
ORDER_ACCEPTED = "ORDER_ACCEPTED"
PAYMENT_INTENT_OPENED = "PAYMENT_INTENT_OPENED"
PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
PAYMENT_FAILED = "PAYMENT_FAILED"
ORDER_SHIPPED = "ORDER_SHIPPED"
ORDER_COMPLETED = "ORDER_COMPLETED"
ORDER_CANCELLED = "ORDER_CANCELLED"
ORDER_PAYMENT_TIMEOUT = "ORDER_PAYMENT_TIMEOUT"
REFUND_REQUESTED = "REFUND_REQUESTED"
DISPUTE_RAISED = "DISPUTE_RAISED"
DISPUTE_RESOLVED = "DISPUTE_RESOLVED"


async def record_order_event(
    tx,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
):
    """
    Single source of truth for order timeline events.
    Written through the open transaction, so an event exists iff its transition committed.
    """

    doc = {
        "_id": ObjectId(),
        "order_id": ObjectId(order_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": ObjectId(actor_id) if actor_id else None,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }

    await tx.record_event(doc)
