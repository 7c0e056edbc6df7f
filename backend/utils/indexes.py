import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

# IndexOptionsConflict / IndexKeySpecsConflict
_INDEX_CONFLICT_CODES = {85, 86}


async def _same_key_indexes(collection, keys, keep_name):
    wanted = list(keys)
    names = []
    async for idx in collection.list_indexes():
        if list(idx.get("key", {}).items()) == wanted and idx.get("name") not in (None, keep_name):
            names.append(idx["name"])
    return names


async def _create_index_safe(collection, keys, **kwargs):
    """
    create_index that survives an older index on the same keys with other options:
    the old one is dropped and the index rebuilt as declared here.
    """
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in _INDEX_CONFLICT_CODES:
            raise

    for name in await _same_key_indexes(collection, keys, kwargs.get("name")):
        logger.warning("INDEX_REPLACED collection=%s index=%s", collection.name, name)
        await collection.drop_index(name)

    await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Products
    await _create_index_safe(
        db.products,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="products_seller_created_idx",
    )

    # Orders
    await _create_index_safe(
        db.orders,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_buyer_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_seller_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("accepted_at", ASCENDING)],
        name="orders_status_accepted_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("dispute_raised", ASCENDING), ("dispute_resolved", ASCENDING), ("created_at", DESCENDING)],
        name="orders_dispute_idx",
    )
    await _create_index_safe(
        db.orders,
        [("conversation_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_conversation_created_at_idx",
        sparse=True,
    )

    # Payments (escrow records, 1:1 with orders)
    await _create_index_safe(
        db.payments,
        [("order_id", ASCENDING)],
        name="payments_order_unique",
        unique=True,
    )
    await _create_index_safe(
        db.payments,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="payments_status_created_at_idx",
    )
    await _create_index_safe(
        db.payments,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="payments_buyer_created_at_idx",
    )
    await _create_index_safe(
        db.payments,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="payments_seller_created_at_idx",
    )
    await _create_index_safe(
        db.payments,
        [("refund_pending_since", ASCENDING)],
        name="payments_refund_pending_idx",
        sparse=True,
    )

    # Inventory restorations (one per order)
    await _create_index_safe(
        db.inventory_restorations,
        [("order_id", ASCENDING)],
        name="inventory_restorations_order_unique",
        unique=True,
    )

    # Timeline / audit
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("action", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_action_created_idx",
    )

    # Notifications / chat
    await _create_index_safe(
        db.user_notifications,
        [("user_id", ASCENDING), ("is_read", ASCENDING), ("created_at", DESCENDING)],
        name="user_notifications_user_read_idx",
    )
    await _create_index_safe(
        db.conversations,
        [("participants", ASCENDING)],
        name="conversations_participants_idx",
    )
