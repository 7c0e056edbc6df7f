import logging
from datetime import datetime

from bson import ObjectId

from models.product import Product, ProductStatus
from utils.errors import TransitionAborted, insufficient_stock, not_found, precondition_failed

logger = logging.getLogger(__name__)

# ==============================
# Inventory ledger
# ==============================
#
# All stock mutations go through these three functions, always with an
# open store transaction. Nothing else writes products.stock.


async def reserve(tx, product_id: ObjectId, qty: int, order_id: ObjectId) -> Product:
    """
    Take qty units out of stock for order_id.
    Runs in the same transaction as the order insert; if the insert fails the
    store rolls the decrement back with it.
    """
    if qty <= 0:
        raise TransitionAborted(precondition_failed("quantity must be positive"))

    product = Product.from_doc(await tx.get_product(product_id))
    if not product:
        raise TransitionAborted(not_found("product"))

    if product.status == ProductStatus.UNAVAILABLE:
        if product.track_inventory and product.stock == 0:
            raise TransitionAborted(insufficient_stock(0))
        raise TransitionAborted(precondition_failed("product is unavailable"))

    if not product.track_inventory:
        return product

    updated = await tx.take_stock(product_id, qty)
    if updated is None:
        # conditional decrement refused: stock < qty at write time
        current = await tx.get_product(product_id) or {}
        raise TransitionAborted(insufficient_stock(current.get("stock", 0)))

    if updated["stock"] == 0:
        await tx.set_product_status(product_id, ProductStatus.UNAVAILABLE.value)
        updated["status"] = ProductStatus.UNAVAILABLE.value

    logger.info("STOCK_RESERVED product=%s order=%s qty=%s left=%s", product_id, order_id, qty, updated["stock"])
    return Product.from_doc(updated)


async def restore(tx, product_id: ObjectId, qty: int, order_id: ObjectId, reason: str | None = None) -> bool:
    """
    Give the units of order_id back to stock, at most once per order.
    Returns False when this order's stock was already restored.
    """
    if await tx.has_restoration(order_id):
        logger.info("STOCK_RESTORE_SKIPPED order=%s already restored", order_id)
        return False

    await tx.add_restoration({
        "_id": ObjectId(),
        "order_id": order_id,
        "product_id": product_id,
        "quantity": qty,
        "reason": reason,
        "created_at": datetime.utcnow(),
    })

    product = await tx.get_product(product_id)
    if not product:
        logger.warning("STOCK_RESTORE_PRODUCT_MISSING product=%s order=%s", product_id, order_id)
        return True

    if not product.get("track_inventory", True):
        return True

    updated = await tx.return_stock(product_id, qty)
    if updated and updated.get("status") != ProductStatus.AVAILABLE.value:
        await tx.set_product_status(product_id, ProductStatus.AVAILABLE.value)

    logger.info("STOCK_RESTORED product=%s order=%s qty=%s", product_id, order_id, qty)
    return True


async def commit(tx, product_id: ObjectId, qty: int, order_id: ObjectId) -> None:
    """
    The order completed: its reserved units are gone for good.
    """
    product = await tx.get_product(product_id)
    if not product or not product.get("track_inventory", True):
        return

    await tx.settle_reserved(product_id, qty)
