import asyncio
import logging
from datetime import datetime, timedelta

from config.constants import (
    PAYMENT_INTENT_TIMEOUT_MINUTES,
    PAYMENT_SWEEP_INTERVAL_SECONDS,
    PAYMENT_TIMEOUT_REASON,
    REFUND_RECOVERY_MINUTES,
    UNPAID_ORDER_TIMEOUT_HOURS,
    UNPAID_TIMEOUT_REASON,
)
from utils.order_machine import get_order_machine

logger = logging.getLogger(__name__)


async def sweep_expired_payments(
    machine,
    now: datetime | None = None,
    intent_timeout_minutes: int = PAYMENT_INTENT_TIMEOUT_MINUTES,
    unpaid_timeout_hours: int = UNPAID_ORDER_TIMEOUT_HOURS,
) -> int:
    """
    One pass: cancel Accepted orders whose payment intent went stale, and
    (when enabled) Accepted orders that were never paid. Returns how many
    orders were cancelled.
    """
    now = now or datetime.utcnow()
    candidates = []

    intent_cutoff = now - timedelta(minutes=intent_timeout_minutes)
    for order_id in await machine.store.find_stale_payment_intents(intent_cutoff):
        candidates.append((order_id, PAYMENT_TIMEOUT_REASON))

    if unpaid_timeout_hours > 0:
        unpaid_cutoff = now - timedelta(hours=unpaid_timeout_hours)
        for order_id in await machine.store.find_unpaid_orders(unpaid_cutoff):
            candidates.append((order_id, UNPAID_TIMEOUT_REASON))

    expired = 0
    for order_id, reason in candidates:
        try:
            result = await machine.expire_payment(order_id, reason)
        except Exception:
            logger.exception("PAYMENT_EXPIRY_ERROR order=%s", order_id)
            continue

        if result.ok:
            expired += 1
            logger.info("PAYMENT_EXPIRED order=%s reason=%s", order_id, reason)
        else:
            # order moved on (paid, cancelled, disputed) since the query
            logger.info("PAYMENT_EXPIRY_SKIPPED order=%s reason=%s", order_id, result.reason)

    return expired


async def sweep_stale_refunds(
    machine,
    now: datetime | None = None,
    refund_timeout_minutes: int = REFUND_RECOVERY_MINUTES,
) -> int:
    """
    Finish gateway refunds whose in-flight marker outlived the request that
    set it. Returns how many were settled.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=refund_timeout_minutes)

    recovered = 0
    for order_id in await machine.store.find_stale_refunds(cutoff):
        try:
            result = await machine.recover_refund(order_id)
        except Exception:
            logger.exception("REFUND_RECOVERY_ERROR order=%s", order_id)
            continue

        if result.ok:
            recovered += 1
            logger.info("REFUND_RECOVERED order=%s", order_id)
        else:
            logger.warning("REFUND_RECOVERY_FAILED order=%s reason=%s", order_id, result.reason)

    return recovered


async def payment_expiry_worker():
    machine = get_order_machine()

    while True:
        try:
            await sweep_expired_payments(machine)
        except Exception:
            logger.exception("PAYMENT_EXPIRY_SWEEP_ERROR")

        try:
            await sweep_stale_refunds(machine)
        except Exception:
            logger.exception("REFUND_RECOVERY_SWEEP_ERROR")

        await asyncio.sleep(PAYMENT_SWEEP_INTERVAL_SECONDS)
