import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime

from utils.errors import ConcurrentUpdate
from utils.store import OrderStore, StoreSession

_TABLES = (
    "orders",
    "products",
    "payments",
    "inventory_restorations",
    "order_timeline",
    "audit_logs",
)


class MemorySession(StoreSession):

    def __init__(self, tables: dict):
        self.tables = tables

    # ---------------- orders ----------------

    async def get_order(self, order_id):
        return copy.deepcopy(self.tables["orders"].get(order_id))

    async def insert_order(self, doc):
        if doc["_id"] in self.tables["orders"]:
            raise ValueError(f"duplicate order id {doc['_id']}")
        self.tables["orders"][doc["_id"]] = copy.deepcopy(doc)

    async def save_order(self, doc, expected_version):
        current = self.tables["orders"].get(doc["_id"])
        if not current or current.get("version") != expected_version:
            return False
        self.tables["orders"][doc["_id"]] = copy.deepcopy(doc)
        return True

    # ---------------- products ----------------

    async def get_product(self, product_id):
        return copy.deepcopy(self.tables["products"].get(product_id))

    async def take_stock(self, product_id, qty):
        product = self.tables["products"].get(product_id)
        if not product or product.get("stock", 0) < qty:
            return None

        product["stock"] -= qty
        product["reserved_stock"] = product.get("reserved_stock", 0) + qty
        product["updated_at"] = datetime.utcnow()
        return copy.deepcopy(product)

    async def return_stock(self, product_id, qty):
        product = self.tables["products"].get(product_id)
        if not product:
            return None

        product["stock"] = product.get("stock", 0) + qty
        product["reserved_stock"] = max(product.get("reserved_stock", 0) - qty, 0)
        product["updated_at"] = datetime.utcnow()
        return copy.deepcopy(product)

    async def settle_reserved(self, product_id, qty):
        product = self.tables["products"].get(product_id)
        if product:
            product["reserved_stock"] = max(product.get("reserved_stock", 0) - qty, 0)

    async def set_product_status(self, product_id, status):
        product = self.tables["products"].get(product_id)
        if product:
            product["status"] = status
            product["updated_at"] = datetime.utcnow()

    # ---------------- payments ----------------

    def _payment_row(self, order_id):
        for payment in self.tables["payments"].values():
            if payment["order_id"] == order_id:
                return payment
        return None

    async def get_payment_for_order(self, order_id):
        return copy.deepcopy(self._payment_row(order_id))

    async def insert_payment(self, doc):
        # mirrors the unique index on payments.order_id
        if self._payment_row(doc["order_id"]) is not None:
            raise ConcurrentUpdate(f"duplicate payment for order {doc['order_id']}")
        self.tables["payments"][doc["_id"]] = copy.deepcopy(doc)

    async def save_payment(self, doc, expected_version):
        current = self.tables["payments"].get(doc["_id"])
        if not current or current.get("version") != expected_version:
            return False
        self.tables["payments"][doc["_id"]] = copy.deepcopy(doc)
        return True

    async def delete_payment(self, payment_id):
        self.tables["payments"].pop(payment_id, None)

    # ---------------- inventory restorations ----------------

    async def has_restoration(self, order_id):
        return order_id in self.tables["inventory_restorations"]

    async def add_restoration(self, doc):
        if doc["order_id"] in self.tables["inventory_restorations"]:
            raise ConcurrentUpdate(f"stock already restored for order {doc['order_id']}")
        self.tables["inventory_restorations"][doc["order_id"]] = copy.deepcopy(doc)

    # ---------------- trail ----------------

    async def record_event(self, doc):
        self.tables["order_timeline"].append(copy.deepcopy(doc))

    async def record_audit(self, doc):
        self.tables["audit_logs"].append(copy.deepcopy(doc))


class MemoryStore(OrderStore):
    """
    Process-local store for tests and single-process development
    (STORE_BACKEND=memory). Transactions are serialized by one lock and
    roll back by restoring a snapshot taken on entry.
    """

    def __init__(self):
        self.tables = {
            "orders": {},
            "products": {},
            "payments": {},
            "inventory_restorations": {},
            "order_timeline": [],
            "audit_logs": [],
        }
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshot = copy.deepcopy(self.tables)
            try:
                yield MemorySession(self.tables)
            except BaseException:
                for name in _TABLES:
                    self.tables[name] = snapshot[name]
                raise

    # ---------------- plain reads / seeding ----------------

    async def insert_product(self, doc):
        self.tables["products"][doc["_id"]] = copy.deepcopy(doc)

    async def get_product(self, product_id):
        return copy.deepcopy(self.tables["products"].get(product_id))

    async def get_order(self, order_id):
        return copy.deepcopy(self.tables["orders"].get(order_id))

    async def get_payment_for_order(self, order_id):
        for payment in self.tables["payments"].values():
            if payment["order_id"] == order_id:
                return copy.deepcopy(payment)
        return None

    async def get_payment(self, payment_id):
        return copy.deepcopy(self.tables["payments"].get(payment_id))

    async def list_payments_for_user(self, user_id, limit=50):
        payments = [
            p for p in self.tables["payments"].values()
            if user_id in (p["buyer_id"], p["seller_id"])
        ]
        payments.sort(key=lambda p: p["created_at"], reverse=True)
        return copy.deepcopy(payments[:limit])

    async def find_latest_order_for_conversation(self, conversation_id, user_id):
        orders = [
            o for o in self.tables["orders"].values()
            if o.get("conversation_id") == conversation_id
            and user_id in (o["buyer_id"], o["seller_id"])
        ]
        if not orders:
            return None
        return copy.deepcopy(max(orders, key=lambda o: o["created_at"]))

    async def list_orders(self, *, buyer_id=None, seller_id=None, limit=100):
        orders = [
            o for o in self.tables["orders"].values()
            if (buyer_id is None or o["buyer_id"] == buyer_id)
            and (seller_id is None or o["seller_id"] == seller_id)
        ]
        orders.sort(key=lambda o: o["created_at"], reverse=True)
        return copy.deepcopy(orders[:limit])

    async def list_disputed_orders(self, *, resolved=None):
        orders = [
            o for o in self.tables["orders"].values()
            if o.get("dispute_raised")
            and (resolved is None or o.get("dispute_resolved") == resolved)
        ]
        orders.sort(key=lambda o: o["created_at"], reverse=True)
        orders.sort(key=lambda o: bool(o.get("dispute_resolved")))
        return copy.deepcopy(orders)

    async def list_timeline(self, order_id):
        events = [
            {k: v for k, v in e.items() if k != "_id"}
            for e in self.tables["order_timeline"]
            if e["order_id"] == order_id
        ]
        events.sort(key=lambda e: e["created_at"])
        return copy.deepcopy(events)

    async def find_stale_payment_intents(self, cutoff):
        return [
            p["order_id"] for p in self.tables["payments"].values()
            if p["status"] == "pending" and p["created_at"] <= cutoff
        ]

    async def find_unpaid_orders(self, cutoff):
        paid = {p["order_id"] for p in self.tables["payments"].values()}
        return [
            o["_id"] for o in self.tables["orders"].values()
            if o["status"] == "Accepted"
            and o.get("accepted_at") is not None
            and o["accepted_at"] <= cutoff
            and o["_id"] not in paid
        ]

    async def find_stale_refunds(self, cutoff):
        return [
            p["order_id"] for p in self.tables["payments"].values()
            if p.get("refund_pending_since") is not None and p["refund_pending_since"] <= cutoff
        ]

    async def ping(self):
        return True
