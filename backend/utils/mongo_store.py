from contextlib import asynccontextmanager
from datetime import datetime

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from utils.errors import ConcurrentUpdate
from utils.store import OrderStore, StoreSession


class MongoSession(StoreSession):
    """
    Every call passes the client session so the writes join the open
    multi-document transaction (requires a replica set).
    """

    def __init__(self, db, session):
        self.db = db
        self.session = session

    # ---------------- orders ----------------

    async def get_order(self, order_id):
        return await self.db.orders.find_one({"_id": order_id}, session=self.session)

    async def insert_order(self, doc):
        await self.db.orders.insert_one(doc, session=self.session)

    async def save_order(self, doc, expected_version):
        result = await self.db.orders.replace_one(
            {"_id": doc["_id"], "version": expected_version},
            doc,
            session=self.session,
        )
        return result.matched_count == 1

    # ---------------- products ----------------

    async def get_product(self, product_id):
        return await self.db.products.find_one({"_id": product_id}, session=self.session)

    async def take_stock(self, product_id, qty):
        return await self.db.products.find_one_and_update(
            {"_id": product_id, "stock": {"$gte": qty}},
            {
                "$inc": {"stock": -qty, "reserved_stock": qty},
                "$set": {"updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )

    async def return_stock(self, product_id, qty):
        product = await self.get_product(product_id)
        if not product:
            return None

        reserved_delta = min(qty, product.get("reserved_stock", 0))
        return await self.db.products.find_one_and_update(
            {"_id": product_id},
            {
                "$inc": {"stock": qty, "reserved_stock": -reserved_delta},
                "$set": {"updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )

    async def settle_reserved(self, product_id, qty):
        product = await self.get_product(product_id)
        if not product:
            return

        reserved_delta = min(qty, product.get("reserved_stock", 0))
        if reserved_delta <= 0:
            return

        await self.db.products.update_one(
            {"_id": product_id},
            {"$inc": {"reserved_stock": -reserved_delta}},
            session=self.session,
        )

    async def set_product_status(self, product_id, status):
        await self.db.products.update_one(
            {"_id": product_id},
            {"$set": {"status": status, "updated_at": datetime.utcnow()}},
            session=self.session,
        )

    # ---------------- payments ----------------

    async def get_payment_for_order(self, order_id):
        return await self.db.payments.find_one({"order_id": order_id}, session=self.session)

    async def insert_payment(self, doc):
        try:
            await self.db.payments.insert_one(doc, session=self.session)
        except DuplicateKeyError as e:
            # unique order_id: another writer opened a payment first
            raise ConcurrentUpdate(str(e)) from e

    async def save_payment(self, doc, expected_version):
        result = await self.db.payments.replace_one(
            {"_id": doc["_id"], "version": expected_version},
            doc,
            session=self.session,
        )
        return result.matched_count == 1

    async def delete_payment(self, payment_id):
        await self.db.payments.delete_one({"_id": payment_id}, session=self.session)

    # ---------------- inventory restorations ----------------

    async def has_restoration(self, order_id):
        found = await self.db.inventory_restorations.find_one(
            {"order_id": order_id},
            {"_id": 1},
            session=self.session,
        )
        return found is not None

    async def add_restoration(self, doc):
        try:
            await self.db.inventory_restorations.insert_one(doc, session=self.session)
        except DuplicateKeyError as e:
            raise ConcurrentUpdate(str(e)) from e

    # ---------------- trail ----------------

    async def record_event(self, doc):
        await self.db.order_timeline.insert_one(doc, session=self.session)

    async def record_audit(self, doc):
        await self.db.audit_logs.insert_one(doc, session=self.session)


class MongoStore(OrderStore):

    def __init__(self, client, db):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def transaction(self):
        async with await self.client.start_session() as session:
            try:
                async with session.start_transaction():
                    yield MongoSession(self.db, session)
            except OperationFailure as e:
                # WriteConflict and friends: another transaction touched the same documents
                if e.has_error_label("TransientTransactionError"):
                    raise ConcurrentUpdate(str(e)) from e
                raise

    # ---------------- plain reads / seeding ----------------

    async def insert_product(self, doc):
        await self.db.products.insert_one(doc)

    async def get_product(self, product_id):
        return await self.db.products.find_one({"_id": product_id})

    async def get_order(self, order_id):
        return await self.db.orders.find_one({"_id": order_id})

    async def get_payment_for_order(self, order_id):
        return await self.db.payments.find_one({"order_id": order_id})

    async def get_payment(self, payment_id):
        return await self.db.payments.find_one({"_id": payment_id})

    async def list_payments_for_user(self, user_id, limit=50):
        query = {"$or": [{"buyer_id": user_id}, {"seller_id": user_id}]}
        return await self.db.payments.find(query).sort("created_at", -1).to_list(limit)

    async def find_latest_order_for_conversation(self, conversation_id, user_id):
        return await self.db.orders.find_one(
            {
                "conversation_id": conversation_id,
                "$or": [{"buyer_id": user_id}, {"seller_id": user_id}],
            },
            sort=[("created_at", -1)],
        )

    async def list_orders(self, *, buyer_id=None, seller_id=None, limit=100):
        query = {}
        if buyer_id is not None:
            query["buyer_id"] = buyer_id
        if seller_id is not None:
            query["seller_id"] = seller_id

        return await self.db.orders.find(query).sort("created_at", -1).to_list(limit)

    async def list_disputed_orders(self, *, resolved=None):
        query = {"dispute_raised": True}
        if resolved is not None:
            query["dispute_resolved"] = resolved

        cursor = self.db.orders.find(query).sort([("dispute_resolved", 1), ("created_at", -1)])
        return await cursor.to_list(None)

    async def list_timeline(self, order_id):
        return await self.db.order_timeline.find(
            {"order_id": order_id},
            {"_id": 0},
        ).sort("created_at", 1).to_list(None)

    async def find_stale_payment_intents(self, cutoff):
        cursor = self.db.payments.find(
            {"status": "pending", "created_at": {"$lte": cutoff}},
            {"order_id": 1},
        )
        return [p["order_id"] async for p in cursor]

    async def find_unpaid_orders(self, cutoff):
        cursor = self.db.orders.find(
            {"status": "Accepted", "accepted_at": {"$lte": cutoff}},
            {"_id": 1},
        )
        order_ids = [o["_id"] async for o in cursor]
        if not order_ids:
            return []

        paid = await self.db.payments.distinct("order_id", {"order_id": {"$in": order_ids}})
        paid_ids = set(paid)
        return [oid for oid in order_ids if oid not in paid_ids]

    async def find_stale_refunds(self, cutoff):
        cursor = self.db.payments.find(
            {"refund_pending_since": {"$lte": cutoff}},
            {"order_id": 1},
        )
        return [p["order_id"] async for p in cursor]

    async def ping(self):
        await self.db.command("ping")
        return True