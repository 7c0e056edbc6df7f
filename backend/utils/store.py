from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from bson import ObjectId


class StoreSession(ABC):
    """
    Handle bound to one open transaction. Every write made through it
    commits or rolls back together with the others.
    """

    # ---------------- orders ----------------

    @abstractmethod
    async def get_order(self, order_id: ObjectId) -> dict | None: ...

    @abstractmethod
    async def insert_order(self, doc: dict) -> None: ...

    @abstractmethod
    async def save_order(self, doc: dict, expected_version: int) -> bool:
        """Replace the order only if its stored version still matches."""

    # ---------------- products ----------------

    @abstractmethod
    async def get_product(self, product_id: ObjectId) -> dict | None: ...

    @abstractmethod
    async def take_stock(self, product_id: ObjectId, qty: int) -> dict | None:
        """stock -= qty, reserved_stock += qty iff stock >= qty. Returns the updated doc."""

    @abstractmethod
    async def return_stock(self, product_id: ObjectId, qty: int) -> dict | None:
        """stock += qty, reserved_stock -= qty (floored at 0). Returns the updated doc."""

    @abstractmethod
    async def settle_reserved(self, product_id: ObjectId, qty: int) -> None:
        """reserved_stock -= qty (floored at 0): the units left with the buyer."""

    @abstractmethod
    async def set_product_status(self, product_id: ObjectId, status: str) -> None: ...

    # ---------------- payments ----------------

    @abstractmethod
    async def get_payment_for_order(self, order_id: ObjectId) -> dict | None: ...

    @abstractmethod
    async def insert_payment(self, doc: dict) -> None: ...

    @abstractmethod
    async def save_payment(self, doc: dict, expected_version: int) -> bool: ...

    @abstractmethod
    async def delete_payment(self, payment_id: ObjectId) -> None: ...

    # ---------------- inventory restorations ----------------

    @abstractmethod
    async def has_restoration(self, order_id: ObjectId) -> bool: ...

    @abstractmethod
    async def add_restoration(self, doc: dict) -> None: ...

    # ---------------- trail ----------------

    @abstractmethod
    async def record_event(self, doc: dict) -> None: ...

    @abstractmethod
    async def record_audit(self, doc: dict) -> None: ...


class OrderStore(ABC):
    """Persistence for the order/escrow core."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreSession]: ...

    # ---------------- plain reads / seeding ----------------

    @abstractmethod
    async def insert_product(self, doc: dict) -> None: ...

    @abstractmethod
    async def get_product(self, product_id: ObjectId) -> dict | None: ...

    @abstractmethod
    async def get_order(self, order_id: ObjectId) -> dict | None: ...

    @abstractmethod
    async def get_payment_for_order(self, order_id: ObjectId) -> dict | None: ...

    @abstractmethod
    async def get_payment(self, payment_id: ObjectId) -> dict | None: ...

    @abstractmethod
    async def list_payments_for_user(self, user_id: ObjectId, limit: int = 50) -> list[dict]:
        """Payments where the user is buyer or seller, newest first."""

    @abstractmethod
    async def find_latest_order_for_conversation(self, conversation_id: ObjectId, user_id: ObjectId) -> dict | None:
        """Newest order on the chat thread where the user is buyer or seller."""

    @abstractmethod
    async def list_orders(
        self,
        *,
        buyer_id: ObjectId | None = None,
        seller_id: ObjectId | None = None,
        limit: int = 100,
    ) -> list[dict]: ...

    @abstractmethod
    async def list_disputed_orders(self, *, resolved: bool | None = None) -> list[dict]: ...

    @abstractmethod
    async def list_timeline(self, order_id: ObjectId) -> list[dict]: ...

    @abstractmethod
    async def find_stale_payment_intents(self, cutoff: datetime) -> list[ObjectId]:
        """Order ids whose payment stayed pending since before cutoff."""

    @abstractmethod
    async def find_unpaid_orders(self, cutoff: datetime) -> list[ObjectId]:
        """Order ids Accepted before cutoff that never got a payment row."""

    @abstractmethod
    async def find_stale_refunds(self, cutoff: datetime) -> list[ObjectId]:
        """Order ids whose gateway refund has been marked in flight since before cutoff."""

    @abstractmethod
    async def ping(self) -> bool: ...
