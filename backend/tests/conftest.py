"""Shared fixtures for the order/escrow test suite.

Everything runs against the in-memory store with fake gateway, notification
and chat collaborators, so no MongoDB or network access is needed.
"""

import os

os.environ["STORE_BACKEND"] = "memory"
os.environ.setdefault("JWT_SECRET", "test-secret")

import asyncio

import pytest
from bson import ObjectId

from models.order import OrderStatus
from models.product import Product
from models.user import Identity, UserRole
from utils.escrow_service import EscrowLedger
from utils.memory_store import MemoryStore
from utils.money import from_minor_units, to_minor_units
from utils.notifications import ConversationService, NotificationDispatcher
from utils.order_machine import OrderStateMachine
from utils.payment_gateway import CaptureResult, PaymentGateway, RefundResult


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeGateway(PaymentGateway):
    """Records calls. Set fail_* to an error string to make a call fail,
    or a *_gate Event to hold the call until the test releases it."""

    def __init__(self):
        self.captures = []
        self.refunds = []
        self.fail_capture = None
        self.fail_refund = None
        self.capture_gate = None
        self.refund_gate = None
        self.capture_started = asyncio.Event()
        self.refund_started = asyncio.Event()

    async def capture(self, amount_minor, method, method_details):
        self.captures.append({"amount_minor": amount_minor, "method": method})
        self.capture_started.set()
        if self.capture_gate is not None:
            await self.capture_gate.wait()
        if self.fail_capture:
            return CaptureResult(success=False, error=self.fail_capture)
        return CaptureResult(success=True, reference=f"pay_{len(self.captures)}")

    async def refund(self, reference, amount_minor, reason, idempotency_key=None):
        self.refunds.append({
            "reference": reference,
            "amount_minor": amount_minor,
            "reason": reason,
            "idempotency_key": idempotency_key,
        })
        self.refund_started.set()
        if self.refund_gate is not None:
            await self.refund_gate.wait()
        if self.fail_refund:
            return RefundResult(success=False, error=self.fail_refund)
        return RefundResult(success=True, refund_id=f"ref_{len(self.refunds)}")


class FakeNotifier(NotificationDispatcher):

    def __init__(self):
        self.sent = []
        self.admin_sent = []

    async def notify(self, user_id, title, message, category, reference_id=None, reference_type=None):
        self.sent.append({"user_id": user_id, "title": title, "category": category, "reference_id": reference_id})

    async def notify_admins(self, title, message, category):
        self.admin_sent.append({"title": title, "message": message, "category": category})


class FailingNotifier(NotificationDispatcher):

    async def notify(self, *args, **kwargs):
        raise RuntimeError("notification service down")

    async def notify_admins(self, *args, **kwargs):
        raise RuntimeError("notification service down")


class FakeConversations(ConversationService):

    def __init__(self):
        self.threads = []
        self.messages = []

    async def open_thread(self, user_a, user_b):
        thread_id = ObjectId()
        self.threads.append(thread_id)
        return thread_id

    async def append_system_message(self, conversation_id, author_id, text):
        self.messages.append({"conversation_id": conversation_id, "author_id": author_id, "text": text})


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def conversations():
    return FakeConversations()


@pytest.fixture
def machine(store, gateway, notifier, conversations):
    return OrderStateMachine(store, EscrowLedger(gateway), notifier, conversations)


@pytest.fixture
def buyer():
    return Identity(user_id=ObjectId())


@pytest.fixture
def seller():
    return Identity(user_id=ObjectId())


@pytest.fixture
def admin():
    return Identity(user_id=ObjectId(), role=UserRole.ADMIN)


@pytest.fixture
def stranger():
    return Identity(user_id=ObjectId())


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def make_product(store, seller):
    """Factory fixture: insert a product owned by `seller`."""

    async def _make(stock: int = 5, price: str = "100.00", track_inventory: bool = True, name: str = "Vintage Camera"):
        product = Product(
            seller_id=seller.user_id,
            name=name,
            price_minor=to_minor_units(price),
            stock=stock,
            track_inventory=track_inventory,
        )
        await store.insert_product(product.to_doc())
        return product

    return _make


def order_total(order) -> str:
    return str(from_minor_units(order.total_minor))


@pytest.fixture
def order_in(machine, buyer, seller, make_product):
    """Factory fixture: drive a fresh order up to `status` through the machine.
    Returns (order, product)."""

    path = [
        OrderStatus.PENDING,
        OrderStatus.ACCEPTED,
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPED,
        OrderStatus.COMPLETED,
    ]

    async def _make(status: OrderStatus, method: str = "card", stock: int = 5, qty: int = 3):
        product = await make_product(stock=stock)
        result = await machine.create_order(buyer, product.id, qty)
        assert result.ok, result
        order = result.value
        steps = path[1:path.index(status) + 1]

        for step in steps:
            if step == OrderStatus.ACCEPTED:
                result = await machine.accept_order(seller, order.id)
            elif step == OrderStatus.CONFIRMED:
                result = await machine.pay(buyer, order.id, order_total(order), method)
            elif step == OrderStatus.SHIPPED:
                result = await machine.ship_order(seller, order.id, "LBC-123456")
            else:
                result = await machine.complete_order(buyer, order.id)
            assert result.ok, result

        current = (await machine.get_order(buyer, order.id)).value
        assert current.status == status
        return current, product

    return _make


@pytest.fixture
async def client(machine):
    """httpx AsyncClient wired to the FastAPI app with the test machine."""
    import httpx

    from main import app
    from utils.order_machine import get_order_machine

    app.dependency_overrides[get_order_machine] = lambda: machine

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header for an identity."""
    from utils.jwt import create_access_token

    def _build(identity: Identity) -> dict:
        token = create_access_token(str(identity.user_id), identity.role.value)
        return {"Authorization": f"Bearer {token}"}

    return _build
