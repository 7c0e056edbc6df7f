import logging
from abc import ABC, abstractmethod
from datetime import datetime

from bson import ObjectId
from pymongo import ReturnDocument

logger = logging.getLogger(__name__)

# Notification categories
NEW_ORDER = "new_order"
ORDER_ACCEPTED = "order_accepted"
ORDER_CONFIRMED = "order_confirmed"
ORDER_SHIPPED = "order_shipped"
ORDER_COMPLETED = "order_completed"
ORDER_CANCELLED = "order_cancelled"
PAYMENT_RECEIVED = "payment_received"
ORDER_DISPUTED = "order_disputed"
DISPUTE_RESOLVED = "dispute_resolved"


class NotificationDispatcher(ABC):
    """Outbound user/admin notifications. Callers treat every call as fire-and-forget."""

    @abstractmethod
    async def notify(
        self,
        user_id: ObjectId,
        title: str,
        message: str,
        category: str,
        reference_id: ObjectId | None = None,
        reference_type: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def notify_admins(self, title: str, message: str, category: str) -> None: ...


class ConversationService(ABC):

    @abstractmethod
    async def open_thread(self, user_a: ObjectId, user_b: ObjectId) -> ObjectId | None:
        """Return the id of the thread between the two users, creating it if needed."""

    @abstractmethod
    async def append_system_message(self, conversation_id: ObjectId, author_id: ObjectId, text: str) -> None: ...


# ==============================
# MongoDB implementations
# ==============================

class MongoNotificationDispatcher(NotificationDispatcher):

    def __init__(self, db):
        self.db = db

    async def notify(self, user_id, title, message, category, reference_id=None, reference_type=None):
        await self.db.user_notifications.insert_one({
            "user_id": user_id,
            "title": title,
            "message": message,
            "category": category,
            "reference_id": reference_id,
            "reference_type": reference_type,
            "is_read": False,
            "created_at": datetime.utcnow(),
        })

    async def notify_admins(self, title, message, category):
        await self.db.admin_notifications.insert_one({
            "title": title,
            "message": message,
            "category": category,
            "is_read": False,
            "created_at": datetime.utcnow(),
        })


class MongoConversationService(ConversationService):

    def __init__(self, db):
        self.db = db

    async def open_thread(self, user_a, user_b):
        participants = sorted([user_a, user_b], key=str)
        now = datetime.utcnow()

        thread = await self.db.conversations.find_one_and_update(
            {"participants": participants},
            {
                "$setOnInsert": {"participants": participants, "created_at": now},
                "$set": {"updated_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return thread["_id"] if thread else None

    async def append_system_message(self, conversation_id, author_id, text):
        now = datetime.utcnow()
        await self.db.messages.insert_one({
            "conversation_id": conversation_id,
            "sender_id": author_id,
            "message": text,
            "message_type": "system",
            "created_at": now,
        })
        await self.db.conversations.update_one(
            {"_id": conversation_id},
            {"$set": {"updated_at": now, "last_message": text[:200]}},
        )


# ==============================
# Logging implementations (STORE_BACKEND=memory)
# ==============================

class LoggingNotificationDispatcher(NotificationDispatcher):

    async def notify(self, user_id, title, message, category, reference_id=None, reference_type=None):
        logger.info("NOTIFY user=%s category=%s title=%s", user_id, category, title)

    async def notify_admins(self, title, message, category):
        logger.info("NOTIFY_ADMINS category=%s title=%s", category, title)


class LoggingConversationService(ConversationService):

    async def open_thread(self, user_a, user_b):
        thread_id = ObjectId()
        logger.info("CHAT_THREAD_OPENED conversation=%s", thread_id)
        return thread_id

    async def append_system_message(self, conversation_id, author_id, text):
        logger.info("CHAT_MESSAGE conversation=%s author=%s", conversation_id, author_id)
