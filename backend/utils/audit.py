from datetime import datetime

from bson import ObjectId


async def log_audit(
    tx,
    actor_id: str,
    actor_role: str,
    action: str,
    metadata: dict | None = None
):
    await tx.record_audit({
        "_id": ObjectId(),
        "actor_id": actor_id,
        "actor_role": actor_role,
        "action": action,
        "metadata": metadata or {},
        "created_at": datetime.utcnow()
    })
