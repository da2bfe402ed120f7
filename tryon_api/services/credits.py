"""Credit balances and the usage ledger.

Balance counters live on the user document and are only changed with atomic
$inc updates. The usage log is append-only and coupled to balance changes on a
best-effort basis: a failed append is logged, never rolled back into the balance.
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from tryon_api.core.config import get_settings
from tryon_api.core.exceptions import BadRequestError, NotFoundError, PersistenceError
from tryon_api.core.logging import get_logger
from tryon_api.models.usage_log import UsageLog
from tryon_api.models.user import CreditAccount, User

log = get_logger(__name__)

ACTIONS = ("model_generation", "tryon", "scene_change", "other", "refund")


async def get_credits(user_id: PydanticObjectId) -> CreditAccount:
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user.credits


async def get_balance(user_id: PydanticObjectId) -> int:
    return (await get_credits(user_id)).balance


async def debit(user_id: PydanticObjectId, amount: int) -> bool:
    """balance -= amount; total_used += amount, only if balance >= amount. Returns whether it applied."""
    try:
        result = await User.get_motor_collection().update_one(
            {"_id": user_id, "credits.balance": {"$gte": amount}},
            {
                "$inc": {"credits.balance": -amount, "credits.total_used": amount},
                "$set": {"updated_at": datetime.utcnow()},
            },
        )
    except PyMongoError as e:
        raise PersistenceError("Credit debit failed", details={"user_id": str(user_id)}) from e
    return result.modified_count == 1


async def refund(user_id: PydanticObjectId, amount: int) -> None:
    """balance += amount; total_used -= amount."""
    try:
        await User.get_motor_collection().update_one(
            {"_id": user_id},
            {
                "$inc": {"credits.balance": amount, "credits.total_used": -amount},
                "$set": {"updated_at": datetime.utcnow()},
            },
        )
    except PyMongoError as e:
        raise PersistenceError("Credit refund failed", details={"user_id": str(user_id)}) from e


async def append_usage_log(
    user_id: PydanticObjectId,
    action: str,
    credits_used: int,
    job_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> UsageLog | None:
    """Append a ledger entry. Failures are logged and reported as None, never raised."""
    if action not in ACTIONS:
        raise BadRequestError(f"Invalid action: {action}")
    entry = UsageLog(
        user_id=user_id,
        action=action,
        credits_used=credits_used,
        job_id=job_id,
        details=details or {},
    )
    try:
        await entry.insert()
    except PyMongoError:
        log.exception(
            "usage_log_append_failed",
            user_id=str(user_id),
            action=action,
            credits_used=credits_used,
            external_job_id=job_id,
        )
        return None
    return entry


async def add_credits(user_id: PydanticObjectId, amount: int, reason: str, details: dict[str, Any] | None = None) -> int:
    """Purchase or admin grant. Returns the new balance."""
    if amount <= 0:
        raise BadRequestError("Valid credit amount is required")
    now = datetime.utcnow()
    result = await User.get_motor_collection().find_one_and_update(
        {"_id": user_id},
        {
            "$inc": {"credits.balance": amount, "credits.total_purchased": amount},
            "$set": {
                "credits.last_purchase": {"amount": amount, "date": now, "reason": reason},
                "updated_at": now,
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    if result is None:
        raise NotFoundError("User not found")
    await append_usage_log(user_id, "other", -amount, details={"reason": reason, **(details or {})})
    log.info("credits_added", user_id=str(user_id), amount=amount, reason=reason)
    return result["credits"]["balance"]


async def purchase_package(user_id: PydanticObjectId, package_id: str) -> dict[str, Any]:
    """Apply a credit package. No payment gateway yet; credits are granted directly."""
    packages = get_settings().credit_packages
    if package_id not in packages:
        raise BadRequestError("Invalid package selected")
    credits, price = packages[package_id]
    reason = f"Purchased {package_id} package"
    balance = await add_credits(user_id, credits, reason, details={"price": price})
    return {
        "new_balance": balance,
        "package": {"name": package_id, "credits": credits, "price": price},
    }


async def list_usage(
    user_id: PydanticObjectId,
    action: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[UsageLog], int]:
    query = UsageLog.find(UsageLog.user_id == user_id)
    if action in ACTIONS:
        query = query.find(UsageLog.action == action)
    total = await query.count()
    entries = await query.sort(-UsageLog.timestamp).skip(offset).limit(limit).to_list()
    return entries, total


async def job_ledger(external_job_id: str) -> list[UsageLog]:
    """All ledger entries correlated to one external job handle, oldest first."""
    return await UsageLog.find(UsageLog.job_id == external_job_id).sort(+UsageLog.timestamp).to_list()


async def credit_stats() -> dict[str, Any]:
    """Totals across users and positive usage (debits only) grouped by action."""
    totals = await User.get_motor_collection().aggregate([
        {
            "$group": {
                "_id": None,
                "total_balance": {"$sum": "$credits.balance"},
                "total_purchased": {"$sum": "$credits.total_purchased"},
                "total_used": {"$sum": "$credits.total_used"},
            }
        }
    ]).to_list(length=None)
    by_action = await UsageLog.get_motor_collection().aggregate([
        {"$match": {"credits_used": {"$gt": 0}}},
        {"$group": {"_id": "$action", "total_credits": {"$sum": "$credits_used"}, "count": {"$sum": 1}}},
    ]).to_list(length=None)
    total = totals[0] if totals else {"total_balance": 0, "total_purchased": 0, "total_used": 0}
    total.pop("_id", None)
    return {
        "total_credits": total,
        "usage_by_action": {
            row["_id"]: {
                "total_credits": row["total_credits"],
                "count": row["count"],
                "average_per_use": row["total_credits"] / row["count"],
            }
            for row in by_action
        },
    }
