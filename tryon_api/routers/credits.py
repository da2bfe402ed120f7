from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from tryon_api.deps import get_current_user, require_admin
from tryon_api.models.user import User
from tryon_api.services import credits as credits_service

router = APIRouter()


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    package_id: str = Field(alias="packageId")


class AddCreditsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    amount: int = Field(gt=0)
    reason: str = "Admin credit addition"


@router.get("")
async def credits_get(user: User = Depends(get_current_user)):
    """Return the current credit account."""
    c = await credits_service.get_credits(user.id)
    return {
        "balance": c.balance,
        "totalPurchased": c.total_purchased,
        "totalUsed": c.total_used,
        "lastPurchase": c.last_purchase.model_dump(mode="json") if c.last_purchase else None,
    }


@router.get("/usage")
async def credits_usage(
    user: User = Depends(get_current_user),
    action: str | None = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Return usage log entries for current user (newest first)."""
    entries, total = await credits_service.list_usage(user.id, action=action, limit=limit, offset=offset)
    out = [
        {
            "id": str(e.id),
            "action": e.action,
            "creditsUsed": e.credits_used,
            "jobId": e.job_id,
            "details": e.details,
            "timestamp": e.timestamp.isoformat(),
        }
        for e in entries
    ]
    return {"usage": out, "total": total, "limit": limit, "offset": offset}


@router.post("/purchase")
async def credits_purchase(body: PurchaseRequest, user: User = Depends(get_current_user)):
    result = await credits_service.purchase_package(user.id, body.package_id)
    return {"newBalance": result["new_balance"], "package": result["package"]}


@router.post("/add")
async def credits_add(body: AddCreditsRequest, admin: User = Depends(require_admin)):
    """Admin: grant credits to a user."""
    from tryon_api.services.assets import parse_object_id
    balance = await credits_service.add_credits(
        parse_object_id(body.user_id, "User"),
        body.amount,
        body.reason,
        details={"granted_by": str(admin.id)},
    )
    return {"newBalance": balance}


@router.get("/stats")
async def credits_stats(admin: User = Depends(require_admin)):
    return await credits_service.credit_stats()
