"""
Admin Router - manual plan and trial management
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_admin
from backend.utils.responses import success_response
from config.settings import PLANS
from crud.account import AccountRepository
from database import get_db
from database_models import Account
from services.entitlement_service import describe_entitlement

logger = logging.getLogger(__name__)

# Create router with /api/admin prefix
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


class UpdateAccountRequest(BaseModel):
    id: str
    patch: Dict[str, Any] = Field(default_factory=dict)


class GrantTrialRequest(BaseModel):
    id: str
    days: int = Field(gt=0, le=365)


def _parse_trial_until(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="trial_until must be an ISO timestamp or null")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _allowed_updates(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the fields admins may change here (plan, trial_until)."""
    allowed: Dict[str, Any] = {}
    if patch.get("plan") in PLANS:
        allowed["plan"] = patch["plan"]
    if "trial_until" in patch and (patch["trial_until"] is None or isinstance(patch["trial_until"], str)):
        allowed["trial_until"] = _parse_trial_until(patch["trial_until"])
    return allowed


async def _load_account(repo: AccountRepository, account_id: str) -> Account:
    if not account_id:
        raise HTTPException(status_code=400, detail="Missing id.")
    account = await repo.get_account_by_id(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return account


@admin_router.get("/users")
async def list_accounts(
    limit: int = 200,
    admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """List accounts with their resolved entitlement."""
    accounts = await AccountRepository(db).list_accounts(limit=max(1, min(limit, 500)))
    return success_response(
        users=[{**describe_entitlement(a), "email": a.email} for a in accounts]
    )


@admin_router.post("/update-user")
async def update_account(
    request: UpdateAccountRequest,
    admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """
    Set plan and/or trial_until on an account.
    Anything else in the patch (is_admin included) is dropped.
    """
    repo = AccountRepository(db)
    account = await _load_account(repo, request.id)

    updates = _allowed_updates(request.patch)
    if updates:
        account = await repo.update_account(account, updates)
        logger.info(f"Admin {admin.id} updated account {account.id}: {sorted(updates)}")

    return success_response(account=describe_entitlement(account))


@admin_router.post("/grant-trial")
async def grant_trial(
    request: GrantTrialRequest,
    admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """Open a trial window of `days` days starting now."""
    repo = AccountRepository(db)
    account = await _load_account(repo, request.id)

    trial_until = datetime.now(timezone.utc) + timedelta(days=request.days)
    account = await repo.update_account(account, {"trial_until": trial_until})
    logger.info(f"Admin {admin.id} granted {request.days}-day trial to account {account.id}")

    return success_response(account=describe_entitlement(account))
