"""
Entitlements Router - plan status and gate hooks for gated collaborators
"""
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_account
from backend.utils.responses import success_response
from database import get_db
from database_models import Account
from services.entitlement_service import describe_entitlement
from services.gates import (
    FEATURE_IMAGE_GENERATION,
    FEATURE_PERSONAS,
    FEATURE_PRIVATE_CHARACTERS,
    FEATURE_UNLIMITED_CHARACTERS,
    require_chat_quota,
    require_premium_like,
)
from services.quota_service import ACTION_CHAT_MESSAGE, QuotaDecision, QuotaService, QuotaUnavailableError

logger = logging.getLogger(__name__)

entitlements_router = APIRouter(prefix="/api", tags=["entitlements"])

PREMIUM_FEATURES = {
    "images": FEATURE_IMAGE_GENERATION,
    "personas": FEATURE_PERSONAS,
    "private-characters": FEATURE_PRIVATE_CHARACTERS,
    "unlimited-characters": FEATURE_UNLIMITED_CHARACTERS,
}


@entitlements_router.get("/entitlements/me")
async def get_my_entitlements(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """Plan, trial window and today's message usage for the signed-in account."""
    summary = describe_entitlement(account)
    quota = QuotaService(db)

    try:
        used = await quota.usage_today(account.id, ACTION_CHAT_MESSAGE)
    except QuotaUnavailableError as e:
        logger.warning(f"Could not read usage for account {account.id}: {e}")
        used = None

    return success_response(
        **summary,
        messages_used_today=used,
        daily_message_limit=None if summary["premium_like"] else quota.daily_limit,
    )


@entitlements_router.get("/entitlements/features/{feature}")
async def check_feature(feature: str, account: Account = Depends(get_current_account)):
    """
    Gate check for premium-only features (403 with an upgrade prompt if not allowed).
    """
    label = PREMIUM_FEATURES.get(feature)
    if label is None:
        raise HTTPException(status_code=404, detail=f"Unknown feature: {feature}")

    await require_premium_like(label)(account)
    return success_response(feature=feature, allowed=True)


@entitlements_router.post("/quota/chat")
async def consume_chat_message(decision: QuotaDecision = Depends(require_chat_quota)):
    """
    Charge one chat message before the completion call is made.
    402 once a free account has used today's allowance.
    """
    return success_response(
        allowed=True,
        premium_like=decision.premium_like,
        used=decision.used,
        remaining=decision.remaining,
    )
