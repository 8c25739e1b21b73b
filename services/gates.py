"""
FastAPI dependencies for premium-gated and quota-gated endpoints.

Chat, image generation, character and persona creation all gate through
here so every call site resolves entitlement the same way.
"""
import logging
from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_account
from database import get_db
from database_models import Account
from services.entitlement_service import is_premium_like
from services.quota_service import ACTION_CHAT_MESSAGE, QuotaDecision, QuotaService, QuotaUnavailableError

logger = logging.getLogger(__name__)

FEATURE_IMAGE_GENERATION = "image generation"
FEATURE_PRIVATE_CHARACTERS = "private characters"
FEATURE_UNLIMITED_CHARACTERS = "unlimited characters"
FEATURE_PERSONAS = "personas"

DAILY_LIMIT_MESSAGE = "Daily message limit reached. Upgrade to Premium for unlimited messages."


def require_premium_like(feature: str):
    """
    Build a dependency that rejects non-premium accounts with 403.

    Usage:
        @router.post("/images/generate")
        async def generate(account: Account = Depends(require_premium_like(FEATURE_IMAGE_GENERATION))):
            ...
    """
    async def dependency(account: Account = Depends(get_current_account)) -> Account:
        if not is_premium_like(account):
            raise HTTPException(
                status_code=403,
                detail=f"Premium feature. Please upgrade to use {feature}."
            )
        return account

    return dependency


async def consume_quota(db: AsyncSession, account: Account, action: str = ACTION_CHAT_MESSAGE) -> QuotaDecision:
    """
    Charge one unit of the daily allowance or raise.

    Raises:
        HTTPException 402: daily limit reached
        HTTPException 503: counter store unavailable (fails closed)
    """
    try:
        decision = await QuotaService(db).try_consume(account, action=action)
    except QuotaUnavailableError as e:
        logger.error(f"Quota check failed for account {account.id}, denying: {e}")
        raise HTTPException(status_code=503, detail="Could not check limits. Please try again shortly.")

    if not decision.allowed:
        raise HTTPException(status_code=402, detail=DAILY_LIMIT_MESSAGE)
    return decision


async def require_chat_quota(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
) -> QuotaDecision:
    """Dependency charging one chat message against the daily allowance."""
    return await consume_quota(db, account, ACTION_CHAT_MESSAGE)
