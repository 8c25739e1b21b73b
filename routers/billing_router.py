"""
Billing Router - PayFast checkout and ITN endpoints
Notify is defined FIRST; it is called by PayFast, never by a signed-in user
"""

import logging
from typing import Optional
from fastapi import APIRouter, Request, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from auth import get_optional_account
from backend.utils.responses import success_response, error_response, token_response
from database import get_service_sessionmaker
from database_models import Account
from services.entitlement_service import EntitlementUpdater, UpgradeResult
from services.payfast_service import NotificationOutcome, PayFastService

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/billing", tags=["billing"])


def get_payfast_service() -> PayFastService:
    """Dependency building the PayFast service from settings."""
    return PayFastService()


# NOTIFY (ITN) ENDPOINT - UNAUTHENTICATED, ANSWERS WITH PLAIN-TEXT TOKENS
@billing_router.post("/notify")
async def payfast_notify(
    request: Request,
    payfast: PayFastService = Depends(get_payfast_service),
    service_sessions: Optional[async_sessionmaker] = Depends(get_service_sessionmaker)
):
    """
    Handle a PayFast Instant Transaction Notification.

    The body is verified (signature, then a validate round-trip with PayFast)
    before anything is granted. Retried deliveries are safe because the
    upgrade is idempotent.

    Returns:
        Plain-text token: OK, IGNORED, INVALID_SIGNATURE, INVALID,
        MISSING_USER, SERVER_MISCONFIG, DB_ERROR or ERROR
    """
    try:
        raw_body = (await request.body()).decode("utf-8", errors="replace")

        verdict = await payfast.verify_notification(raw_body)
        if verdict.outcome != NotificationOutcome.ACCEPT_AND_UPGRADE:
            return token_response(verdict.token, verdict.status_code)

        if service_sessions is None:
            logger.error("SERVICE_DATABASE_URL is not set. Cannot apply verified upgrade.")
            return token_response("SERVER_MISCONFIG", 500)

        result = await EntitlementUpdater(service_sessions).apply_upgrade(verdict.account_id)
        if result.status == UpgradeResult.NOT_FOUND:
            return token_response("MISSING_USER", 400)
        if not result.ok:
            return token_response("DB_ERROR", 500)

        return token_response("OK", 200)

    except Exception as e:
        logger.error(f"ITN handling error: {e}", exc_info=True)
        return token_response("ERROR", 500)


@billing_router.post("/checkout")
async def create_checkout(
    account: Optional[Account] = Depends(get_optional_account),
    payfast: PayFastService = Depends(get_payfast_service)
):
    """
    Build the signed PayFast form for the premium subscription.

    The request body is ignored; everything sent to PayFast is server-side.

    Returns:
        {"ok": true, "actionUrl": str, "fields": {...}} to auto-submit as a form
    """
    if account is None:
        return error_response("Not signed in.", status=401)

    result = payfast.build_checkout(account.id)
    if result.get("is_error"):
        status = 500 if result.get("error_type") == "configuration" else 400
        return error_response(result.get("error", "Unknown error"), status=status)

    return success_response(
        actionUrl=result["data"]["action_url"],
        fields=result["data"]["fields"]
    )
