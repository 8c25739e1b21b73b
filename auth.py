"""
Authentication dependencies

Accounts are created by the identity provider; this module only resolves
the session token on a request to the stored Account row.
"""

from typing import Optional
from fastapi import HTTPException, Header, Depends, Cookie
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from database import get_db
from database_models import Account
from crud.account import AccountRepository
from auth_utils import decode_jwt

logger = logging.getLogger(__name__)


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # Cookie first (browser clients), then Bearer header (API consumers)
    if auth_token:
        return auth_token
    if authorization and authorization.startswith("Bearer "):
        return authorization.replace("Bearer ", "", 1).strip()
    return None


async def get_current_account(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> Account:
    """
    Dependency function to get the current authenticated account.

    The row is loaded fresh on every request so plan, admin flag and trial
    window are never served from a stale copy.

    Raises:
        HTTPException 401: missing/invalid/expired token or unknown account
    """
    token = _extract_token(auth_token, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    try:
        payload = decode_jwt(token)
    except ValueError as e:
        logger.error(f"Cannot authenticate request: {e}")
        raise HTTPException(status_code=401, detail="Authentication unavailable")

    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    account_id = payload.get("sub")
    if not account_id or not isinstance(account_id, str):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    account = await AccountRepository(db).get_account_by_id(account_id)
    if account is None:
        raise HTTPException(status_code=401, detail="Account not found")

    return account


async def get_optional_account(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> Optional[Account]:
    """Like get_current_account, but None instead of 401 so callers can shape the error body."""
    try:
        return await get_current_account(auth_token, authorization, db)
    except HTTPException as e:
        if e.status_code != 401:
            raise
        logger.info(f"Unauthenticated request: {e.detail}")
        return None


async def get_current_admin(account: Account = Depends(get_current_account)) -> Account:
    """Dependency that only lets administrators through."""
    if account.is_admin is not True:
        raise HTTPException(status_code=403, detail="Admin only")
    return account
