"""
Entitlement Service - premium-like resolution and verified plan upgrades
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import PLAN_PREMIUM
from crud.account import AccountRepository

logger = logging.getLogger(__name__)


def _field(account: Any, name: str) -> Any:
    """Read a field from an ORM row, a mapping or any attribute bag."""
    if account is None:
        return None
    if isinstance(account, dict):
        return account.get(name)
    return getattr(account, name, None)


def _as_utc(value: Any) -> Optional[datetime]:
    """
    Normalize a stored trial_until into an aware UTC datetime.
    Returns None for anything that is not a usable timestamp.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None

    if not isinstance(value, datetime):
        return None

    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def is_trial_active(trial_until: Any, now: Optional[datetime] = None) -> bool:
    """
    A trial is active only while trial_until lies strictly in the future.
    Missing or malformed values never count as a trial.
    """
    expires_at = _as_utc(trial_until)
    if expires_at is None:
        return False
    return expires_at > _now(now)


def is_premium_like(account: Any, now: Optional[datetime] = None) -> bool:
    """
    Decide whether an account gets premium-tier access right now.

    True for administrators, premium-plan accounts and accounts inside an
    active trial window. Never raises: anything unreadable resolves to False.

    Args:
        account: Account row, dict or attribute bag with is_admin/plan/trial_until
        now: Reference time (defaults to current UTC time)

    Returns:
        True if the account should be treated as premium
    """
    try:
        if _field(account, "is_admin") is True:
            return True
        if _field(account, "plan") == PLAN_PREMIUM:
            return True
        return is_trial_active(_field(account, "trial_until"), now)
    except Exception as e:
        logger.warning(f"Entitlement check failed, treating account as free: {e}")
        return False


def describe_entitlement(account: Any, now: Optional[datetime] = None) -> dict:
    """Summarize an account's entitlement for API responses."""
    trial_until = _as_utc(_field(account, "trial_until"))
    return {
        "account_id": _field(account, "id"),
        "plan": _field(account, "plan"),
        "is_admin": _field(account, "is_admin") is True,
        "trial_until": trial_until.isoformat() if trial_until else None,
        "trial_active": is_trial_active(trial_until, now),
        "premium_like": is_premium_like(account, now),
    }


@dataclass(frozen=True)
class UpgradeResult:
    """Outcome of applying a premium upgrade."""
    status: str
    account_id: str
    error: Optional[str] = None

    OK = "ok"
    NOT_FOUND = "not_found"
    STORE_ERROR = "store_error"

    @property
    def ok(self) -> bool:
        return self.status == self.OK


class EntitlementUpdater:
    """
    Applies verified payment outcomes to account rows.

    Writes go through the privileged session factory so the update is not
    bound to the paying user's session.
    """

    def __init__(self, sessionmaker: async_sessionmaker):
        """
        Args:
            sessionmaker: Session factory bound to the privileged credential
        """
        self.sessionmaker = sessionmaker

    async def apply_upgrade(self, account_id: str) -> UpgradeResult:
        """
        Set plan=premium and clear trial_until for account_id.

        Idempotent: applying it again to an upgraded account succeeds and
        leaves the row unchanged.

        Args:
            account_id: Account the verified payment belongs to

        Returns:
            UpgradeResult with status ok, not_found or store_error
        """
        try:
            async with self.sessionmaker() as session:
                async with session.begin():
                    matched = await AccountRepository(session).mark_premium(account_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to upgrade account {account_id}: {e}", exc_info=True)
            return UpgradeResult(UpgradeResult.STORE_ERROR, account_id, str(e))

        if not matched:
            logger.warning(f"Upgrade requested for unknown account {account_id}")
            return UpgradeResult(UpgradeResult.NOT_FOUND, account_id, "Account not found")

        logger.info(f"Account {account_id} upgraded to {PLAN_PREMIUM}")
        return UpgradeResult(UpgradeResult.OK, account_id)
