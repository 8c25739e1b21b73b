"""
Quota Service - daily message allowance for free-tier accounts
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from database_models import DailyUsage
from services.entitlement_service import is_premium_like

logger = logging.getLogger(__name__)

ACTION_CHAT_MESSAGE = "chat_message"

_UPSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


class QuotaUnavailableError(Exception):
    """The usage counter could not be read or written."""


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    premium_like: bool
    used: Optional[int] = None
    limit: Optional[int] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None or self.used is None:
            return None
        return max(0, self.limit - self.used)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaService:
    """
    Per-account, per-day counter for free-tier actions.

    The counter only moves through one conditional upsert, so two concurrent
    requests can never both slip under the limit.
    """

    def __init__(self, db: AsyncSession, daily_limit: Optional[int] = None):
        self.db = db
        self.daily_limit = settings.free_daily_message_limit if daily_limit is None else daily_limit

    def _upsert(self):
        dialect = self.db.get_bind().dialect.name
        upsert = _UPSERTS.get(dialect)
        if upsert is None:
            raise QuotaUnavailableError(f"Atomic usage counter not supported on {dialect}")
        return upsert

    async def try_consume(
        self,
        account: Any,
        action: str = ACTION_CHAT_MESSAGE,
        day: Optional[date] = None,
    ) -> QuotaDecision:
        """
        Spend one unit of today's allowance for a free-tier account.

        Premium-like accounts are always allowed and their counter is never
        touched.

        Args:
            account: Account row (needs id, plan, is_admin, trial_until)
            action: Counter name
            day: UTC calendar day to charge (defaults to today)

        Returns:
            QuotaDecision

        Raises:
            QuotaUnavailableError: If the counter store fails
        """
        if is_premium_like(account):
            return QuotaDecision(allowed=True, premium_like=True)

        day = day or utc_today()
        limit = self.daily_limit
        if limit <= 0:
            return QuotaDecision(allowed=False, premium_like=False, used=0, limit=limit)

        table = DailyUsage.__table__
        upsert = self._upsert()
        stmt = (
            upsert(table)
            .values(account_id=account.id, day=day, action=action, count=1)
            .on_conflict_do_update(
                index_elements=[table.c.account_id, table.c.day, table.c.action],
                set_={"count": table.c.count + 1},
                where=table.c.count < limit,
            )
            .returning(table.c.count)
        )

        try:
            result = await self.db.execute(stmt)
            used = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Usage counter update failed for account {account.id}: {e}", exc_info=True)
            raise QuotaUnavailableError(str(e)) from e

        if used is None:
            logger.info(f"Account {account.id} reached daily {action} limit ({limit})")
            return QuotaDecision(allowed=False, premium_like=False, used=limit, limit=limit)

        return QuotaDecision(allowed=True, premium_like=False, used=used, limit=limit)

    async def usage_today(
        self,
        account_id: str,
        action: str = ACTION_CHAT_MESSAGE,
        day: Optional[date] = None,
    ) -> int:
        """Return how many units the account has spent on the given day."""
        day = day or utc_today()
        try:
            result = await self.db.execute(
                select(DailyUsage.count).where(
                    DailyUsage.account_id == account_id,
                    DailyUsage.day == day,
                    DailyUsage.action == action,
                )
            )
        except SQLAlchemyError as e:
            raise QuotaUnavailableError(str(e)) from e
        return result.scalar_one_or_none() or 0
