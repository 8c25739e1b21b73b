"""
AccountRepository for database operations on the Account model
"""

from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from config.settings import PLAN_FREE, PLAN_PREMIUM
from database_models import Account


class AccountRepository:
    """
    Repository class for Account database operations.
    Encapsulates all database logic for the Account model.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_account_by_id(self, account_id: str) -> Optional[Account]:
        """
        Retrieve an account by ID.

        Args:
            account_id: Opaque account identifier issued by the identity provider

        Returns:
            Account object if found, None otherwise
        """
        result = await self.db.execute(
            select(Account).where(Account.id == account_id)
        )
        return result.scalar_one_or_none()

    async def list_accounts(self, limit: int = 200, offset: int = 0) -> List[Account]:
        """Return accounts ordered by creation time (newest first)."""
        result = await self.db.execute(
            select(Account)
            .order_by(Account.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def create_account(self, account_data: dict) -> Account:
        """
        Create a new account row.

        Args:
            account_data: Dictionary containing account data. Must include:
                - id: str
                Optional:
                - email: str
                - plan: str (defaults to "free")
                - is_admin: bool (defaults to False)
                - trial_until: datetime (optional)

        Returns:
            Created Account object
        """
        email = account_data.get("email")
        account = Account(
            id=account_data["id"],
            email=email.lower() if email else None,
            plan=account_data.get("plan", PLAN_FREE),
            is_admin=account_data.get("is_admin", False),
            trial_until=account_data.get("trial_until"),
        )
        self.db.add(account)
        await self.db.flush()
        await self.db.refresh(account)
        return account

    async def update_account(self, account: Account, updates: dict) -> Account:
        """
        Update account fields.

        Args:
            account: Account object to update
            updates: Dictionary of fields to update (e.g., {"plan": "premium"})

        Returns:
            Updated Account object
        """
        for key, value in updates.items():
            if hasattr(account, key):
                setattr(account, key, value)

        await self.db.flush()
        await self.db.refresh(account)
        return account

    async def mark_premium(self, account_id: str) -> int:
        """
        Set plan=premium and clear trial_until in a single UPDATE statement.

        Re-applying it leaves the row unchanged, so repeated deliveries for
        the same account are harmless.

        Returns:
            Number of rows matched (0 when the account does not exist)
        """
        result = await self.db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(plan=PLAN_PREMIUM, trial_until=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
