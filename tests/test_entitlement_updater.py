"""
Tests for the privileged premium upgrade
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from crud.account import AccountRepository
from services.entitlement_service import EntitlementUpdater, UpgradeResult, is_premium_like
from tests.conftest import insert_account, load_account


async def test_upgrade_sets_premium_and_clears_trial(test_sessionmaker):
    await insert_account(test_sessionmaker, "u1", trial_until=datetime.now(timezone.utc) + timedelta(days=2))

    result = await EntitlementUpdater(test_sessionmaker).apply_upgrade("u1")

    assert result.ok is True
    account = await load_account(test_sessionmaker, "u1")
    assert account.plan == "premium"
    assert account.trial_until is None
    assert is_premium_like(account) is True


async def test_upgrade_is_idempotent(test_sessionmaker):
    await insert_account(test_sessionmaker, "u1")
    updater = EntitlementUpdater(test_sessionmaker)

    first = await updater.apply_upgrade("u1")
    once = await load_account(test_sessionmaker, "u1")
    second = await updater.apply_upgrade("u1")
    twice = await load_account(test_sessionmaker, "u1")

    assert first.status == second.status == UpgradeResult.OK
    assert (once.plan, once.trial_until, once.is_admin) == (twice.plan, twice.trial_until, twice.is_admin)


async def test_upgrade_leaves_admin_flag_and_other_accounts_alone(test_sessionmaker):
    await insert_account(test_sessionmaker, "u1")
    await insert_account(test_sessionmaker, "u2")

    await EntitlementUpdater(test_sessionmaker).apply_upgrade("u1")

    assert (await load_account(test_sessionmaker, "u1")).is_admin is False
    assert (await load_account(test_sessionmaker, "u2")).plan == "free"


async def test_upgrade_unknown_account_reports_not_found(test_sessionmaker):
    result = await EntitlementUpdater(test_sessionmaker).apply_upgrade("ghost")

    assert result.ok is False
    assert result.status == UpgradeResult.NOT_FOUND


async def test_store_failure_is_reported_not_raised(test_sessionmaker):
    await insert_account(test_sessionmaker, "u1")
    failure = OperationalError("UPDATE accounts", {}, Exception("database is locked"))

    with patch.object(AccountRepository, "mark_premium", side_effect=failure):
        result = await EntitlementUpdater(test_sessionmaker).apply_upgrade("u1")

    assert result.status == UpgradeResult.STORE_ERROR
    assert "database is locked" in result.error
    assert (await load_account(test_sessionmaker, "u1")).plan == "free"
