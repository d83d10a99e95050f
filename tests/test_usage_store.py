import pytest
from sqlalchemy import func, select

from quota_app.db_models import Account, UsageDetail, UsageHistory
from quota_app.usage_store import (
    get_latest_usage,
    get_usage_details,
    list_refreshable_account_ids,
    replace_usage_details,
    upsert_usage,
)
from quota_library.usage_types import BillingPeriod, ModelUsage

PERIOD = BillingPeriod(2026, 3)


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_last_write_wins(session_maker, add_account) -> None:
    account = await add_account()

    async with session_maker() as session:
        first_id = await upsert_usage(
            session, account.id, PERIOD, {"gross_quantity": 10, "percentage": 3.3, "source": "a"}
        )
        await session.commit()
        second_id = await upsert_usage(
            session, account.id, PERIOD, {"gross_quantity": 120, "percentage": 40.0, "source": "b"}
        )
        await session.commit()

    async with session_maker() as session:
        count = await session.scalar(select(func.count()).select_from(UsageHistory))
        row = await get_latest_usage(session, account.id)

    assert first_id == second_id
    assert count == 1
    assert row.gross_quantity == 120
    assert row.percentage == 40.0
    assert row.source == "b"


@pytest.mark.asyncio
async def test_latest_usage_is_most_recent_period(session_maker, add_account) -> None:
    account = await add_account()

    async with session_maker() as session:
        await upsert_usage(session, account.id, BillingPeriod(2025, 12), {"percentage": 90})
        await upsert_usage(session, account.id, BillingPeriod(2026, 1), {"percentage": 5})
        await session.commit()
        latest = await get_latest_usage(session, account.id)

    assert (latest.year, latest.month) == (2026, 1)


@pytest.mark.asyncio
async def test_details_are_fully_replaced(session_maker, add_account) -> None:
    account = await add_account()

    async with session_maker() as session:
        history_id = await upsert_usage(session, account.id, PERIOD, {"gross_quantity": 3})
        await replace_usage_details(
            session, history_id, [ModelUsage(model="a", quantity=1), ModelUsage(model="b", quantity=2)]
        )
        await session.commit()
        await replace_usage_details(session, history_id, [ModelUsage(model="c", quantity=7)])
        await session.commit()
        details = await get_usage_details(session, history_id)

    assert [(d.model, d.quantity) for d in details] == [("c", 7)]

    async with session_maker() as session:
        await replace_usage_details(session, history_id, [])
        await session.commit()
        assert await get_usage_details(session, history_id) == []


@pytest.mark.asyncio
async def test_deleting_account_cascades(session_maker, add_account) -> None:
    account = await add_account()

    async with session_maker() as session:
        history_id = await upsert_usage(session, account.id, PERIOD, {"gross_quantity": 3})
        await replace_usage_details(session, history_id, [ModelUsage(model="a", quantity=3)])
        await session.commit()

    async with session_maker() as session:
        row = await session.get(Account, account.id)
        await session.delete(row)
        await session.commit()

    async with session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(UsageHistory)) == 0
        assert await session.scalar(select(func.count()).select_from(UsageDetail)) == 0


@pytest.mark.asyncio
async def test_paused_accounts_are_not_refreshable(session_maker, add_account) -> None:
    active = await add_account("active")
    await add_account("paused", is_paused=True)

    async with session_maker() as session:
        assert await list_refreshable_account_ids(session) == [active.id]
