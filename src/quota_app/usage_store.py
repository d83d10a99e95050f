import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from quota_app.db_models import Account, UsageDetail, UsageHistory
from quota_library.usage_types import BillingPeriod, ModelUsage

logger = logging.getLogger(__name__)

USAGE_FIELDS = (
    "gross_quantity",
    "included_quantity",
    "net_amount",
    "plan_limit",
    "percentage",
    "sessions",
    "lines_added",
    "lines_removed",
    "commits",
    "pull_requests",
    "session_usage_pct",
    "session_reset_at",
    "weekly_usage_pct",
    "weekly_reset_at",
    "weekly_opus_usage_pct",
    "weekly_opus_reset_at",
    "extra_usage_enabled",
    "extra_usage_spent",
    "extra_usage_limit",
    "extra_usage_balance",
    "source",
)

ACCOUNT_UPDATE_FIELDS = {
    "display_name",
    "avatar_url",
    "pat_token",
    "oauth_token",
    "refresh_token",
    "token_expires_at",
    "copilot_plan",
    "claude_plan",
    "billing_org",
    "github_orgs",
    "last_error",
    "last_refreshed_at",
}


def _dialect_insert(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite_insert
    if dialect == "postgresql":
        return pg_insert
    return None


async def upsert_usage(
    session: AsyncSession,
    account_id: int,
    period: BillingPeriod,
    values: dict[str, Any],
) -> int:
    """
    Insert or overwrite the (account, year, month) usage row; returns its id.

    Unknown keys in `values` are ignored. The caller commits.
    """
    row_values = {k: v for k, v in values.items() if k in USAGE_FIELDS}
    row_values["fetched_at"] = datetime.utcnow()

    insert_fn = _dialect_insert(session)
    if insert_fn is not None:
        stmt = insert_fn(UsageHistory).values(
            account_id=account_id, year=period.year, month=period.month, **row_values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "year", "month"],
            set_=row_values,
        )
        await session.execute(stmt)
    else:
        existing = await _get_history(session, account_id, period)
        if existing is None:
            session.add(
                UsageHistory(
                    account_id=account_id, year=period.year, month=period.month, **row_values
                )
            )
        else:
            for key, value in row_values.items():
                setattr(existing, key, value)
        await session.flush()

    history = await _get_history(session, account_id, period)
    return history.id


async def _get_history(
    session: AsyncSession, account_id: int, period: BillingPeriod
) -> UsageHistory | None:
    return await session.scalar(
        select(UsageHistory)
        .where(UsageHistory.account_id == account_id)
        .where(UsageHistory.year == period.year)
        .where(UsageHistory.month == period.month)
        .execution_options(populate_existing=True)
    )


async def replace_usage_details(
    session: AsyncSession, usage_history_id: int, models: list[ModelUsage]
) -> None:
    await session.execute(
        delete(UsageDetail).where(UsageDetail.usage_history_id == usage_history_id)
    )
    for item in models:
        session.add(
            UsageDetail(
                usage_history_id=usage_history_id,
                model=item.model,
                quantity=item.quantity,
                price_per_unit=item.price_per_unit,
                net_amount=item.net_amount,
                input_tokens=item.input_tokens,
                output_tokens=item.output_tokens,
                cache_read_tokens=item.cache_read_tokens,
                cache_creation_tokens=item.cache_creation_tokens,
            )
        )
    await session.flush()


async def get_usage(
    session: AsyncSession, account_id: int, period: BillingPeriod
) -> UsageHistory | None:
    return await _get_history(session, account_id, period)


async def get_latest_usage(session: AsyncSession, account_id: int) -> UsageHistory | None:
    return await session.scalar(
        select(UsageHistory)
        .where(UsageHistory.account_id == account_id)
        .order_by(UsageHistory.year.desc(), UsageHistory.month.desc())
        .limit(1)
    )


async def get_usage_details(session: AsyncSession, usage_history_id: int) -> list[UsageDetail]:
    result = await session.scalars(
        select(UsageDetail)
        .where(UsageDetail.usage_history_id == usage_history_id)
        .order_by(UsageDetail.id.asc())
    )
    return list(result)


async def get_account(session: AsyncSession, account_id: int) -> Account | None:
    return await session.get(Account, account_id)


async def list_accounts(
    session: AsyncSession, *, include_paused: bool = True
) -> list[Account]:
    stmt = select(Account).order_by(Account.is_favorite.desc(), Account.id.asc())
    if not include_paused:
        stmt = stmt.where(Account.is_paused.is_(False))
    return list(await session.scalars(stmt))


async def list_refreshable_account_ids(session: AsyncSession) -> list[int]:
    result = await session.scalars(
        select(Account.id).where(Account.is_paused.is_(False)).order_by(Account.id.asc())
    )
    return list(result)


async def update_account(session: AsyncSession, account_id: int, **fields: Any) -> None:
    """Apply profile/credential fields to an account. The caller commits."""
    unknown = set(fields) - ACCOUNT_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported account fields: {sorted(unknown)}")
    account = await session.get(Account, account_id)
    if account is None:
        return
    for key, value in fields.items():
        setattr(account, key, value)
    account.updated_at = datetime.utcnow()
    await session.flush()


async def record_account_error(session: AsyncSession, account_id: int, message: str | None) -> None:
    await update_account(session, account_id, last_error=message)
    await session.commit()
