"""
Reconciles remote usage into local rows.

One refresh = resolve the account's variant, fetch from the provider, then
upsert the month's UsageHistory, replace its UsageDetail rows, update profile
metadata and clear `last_error`, all in one transaction. A provider failure
records `last_error`, leaves the stored usage as it was, and propagates.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quota_app.accounts import (
    AccountVariant,
    ClaudeCodeAccount,
    ClaudeWebAccount,
    CopilotAccount,
    join_orgs,
    to_variant,
)
from quota_app.usage_store import (
    get_account,
    record_account_error,
    replace_usage_details,
    update_account,
    upsert_usage,
)
from quota_app.vault import CredentialVault
from quota_library import ProviderSet
from quota_library.error_handler import (
    CredentialInvalidError,
    ProviderError,
    TransientFetchError,
)
from quota_library.providers.claude_code_provider import get_budget
from quota_library.providers.copilot_fallback import resolve_copilot_usage
from quota_library.providers.copilot_provider import (
    compute_percentage,
    detect_plan,
    get_plan_limit,
)
from quota_library.usage_types import (
    BillingPeriod,
    ModelUsage,
    TokenSet,
    VerificationResult,
)

logger = logging.getLogger(__name__)

NO_CREDENTIAL_MESSAGE = "No credential stored"


class AccountNotFoundError(LookupError):
    pass


@dataclass(slots=True)
class RefreshOutcome:
    account_id: int
    account_type: str
    ok: bool
    skipped: bool = False
    source: str | None = None
    percentage: float | None = None
    error: str | None = None


@dataclass(slots=True)
class _UsageWrite:
    values: dict[str, Any]
    models: list[ModelUsage]
    profile: dict[str, Any]


class UsageReconciler:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        providers: ProviderSet,
        *,
        today: Callable[[], date] = date.today,
    ):
        self._session_maker = session_maker
        self._vault = vault
        self._providers = providers
        self._today = today

    async def refresh_account(self, account_id: int) -> RefreshOutcome:
        async with self._session_maker() as session:
            row = await get_account(session, account_id)
            if row is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            account_type = row.account_type
            variant = to_variant(row, self._vault)

        if not _has_credential(variant):
            async with self._session_maker() as session:
                await record_account_error(session, account_id, NO_CREDENTIAL_MESSAGE)
            logger.warning("Skipping account %d: no usable credential", account_id)
            return RefreshOutcome(
                account_id=account_id,
                account_type=account_type,
                ok=False,
                skipped=True,
                error=NO_CREDENTIAL_MESSAGE,
            )

        period = BillingPeriod.current(self._today())
        try:
            write = await self._fetch(variant, period)
        except (httpx.RequestError, ValueError) as e:
            error = TransientFetchError(f"Usage fetch failed: {str(e) or type(e).__name__}")
            await self._record_failure(account_id, error)
            raise error from e
        except ProviderError as e:
            await self._record_failure(account_id, e)
            raise

        async with self._session_maker() as session:
            history_id = await upsert_usage(session, account_id, period, write.values)
            await replace_usage_details(session, history_id, write.models)
            await update_account(
                session,
                account_id,
                last_error=None,
                last_refreshed_at=datetime.utcnow(),
                **write.profile,
            )
            await session.commit()

        logger.info(
            "Refreshed account %d (%s) from %s: %.1f%%",
            account_id,
            account_type,
            write.values.get("source"),
            write.values.get("percentage", 0.0),
        )
        return RefreshOutcome(
            account_id=account_id,
            account_type=account_type,
            ok=True,
            source=write.values.get("source"),
            percentage=write.values.get("percentage"),
        )

    async def verify_credential(
        self, account_type: str, secret: str, identity: str | None = None
    ) -> VerificationResult:
        try:
            provider = self._providers.for_type(account_type)
        except ValueError as e:
            return VerificationResult(valid=False, error=str(e))
        if not secret:
            return VerificationResult(valid=False, error="Credential is empty")
        return await provider.verify(secret, identity)

    async def _record_failure(self, account_id: int, error: ProviderError) -> None:
        async with self._session_maker() as session:
            await record_account_error(session, account_id, str(error))
        logger.warning("Refresh of account %d failed: %s", account_id, error)

    async def _fetch(self, variant: AccountVariant, period: BillingPeriod) -> _UsageWrite:
        if isinstance(variant, CopilotAccount):
            return await self._fetch_copilot(variant, period)
        if isinstance(variant, ClaudeCodeAccount):
            return await self._fetch_claude_code(variant, period)
        return await self._fetch_claude_web(variant, period)

    async def _fetch_copilot(self, account: CopilotAccount, period: BillingPeriod) -> _UsageWrite:
        provider = self._providers.copilot
        user = await provider.get_user(account.token)
        login = user.get("login") or account.username

        resolution = await resolve_copilot_usage(
            provider,
            account.token,
            login,
            period,
            plan=account.plan,
            billing_org=account.billing_org,
            orgs=account.orgs,
        )

        seat_plan = None
        if resolution.billing_org:
            seat_plan = await provider.get_org_seat_plan(
                account.token, resolution.billing_org, login
            )
        usage = resolution.usage
        plan = detect_plan(usage.gross_quantity, account.plan, seat_plan)
        if plan != account.plan:
            logger.info("Account %d Copilot plan detected as %s (was %s)", account.id, plan, account.plan)
        plan_limit = get_plan_limit(plan)

        profile: dict[str, Any] = {
            "display_name": user.get("name") or login,
            "avatar_url": user.get("avatar_url"),
            "copilot_plan": plan,
            "billing_org": resolution.billing_org,
        }
        if resolution.orgs is not None:
            profile["github_orgs"] = join_orgs(resolution.orgs)

        return _UsageWrite(
            values={
                "gross_quantity": usage.gross_quantity,
                "included_quantity": usage.included_quantity,
                "net_amount": usage.net_amount,
                "plan_limit": plan_limit,
                "percentage": compute_percentage(usage.gross_quantity, plan_limit),
                "source": resolution.source,
            },
            models=usage.models,
            profile=profile,
        )

    async def _fetch_claude_code(
        self, account: ClaudeCodeAccount, period: BillingPeriod
    ) -> _UsageWrite:
        usage = await self._providers.claude_code.fetch_usage(
            account.admin_key, account.user_email, period
        )
        budget = get_budget(account.plan, account.monthly_budget)
        cost = usage.total_cost_usd
        return _UsageWrite(
            values={
                "gross_quantity": cost,
                "net_amount": cost,
                "plan_limit": budget,
                "percentage": compute_percentage(cost, budget),
                "sessions": usage.sessions,
                "lines_added": usage.lines_added,
                "lines_removed": usage.lines_removed,
                "commits": usage.commits,
                "pull_requests": usage.pull_requests,
                "source": "admin:usage_report",
            },
            models=usage.models,
            profile={},
        )

    async def _fetch_claude_web(
        self, account: ClaudeWebAccount, period: BillingPeriod
    ) -> _UsageWrite:
        tokens = await self._providers.tokens.get_valid_token(
            account.access_token, account.refresh_token, account.token_expires_at
        )
        if tokens.refreshed:
            await self._store_tokens(account.id, tokens)

        provider = self._providers.claude_web
        try:
            usage = await provider.fetch_usage(tokens.access_token)
        except CredentialInvalidError:
            # Revoked before its recorded expiry; one forced refresh, then give up
            if tokens.refreshed or not tokens.refresh_token:
                raise
            tokens = await self._providers.tokens.refresh_access_token(tokens.refresh_token)
            await self._store_tokens(account.id, tokens)
            usage = await provider.fetch_usage(tokens.access_token)

        return _UsageWrite(
            values={
                "plan_limit": 100,
                "percentage": usage.weekly_usage_pct,
                "net_amount": usage.extra_usage_spent,
                "session_usage_pct": usage.session_usage_pct,
                "session_reset_at": usage.session_reset_at,
                "weekly_usage_pct": usage.weekly_usage_pct,
                "weekly_reset_at": usage.weekly_reset_at,
                "weekly_opus_usage_pct": usage.weekly_opus_usage_pct,
                "weekly_opus_reset_at": usage.weekly_opus_reset_at,
                "extra_usage_enabled": usage.extra_usage_enabled,
                "extra_usage_spent": usage.extra_usage_spent,
                "extra_usage_limit": usage.extra_usage_limit,
                "extra_usage_balance": usage.extra_usage_balance,
                "source": "oauth:usage",
            },
            models=[],
            profile={},
        )

    async def _store_tokens(self, account_id: int, tokens: TokenSet) -> None:
        """Persist a rotated pair before the new access token is used."""
        async with self._session_maker() as session:
            await update_account(
                session,
                account_id,
                pat_token=self._vault.encrypt(tokens.access_token),
                refresh_token=self._vault.encrypt(tokens.refresh_token),
                token_expires_at=tokens.expires_at,
            )
            await session.commit()
        logger.info("Stored refreshed OAuth tokens for account %d", account_id)


def _has_credential(variant: AccountVariant) -> bool:
    if isinstance(variant, ClaudeWebAccount):
        return bool(variant.access_token or variant.refresh_token)
    if isinstance(variant, CopilotAccount):
        return bool(variant.token)
    return bool(variant.admin_key)
