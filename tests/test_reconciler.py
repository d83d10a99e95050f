import time
from datetime import date

import httpx
import pytest

from quota_app.db_models import Account
from quota_app.reconciler import AccountNotFoundError, UsageReconciler
from quota_app.usage_store import get_latest_usage, get_usage, get_usage_details, upsert_usage
from quota_library import ProviderSet
from quota_library.error_handler import (
    CredentialInvalidError,
    ProviderHTTPError,
    TransientFetchError,
)
from quota_library.providers import ClaudeCodeProvider, ClaudeWebProvider, CopilotProvider
from quota_library.token_lifecycle import TokenLifecycleManager
from quota_library.usage_types import BillingPeriod

TODAY = date(2026, 3, 15)
PERIOD = BillingPeriod(2026, 3)


def _copilot_usage(quantity: float) -> dict:
    return {
        "usageItems": [
            {"product": "copilot", "model": "gpt-4.1", "grossQuantity": quantity, "pricePerUnit": 0.04}
        ]
    }


def _reconciler(session_maker, vault, client: httpx.AsyncClient) -> UsageReconciler:
    return UsageReconciler(
        session_maker, vault, ProviderSet.from_client(client), today=lambda: TODAY
    )


@pytest.mark.asyncio
async def test_copilot_pro_happy_path(session_maker, vault, add_account, make_client) -> None:
    account = await add_account("octocat", copilot_plan="pro")

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/user":
            return httpx.Response(200, json={"login": "octocat", "name": "The Octocat"})
        if path == "/users/octocat/settings/billing/premium_request/usage":
            return httpx.Response(200, json=_copilot_usage(120))
        return httpx.Response(404)

    outcome = await _reconciler(session_maker, vault, make_client(handler)).refresh_account(
        account.id
    )

    assert outcome.ok is True
    assert outcome.percentage == 40.0
    async with session_maker() as session:
        usage = await get_usage(session, account.id, PERIOD)
        details = await get_usage_details(session, usage.id)
        row = await session.get(Account, account.id)

    assert usage.gross_quantity == 120
    assert usage.plan_limit == 300
    assert usage.percentage == 40.0
    assert usage.source == "user:premium_request"
    assert [d.model for d in details] == ["gpt-4.1"]
    assert row.copilot_plan == "pro"
    assert row.display_name == "The Octocat"
    assert row.last_error is None
    assert row.last_refreshed_at is not None


@pytest.mark.asyncio
async def test_copilot_discovers_billing_org(session_maker, vault, add_account, make_client) -> None:
    account = await add_account("octocat", copilot_plan="business")

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/user":
            return httpx.Response(200, json={"login": "octocat"})
        if path == "/user/orgs":
            return httpx.Response(200, json=[{"login": "alpha"}, {"login": "beta"}])
        if path == "/organizations/beta/settings/billing/premium_request/usage":
            return httpx.Response(200, json=_copilot_usage(150))
        if path == "/orgs/beta/members/octocat/copilot":
            return httpx.Response(200, json={"plan_type": "business"})
        return httpx.Response(404)

    outcome = await _reconciler(session_maker, vault, make_client(handler)).refresh_account(
        account.id
    )

    async with session_maker() as session:
        row = await session.get(Account, account.id)

    assert outcome.ok is True
    assert outcome.percentage == 50.0
    assert row.billing_org == "beta"
    assert row.github_orgs == "alpha,beta"
    assert row.copilot_plan == "business"


@pytest.mark.asyncio
async def test_failure_records_error_and_keeps_usage(
    session_maker, vault, add_account, make_client
) -> None:
    account = await add_account("octocat")
    async with session_maker() as session:
        await upsert_usage(session, account.id, PERIOD, {"gross_quantity": 55, "percentage": 18.3})
        await session.commit()

    reconciler = _reconciler(
        session_maker, vault, make_client(lambda request: httpx.Response(401))
    )

    with pytest.raises(CredentialInvalidError):
        await reconciler.refresh_account(account.id)

    async with session_maker() as session:
        row = await session.get(Account, account.id)
        usage = await get_latest_usage(session, account.id)

    assert "401" in row.last_error
    assert usage.gross_quantity == 55


@pytest.mark.asyncio
async def test_org_outage_does_not_zero_stored_usage(
    session_maker, vault, add_account, make_client
) -> None:
    account = await add_account("octocat", copilot_plan="business", billing_org="acme")
    async with session_maker() as session:
        await upsert_usage(session, account.id, PERIOD, {"gross_quantity": 250, "percentage": 83.3})
        await session.commit()

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/user":
            return httpx.Response(200, json={"login": "octocat"})
        if path == "/user/orgs":
            return httpx.Response(200, json=[{"login": "acme"}])
        if path.startswith("/organizations/acme/"):
            return httpx.Response(502, text="Bad Gateway")
        return httpx.Response(200, json={"usageItems": []})

    reconciler = _reconciler(session_maker, vault, make_client(handler))

    with pytest.raises(TransientFetchError):
        await reconciler.refresh_account(account.id)

    async with session_maker() as session:
        row = await session.get(Account, account.id)
        usage = await get_latest_usage(session, account.id)

    assert usage.gross_quantity == 250
    assert row.last_error


@pytest.mark.asyncio
async def test_undecryptable_credential_is_skipped(session_maker, vault, add_account, make_client) -> None:
    account = await add_account("octocat", token=None)
    async with session_maker() as session:
        row = await session.get(Account, account.id)
        row.pat_token = "deadbeef:deadbeef:deadbeef"
        await session.commit()

    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    outcome = await _reconciler(session_maker, vault, make_client(handler)).refresh_account(
        account.id
    )

    async with session_maker() as session:
        row = await session.get(Account, account.id)

    assert outcome.skipped is True
    assert outcome.ok is False
    assert row.last_error == "No credential stored"
    assert calls == []


@pytest.mark.asyncio
async def test_refreshed_tokens_are_stored_before_usage_call(
    session_maker, vault, add_account, make_client
) -> None:
    account = await add_account(
        "claude-user",
        token="old-access",
        account_type="claude_web",
        refresh_token=vault.encrypt("old-refresh"),
        token_expires_at=time.time() - 60,
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth/token":
            return httpx.Response(
                200,
                json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600},
            )
        return httpx.Response(500, text="usage endpoint down")

    reconciler = _reconciler(session_maker, vault, make_client(handler))

    with pytest.raises(ProviderHTTPError):
        await reconciler.refresh_account(account.id)

    async with session_maker() as session:
        row = await session.get(Account, account.id)

    assert vault.decrypt(row.pat_token) == "new-access"
    assert vault.decrypt(row.refresh_token) == "new-refresh"
    assert row.token_expires_at > time.time() + 3000


@pytest.mark.asyncio
async def test_claude_web_usage_is_stored(session_maker, vault, add_account, make_client) -> None:
    account = await add_account(
        "claude-user",
        token="access",
        account_type="claude_web",
        token_expires_at=time.time() + 7200,
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/oauth/usage"
        return httpx.Response(
            200,
            json={
                "five_hour": {"utilization": 20, "resets_at": "2026-03-15T18:00:00Z"},
                "seven_day": {"utilization": 65, "resets_at": "2026-03-20T00:00:00Z"},
                "seven_day_opus": {"utilization": 10, "resets_at": "2026-03-21T00:00:00Z"},
                "extra_usage": {"is_enabled": True, "used_credits": 1250, "monthly_limit": 5000},
            },
        )

    outcome = await _reconciler(session_maker, vault, make_client(handler)).refresh_account(
        account.id
    )

    async with session_maker() as session:
        usage = await get_latest_usage(session, account.id)

    assert outcome.ok is True
    assert usage.session_usage_pct == 20
    assert usage.weekly_usage_pct == 65
    assert usage.percentage == 65
    assert usage.weekly_opus_reset_at == "2026-03-21T00:00:00Z"
    assert usage.extra_usage_spent == 12.5
    assert usage.net_amount == 12.5


@pytest.mark.asyncio
async def test_claude_code_usage_against_budget(session_maker, vault, add_account, make_client) -> None:
    account = await add_account(
        "team-admin", token="sk-ant-admin", account_type="claude_code", claude_plan="team"
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["starting_at"] == "2026-03-01":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "actor": {"email_address": "dev@example.com"},
                            "core_metrics": {"num_sessions": 4},
                            "model_breakdown": [
                                {"model": "claude-sonnet-4", "estimated_cost": {"amount": 3000}}
                            ],
                        }
                    ],
                    "has_more": False,
                },
            )
        return httpx.Response(200, json={"data": [], "has_more": False})

    client = make_client(handler)
    providers = ProviderSet(
        copilot=CopilotProvider(client),
        claude_code=ClaudeCodeProvider(client, today=lambda: TODAY),
        claude_web=ClaudeWebProvider(client),
        tokens=TokenLifecycleManager(client),
    )
    outcome = await UsageReconciler(
        session_maker, vault, providers, today=lambda: TODAY
    ).refresh_account(account.id)

    async with session_maker() as session:
        usage = await get_latest_usage(session, account.id)

    assert outcome.ok is True
    assert usage.net_amount == 30.0
    assert usage.plan_limit == 150
    assert usage.percentage == 20.0
    assert usage.sessions == 4


@pytest.mark.asyncio
async def test_unknown_account_raises(session_maker, vault, make_client) -> None:
    reconciler = _reconciler(session_maker, vault, make_client(lambda r: httpx.Response(500)))

    with pytest.raises(AccountNotFoundError):
        await reconciler.refresh_account(999)


@pytest.mark.asyncio
async def test_verify_credential_delegates(session_maker, vault, make_client) -> None:
    reconciler = _reconciler(
        session_maker, vault, make_client(lambda r: httpx.Response(200, json={"five_hour": {}}))
    )

    assert (await reconciler.verify_credential("claude_web", "token")).valid is True
    assert (await reconciler.verify_credential("bogus", "token")).valid is False
    assert (await reconciler.verify_credential("copilot", "")).valid is False
