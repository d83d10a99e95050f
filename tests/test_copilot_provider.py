import httpx
import pytest

from quota_library.providers.copilot_provider import (
    CopilotProvider,
    compute_percentage,
    detect_plan,
    parse_usage_data,
)
from quota_library.usage_types import BillingPeriod, ProbeStatus

PERIOD = BillingPeriod(2026, 3)


def test_parse_usage_keeps_only_copilot_items() -> None:
    data = {
        "usageItems": [
            {
                "product": "Copilot",
                "model": "Claude Sonnet 4",
                "grossQuantity": 90,
                "pricePerUnit": 0.04,
                "discountAmount": 3.2,
                "netAmount": 0.4,
            },
            {"product": "copilot", "sku": "gpt-4.1", "quantity": 30, "netAmount": 0},
            {"product": "actions", "grossQuantity": 500, "netAmount": 12},
        ]
    }

    usage = parse_usage_data(data, 300)

    assert usage.gross_quantity == 120
    assert usage.included_quantity == pytest.approx(80)
    assert usage.net_amount == pytest.approx(0.4)
    assert usage.percentage == 40.0
    assert [m.model for m in usage.models] == ["Claude Sonnet 4", "gpt-4.1"]


def test_parse_usage_with_no_items_is_empty() -> None:
    usage = parse_usage_data({}, 300)

    assert usage.gross_quantity == 0
    assert usage.percentage == 0
    assert usage.models == []


def test_percentage_rounds_to_one_decimal() -> None:
    assert compute_percentage(100, 300) == 33.3
    assert compute_percentage(1, 0) == 0.0


@pytest.mark.parametrize(
    ("gross", "current", "seat", "expected"),
    [
        (120, "pro", None, "pro"),
        (400, "pro", None, "pro_plus"),
        (60, "free", None, "pro"),
        (2000, "free", None, "pro_plus"),
        (10, "pro_plus", None, "pro_plus"),
        (10, "pro", "business", "business"),
        (10, "business", None, "business"),
        (10, None, None, "pro"),
    ],
)
def test_detect_plan(gross, current, seat, expected) -> None:
    assert detect_plan(gross, current, seat) == expected


@pytest.mark.asyncio
async def test_probe_classifies_responses(make_client) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "premium_request" in request.url.path:
            return httpx.Response(403, json={"message": "Resource not accessible"})
        return httpx.Response(502, text="upstream")

    provider = CopilotProvider(make_client(handler))

    denied = await provider.probe_user_premium_usage("tok", "octocat", PERIOD, 300)
    failed = await provider.probe_user_billing_usage("tok", "octocat", PERIOD, 300)

    assert denied.status == ProbeStatus.NO_ACCESS
    assert failed.status == ProbeStatus.NETWORK_ERROR
    assert not denied.answered


@pytest.mark.asyncio
async def test_org_premium_probe_passes_user_filter(make_client) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, json={"usageItems": []})

    provider = CopilotProvider(make_client(handler))
    result = await provider.probe_org_premium_usage("tok", "acme", PERIOD, 300, user="octocat")

    assert result.status == ProbeStatus.DATA
    assert result.source == "org:acme:premium_request:user"
    assert seen[0].params["user"] == "octocat"
    assert seen[0].params["year"] == "2026"
    assert seen[0].params["month"] == "3"


@pytest.mark.asyncio
async def test_user_orgs_failure_yields_empty_list(make_client) -> None:
    provider = CopilotProvider(make_client(lambda request: httpx.Response(500)))

    assert await provider.get_user_orgs("tok") == []


@pytest.mark.asyncio
async def test_verify_falls_back_to_org_billing(make_client) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/user":
            return httpx.Response(200, json={"login": "octocat"})
        if path == "/user/orgs":
            return httpx.Response(200, json=[{"login": "acme"}])
        if path == "/organizations/acme/settings/billing/usage":
            return httpx.Response(200, json={"usageItems": []})
        return httpx.Response(404)

    provider = CopilotProvider(make_client(handler))
    result = await provider.verify("tok")

    assert result.valid is True
    assert result.source == "org:acme:billing"


@pytest.mark.asyncio
async def test_verify_rejects_bad_token(make_client) -> None:
    provider = CopilotProvider(make_client(lambda request: httpx.Response(401)))

    result = await provider.verify("tok")

    assert result.valid is False
    assert "Invalid token" in result.error
