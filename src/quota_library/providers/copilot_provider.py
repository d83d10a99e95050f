# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/quota_library/providers/copilot_provider.py
"""
GitHub Copilot premium-request usage.

Billing visibility on GitHub is split between personal and organization
endpoints, and which of them a token can read depends on its scopes and on
the organization's policy. This module exposes each endpoint as a *probe*
returning a tri-state ProbeResult; `copilot_fallback` decides the order.

Endpoints (query params `year`, `month`, optional `user`):
- /users/{user}/settings/billing/premium_request/usage
- /users/{user}/settings/billing/usage
- /organizations/{org}/settings/billing/premium_request/usage
- /organizations/{org}/settings/billing/usage
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..error_handler import (
    CredentialInvalidError,
    ProviderHTTPError,
    is_access_denied,
)
from ..usage_types import (
    BillingPeriod,
    CopilotUsage,
    ModelUsage,
    ProbeResult,
    ProbeStatus,
    VerificationResult,
)
from .provider_interface import UsageProviderInterface

lib_logger = logging.getLogger("quota_library")

GITHUB_API = "https://api.github.com"
GITHUB_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}

# Monthly premium-request allowance per plan
PLAN_LIMITS: Dict[str, int] = {
    "free": 50,
    "pro": 300,
    "pro_plus": 1500,
    "business": 300,
    "enterprise": 1000,
}
DEFAULT_PLAN = "pro"
ORG_PLANS = ("business", "enterprise")
PERSONAL_PLAN_ORDER = ("free", "pro", "pro_plus")

DEFAULT_PRICE_PER_UNIT = 0.04
COPILOT_PRODUCT = "copilot"


def get_plan_limit(plan: Optional[str]) -> int:
    return PLAN_LIMITS.get(plan or DEFAULT_PLAN, PLAN_LIMITS[DEFAULT_PLAN])


def validate_plan(plan: Optional[str]) -> Optional[str]:
    return plan if plan in PLAN_LIMITS else None


def _round_pct(value: float) -> float:
    return round(value * 10) / 10


def parse_usage_data(data: Dict[str, Any], plan_limit: int) -> CopilotUsage:
    """
    Normalize a billing response into CopilotUsage.

    Only line items for the Copilot product count. The included (free)
    quantity is recovered from the discount: discountAmount / pricePerUnit.
    """
    items = [
        item
        for item in (data or {}).get("usageItems") or []
        if str(item.get("product") or "").lower() == COPILOT_PRODUCT
    ]

    usage = CopilotUsage()
    for item in items:
        quantity = float(item.get("grossQuantity") or item.get("quantity") or 0)
        discount = float(item.get("discountAmount") or 0)
        price_per_unit = float(item.get("pricePerUnit") or DEFAULT_PRICE_PER_UNIT)
        net = float(item.get("netAmount") or 0)

        usage.gross_quantity += quantity
        usage.included_quantity += discount / price_per_unit if price_per_unit > 0 else 0
        usage.net_amount += net

        if item.get("model") or item.get("sku"):
            usage.models.append(
                ModelUsage(
                    model=item.get("model") or item.get("sku") or "Unknown",
                    quantity=quantity,
                    price_per_unit=price_per_unit,
                    net_amount=net,
                )
            )

    usage.percentage = compute_percentage(usage.gross_quantity, plan_limit)
    return usage


def compute_percentage(gross_quantity: float, plan_limit: float) -> float:
    if plan_limit <= 0:
        return 0.0
    return _round_pct(gross_quantity / plan_limit * 100)


def detect_plan(
    gross_quantity: float, current_plan: Optional[str], seat_plan: Optional[str] = None
) -> str:
    """
    Infer the Copilot plan from observed usage and organization seat metadata.

    An organization seat is authoritative. Without one, a personal plan is
    only ever upgraded: usage above the current allowance means the account
    must be on the smallest plan whose allowance covers it.
    """
    if seat_plan in ORG_PLANS:
        return seat_plan
    plan = validate_plan(current_plan) or DEFAULT_PLAN
    if plan in ORG_PLANS or gross_quantity <= PLAN_LIMITS[plan]:
        return plan

    current_rank = PERSONAL_PLAN_ORDER.index(plan)
    for candidate in PERSONAL_PLAN_ORDER[current_rank + 1 :]:
        if gross_quantity <= PLAN_LIMITS[candidate]:
            return candidate
    return PERSONAL_PLAN_ORDER[-1]


class CopilotProvider(UsageProviderInterface):
    account_type = "copilot"

    def __init__(self, client: httpx.AsyncClient, api_base: str = GITHUB_API):
        super().__init__(client)
        self.api_base = api_base.rstrip("/")

    def _headers(self, token: str) -> Dict[str, str]:
        return {**GITHUB_HEADERS, "Authorization": f"Bearer {token}"}

    # =========================================================================
    # IDENTITY
    # =========================================================================

    async def get_user(self, token: str) -> Dict[str, Any]:
        """Get authenticated user info; a 401 means the token itself is bad."""
        try:
            return await self._get_json(f"{self.api_base}/user", headers=self._headers(token))
        except ProviderHTTPError as e:
            if e.status_code == 401:
                raise CredentialInvalidError("GitHub rejected the token (HTTP 401)") from e
            raise

    async def get_user_orgs(self, token: str) -> List[str]:
        """Logins of the user's organizations; any failure yields []."""
        try:
            orgs = await self._get_json(
                f"{self.api_base}/user/orgs",
                headers=self._headers(token),
                params={"per_page": 100},
            )
        except (ProviderHTTPError, httpx.RequestError, ValueError) as e:
            lib_logger.debug(f"Could not list GitHub organizations: {e}")
            return []
        return [org["login"] for org in orgs or [] if org.get("login")]

    async def get_org_seat_plan(self, token: str, org: str, username: str) -> Optional[str]:
        """Copilot seat plan (`business`/`enterprise`) the org assigns to the user."""
        try:
            seat = await self._get_json(
                f"{self.api_base}/orgs/{org}/members/{username}/copilot",
                headers=self._headers(token),
            )
        except (ProviderHTTPError, httpx.RequestError, ValueError) as e:
            lib_logger.debug(f"No Copilot seat metadata for '{username}' in '{org}': {e}")
            return None
        plan_type = str((seat or {}).get("plan_type") or "").lower()
        return plan_type if plan_type in ORG_PLANS else None

    # =========================================================================
    # USAGE PROBES
    # =========================================================================

    async def _probe(
        self,
        url: str,
        token: str,
        params: Dict[str, Any],
        source: str,
        plan_limit: int,
    ) -> ProbeResult:
        try:
            data = await self._get_json(url, headers=self._headers(token), params=params)
        except ProviderHTTPError as e:
            status = ProbeStatus.NO_ACCESS if is_access_denied(e.status_code) else ProbeStatus.NETWORK_ERROR
            lib_logger.debug(f"Copilot source '{source}' unavailable: {e}")
            return ProbeResult(status=status, source=source, error=str(e))
        except (httpx.RequestError, ValueError) as e:
            lib_logger.debug(f"Copilot source '{source}' failed: {e!r}")
            return ProbeResult(
                status=ProbeStatus.NETWORK_ERROR, source=source, error=str(e) or type(e).__name__
            )

        return ProbeResult(
            status=ProbeStatus.DATA,
            source=source,
            usage=parse_usage_data(data, plan_limit),
        )

    async def probe_user_premium_usage(
        self, token: str, username: str, period: BillingPeriod, plan_limit: int
    ) -> ProbeResult:
        return await self._probe(
            f"{self.api_base}/users/{username}/settings/billing/premium_request/usage",
            token,
            period.as_params(),
            "user:premium_request",
            plan_limit,
        )

    async def probe_user_billing_usage(
        self, token: str, username: str, period: BillingPeriod, plan_limit: int
    ) -> ProbeResult:
        return await self._probe(
            f"{self.api_base}/users/{username}/settings/billing/usage",
            token,
            period.as_params(),
            "user:billing",
            plan_limit,
        )

    async def probe_org_premium_usage(
        self,
        token: str,
        org: str,
        period: BillingPeriod,
        plan_limit: int,
        user: Optional[str] = None,
    ) -> ProbeResult:
        params = period.as_params()
        source = f"org:{org}:premium_request"
        if user:
            params["user"] = user
            source = f"{source}:user"
        return await self._probe(
            f"{self.api_base}/organizations/{org}/settings/billing/premium_request/usage",
            token,
            params,
            source,
            plan_limit,
        )

    async def probe_org_billing_usage(
        self, token: str, org: str, period: BillingPeriod, plan_limit: int
    ) -> ProbeResult:
        return await self._probe(
            f"{self.api_base}/organizations/{org}/settings/billing/usage",
            token,
            period.as_params(),
            f"org:{org}:billing",
            plan_limit,
        )

    # =========================================================================
    # INTERFACE
    # =========================================================================

    async def fetch_usage(
        self,
        credential: str,
        identity: Optional[str],
        period: BillingPeriod,
        plan_limit: int = PLAN_LIMITS[DEFAULT_PLAN],
    ) -> CopilotUsage:
        """Personal premium-request usage only; the full chain is in copilot_fallback."""
        username = identity or (await self.get_user(credential))["login"]
        data = await self._get_json(
            f"{self.api_base}/users/{username}/settings/billing/premium_request/usage",
            headers=self._headers(credential),
            params=period.as_params(),
        )
        return parse_usage_data(data, plan_limit)

    async def verify(
        self, credential: str, identity: Optional[str] = None
    ) -> VerificationResult:
        """
        Checks the token identifies a user and can read some billing source:
        personal billing first, then each of the user's organizations.
        """
        try:
            user = await self.get_user(credential)
        except CredentialInvalidError:
            return VerificationResult(
                valid=False, error="Invalid token. Make sure it's a valid Fine-grained PAT."
            )
        except (ProviderHTTPError, httpx.RequestError) as e:
            return VerificationResult(valid=False, error=f"GitHub /user failed: {e}")

        username = identity or user.get("login", "")
        period = BillingPeriod.current()
        limit = PLAN_LIMITS[DEFAULT_PLAN]

        personal = await self.probe_user_billing_usage(credential, username, period, limit)
        if personal.answered:
            return VerificationResult(valid=True, source=personal.source)

        for org in await self.get_user_orgs(credential):
            org_result = await self.probe_org_billing_usage(credential, org, period, limit)
            if org_result.answered:
                return VerificationResult(valid=True, source=org_result.source)

        return VerificationResult(
            valid=False,
            error=(
                "Token works but cannot access billing data. Make sure the PAT has "
                f"Plan: Read permission. ({personal.error})"
            ),
        )
