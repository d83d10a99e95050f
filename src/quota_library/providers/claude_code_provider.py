# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/quota_library/providers/claude_code_provider.py
"""
Claude Code usage via the Anthropic Admin analytics API.

Requires an Admin API key (sk-ant-admin...). The report is daily, so a month
is assembled from one paginated request per day, at most
DAY_FETCH_CONCURRENCY days in flight. A failing day is logged and counts as
an empty day rather than failing the whole month.
"""

import asyncio
import calendar
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from ..error_handler import CredentialInvalidError, ProviderHTTPError, TransientFetchError
from ..usage_types import BillingPeriod, ClaudeCodeUsage, ModelUsage, VerificationResult
from .provider_interface import UsageProviderInterface

lib_logger = logging.getLogger("quota_library")

ANTHROPIC_API = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
USAGE_REPORT_PATH = "/v1/organizations/usage_report/claude_code"

DAY_FETCH_CONCURRENCY = 5
PAGE_LIMIT = 1000
MAX_PAGES_PER_DAY = 50

# Default monthly budget in USD per plan
CLAUDE_CODE_BUDGETS: Dict[str, float] = {
    "api": 100,
    "pro": 20,
    "max": 100,
    "team": 150,
    "enterprise": 500,
}
DEFAULT_BUDGET = 100.0

def get_budget(plan: Optional[str], monthly_budget: Optional[float] = None) -> float:
    if monthly_budget:
        return float(monthly_budget)
    return float(CLAUDE_CODE_BUDGETS.get(plan or "", DEFAULT_BUDGET))

def days_to_fetch(period: BillingPeriod, today: date) -> List[date]:
    """Every day of the month up to today; the whole month if it is in the past."""
    days_in_month = calendar.monthrange(period.year, period.month)[1]
    if (period.year, period.month) == (today.year, today.month):
        last_day = today.day
    elif (period.year, period.month) > (today.year, today.month):
        return []
    else:
        last_day = days_in_month
    return [date(period.year, period.month, day) for day in range(1, last_day + 1)]

def parse_claude_code_data(
    records: List[Dict[str, Any]], user_email: Optional[str] = None
) -> ClaudeCodeUsage:
    """Aggregate daily analytics records into a monthly summary."""
    if user_email:
        wanted = user_email.lower()
        records = [
            r
            for r in records
            if str(((r.get("actor") or {}).get("email_address") or "")).lower() == wanted
        ]

    usage = ClaudeCodeUsage()
    models: Dict[str, ModelUsage] = {}
    users = set()

    for record in records:
        metrics = record.get("core_metrics") or {}
        lines = metrics.get("lines_of_code") or {}
        usage.sessions += int(metrics.get("num_sessions") or 0)
        usage.lines_added += int(lines.get("added") or 0)
        usage.lines_removed += int(lines.get("removed") or 0)
        usage.commits += int(metrics.get("commits_by_claude_code") or 0)
        usage.pull_requests += int(metrics.get("pull_requests_by_claude_code") or 0)

        email = (record.get("actor") or {}).get("email_address")
        if email:
            users.add(email)

        for breakdown in record.get("model_breakdown") or []:
            cost_cents = float((breakdown.get("estimated_cost") or {}).get("amount") or 0)
            tokens = breakdown.get("tokens") or {}
            usage.total_cost_cents += cost_cents

            name = breakdown.get("model") or "unknown"
            entry = models.setdefault(name, ModelUsage(model=name))
            entry.net_amount += cost_cents / 100
            entry.input_tokens += int(tokens.get("input") or 0)
            entry.output_tokens += int(tokens.get("output") or 0)
            entry.cache_read_tokens += int(tokens.get("cache_read") or 0)
            entry.cache_creation_tokens += int(tokens.get("cache_creation") or 0)

    for entry in models.values():
        entry.quantity = entry.input_tokens + entry.output_tokens

    usage.models = list(models.values())
    usage.user_count = len(users)
    return usage

class ClaudeCodeProvider(UsageProviderInterface):
    account_type = "claude_code"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_base: str = ANTHROPIC_API,
        *,
        concurrency: int = DAY_FETCH_CONCURRENCY,
        today: Callable[[], date] = date.today,
    ):
        super().__init__(client)
        self.api_base = api_base.rstrip("/")
        self._concurrency = max(1, concurrency)
        self._today = today

    def _headers(self, admin_key: str) -> Dict[str, str]:
        return {"anthropic-version": ANTHROPIC_VERSION, "x-api-key": admin_key}

    async def fetch_day(self, admin_key: str, day: date) -> List[Dict[str, Any]]:
        """All records for one day, following `next_page` while `has_more`."""
        records: List[Dict[str, Any]] = []
        page: Optional[str] = None
        for _ in range(MAX_PAGES_PER_DAY):
            params: Dict[str, Any] = {"starting_at": day.isoformat(), "limit": PAGE_LIMIT}
            if page:
                params["page"] = page
            data = await self._get_json(
                f"{self.api_base}{USAGE_REPORT_PATH}",
                headers=self._headers(admin_key),
                params=params,
            )
            records.extend(data.get("data") or [])
            page = data.get("next_page")
            if not data.get("has_more") or not page:
                break
        return records

    async def _fetch_day_safely(
        self, admin_key: str, day: date, semaphore: asyncio.Semaphore
    ) -> Union[List[Dict[str, Any]], Exception]:
        async with semaphore:
            try:
                return await self.fetch_day(admin_key, day)
            except (ProviderHTTPError, httpx.RequestError, ValueError) as e:
                lib_logger.warning(f"[Claude Code] Skip {day.isoformat()}: {e}")
                return e

    async def fetch_month_records(
        self, admin_key: str, period: BillingPeriod
    ) -> List[Dict[str, Any]]:
        """
        Records for every fetchable day of the period.

        Individual failed days contribute nothing. Only when *every* day
        failed is the month treated as a failure, so a revoked key is not
        mistaken for a month without activity.
        """
        semaphore = asyncio.Semaphore(self._concurrency)
        days = days_to_fetch(period, self._today())
        results = await asyncio.gather(
            *(self._fetch_day_safely(admin_key, day, semaphore) for day in days)
        )

        failures = [r for r in results if isinstance(r, Exception)]
        if days and len(failures) == len(days):
            last = failures[-1]
            if isinstance(last, ProviderHTTPError) and last.status_code in (401, 403):
                raise CredentialInvalidError(
                    f"Anthropic rejected the Admin API key (HTTP {last.status_code})"
                ) from last
            raise TransientFetchError(f"Every day of {period.year}-{period.month:02d} failed: {last}")

        return [
            record
            for day_records in results
            if not isinstance(day_records, Exception)
            for record in day_records
        ]

    async def fetch_usage(
        self, credential: str, identity: Optional[str], period: BillingPeriod
    ) -> ClaudeCodeUsage:
        records = await self.fetch_month_records(credential, period)
        return parse_claude_code_data(records, identity or None)

    async def verify(
        self, credential: str, identity: Optional[str] = None
    ) -> VerificationResult:
        try:
            await self._get_json(
                f"{self.api_base}{USAGE_REPORT_PATH}",
                headers=self._headers(credential),
                params={"starting_at": self._today().isoformat(), "limit": 1},
            )
        except ProviderHTTPError as e:
            return VerificationResult(valid=False, error=f"{e.status_code}: {e.body}")
        except httpx.RequestError as e:
            return VerificationResult(valid=False, error=str(e) or type(e).__name__)
        return VerificationResult(valid=True, source="admin:usage_report")
