# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/quota_library/providers/claude_web_provider.py
"""
Claude Pro/Max subscription usage via the OAuth usage endpoint.

Response blocks:
- five_hour: rolling session window (utilization %, resets_at)
- seven_day: weekly window
- seven_day_opus: optional Opus-only weekly window
- extra_usage: overage credits, amounts in cents
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..error_handler import CredentialInvalidError, ProviderHTTPError
from ..usage_types import BillingPeriod, ClaudeWebUsage, VerificationResult
from .provider_interface import UsageProviderInterface

lib_logger = logging.getLogger("quota_library")

CLAUDE_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
OAUTH_BETA_HEADER = "oauth-2025-04-20"


def _window(data: Dict[str, Any], key: str) -> tuple:
    block = data.get(key)
    if isinstance(block, dict) and isinstance(block.get("utilization"), (int, float)):
        return float(block["utilization"]), block.get("resets_at") or None
    return 0.0, None


def parse_claude_web_usage(data: Dict[str, Any]) -> ClaudeWebUsage:
    usage = ClaudeWebUsage()
    usage.session_usage_pct, usage.session_reset_at = _window(data, "five_hour")
    usage.weekly_usage_pct, usage.weekly_reset_at = _window(data, "seven_day")
    usage.weekly_opus_usage_pct, usage.weekly_opus_reset_at = _window(data, "seven_day_opus")

    extra = data.get("extra_usage")
    if isinstance(extra, dict):
        usage.extra_usage_enabled = bool(extra.get("is_enabled"))
        usage.extra_usage_spent = float(extra.get("used_credits") or 0) / 100
        usage.extra_usage_limit = float(extra.get("monthly_limit") or 0) / 100
        usage.extra_usage_balance = usage.extra_usage_limit - usage.extra_usage_spent
    return usage


class ClaudeWebProvider(UsageProviderInterface):
    account_type = "claude_web"

    def __init__(self, client: httpx.AsyncClient, usage_url: str = CLAUDE_USAGE_URL):
        super().__init__(client)
        self.usage_url = usage_url

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token.strip()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "anthropic-beta": OAUTH_BETA_HEADER,
        }

    async def get_raw_usage(self, access_token: str) -> Dict[str, Any]:
        try:
            return await self._get_json(self.usage_url, headers=self._headers(access_token))
        except ProviderHTTPError as e:
            if e.status_code in (401, 403):
                raise CredentialInvalidError(
                    "Token expired or invalid. Re-login with `claude` CLI."
                ) from e
            raise

    async def fetch_usage(
        self,
        credential: str,
        identity: Optional[str] = None,
        period: Optional[BillingPeriod] = None,
    ) -> ClaudeWebUsage:
        return parse_claude_web_usage(await self.get_raw_usage(credential))

    async def verify(
        self, credential: str, identity: Optional[str] = None
    ) -> VerificationResult:
        try:
            await self.get_raw_usage(credential)
        except CredentialInvalidError:
            return VerificationResult(valid=False, error="Token expired or invalid")
        except ProviderHTTPError as e:
            return VerificationResult(valid=False, error=f"API returned {e}")
        except httpx.RequestError as e:
            return VerificationResult(valid=False, error=str(e) or type(e).__name__)
        return VerificationResult(valid=True, source="oauth:usage")
