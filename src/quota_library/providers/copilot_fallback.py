# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/quota_library/providers/copilot_fallback.py
"""
Copilot billing source resolution.

Probes billing endpoints in a fixed order and stops at the first one that
reports non-zero usage:

1. The known billing org: premium usage filtered to the user, the same
   endpoint unfiltered (some enterprise orgs reject user filters), then the
   org's general billing usage.
2. The user's personal premium-request usage.
3. The user's personal general billing usage.
4. For business/enterprise plans, or when a known billing org came up empty:
   every other org of the user with the same three probes. The first org
   with usage is reported as the discovered billing org so later refreshes
   start there.
5. Nothing non-zero: the first source that *answered* wins with zero usage,
   unless some other source failed for network/server reasons. In that case,
   or when no source answered at all, the resolution fails and the caller
   keeps its last-known usage.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..error_handler import BillingInaccessibleError, TransientFetchError
from ..usage_types import BillingPeriod, CopilotUsage, ProbeResult, ProbeStatus
from .copilot_provider import ORG_PLANS, CopilotProvider, get_plan_limit

lib_logger = logging.getLogger("quota_library")


@dataclass
class ChainResolution:
    usage: CopilotUsage
    source: str
    billing_org: Optional[str] = None
    discovered_org: Optional[str] = None
    orgs: Optional[List[str]] = None
    attempts: List[ProbeResult] = field(default_factory=list)


class _ChainState:
    def __init__(self):
        self.attempts: List[ProbeResult] = []
        self.first_answer: Optional[ProbeResult] = None

    def record(self, result: ProbeResult) -> bool:
        """Track a probe; True when it ends the chain."""
        self.attempts.append(result)
        if result.answered and self.first_answer is None:
            self.first_answer = result
        return result.has_usage


async def _probe_org(
    provider: CopilotProvider,
    state: _ChainState,
    token: str,
    org: str,
    username: str,
    period: BillingPeriod,
    plan_limit: int,
) -> Optional[ProbeResult]:
    probes = (
        lambda: provider.probe_org_premium_usage(token, org, period, plan_limit, user=username),
        lambda: provider.probe_org_premium_usage(token, org, period, plan_limit),
        lambda: provider.probe_org_billing_usage(token, org, period, plan_limit),
    )
    for probe in probes:
        result = await probe()
        if state.record(result):
            return result
    return None


async def resolve_copilot_usage(
    provider: CopilotProvider,
    token: str,
    username: str,
    period: BillingPeriod,
    *,
    plan: Optional[str],
    billing_org: Optional[str] = None,
    orgs: Optional[List[str]] = None,
) -> ChainResolution:
    """
    Find a billing source for `username` and return its usage.

    Raises:
        BillingInaccessibleError: every source refused access.
        TransientFetchError: no source reported usage and at least one
            failed for network/server reasons.
    """
    plan_limit = get_plan_limit(plan)
    state = _ChainState()
    tried_orgs = set()

    # 1. Known billing org
    if billing_org:
        tried_orgs.add(billing_org.lower())
        hit = await _probe_org(provider, state, token, billing_org, username, period, plan_limit)
        if hit:
            return ChainResolution(
                usage=hit.usage, source=hit.source, billing_org=billing_org, attempts=state.attempts
            )

    # 2./3. Personal endpoints
    for probe in (provider.probe_user_premium_usage, provider.probe_user_billing_usage):
        result = await probe(token, username, period, plan_limit)
        if state.record(result):
            return ChainResolution(
                usage=result.usage,
                source=result.source,
                billing_org=billing_org,
                attempts=state.attempts,
            )

    # 4. Organization scan
    fetched_orgs: Optional[List[str]] = None
    if plan in ORG_PLANS or billing_org:
        if orgs is None:
            fetched_orgs = await provider.get_user_orgs(token)
            orgs = fetched_orgs
        for org in orgs:
            if org.lower() in tried_orgs:
                continue
            tried_orgs.add(org.lower())
            hit = await _probe_org(provider, state, token, org, username, period, plan_limit)
            if hit:
                lib_logger.info(f"Discovered Copilot billing org '{org}' for '{username}'")
                return ChainResolution(
                    usage=hit.usage,
                    source=hit.source,
                    billing_org=org,
                    discovered_org=org,
                    orgs=fetched_orgs,
                    attempts=state.attempts,
                )

    errors = "; ".join(f"{a.source}: {a.error}" for a in state.attempts if a.error)

    # 5. Answered but zero everywhere; a source that failed may hold the real usage
    if state.first_answer is not None:
        if any(a.status == ProbeStatus.NETWORK_ERROR for a in state.attempts):
            raise TransientFetchError(
                f"Copilot usage for '{username}' is zero on reachable sources "
                f"but other sources failed ({errors})"
            )
        return ChainResolution(
            usage=state.first_answer.usage or CopilotUsage(),
            source=state.first_answer.source,
            billing_org=billing_org,
            orgs=fetched_orgs,
            attempts=state.attempts,
        )

    if all(a.status == ProbeStatus.NO_ACCESS for a in state.attempts):
        raise BillingInaccessibleError(
            f"Token cannot access Copilot billing for '{username}'. "
            f"Make sure it has Plan: Read permission. ({errors})"
        )
    raise TransientFetchError(f"All Copilot billing sources failed for '{username}' ({errors})")
