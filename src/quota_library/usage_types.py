# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions shared by the usage providers.

Every provider normalizes its API response into one of the usage shapes
below, so the persistence layer never sees raw provider JSON.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import List, Optional


# =============================================================================
# BILLING PERIOD
# =============================================================================


@dataclass(frozen=True)
class BillingPeriod:
    """A calendar month, the unit usage is stored and queried by."""

    year: int
    month: int

    @classmethod
    def current(cls, today: Optional[date] = None) -> "BillingPeriod":
        today = today or date.today()
        return cls(year=today.year, month=today.month)

    def as_params(self) -> dict:
        return {"year": self.year, "month": self.month}


# =============================================================================
# USAGE SHAPES
# =============================================================================


@dataclass
class ModelUsage:
    """Per-model line of a usage breakdown."""

    model: str
    quantity: float = 0.0
    price_per_unit: float = 0.0
    net_amount: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0


@dataclass
class CopilotUsage:
    """Premium-request usage for one GitHub user and month."""

    gross_quantity: float = 0.0
    included_quantity: float = 0.0
    net_amount: float = 0.0
    percentage: float = 0.0
    models: List[ModelUsage] = field(default_factory=list)


@dataclass
class ClaudeCodeUsage:
    """Monthly aggregate of the Claude Code analytics report."""

    total_cost_cents: float = 0.0
    sessions: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    commits: int = 0
    pull_requests: int = 0
    user_count: int = 0
    models: List[ModelUsage] = field(default_factory=list)

    @property
    def total_cost_usd(self) -> float:
        return self.total_cost_cents / 100


@dataclass
class ClaudeWebUsage:
    """Rolling-window utilization of a Claude Pro/Max subscription."""

    session_usage_pct: float = 0.0
    session_reset_at: Optional[str] = None
    weekly_usage_pct: float = 0.0
    weekly_reset_at: Optional[str] = None
    weekly_opus_usage_pct: float = 0.0
    weekly_opus_reset_at: Optional[str] = None
    extra_usage_enabled: bool = False
    extra_usage_spent: float = 0.0
    extra_usage_limit: float = 0.0
    extra_usage_balance: float = 0.0


# =============================================================================
# PROBE / VERIFY RESULTS
# =============================================================================


class ProbeStatus(str, Enum):
    """Outcome of asking one usage source."""

    DATA = "data"  # Source answered; usage may legitimately be zero
    NO_ACCESS = "no_access"  # Token cannot see this source
    NETWORK_ERROR = "network_error"  # Timeout, 5xx, rate limit


@dataclass
class ProbeResult:
    """Tri-state result of a single source in a fallback chain."""

    status: ProbeStatus
    source: str
    usage: Optional[CopilotUsage] = None
    error: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.status == ProbeStatus.DATA

    @property
    def has_usage(self) -> bool:
        return self.answered and self.usage is not None and self.usage.gross_quantity > 0


@dataclass
class VerificationResult:
    valid: bool
    source: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TokenSet:
    """An OAuth access/refresh pair and its absolute expiry (epoch seconds)."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[float]
    refreshed: bool = False
