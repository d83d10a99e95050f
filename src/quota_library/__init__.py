# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .error_handler import (
    BillingInaccessibleError,
    CredentialInvalidError,
    CredentialNeedsReauthError,
    MissingCredentialError,
    ProviderError,
    ProviderHTTPError,
    TransientFetchError,
)
from .provider_set import ProviderSet, create_http_client
from .providers import PROVIDER_PLUGINS
from .rate_limiter import FixedWindowRateLimiter
from .token_lifecycle import TokenLifecycleManager
from .ttl_store import TTLStore
from .usage_types import BillingPeriod, TokenSet, VerificationResult

__all__ = [
    "BillingInaccessibleError",
    "BillingPeriod",
    "CredentialInvalidError",
    "CredentialNeedsReauthError",
    "FixedWindowRateLimiter",
    "MissingCredentialError",
    "PROVIDER_PLUGINS",
    "ProviderError",
    "ProviderHTTPError",
    "ProviderSet",
    "TTLStore",
    "TokenLifecycleManager",
    "TokenSet",
    "TransientFetchError",
    "VerificationResult",
    "create_http_client",
]
