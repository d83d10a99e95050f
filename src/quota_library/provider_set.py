# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from dataclasses import dataclass

import httpx

from .providers import UsageProviderInterface, get_provider_class
from .providers.claude_code_provider import ClaudeCodeProvider
from .providers.claude_web_provider import ClaudeWebProvider
from .providers.copilot_provider import CopilotProvider
from .token_lifecycle import TokenLifecycleManager

DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0


@dataclass
class ProviderSet:
    """The adapters one process uses, all sharing a single HTTP client."""

    copilot: CopilotProvider
    claude_code: ClaudeCodeProvider
    claude_web: ClaudeWebProvider
    tokens: TokenLifecycleManager

    @classmethod
    def from_client(cls, client: httpx.AsyncClient) -> "ProviderSet":
        return cls(
            copilot=CopilotProvider(client),
            claude_code=ClaudeCodeProvider(client),
            claude_web=ClaudeWebProvider(client),
            tokens=TokenLifecycleManager(client),
        )

    def for_type(self, account_type: str) -> UsageProviderInterface:
        """The adapter instance serving `account_type`; ValueError if unknown."""
        provider_class = get_provider_class(account_type)
        for provider in (self.copilot, self.claude_code, self.claude_web):
            if isinstance(provider, provider_class):
                return provider
        raise ValueError(f"No provider configured for account type: {account_type}")


def create_http_client(timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    """Shared client; the timeout bounds every outbound provider call."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        headers={"User-Agent": "kuota/1.0"},
        follow_redirects=True,
    )
