# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from typing import Dict, Type

from .claude_code_provider import ClaudeCodeProvider
from .claude_web_provider import ClaudeWebProvider
from .copilot_provider import CopilotProvider
from .provider_interface import UsageProviderInterface

PROVIDER_PLUGINS: Dict[str, Type[UsageProviderInterface]] = {
    CopilotProvider.account_type: CopilotProvider,
    ClaudeCodeProvider.account_type: ClaudeCodeProvider,
    ClaudeWebProvider.account_type: ClaudeWebProvider,
}


def get_provider_class(account_type: str) -> Type[UsageProviderInterface]:
    """
    Returns the provider class for a given account type.
    """
    provider_class = PROVIDER_PLUGINS.get((account_type or "").lower())
    if not provider_class:
        raise ValueError(f"Unknown account type: {account_type}")
    return provider_class


__all__ = [
    "PROVIDER_PLUGINS",
    "ClaudeCodeProvider",
    "ClaudeWebProvider",
    "CopilotProvider",
    "UsageProviderInterface",
    "get_provider_class",
]
