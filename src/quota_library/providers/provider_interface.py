# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..error_handler import ProviderHTTPError
from ..usage_types import BillingPeriod, VerificationResult

lib_logger = logging.getLogger("quota_library")


class UsageProviderInterface(ABC):
    """
    An interface for subscription providers whose usage we monitor.

    Each provider knows how to call its HTTP API and normalize the response
    into one of the shapes in `usage_types`.
    """

    account_type: str = ""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    @abstractmethod
    async def verify(
        self, credential: str, identity: Optional[str] = None
    ) -> VerificationResult:
        """
        Checks that a credential can read usage data.

        Args:
            credential: The decrypted token or key.
            identity: Provider-specific identity (GitHub login, user email).

        Returns:
            VerificationResult; never raises for a rejected credential.
        """
        pass

    @abstractmethod
    async def fetch_usage(
        self, credential: str, identity: Optional[str], period: BillingPeriod
    ) -> Any:
        """
        Fetches the provider's normalized usage for a billing period.

        Raises:
            ProviderError subclasses for anything other than "no data".
        """
        pass

    async def _get_json(
        self,
        url: str,
        *,
        headers: Dict[str, str],
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """GET a JSON document, raising ProviderHTTPError on non-2xx."""
        response = await self._client.get(url, headers=headers, params=params)
        if not response.is_success:
            raise ProviderHTTPError.from_response(response)
        return response.json()
