# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/quota_library/token_lifecycle.py
"""
OAuth access/refresh token lifecycle for Claude Pro/Max accounts.

Access tokens are short-lived; the manager renews them proactively once the
current time enters a safety buffer before expiry. A rejected refresh token
(`invalid_grant`) is terminal and surfaces as CredentialNeedsReauthError.

Persisting a rotated pair is the caller's job and must happen before the new
access token is used, so a crash never strands an unrecorded pair.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from .error_handler import (
    CredentialNeedsReauthError,
    ProviderHTTPError,
    truncate_body,
)
from .usage_types import TokenSet

lib_logger = logging.getLogger("quota_library")

# =============================================================================
# OAUTH CONFIGURATION
# =============================================================================

CLAUDE_TOKEN_URL = "https://platform.claude.com/v1/oauth/token"
CLAUDE_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
CLAUDE_SCOPES = "user:profile user:inference user:sessions:claude_code user:mcp_servers"

# Token refresh buffer in seconds (refresh tokens this far before expiry)
DEFAULT_REFRESH_EXPIRY_BUFFER: int = 5 * 60

DEFAULT_EXPIRES_IN: int = 3600


class TokenLifecycleManager:
    """
    Tracks OAuth token expiry and exchanges refresh tokens for new pairs.

    Subclasses may override:
        - TOKEN_URL, CLIENT_ID, SCOPES: the OAuth endpoint and client
        - REFRESH_EXPIRY_BUFFER_SECONDS: time buffer before token expiry
    """

    TOKEN_URL = CLAUDE_TOKEN_URL
    CLIENT_ID = CLAUDE_CLIENT_ID
    SCOPES = CLAUDE_SCOPES
    REFRESH_EXPIRY_BUFFER_SECONDS = DEFAULT_REFRESH_EXPIRY_BUFFER

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._max_retries = max(1, max_retries)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock

    def needs_refresh(
        self, expires_at: Optional[float], now: Optional[float] = None
    ) -> bool:
        """True when no expiry is known or `now` is inside the safety buffer."""
        if not expires_at:
            return True
        current = self._clock() if now is None else now
        return current >= expires_at - self.REFRESH_EXPIRY_BUFFER_SECONDS

    async def get_valid_token(
        self,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[float],
    ) -> TokenSet:
        """Return the current pair untouched, or a freshly refreshed one."""
        if access_token and not self.needs_refresh(expires_at):
            return TokenSet(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                refreshed=False,
            )

        if not refresh_token:
            raise CredentialNeedsReauthError(
                "Token expired and no refresh token is stored. Re-login with `claude` CLI."
            )

        return await self.refresh_access_token(refresh_token)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Exchange a refresh token for a new access/refresh pair."""
        new_token_data: Optional[Dict[str, Any]] = None
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                response = await self._client.post(
                    self.TOKEN_URL,
                    json={
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "client_id": self.CLIENT_ID,
                        "scope": self.SCOPES,
                    },
                    headers={"Content-Type": "application/json"},
                )
            except (httpx.RequestError, httpx.TimeoutException) as e:
                last_error = e
                lib_logger.warning(
                    f"Network error refreshing OAuth token (attempt {attempt + 1}/{self._max_retries}): {e}"
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(self._retry_backoff_seconds * (2**attempt))
                    continue
                raise

            if response.is_success:
                new_token_data = response.json()
                break

            error_code = _extract_oauth_error(response.text)
            if error_code == "invalid_grant":
                lib_logger.info("OAuth refresh token rejected (invalid_grant); re-auth required.")
                raise CredentialNeedsReauthError(
                    "Session expired. Please re-login with `claude` CLI."
                )

            last_error = ProviderHTTPError.from_response(response)
            if response.status_code >= 500 and attempt < self._max_retries - 1:
                lib_logger.warning(
                    f"Token endpoint returned HTTP {response.status_code}, retrying "
                    f"(attempt {attempt + 1}/{self._max_retries})"
                )
                await asyncio.sleep(self._retry_backoff_seconds * (2**attempt))
                continue
            raise last_error

        if new_token_data is None:
            raise last_error or ProviderHTTPError(0, "Token refresh failed after all retries")

        access_token = new_token_data.get("access_token")
        if not access_token:
            raise ProviderHTTPError(200, "Token response did not include an access_token")

        expires_in = new_token_data.get("expires_in") or DEFAULT_EXPIRES_IN
        lib_logger.debug(f"Refreshed OAuth access token (expires in {expires_in}s).")
        return TokenSet(
            access_token=access_token,
            refresh_token=new_token_data.get("refresh_token") or refresh_token,
            expires_at=self._clock() + float(expires_in),
            refreshed=True,
        )


def _extract_oauth_error(body: str) -> str:
    """Pull the OAuth `error` code out of a token endpoint error body."""
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        return "invalid_grant" if "invalid_grant" in (body or "").lower() else ""
    if not isinstance(parsed, dict):
        return ""
    error = parsed.get("error")
    if isinstance(error, dict):
        # Anthropic-style envelope: {"error": {"type": ..., "message": ...}}
        text = json.dumps(error).lower()
        return "invalid_grant" if "invalid_grant" in text else truncate_body(str(error.get("type", "")))
    return str(error or parsed.get("error_description") or "")
