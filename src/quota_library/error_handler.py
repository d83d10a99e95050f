# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from typing import Optional

import httpx

MAX_ERROR_BODY_CHARS = 200

def truncate_body(text: Optional[str], limit: int = MAX_ERROR_BODY_CHARS) -> str:
    """Collapse whitespace and cut a response body down for logs and errors."""
    if not text:
        return ""
    collapsed = " ".join(text.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[:limit] + "..."

class ProviderError(Exception):
    """Base class for every failure raised by a usage provider."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

class ProviderHTTPError(ProviderError):
    """A provider endpoint answered with a non-success HTTP status."""

    def __init__(self, status_code: int, body: str = "", *, url: str = ""):
        self.status_code = status_code
        self.body = truncate_body(body)
        self.url = url
        message = f"HTTP {status_code}"
        if self.body:
            message = f"{message}: {self.body}"
        super().__init__(message)

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ProviderHTTPError":
        return cls(response.status_code, response.text, url=str(response.request.url))

class CredentialInvalidError(ProviderError):
    """The provider rejected the stored token outright."""

class BillingInaccessibleError(ProviderError):
    """The token is valid for identity but lacks billing scope on every source."""

class TransientFetchError(ProviderError):
    """Every usage source failed for network or server-side reasons."""

class CredentialNeedsReauthError(ProviderError):
    """
    The refresh token itself is no longer accepted (`invalid_grant`).

    Terminal: the user has to re-authenticate out of band, retrying is pointless.
    """

class MissingCredentialError(ProviderError):
    """No usable credential is stored (empty, or it failed to decrypt)."""

def is_access_denied(status_code: int) -> bool:
    """Checks if an HTTP status means the token cannot see the resource."""
    return status_code in (401, 403, 404, 422)

def is_unrecoverable_error(e: Exception) -> bool:
    """
    Checks if the exception is a non-retriable credential problem.
    These are errors that will not resolve on their own.
    """
    return isinstance(
        e, (CredentialInvalidError, CredentialNeedsReauthError, MissingCredentialError)
    )
