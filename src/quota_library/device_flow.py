# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/quota_library/device_flow.py
"""
GitHub OAuth Device Flow for adding Copilot accounts without a PAT.

Device Flow steps:
1. Request device code from GitHub
2. Show user code and verification URL to the user
3. Poll for authorization completion
4. Hand the resulting GitHub token to the account layer

Active flows live in a TTLStore (15 minutes), the same store abstraction the
rate limiter uses.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from .error_handler import ProviderHTTPError
from .ttl_store import TTLStore

lib_logger = logging.getLogger("quota_library")

DEVICE_CODE_URL = "https://github.com/login/device/code"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEVICE_SCOPE = "read:user user"

FLOW_TTL_SECONDS = 15 * 60

# Poll errors that keep a flow waiting instead of failing it
PENDING_ERRORS = {"authorization_pending", "slow_down"}

FLOW_PENDING = "pending"
FLOW_COMPLETE = "complete"
FLOW_ERROR = "error"


@dataclass
class DeviceFlow:
    flow_id: str
    device_code: str
    user_code: str
    verification_uri: str
    interval: int = 5
    expires_in: int = 900
    status: str = FLOW_PENDING
    access_token: Optional[str] = field(default=None, repr=False)
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)


class DeviceFlowManager:
    """Talks to GitHub's device-flow endpoints and tracks in-progress flows."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        store: Optional[TTLStore[DeviceFlow]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._flows: TTLStore[DeviceFlow] = store if store is not None else TTLStore(
            ttl_seconds=FLOW_TTL_SECONDS, max_entries=1_000, clock=clock
        )

    async def request_device_code(self, client_id: str) -> Dict[str, Any]:
        """Step 1: request device & user codes."""
        response = await self._client.post(
            DEVICE_CODE_URL,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            json={"client_id": client_id, "scope": DEVICE_SCOPE},
        )
        if not response.is_success:
            raise ProviderHTTPError.from_response(response)
        return response.json()

    async def poll_for_token(self, client_id: str, device_code: str) -> Dict[str, Any]:
        """
        Step 3: one poll of the token endpoint.

        Returns GitHub's JSON as-is: `{access_token, ...}` on success or
        `{error: ...}` while pending / on failure.
        """
        try:
            response = await self._client.post(
                ACCESS_TOKEN_URL,
                headers={"Accept": "application/json", "Content-Type": "application/json"},
                json={
                    "client_id": client_id,
                    "device_code": device_code,
                    "grant_type": DEVICE_GRANT_TYPE,
                },
            )
        except httpx.RequestError as e:
            lib_logger.warning(f"Device flow poll failed: {e}")
            return {"error": "request_failed"}

        if not response.is_success:
            return {"error": "request_failed"}
        return response.json()

    # =========================================================================
    # FLOW SESSIONS
    # =========================================================================

    async def start(self, client_id: str) -> DeviceFlow:
        """Request a device code and register a pending flow for it."""
        data = await self.request_device_code(client_id)
        flow = DeviceFlow(
            flow_id=secrets.token_urlsafe(16),
            device_code=data.get("device_code", ""),
            user_code=data.get("user_code", ""),
            verification_uri=data.get("verification_uri", ""),
            interval=int(data.get("interval", 5)),
            expires_in=int(data.get("expires_in", 900)),
        )
        self.start_flow(flow)
        lib_logger.info(f"Started GitHub device flow {flow.flow_id}")
        return flow

    async def poll(self, client_id: str, flow_id: str) -> Optional[DeviceFlow]:
        """Advance a pending flow by one poll; returns None for unknown flows."""
        flow = self.get_flow(flow_id)
        if flow is None or flow.status != FLOW_PENDING:
            return flow

        result = await self.poll_for_token(client_id, flow.device_code)
        if result.get("access_token"):
            self.complete_flow(flow_id, result["access_token"])
        elif result.get("error") == "slow_down":
            flow.interval = int(result.get("interval", flow.interval + 5))
        elif result.get("error") and result["error"] not in PENDING_ERRORS | {"request_failed"}:
            self.fail_flow(flow_id, result["error"])
        return self.get_flow(flow_id)

    def start_flow(self, flow: DeviceFlow) -> None:
        self._flows.sweep()
        self._flows.set(flow.flow_id, flow)

    def get_flow(self, flow_id: str) -> Optional[DeviceFlow]:
        return self._flows.get(flow_id)

    def complete_flow(self, flow_id: str, token: str) -> None:
        flow = self._flows.get(flow_id)
        if flow:
            flow.status = FLOW_COMPLETE
            flow.access_token = token
            self._flows.set(flow_id, flow, keep_age=True)

    def fail_flow(self, flow_id: str, error: str) -> None:
        flow = self._flows.get(flow_id)
        if flow:
            flow.status = FLOW_ERROR
            flow.error = error
            self._flows.set(flow_id, flow, keep_age=True)
            lib_logger.info(f"Device flow {flow_id} failed: {error}")

    def remove_flow(self, flow_id: str) -> None:
        self._flows.delete(flow_id)

    def take_token(self, flow_id: str) -> Optional[str]:
        """Hand a completed flow's token to the caller exactly once."""
        flow = self._flows.get(flow_id)
        if not flow or flow.status != FLOW_COMPLETE:
            return None
        self.remove_flow(flow_id)
        return flow.access_token
