import json

import httpx
import pytest

from quota_library.device_flow import (
    FLOW_COMPLETE,
    FLOW_ERROR,
    FLOW_PENDING,
    DeviceFlowManager,
)
from quota_library.ttl_store import TTLStore


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _github(poll_results: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/device/code":
            assert json.loads(request.content)["client_id"] == "Iv1.test"
            return httpx.Response(
                200,
                json={
                    "device_code": "dev-123",
                    "user_code": "ABCD-1234",
                    "verification_uri": "https://github.com/login/device",
                    "interval": 5,
                    "expires_in": 900,
                },
            )
        return httpx.Response(200, json=poll_results.pop(0))

    return handler


@pytest.mark.asyncio
async def test_flow_completes_after_pending(make_client) -> None:
    polls = [{"error": "authorization_pending"}, {"access_token": "gho_token"}]
    manager = DeviceFlowManager(make_client(_github(polls)))

    flow = await manager.start("Iv1.test")
    assert flow.user_code == "ABCD-1234"

    pending = await manager.poll("Iv1.test", flow.flow_id)
    assert pending.status == FLOW_PENDING

    done = await manager.poll("Iv1.test", flow.flow_id)
    assert done.status == FLOW_COMPLETE
    assert manager.take_token(flow.flow_id) == "gho_token"
    assert manager.get_flow(flow.flow_id) is None


@pytest.mark.asyncio
async def test_slow_down_increases_interval(make_client) -> None:
    manager = DeviceFlowManager(make_client(_github([{"error": "slow_down", "interval": 10}])))
    flow = await manager.start("Iv1.test")

    polled = await manager.poll("Iv1.test", flow.flow_id)

    assert polled.status == FLOW_PENDING
    assert polled.interval == 10


@pytest.mark.asyncio
async def test_denied_flow_fails(make_client) -> None:
    manager = DeviceFlowManager(make_client(_github([{"error": "access_denied"}])))
    flow = await manager.start("Iv1.test")

    polled = await manager.poll("Iv1.test", flow.flow_id)

    assert polled.status == FLOW_ERROR
    assert polled.error == "access_denied"
    assert manager.take_token(flow.flow_id) is None


@pytest.mark.asyncio
async def test_flows_expire_after_fifteen_minutes(make_client) -> None:
    clock = FakeClock()
    manager = DeviceFlowManager(
        make_client(_github([])), store=TTLStore(ttl_seconds=15 * 60, clock=clock)
    )
    flow = await manager.start("Iv1.test")

    clock.now = 15 * 60 + 1

    assert manager.get_flow(flow.flow_id) is None
    assert await manager.poll("Iv1.test", flow.flow_id) is None
