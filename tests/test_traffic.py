"""Traffic control adapter tests."""

from __future__ import annotations

import json

import httpx
import pytest

from rolloutgate.errors import TrafficShiftError
from rolloutgate.traffic import HTTPTrafficControl, InMemoryTrafficRouter


@pytest.mark.asyncio
async def test_in_memory_router_is_idempotent() -> None:
    router = InMemoryTrafficRouter()
    assert await router.current_fraction("api") == 0.0

    await router.shift("api", 25.0)
    await router.shift("api", 25.0)
    await router.shift("api", 50.0)

    assert await router.current_fraction("api") == 50.0
    assert router.history("api") == [25.0, 50.0]


@pytest.mark.asyncio
async def test_in_memory_router_rejects_out_of_range() -> None:
    with pytest.raises(TrafficShiftError):
        await InMemoryTrafficRouter().shift("api", 120.0)


@pytest.mark.asyncio
async def test_http_traffic_control_round_trip() -> None:
    weights: dict[str, float] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        target = request.url.path.split("/")[2]
        if request.method == "PUT":
            weights[target] = json.loads(request.content)["fraction"]
            return httpx.Response(204)
        return httpx.Response(200, json={"fraction": weights.get(target, 0.0)})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://lb.test")
    traffic = HTTPTrafficControl("http://lb.test", client=client)

    await traffic.shift("api", 5.0)

    assert await traffic.current_fraction("api") == 5.0
    await traffic.aclose()


@pytest.mark.asyncio
async def test_http_traffic_control_maps_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            return httpx.Response(503)
        return httpx.Response(200, json={"weight": 10})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://lb.test")
    traffic = HTTPTrafficControl("http://lb.test", client=client)

    with pytest.raises(TrafficShiftError) as excinfo:
        await traffic.shift("api", 5.0)
    assert excinfo.value.reason == "router returned 503"
    with pytest.raises(TrafficShiftError):
        await traffic.current_fraction("api")
    await traffic.aclose()
