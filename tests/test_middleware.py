"""Middleware tests — request ID, rate limiting, CORS, error handling."""

from __future__ import annotations

from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from phx.config import Settings


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[str] = []

    def incr(self, key: str) -> None:
        self._ops.append("incr")

    def expire(self, key: str, seconds: int) -> None:
        self._ops.append("expire")

    async def execute(self) -> list[Any]:
        if self._redis.broken:
            msg = "redis down"
            raise RedisConnectionError(msg)
        results: list[Any] = []
        for op in self._ops:
            if op == "incr":
                self._redis.hits += 1
                results.append(self._redis.hits)
            else:
                results.append(True)
        return results


class FakeRedis:
    """Counts every hit in one window regardless of key."""

    def __init__(self) -> None:
        self.hits = 0
        self.broken = False

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)


@pytest.fixture
def limited_app(services):
    from phx.main import create_app

    application = create_app(Settings(rate_limit_requests=3, rate_limit_window_seconds=60))
    application.state.services = services
    application.state.redis = FakeRedis()
    return application


@pytest.mark.asyncio
async def test_request_id_generated(client: AsyncClient) -> None:
    """Request ID is auto-generated when not provided."""
    response = await client.get("/health")
    assert len(response.headers["x-request-id"]) == 36


@pytest.mark.asyncio
async def test_no_redis_means_no_limit_headers(client: AsyncClient) -> None:
    response = await client.get("/api/v1/supply/total")
    assert response.status_code == 200
    assert "x-ratelimit-limit" not in response.headers


@pytest.mark.asyncio
async def test_rate_limit_blocks_excess(limited_app) -> None:
    """Fourth request in the window returns 429 with Retry-After."""
    async with AsyncClient(transport=ASGITransport(app=limited_app), base_url="http://test") as ac:
        for expected_remaining in ("2", "1", "0"):
            response = await ac.get("/api/v1/supply/total")
            assert response.status_code == 200
            assert response.headers["x-ratelimit-remaining"] == expected_remaining

        response = await ac.get("/api/v1/supply/total")
        assert response.status_code == 429
        assert response.headers["retry-after"] == "60"
        assert response.json()["code"] == "rate_limited"


@pytest.mark.asyncio
async def test_health_exempt_from_rate_limit(limited_app) -> None:
    async with AsyncClient(transport=ASGITransport(app=limited_app), base_url="http://test") as ac:
        for _ in range(10):
            response = await ac.get("/health")
            assert response.status_code == 200


@pytest.mark.asyncio
async def test_redis_outage_lets_requests_through(limited_app) -> None:
    limited_app.state.redis.broken = True
    async with AsyncClient(transport=ASGITransport(app=limited_app), base_url="http://test") as ac:
        for _ in range(5):
            response = await ac.get("/api/v1/supply/total")
            assert response.status_code == 200


@pytest.mark.asyncio
async def test_cors_preflight(client: AsyncClient) -> None:
    """CORS preflight returns access-control-allow-origin for configured origin."""
    response = await client.options(
        "/api/v1/supply/total",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


@pytest.mark.asyncio
async def test_unknown_route_has_json_error(client: AsyncClient) -> None:
    response = await client.get("/api/v1/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Not Found"
