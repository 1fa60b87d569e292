import pytest

from xnrt_ledger.core.dependencies import get_redis_client


@pytest.mark.asyncio
async def test_health_check_contract(client):
    """Contract test for health check endpoint
    Verifies the response schema and format matches the API contract
    """
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    data = response.json()

    # Schema validation
    assert set(data) == {"status", "services", "version", "timestamp"}
    assert set(data["services"]) == {"redis", "database", "deposit_scanner"}

    # Value validation
    assert data["status"] == "healthy"
    assert data["services"]["redis"] == "healthy"
    assert data["services"]["database"] == "healthy"
    assert data["services"]["deposit_scanner"] in ["enabled", "disabled"]
    assert data["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_health_reports_degraded_redis(app, client):
    class BrokenRedis:
        async def ping(self):
            raise ConnectionError("redis down")

    app.dependency_overrides[get_redis_client] = lambda: BrokenRedis()

    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["services"]["redis"] == "unhealthy"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
