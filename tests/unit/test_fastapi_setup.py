"""Test FastAPI application setup."""
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from mev_pipeline.config import Settings
from mev_pipeline.main import create_app
from mev_pipeline.pipeline import create_pipeline_from_settings


@pytest.fixture
def app_settings():
    return Settings(publish_events_to_redis=False, block_engine_url=None)


@pytest.fixture
def client(app_settings):
    """Create test client with a running pipeline."""
    app = create_app(app_settings, pipeline=create_pipeline_from_settings(app_settings))
    with TestClient(app) as client:
        yield client


def test_app_creation(app_settings):
    """Test that FastAPI app can be created."""
    app = create_app(app_settings)
    assert app is not None
    assert app.title == "MEV Pipeline API"
    assert app.version == "0.1.0"


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_liveness(client):
    response = client.get("/health/live")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"


def test_ready_when_pipeline_running(client):
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"
    assert response.json()["checks"] == {"redis": "disabled"}


def test_not_ready_when_stage_halted(client):
    client.app.state.pipeline.halted_stages["ingestion:venue-a"] = "overflow"

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["halted_stages"] == {"ingestion:venue-a": "overflow"}
    assert client.get("/health").json()["status"] == "degraded"


def test_not_ready_without_pipeline(app_settings):
    client = TestClient(create_app(app_settings))
    assert client.get("/health/ready").status_code == 503
    assert client.get("/health/pipeline").status_code == 503


def test_pipeline_status(client):
    response = client.get("/health/pipeline")
    assert response.status_code == 200
    data = response.json()
    assert data["stats"]["is_running"] is True
    assert "registry" in data["stats"]
    assert data["alerts"] == []


def test_openapi_spec(client):
    response = client.get("/openapi.json")
    assert response.status_code == 200
    assert response.json()["info"]["title"] == "MEV Pipeline API"


@pytest.fixture
def redis_settings():
    return Settings(publish_events_to_redis=True, redis_url="redis://localhost:6379/0", block_engine_url=None)


def get_ready_with_redis(app_settings, healthy):
    app = create_app(app_settings, pipeline=create_pipeline_from_settings(app_settings))
    with patch("mev_pipeline.main.init_redis", AsyncMock()), \
            patch("mev_pipeline.main.close_redis", AsyncMock()), \
            patch("mev_pipeline.api.health.redis_health_check", AsyncMock(return_value=healthy)) as check:
        with TestClient(app) as client:
            response = client.get("/health/ready")
    check.assert_awaited_once()
    return response


def test_ready_reports_redis_health(redis_settings):
    response = get_ready_with_redis(redis_settings, healthy=True)

    assert response.status_code == 200
    assert response.json()["checks"] == {"redis": "healthy"}


def test_not_ready_when_redis_unreachable(redis_settings):
    response = get_ready_with_redis(redis_settings, healthy=False)

    assert response.status_code == 503
    assert response.json()["checks"] == {"redis": "unhealthy"}
