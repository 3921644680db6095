import logging

import pytest

from vidrelay.config.settings import config
from vidrelay.core.logging import RequestIdFilter, request_id_ctx


@pytest.mark.asyncio
async def test_health_check(client):
    """Test public health endpoint"""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_root_reports_service_info(client):
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "running"
    assert data["service"] == config.api.title
    assert data["version"] == config.api.version
    assert data["redis_enabled"] is False


@pytest.mark.asyncio
async def test_request_id_header(client):
    response = await client.get("/health")
    assert response.headers.get("x-request-id")

    response = await client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["x-request-id"] == "abc123"


@pytest.mark.asyncio
async def test_unknown_route_renders_error_body(client):
    response = await client.get("/nope")
    assert response.status_code == 404
    assert "error" in response.json()


def test_request_id_filter_uses_context():
    record = logging.LogRecord("vidrelay", logging.INFO, __file__, 1, "hello", None, None)
    token = request_id_ctx.set("req-1")
    try:
        assert RequestIdFilter().filter(record)
    finally:
        request_id_ctx.reset(token)
    assert record.request_id == "req-1"


def test_request_id_filter_keeps_explicit_id():
    record = logging.LogRecord("vidrelay", logging.INFO, __file__, 1, "hello", None, None)
    record.request_id = "explicit"
    RequestIdFilter().filter(record)
    assert record.request_id == "explicit"
