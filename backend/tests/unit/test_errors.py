"""Unit tests for the error taxonomy and its HTTP rendering."""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tokengate.errors import (
    AuthenticationRequired,
    InsufficientTokens,
    RateLimitExceeded,
    UpstreamFailure,
    register_error_handlers,
)
from tokengate.services.store import call_store


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app)


class TestErrorRendering:
    def test_insufficient_tokens_body(self):
        client = _app_raising(InsufficientTokens(required_tokens=20, total_tokens=5))

        response = client.get("/boom")

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["code"] == "INSUFFICIENT_TOKENS"
        assert detail["required_tokens"] == 20
        assert detail["total_tokens"] == 5

    def test_rate_limit_sets_retry_after(self):
        client = _app_raising(RateLimitExceeded(retry_after=17, limit=5))

        response = client.get("/boom")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "17"
        assert response.json()["detail"]["retry_after"] == 17

    def test_default_message(self):
        err = AuthenticationRequired()

        assert err.to_detail()["message"] == AuthenticationRequired.default_message
        assert err.status_code == 401


class TestCallStore:
    async def test_returns_result(self):
        async def ok():
            return 42

        assert await call_store(ok(), timeout=1, operation="ok") == 42

    async def test_timeout(self):
        with pytest.raises(UpstreamFailure, match="timed out"):
            await call_store(asyncio.sleep(1), timeout=0.01, operation="slow")

    async def test_domain_errors_pass_through(self):
        async def denied():
            raise InsufficientTokens()

        with pytest.raises(InsufficientTokens):
            await call_store(denied(), timeout=1, operation="consume")
