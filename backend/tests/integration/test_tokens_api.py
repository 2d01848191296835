"""Integration tests for token status and consumption endpoints."""

import asyncio

from tokengate.auth import StaticPlanResolver, get_identity
from tokengate.models.identity import AuthenticatedIdentity
from tokengate.models.plans import Plan
from tokengate.services.plan_catalog import PlanCatalog
from tokengate.services.token_ledger import InMemoryTokenLedgerRepository, TokenLedger
from tokengate.services.usage_history import InMemoryTokenUsageHistoryRepository

SESSION_HEADERS = {"X-Session-Id": "session-abc123"}


async def _fake_user() -> AuthenticatedIdentity:
    return AuthenticatedIdentity(user_id="user-1", email="user@example.com")


class BrokenRepository(InMemoryTokenLedgerRepository):
    async def get_or_create_day(self, *args, **kwargs):
        raise ConnectionError("connection refused")

    async def try_consume(self, *args, **kwargs):
        raise ConnectionError("connection refused")


class UnavailableHistory(InMemoryTokenUsageHistoryRepository):
    async def record(self, entry):
        raise ConnectionError("history table unavailable")


class TestTokenStatusEndpoint:
    def test_requires_identity(self, client):
        response = client.get("/api/v1/tokens/status")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "AUTHENTICATION_REQUIRED"

    def test_malformed_session_rejected(self, client):
        response = client.get("/api/v1/tokens/status", headers={"X-Session-Id": "bad id"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"

    def test_anonymous_session_status(self, client):
        response = client.get("/api/v1/tokens/status", headers=SESSION_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["available_tokens"] == 20
        assert data["total_tokens"] == 20
        assert data["user_plan"] == "free"
        assert data["is_premium"] is False
        assert data["can_purchase_tokens"] is True
        assert data["next_reset_time"] is not None

    def test_premium_user_status(self, client):
        client.app.state.plan_resolver = StaticPlanResolver({"user-1": Plan.PREMIUM})
        client.app.dependency_overrides[get_identity] = _fake_user

        response = client.get("/api/v1/tokens/status")

        assert response.status_code == 200
        data = response.json()
        assert data["unlimited_usage"] is True
        assert data["daily_limit"] == -1
        assert data["next_reset_time"] is None


class TestTokenConsumeEndpoint:
    def test_consume_then_insufficient(self, client):
        first = client.post("/api/v1/tokens/consume", json={"language": "hi"}, headers=SESSION_HEADERS)
        second = client.post("/api/v1/tokens/consume", json={"language": "en"}, headers=SESSION_HEADERS)

        assert first.status_code == 200
        assert first.json()["tokens_consumed"] == 20
        assert first.json()["balance"]["available_tokens"] == 0
        assert second.status_code == 402
        detail = second.json()["detail"]
        assert detail["code"] == "INSUFFICIENT_TOKENS"
        assert detail["required_tokens"] == 10

    def test_mode_scales_cost(self, client):
        client.app.dependency_overrides[get_identity] = _fake_user
        client.app.state.plan_resolver = StaticPlanResolver({"user-1": Plan.STANDARD})

        response = client.post("/api/v1/tokens/consume", json={"language": "en", "mode": "lectio"})

        assert response.status_code == 200
        data = response.json()
        assert data["tokens_consumed"] == 12
        assert data["mode"] == "lectio"
        assert data["balance"]["available_tokens"] == 28

    def test_draws_purchased_after_allowance(self, client):
        client.app.dependency_overrides[get_identity] = _fake_user
        ledger: TokenLedger = client.app.state.token_ledger
        asyncio.run(ledger.add_purchased_tokens(AuthenticatedIdentity(user_id="user-1"), Plan.FREE, 10))

        client.post("/api/v1/tokens/consume", json={"language": "en"})
        response = client.post("/api/v1/tokens/consume", json={"language": "hi"})

        assert response.status_code == 200
        data = response.json()
        assert data["daily_tokens_used"] == 10
        assert data["purchased_tokens_used"] == 10
        assert data["balance"]["purchased_tokens"] == 0

    def test_unsupported_language(self, client):
        response = client.post("/api/v1/tokens/consume", json={"language": "fr"}, headers=SESSION_HEADERS)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "UNSUPPORTED_LANGUAGE"

    def test_store_failure_returns_503(self, client):
        client.app.state.token_ledger = TokenLedger(BrokenRepository(), PlanCatalog())

        response = client.post("/api/v1/tokens/consume", json={"language": "en"}, headers=SESSION_HEADERS)

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "UPSTREAM_FAILURE"


class TestTokenHistoryEndpoint:
    def test_consume_is_listed_in_history(self, client):
        client.app.dependency_overrides[get_identity] = _fake_user

        client.post(
            "/api/v1/tokens/consume",
            json={"language": "en", "mode": "quick", "feature": "study_generate"},
        )
        client.post("/api/v1/tokens/consume", json={"language": "EN", "feature": "study_followup"})
        response = client.get("/api/v1/tokens/history", params={"limit": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["limit"] == 1
        assert data["has_more"] is True
        [item] = data["items"]
        assert item["feature_name"] == "study_followup"
        assert item["language"] == "en"
        assert item["token_cost"] == 10
        assert item["user_plan"] == "free"

    def test_history_failure_does_not_fail_consume(self, client):
        repository = InMemoryTokenLedgerRepository()
        client.app.state.token_ledger = TokenLedger(
            repository, PlanCatalog(), history=UnavailableHistory()
        )

        response = client.post("/api/v1/tokens/consume", json={"language": "en"}, headers=SESSION_HEADERS)

        assert response.status_code == 200
        assert response.json()["tokens_consumed"] == 10
        assert [record.consumed_today for record in repository.records.values()] == [10]

    def test_limit_out_of_range(self, client):
        response = client.get("/api/v1/tokens/history", params={"limit": 500}, headers=SESSION_HEADERS)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"


class TestRateLimitedEndpoints:
    def test_anonymous_rate_limit(self, client):
        responses = [client.get("/api/v1/tokens/status", headers=SESSION_HEADERS) for _ in range(6)]

        assert [r.status_code for r in responses[:5]] == [200] * 5
        assert responses[5].status_code == 429
        assert int(responses[5].headers["Retry-After"]) >= 1
        assert responses[5].json()["detail"]["code"] == "RATE_LIMIT_EXCEEDED"

    def test_rate_limit_runs_before_token_logic(self, client):
        for _ in range(5):
            client.get("/api/v1/tokens/status", headers=SESSION_HEADERS)

        response = client.post("/api/v1/tokens/consume", json={"language": "en"}, headers=SESSION_HEADERS)

        assert response.status_code == 429
        repo = client.app.state.token_ledger.repository
        assert all(record.consumed_today == 0 for record in repo.records.values())
