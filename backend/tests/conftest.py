"""
Shared test fixtures for the tokengate test suite.
"""

from collections.abc import Iterator

import pytest
import structlog
from fastapi.testclient import TestClient

CRON_SECRET = "cron-test-secret"


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables so Settings never reaches a real Supabase project."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> Iterator[TestClient]:
    """FastAPI TestClient wrapping the main application with fresh in-memory services."""
    # Clear the lru_cache so settings pick up test env vars
    from tokengate.config import get_settings

    get_settings.cache_clear()

    from tokengate.main import app, build_services

    app.state.supabase = None
    build_services(app, get_settings(), None)
    app.dependency_overrides.clear()

    yield TestClient(app)

    app.dependency_overrides.clear()
