"""Integration tests for the scheduler-triggered monthly voice job."""

from tokengate.config import get_settings
from tokengate.models.plans import Plan
from tokengate.models.voice import MonthlyVoiceUsageRecord


def _cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": get_settings().cron_secret}


class TestMonthlyVoiceResetEndpoint:
    def test_rejects_missing_secret(self, client):
        response = client.post("/api/v1/jobs/monthly-voice-reset")

        assert response.status_code == 401

    def test_rejects_wrong_secret(self, client):
        response = client.post(
            "/api/v1/jobs/monthly-voice-reset", headers={"X-Cron-Secret": "not-the-secret"}
        )

        assert response.status_code == 401

    def test_runs_and_sweeps(self, client):
        repo = client.app.state.monthly_voice_job.repository
        repo.records[("user:old", "2000-01")] = MonthlyVoiceUsageRecord(
            identity_key="user:old", month="2000-01", tier=Plan.FREE, conversations_started=1
        )

        first = client.post("/api/v1/jobs/monthly-voice-reset", headers=_cron_headers())
        second = client.post("/api/v1/jobs/monthly-voice-reset", headers=_cron_headers())

        assert first.status_code == 200
        data = first.json()
        assert data["archive_succeeded"] is True
        assert data["sweep_succeeded"] is True
        assert data["deleted_records"] == 1
        assert second.json()["deleted_records"] == 0
        assert second.json()["archived_month"] == data["archived_month"]
