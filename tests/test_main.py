"""
Тесты для HTTP-эндпоинтов
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from crmsync.exceptions import QueueFullError
from crmsync.main import create_app
from crmsync.models import WebhookSource


@pytest.fixture
def services():
    processor = AsyncMock()
    processor.submit.return_value = "job-1"
    processor.get_queue_stats = MagicMock(return_value={"amocrm-webhook": {"waiting": 0}})

    monitoring = MagicMock()
    monitoring.health_check = AsyncMock(return_value={"status": "healthy", "checks": {}})
    monitoring.readiness = AsyncMock(return_value={"status": "not ready"})
    monitoring.liveness.return_value = {"status": "alive"}

    return SimpleNamespace(processor=processor, monitoring=monitoring, queue=MagicMock())


@pytest.fixture
def client(services):
    # без контекстного менеджера lifespan не запускается
    return TestClient(create_app(services))


class TestWebhookEndpoints:
    """Тесты для приема вебхуков"""

    def test_amocrm_form_body(self, client, services):
        """Тест: AmoCRM присылает form-urlencoded"""
        response = client.post(
            "/webhooks/amocrm",
            data={"account[subdomain]": "acme", "leads[add][0][id]": "555"}
        )

        assert response.status_code == 200
        assert response.json()["job_id"] == "job-1"
        services.processor.submit.assert_awaited_once_with(
            WebhookSource.AMOCRM,
            {"account[subdomain]": "acme", "leads[add][0][id]": "555"}
        )

    def test_lptracker_json_body(self, client, services):
        """Тест: LPTracker присылает JSON"""
        response = client.post("/webhooks/lptracker", json={"data": "{\"id\": 1}"})

        assert response.status_code == 200
        services.processor.submit.assert_awaited_once_with(WebhookSource.LPTRACKER, {"data": "{\"id\": 1}"})

    def test_invalid_json(self, client):
        """Тест: тело не JSON-объект"""
        response = client.post(
            "/webhooks/lptracker",
            content=b"[1, 2]",
            headers={"content-type": "application/json"}
        )
        assert response.status_code == 400

    def test_queue_full_is_503(self, client, services):
        """Тест: переполненная очередь"""
        services.processor.submit.side_effect = QueueFullError("full")
        response = client.post("/webhooks/lptracker", json={"id": 1})
        assert response.status_code == 503


class TestServiceEndpoints:
    """Тесты для служебных эндпоинтов"""

    def test_health(self, client):
        """Тест: health"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready_reports_503(self, client):
        """Тест: сервис не готов"""
        assert client.get("/ready").status_code == 503

    def test_live(self, client):
        """Тест: liveness"""
        assert client.get("/live").json() == {"status": "alive"}

    def test_queue_stats(self, client):
        """Тест: статистика очереди"""
        assert client.get("/admin/queue-stats").json() == {"amocrm-webhook": {"waiting": 0}}

    def test_invalidate_cache(self, client, services):
        """Тест: сброс кеша пользователя"""
        services.processor.invalidate_user_cache.return_value = {"config": 2, "dedup": 1}

        response = client.post("/admin/cache/invalidate/user-1")

        assert response.json()["removed"] == {"config": 2, "dedup": 1}
        services.processor.invalidate_user_cache.assert_awaited_once_with("user-1")

    def test_retry_unknown_job(self, client, services):
        """Тест: перезапуск несуществующей задачи"""
        services.queue.retry_failed_job = AsyncMock(return_value=False)
        assert client.post("/admin/jobs/amocrm-webhook/nope/retry").status_code == 404
