"""
Alert API のテスト
"""

import pytest


ALERT_PAYLOAD = {
    "symbol": "btc",
    "name": "BTC breakout",
    "alert_type": "price_above",
    "condition": {"target_price": 45000},
    "notifications": {
        "email": {"enabled": True},
        "sms": {"enabled": False},
        "push": {"enabled": True},
    },
    "priority": "high",
    "tags": ["breakout"],
}


@pytest.fixture
def created_alert(client, auth_headers):
    response = client.post("/api/alerts", json=ALERT_PAYLOAD, headers=auth_headers)
    assert response.status_code == 201
    return response.json()


class TestAuth:
    """認証"""

    def test_missing_user_header(self, client):
        """ヘッダーなし → 401エラー"""
        response = client.get("/api/alerts")
        assert response.status_code == 401

    def test_unknown_user(self, client):
        response = client.get("/api/alerts", headers={"X-User-Id": "ghost"})
        assert response.status_code == 401


class TestAlertCrud:
    """アラートの作成・取得・削除"""

    def test_create_alert(self, created_alert, monitor):
        assert created_alert["symbol"] == "BTC"
        assert created_alert["status"] == "active"
        assert created_alert["trigger_count"] == 0
        assert created_alert["execution_log"][0]["action"] == "created"
        assert created_alert["id"] in monitor.index

    def test_create_invalid_payload(self, client, auth_headers):
        payload = dict(ALERT_PAYLOAD, alert_type="moon")
        response = client.post("/api/alerts", json=payload, headers=auth_headers)
        assert response.status_code == 422

    def test_create_over_limit(self, client, auth_headers):
        for _ in range(10):
            assert client.post("/api/alerts", json=ALERT_PAYLOAD, headers=auth_headers).status_code == 201
        response = client.post("/api/alerts", json=ALERT_PAYLOAD, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Alert limit reached. Maximum 10 alerts allowed."

    def test_list_alerts(self, client, auth_headers, created_alert):
        response = client.get("/api/alerts", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["alerts"][0]["id"] == created_alert["id"]

        response = client.get("/api/alerts?symbol=ETH", headers=auth_headers)
        assert response.json()["count"] == 0

    def test_get_alert(self, client, auth_headers, created_alert):
        response = client.get(f"/api/alerts/{created_alert['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["name"] == "BTC breakout"

    def test_other_users_alert_is_not_found(self, client, created_alert, other_user):
        response = client.get(
            f"/api/alerts/{created_alert['id']}", headers={"X-User-Id": other_user}
        )
        assert response.status_code == 404

    def test_delete_alert(self, client, auth_headers, created_alert, monitor, store):
        response = client.delete(f"/api/alerts/{created_alert['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert created_alert["id"] not in monitor.index
        assert store.get(created_alert["id"]) is None

        response = client.delete(f"/api/alerts/{created_alert['id']}", headers=auth_headers)
        assert response.status_code == 404


class TestUpdate:
    """アラートの更新（PATCH）"""

    def test_update_fields(self, client, auth_headers, created_alert, monitor):
        response = client.patch(
            f"/api/alerts/{created_alert['id']}",
            json={
                "name": "BTC 50k",
                "condition": {"target_price": 50000},
                "notifications": {"sms": {"enabled": True}},
                "tags": ["moon"],
            },
            headers=auth_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "BTC 50k"
        assert data["condition"]["target_price"] == 50000
        assert data["notifications"]["sms"]["enabled"] is True
        assert data["notifications"]["email"]["enabled"] is True
        assert data["priority"] == "high"
        assert data["tags"] == ["moon"]
        assert monitor.index.get(created_alert["id"]).condition.target_price == 50000

    def test_deactivate_removes_from_index(self, client, auth_headers, created_alert, monitor):
        response = client.patch(
            f"/api/alerts/{created_alert['id']}", json={"is_active": False}, headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "inactive"
        assert created_alert["id"] not in monitor.index

    def test_clear_expiry(self, client, auth_headers, created_alert):
        url = f"/api/alerts/{created_alert['id']}"
        response = client.patch(url, json={"expires_at": "2099-01-01T00:00:00"}, headers=auth_headers)
        assert response.json()["expires_at"] == "2099-01-01T00:00:00"

        response = client.patch(url, json={"expires_at": None}, headers=auth_headers)
        assert response.json()["expires_at"] is None

    def test_invalid_update(self, client, auth_headers, created_alert):
        response = client.patch(
            f"/api/alerts/{created_alert['id']}", json={"max_triggers": 0}, headers=auth_headers
        )
        assert response.status_code == 422

    def test_update_not_found(self, client, auth_headers, created_alert, other_user):
        response = client.patch("/api/alerts/nope", json={"name": "x"}, headers=auth_headers)
        assert response.status_code == 404

        response = client.patch(
            f"/api/alerts/{created_alert['id']}", json={"name": "x"}, headers={"X-User-Id": other_user}
        )
        assert response.status_code == 404


class TestPauseResume:
    """一時停止・再開"""

    def test_pause_removes_from_index(self, client, auth_headers, created_alert, monitor):
        response = client.post(f"/api/alerts/{created_alert['id']}/pause", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["is_active"] is False
        assert data["status"] == "inactive"
        assert data["execution_log"][-1]["action"] == "paused"
        assert created_alert["id"] not in monitor.index

    def test_resume_resets_trigger_and_tracks(self, client, auth_headers, created_alert, monitor, store):
        alert = store.get(created_alert["id"])
        alert.is_triggered = True
        alert.trigger_count = 0
        store.save(alert)
        monitor.untrack(alert.id)

        response = client.post(f"/api/alerts/{alert.id}/resume", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["is_active"] is True
        assert data["is_triggered"] is False
        assert data["execution_log"][-1]["action"] == "resumed"
        assert alert.id in monitor.index

    def test_pause_unknown_alert(self, client, auth_headers):
        response = client.post("/api/alerts/nope/pause", headers=auth_headers)
        assert response.status_code == 404


class TestMonitorEndpoints:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_monitor_status(self, client, created_alert):
        response = client.get("/api/monitor/status")
        assert response.status_code == 200
        data = response.json()
        assert data["running"] is False
        assert data["active_alerts"] == 1

    def test_cached_prices(self, client, created_alert, monitor, price_source):
        price_source.set_price("BTC", 44000)
        monitor.refresh_prices()

        response = client.get("/api/monitor/prices")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["prices"]["BTC"]["price"] == 44000

    def test_stats(self, client, created_alert):
        response = client.get("/api/monitor/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["alerts"]["total_alerts"] == 1
        assert "email" in data["notifications"]["rate_limits"]
