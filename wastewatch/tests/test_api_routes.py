from datetime import date, timedelta

import pytest


NETFLIX = "NETFLIX.COM 866-579-7172 CA"


@pytest.fixture(autouse=True)
def _no_oracle(monkeypatch):
    monkeypatch.delenv("OLLAMA_HOST", raising=False)


@pytest.fixture()
def netflix_history(add_txn, db_session):
    today = date.today()
    for days_ago in (100, 70, 40):
        add_txn(today - timedelta(days=days_ago), -14.99, NETFLIX)
    db_session.commit()


def _run(api_client, **body):
    response = api_client.post("/api/detection/run", json=body)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(api_client):
    assert api_client.get("/health").json() == {"ok": True}


def test_run_detection_and_list_alerts(api_client, netflix_history):
    body = _run(api_client)

    assert body["status"] == "succeeded"
    assert body["subscriptions_found"] == 1
    assert body["counts"]["zombies"] == 1
    assert body["run_id"]

    alerts = api_client.get("/api/alerts").json()
    assert [a["alert_type"] for a in alerts] == ["zombie"]
    assert alerts[0]["metadata"]["merchant"] == "NETFLIX"
    assert alerts[0]["dedup_key"].startswith("zombie:subscription:")

    runs = api_client.get("/api/detection/runs").json()
    assert runs[0]["id"] == body["run_id"]


def test_run_detection_rejects_unknown_kind(api_client):
    response = api_client.post("/api/detection/run", json={"kinds": ["everything"]})

    assert response.status_code == 400


def test_dismiss_and_restore_alert(api_client, netflix_history):
    _run(api_client)
    [alert] = api_client.get("/api/alerts").json()

    dismissed = api_client.post(f"/api/alerts/{alert['id']}/dismiss")
    assert dismissed.status_code == 200
    assert dismissed.json()["status"] == "dismissed"
    assert api_client.get("/api/alerts").json() == []
    assert len(api_client.get("/api/alerts", params={"include_dismissed": True}).json()) == 1

    _run(api_client)
    assert api_client.get("/api/alerts").json() == []

    restored = api_client.post(f"/api/alerts/{alert['id']}/restore")
    assert restored.json()["status"] == "open"


def test_unknown_alert_is_404(api_client):
    assert api_client.post("/api/alerts/nope/dismiss").status_code == 404


def test_config_roundtrip(api_client):
    current = api_client.get("/api/detection/config").json()
    assert current["overrides"] == {}
    assert current["effective"]["zombie_min_months"] == 3

    updated = api_client.put("/api/detection/config", json={"overrides": {"zombie_min_months": 6}})
    assert updated.status_code == 200
    assert updated.json()["effective"]["zombie_min_months"] == 6
    assert updated.json()["overrides"] == {"zombie_min_months": 6}

    rejected = api_client.put("/api/detection/config", json={"overrides": {"strict_amount_variance": 5}})
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["errors"]
    assert api_client.get("/api/detection/config").json()["overrides"] == {"zombie_min_months": 6}


def test_defaults_endpoint(api_client):
    defaults = api_client.get("/api/detection/defaults").json()

    assert defaults["tip_discrepancy_threshold"] == 0.5
    assert defaults["excluded_categories"] == ["Fees"]


def test_subscription_actions(api_client, netflix_history):
    _run(api_client)
    [sub] = api_client.get("/api/subscriptions").json()
    assert sub["merchant"] == "NETFLIX"
    assert sub["status"] == "active"

    acked = api_client.post(f"/api/subscriptions/{sub['id']}/acknowledge").json()
    assert acked["user_acknowledged"] is True
    assert acked["acknowledged_at"]

    cancelled = api_client.post(f"/api/subscriptions/{sub['id']}/cancel")
    assert cancelled.json()["status"] == "cancelled"
    assert api_client.post(f"/api/subscriptions/{sub['id']}/cancel").status_code == 409

    savings = api_client.get("/api/subscriptions/savings").json()
    assert savings["cancelled_count"] == 1
    assert savings["cancelled"][0]["monthly_amount"] == 14.99

    audit = api_client.get(f"/api/subscriptions/{sub['id']}/audit").json()
    events = [item["event_type"] for item in audit["items"]]
    assert "subscription_detected" in events
    assert "subscription_cancelled" in events


def test_exclude_and_unexclude(api_client, netflix_history):
    _run(api_client)
    [sub] = api_client.get("/api/subscriptions").json()

    excluded = api_client.post(f"/api/subscriptions/{sub['id']}/exclude")
    assert excluded.json()["status"] == "excluded"
    assert api_client.get("/api/alerts").json() == []

    assert api_client.post(f"/api/subscriptions/{sub['id']}/exclude").status_code == 409

    unexcluded = api_client.post(f"/api/subscriptions/{sub['id']}/unexclude")
    assert unexcluded.json()["status"] == "active"

    body = _run(api_client)
    assert len(body["reopened_alert_ids"]) == 1


def test_delete_subscription(api_client, netflix_history):
    _run(api_client)
    [sub] = api_client.get("/api/subscriptions").json()

    assert api_client.delete(f"/api/subscriptions/{sub['id']}").json() == {"deleted": sub["id"]}
    assert api_client.get(f"/api/subscriptions/{sub['id']}").status_code == 404
    assert api_client.get("/api/alerts").json() == []


def test_merchant_classification_override(api_client):
    response = api_client.post(
        "/api/subscriptions/merchants/classification",
        json={"merchant": "Costco", "is_subscription": False},
    )

    assert response.status_code == 200
    assert response.json() == {"merchant": "COSTCO", "classification": "RETAIL", "source": "user_override"}

    blank = api_client.post(
        "/api/subscriptions/merchants/classification",
        json={"merchant": "  ", "is_subscription": True},
    )
    assert blank.status_code == 400


def test_reanalyze_endpoint(api_client, netflix_history):
    _run(api_client)
    [sub] = api_client.get("/api/subscriptions").json()

    assert api_client.post("/api/detection/reanalyze", json={}).status_code == 400

    response = api_client.post("/api/detection/reanalyze", json={"subscription_id": sub["id"]})
    assert response.status_code == 200
    body = response.json()
    assert body["alert"]["alert_type"] == "zombie"
    assert body["results"]["kinds"] == ["zombies", "increases", "duplicates", "auto_cancel", "resume"]


def test_subscription_audit_includes_alert_events_and_pages(api_client, netflix_history):
    _run(api_client)
    [sub] = api_client.get("/api/subscriptions").json()
    [alert] = api_client.get("/api/alerts").json()
    api_client.post(f"/api/alerts/{alert['id']}/dismiss")

    full = api_client.get(f"/api/subscriptions/{sub['id']}/audit").json()
    events = {item["event_type"] for item in full["items"]}
    assert {"subscription_detected", "alert_created", "alert_dismissed"} <= events
    assert full["next_cursor"] is None

    seen, cursor = [], None
    while True:
        params = {"limit": 1}
        if cursor:
            params["cursor"] = cursor
        page = api_client.get(f"/api/subscriptions/{sub['id']}/audit", params=params).json()
        seen.extend(item["id"] for item in page["items"])
        cursor = page["next_cursor"]
        if cursor is None:
            break
    assert seen == [item["id"] for item in full["items"]]

    bad = api_client.get(f"/api/subscriptions/{sub['id']}/audit", params={"cursor": "not-a-cursor"})
    assert bad.status_code == 400
