"""
Integration tests for the alert webhook endpoint.
"""
import pytest

from tests.fixtures.factories import RoutingRuleFactory, persist


def alert_payload(**kwargs):
    payload = {
        "source": "sentry",
        "source_event_id": "evt-1",
        "project": "checkout",
        "environment": "production",
        "severity": "medium",
        "fingerprint": "err-42",
        "title": "NullPointerException in CartService",
        "tags": {"region": "eu"},
    }
    payload.update(kwargs)
    return payload


@pytest.fixture
def routing_rule(test_db_session):
    return persist(test_db_session, RoutingRuleFactory(
        name="Production to on-call",
        priority=10,
        actions_json={"channel_id": "C1", "escalate_after_minutes": 15},
    ))


class TestWebhookIngest:
    """POST /webhook/alerts"""

    def test_first_event_creates_and_routes(self, test_client, headers, routing_rule, fake_dispatcher, fake_queue):
        response = test_client.post("/webhook/alerts", json=alert_payload(), headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "created"
        assert data["is_new"] is True
        assert data["routing_status"] == "routed"
        assert data["routed_rule_id"] == str(routing_rule.id)
        assert data["dispatched"] is True
        assert data["escalation_job_id"] is not None
        assert fake_dispatcher.actions[0].channel_id == "C1"
        assert len(fake_queue.scheduled) == 1

    def test_repeat_merges_without_renotifying(self, test_client, headers, routing_rule, fake_dispatcher):
        first = test_client.post("/webhook/alerts", json=alert_payload(), headers=headers).json()
        second = test_client.post(
            "/webhook/alerts",
            json=alert_payload(source_event_id="evt-2", severity="high"),
            headers=headers
        ).json()

        assert second["outcome"] == "merged"
        assert second["alert_group_id"] == first["alert_group_id"]
        assert len(fake_dispatcher.actions) == 1

        group = test_client.get(f"/api/alert-groups/{first['alert_group_id']}", headers=headers).json()
        assert group["count"] == 2
        assert group["severity"] == "high"

    def test_retry_of_same_event_is_duplicate(self, test_client, headers, routing_rule):
        test_client.post("/webhook/alerts", json=alert_payload(), headers=headers)
        response = test_client.post("/webhook/alerts", json=alert_payload(), headers=headers)

        assert response.status_code == 200
        assert response.json()["duplicate"] is True

    def test_workspace_comes_from_header(self, test_client, routing_rule, fake_dispatcher):
        response = test_client.post(
            "/webhook/alerts",
            json=alert_payload(workspace_id="ws-test"),
            headers={"X-Workspace-Id": "ws-elsewhere"}
        )

        assert response.status_code == 200
        assert response.json()["routing_status"] == "unrouted"
        assert fake_dispatcher.actions == []

    def test_unrouted_event(self, test_client, headers, routing_rule):
        response = test_client.post("/webhook/alerts", json=alert_payload(environment="staging"), headers=headers)
        assert response.json()["routing_status"] == "unrouted"

    def test_severity_aliases_accepted(self, test_client, headers):
        response = test_client.post("/webhook/alerts", json=alert_payload(severity="Warning"), headers=headers)
        assert response.status_code == 200


class TestWebhookValidation:
    def test_missing_workspace_header(self, test_client):
        response = test_client.post("/webhook/alerts", json=alert_payload())
        assert response.status_code == 422

    def test_blank_workspace_header(self, test_client):
        response = test_client.post("/webhook/alerts", json=alert_payload(), headers={"X-Workspace-Id": "  "})
        assert response.status_code == 400

    def test_missing_fingerprint(self, test_client, headers):
        response = test_client.post("/webhook/alerts", json=alert_payload(fingerprint=""), headers=headers)

        assert response.status_code == 422
        assert response.json()["field"] == "fingerprint"

    def test_unknown_severity(self, test_client, headers):
        response = test_client.post("/webhook/alerts", json=alert_payload(severity="apocalyptic"), headers=headers)
        assert response.status_code == 422

    def test_missing_title(self, test_client, headers):
        payload = alert_payload()
        del payload["title"]
        response = test_client.post("/webhook/alerts", json=payload, headers=headers)
        assert response.status_code == 422

    def test_oversized_fingerprint_rejected(self, test_client, headers, test_db_session):
        response = test_client.post("/webhook/alerts", json=alert_payload(fingerprint="f" * 300), headers=headers)

        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"] == ["body", "fingerprint"]

    def test_oversized_workspace_header_rejected(self, test_client):
        response = test_client.post("/webhook/alerts", json=alert_payload(), headers={"X-Workspace-Id": "w" * 65})

        assert response.status_code == 400
        assert "X-Workspace-Id" in response.json()["detail"]


def test_webhook_health(test_client):
    response = test_client.get("/webhook/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
