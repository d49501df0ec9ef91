"""Application wiring and coordination status tests."""
from fastapi.testclient import TestClient

from metalclaim.api import dependencies
from metalclaim.main import app


class TestHealth:
    """Test the health endpoint."""

    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["controller_running"] is True
        assert data["leader_election"] is False
        assert data["is_leader"] is False


class TestCoordinationStatus:
    """Test the coordination status endpoint."""

    def test_status_without_leader_election(self, client: TestClient):
        response = client.get("/api/v1/coordination/status")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["leadership"]["enabled"] is False
        assert data["leadership"]["is_leader"] is False
        assert data["claim_queue"] == {"queued": 0, "pending": 0}
        assert data["provisioning_queue"]["queued"] == 0
        assert data["provisioning_queue"]["in_flight"] == 0
        assert data["provisioning_queue"]["stats"]["max_concurrent_ops"] == 5

    def test_status_counts_operations(self, client: TestClient):
        """Provisioning operations show up in the queue statistics."""
        client.post(
            "/api/v1/hosts",
            json={
                "name": "host-1",
                "redfish_address": "bmc-host-1.example.com",
                "credentials_secret_ref": "host-1-bmc",
            },
        )
        client.post("/api/v1/hosts/default/host-1/enroll")
        client.post(
            "/api/v1/machines/reconcile",
            json={
                "machine": {"name": "worker-0", "uid": "uid-worker-0"},
                "image_url": "http://images/os.iso",
            },
        )

        stats = client.get("/api/v1/coordination/status").json()["data"]["provisioning_queue"][
            "stats"
        ]
        assert stats["submitted"] == 1
        assert stats["completed"] == 1

    def test_controller_set_while_running(self, client: TestClient):
        assert dependencies.controller is not None


class TestWithoutController:
    """Requests before the controller started."""

    def test_service_unavailable(self):
        client = TestClient(app)
        response = client.get("/api/v1/hosts")
        assert response.status_code == 503
