"""
Tests for the compliance sync HTTP API.
"""

from uuid import uuid4

from fastapi.testclient import TestClient

from compliance_sync.app import create_app
from compliance_sync.sync.adapters.base import AdapterRegistry, ApiResponse
from compliance_sync.sync.exceptions import TransientApiError
from compliance_sync.sync.interfaces import OutboundChange
from compliance_sync.sync.licenses import LicenseRepository
from compliance_sync.sync.models import EntityType, OperationType
from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator
from compliance_sync.sync.reconciliation.engine import ReconciliationEngine

from fakes import (
    FakeAdapter,
    FakeChangeSource,
    FakeClock,
    FakeLocalStore,
    FakeMapper,
    RecordingSleep,
    create_license,
    make_database,
    make_sync_settings,
)

BASE = "/api/v1/compliance/sync"


class SyncApiTestBase:

    def setup_method(self):
        self.clock = FakeClock()
        self.db = make_database()
        self.license = create_license(self.db, clock=self.clock)
        self.adapter = FakeAdapter(EntityType.PACKAGE, records=[{"Id": 7, "Label": "PKG-7", "Quantity": 2.0}])
        self.adapters = AdapterRegistry([self.adapter])
        self.local_store = FakeLocalStore({EntityType.PACKAGE: {"PKG-7": {"Quantity": 2.0}}})
        self.changes = FakeChangeSource()
        self.orchestrator = ComplianceSyncOrchestrator(
            self.db,
            adapters=self.adapters,
            mapper=FakeMapper(),
            local_store=self.local_store,
            change_source=self.changes,
            sync_settings=make_sync_settings(retry_permanent_errors=False),
            clock=self.clock,
            sleep=RecordingSleep(),
        )
        self.client = TestClient(create_app(orchestrator=self.orchestrator,
                                            reconciliation_engine=self.reconciliation_engine()))

    def reconciliation_engine(self):
        return ReconciliationEngine(
            LicenseRepository(self.db, clock=self.clock), self.adapters, FakeMapper(), self.local_store,
            clock=self.clock,
        )

    def start(self, **body):
        payload = {"license_number": "CA-0001", "direction": "push", "execute": False}
        payload.update(body)
        return self.client.post(f"{BASE}/jobs", json=payload)


class TestSyncJobRoutes(SyncApiTestBase):

    def test_start_sync(self):
        response = self.start(initiated_by_user_id="ops@example.com")

        assert response.status_code == 200
        body = response.json()
        assert body["created"] is True
        assert body["job"]["status"] == "running"
        assert body["job"]["direction"] == "push"
        assert body["job"]["initiated_by"] == "user"

    def test_start_returns_active_job(self):
        first = self.start().json()
        second = self.start(direction="pull").json()

        assert second["created"] is False
        assert second["job"]["id"] == first["job"]["id"]
        assert second["message"] == f"Sync job already in progress: {first['job']['id']}"

    def test_start_unknown_license(self):
        response = self.start(license_number="NV-404")

        assert response.status_code == 400
        assert response.json()["detail"] == "License NV-404 not found"

    def test_start_requires_license_number(self):
        assert self.start(license_number="").status_code == 422

    def test_start_executes_in_background(self):
        self.changes.changes = [OutboundChange(EntityType.PACKAGE, OperationType.CREATE, "P1", data={"Qty": 1})]

        job_id = self.start(execute=True).json()["job"]["id"]

        job = self.client.get(f"{BASE}/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["successful_items"] == 1

    def test_get_unknown_job(self):
        assert self.client.get(f"{BASE}/jobs/{uuid4()}").status_code == 404

    def test_list_site_jobs(self):
        job_id = self.start().json()["job"]["id"]

        response = self.client.get(f"{BASE}/sites/{self.license.site_id}/jobs", params={"limit": 5})

        assert response.status_code == 200
        assert [job["id"] for job in response.json()] == [job_id]

    def test_cancel(self):
        job_id = self.start().json()["job"]["id"]

        first = self.client.post(f"{BASE}/jobs/{job_id}/cancel", json={"reason": "wrong license"})
        second = self.client.post(f"{BASE}/jobs/{job_id}/cancel")

        assert first.json()["cancelled"] is True
        assert second.json() == {"job_id": job_id, "cancelled": False, "message": "Sync job already finished"}
        job = self.client.get(f"{BASE}/jobs/{job_id}").json()
        assert job["status"] == "cancelled"
        assert job["error_message"] == "wrong license"

    def test_cancel_unknown_job(self):
        assert self.client.post(f"{BASE}/jobs/{uuid4()}/cancel").status_code == 404

    def test_retry_failed_and_items(self):
        self.changes.changes = [OutboundChange(EntityType.PACKAGE, OperationType.CREATE, "P1", data={"Qty": 1})]
        self.adapter.responses = [ApiResponse.failure("Invalid Item", status_code=400)]
        job_id = self.start(execute=True).json()["job"]["id"]

        failed = self.client.get(f"{BASE}/jobs/{job_id}/items", params={"status": "failed"}).json()
        assert len(failed) == 1
        assert failed[0]["error_code"] == "REJECTED"

        response = self.client.post(f"{BASE}/jobs/{job_id}/retry-failed")
        assert response.json() == {"job_id": job_id, "items_reset": 1}

        # The reset item is delivered in the background
        job = self.client.get(f"{BASE}/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["successful_items"] == 1
        assert job["failed_items"] == 0
        assert len(self.adapter.calls) == 2

    def test_start_resumes_job_waiting_on_retries(self):
        self.changes.changes = [OutboundChange(EntityType.PACKAGE, OperationType.CREATE, "P1", data={"Qty": 1})]
        self.adapter.responses = [TransientApiError("Connection reset")]
        job_id = self.start(execute=True).json()["job"]["id"]
        assert self.client.get(f"{BASE}/jobs/{job_id}").json()["status"] == "running"

        self.clock.advance(hours=6)
        response = self.start(execute=True)

        assert response.json()["created"] is False
        assert response.json()["job"]["id"] == job_id
        job = self.client.get(f"{BASE}/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["successful_items"] == 1
        assert len(self.adapter.calls) == 2

    def test_retry_failed_conflict(self):
        self.changes.changes = [OutboundChange(EntityType.PACKAGE, OperationType.CREATE, "P1", data={"Qty": 1})]
        self.adapter.responses = [ApiResponse.failure("Invalid Item", status_code=400)]
        job_id = self.start(execute=True).json()["job"]["id"]
        self.changes.changes = []
        self.start()

        response = self.client.post(f"{BASE}/jobs/{job_id}/retry-failed")

        assert response.status_code == 409

    def test_items_of_unknown_job(self):
        assert self.client.get(f"{BASE}/jobs/{uuid4()}/items").status_code == 404


class TestLicenseRoutes(SyncApiTestBase):

    def test_status(self):
        self.start()

        body = self.client.get(f"{BASE}/licenses/ca-0001/status").json()

        assert body["license_number"] == "CA-0001"
        assert body["is_sync_in_progress"] is True
        assert body["pending_queue_items"] == 0

    def test_status_unknown_license(self):
        assert self.client.get(f"{BASE}/licenses/NV-404/status").status_code == 404

    def test_reconcile(self):
        response = self.client.post(
            f"{BASE}/licenses/CA-0001/reconcile", json={"entity_types": ["package"], "include_details": True}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["is_in_sync"] is True
        assert body["entity_results"][0]["matched_count"] == 1
        assert body["entity_results"][0]["discrepancies"] == []

    def test_reconcile_without_adapter(self):
        response = self.client.post(f"{BASE}/licenses/CA-0001/reconcile", json={"entity_types": ["plant"]})
        assert response.status_code == 400

    def test_reconcile_regulator_error(self):
        self.adapter.read_response = ApiResponse.failure("Service Unavailable", status_code=503)

        response = self.client.post(f"{BASE}/licenses/CA-0001/reconcile", json={"entity_types": ["package"]})

        assert response.status_code == 502

    def test_reconcile_not_configured(self):
        client = TestClient(create_app(orchestrator=self.orchestrator))

        response = client.post(f"{BASE}/licenses/CA-0001/reconcile", json={})

        assert response.status_code == 503

    def test_reset_checkpoints(self):
        self.orchestrator.checkpoints.record_success("CA-0001", EntityType.PACKAGE, self.clock(), 1)

        response = self.client.delete(f"{BASE}/licenses/ca-0001/checkpoints", params={"entity_type": "package"})

        assert response.json() == {
            "license_number": "CA-0001",
            "entity_type": "package",
            "checkpoints_removed": 1,
        }

    def test_health(self):
        response = self.client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": True}
