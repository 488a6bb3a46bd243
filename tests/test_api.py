"""
Integration tests for the ESS Bridge API
Tests the HTTP surface end to end using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from ess_bridge.api import BridgeSystem, create_app
from ess_bridge.applications import ApplicationStatus
from ess_bridge.callbacks import OutboundStatus
from ess_bridge.ledger import LedgerLoanStatus
from ess_bridge.messages import MessageType
from ess_bridge.storage import SQLiteStorage
from ess_bridge.tasks import WorkItemStatus

from conftest import offer_details, read_envelope


@pytest.fixture
def client(system):
    """Test client over an in-memory bridge with the worker disabled"""
    with TestClient(create_app(system, start_worker=False)) as test_client:
        yield test_client


def post_message(client, portal, message_type, details):
    return client.post(
        "/api/ess/messages",
        content=portal.envelope(message_type, details),
        headers={"Content-Type": "application/xml"},
    )


def disburse(client, system, portal):
    post_message(client, portal, MessageType.LOAN_OFFER_REQUEST, offer_details())
    system.queue.run_pending()
    post_message(client, portal, MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION,
                 {"ApplicationNumber": "APP-1001", "Approval": "APPROVED"})
    system.queue.run_pending()
    return system.repository.require("APP-1001")


class TestHealthEndpoints:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_shutdown_closes_storage(self, settings, ledger, bridge_signature, transport, tmp_path):
        storage = SQLiteStorage(tmp_path / "bridge.db")
        system = BridgeSystem(settings, storage=storage, ledger=ledger,
                              signature=bridge_signature, callback_transport=transport)
        with TestClient(create_app(system, start_worker=False)) as test_client:
            assert test_client.get("/health").status_code == 200
        assert storage._connection is None


class TestPortalEndpoint:
    """Signed XML in, signed XML out"""

    def test_offer_acknowledged(self, client, portal, portal_signature):
        r = post_message(client, portal, MessageType.LOAN_OFFER_REQUEST, offer_details())
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("application/xml")
        message_type, details = read_envelope(r.text, verifier=portal_signature)
        assert message_type == "RESPONSE"
        assert details["ResponseCode"] == "8000"

    def test_garbage_still_gets_signed_reply(self, client, portal_signature):
        r = client.post("/api/ess/messages", content=b"<nope", headers={"Content-Type": "application/xml"})
        assert r.status_code == 200
        _, details = read_envelope(r.text, verifier=portal_signature)
        assert details["ResponseCode"] == "8001"


class TestApplicationEndpoints:
    def test_get_application(self, client, system, portal):
        disburse(client, system, portal)
        r = client.get("/api/applications/APP-1001")
        assert r.status_code == 200
        data = r.json()
        assert data["application"]["status"] == "DISBURSED"
        assert [c["message_type"] for c in data["callbacks"]] == [
            "LOAN_INITIAL_APPROVAL_NOTIFICATION", "LOAN_DISBURSEMENT_NOTIFICATION"]
        assert data["audit_events"] > 0

    def test_unknown_application(self, client):
        r = client.get("/api/applications/APP-404")
        assert r.status_code == 404
        assert r.json()["response_code"] == "8004"

    def test_resume(self, client, system, portal, ledger):
        ledger.fail("search_client")
        app = disburse(client, system, portal)
        assert app.status == ApplicationStatus.FINAL_APPROVAL_RECEIVED

        r = client.post("/api/admin/applications/APP-1001/resume")
        assert r.status_code == 202
        system.queue.run_pending()
        assert system.repository.require("APP-1001").status == ApplicationStatus.DISBURSED

    def test_resume_unknown(self, client):
        assert client.post("/api/admin/applications/APP-404/resume").status_code == 404


class TestOperatorEndpoints:
    def test_requeue_failed_work_item(self, client, system, portal, ledger):
        ledger.fail("find_active_loans")
        post_message(client, portal, MessageType.LOAN_OFFER_REQUEST, offer_details())
        system.queue.run_pending()
        [item] = system.queue.list_items(WorkItemStatus.FAILED)

        r = client.post(f"/api/admin/work-items/{item.id}/requeue")
        assert r.status_code == 200
        assert r.json()["status"] == "pending"
        system.queue.run_pending()
        assert system.repository.require("APP-1001").status == ApplicationStatus.APPROVED

        assert client.post(f"/api/admin/work-items/{item.id}/requeue").status_code == 409
        assert client.post("/api/admin/work-items/missing/requeue").status_code == 404

    def test_redeliver_callback(self, client, system, portal, transport):
        transport.status_code = 503
        post_message(client, portal, MessageType.LOAN_OFFER_REQUEST, offer_details())
        system.queue.run_pending()
        [message] = system.callbacks.history("APP-1001")
        assert message.status == OutboundStatus.FAILED

        transport.status_code = 200
        r = client.post(f"/api/admin/callbacks/{message.id}/redeliver")
        assert r.status_code == 200
        assert r.json()["status"] == "delivered"
        assert r.json()["attempts"] == 2
        assert client.post("/api/admin/callbacks/missing/redeliver").status_code == 404

    def test_reconcile(self, client, system, portal, ledger):
        app = disburse(client, system, portal)
        ledger.set_status(app.loan_id, LedgerLoanStatus.CLOSED)
        r = client.post("/api/admin/reconcile")
        assert r.json() == {"checked": 1, "completed": 1, "errors": 0}

    def test_audit_verify(self, client, system, portal):
        disburse(client, system, portal)
        r = client.get("/api/audit/verify")
        assert r.status_code == 200
        assert r.json()["valid"] is True


class TestLedgerWebhook:
    def test_disbursement_event(self, client, system, portal, ledger):
        ledger.fail("approve_loan")
        app = disburse(client, system, portal)
        ledger.approve_loan(app.loan_id)
        ledger.disburse_loan(app.loan_id)

        r = client.post("/api/ledger/webhook",
                        json={"entityName": "LOAN", "actionName": "DISBURSE", "entityId": int(app.loan_id)})
        assert r.status_code == 202
        assert r.json()["action"] == "DISBURSE"
        system.queue.run_pending()
        assert system.repository.require("APP-1001").status == ApplicationStatus.DISBURSED

    def test_incomplete_event(self, client):
        r = client.post("/api/ledger/webhook", json={"entityName": "LOAN"})
        assert r.status_code == 400
