"""
Tests for the protocol gateway: one signed reply per inbound message,
synchronous guards for commands and in-place answers for queries.
"""

from decimal import Decimal

import pytest

from ess_bridge.applications import ApplicationStatus
from ess_bridge.gateway import TASK_PROCESS_OFFER
from ess_bridge.ledger import LedgerLoanStatus
from ess_bridge.messages import MessageType
from ess_bridge.tasks import WorkItemStatus

from conftest import offer_details, read_envelope

S = ApplicationStatus

CHARGES = {
    "CheckNumber": "CHK-77001",
    "BasicSalary": "1765000",
    "NetSalary": "1200000",
    "OneThirdAmount": "588333",
    "TotalEmployeeDeduction": "176666",
    "DeductibleAmount": "411667",
    "DesiredDeductibleAmount": "411667",
    "Tenure": "60",
    "ProductCode": "17",
}


@pytest.fixture
def send(system, portal, portal_signature):
    """Deliver a signed message to the gateway and read the verified reply"""
    def deliver(message_type, details, raw=None, **kwargs):
        body = raw if raw is not None else portal.envelope(message_type, details, **kwargs)
        reply = system.gateway.handle_inbound(body)
        return read_envelope(reply, verifier=portal_signature)
    return deliver


def response_code(reply):
    message_type, details = reply
    assert message_type == "RESPONSE"
    return details["ResponseCode"]


def run_offer_to_disbursement(system, send, application_number="APP-1001"):
    assert response_code(send(MessageType.LOAN_OFFER_REQUEST, offer_details(application_number))) == "8000"
    system.queue.run_pending()
    assert response_code(send(MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION,
                              {"ApplicationNumber": application_number, "Approval": "APPROVED"})) == "8000"
    system.queue.run_pending()
    return system.repository.require(application_number)


class TestEnvelopeErrors:
    """Everything wrong with an envelope is answered, never raised"""

    def test_bad_signature(self, send, portal):
        raw = portal.envelope(MessageType.LOAN_CHARGES_REQUEST, CHARGES).decode()
        raw = raw.replace("<Tenure>60</Tenure>", "<Tenure>96</Tenure>")
        assert response_code(send(None, None, raw=raw)) == "8001"

    def test_wrong_fsp_code(self, send):
        assert response_code(send(MessageType.LOAN_CHARGES_REQUEST, CHARGES, fsp_code="FL0000")) == "8001"

    def test_garbage(self, send):
        assert response_code(send(None, None, raw=b"not xml at all")) == "8001"

    def test_missing_field(self, send):
        details = dict(CHARGES)
        del details["BasicSalary"]
        assert response_code(send(MessageType.LOAN_CHARGES_REQUEST, details)) == "8003"

    def test_bad_number(self, send):
        assert response_code(send(MessageType.LOAN_CHARGES_REQUEST, dict(CHARGES, Tenure="sixty"))) == "8005"

    def test_unexpected_error_answers_try_later(self, system, send, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk on fire")
        monkeypatch.setattr(system.saga, "admit_offer", broken)
        assert response_code(send(MessageType.LOAN_OFFER_REQUEST, offer_details())) == "8012"


class TestQueries:
    def test_loan_charges(self, send):
        message_type, details = send(MessageType.LOAN_CHARGES_REQUEST, CHARGES)
        assert message_type == "LOAN_CHARGES_RESPONSE"
        assert details["DesiredDeductibleAmount"] == "411667.00"
        assert details["MonthlyReturnAmount"] == "411667.00"
        assert details["Tenure"] == "60"
        charges = (Decimal(details["TotalProcessingFees"]) + Decimal(details["TotalInsurance"])
                   + Decimal(details["OtherCharges"]))
        assert Decimal(details["NetLoanAmount"]) == Decimal(details["EligibleAmount"]) - charges

    def test_loan_charges_with_requested_amount(self, send):
        _, details = send(MessageType.LOAN_CHARGES_REQUEST, dict(CHARGES, RequestedAmount="5000000"))
        assert details["EligibleAmount"] == "5000000.00"
        assert details["NetLoanAmount"] == "4775000.00"

    def test_loan_charges_tenure_held_to_product_maximum(self, send):
        message_type, details = send(MessageType.LOAN_CHARGES_REQUEST, dict(CHARGES, Tenure="240"))
        assert message_type == "LOAN_CHARGES_RESPONSE"
        assert details["Tenure"] == "96"

    def test_loan_charges_without_headroom(self, send):
        details = dict(CHARGES, BasicSalary="300000", TotalEmployeeDeduction="150000")
        assert response_code(send(MessageType.LOAN_CHARGES_REQUEST, details)) == "8005"

    def test_loan_charges_unknown_product(self, send):
        assert response_code(send(MessageType.LOAN_CHARGES_REQUEST, dict(CHARGES, ProductCode="99"))) == "8004"

    def test_top_up_balance(self, system, send):
        app = run_offer_to_disbursement(system, send)
        loan_number = app.external_refs["ess_loan_alias"]
        message_type, details = send(MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST, {"LoanNumber": loan_number})
        assert message_type == "LOAN_TOP_UP_BALANCE_RESPONSE"
        assert details["LoanNumber"] == loan_number
        assert details["FSPReferenceNumber"] == app.external_refs["fsp_reference_number"]
        assert details["OutstandingBalance"] == "5000000.00"
        # 30 days of interest at 24% on 5,000,000
        assert details["TotalPayoffAmount"] == "5098630.14"
        assert details["PaymentReferenceNumber"].startswith("PAY")

    def test_takeover_balance(self, system, send):
        app = run_offer_to_disbursement(system, send)
        message_type, details = send(MessageType.TAKEOVER_PAY_OFF_BALANCE_REQUEST,
                                     {"LoanNumber": app.external_refs["fsp_reference_number"]})
        assert message_type == "LOAN_TAKEOVER_BALANCE_RESPONSE"
        assert details["TotalPayoffAmount"] == "5098630.14"

    def test_restructure_balance(self, system, send):
        app = run_offer_to_disbursement(system, send)
        message_type, details = send(MessageType.LOAN_RESTRUCTURE_BALANCE_REQUEST,
                                     {"LoanNumber": app.external_refs["ess_loan_alias"]})
        assert message_type == "LOAN_RESTRUCTURE_BALANCE_RESPONSE"
        assert "PaymentReferenceNumber" not in details
        assert details["OutstandingBalance"] == "5000000.00"

    def test_balance_of_unknown_loan(self, send):
        assert response_code(send(MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST, {"LoanNumber": "LN-404"})) == "8004"

    def test_balance_of_closed_loan(self, system, send, ledger):
        app = run_offer_to_disbursement(system, send)
        ledger.set_status(app.loan_id, LedgerLoanStatus.CLOSED)
        reply = send(MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST, {"LoanNumber": app.external_refs["ess_loan_alias"]})
        assert response_code(reply) == "8006"

    def test_balance_when_ledger_down(self, system, send, ledger):
        app = run_offer_to_disbursement(system, send)
        ledger.fail("get_loan")
        reply = send(MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST, {"LoanNumber": app.external_refs["ess_loan_alias"]})
        assert response_code(reply) == "8012"

    def test_restructure_affordability(self, system, send):
        app = run_offer_to_disbursement(system, send)
        loan_number = app.external_refs["ess_loan_alias"]
        message_type, details = send(MessageType.LOAN_RESTRUCTURE_AFFORDABILITY_REQUEST,
                                     {"LoanNumber": loan_number, "Tenure": "72"})
        assert message_type == "LOAN_RESTRUCTURE_AFFORDABILITY_RESPONSE"
        assert details["Eligible"] == "YES"
        assert details["Tenure"] == "72"
        assert "Reason" not in details

        _, details = send(MessageType.LOAN_RESTRUCTURE_AFFORDABILITY_REQUEST,
                          {"LoanNumber": loan_number, "Tenure": "72", "DesiredDeductibleAmount": "1000"})
        assert details["Eligible"] == "NO"
        assert "desired deduction" in details["Reason"]


class TestCommands:
    def test_offer_is_acknowledged_and_queued(self, system, send, transport):
        assert response_code(send(MessageType.LOAN_OFFER_REQUEST, offer_details())) == "8000"
        [item] = system.queue.list_items(WorkItemStatus.PENDING)
        assert item.task_type == TASK_PROCESS_OFFER
        assert transport.sent == []

        system.queue.run_pending()
        assert system.repository.require("APP-1001").status == S.APPROVED
        assert len(transport.messages(MessageType.LOAN_INITIAL_APPROVAL_NOTIFICATION)) == 1

    def test_application_locks_released_after_processing(self, system, send):
        for n in range(20):
            send(MessageType.LOAN_OFFER_REQUEST, offer_details(f"APP-{3000 + n}"))
        system.queue.run_pending()
        assert len(system.saga._locks) == 0

    def test_redelivered_offer_after_decision(self, system, send):
        send(MessageType.LOAN_OFFER_REQUEST, offer_details())
        system.queue.run_pending()
        assert response_code(send(MessageType.LOAN_OFFER_REQUEST, offer_details())) == "8000"
        assert system.queue.list_items(WorkItemStatus.PENDING) == []

    def test_final_approval_twice_makes_one_loan(self, system, send, ledger, transport):
        app = run_offer_to_disbursement(system, send)
        assert app.status == S.DISBURSED

        assert response_code(send(MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION,
                                  {"ApplicationNumber": app.id, "Approval": "APPROVED"})) == "8000"
        system.queue.run_pending()
        assert ledger.calls["create_client"] == 1
        assert ledger.calls["create_loan"] == 1
        assert len(transport.messages(MessageType.LOAN_DISBURSEMENT_NOTIFICATION)) == 2

    def test_final_approval_for_unknown_application(self, send):
        reply = send(MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION,
                     {"ApplicationNumber": "APP-404", "Approval": "APPROVED"})
        assert response_code(reply) == "8004"

    def test_final_approval_before_decision(self, send):
        send(MessageType.LOAN_OFFER_REQUEST, offer_details())
        reply = send(MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION,
                     {"ApplicationNumber": "APP-1001", "Approval": "APPROVED"})
        assert response_code(reply) == "8006"

    def test_cancel_after_disbursement_refused(self, system, send):
        app = run_offer_to_disbursement(system, send)
        reply = send(MessageType.LOAN_CANCELLATION_NOTIFICATION,
                     {"ApplicationNumber": app.id, "Reason": "Changed my mind"})
        assert response_code(reply) == "8006"
        assert system.repository.require(app.id).status == S.DISBURSED
        assert system.queue.list_items(WorkItemStatus.PENDING) == []

    def test_cancel_before_final_approval(self, system, send):
        send(MessageType.LOAN_OFFER_REQUEST, offer_details())
        system.queue.run_pending()
        assert response_code(send(MessageType.LOAN_CANCELLATION_NOTIFICATION,
                                  {"ApplicationNumber": "APP-1001"})) == "8000"
        system.queue.run_pending()
        assert system.repository.require("APP-1001").status == S.CANCELLED

    def test_takeover_payment_for_new_loan_refused(self, system, send):
        send(MessageType.LOAN_OFFER_REQUEST, offer_details())
        reply = send(MessageType.TAKEOVER_PAYMENT_NOTIFICATION,
                     {"ApplicationNumber": "APP-1001", "PaymentReferenceNumber": "PAY-1"})
        assert response_code(reply) == "8006"

    def test_takeover_through_the_gateway(self, system, send):
        details = offer_details(TakeOverAmount="1000000", FSP1Code="FL0001", FSP1LoanNumber="OLD-1")
        send(MessageType.LOAN_TAKEOVER_OFFER_REQUEST, details)
        system.queue.run_pending()
        send(MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION, {"ApplicationNumber": "APP-1001", "Approval": "APPROVED"})
        system.queue.run_pending()
        assert system.repository.require("APP-1001").status == S.WAITING_FOR_LIQUIDATION

        assert response_code(send(MessageType.TAKEOVER_PAYMENT_NOTIFICATION,
                                  {"ApplicationNumber": "APP-1001", "PaymentAmount": "1000000"})) == "8000"
        system.queue.run_pending()
        assert system.repository.require("APP-1001").status == S.DISBURSED

    def test_restructure_request(self, system, send):
        app = run_offer_to_disbursement(system, send)
        reply = send(MessageType.LOAN_RESTRUCTURE_REQUEST, {
            "ApplicationNumber": "APP-2001",
            "CheckNumber": "CHK-77001",
            "LoanNumber": app.external_refs["ess_loan_alias"],
            "Tenure": "72",
        })
        assert response_code(reply) == "8000"
        system.queue.run_pending()
        assert system.repository.require("APP-2001").status == S.APPROVED

    def test_restructure_of_unknown_loan(self, send):
        reply = send(MessageType.LOAN_RESTRUCTURE_REQUEST, {
            "ApplicationNumber": "APP-2001", "CheckNumber": "CHK-77001", "LoanNumber": "LN-404", "Tenure": "72",
        })
        assert response_code(reply) == "8004"
