"""
Tests for the signed XML envelope and the per-type schemas
"""

import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ess_bridge.exceptions import ProtocolError, ResponseCode
from ess_bridge.messages import (
    COMMAND_TYPES, INBOUND_MODELS, INBOUND_TYPES, MessageFactory, MessageType, QUERY_TYPES,
    TopUpOfferRequest, generate_msg_id, parse_message, read_response_code, wire_fields,
)

from conftest import offer_details, read_envelope


def charges_details(**overrides):
    details = {
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
    details.update(overrides)
    return {k: v for k, v in details.items() if v is not None}


def expect_code(portal, bridge_signature, message_type, details, code):
    with pytest.raises(ProtocolError) as exc_info:
        parse_message(portal.envelope(message_type, details), bridge_signature)
    assert exc_info.value.response_code == code
    return exc_info.value


class TestMessageTypes:
    def test_every_inbound_type_has_a_schema(self):
        assert set(INBOUND_MODELS) == set(INBOUND_TYPES)
        assert not QUERY_TYPES & COMMAND_TYPES

    def test_top_up_balance_type_keeps_wire_spelling(self):
        assert MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST.value == "TOP_UP_PAY_0FF_BALANCE_REQUEST"

    def test_msg_id_format(self):
        now = datetime(2026, 3, 14, 9, 26, tzinfo=timezone.utc)
        msg_id = generate_msg_id(MessageType.LOAN_DISBURSEMENT_NOTIFICATION, now)
        assert re.fullmatch(r"LDIS_2603140926\d{4}", msg_id)
        assert generate_msg_id(MessageType.RESPONSE).startswith("RESP_")


class TestParsing:
    """Verification and schema validation of inbound envelopes"""

    def test_parse_offer(self, portal, bridge_signature):
        raw = portal.envelope(MessageType.LOAN_OFFER_REQUEST, offer_details())
        message = parse_message(raw, bridge_signature)
        assert message.message_type == MessageType.LOAN_OFFER_REQUEST
        assert message.header.fsp_code == "FL7456"
        assert message.details.application_number == "APP-1001"
        assert message.details.basic_salary == Decimal("1765000")
        assert message.details.tenure == 60
        assert message.fields["NIN"] == "19850101-12345-00001-22"

    def test_pretty_printed_envelope_still_verifies(self, portal, bridge_signature):
        raw = portal.envelope(MessageType.LOAN_CHARGES_REQUEST, charges_details())
        root = ET.fromstring(raw)
        ET.indent(root, space="    ")
        message = parse_message(ET.tostring(root, encoding="unicode"), bridge_signature)
        assert message.details.deductible_amount == Decimal("411667")

    def test_tampered_envelope(self, portal, bridge_signature):
        raw = portal.envelope(MessageType.LOAN_CHARGES_REQUEST, charges_details()).decode()
        tampered = raw.replace("<BasicSalary>1765000</BasicSalary>", "<BasicSalary>9765000</BasicSalary>")
        with pytest.raises(ProtocolError) as exc_info:
            parse_message(tampered, bridge_signature)
        assert exc_info.value.response_code == ResponseCode.MALFORMED_MESSAGE

    def test_signed_by_someone_else(self, portal, portal_signature):
        """The portal's verifier expects the FSP key, so a portal-signed message fails it"""
        raw = portal.envelope(MessageType.LOAN_CHARGES_REQUEST, charges_details())
        with pytest.raises(ProtocolError):
            parse_message(raw, portal_signature)

    @pytest.mark.parametrize("raw", [b"", b"   ", b"<Document><Data>", b"<Document/>",
                                     b"<Document><Data/></Document>"])
    def test_malformed(self, raw, bridge_signature):
        with pytest.raises(ProtocolError) as exc_info:
            parse_message(raw, bridge_signature)
        assert exc_info.value.response_code == ResponseCode.MALFORMED_MESSAGE

    def test_outbound_type_not_accepted(self, portal, bridge_signature):
        expect_code(portal, bridge_signature, MessageType.LOAN_DISBURSEMENT_NOTIFICATION,
                    {"ApplicationNumber": "APP-1"}, ResponseCode.MALFORMED_MESSAGE)

    def test_missing_field(self, portal, bridge_signature):
        error = expect_code(portal, bridge_signature, MessageType.LOAN_OFFER_REQUEST,
                            offer_details(NIN=None), ResponseCode.MISSING_FIELD)
        assert "NIN" in error.message

    def test_empty_details(self, portal, bridge_signature):
        raw = portal.envelope(MessageType.LOAN_CANCELLATION_NOTIFICATION, {}).decode()
        with pytest.raises(ProtocolError) as exc_info:
            parse_message(raw, bridge_signature)
        assert exc_info.value.response_code == ResponseCode.MISSING_FIELD

    @pytest.mark.parametrize("field,value", [
        ("BasicSalary", "lots"),
        ("Tenure", "sixty"),
        ("DeductibleAmount", "-10"),
        ("RequestedAmount", "NaN"),
    ])
    def test_bad_numbers(self, portal, bridge_signature, field, value):
        expect_code(portal, bridge_signature, MessageType.LOAN_CHARGES_REQUEST,
                    charges_details(**{field: value}), ResponseCode.INVALID_CALCULATION)

    def test_bad_enumeration(self, portal, bridge_signature):
        expect_code(portal, bridge_signature, MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION,
                    {"ApplicationNumber": "APP-1", "Approval": "MAYBE"}, ResponseCode.MALFORMED_MESSAGE)

    def test_unknown_fields_ignored(self, portal, bridge_signature):
        raw = portal.envelope(MessageType.LOAN_CANCELLATION_NOTIFICATION,
                              {"ApplicationNumber": "APP-1", "Colour": "blue"})
        message = parse_message(raw, bridge_signature)
        assert message.details.application_number == "APP-1"


class TestRendering:
    def test_response_is_signed_and_verifiable(self, bridge_signature, portal_signature):
        factory = MessageFactory("FL7456", "ESS Bridge FSP", "ESS_UTUMISHI")
        xml = factory.render_response(bridge_signature, ResponseCode.ILLEGAL_STATE, "Illegal state transition")
        message_type, details = read_envelope(xml, verifier=portal_signature)
        assert message_type == "RESPONSE"
        assert details == {"ResponseCode": "8006", "Description": "Illegal state transition"}
        assert read_response_code(xml) == "8006"

    def test_none_values_omitted_and_amounts_rounded(self, bridge_signature):
        factory = MessageFactory("FL7456", "ESS Bridge FSP", "ESS_UTUMISHI")
        xml = factory.render(bridge_signature, MessageType.LOAN_CHARGES_RESPONSE,
                             {"NetLoanAmount": Decimal("4775000"), "Reason": None, "Tenure": 60})
        _, details = read_envelope(xml)
        assert details == {"NetLoanAmount": "4775000.00", "Tenure": "60"}

    def test_read_response_code_tolerates_garbage(self):
        assert read_response_code("not xml") is None
        assert read_response_code(b"<Document/>") is None

    def test_wire_fields(self):
        details = TopUpOfferRequest.model_validate(offer_details(LoanNumber="LN-9"))
        fields = wire_fields(details)
        assert fields["LoanNumber"] == "LN-9"
        assert fields["BasicSalary"] == "1765000.00"
        assert "MiddleName" not in fields
