"""
Protocol Message Module

Signed XML envelope used on both directions of the portal link:

    <Document>
      <Data>
        <Header>
          <Sender/> <Receiver/> <FSPCode/> <MsgId/> <MessageType/>
        </Header>
        <MessageDetails> ... </MessageDetails>
      </Data>
      <Signature>base64</Signature>
    </Document>

The signature covers the C14N 2.0 form of <Data> with text whitespace
stripped, so pretty-printing on either side does not break verification.

Inbound MessageDetails are validated into one pydantic model per message
type. Validation failures map to protocol response codes: a missing field
is 8003, an unparsable amount or count is 8005, anything else is 8001.
"""

import copy
import random
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .calculator import round_money
from .exceptions import ProtocolError, ResponseCode
from .signature import SignatureProvider


class MessageType(Enum):
    """Protocol message types"""
    # Inbound queries
    LOAN_CHARGES_REQUEST = "LOAN_CHARGES_REQUEST"
    TOP_UP_PAY_OFF_BALANCE_REQUEST = "TOP_UP_PAY_0FF_BALANCE_REQUEST"  # zero is on the wire
    TAKEOVER_PAY_OFF_BALANCE_REQUEST = "TAKEOVER_PAY_OFF_BALANCE_REQUEST"
    LOAN_RESTRUCTURE_AFFORDABILITY_REQUEST = "LOAN_RESTRUCTURE_AFFORDABILITY_REQUEST"
    LOAN_RESTRUCTURE_BALANCE_REQUEST = "LOAN_RESTRUCTURE_BALANCE_REQUEST"

    # Inbound commands
    LOAN_OFFER_REQUEST = "LOAN_OFFER_REQUEST"
    TOP_UP_OFFER_REQUEST = "TOP_UP_OFFER_REQUEST"
    LOAN_TAKEOVER_OFFER_REQUEST = "LOAN_TAKEOVER_OFFER_REQUEST"
    LOAN_RESTRUCTURE_REQUEST = "LOAN_RESTRUCTURE_REQUEST"
    LOAN_FINAL_APPROVAL_NOTIFICATION = "LOAN_FINAL_APPROVAL_NOTIFICATION"
    LOAN_CANCELLATION_NOTIFICATION = "LOAN_CANCELLATION_NOTIFICATION"
    TAKEOVER_PAYMENT_NOTIFICATION = "TAKEOVER_PAYMENT_NOTIFICATION"

    # Outbound
    RESPONSE = "RESPONSE"
    LOAN_CHARGES_RESPONSE = "LOAN_CHARGES_RESPONSE"
    LOAN_TOP_UP_BALANCE_RESPONSE = "LOAN_TOP_UP_BALANCE_RESPONSE"
    LOAN_TAKEOVER_BALANCE_RESPONSE = "LOAN_TAKEOVER_BALANCE_RESPONSE"
    LOAN_RESTRUCTURE_AFFORDABILITY_RESPONSE = "LOAN_RESTRUCTURE_AFFORDABILITY_RESPONSE"
    LOAN_RESTRUCTURE_BALANCE_RESPONSE = "LOAN_RESTRUCTURE_BALANCE_RESPONSE"
    LOAN_INITIAL_APPROVAL_NOTIFICATION = "LOAN_INITIAL_APPROVAL_NOTIFICATION"
    LOAN_DISBURSEMENT_NOTIFICATION = "LOAN_DISBURSEMENT_NOTIFICATION"
    LOAN_DISBURSEMENT_FAILURE_NOTIFICATION = "LOAN_DISBURSEMENT_FAILURE_NOTIFICATION"


QUERY_TYPES = frozenset({
    MessageType.LOAN_CHARGES_REQUEST,
    MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST,
    MessageType.TAKEOVER_PAY_OFF_BALANCE_REQUEST,
    MessageType.LOAN_RESTRUCTURE_AFFORDABILITY_REQUEST,
    MessageType.LOAN_RESTRUCTURE_BALANCE_REQUEST,
})

COMMAND_TYPES = frozenset({
    MessageType.LOAN_OFFER_REQUEST,
    MessageType.TOP_UP_OFFER_REQUEST,
    MessageType.LOAN_TAKEOVER_OFFER_REQUEST,
    MessageType.LOAN_RESTRUCTURE_REQUEST,
    MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION,
    MessageType.LOAN_CANCELLATION_NOTIFICATION,
    MessageType.TAKEOVER_PAYMENT_NOTIFICATION,
})

INBOUND_TYPES = QUERY_TYPES | COMMAND_TYPES

MSG_ID_PREFIXES = {
    MessageType.RESPONSE: "RESP",
    MessageType.LOAN_CHARGES_RESPONSE: "LCHR",
    MessageType.LOAN_INITIAL_APPROVAL_NOTIFICATION: "LIAN",
    MessageType.LOAN_DISBURSEMENT_NOTIFICATION: "LDIS",
    MessageType.LOAN_DISBURSEMENT_FAILURE_NOTIFICATION: "LDFN",
    MessageType.LOAN_TOP_UP_BALANCE_RESPONSE: "LTUB",
    MessageType.LOAN_TAKEOVER_BALANCE_RESPONSE: "LTBR",
    MessageType.LOAN_RESTRUCTURE_AFFORDABILITY_RESPONSE: "LRAR",
    MessageType.LOAN_RESTRUCTURE_BALANCE_RESPONSE: "LRBS",
}


def generate_msg_id(message_type: MessageType, now: Optional[datetime] = None) -> str:
    """Outbound message id: <PREFIX>_<yyMMddHHmm><4 random digits>"""
    now = now or datetime.now(timezone.utc)
    prefix = MSG_ID_PREFIXES.get(message_type, "MSG")
    return f"{prefix}_{now.strftime('%y%m%d%H%M')}{random.randint(0, 9999):04d}"


# ---------------------------------------------------------------------------
# MessageDetails schemas (one per inbound message type)
# ---------------------------------------------------------------------------

class MessageDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class SalaryPosition(MessageDetails):
    """Employment and salary fields shared by quotes and offers"""
    check_number: str = Field(alias="CheckNumber")
    designation_code: Optional[str] = Field(None, alias="DesignationCode")
    designation_name: Optional[str] = Field(None, alias="DesignationName")
    basic_salary: Decimal = Field(alias="BasicSalary", ge=0)
    net_salary: Decimal = Field(alias="NetSalary", ge=0)
    one_third_amount: Decimal = Field(alias="OneThirdAmount", ge=0)
    total_employee_deduction: Decimal = Field(alias="TotalEmployeeDeduction", ge=0)
    deductible_amount: Optional[Decimal] = Field(None, alias="DeductibleAmount", ge=0)
    desired_deductible_amount: Optional[Decimal] = Field(None, alias="DesiredDeductibleAmount", ge=0)
    requested_amount: Optional[Decimal] = Field(None, alias="RequestedAmount", ge=0)
    tenure: Optional[int] = Field(None, alias="Tenure", ge=1)
    retirement_date: Optional[str] = Field(None, alias="RetirementDate")
    terms_of_employment: Optional[str] = Field(None, alias="TermsOfEmployment")
    vote_code: Optional[str] = Field(None, alias="VoteCode")
    product_code: str = Field(alias="ProductCode")


class LoanChargesRequest(SalaryPosition):
    deductible_amount: Decimal = Field(alias="DeductibleAmount", ge=0)
    job_class_code: Optional[str] = Field(None, alias="JobClassCode")


class LoanOfferRequest(SalaryPosition):
    application_number: str = Field(alias="ApplicationNumber")
    first_name: str = Field(alias="FirstName")
    middle_name: Optional[str] = Field(None, alias="MiddleName")
    last_name: str = Field(alias="LastName")
    sex: Optional[str] = Field(None, alias="Sex")
    nin: str = Field(alias="NIN")
    date_of_birth: Optional[str] = Field(None, alias="DateOfBirth")
    employment_date: Optional[str] = Field(None, alias="EmploymentDate")
    marital_status: Optional[str] = Field(None, alias="MaritalStatus")
    bank_account_number: str = Field(alias="BankAccountNumber")
    swift_code: Optional[str] = Field(None, alias="SwiftCode")
    vote_name: Optional[str] = Field(None, alias="VoteName")
    mobile_number: Optional[str] = Field(None, alias="MobileNumber")
    email_address: Optional[str] = Field(None, alias="EmailAddress")
    physical_address: Optional[str] = Field(None, alias="PhysicalAddress")
    loan_purpose: Optional[str] = Field(None, alias="LoanPurpose")
    funding: Optional[str] = Field(None, alias="Funding")


class TopUpOfferRequest(LoanOfferRequest):
    existing_loan_number: Optional[str] = Field(None, alias="LoanNumber")


class TakeoverOfferRequest(LoanOfferRequest):
    current_fsp_code: Optional[str] = Field(None, alias="FSP1Code")
    current_fsp_loan_number: Optional[str] = Field(None, alias="FSP1LoanNumber")
    takeover_amount: Optional[Decimal] = Field(None, alias="TakeOverAmount", ge=0)


class RestructureRequest(MessageDetails):
    application_number: str = Field(alias="ApplicationNumber")
    check_number: str = Field(alias="CheckNumber")
    loan_number: str = Field(alias="LoanNumber")
    tenure: int = Field(alias="Tenure", ge=1)
    desired_deductible_amount: Optional[Decimal] = Field(None, alias="DesiredDeductibleAmount", ge=0)
    basic_salary: Optional[Decimal] = Field(None, alias="BasicSalary", ge=0)
    net_salary: Optional[Decimal] = Field(None, alias="NetSalary", ge=0)
    total_employee_deduction: Optional[Decimal] = Field(None, alias="TotalEmployeeDeduction", ge=0)
    reason: Optional[str] = Field(None, alias="Reason")


class FinalApprovalNotification(MessageDetails):
    application_number: str = Field(alias="ApplicationNumber")
    loan_number: Optional[str] = Field(None, alias="LoanNumber")
    fsp_reference_number: Optional[str] = Field(None, alias="FSPReferenceNumber")
    approval: Literal["APPROVED", "REJECTED"] = Field(alias="Approval")
    reason: Optional[str] = Field(None, alias="Reason")


class CancellationNotification(MessageDetails):
    application_number: str = Field(alias="ApplicationNumber")
    reason: Optional[str] = Field(None, alias="Reason")
    fsp_reference_number: Optional[str] = Field(None, alias="FSPReferenceNumber")
    loan_number: Optional[str] = Field(None, alias="LoanNumber")


class TakeoverPaymentNotification(MessageDetails):
    application_number: str = Field(alias="ApplicationNumber")
    loan_number: Optional[str] = Field(None, alias="LoanNumber")
    payment_reference_number: Optional[str] = Field(None, alias="PaymentReferenceNumber")
    payment_amount: Optional[Decimal] = Field(None, alias="PaymentAmount", ge=0)
    payment_date: Optional[str] = Field(None, alias="PaymentDate")


class BalanceRequest(MessageDetails):
    loan_number: str = Field(alias="LoanNumber")
    check_number: Optional[str] = Field(None, alias="CheckNumber")
    first_name: Optional[str] = Field(None, alias="FirstName")
    last_name: Optional[str] = Field(None, alias="LastName")


class RestructureAffordabilityRequest(MessageDetails):
    loan_number: str = Field(alias="LoanNumber")
    check_number: Optional[str] = Field(None, alias="CheckNumber")
    tenure: int = Field(alias="Tenure", ge=1)
    desired_deductible_amount: Optional[Decimal] = Field(None, alias="DesiredDeductibleAmount", ge=0)
    basic_salary: Optional[Decimal] = Field(None, alias="BasicSalary", ge=0)
    total_employee_deduction: Optional[Decimal] = Field(None, alias="TotalEmployeeDeduction", ge=0)


INBOUND_MODELS: Dict[MessageType, Type[MessageDetails]] = {
    MessageType.LOAN_CHARGES_REQUEST: LoanChargesRequest,
    MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST: BalanceRequest,
    MessageType.TAKEOVER_PAY_OFF_BALANCE_REQUEST: BalanceRequest,
    MessageType.LOAN_RESTRUCTURE_AFFORDABILITY_REQUEST: RestructureAffordabilityRequest,
    MessageType.LOAN_RESTRUCTURE_BALANCE_REQUEST: BalanceRequest,
    MessageType.LOAN_OFFER_REQUEST: LoanOfferRequest,
    MessageType.TOP_UP_OFFER_REQUEST: TopUpOfferRequest,
    MessageType.LOAN_TAKEOVER_OFFER_REQUEST: TakeoverOfferRequest,
    MessageType.LOAN_RESTRUCTURE_REQUEST: RestructureRequest,
    MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION: FinalApprovalNotification,
    MessageType.LOAN_CANCELLATION_NOTIFICATION: CancellationNotification,
    MessageType.TAKEOVER_PAYMENT_NOTIFICATION: TakeoverPaymentNotification,
}


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MessageHeader:
    sender: str
    receiver: str
    fsp_code: str
    msg_id: str
    message_type: MessageType


@dataclass(frozen=True)
class ProtocolMessage:
    """A verified, schema-validated inbound message"""
    header: MessageHeader
    details: MessageDetails

    @property
    def message_type(self) -> MessageType:
        return self.header.message_type

    @property
    def msg_id(self) -> str:
        return self.header.msg_id

    @property
    def fields(self) -> Dict[str, Any]:
        """Details keyed by their wire names, without unset optionals"""
        return self.details.model_dump(by_alias=True, exclude_none=True)


HEADER_FIELDS = ("Sender", "Receiver", "FSPCode", "MsgId", "MessageType")

NUMERIC_ERROR_PREFIXES = ("decimal", "int", "float", "finite", "greater_than", "less_than")


def canonical_bytes(element: ET.Element) -> bytes:
    """Canonical form of an element, the exact bytes that get signed"""
    clone = copy.deepcopy(element)
    clone.tail = None
    text = ET.tostring(clone, encoding="unicode")
    return ET.canonicalize(xml_data=text, strip_text=True).encode("utf-8")


def _validation_error(message_type: MessageType, exc: ValidationError) -> ProtocolError:
    errors = exc.errors()
    missing = [str(err['loc'][-1]) for err in errors if err['type'] == 'missing']
    if missing:
        return ProtocolError(ResponseCode.MISSING_FIELD,
                             f"Missing required field(s): {', '.join(missing)}")
    numeric = [str(err['loc'][-1]) for err in errors if err['type'].startswith(NUMERIC_ERROR_PREFIXES)]
    if numeric:
        return ProtocolError(ResponseCode.INVALID_CALCULATION,
                             f"Invalid numeric value for: {', '.join(numeric)}")
    first = errors[0]
    return ProtocolError(ResponseCode.MALFORMED_MESSAGE,
                         f"Invalid {message_type.value} field {first['loc'][-1]}: {first['msg']}")


def parse_message(raw: Any, verifier: SignatureProvider) -> ProtocolMessage:
    """
    Verify and parse an inbound signed envelope.

    Raises:
        ProtocolError: 8001 for malformed, unsigned, unverifiable or unknown
            messages, 8003 for missing fields, 8005 for bad numbers
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not raw or not raw.strip():
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE, "Empty message body")

    try:
        root = ET.fromstring(raw)
    except ET.ParseError as exc:
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE, f"Malformed XML: {exc}")

    data = root.find("Data")
    signature = root.findtext("Signature")
    if data is None:
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE, "Missing Data element")
    if not signature or not signature.strip():
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE, "Missing Signature element")
    if not verifier.verify(canonical_bytes(data), signature):
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE, "Signature verification failed")

    header_el = data.find("Header")
    if header_el is None:
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE, "Missing Header element")
    header_values = {name: (header_el.findtext(name) or "").strip() for name in HEADER_FIELDS}
    absent = [name for name, value in header_values.items() if not value]
    if absent:
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE,
                            f"Missing header field(s): {', '.join(absent)}")

    try:
        message_type = MessageType(header_values["MessageType"])
    except ValueError:
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE,
                            f"Unknown message type {header_values['MessageType']}")
    if message_type not in INBOUND_TYPES:
        raise ProtocolError(ResponseCode.MALFORMED_MESSAGE,
                            f"Message type {message_type.value} is not accepted inbound")

    details_el = data.find("MessageDetails")
    if details_el is None:
        raise ProtocolError(ResponseCode.MISSING_FIELD, "Missing MessageDetails element")
    fields = {}
    for child in details_el:
        text = (child.text or "").strip()
        if text:
            fields[child.tag] = text

    try:
        details = INBOUND_MODELS[message_type].model_validate(fields)
    except ValidationError as exc:
        raise _validation_error(message_type, exc)

    header = MessageHeader(
        sender=header_values["Sender"],
        receiver=header_values["Receiver"],
        fsp_code=header_values["FSPCode"],
        msg_id=header_values["MsgId"],
        message_type=message_type,
    )
    return ProtocolMessage(header=header, details=details)


def format_value(value: Any) -> str:
    if isinstance(value, Decimal):
        return str(round_money(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def render_message(signer: SignatureProvider, header: MessageHeader,
                   details: Dict[str, Any]) -> str:
    """Build and sign an outbound envelope. None-valued details are omitted."""
    document = ET.Element("Document")
    data = ET.SubElement(document, "Data")
    header_el = ET.SubElement(data, "Header")
    for name, value in zip(HEADER_FIELDS, (header.sender, header.receiver, header.fsp_code,
                                           header.msg_id, header.message_type.value)):
        ET.SubElement(header_el, name).text = value
    details_el = ET.SubElement(data, "MessageDetails")
    for name, value in details.items():
        if value is None:
            continue
        ET.SubElement(details_el, name).text = format_value(value)

    ET.SubElement(document, "Signature").text = signer.sign(canonical_bytes(data))
    return ET.tostring(document, encoding="unicode")


class MessageFactory:
    """Builds outbound headers for this FSP"""

    def __init__(self, fsp_code: str, fsp_name: str, portal_name: str):
        self.fsp_code = fsp_code
        self.fsp_name = fsp_name
        self.portal_name = portal_name

    def header(self, message_type: MessageType) -> MessageHeader:
        return MessageHeader(
            sender=self.fsp_name,
            receiver=self.portal_name,
            fsp_code=self.fsp_code,
            msg_id=generate_msg_id(message_type),
            message_type=message_type,
        )

    def render(self, signer: SignatureProvider, message_type: MessageType,
               details: Dict[str, Any]) -> str:
        return render_message(signer, self.header(message_type), details)

    def render_response(self, signer: SignatureProvider, code: str, description: str) -> str:
        """RESPONSE envelope carrying only ResponseCode and Description"""
        return self.render(signer, MessageType.RESPONSE,
                           {"ResponseCode": code, "Description": description})


def read_response_code(raw: Any) -> Optional[str]:
    """Best-effort ResponseCode from a portal reply, without verification"""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        root = ET.fromstring(raw)
    except ET.ParseError:
        return None
    code = root.findtext("Data/MessageDetails/ResponseCode")
    return code.strip() if code else None


def wire_fields(details: MessageDetails) -> Dict[str, str]:
    """Details as wire-name strings, for snapshots and work item payloads"""
    return {name: format_value(value)
            for name, value in details.model_dump(by_alias=True, exclude_none=True).items()}
