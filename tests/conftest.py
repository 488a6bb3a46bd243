"""
Shared fixtures: RSA key pairs for both ends of the portal link, a
recording callback transport and a fully wired in-memory bridge.
"""

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Tuple

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from ess_bridge.api import BridgeSystem
from ess_bridge.callbacks import CallbackReply, CallbackTransport
from ess_bridge.config import BridgeConfig
from ess_bridge.ledger import InMemoryLedger
from ess_bridge.messages import MessageHeader, MessageType, canonical_bytes, generate_msg_id, render_message
from ess_bridge.signature import RSASignatureProvider
from ess_bridge.storage import InMemoryStorage


FSP_CODE = "FL7456"

PORTAL_OK = (
    "<Document><Data><Header><MessageType>RESPONSE</MessageType></Header>"
    "<MessageDetails><ResponseCode>8000</ResponseCode></MessageDetails></Data></Document>"
)


class RecordingTransport(CallbackTransport):
    """Captures callbacks instead of POSTing them"""

    def __init__(self, status_code: int = 200, reply: str = PORTAL_OK, error: Optional[Exception] = None):
        self.status_code = status_code
        self.reply = reply
        self.error = error
        self.sent: List[Tuple[str, str]] = []

    def post(self, url: str, body: str, timeout: float) -> CallbackReply:
        self.sent.append((url, body))
        if self.error:
            raise self.error
        return CallbackReply(self.status_code, self.reply)

    def messages(self, message_type: Optional[MessageType] = None) -> List[Tuple[str, Dict[str, str]]]:
        result = [read_envelope(body) for _, body in self.sent]
        if message_type:
            result = [m for m in result if m[0] == message_type.value]
        return result


def read_envelope(xml: str, verifier: Optional[RSASignatureProvider] = None) -> Tuple[str, Dict[str, str]]:
    """Message type and details of an envelope, optionally checking its signature"""
    root = ET.fromstring(xml)
    data = root.find("Data")
    if verifier is not None:
        assert verifier.verify(canonical_bytes(data), root.findtext("Signature")), "bad signature"
    details = {child.tag: child.text for child in data.find("MessageDetails")}
    return data.findtext("Header/MessageType"), details


class Portal:
    """Builds signed inbound envelopes the way the portal does"""

    def __init__(self, signature: RSASignatureProvider, fsp_code: str = FSP_CODE):
        self.signature = signature
        self.fsp_code = fsp_code

    def envelope(self, message_type: MessageType, details: Dict[str, Any],
                 fsp_code: Optional[str] = None) -> bytes:
        header = MessageHeader(
            sender="ESS_UTUMISHI",
            receiver="ESS Bridge FSP",
            fsp_code=fsp_code or self.fsp_code,
            msg_id=generate_msg_id(message_type),
            message_type=message_type,
        )
        return render_message(self.signature, header, details).encode("utf-8")


def offer_details(application_number: str = "APP-1001", **overrides) -> Dict[str, Any]:
    details = {
        "CheckNumber": "CHK-77001",
        "FirstName": "Asha",
        "LastName": "Mwakyusa",
        "NIN": "19850101-12345-00001-22",
        "BankAccountNumber": "0150123456789",
        "MobileNumber": "255712345678",
        "BasicSalary": "1765000",
        "NetSalary": "1200000",
        "OneThirdAmount": "588333",
        "TotalEmployeeDeduction": "176666",
        "DeductibleAmount": "411667",
        "DesiredDeductibleAmount": "411667",
        "RequestedAmount": "5000000",
        "Tenure": "60",
        "ProductCode": "17",
        "ApplicationNumber": application_number,
    }
    details.update(overrides)
    return {k: v for k, v in details.items() if v is not None}


@pytest.fixture(scope="session")
def fsp_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def portal_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def bridge_signature(fsp_key, portal_key):
    """Signs as the FSP, verifies the portal"""
    return RSASignatureProvider(fsp_key, portal_key.public_key())


@pytest.fixture
def portal_signature(fsp_key, portal_key):
    """Signs as the portal, verifies the FSP"""
    return RSASignatureProvider(portal_key, fsp_key.public_key())


@pytest.fixture
def portal(portal_signature):
    return Portal(portal_signature)


@pytest.fixture
def settings():
    return BridgeConfig(
        database_path="memory",
        fsp_code=FSP_CODE,
        callback_url="http://portal.test/callback",
        worker_enabled=False,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def system(settings, storage, ledger, bridge_signature, transport):
    return BridgeSystem(
        settings,
        storage=storage,
        ledger=ledger,
        signature=bridge_signature,
        callback_transport=transport,
    )
