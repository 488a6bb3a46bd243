"""
Outbound Callback Module

Delivers signed notifications (initial approval, disbursement, disbursement
failure) to the portal's callback endpoint. Every callback is signed once,
stored in an outbox table and then POSTed; the stored XML is what gets
re-sent on redelivery, so a resend is byte-identical to the original.

A callback counts as delivered when the portal answers 2xx and its reply,
if it carries a ResponseCode, says 8000.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .audit import AuditTrail, AuditEventType
from .exceptions import NotFoundError, ResponseCode
from .logging_config import log_action
from .messages import MessageFactory, MessageType, read_response_code, render_message
from .signature import SignatureProvider
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ess_bridge.callbacks")


class OutboundStatus(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class OutboundMessage(StorageRecord):
    """A signed callback and its delivery history"""
    application_id: str
    message_type: MessageType
    msg_id: str
    body: str
    status: OutboundStatus = OutboundStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    response_code: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @property
    def delivered(self) -> bool:
        return self.status == OutboundStatus.DELIVERED

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['message_type'] = self.message_type.value
        result['status'] = self.status.value
        result['delivered_at'] = self.delivered_at.isoformat() if self.delivered_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboundMessage':
        data['message_type'] = MessageType(data['message_type'])
        data['status'] = OutboundStatus(data['status'])
        if data.get('delivered_at'):
            data['delivered_at'] = datetime.fromisoformat(data['delivered_at'])
        return super().from_dict(data)


@dataclass
class CallbackReply:
    status_code: int
    text: str


class CallbackTransport(ABC):
    """HTTP boundary for callback delivery"""

    @abstractmethod
    def post(self, url: str, body: str, timeout: float) -> CallbackReply:
        """POST an XML body; raise requests.RequestException on transport failure"""
        pass


class RequestsCallbackTransport(CallbackTransport):
    def post(self, url: str, body: str, timeout: float) -> CallbackReply:
        response = requests.post(
            url,
            data=body.encode("utf-8"),
            timeout=timeout,
            headers={"Content-Type": "application/xml"}
        )
        return CallbackReply(response.status_code, response.text)


class CallbackDispatcher:
    """Signs, stores and delivers callbacks to the portal"""

    def __init__(
        self,
        storage: StorageInterface,
        signer: SignatureProvider,
        factory: MessageFactory,
        callback_url: str,
        transport: Optional[CallbackTransport] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.signer = signer
        self.factory = factory
        self.callback_url = callback_url
        self.transport = transport or RequestsCallbackTransport()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.audit_trail = audit_trail
        self.table_name = "outbound_messages"

    def send(self, application_id: str, message_type: MessageType,
             details: Dict[str, Any]) -> OutboundMessage:
        """Sign, persist and attempt delivery of one callback"""
        header = self.factory.header(message_type)
        body = render_message(self.signer, header, details)

        now = datetime.now(timezone.utc)
        message = OutboundMessage(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            application_id=application_id,
            message_type=message_type,
            msg_id=header.msg_id,
            body=body,
        )
        self._save(message)
        return self._deliver(message)

    def _save(self, message: OutboundMessage) -> None:
        self.storage.save(self.table_name, message.id, message.to_dict())

    def _deliver(self, message: OutboundMessage) -> OutboundMessage:
        message.attempts += 1
        message.updated_at = datetime.now(timezone.utc)
        try:
            reply = self.transport.post(self.callback_url, message.body, self.timeout)
            code = read_response_code(reply.text)
            message.response_code = code
            if 200 <= reply.status_code < 300 and code in (None, ResponseCode.SUCCESS):
                message.status = OutboundStatus.DELIVERED
                message.delivered_at = message.updated_at
                message.last_error = None
            else:
                message.status = OutboundStatus.FAILED
                message.last_error = f"HTTP {reply.status_code}, response code {code}"
        except requests.RequestException as e:
            message.status = OutboundStatus.FAILED
            message.last_error = f"{type(e).__name__}: {e}"

        self._save(message)

        if message.delivered:
            log_action(logger, "info", f"Delivered {message.message_type.value}",
                       application_id=message.application_id,
                       message_type=message.message_type.value,
                       action="callback_delivered", correlation_id=message.msg_id)
        else:
            log_action(logger, "warning",
                       f"Callback {message.message_type.value} not delivered: {message.last_error}",
                       application_id=message.application_id,
                       message_type=message.message_type.value,
                       action="callback_failed", correlation_id=message.msg_id,
                       extra={"attempts": message.attempts})

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.CALLBACK_DELIVERED if message.delivered else AuditEventType.CALLBACK_FAILED,
                entity_type="loan_application",
                entity_id=message.application_id,
                metadata={
                    "message_type": message.message_type,
                    "msg_id": message.msg_id,
                    "attempts": message.attempts,
                    "error": message.last_error,
                },
                actor="FSP"
            )
        return message

    def get(self, message_id: str) -> Optional[OutboundMessage]:
        data = self.storage.load(self.table_name, message_id)
        return OutboundMessage.from_dict(data) if data else None

    def redeliver(self, message_id: str) -> OutboundMessage:
        """Resend a stored callback exactly as it was signed"""
        message = self.get(message_id)
        if message is None:
            raise NotFoundError(f"Outbound message {message_id} not found")
        return self._deliver(message)

    def retry_failed(self, max_attempts: Optional[int] = None) -> Dict[str, int]:
        """Redeliver failed callbacks that are still under the attempt limit"""
        limit = max_attempts or self.max_attempts
        results = {"attempted": 0, "succeeded": 0, "failed": 0}
        for data in self.storage.find(self.table_name, {"status": OutboundStatus.FAILED.value}):
            message = OutboundMessage.from_dict(data)
            if message.attempts >= limit:
                continue
            results["attempted"] += 1
            if self._deliver(message).delivered:
                results["succeeded"] += 1
            else:
                results["failed"] += 1
        return results

    def history(self, application_id: str) -> List[OutboundMessage]:
        messages = [OutboundMessage.from_dict(data)
                    for data in self.storage.find(self.table_name, {"application_id": application_id})]
        messages.sort(key=lambda m: m.created_at)
        return messages
