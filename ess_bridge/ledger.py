"""
Ledger Client Module

Operations the saga consumes from the core-banking ledger (Apache Fineract
REST API): client search/creation, loan creation, approval, disbursement,
rejection, lookup and rescheduling.

FineractLedgerClient talks HTTP through httpx with a per-call timeout.
InMemoryLedger is a deterministic stand-in with failure injection for
development and tests. Every failure surfaces as LedgerError so the saga
can treat the ledger uniformly as "unavailable".
"""

import httpx
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import LedgerError, LedgerUnavailableError

logger = logging.getLogger("ess_bridge.ledger")

DATE_FORMAT = "dd MMMM yyyy"
LOCALE = "en"


def _ledger_date(value: date) -> str:
    return value.strftime("%d %B %Y")


def _add_months(start_date: date, months: int) -> date:
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, 28)
    return date(year, month, day)


class LedgerLoanStatus(Enum):
    """Loan lifecycle as reported by the ledger"""
    SUBMITTED = "submitted"
    APPROVED = "approved"
    ACTIVE = "active"
    CLOSED = "closed"
    OVERPAID = "overpaid"
    WRITTEN_OFF = "written_off"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    UNKNOWN = "unknown"


SETTLED_STATUSES = frozenset({
    LedgerLoanStatus.CLOSED, LedgerLoanStatus.OVERPAID, LedgerLoanStatus.WRITTEN_OFF
})


@dataclass
class LedgerLoan:
    """Snapshot of a ledger loan account"""
    loan_id: str
    client_id: Optional[str]
    status: LedgerLoanStatus
    principal: Decimal = Decimal('0')
    principal_outstanding: Decimal = Decimal('0')
    annual_interest_rate: Decimal = Decimal('0')
    external_id: Optional[str] = None
    maturity_date: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == LedgerLoanStatus.ACTIVE

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES


@dataclass
class ClientProfile:
    """Identity used to find or create a ledger client"""
    external_id: str  # national identification number
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    mobile_no: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None


@dataclass
class LoanRequest:
    client_id: str
    product_id: int
    principal: Decimal
    tenure_months: int
    annual_interest_rate: Decimal
    external_id: str  # application id; makes creation searchable
    top_up_loan_id: Optional[str] = None


@dataclass
class LedgerEvent:
    """Business event pushed by the ledger's webhook"""
    action: str  # APPROVE, DISBURSE, RESCHEDULE
    loan_id: str
    entity_name: str = "LOAN"
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_webhook(cls, body: Dict[str, Any]) -> 'LedgerEvent':
        entity = str(body.get('entityName', 'LOAN')).upper()
        action = str(body.get('actionName', '')).upper()
        if entity == 'RESCHEDULELOAN' and action == 'APPROVE':
            action = 'RESCHEDULE'
        loan_id = body.get('loanId') or body.get('entityId') or body.get('resourceId')
        if not action or loan_id is None:
            raise ValueError("webhook body needs actionName and loanId or entityId")
        return cls(action=action, loan_id=str(loan_id), entity_name=entity, payload=body)


class LedgerClient(ABC):
    """Abstract ledger collaborator. Every call accepts a timeout in seconds."""

    @abstractmethod
    def search_client(self, external_id: str, timeout: Optional[float] = None) -> Optional[str]:
        """Return the ledger client id for an identity, if one exists"""
        pass

    @abstractmethod
    def create_client(self, profile: ClientProfile, timeout: Optional[float] = None) -> str:
        pass

    @abstractmethod
    def find_loan_by_external_id(self, external_id: str,
                                 timeout: Optional[float] = None) -> Optional[LedgerLoan]:
        pass

    @abstractmethod
    def create_loan(self, request: LoanRequest, timeout: Optional[float] = None) -> str:
        pass

    @abstractmethod
    def approve_loan(self, loan_id: str, timeout: Optional[float] = None) -> None:
        pass

    @abstractmethod
    def disburse_loan(self, loan_id: str, timeout: Optional[float] = None) -> None:
        pass

    @abstractmethod
    def reject_loan(self, loan_id: str, note: str, timeout: Optional[float] = None) -> None:
        pass

    @abstractmethod
    def get_loan(self, loan_id: str, timeout: Optional[float] = None) -> LedgerLoan:
        pass

    @abstractmethod
    def find_active_loans(self, external_id: str, timeout: Optional[float] = None) -> List[LedgerLoan]:
        """Active loans held by the client with this identity"""
        pass

    @abstractmethod
    def create_reschedule(self, loan_id: str, tenure_months: int, reason: str,
                          timeout: Optional[float] = None) -> str:
        """Submit and approve a reschedule; returns the reschedule id"""
        pass

    def close(self) -> None:
        """Release connections held by the client"""
        pass


def _parse_status(status: Optional[Dict[str, Any]]) -> LedgerLoanStatus:
    if not status:
        return LedgerLoanStatus.UNKNOWN
    if status.get('overpaid'):
        return LedgerLoanStatus.OVERPAID
    if status.get('closedWrittenOff'):
        return LedgerLoanStatus.WRITTEN_OFF
    if status.get('closedObligationsMet') or status.get('closed'):
        return LedgerLoanStatus.CLOSED
    if status.get('active'):
        return LedgerLoanStatus.ACTIVE
    if status.get('waitingForDisbursal'):
        return LedgerLoanStatus.APPROVED
    if status.get('pendingApproval'):
        return LedgerLoanStatus.SUBMITTED
    code = str(status.get('code', '')).lower()
    if 'rejected' in code:
        return LedgerLoanStatus.REJECTED
    if 'withdrawn' in code:
        return LedgerLoanStatus.WITHDRAWN
    return LedgerLoanStatus.UNKNOWN


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal('0')


def _parse_loan(data: Dict[str, Any]) -> LedgerLoan:
    summary = data.get('summary') or {}
    timeline = data.get('timeline') or {}
    maturity = timeline.get('expectedMaturityDate')
    if isinstance(maturity, list) and len(maturity) == 3:
        maturity = date(*maturity).isoformat()
    return LedgerLoan(
        loan_id=str(data['id']),
        client_id=str(data['clientId']) if data.get('clientId') is not None else None,
        status=_parse_status(data.get('status')),
        principal=_decimal(data.get('principal') or data.get('approvedPrincipal')),
        principal_outstanding=_decimal(summary.get('principalOutstanding', data.get('loanBalance'))),
        annual_interest_rate=_decimal(data.get('annualInterestRate')),
        external_id=data.get('externalId'),
        maturity_date=maturity,
    )


class FineractLedgerClient(LedgerClient):
    """Fineract REST client"""

    def __init__(
        self,
        base_url: str,
        tenant: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        office_id: int = 1,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.office_id = office_id
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            auth=(username, password),
            headers={"Fineract-Platform-TenantId": tenant, "Accept": "application/json"},
            transport=transport,
        )

    def _request(self, method: str, path: str, operation: str,
                 timeout: Optional[float] = None, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, timeout=timeout or self.timeout, **kwargs)
        except httpx.TimeoutException:
            logger.warning(f"Ledger {operation} timed out")
            raise LedgerUnavailableError(f"Ledger {operation} timed out", operation=operation)
        except httpx.HTTPError as e:
            logger.warning(f"Ledger {operation} transport error: {e}")
            raise LedgerUnavailableError(f"Ledger {operation} failed: {e}", operation=operation)

        if response.status_code >= 400:
            detail = response.text[:300]
            logger.warning(f"Ledger {operation} returned HTTP {response.status_code}: {detail}")
            raise LedgerError(
                f"Ledger {operation} failed with HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
                operation=operation,
            )
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _resource_id(body: Dict[str, Any], *keys: str) -> str:
        for key in keys + ('resourceId',):
            if body.get(key) is not None:
                return str(body[key])
        raise LedgerError(f"Ledger response carries no id: {body}")

    def search_client(self, external_id: str, timeout: Optional[float] = None) -> Optional[str]:
        body = self._request("GET", "/v1/clients", "search_client", timeout,
                             params={"externalId": external_id})
        items = body.get('pageItems', []) if isinstance(body, dict) else body
        return str(items[0]['id']) if items else None

    def create_client(self, profile: ClientProfile, timeout: Optional[float] = None) -> str:
        today = _ledger_date(date.today())
        payload = {
            "officeId": self.office_id,
            "legalFormId": 1,
            "firstname": profile.first_name,
            "middlename": profile.middle_name,
            "lastname": profile.last_name,
            "externalId": profile.external_id,
            "mobileNo": profile.mobile_no,
            "active": True,
            "activationDate": today,
            "submittedOnDate": today,
            "dateFormat": DATE_FORMAT,
            "locale": LOCALE,
        }
        body = self._request("POST", "/v1/clients", "create_client", timeout,
                             json={k: v for k, v in payload.items() if v is not None})
        return self._resource_id(body, 'clientId')

    def find_loan_by_external_id(self, external_id: str,
                                 timeout: Optional[float] = None) -> Optional[LedgerLoan]:
        body = self._request("GET", "/v1/loans", "find_loan", timeout,
                             params={"externalId": external_id, "limit": 1})
        items = body.get('pageItems', []) if isinstance(body, dict) else body
        return _parse_loan(items[0]) if items else None

    def create_loan(self, request: LoanRequest, timeout: Optional[float] = None) -> str:
        today = _ledger_date(date.today())
        payload = {
            "clientId": int(request.client_id),
            "productId": request.product_id,
            "principal": str(request.principal),
            "loanTermFrequency": request.tenure_months,
            "loanTermFrequencyType": 2,
            "numberOfRepayments": request.tenure_months,
            "repaymentEvery": 1,
            "repaymentFrequencyType": 2,
            "interestRatePerPeriod": str(request.annual_interest_rate),
            "amortizationType": 1,
            "interestType": 0,
            "interestCalculationPeriodType": 1,
            "transactionProcessingStrategyCode": "mifos-standard-strategy",
            "expectedDisbursementDate": today,
            "submittedOnDate": today,
            "externalId": request.external_id,
            "loanType": "individual",
            "dateFormat": DATE_FORMAT,
            "locale": LOCALE,
        }
        if request.top_up_loan_id:
            payload["isTopup"] = True
            payload["loanIdToClose"] = int(request.top_up_loan_id)
        body = self._request("POST", "/v1/loans", "create_loan", timeout, json=payload)
        return self._resource_id(body, 'loanId')

    def _loan_command(self, loan_id: str, command: str, payload: Dict[str, Any],
                      timeout: Optional[float]) -> None:
        payload.update({"dateFormat": DATE_FORMAT, "locale": LOCALE})
        self._request("POST", f"/v1/loans/{loan_id}", f"{command}_loan", timeout,
                      params={"command": command}, json=payload)

    def approve_loan(self, loan_id: str, timeout: Optional[float] = None) -> None:
        self._loan_command(loan_id, "approve", {"approvedOnDate": _ledger_date(date.today())}, timeout)

    def disburse_loan(self, loan_id: str, timeout: Optional[float] = None) -> None:
        self._loan_command(loan_id, "disburse", {"actualDisbursementDate": _ledger_date(date.today())}, timeout)

    def reject_loan(self, loan_id: str, note: str, timeout: Optional[float] = None) -> None:
        self._loan_command(loan_id, "reject", {"rejectedOnDate": _ledger_date(date.today()),
                                                "note": note}, timeout)

    def get_loan(self, loan_id: str, timeout: Optional[float] = None) -> LedgerLoan:
        body = self._request("GET", f"/v1/loans/{loan_id}", "get_loan", timeout)
        return _parse_loan(body)

    def find_active_loans(self, external_id: str, timeout: Optional[float] = None) -> List[LedgerLoan]:
        client_id = self.search_client(external_id, timeout)
        if client_id is None:
            return []
        body = self._request("GET", f"/v1/clients/{client_id}/accounts", "client_accounts", timeout)
        loans = []
        for account in body.get('loanAccounts', []):
            loan = _parse_loan(dict(account, clientId=client_id))
            if loan.is_active:
                loans.append(loan)
        return loans

    def create_reschedule(self, loan_id: str, tenure_months: int, reason: str,
                          timeout: Optional[float] = None) -> str:
        today = date.today()
        payload = {
            "loanId": int(loan_id),
            "rescheduleFromDate": _ledger_date(today),
            "submittedOnDate": _ledger_date(today),
            "adjustedDueDate": _ledger_date(_add_months(today, tenure_months)),
            "rescheduleReasonId": 1,
            "rescheduleReasonComment": reason,
            "graceOnPrincipal": 0,
            "graceOnInterest": 0,
            "extraTerms": 0,
            "dateFormat": DATE_FORMAT,
            "locale": LOCALE,
        }
        body = self._request("POST", "/v1/rescheduleloans", "create_reschedule", timeout, json=payload)
        reschedule_id = self._resource_id(body)
        self._request("POST", f"/v1/rescheduleloans/{reschedule_id}", "approve_reschedule", timeout,
                      params={"command": "approve"},
                      json={"approvedOnDate": _ledger_date(today), "dateFormat": DATE_FORMAT,
                            "locale": LOCALE})
        return reschedule_id

    def close(self) -> None:
        self._client.close()


class InMemoryLedger(LedgerClient):
    """
    In-process ledger for development and tests.

    Use fail(operation) to make the next call(s) of an operation raise
    LedgerUnavailableError, and calls to count how often each ran.
    """

    def __init__(self, default_rate: Decimal = Decimal('24')):
        self.default_rate = default_rate
        self.clients: Dict[str, ClientProfile] = {}
        self.loans: Dict[str, LedgerLoan] = {}
        self.reschedules: Dict[str, Dict[str, Any]] = {}
        self.top_ups: Dict[str, str] = {}  # new loan id -> closed loan id
        self.calls: Dict[str, int] = {}
        self._failures: Dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def fail(self, operation: str, times: int = 1) -> None:
        with self._lock:
            self._failures[operation] = times

    def _enter(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        remaining = self._failures.get(operation, 0)
        if remaining:
            self._failures[operation] = remaining - 1
            raise LedgerUnavailableError(f"Ledger {operation} unavailable", operation=operation)

    def _next_id(self) -> str:
        return str(next(self._ids))

    def _require_loan(self, loan_id: str) -> LedgerLoan:
        loan = self.loans.get(str(loan_id))
        if loan is None:
            raise LedgerError(f"Loan {loan_id} not found", status_code=404)
        return loan

    def seed_active_loan(self, external_id: str, principal: Decimal,
                         annual_interest_rate: Optional[Decimal] = None) -> LedgerLoan:
        """Put an existing active loan on the books for an identity"""
        with self._lock:
            client_id = next((cid for cid, p in self.clients.items() if p.external_id == external_id), None)
            if client_id is None:
                client_id = self._next_id()
                self.clients[client_id] = ClientProfile(external_id=external_id, first_name="", last_name="")
            loan = LedgerLoan(
                loan_id=self._next_id(), client_id=client_id, status=LedgerLoanStatus.ACTIVE,
                principal=principal, principal_outstanding=principal,
                annual_interest_rate=annual_interest_rate or self.default_rate,
            )
            self.loans[loan.loan_id] = loan
            return loan

    def set_status(self, loan_id: str, status: LedgerLoanStatus) -> None:
        with self._lock:
            self._require_loan(loan_id).status = status

    def search_client(self, external_id: str, timeout: Optional[float] = None) -> Optional[str]:
        with self._lock:
            self._enter("search_client")
            for client_id, profile in self.clients.items():
                if profile.external_id == external_id:
                    return client_id
            return None

    def create_client(self, profile: ClientProfile, timeout: Optional[float] = None) -> str:
        with self._lock:
            self._enter("create_client")
            client_id = self._next_id()
            self.clients[client_id] = profile
            return client_id

    def find_loan_by_external_id(self, external_id: str,
                                 timeout: Optional[float] = None) -> Optional[LedgerLoan]:
        with self._lock:
            self._enter("find_loan")
            for loan in self.loans.values():
                if loan.external_id == external_id:
                    return replace(loan)
            return None

    def create_loan(self, request: LoanRequest, timeout: Optional[float] = None) -> str:
        with self._lock:
            self._enter("create_loan")
            if request.client_id not in self.clients:
                raise LedgerError(f"Client {request.client_id} not found", status_code=404)
            loan = LedgerLoan(
                loan_id=self._next_id(), client_id=request.client_id,
                status=LedgerLoanStatus.SUBMITTED, principal=request.principal,
                annual_interest_rate=request.annual_interest_rate,
                external_id=request.external_id,
            )
            self.loans[loan.loan_id] = loan
            if request.top_up_loan_id:
                self.top_ups[loan.loan_id] = request.top_up_loan_id
            return loan.loan_id

    def approve_loan(self, loan_id: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._enter("approve_loan")
            loan = self._require_loan(loan_id)
            if loan.status == LedgerLoanStatus.SUBMITTED:
                loan.status = LedgerLoanStatus.APPROVED

    def disburse_loan(self, loan_id: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._enter("disburse_loan")
            loan = self._require_loan(loan_id)
            if loan.status != LedgerLoanStatus.APPROVED:
                raise LedgerError(f"Loan {loan_id} is {loan.status.value}, cannot disburse", status_code=403)
            loan.status = LedgerLoanStatus.ACTIVE
            loan.principal_outstanding = loan.principal
            closed = self.top_ups.get(loan_id)
            if closed and closed in self.loans:
                self.loans[closed].status = LedgerLoanStatus.CLOSED

    def reject_loan(self, loan_id: str, note: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._enter("reject_loan")
            self._require_loan(loan_id).status = LedgerLoanStatus.REJECTED

    def get_loan(self, loan_id: str, timeout: Optional[float] = None) -> LedgerLoan:
        with self._lock:
            self._enter("get_loan")
            return replace(self._require_loan(loan_id))

    def find_active_loans(self, external_id: str, timeout: Optional[float] = None) -> List[LedgerLoan]:
        with self._lock:
            self._enter("find_active_loans")
            client_ids = {cid for cid, p in self.clients.items() if p.external_id == external_id}
            return [replace(loan) for loan in self.loans.values()
                    if loan.client_id in client_ids and loan.is_active]

    def create_reschedule(self, loan_id: str, tenure_months: int, reason: str,
                          timeout: Optional[float] = None) -> str:
        with self._lock:
            self._enter("create_reschedule")
            loan = self._require_loan(loan_id)
            if not loan.is_active:
                raise LedgerError(f"Loan {loan_id} is {loan.status.value}, cannot reschedule", status_code=403)
            reschedule_id = self._next_id()
            self.reschedules[reschedule_id] = {
                "loan_id": loan_id, "tenure_months": tenure_months, "reason": reason,
            }
            return reschedule_id
