"""
Loan Application Module

The persisted unit of work of the saga, its legal status graph and the
repository that enforces both.

Status changes go through ApplicationRepository.transition(), which checks
the transition table and persists with a compare-and-set on (status,
version). A writer holding a stale copy loses with ConcurrencyError instead
of overwriting a newer state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ConcurrencyError, NotFoundError, StateError
from .storage import StorageInterface, StorageRecord


class ApplicationKind(Enum):
    NEW = "NEW"
    TOP_UP = "TOP_UP"
    TAKEOVER = "TAKEOVER"
    RESTRUCTURE = "RESTRUCTURE"


class ApplicationStatus(Enum):
    INITIAL_OFFER = "INITIAL_OFFER"
    INITIAL_APPROVAL_SENT = "INITIAL_APPROVAL_SENT"
    APPROVED = "APPROVED"
    WAITING_FOR_LIQUIDATION = "WAITING_FOR_LIQUIDATION"
    FINAL_APPROVAL_RECEIVED = "FINAL_APPROVAL_RECEIVED"
    CLIENT_CREATED = "CLIENT_CREATED"
    LOAN_CREATED = "LOAN_CREATED"
    DISBURSED = "DISBURSED"
    DISBURSEMENT_FAILURE_NOTIFICATION_SENT = "DISBURSEMENT_FAILURE_NOTIFICATION_SENT"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"
    RESTRUCTURED = "RESTRUCTURED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class Actor(Enum):
    FSP = "FSP"
    EMPLOYEE = "EMPLOYEE"
    EMPLOYER = "EMPLOYER"
    SYSTEM = "SYSTEM"


S = ApplicationStatus

TRANSITIONS: Dict[ApplicationStatus, frozenset] = {
    S.INITIAL_OFFER: frozenset({S.INITIAL_APPROVAL_SENT, S.REJECTED, S.CANCELLED}),
    S.INITIAL_APPROVAL_SENT: frozenset({S.APPROVED, S.CANCELLED}),
    S.APPROVED: frozenset({S.WAITING_FOR_LIQUIDATION, S.FINAL_APPROVAL_RECEIVED, S.REJECTED, S.CANCELLED}),
    S.WAITING_FOR_LIQUIDATION: frozenset({S.APPROVED, S.CANCELLED}),
    S.FINAL_APPROVAL_RECEIVED: frozenset({S.CLIENT_CREATED, S.CANCELLED}),
    S.CLIENT_CREATED: frozenset({S.LOAN_CREATED, S.CANCELLED}),
    S.LOAN_CREATED: frozenset({S.DISBURSED, S.DISBURSEMENT_FAILURE_NOTIFICATION_SENT}),
    S.DISBURSEMENT_FAILURE_NOTIFICATION_SENT: frozenset({S.FAILED}),
    S.DISBURSED: frozenset({S.COMPLETED, S.RESTRUCTURED}),
    S.RESTRUCTURED: frozenset(),
    S.COMPLETED: frozenset(),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
    S.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.REJECTED, S.CANCELLED, S.FAILED})

# Statuses where the final approval has been taken in and ledger work began
FINALIZED_STATUSES = frozenset({
    S.FINAL_APPROVAL_RECEIVED, S.CLIENT_CREATED, S.LOAN_CREATED, S.DISBURSED,
    S.DISBURSEMENT_FAILURE_NOTIFICATION_SENT, S.FAILED, S.COMPLETED, S.RESTRUCTURED,
})

CANCELLABLE_STATUSES = frozenset(
    status for status, targets in TRANSITIONS.items() if S.CANCELLED in targets
)

STAGE_TIMESTAMP_KEYS = {
    S.INITIAL_OFFER: "offered",
    S.INITIAL_APPROVAL_SENT: "approvalSent",
    S.APPROVED: "approved",
    S.WAITING_FOR_LIQUIDATION: "waitingForLiquidation",
    S.FINAL_APPROVAL_RECEIVED: "finalApprovalReceived",
    S.CLIENT_CREATED: "clientCreated",
    S.LOAN_CREATED: "loanCreated",
    S.DISBURSED: "disbursed",
    S.DISBURSEMENT_FAILURE_NOTIFICATION_SENT: "failureNotified",
    S.FAILED: "failed",
    S.COMPLETED: "completed",
    S.RESTRUCTURED: "restructured",
    S.REJECTED: "rejected",
    S.CANCELLED: "cancelled",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LoanTerms:
    product_code: str
    requested_principal: Decimal
    tenure_months: int


@dataclass
class LoanApplication(StorageRecord):
    """
    One portal loan application; id is the portal's ApplicationNumber.
    """
    subject_id: str
    kind: ApplicationKind
    status: ApplicationStatus
    terms: LoanTerms
    external_refs: Dict[str, Optional[str]] = field(default_factory=lambda: {
        'fsp_reference_number': None, 'ess_loan_alias': None})
    ledger_refs: Dict[str, Optional[str]] = field(default_factory=lambda: {
        'client_id': None, 'loan_id': None})
    snapshot: Dict[str, Any] = field(default_factory=dict)
    actor_trail: Optional[Dict[str, str]] = None
    restructure_link: Optional[Dict[str, Any]] = None
    error_log: List[Dict[str, str]] = field(default_factory=list)
    stage_timestamps: Dict[str, str] = field(default_factory=dict)
    offer: Optional[Dict[str, str]] = None
    existing_loan_id: Optional[str] = None
    payoff_confirmed: bool = False
    pending_final_approval: Optional[Dict[str, Any]] = None
    last_outcome: Optional[str] = None
    version: int = 0

    @property
    def application_id(self) -> str:
        return self.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def client_id(self) -> Optional[str]:
        return self.ledger_refs.get('client_id')

    @property
    def loan_id(self) -> Optional[str]:
        return self.ledger_refs.get('loan_id')

    def set_ledger_ref(self, name: str, value: str) -> None:
        """Ledger references are write-once"""
        current = self.ledger_refs.get(name)
        if current is not None and current != str(value):
            raise StateError(
                f"Application {self.id} already has {name}={current}, refusing {value}"
            )
        self.ledger_refs[name] = str(value)

    def record_error(self, stage: str, error: Any) -> None:
        self.error_log.append({'stage': stage, 'error': str(error), 'at': _now_iso()})

    def merge_snapshot(self, fields: Dict[str, Any]) -> None:
        """Add intake fields that were not captured yet; never overwrite"""
        for key, value in fields.items():
            if value is not None and key not in self.snapshot:
                self.snapshot[key] = value

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kind'] = self.kind.value
        result['status'] = self.status.value
        result['terms'] = {
            'product_code': self.terms.product_code,
            'requested_principal': str(self.terms.requested_principal),
            'tenure_months': self.terms.tenure_months,
        }
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanApplication':
        data['kind'] = ApplicationKind(data['kind'])
        data['status'] = ApplicationStatus(data['status'])
        terms = data['terms']
        data['terms'] = LoanTerms(
            product_code=terms['product_code'],
            requested_principal=Decimal(str(terms['requested_principal'])),
            tenure_months=int(terms['tenure_months']),
        )
        return super().from_dict(data)


class ApplicationRepository:
    """Persistence and guarded transitions for loan applications"""

    def __init__(self, storage: StorageInterface, table_name: str = "loan_applications"):
        self.storage = storage
        self.table_name = table_name

    def find_or_create(self, application: LoanApplication) -> Tuple[LoanApplication, bool]:
        """
        Atomically insert an application unless one with its id exists.

        Returns:
            The stored application and whether it was created
        """
        application.stage_timestamps.setdefault(STAGE_TIMESTAMP_KEYS[application.status], _now_iso())
        if self.storage.insert_if_absent(self.table_name, application.id, application.to_dict()):
            return application, True
        return self.require(application.id), False

    def get(self, application_id: str) -> Optional[LoanApplication]:
        data = self.storage.load(self.table_name, application_id)
        return LoanApplication.from_dict(data) if data else None

    def require(self, application_id: str) -> LoanApplication:
        application = self.get(application_id)
        if application is None:
            raise NotFoundError(f"Application {application_id} not found")
        return application

    def _find(self, filters: Dict[str, Any]) -> List[LoanApplication]:
        applications = [LoanApplication.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        applications.sort(key=lambda a: a.created_at)
        return applications

    def find_by_subject(self, subject_id: str) -> List[LoanApplication]:
        return self._find({'subject_id': subject_id})

    def find_by_status(self, status: ApplicationStatus) -> List[LoanApplication]:
        return self._find({'status': status.value})

    def find_by_loan_id(self, loan_id: str) -> Optional[LoanApplication]:
        matches = self._find({'ledger_refs.loan_id': str(loan_id)})
        return matches[-1] if matches else None

    def find_by_actor(self, actor: Actor) -> List[LoanApplication]:
        return self._find({'actor_trail.actor': actor.value})

    def find_by_loan_number(self, loan_number: str) -> Optional[LoanApplication]:
        """Look up by the portal's loan number, our reference or the ledger loan id"""
        for filters in ({'external_refs.ess_loan_alias': loan_number},
                        {'external_refs.fsp_reference_number': loan_number},
                        {'ledger_refs.loan_id': loan_number}):
            matches = [a for a in self._find(filters) if a.kind != ApplicationKind.RESTRUCTURE]
            if matches:
                return matches[-1]
        return None

    def find_restructures(self, loan_id: str) -> List[LoanApplication]:
        return self._find({'restructure_link.loan_id': str(loan_id)})

    def find_loan_holder(self, loan_number: str) -> Optional[LoanApplication]:
        """
        The application currently answering for a loan: the one that created
        it, or once that was restructured the newest disbursed restructure.
        """
        origin = self.find_by_loan_number(loan_number)
        if origin is None or origin.status != S.RESTRUCTURED or origin.loan_id is None:
            return origin
        holders = [a for a in self.find_restructures(origin.loan_id) if a.status == S.DISBURSED]
        return holders[-1] if holders else origin

    def save(self, application: LoanApplication) -> LoanApplication:
        """Persist non-status changes guarded by the version counter"""
        expected = {'version': application.version, 'status': application.status.value}
        application.version += 1
        application.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_set(self.table_name, application.id, expected, application.to_dict()):
            application.version -= 1
            raise ConcurrencyError(f"Application {application.id} was modified concurrently")
        return application

    def transition(self, application: LoanApplication, new_status: ApplicationStatus,
                   actor: Optional[Actor] = None, reason: Optional[str] = None) -> LoanApplication:
        """
        Move an application along the status graph.

        Raises:
            StateError: if the transition is not legal from the current status,
                or REJECTED/CANCELLED is requested without an actor
            ConcurrencyError: if the stored record changed underneath
        """
        previous = application.status
        if new_status not in TRANSITIONS[previous]:
            raise StateError(
                f"Application {application.id} cannot move from {previous.value} to {new_status.value}"
            )
        previous_trail = application.actor_trail
        previous_stamps = dict(application.stage_timestamps)
        previous_updated_at = application.updated_at
        if new_status in (S.REJECTED, S.CANCELLED):
            if actor is None:
                raise StateError(f"{new_status.value} requires an actor")
            application.actor_trail = {'actor': actor.value, 'reason': reason or '', 'at': _now_iso()}

        expected = {'version': application.version, 'status': previous.value}
        application.status = new_status
        application.stage_timestamps[STAGE_TIMESTAMP_KEYS[new_status]] = _now_iso()
        application.version += 1
        application.updated_at = datetime.now(timezone.utc)

        if not self.storage.compare_and_set(self.table_name, application.id, expected, application.to_dict()):
            application.status = previous
            application.version -= 1
            application.actor_trail = previous_trail
            application.stage_timestamps = previous_stamps
            application.updated_at = previous_updated_at
            raise ConcurrencyError(
                f"Application {application.id} left {previous.value} before the transition to {new_status.value}"
            )
        return application
