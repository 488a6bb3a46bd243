"""
Protocol Gateway Module

Single entry point for signed portal messages. Every inbound call gets
exactly one signed synchronous reply:

- queries are answered in place with their typed *_RESPONSE
- commands run their synchronous guard, are acknowledged with RESPONSE 8000
  and leave the heavier work to the durable work queue; outcomes reach the
  portal later as signed callbacks
- any BridgeError becomes a RESPONSE carrying its code; anything unexpected
  is logged with the traceback and answered with 8012
"""

import logging
import random
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from . import calculator
from .applications import ApplicationStatus, LoanApplication
from .exceptions import BridgeError, DESCRIPTIONS, NotFoundError, ProtocolError, ResponseCode, StateError
from .ledger import LedgerClient, LedgerEvent, LedgerLoan
from .logging_config import log_action
from .messages import (
    CancellationNotification, FinalApprovalNotification, INBOUND_TYPES, MessageFactory,
    MessageType, ProtocolMessage, TakeoverPaymentNotification, parse_message, wire_fields,
)
from .products import ProductCatalog
from .saga import LoanApplicationSaga
from .signature import SignatureProvider
from .tasks import WorkQueue

logger = logging.getLogger("ess_bridge.gateway")

# Work item types for the detached phase of each command
TASK_PROCESS_OFFER = "process_offer"
TASK_FINALIZE_APPROVAL = "finalize_approval"
TASK_CANCEL_APPLICATION = "cancel_application"
TASK_CONFIRM_PAYOFF = "confirm_payoff"
TASK_LEDGER_EVENT = "ledger_event"
TASK_RESUME = "resume"

# Applications whose initial decision is still owed to the portal
UNDECIDED_STATUSES = (ApplicationStatus.INITIAL_OFFER, ApplicationStatus.INITIAL_APPROVAL_SENT)


def register_tasks(queue: WorkQueue, saga: LoanApplicationSaga) -> None:
    """Bind every detached task type to the saga operation that runs it"""
    queue.register(TASK_PROCESS_OFFER, lambda p: saga.process_offer(p['application_id']))
    queue.register(TASK_FINALIZE_APPROVAL,
                   lambda p: saga.finalize_approval(FinalApprovalNotification.model_validate(p)))
    queue.register(TASK_CANCEL_APPLICATION,
                   lambda p: saga.cancel_application(CancellationNotification.model_validate(p)))
    queue.register(TASK_CONFIRM_PAYOFF,
                   lambda p: saga.confirm_payoff(TakeoverPaymentNotification.model_validate(p)))
    queue.register(TASK_LEDGER_EVENT,
                   lambda p: saga.handle_ledger_event(LedgerEvent.from_webhook(p)))
    queue.register(TASK_RESUME, lambda p: saga.resume(p['application_id']))


def _payment_reference() -> str:
    stamp = datetime.now(timezone.utc).strftime('%y%m%d%H%M%S')
    return f"PAY{stamp}{random.randint(0, 9999):04d}"


class ProtocolGateway:
    """Verifies, dispatches and answers inbound portal messages"""

    def __init__(
        self,
        saga: LoanApplicationSaga,
        queue: WorkQueue,
        products: ProductCatalog,
        ledger: LedgerClient,
        signer: SignatureProvider,
        verifier: SignatureProvider,
        factory: MessageFactory,
        ledger_timeout: float = 10.0,
        payoff_interest_days: int = 30
    ):
        self.saga = saga
        self.queue = queue
        self.products = products
        self.ledger = ledger
        self.signer = signer
        self.verifier = verifier
        self.factory = factory
        self.ledger_timeout = ledger_timeout
        self.payoff_interest_days = payoff_interest_days

        self._handlers: Dict[MessageType, Callable[[ProtocolMessage], str]] = {
            MessageType.LOAN_CHARGES_REQUEST: self._loan_charges,
            MessageType.TOP_UP_PAY_OFF_BALANCE_REQUEST: self._top_up_balance,
            MessageType.TAKEOVER_PAY_OFF_BALANCE_REQUEST: self._takeover_balance,
            MessageType.LOAN_RESTRUCTURE_AFFORDABILITY_REQUEST: self._restructure_affordability,
            MessageType.LOAN_RESTRUCTURE_BALANCE_REQUEST: self._restructure_balance,
            MessageType.LOAN_OFFER_REQUEST: self._offer,
            MessageType.TOP_UP_OFFER_REQUEST: self._offer,
            MessageType.LOAN_TAKEOVER_OFFER_REQUEST: self._offer,
            MessageType.LOAN_RESTRUCTURE_REQUEST: self._restructure,
            MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION: self._final_approval,
            MessageType.LOAN_CANCELLATION_NOTIFICATION: self._cancellation,
            MessageType.TAKEOVER_PAYMENT_NOTIFICATION: self._takeover_payment,
        }
        missing = INBOUND_TYPES - set(self._handlers)
        if missing:
            raise ValueError(f"No gateway handler for: {sorted(t.value for t in missing)}")

    def handle_inbound(self, raw: Any) -> str:
        """
        Process one signed inbound envelope.

        Returns:
            The signed XML reply; never raises
        """
        message: Optional[ProtocolMessage] = None
        try:
            message = parse_message(raw, self.verifier)
            if message.header.fsp_code != self.factory.fsp_code:
                raise ProtocolError(ResponseCode.MALFORMED_MESSAGE,
                                    f"FSPCode {message.header.fsp_code} is not {self.factory.fsp_code}")
            log_action(logger, "info", "Inbound message", message_type=message.message_type.value,
                       correlation_id=message.msg_id, action="receive")
            return self._handlers[message.message_type](message)
        except BridgeError as e:
            log_action(logger, "warning", f"Answering {e.response_code}: {e.message}",
                       message_type=message.message_type.value if message else None,
                       correlation_id=message.msg_id if message else None,
                       action="reject")
            return self._respond(e.response_code, e.message)
        except Exception:
            logger.exception("Unexpected failure handling inbound message")
            return self._respond(ResponseCode.TRY_LATER, DESCRIPTIONS[ResponseCode.TRY_LATER])

    def _respond(self, code: str, description: str) -> str:
        return self.factory.render_response(self.signer, code, description)

    def _ack(self) -> str:
        return self._respond(ResponseCode.SUCCESS, DESCRIPTIONS[ResponseCode.SUCCESS])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _loan_charges(self, message: ProtocolMessage) -> str:
        details = message.details
        product = self.products.require(details.product_code)
        tenure = product.clamp_tenure(details.tenure)
        quote = calculator.charges_quote(
            product.annual_interest_rate, tenure, product.fee_schedule,
            basic_salary=details.basic_salary,
            existing_deductions=details.total_employee_deduction,
            deductible_amount=details.deductible_amount,
            desired_installment=details.desired_deductible_amount,
            requested_amount=details.requested_amount,
            max_principal=product.max_principal,
        )
        return self.factory.render(self.signer, MessageType.LOAN_CHARGES_RESPONSE, {
            "DesiredDeductibleAmount": quote.installment_amount,
            "TotalInsurance": quote.insurance,
            "TotalProcessingFees": quote.processing_fee,
            "TotalInterestRateAmount": quote.total_interest,
            "OtherCharges": quote.other_charges,
            "NetLoanAmount": quote.net_principal,
            "TotalAmountToPay": quote.total_payable,
            "Tenure": quote.tenure_months,
            "EligibleAmount": quote.eligible_principal,
            "MonthlyReturnAmount": quote.installment_amount,
        })

    def _resolve_loan(self, loan_number: str) -> Tuple[LoanApplication, LedgerLoan]:
        """Application and live ledger loan behind a portal loan number"""
        app = self.saga.repository.find_by_loan_number(loan_number)
        if app is None or app.loan_id is None:
            raise NotFoundError(f"Loan {loan_number} not found")
        loan = self.ledger.get_loan(app.loan_id, timeout=self.ledger_timeout)
        if not loan.is_active:
            raise StateError(f"Loan {loan_number} is {loan.status.value}")
        return app, loan

    def _balance_details(self, loan_number: str) -> Dict[str, Any]:
        app, loan = self._resolve_loan(loan_number)
        payoff = calculator.payoff_balance(loan.principal_outstanding, loan.annual_interest_rate,
                                           self.payoff_interest_days)
        return {
            "LoanNumber": loan_number,
            "FSPReferenceNumber": app.external_refs.get('fsp_reference_number'),
            "PaymentReferenceNumber": _payment_reference(),
            "TotalPayoffAmount": payoff,
            "OutstandingBalance": loan.principal_outstanding,
            "EndDate": loan.maturity_date,
        }

    def _top_up_balance(self, message: ProtocolMessage) -> str:
        return self.factory.render(self.signer, MessageType.LOAN_TOP_UP_BALANCE_RESPONSE,
                                   self._balance_details(message.details.loan_number))

    def _takeover_balance(self, message: ProtocolMessage) -> str:
        return self.factory.render(self.signer, MessageType.LOAN_TAKEOVER_BALANCE_RESPONSE,
                                   self._balance_details(message.details.loan_number))

    def _restructure_balance(self, message: ProtocolMessage) -> str:
        details = self._balance_details(message.details.loan_number)
        details.pop("PaymentReferenceNumber")
        return self.factory.render(self.signer, MessageType.LOAN_RESTRUCTURE_BALANCE_RESPONSE, details)

    def _restructure_affordability(self, message: ProtocolMessage) -> str:
        details = message.details
        app, loan = self._resolve_loan(details.loan_number)
        product = self.products.require(app.terms.product_code)
        quote = calculator.forward(loan.principal_outstanding, loan.annual_interest_rate, details.tenure)
        violations = product.check_terms(product.min_principal, details.tenure)
        if details.desired_deductible_amount and quote.installment_amount > details.desired_deductible_amount:
            violations.append("installment exceeds desired deduction")
        if details.basic_salary is not None:
            headroom = calculator.affordability_headroom(details.basic_salary,
                                                         details.total_employee_deduction or 0)
            if quote.installment_amount > headroom:
                violations.append("installment exceeds affordability headroom")
        return self.factory.render(self.signer, MessageType.LOAN_RESTRUCTURE_AFFORDABILITY_RESPONSE, {
            "LoanNumber": details.loan_number,
            "Tenure": quote.tenure_months,
            "OutstandingBalance": loan.principal_outstanding,
            "MonthlyReturnAmount": quote.installment_amount,
            "TotalInterestRateAmount": quote.total_interest,
            "TotalAmountToPay": quote.total_payable,
            "Eligible": "NO" if violations else "YES",
            "Reason": "; ".join(violations) or None,
        })

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _enqueue_decision(self, app: LoanApplication) -> None:
        if app.status in UNDECIDED_STATUSES:
            self.queue.enqueue(TASK_PROCESS_OFFER, app.id, {'application_id': app.id})

    def _offer(self, message: ProtocolMessage) -> str:
        app = self.saga.admit_offer(message.message_type, message.details)
        self._enqueue_decision(app)
        return self._ack()

    def _restructure(self, message: ProtocolMessage) -> str:
        app = self.saga.admit_restructure(message.details)
        self._enqueue_decision(app)
        return self._ack()

    def _final_approval(self, message: ProtocolMessage) -> str:
        app = self.saga.check_final_approval(message.details)
        self.queue.enqueue(TASK_FINALIZE_APPROVAL, app.id, wire_fields(message.details))
        return self._ack()

    def _cancellation(self, message: ProtocolMessage) -> str:
        app = self.saga.check_cancellation(message.details)
        self.queue.enqueue(TASK_CANCEL_APPLICATION, app.id, wire_fields(message.details))
        return self._ack()

    def _takeover_payment(self, message: ProtocolMessage) -> str:
        app = self.saga.check_payoff(message.details)
        self.queue.enqueue(TASK_CONFIRM_PAYOFF, app.id, wire_fields(message.details))
        return self._ack()
