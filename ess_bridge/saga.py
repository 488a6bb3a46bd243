"""
Loan Application Saga

Drives each loan application from the portal's offer to a disbursed (and
eventually completed) ledger loan:

    INITIAL_OFFER -> INITIAL_APPROVAL_SENT -> APPROVED
        [-> WAITING_FOR_LIQUIDATION -> APPROVED]          (takeover)
        -> FINAL_APPROVAL_RECEIVED -> CLIENT_CREATED -> LOAN_CREATED
        -> DISBURSED -> COMPLETED | RESTRUCTURED
        (LOAN_CREATED -> DISBURSEMENT_FAILURE_NOTIFICATION_SENT -> FAILED)

All mutations of one application run under a per-application lock and are
persisted with compare-and-set, so redelivered commands cannot create a
second ledger client or loan. Every ledger call site looks before it
creates, which makes re-running a half-finished application safe.
"""

import logging
import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from . import calculator
from .applications import (
    Actor, ApplicationKind, ApplicationRepository, ApplicationStatus,
    CANCELLABLE_STATUSES, FINALIZED_STATUSES, LoanApplication, LoanTerms, TRANSITIONS,
)
from .audit import AuditTrail, AuditEventType
from .callbacks import CallbackDispatcher, OutboundMessage
from .exceptions import CalculationError, LedgerError, NotFoundError, StateError
from .ledger import ClientProfile, LedgerClient, LedgerEvent, LoanRequest, LedgerLoanStatus
from .logging_config import log_action
from .messages import (
    CancellationNotification, FinalApprovalNotification, LoanOfferRequest, MessageType,
    RestructureRequest, TakeoverPaymentNotification, wire_fields,
)
from .products import ProductCatalog
from .tasks import KeyedLock

logger = logging.getLogger("ess_bridge.saga")

S = ApplicationStatus

OFFER_KINDS = {
    MessageType.LOAN_OFFER_REQUEST: ApplicationKind.NEW,
    MessageType.TOP_UP_OFFER_REQUEST: ApplicationKind.TOP_UP,
    MessageType.LOAN_TAKEOVER_OFFER_REQUEST: ApplicationKind.TAKEOVER,
}

OUTCOME_DISBURSED = MessageType.LOAN_DISBURSEMENT_NOTIFICATION.value
OUTCOME_FAILED = MessageType.LOAN_DISBURSEMENT_FAILURE_NOTIFICATION.value

LEDGER_STAGE_STATUSES = (S.FINAL_APPROVAL_RECEIVED, S.CLIENT_CREATED, S.LOAN_CREATED)


def _reference(prefix: str) -> str:
    stamp = datetime.now(timezone.utc).strftime('%y%m%d%H%M%S')
    return f"{prefix}{stamp}{random.randint(0, 9999):04d}"


class LoanApplicationSaga:
    """Owns the application state machine and the ledger orchestration"""

    def __init__(
        self,
        repository: ApplicationRepository,
        products: ProductCatalog,
        ledger: LedgerClient,
        callbacks: CallbackDispatcher,
        audit_trail: AuditTrail,
        ledger_timeout: float = 10.0,
        ledger_product_id: int = 1
    ):
        self.repository = repository
        self.products = products
        self.ledger = ledger
        self.callbacks = callbacks
        self.audit_trail = audit_trail
        self.ledger_timeout = ledger_timeout
        self.ledger_product_id = ledger_product_id
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _transition(self, app: LoanApplication, status: ApplicationStatus,
                    actor: Optional[Actor] = None, reason: Optional[str] = None) -> LoanApplication:
        previous = app.status
        self.repository.transition(app, status, actor, reason)
        self.audit_trail.log_event(
            event_type=AuditEventType.STATUS_CHANGED,
            entity_type="loan_application",
            entity_id=app.id,
            metadata={"from": previous, "to": status, "reason": reason, "kind": app.kind},
            actor=actor.value if actor else Actor.FSP.value
        )
        log_action(logger, "info", f"{previous.value} -> {status.value}",
                   application_id=app.id, action="transition",
                   extra={"reason": reason} if reason else None)
        return app

    def _send(self, app: LoanApplication, message_type: MessageType,
              details: Dict[str, Any]) -> OutboundMessage:
        return self.callbacks.send(app.id, message_type, details)

    def _snapshot_amount(self, app: LoanApplication, key: str) -> Optional[Decimal]:
        value = app.snapshot.get(key)
        return Decimal(value) if value not in (None, "") else None

    def _ledger_identity(self, app: LoanApplication) -> str:
        return app.snapshot.get('NIN') or app.subject_id

    def _assign_external_refs(self, app: LoanApplication) -> None:
        """Generated once; a retry keeps the references already issued"""
        if not app.external_refs.get('fsp_reference_number'):
            app.external_refs['fsp_reference_number'] = _reference("FSP")
        if not app.external_refs.get('ess_loan_alias'):
            app.external_refs['ess_loan_alias'] = _reference("LN")

    def _record_ledger_failure(self, app: LoanApplication, stage: str, error: Exception) -> None:
        app.record_error(stage, error)
        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_CALL_FAILED,
            entity_type="loan_application",
            entity_id=app.id,
            metadata={"stage": stage, "error": str(error), "status": app.status}
        )
        log_action(logger, "error", f"Ledger call failed at {stage}: {error}",
                   application_id=app.id, action=stage)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def admit_offer(self, message_type: MessageType, details: LoanOfferRequest) -> LoanApplication:
        """
        Idempotent upsert of an offer-class command keyed by ApplicationNumber.

        A redelivered offer for a live application adds any fields that were
        not captured the first time. An offer for a terminal application is
        refused.

        Raises:
            StateError: if the application already reached a terminal status
        """
        kind = OFFER_KINDS[message_type]
        now = datetime.now(timezone.utc)
        snapshot = wire_fields(details)
        product = self.products.get(details.product_code)
        tenure = details.tenure or (product.max_tenure_months if product else 0)

        candidate = LoanApplication(
            id=details.application_number,
            created_at=now,
            updated_at=now,
            subject_id=details.check_number,
            kind=kind,
            status=S.INITIAL_OFFER,
            terms=LoanTerms(
                product_code=details.product_code,
                requested_principal=details.requested_amount or Decimal('0'),
                tenure_months=tenure,
            ),
            snapshot=snapshot,
        )

        with self._locks.hold(candidate.id):
            app, created = self.repository.find_or_create(candidate)
            if created:
                self.audit_trail.log_event(
                    event_type=AuditEventType.APPLICATION_ADMITTED,
                    entity_type="loan_application",
                    entity_id=app.id,
                    metadata={"kind": kind, "subject_id": app.subject_id,
                              "requested_principal": app.terms.requested_principal},
                    actor=Actor.EMPLOYEE.value
                )
                log_action(logger, "info", f"Admitted {kind.value} application",
                           application_id=app.id, message_type=message_type.value, action="admit")
                return app

            if app.is_terminal:
                raise StateError(f"Application {app.id} is already {app.status.value}")
            app.merge_snapshot(snapshot)
            self.repository.save(app)
            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_UPDATED,
                entity_type="loan_application",
                entity_id=app.id,
                metadata={"redelivered": message_type.value}
            )
            return app

    def admit_restructure(self, details: RestructureRequest) -> LoanApplication:
        """
        Open a RESTRUCTURE application against a disbursed loan.

        Raises:
            NotFoundError: if no application holds the referenced loan
            StateError: if that application is not DISBURSED, or another
                restructure of the loan is still in progress
        """
        prior = self.repository.find_loan_holder(details.loan_number)
        if prior is None:
            raise NotFoundError(f"Loan {details.loan_number} not found")
        if prior.status != S.DISBURSED:
            raise StateError(f"Loan {details.loan_number} is {prior.status.value}, only disbursed loans can be restructured")
        loan_id = prior.loan_id or prior.restructure_link['loan_id']
        in_progress = [a for a in self.repository.find_restructures(loan_id)
                       if a.id != details.application_number and not a.is_terminal
                       and a.status not in (S.DISBURSED, S.RESTRUCTURED)]
        if in_progress:
            raise StateError(f"Loan {details.loan_number} has restructure {in_progress[-1].id} in progress")

        now = datetime.now(timezone.utc)
        snapshot = {key: value for key, value in prior.snapshot.items()
                    if key not in ('DesiredDeductibleAmount', 'RequestedAmount', 'Tenure')}
        snapshot.update(wire_fields(details))
        candidate = LoanApplication(
            id=details.application_number,
            created_at=now,
            updated_at=now,
            subject_id=details.check_number,
            kind=ApplicationKind.RESTRUCTURE,
            status=S.INITIAL_OFFER,
            terms=LoanTerms(
                product_code=prior.terms.product_code,
                requested_principal=prior.terms.requested_principal,
                tenure_months=details.tenure,
            ),
            ledger_refs={'client_id': prior.client_id, 'loan_id': None},
            snapshot=snapshot,
            restructure_link={
                'prior_application_id': prior.id,
                'loan_id': loan_id,
                'new_tenure_months': details.tenure,
                'reschedule_id': None,
            },
        )

        with self._locks.hold(candidate.id):
            app, created = self.repository.find_or_create(candidate)
            if not created and app.is_terminal:
                raise StateError(f"Application {app.id} is already {app.status.value}")
            if created:
                self.audit_trail.log_event(
                    event_type=AuditEventType.APPLICATION_ADMITTED,
                    entity_type="loan_application",
                    entity_id=app.id,
                    metadata={"kind": app.kind, "prior_application_id": prior.id,
                              "new_tenure_months": details.tenure},
                    actor=Actor.EMPLOYEE.value
                )
            return app

    # ------------------------------------------------------------------
    # Initial decision
    # ------------------------------------------------------------------

    def process_offer(self, application_id: str) -> LoanApplication:
        """Detached phase of an offer: top-up detection, then the decision"""
        with self._locks.hold(application_id):
            app = self.repository.require(application_id)
            if app.status == S.INITIAL_APPROVAL_SENT:
                # Portal never acknowledged the first callback
                outbound = self._send(app, MessageType.LOAN_INITIAL_APPROVAL_NOTIFICATION,
                                      self._initial_approval_details(app, True))
                if outbound.delivered:
                    self.confirm_initial_approval(app)
                return app
            if app.status != S.INITIAL_OFFER:
                logger.info(f"Offer for {app.id} already decided ({app.status.value})")
                return app

            self.detect_top_up(app)
            return self.decide_and_notify(app)

    def detect_top_up(self, app: LoanApplication) -> LoanApplication:
        """
        Reclassify a NEW application as TOP_UP when the borrower already has
        an active ledger loan, and remember which loan the top-up closes.

        Raises:
            LedgerError: if the lookup failed; the application stays in
                INITIAL_OFFER with the failure in its error log
        """
        if app.kind not in (ApplicationKind.NEW, ApplicationKind.TOP_UP) or app.existing_loan_id:
            return app

        loan_number = app.snapshot.get('LoanNumber')
        if app.kind == ApplicationKind.TOP_UP and loan_number:
            prior = self.repository.find_by_loan_number(loan_number)
            if prior and prior.loan_id:
                app.existing_loan_id = prior.loan_id
                return self.repository.save(app)

        try:
            loans = self.ledger.find_active_loans(self._ledger_identity(app), timeout=self.ledger_timeout)
        except LedgerError as e:
            self._record_ledger_failure(app, "top_up_detection", e)
            self.repository.save(app)
            raise

        if not loans:
            return app

        if app.kind == ApplicationKind.NEW:
            app.kind = ApplicationKind.TOP_UP
            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_RECLASSIFIED,
                entity_type="loan_application",
                entity_id=app.id,
                metadata={"from": ApplicationKind.NEW, "to": ApplicationKind.TOP_UP,
                          "existing_loan_id": loans[0].loan_id}
            )
            log_action(logger, "info", "Active ledger loan found, processing as top-up",
                       application_id=app.id, action="reclassify",
                       extra={"existing_loan_id": loans[0].loan_id})
        app.existing_loan_id = loans[0].loan_id
        return self.repository.save(app)

    def _evaluate(self, app: LoanApplication) -> Tuple[Optional[calculator.AffordabilityQuote], List[str]]:
        """Quote the application and list every reason to decline it"""
        product = self.products.require(app.terms.product_code)
        tenure = app.terms.tenure_months or product.max_tenure_months

        if app.kind == ApplicationKind.RESTRUCTURE:
            loan = self.ledger.get_loan(app.restructure_link['loan_id'], timeout=self.ledger_timeout)
            quote = calculator.forward(loan.principal_outstanding, product.annual_interest_rate, tenure)
            violations = product.check_terms(product.min_principal, tenure)
            desired = self._snapshot_amount(app, 'DesiredDeductibleAmount')
            if desired and quote.installment_amount > desired:
                violations.append(
                    f"installment {quote.installment_amount} exceeds desired deduction {desired}"
                )
            return quote, violations

        quote = calculator.charges_quote(
            product.annual_interest_rate, tenure, product.fee_schedule,
            basic_salary=self._snapshot_amount(app, 'BasicSalary'),
            existing_deductions=self._snapshot_amount(app, 'TotalEmployeeDeduction') or 0,
            deductible_amount=self._snapshot_amount(app, 'DeductibleAmount'),
            desired_installment=self._snapshot_amount(app, 'DesiredDeductibleAmount'),
            requested_amount=app.terms.requested_principal,
            max_principal=product.max_principal,
        )

        violations = product.check_terms(quote.eligible_principal, tenure)
        takeover_amount = self._snapshot_amount(app, 'TakeOverAmount')
        if app.kind == ApplicationKind.TAKEOVER and takeover_amount and takeover_amount > quote.net_principal:
            violations.append(
                f"net principal {quote.net_principal} does not cover takeover amount {takeover_amount}"
            )
        return quote, violations

    def _initial_approval_details(self, app: LoanApplication, approved: bool,
                                  reason: Optional[str] = None) -> Dict[str, Any]:
        offer = calculator.AffordabilityQuote.from_dict(app.offer) if app.offer else None
        return {
            "ApplicationNumber": app.id,
            "Reason": reason or ("Loan Request Approved" if approved else "Loan Request Declined"),
            "FSPReferenceNumber": app.external_refs.get('fsp_reference_number'),
            "LoanNumber": app.external_refs.get('ess_loan_alias'),
            "TotalAmountToPay": offer.total_payable if offer else None,
            "OtherCharges": offer.total_charges if offer else None,
            "Approval": "APPROVED" if approved else "REJECTED",
        }

    def decide_and_notify(self, app: LoanApplication) -> LoanApplication:
        """
        Approve or decline an application in INITIAL_OFFER and tell the portal.

        Approval assigns the external references (once), moves to
        INITIAL_APPROVAL_SENT and sends the signed initial-approval callback.
        A decline moves to REJECTED with actor SYSTEM.
        """
        try:
            quote, violations = self._evaluate(app)
        except (CalculationError, NotFoundError) as e:
            quote, violations = None, [e.message]
        except LedgerError as e:
            self._record_ledger_failure(app, "decision", e)
            self.repository.save(app)
            raise

        if violations:
            reason = "; ".join(violations)
            self._transition(app, S.REJECTED, Actor.SYSTEM, reason)
            self._send(app, MessageType.LOAN_INITIAL_APPROVAL_NOTIFICATION,
                       self._initial_approval_details(app, False, reason))
            return app

        app.offer = quote.to_dict()
        if app.kind != ApplicationKind.RESTRUCTURE:
            app.terms.requested_principal = quote.eligible_principal
        app.terms.tenure_months = quote.tenure_months
        self._assign_external_refs(app)
        self._transition(app, S.INITIAL_APPROVAL_SENT)

        outbound = self._send(app, MessageType.LOAN_INITIAL_APPROVAL_NOTIFICATION,
                              self._initial_approval_details(app, True))
        if outbound.delivered:
            self.confirm_initial_approval(app)
        return app

    def confirm_initial_approval(self, app: LoanApplication) -> LoanApplication:
        """The portal acknowledged the initial approval"""
        if app.status != S.INITIAL_APPROVAL_SENT:
            raise StateError(f"Application {app.id} is {app.status.value}, not awaiting confirmation")
        return self._transition(app, S.APPROVED)

    # ------------------------------------------------------------------
    # Final approval and ledger orchestration
    # ------------------------------------------------------------------

    def check_final_approval(self, notification: FinalApprovalNotification) -> LoanApplication:
        """Synchronous guard run before acknowledging a final approval"""
        app = self.repository.require(notification.application_number)
        if app.status in (S.REJECTED, S.CANCELLED):
            raise StateError(f"Application {app.id} is {app.status.value}")
        if app.status == S.INITIAL_OFFER:
            raise StateError(f"Application {app.id} has no initial approval yet")
        return app

    def finalize_approval(self, notification: FinalApprovalNotification) -> LoanApplication:
        """
        Apply the employer's final decision.

        If the application already took in a final approval, the last outcome
        callback is re-emitted and no ledger call is made. When no outcome
        exists yet the earlier run was interrupted, and the remaining ledger
        stages run instead.
        """
        with self._locks.hold(notification.application_number):
            app = self.repository.require(notification.application_number)

            if app.status in LEDGER_STAGE_STATUSES and app.last_outcome is None:
                # Interrupted after taking the approval in; stages look before they create
                log_action(logger, "info", "Continuing interrupted ledger stages",
                           application_id=app.id, action="finalize")
                return self._run_ledger_stages(app)
            if app.status in FINALIZED_STATUSES:
                log_action(logger, "info", "Final approval redelivered, re-emitting outcome",
                           application_id=app.id, action="finalize")
                self._reemit_outcome(app)
                return app
            if app.status in (S.REJECTED, S.CANCELLED):
                logger.warning(f"Ignoring final approval for {app.status.value} application {app.id}")
                return app
            if app.status == S.INITIAL_OFFER:
                raise StateError(f"Application {app.id} has no initial approval yet")
            if app.status == S.INITIAL_APPROVAL_SENT:
                # The final decision implies the portal saw our initial approval
                self.confirm_initial_approval(app)

            if notification.approval != "APPROVED":
                reason = notification.reason or "Rejected by employer"
                if app.status == S.WAITING_FOR_LIQUIDATION:
                    return self.cancel(app, Actor.EMPLOYER, reason)
                return self.reject(app, Actor.EMPLOYER, reason)

            if notification.loan_number and not app.external_refs.get('ess_loan_alias'):
                app.external_refs['ess_loan_alias'] = notification.loan_number

            if app.kind == ApplicationKind.TAKEOVER and not app.payoff_confirmed:
                app.pending_final_approval = wire_fields(notification)
                if app.status == S.APPROVED:
                    self._transition(app, S.WAITING_FOR_LIQUIDATION)
                else:
                    self.repository.save(app)
                return app

            self._transition(app, S.FINAL_APPROVAL_RECEIVED)
            return self._run_ledger_stages(app)

    def resume(self, application_id: str) -> LoanApplication:
        """Re-run the remaining ledger stages of a stalled application"""
        with self._locks.hold(application_id):
            app = self.repository.require(application_id)
            if app.status in LEDGER_STAGE_STATUSES:
                return self._run_ledger_stages(app)
            if app.status == S.APPROVED and app.pending_final_approval and app.payoff_confirmed:
                return self._release_final_approval(app)
            raise StateError(f"Application {app.id} is {app.status.value}, nothing to resume")

    def _run_ledger_stages(self, app: LoanApplication) -> LoanApplication:
        if app.status == S.FINAL_APPROVAL_RECEIVED and not self._resolve_client(app):
            return app
        if app.status == S.CLIENT_CREATED and not self._create_loan(app):
            return app
        if app.status == S.LOAN_CREATED:
            self._disburse(app)
        return app

    def _client_profile(self, app: LoanApplication) -> ClientProfile:
        snapshot = app.snapshot
        return ClientProfile(
            external_id=self._ledger_identity(app),
            first_name=snapshot.get('FirstName', ''),
            middle_name=snapshot.get('MiddleName'),
            last_name=snapshot.get('LastName', ''),
            mobile_no=snapshot.get('MobileNumber'),
            date_of_birth=snapshot.get('DateOfBirth'),
            gender=snapshot.get('Sex'),
        )

    def _resolve_client(self, app: LoanApplication) -> bool:
        """FINAL_APPROVAL_RECEIVED -> CLIENT_CREATED; search before create"""
        try:
            if app.client_id is None:
                profile = self._client_profile(app)
                client_id = self.ledger.search_client(profile.external_id, timeout=self.ledger_timeout)
                if client_id is None:
                    client_id = self.ledger.create_client(profile, timeout=self.ledger_timeout)
                app.set_ledger_ref('client_id', client_id)
        except LedgerError as e:
            self._fail_before_loan(app, "client_creation", e)
            return False
        self._transition(app, S.CLIENT_CREATED)
        return True

    def _loan_request(self, app: LoanApplication) -> LoanRequest:
        product = self.products.require(app.terms.product_code)
        return LoanRequest(
            client_id=app.client_id,
            product_id=product.ledger_product_id or self.ledger_product_id,
            principal=app.terms.requested_principal,
            tenure_months=app.terms.tenure_months,
            annual_interest_rate=product.annual_interest_rate,
            external_id=app.id,
            top_up_loan_id=app.existing_loan_id if app.kind == ApplicationKind.TOP_UP else None,
        )

    def _create_loan(self, app: LoanApplication) -> bool:
        """CLIENT_CREATED -> LOAN_CREATED; a reschedule stands in for restructures"""
        try:
            if app.kind == ApplicationKind.RESTRUCTURE:
                link = app.restructure_link
                if not link.get('reschedule_id'):
                    link['reschedule_id'] = self.ledger.create_reschedule(
                        link['loan_id'], link['new_tenure_months'],
                        f"Restructure {app.id}: tenure {link['new_tenure_months']} months",
                        timeout=self.ledger_timeout,
                    )
            else:
                if app.loan_id is None:
                    existing = self.ledger.find_loan_by_external_id(app.id, timeout=self.ledger_timeout)
                    if existing is not None:
                        loan_id = existing.loan_id
                    else:
                        loan_id = self.ledger.create_loan(self._loan_request(app), timeout=self.ledger_timeout)
                    app.set_ledger_ref('loan_id', loan_id)
                    # Persist the loan id before approving so a retry cannot create another
                    self.repository.save(app)
                loan = self.ledger.get_loan(app.loan_id, timeout=self.ledger_timeout)
                if loan.status == LedgerLoanStatus.SUBMITTED:
                    self.ledger.approve_loan(app.loan_id, timeout=self.ledger_timeout)
        except LedgerError as e:
            self._fail_before_loan(app, "loan_creation", e)
            return False
        self._transition(app, S.LOAN_CREATED)
        return True

    def _disburse(self, app: LoanApplication) -> None:
        """LOAN_CREATED -> DISBURSED, or the disbursement-failure path"""
        if app.kind == ApplicationKind.RESTRUCTURE:
            prior = self.repository.get(app.restructure_link['prior_application_id'])
            if prior is not None and prior.status == S.DISBURSED:
                self._transition(prior, S.RESTRUCTURED,
                                 reason=f"Restructured by application {app.id}")
            self._mark_disbursed(app, "Loan restructured")
            return

        try:
            loan = self.ledger.get_loan(app.loan_id, timeout=self.ledger_timeout)
            if loan.status != LedgerLoanStatus.ACTIVE:
                self.ledger.disburse_loan(app.loan_id, timeout=self.ledger_timeout)
        except LedgerError as e:
            self._record_ledger_failure(app, "disbursement", e)
            app.last_outcome = OUTCOME_FAILED
            self.repository.save(app)
            self._send(app, MessageType.LOAN_DISBURSEMENT_FAILURE_NOTIFICATION,
                       self._failure_details(app, f"Disbursement failed: {e.message}"))
            self._transition(app, S.DISBURSEMENT_FAILURE_NOTIFICATION_SENT)
            self._transition(app, S.FAILED, reason=e.message)
            return
        self._mark_disbursed(app)

    def _fail_before_loan(self, app: LoanApplication, stage: str, error: LedgerError) -> None:
        """
        A ledger failure before the loan exists keeps the status so the
        application can be resumed; the portal still hears about it.
        """
        self._record_ledger_failure(app, stage, error)
        app.last_outcome = OUTCOME_FAILED
        app.stage_timestamps['failureNotified'] = datetime.now(timezone.utc).isoformat()
        self.repository.save(app)
        self._send(app, MessageType.LOAN_DISBURSEMENT_FAILURE_NOTIFICATION,
                   self._failure_details(app, f"{stage.replace('_', ' ').capitalize()} failed: {error.message}"))

    def _mark_disbursed(self, app: LoanApplication, reason: str = "Loan disbursed") -> None:
        app.last_outcome = OUTCOME_DISBURSED
        self._transition(app, S.DISBURSED)
        self._send(app, MessageType.LOAN_DISBURSEMENT_NOTIFICATION, self._disbursement_details(app, reason))

    def _disbursement_details(self, app: LoanApplication, reason: str = "Loan disbursed") -> Dict[str, Any]:
        offer = calculator.AffordabilityQuote.from_dict(app.offer) if app.offer else None
        return {
            "ApplicationNumber": app.id,
            "Reason": reason,
            "FSPReferenceNumber": app.external_refs.get('fsp_reference_number'),
            "LoanNumber": app.external_refs.get('ess_loan_alias'),
            "TotalAmountToPay": offer.total_payable if offer else None,
            "DisbursementDate": app.stage_timestamps.get('disbursed'),
        }

    def _failure_details(self, app: LoanApplication, reason: str) -> Dict[str, Any]:
        return {"ApplicationNumber": app.id, "Reason": reason}

    def _reemit_outcome(self, app: LoanApplication) -> Optional[OutboundMessage]:
        if app.status in (S.DISBURSED, S.COMPLETED, S.RESTRUCTURED):
            return self._send(app, MessageType.LOAN_DISBURSEMENT_NOTIFICATION,
                              self._disbursement_details(app))
        if app.last_outcome == OUTCOME_FAILED:
            last_error = app.error_log[-1]['error'] if app.error_log else "Disbursement failed"
            return self._send(app, MessageType.LOAN_DISBURSEMENT_FAILURE_NOTIFICATION,
                              self._failure_details(app, last_error))
        logger.info(f"Application {app.id} is still {app.status.value}; no outcome to re-emit")
        return None

    # ------------------------------------------------------------------
    # Takeover payoff
    # ------------------------------------------------------------------

    def check_payoff(self, notification: TakeoverPaymentNotification) -> LoanApplication:
        app = self.repository.require(notification.application_number)
        if app.kind != ApplicationKind.TAKEOVER:
            raise StateError(f"Application {app.id} is not a takeover")
        if app.is_terminal:
            raise StateError(f"Application {app.id} is {app.status.value}")
        return app

    def confirm_payoff(self, notification: TakeoverPaymentNotification) -> LoanApplication:
        """
        The previous lender confirmed the takeover payoff.

        A parked final approval is resumed. Re-running the notification after
        an interruption picks the ledger stages up where they stopped.
        """
        with self._locks.hold(notification.application_number):
            app = self.check_payoff(notification)
            if app.payoff_confirmed:
                if app.status in LEDGER_STAGE_STATUSES and app.last_outcome is None:
                    return self._run_ledger_stages(app)
                if app.status == S.APPROVED and app.pending_final_approval:
                    return self._release_final_approval(app)
                if app.status != S.WAITING_FOR_LIQUIDATION:
                    logger.info(f"Payoff for {app.id} already confirmed")
                    return app

            app.payoff_confirmed = True
            app.merge_snapshot(wire_fields(notification))
            if app.status != S.WAITING_FOR_LIQUIDATION:
                return self.repository.save(app)

            self._transition(app, S.APPROVED)
            if app.pending_final_approval:
                return self._release_final_approval(app)
            return app

    def _release_final_approval(self, app: LoanApplication) -> LoanApplication:
        app.pending_final_approval = None
        self._transition(app, S.FINAL_APPROVAL_RECEIVED)
        return self._run_ledger_stages(app)

    # ------------------------------------------------------------------
    # Rejection and cancellation
    # ------------------------------------------------------------------

    def _withdraw_ledger_loan(self, app: LoanApplication, reason: str) -> None:
        """Reject a loan created for an application that will not go ahead"""
        if app.kind == ApplicationKind.RESTRUCTURE or app.loan_id is None:
            return
        try:
            loan = self.ledger.get_loan(app.loan_id, timeout=self.ledger_timeout)
            if loan.status == LedgerLoanStatus.SUBMITTED:
                self.ledger.reject_loan(app.loan_id, reason, timeout=self.ledger_timeout)
            else:
                logger.warning(f"Ledger loan {app.loan_id} of {app.id} is {loan.status.value}, left in place")
        except LedgerError as e:
            self._record_ledger_failure(app, "loan_withdrawal", e)

    def reject(self, app: LoanApplication, actor: Actor, reason: str) -> LoanApplication:
        if S.REJECTED not in TRANSITIONS[app.status]:
            raise StateError(f"Application {app.id} cannot be rejected while {app.status.value}")
        self._withdraw_ledger_loan(app, reason)
        return self._transition(app, S.REJECTED, actor, reason)

    def cancel(self, app: LoanApplication, actor: Actor, reason: str) -> LoanApplication:
        if app.status not in CANCELLABLE_STATUSES:
            raise StateError(f"Application {app.id} cannot be cancelled while {app.status.value}")
        self._withdraw_ledger_loan(app, reason)
        return self._transition(app, S.CANCELLED, actor, reason)

    def check_cancellation(self, notification: CancellationNotification) -> LoanApplication:
        """Synchronous guard run before acknowledging a cancellation"""
        app = self.repository.require(notification.application_number)
        if app.status not in CANCELLABLE_STATUSES:
            raise StateError(f"Application {app.id} cannot be cancelled while {app.status.value}")
        return app

    def cancel_application(self, notification: CancellationNotification) -> LoanApplication:
        with self._locks.hold(notification.application_number):
            app = self.repository.require(notification.application_number)
            return self.cancel(app, Actor.EMPLOYEE, notification.reason or "Cancelled by employee")

    # ------------------------------------------------------------------
    # Ledger-originated events and reconciliation
    # ------------------------------------------------------------------

    def handle_ledger_event(self, event: LedgerEvent) -> LoanApplication:
        """
        Advance an application for work done directly in the ledger
        (approval, disbursement or reschedule by a back-office operator).

        Raises:
            NotFoundError: if no application holds the loan
        """
        match = self.repository.find_by_loan_id(event.loan_id)
        if match is None:
            raise NotFoundError(f"No application holds ledger loan {event.loan_id}")

        with self._locks.hold(match.id):
            app = self.repository.require(match.id)
            self.audit_trail.log_event(
                event_type=AuditEventType.LEDGER_EVENT_RECEIVED,
                entity_type="loan_application",
                entity_id=app.id,
                metadata={"action": event.action, "loan_id": event.loan_id, "status": app.status}
            )
            if app.is_terminal:
                logger.info(f"Ignoring ledger {event.action} for {app.status.value} application {app.id}")
                return app

            before = app.status
            if event.action in ("APPROVE", "DISBURSE") and app.status == S.CLIENT_CREATED:
                self._transition(app, S.LOAN_CREATED)
            if event.action == "DISBURSE" and app.status == S.LOAN_CREATED:
                self._mark_disbursed(app)
            elif event.action == "RESCHEDULE" and app.status == S.DISBURSED:
                self._transition(app, S.RESTRUCTURED, reason="Rescheduled in ledger")

            if app.status == before:
                logger.info(f"Ledger {event.action} needs no change for {app.id} in {app.status.value}")
            return app

    def reconcile(self) -> Dict[str, int]:
        """
        Complete DISBURSED applications whose ledger loan is closed,
        overpaid or written off.

        Returns:
            Counts of applications checked, completed and ledger errors
        """
        results = {"checked": 0, "completed": 0, "errors": 0}
        for app in self.repository.find_by_status(S.DISBURSED):
            loan_id = app.loan_id or (app.restructure_link or {}).get('loan_id')
            if not loan_id:
                continue
            results["checked"] += 1
            try:
                loan = self.ledger.get_loan(loan_id, timeout=self.ledger_timeout)
            except LedgerError as e:
                results["errors"] += 1
                logger.warning(f"Reconciliation could not fetch loan {loan_id} for {app.id}: {e}")
                continue
            if not loan.is_settled:
                continue
            with self._locks.hold(app.id):
                fresh = self.repository.require(app.id)
                if fresh.status == S.DISBURSED:
                    self._transition(fresh, S.COMPLETED, reason=f"Ledger loan {loan.status.value}")
                    results["completed"] += 1

        self.audit_trail.log_event(
            event_type=AuditEventType.RECONCILIATION_RUN,
            entity_type="system",
            entity_id="reconciliation",
            metadata=results
        )
        return results
