"""
Tests for the loan application record, its status graph and repository
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from ess_bridge.applications import (
    Actor, ApplicationKind, ApplicationRepository, ApplicationStatus, CANCELLABLE_STATUSES,
    LoanApplication, LoanTerms, TERMINAL_STATUSES, TRANSITIONS,
)
from ess_bridge.exceptions import ConcurrencyError, NotFoundError, StateError
from ess_bridge.storage import InMemoryStorage

S = ApplicationStatus


def make_application(application_id="APP-1", status=S.INITIAL_OFFER, **kwargs) -> LoanApplication:
    now = datetime.now(timezone.utc)
    return LoanApplication(
        id=application_id,
        created_at=now,
        updated_at=now,
        subject_id="CHK-1",
        kind=kwargs.pop("kind", ApplicationKind.NEW),
        status=status,
        terms=LoanTerms(product_code="17", requested_principal=Decimal("5000000"), tenure_months=60),
        **kwargs
    )


@pytest.fixture
def repository():
    return ApplicationRepository(InMemoryStorage())


class TestTransitionTable:
    """Shape of the status graph"""

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert TRANSITIONS[status] == frozenset()

    def test_cancellation_only_before_loan_creation(self):
        assert S.CLIENT_CREATED in CANCELLABLE_STATUSES
        assert S.LOAN_CREATED not in CANCELLABLE_STATUSES
        assert S.DISBURSED not in CANCELLABLE_STATUSES

    def test_every_status_listed(self):
        assert set(TRANSITIONS) == set(ApplicationStatus)


class TestLoanApplication:
    def test_dict_round_trip(self):
        app = make_application(snapshot={"NIN": "123"})
        restored = LoanApplication.from_dict(app.to_dict())
        assert restored.terms.requested_principal == Decimal("5000000")
        assert restored.kind == ApplicationKind.NEW
        assert restored.snapshot == {"NIN": "123"}

    def test_ledger_refs_are_write_once(self):
        app = make_application()
        app.set_ledger_ref("loan_id", "42")
        app.set_ledger_ref("loan_id", "42")
        with pytest.raises(StateError):
            app.set_ledger_ref("loan_id", "43")

    def test_merge_snapshot_never_overwrites(self):
        app = make_application(snapshot={"NIN": "123"})
        app.merge_snapshot({"NIN": "999", "MobileNumber": "255700000000", "Email": None})
        assert app.snapshot == {"NIN": "123", "MobileNumber": "255700000000"}


class TestRepository:
    """Find-or-create, guarded transitions and compare-and-set"""

    def test_find_or_create(self, repository):
        app, created = repository.find_or_create(make_application())
        assert created
        assert "offered" in app.stage_timestamps

        again, created = repository.find_or_create(make_application())
        assert not created
        assert again.id == app.id

    def test_require_missing(self, repository):
        with pytest.raises(NotFoundError):
            repository.require("nope")

    def test_legal_transition(self, repository):
        app, _ = repository.find_or_create(make_application())
        repository.transition(app, S.INITIAL_APPROVAL_SENT)
        stored = repository.require(app.id)
        assert stored.status == S.INITIAL_APPROVAL_SENT
        assert stored.version == 1
        assert "approvalSent" in stored.stage_timestamps

    def test_illegal_transition(self, repository):
        app, _ = repository.find_or_create(make_application())
        with pytest.raises(StateError):
            repository.transition(app, S.DISBURSED)
        assert repository.require(app.id).status == S.INITIAL_OFFER

    def test_rejection_requires_actor(self, repository):
        app, _ = repository.find_or_create(make_application())
        with pytest.raises(StateError):
            repository.transition(app, S.REJECTED)
        repository.transition(app, S.REJECTED, Actor.SYSTEM, "no headroom")
        stored = repository.require(app.id)
        assert stored.actor_trail["actor"] == "SYSTEM"
        assert stored.actor_trail["reason"] == "no headroom"

    def test_stale_copy_loses(self, repository):
        app, _ = repository.find_or_create(make_application())
        stale = repository.require(app.id)
        other = repository.require(app.id)
        repository.transition(app, S.INITIAL_APPROVAL_SENT)
        with pytest.raises(ConcurrencyError):
            repository.transition(stale, S.REJECTED, Actor.SYSTEM)
        other.snapshot["Note"] = "late edit"
        with pytest.raises(ConcurrencyError):
            repository.save(other)
        assert repository.require(app.id).status == S.INITIAL_APPROVAL_SENT

    def test_lost_transition_leaves_copy_unchanged(self, repository):
        app, _ = repository.find_or_create(make_application())
        stale = repository.require(app.id)
        repository.transition(app, S.INITIAL_APPROVAL_SENT)
        before = stale.to_dict()
        with pytest.raises(ConcurrencyError):
            repository.transition(stale, S.REJECTED, Actor.SYSTEM, "no headroom")
        assert stale.to_dict() == before

    def test_lookups(self, repository):
        app, _ = repository.find_or_create(make_application(
            external_refs={"fsp_reference_number": "FSP1", "ess_loan_alias": "LN1"},
            ledger_refs={"client_id": "7", "loan_id": "42"},
        ))
        repository.find_or_create(make_application("APP-2"))

        assert repository.find_by_loan_id("42").id == app.id
        assert repository.find_by_loan_number("LN1").id == app.id
        assert repository.find_by_loan_number("FSP1").id == app.id
        assert repository.find_by_loan_number("42").id == app.id
        assert repository.find_by_loan_number("missing") is None
        assert {a.id for a in repository.find_by_subject("CHK-1")} == {"APP-1", "APP-2"}
        assert len(repository.find_by_status(S.INITIAL_OFFER)) == 2

    def test_loan_holder_follows_restructures(self, repository):
        repository.find_or_create(make_application(
            status=S.RESTRUCTURED,
            external_refs={"ess_loan_alias": "LN1"},
            ledger_refs={"client_id": "7", "loan_id": "42"},
        ))
        repository.find_or_create(make_application(
            "APP-2", status=S.RESTRUCTURED, kind=ApplicationKind.RESTRUCTURE,
            restructure_link={"prior_application_id": "APP-1", "loan_id": "42"},
        ))
        assert repository.find_loan_holder("LN1").id == "APP-1"

        repository.find_or_create(make_application(
            "APP-3", status=S.DISBURSED, kind=ApplicationKind.RESTRUCTURE,
            restructure_link={"prior_application_id": "APP-2", "loan_id": "42"},
        ))
        assert repository.find_loan_holder("LN1").id == "APP-3"
        assert repository.find_by_loan_number("LN1").id == "APP-1"
        assert repository.find_loan_holder("missing") is None

    def test_find_by_actor(self, repository):
        app, _ = repository.find_or_create(make_application())
        repository.transition(app, S.CANCELLED, Actor.EMPLOYEE, "changed my mind")
        assert [a.id for a in repository.find_by_actor(Actor.EMPLOYEE)] == [app.id]
        assert repository.find_by_actor(Actor.EMPLOYER) == []
