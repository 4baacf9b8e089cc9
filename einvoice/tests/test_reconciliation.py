import pytest

from einvoice.app.coordinator.reconciliation import DocumentReconciler
from einvoice.app.core.errors import AuthError, RemoteRejection
from einvoice.app.schemas.submission import (
    DocumentOutcome,
    OutcomeBasis,
    OutcomeStage,
)
from einvoice.app.schemas.wire import DocumentDetails

pytestmark = pytest.mark.anyio


class FakeDetailsSource:
    def __init__(self, answers):
        self.answers = answers
        self.asked = []

    async def get_document_details(self, document_uuid):
        self.asked.append(document_uuid)
        answer = self.answers[document_uuid]
        if isinstance(answer, Exception):
            raise answer
        return DocumentDetails.model_validate(answer)


def outcome(code, stage, basis, remote_id=None):
    return DocumentOutcome(
        external_id=code,
        stage=stage,
        basis=basis,
        submission_uid="SUB-1",
        remote_id=remote_id,
    )


async def test_unconfirmed_outcomes_are_refreshed():
    source = FakeDetailsSource(
        {
            "u-timeout": {"uuid": "u-timeout", "status": "Valid", "longId": "L-1"},
            "u-heuristic": {
                "uuid": "u-heuristic",
                "status": "Invalid",
                "validationResults": {
                    "validationSteps": [
                        {"name": "Core", "error": {"code": "CV302", "message": "Bad TIN"}}
                    ]
                },
            },
            "u-optimistic": {"uuid": "u-optimistic", "status": "Cancelled"},
        }
    )
    reconciler = DocumentReconciler(gateway=source)

    refreshed = await reconciler.reconcile(
        [
            outcome("A", OutcomeStage.TIMED_OUT, OutcomeBasis.REMOTE, "u-timeout"),
            outcome("B", OutcomeStage.ACCEPTED, OutcomeBasis.HEURISTIC, "u-heuristic"),
            outcome("C", OutcomeStage.ACCEPTED, OutcomeBasis.OPTIMISTIC, "u-optimistic"),
        ]
    )

    a, b, c = refreshed
    assert (a.stage, a.basis, a.long_term_id) == (
        OutcomeStage.ACCEPTED, OutcomeBasis.REMOTE, "L-1"
    )
    assert (b.stage, b.error_code, b.error_message) == (
        OutcomeStage.REJECTED, "CV302", "Bad TIN"
    )
    assert (c.stage, c.error_code) == (OutcomeStage.REJECTED, "CANCELLED")
    assert all(o.confirmed for o in refreshed)


async def test_confirmed_and_local_outcomes_are_untouched():
    source = FakeDetailsSource({})
    reconciler = DocumentReconciler(gateway=source)
    outcomes = [
        outcome("A", OutcomeStage.ACCEPTED, OutcomeBasis.REMOTE, "u-a"),
        DocumentOutcome.local_failure("B", "MISSING_PHONE", "No phone"),
        outcome("C", OutcomeStage.TIMED_OUT, OutcomeBasis.REMOTE),
    ]

    refreshed = await reconciler.reconcile(outcomes)

    assert refreshed == outcomes
    assert source.asked == []


async def test_still_submitted_document_stays_unconfirmed():
    source = FakeDetailsSource({"u-a": {"uuid": "u-a", "status": "Submitted", "longId": ""}})
    reconciler = DocumentReconciler(gateway=source)
    original = outcome("A", OutcomeStage.ACCEPTED, OutcomeBasis.HEURISTIC, "u-a")

    [refreshed] = await reconciler.reconcile([original])

    assert refreshed == original


async def test_lookup_failure_keeps_outcome_but_auth_error_propagates():
    original = outcome("A", OutcomeStage.TIMED_OUT, OutcomeBasis.REMOTE, "u-a")

    failing = DocumentReconciler(
        gateway=FakeDetailsSource({"u-a": RemoteRejection("gone", status_code=404)})
    )
    assert await failing.reconcile([original]) == [original]

    unauthenticated = DocumentReconciler(
        gateway=FakeDetailsSource({"u-a": AuthError("no token")})
    )
    with pytest.raises(AuthError):
        await unauthenticated.reconcile([original])
