"""
Follow-up reconciliation for unconfirmed outcomes.

A batch can settle with documents the service never reported on: timed
out, accepted by heuristic, or reported optimistically. The reconciler
asks for each such document's details and replaces the outcome with what
the service now says. Confirmed outcomes and local failures are returned
untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

from einvoice.app.core.errors import AuthError, GatewayError
from einvoice.app.schemas.submission import (
    DocumentOutcome,
    OutcomeBasis,
    OutcomeStage,
)
from einvoice.app.schemas.wire import DocumentDetails

logger = logging.getLogger("einvoice.reconciliation")


class DetailsSource(Protocol):
    async def get_document_details(self, document_uuid: str) -> DocumentDetails:
        ...


def needs_reconciliation(outcome: DocumentOutcome) -> bool:
    if outcome.remote_id is None:
        return False
    return outcome.stage == OutcomeStage.TIMED_OUT or not outcome.confirmed


class DocumentReconciler:
    def __init__(self, *, gateway: DetailsSource, concurrency: int = 5) -> None:
        self._gateway = gateway
        self._concurrency = concurrency

    async def reconcile(
        self, outcomes: Sequence[DocumentOutcome]
    ) -> List[DocumentOutcome]:
        """
        Return outcomes in the same order, with unconfirmed ones refreshed.

        Raises:
            AuthError: no credential could be obtained.
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def refresh(outcome: DocumentOutcome) -> DocumentOutcome:
            if not needs_reconciliation(outcome):
                return outcome
            async with semaphore:
                return await self._refresh(outcome)

        return list(await asyncio.gather(*(refresh(o) for o in outcomes)))

    async def _refresh(self, outcome: DocumentOutcome) -> DocumentOutcome:
        try:
            details = await self._gateway.get_document_details(outcome.remote_id)
        except AuthError:
            raise
        except GatewayError as exc:
            logger.warning(
                "reconciliation_lookup_failed",
                extra={
                    "document_uuid": outcome.remote_id,
                    "error_type": type(exc).__name__,
                    "status_code": exc.status_code,
                },
            )
            return outcome

        updated = self._apply(outcome, details)
        if updated is not outcome:
            logger.info(
                "outcome_reconciled",
                extra={
                    "document_uuid": outcome.remote_id,
                    "stage": updated.stage.value,
                },
            )
        return updated

    @staticmethod
    def _apply(
        outcome: DocumentOutcome, details: DocumentDetails
    ) -> DocumentOutcome:
        status = details.status.strip().lower()

        if status == "valid" or (status != "invalid" and details.long_id):
            return outcome.model_copy(
                update={
                    "stage": OutcomeStage.ACCEPTED,
                    "basis": OutcomeBasis.REMOTE,
                    "long_term_id": details.long_id or outcome.long_term_id,
                    "error_code": None,
                    "error_message": None,
                }
            )

        if status == "invalid":
            error = details.first_error()
            return outcome.model_copy(
                update={
                    "stage": OutcomeStage.REJECTED,
                    "basis": OutcomeBasis.REMOTE,
                    "error_code": _error_code(error.code if error else None),
                    "error_message": (
                        error.message if error and error.message
                        else "Document failed remote validation"
                    ),
                }
            )

        if status == "cancelled":
            return outcome.model_copy(
                update={
                    "stage": OutcomeStage.REJECTED,
                    "basis": OutcomeBasis.REMOTE,
                    "error_code": "CANCELLED",
                    "error_message": "Document was cancelled",
                }
            )

        return outcome


def _error_code(code: Optional[str]) -> str:
    return code or "INVALID"
