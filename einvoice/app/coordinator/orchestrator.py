"""
Batch submission orchestrator.

Execution order:
    1. Local validation (no network)
    2. Reference lookup + encoding, bounded fan-out
    3. Early return when nothing survived encoding
    4. One submit call; immediate rejections recorded
    5. Polling, only if something was accepted for processing
    6. Merge into one outcome per input item, input order preserved

Per-document failures never abort siblings. Failure of the submit call
or of credential renewal aborts the batch and propagates once; nothing
is retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from einvoice.app.coordinator.polling import (
    PollingPolicy,
    PollingResult,
    PollingStateMachine,
)
from einvoice.app.coordinator.validation import validate_customer, validate_item
from einvoice.app.core.config import Settings
from einvoice.app.core.errors import (
    GatewayError,
    LocalValidationError,
    PollingTimeout,
    SubmissionCancelled,
)
from einvoice.app.events import (
    NullEventEmitter,
    SubmissionEvent,
    SubmissionEventEmitter,
    SubmissionEventType,
)
from einvoice.app.schemas.invoice import InvoiceItem
from einvoice.app.schemas.submission import (
    Document,
    DocumentOutcome,
    OutcomeBasis,
    OutcomeStage,
    derive_overall_status,
)
from einvoice.app.schemas.wire import (
    DocumentSummary,
    SubmissionReceipt,
    SubmissionStatus,
)
from einvoice.app.services.codec import (
    DocumentCodec,
    JsonInvoiceCodec,
    SupplierParty,
    encode_document,
)
from einvoice.app.services.reference_data import CustomerDirectory

logger = logging.getLogger("einvoice.orchestrator")


class SubmissionPort(Protocol):
    async def submit_batch(
        self, documents: Sequence[Document]
    ) -> SubmissionReceipt:
        ...

    async def get_status(self, submission_uid: str) -> SubmissionStatus:
        ...


class BatchOrchestrator:
    def __init__(
        self,
        *,
        gateway: SubmissionPort,
        codec: DocumentCodec,
        customers: CustomerDirectory,
        polling: Optional[PollingStateMachine] = None,
        encode_concurrency: int = 5,
        max_age_days: Optional[int] = 3,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._gateway = gateway
        self._codec = codec
        self._customers = customers
        self._polling = polling or PollingStateMachine(gateway=gateway)
        self._encode_concurrency = encode_concurrency
        self._max_age_days = max_age_days
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        gateway: SubmissionPort,
        customers: CustomerDirectory,
        codec: Optional[DocumentCodec] = None,
    ) -> "BatchOrchestrator":
        return cls(
            gateway=gateway,
            codec=codec or JsonInvoiceCodec(SupplierParty.from_settings(settings)),
            customers=customers,
            polling=PollingStateMachine(
                gateway=gateway,
                policy=PollingPolicy.from_settings(settings),
            ),
            encode_concurrency=settings.encode_concurrency,
            max_age_days=settings.invoice_max_age_days,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_batch(
        self,
        items: Sequence[InvoiceItem],
        *,
        cancel: Optional[asyncio.Event] = None,
        emitter: Optional[SubmissionEventEmitter] = None,
        batch_id: Optional[str] = None,
    ) -> List[DocumentOutcome]:
        """
        Submit a batch and return exactly one outcome per item, in order.

        Setting `cancel` stops polling early; documents the service had
        accepted are then reported TimedOut with their remote ids.

        Raises:
            AuthError: no credential could be obtained.
            GatewayError: the submit call itself failed.
        """
        emitter = emitter or NullEventEmitter()
        batch_id = batch_id or uuid4().hex

        await emitter.emit(
            SubmissionEvent(
                batch_id=batch_id,
                event_type=SubmissionEventType.BATCH_STARTED,
                details={"items": len(items)},
            )
        )

        try:
            outcomes = await self._run(items, cancel, emitter, batch_id)
        except Exception as exc:
            logger.exception(
                "batch_failed",
                extra={"batch_id": batch_id, "error_type": type(exc).__name__},
            )
            await emitter.emit(
                SubmissionEvent(
                    batch_id=batch_id,
                    event_type=SubmissionEventType.BATCH_FAILED,
                    details={"error_type": type(exc).__name__},
                )
            )
            raise

        overall = derive_overall_status(outcomes)
        logger.info(
            "batch_completed",
            extra={"batch_id": batch_id, "overall_status": overall.value},
        )
        await emitter.emit(
            SubmissionEvent(
                batch_id=batch_id,
                event_type=SubmissionEventType.BATCH_COMPLETED,
                details={
                    "overall_status": overall.value,
                    "stages": [o.stage.value for o in outcomes],
                    "outcomes": [o.model_dump(mode="json") for o in outcomes],
                },
            )
        )
        return outcomes

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(
        self,
        items: Sequence[InvoiceItem],
        cancel: Optional[asyncio.Event],
        emitter: SubmissionEventEmitter,
        batch_id: str,
    ) -> List[DocumentOutcome]:
        slots: List[Optional[DocumentOutcome]] = [None] * len(items)

        # 1. Local validation
        valid = self._partition(items, slots)

        # 2. Encoding
        encoded = await self._encode_all(valid, slots)

        failed = sum(
            1
            for o in slots
            if o is not None and o.stage == OutcomeStage.LOCAL_VALIDATION_FAILED
        )
        if failed:
            await emitter.emit(
                SubmissionEvent(
                    batch_id=batch_id,
                    event_type=SubmissionEventType.LOCAL_VALIDATION_FAILED,
                    details={"count": failed},
                )
            )
        await emitter.emit(
            SubmissionEvent(
                batch_id=batch_id,
                event_type=SubmissionEventType.DOCUMENTS_ENCODED,
                details={"count": len(encoded)},
            )
        )

        # 3. Nothing to send
        if not encoded:
            return self._complete(slots)

        # 4. Submit once
        receipt = await self._gateway.submit_batch([d for _, d in encoded])
        index_by_code = {document.external_id: index for index, document in encoded}
        submission_uid = receipt.submission_uid

        await emitter.emit(
            SubmissionEvent(
                batch_id=batch_id,
                event_type=SubmissionEventType.BATCH_SUBMITTED,
                details={
                    "submission_uid": submission_uid,
                    "accepted": len(receipt.accepted_documents),
                    "rejected": len(receipt.rejected_documents),
                },
            )
        )

        for rejected in receipt.rejected_documents:
            index = index_by_code.get(rejected.invoice_code_number)
            if index is None:
                logger.warning(
                    "rejection_for_unknown_document",
                    extra={"code_number": rejected.invoice_code_number},
                )
                continue
            slots[index] = DocumentOutcome(
                external_id=rejected.invoice_code_number,
                stage=OutcomeStage.REJECTED,
                basis=OutcomeBasis.REMOTE,
                submission_uid=submission_uid,
                error_code=rejected.error.code,
                error_message=rejected.error.message,
            )

        # 5. Poll what was accepted for processing
        batch = receipt.batch()
        if batch is not None:
            accepted = {
                d.invoice_code_number: d.uuid for d in receipt.accepted_documents
            }
            try:
                result = await self._polling.run(
                    batch.submission_id,
                    cancel=cancel,
                    emitter=emitter,
                    batch_id=batch_id,
                )
            except PollingTimeout:
                self._mark_unsettled(
                    accepted, index_by_code, slots, batch.submission_id,
                    "POLLING_TIMEOUT",
                    "No status was reported before the polling budget ran out",
                )
            except SubmissionCancelled:
                # Documents already exist remotely; keep their ids for reconciliation
                logger.warning(
                    "batch_polling_cancelled",
                    extra={
                        "batch_id": batch_id,
                        "submission_uid": batch.submission_id,
                        "documents": len(accepted),
                    },
                )
                self._mark_unsettled(
                    accepted, index_by_code, slots, batch.submission_id,
                    "CANCELLED",
                    "Polling was cancelled before the service reported a status",
                )
            else:
                self._merge_polling(result, accepted, index_by_code, slots)

        # Sent but neither accepted nor rejected by the receipt
        for index, document in encoded:
            if slots[index] is None:
                slots[index] = self._timed_out(
                    document.external_id, None, submission_uid, "NOT_ACKNOWLEDGED",
                    "Submission response did not mention this document",
                )

        # 6. Merge
        return self._complete(slots)

    def _partition(
        self,
        items: Sequence[InvoiceItem],
        slots: List[Optional[DocumentOutcome]],
    ) -> List[Tuple[int, InvoiceItem]]:
        now = self._clock()
        seen: set[str] = set()
        valid: List[Tuple[int, InvoiceItem]] = []

        for index, item in enumerate(items):
            try:
                validate_item(item, max_age_days=self._max_age_days, now=now)
                if item.invoice_id in seen:
                    raise LocalValidationError(
                        "DUPLICATE",
                        f"Invoice number {item.invoice_id} appears more than "
                        "once in this batch",
                    )
            except LocalValidationError as exc:
                slots[index] = DocumentOutcome.local_failure(
                    item.invoice_id, exc.code, exc.message
                )
                continue

            seen.add(item.invoice_id)
            valid.append((index, item))

        return valid

    async def _encode_all(
        self,
        valid: Sequence[Tuple[int, InvoiceItem]],
        slots: List[Optional[DocumentOutcome]],
    ) -> List[Tuple[int, Document]]:
        semaphore = asyncio.Semaphore(self._encode_concurrency)

        async def guarded(
            index: int, item: InvoiceItem
        ) -> Optional[Tuple[int, Document]]:
            async with semaphore:
                try:
                    return index, await self._encode_one(item)
                except LocalValidationError as exc:
                    slots[index] = DocumentOutcome.local_failure(
                        item.invoice_id, exc.code, exc.message
                    )
                except ValueError as exc:
                    slots[index] = DocumentOutcome.local_failure(
                        item.invoice_id, "ENCODING_FAILED", str(exc)
                    )
                return None

        results = await asyncio.gather(
            *(guarded(index, item) for index, item in valid)
        )
        return [r for r in results if r is not None]

    async def _encode_one(self, item: InvoiceItem) -> Document:
        try:
            customer = await self._customers.get_customer_data(item.customer_id)
        except GatewayError as exc:
            raise LocalValidationError(
                "REFERENCE_DATA_UNAVAILABLE",
                f"Customer lookup failed for invoice {item.invoice_id}: "
                f"{exc.message}",
            ) from exc

        customer = validate_customer(item, customer)
        return encode_document(self._codec, item, customer)

    # ------------------------------------------------------------------
    # Polling merge
    # ------------------------------------------------------------------

    def _merge_polling(
        self,
        result: PollingResult,
        accepted: Dict[str, str],
        index_by_code: Dict[str, int],
        slots: List[Optional[DocumentOutcome]],
    ) -> None:
        summaries = result.status.document_summary
        by_uuid = {s.uuid: s for s in summaries}
        by_internal = {s.internal_id: s for s in summaries if s.internal_id}

        for code, uuid in accepted.items():
            index = index_by_code.get(code)
            if index is None:
                continue
            summary = by_uuid.get(uuid) or by_internal.get(code)
            slots[index] = self._settle(code, uuid, summary, result)

    def _settle(
        self,
        code: str,
        uuid: str,
        summary: Optional[DocumentSummary],
        result: PollingResult,
    ) -> DocumentOutcome:
        submission_uid = result.submission_uid

        if summary is None:
            return self._timed_out(
                code, uuid, submission_uid, "NOT_IN_SUMMARY",
                "Document was missing from the submission summary",
            )

        status = summary.status.strip().lower()

        if status == "valid":
            return DocumentOutcome(
                external_id=code,
                stage=OutcomeStage.ACCEPTED,
                basis=OutcomeBasis.REMOTE,
                submission_uid=submission_uid,
                remote_id=summary.uuid,
                long_term_id=summary.long_id,
            )

        if status in {"invalid", "rejected", "cancelled"}:
            return DocumentOutcome(
                external_id=code,
                stage=OutcomeStage.REJECTED,
                basis=OutcomeBasis.REMOTE,
                submission_uid=submission_uid,
                remote_id=summary.uuid,
                error_code=status.upper(),
                error_message=f"Document reported {summary.status} by the intake service",
            )

        if not result.confirmed:
            return DocumentOutcome(
                external_id=code,
                stage=OutcomeStage.ACCEPTED,
                basis=result.basis,
                submission_uid=submission_uid,
                remote_id=summary.uuid,
                long_term_id=summary.long_id,
            )

        return self._timed_out(
            code, uuid, submission_uid, "STILL_PROCESSING",
            f"Batch settled while document was still {summary.status}",
        )

    def _mark_unsettled(
        self,
        accepted: Dict[str, str],
        index_by_code: Dict[str, int],
        slots: List[Optional[DocumentOutcome]],
        submission_uid: str,
        error_code: str,
        message: str,
    ) -> None:
        for code, uuid in accepted.items():
            index = index_by_code.get(code)
            if index is not None:
                slots[index] = self._timed_out(
                    code, uuid, submission_uid, error_code, message
                )

    @staticmethod
    def _timed_out(
        code: str,
        uuid: Optional[str],
        submission_uid: Optional[str],
        error_code: str,
        message: str,
    ) -> DocumentOutcome:
        return DocumentOutcome(
            external_id=code,
            stage=OutcomeStage.TIMED_OUT,
            basis=OutcomeBasis.REMOTE,
            submission_uid=submission_uid,
            remote_id=uuid,
            error_code=error_code,
            error_message=message,
        )

    @staticmethod
    def _complete(
        slots: List[Optional[DocumentOutcome]],
    ) -> List[DocumentOutcome]:
        missing = [i for i, o in enumerate(slots) if o is None]
        if missing:
            raise RuntimeError(f"No outcome produced for items {missing}")
        return [o for o in slots if o is not None]
