"""
Polling state machine for a submitted batch.

States:
    InProgress (initial)
      -> Valid | Invalid | Partial    terminal, as reported by the service
      -> TimedOut                     synthetic, attempt budget exhausted

Each poll that still reads InProgress raises SubmissionPending, which the
tenacity retry loop treats as retryable, exactly like transport and remote
errors. AuthError is never retried: without a credential no further poll
can succeed.

Two non-terminal escapes exist because the remote validator is slow and
its SLA is undocumented:

- Heuristic: from attempt `heuristic_min_attempt` on, if the last
  `heuristic_consecutive_attempts` responses showed every document in
  `heuristic_sub_status` ("Submitted"), the batch is reported accepted
  with basis HEURISTIC.
- Optimistic degradation: when the budget is exhausted and any response
  carried a document summary, the last summary is reported with basis
  OPTIMISTIC. PollingTimeout is raised only if no summary was ever seen.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from einvoice.app.core.config import Settings
from einvoice.app.core.errors import (
    MalformedResponseError,
    PollingTimeout,
    RemoteRejection,
    SubmissionCancelled,
    TransportError,
)
from einvoice.app.events import (
    NullEventEmitter,
    SubmissionEvent,
    SubmissionEventEmitter,
    SubmissionEventType,
)
from einvoice.app.schemas.submission import OutcomeBasis, OverallStatus
from einvoice.app.schemas.wire import SubmissionStatus

logger = logging.getLogger("einvoice.polling")


class SubmissionPending(RuntimeError):
    """
    Internal sentinel for a batch that still reads InProgress.

    This exception is explicitly retryable.
    """


class StatusSource(Protocol):
    async def get_status(self, submission_uid: str) -> SubmissionStatus:
        ...


# ----------------------------------------------------------------------
# Policy
# ----------------------------------------------------------------------

class PollingPolicy(BaseModel):
    """Explicit polling configuration, including the heuristic's trigger."""

    interval_seconds: float = Field(5.0, ge=0)
    max_attempts: int = Field(10, ge=1)
    initial_delay_seconds: float = Field(0.3, ge=0)

    heuristic_enabled: bool = True
    heuristic_min_attempt: int = Field(10, ge=1)
    heuristic_consecutive_attempts: int = Field(2, ge=1)
    heuristic_sub_status: str = "Submitted"

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollingPolicy":
        return cls(
            interval_seconds=settings.polling_interval_seconds,
            max_attempts=settings.polling_max_attempts,
            initial_delay_seconds=settings.polling_initial_delay_seconds,
            heuristic_enabled=settings.heuristic_enabled,
            heuristic_min_attempt=settings.heuristic_min_attempt,
            heuristic_consecutive_attempts=(
                settings.heuristic_consecutive_attempts
            ),
            heuristic_sub_status=settings.heuristic_sub_status,
        )


# ----------------------------------------------------------------------
# Result
# ----------------------------------------------------------------------

class PollingResult(BaseModel):
    """
    Final state of a polled batch.

    reported_status is what the service last said; basis records whether
    the result is a remote terminal state or one of the two escapes.
    """

    submission_uid: str
    reported_status: OverallStatus
    basis: OutcomeBasis
    attempts: int
    status: SubmissionStatus

    model_config = ConfigDict(frozen=True)

    @property
    def confirmed(self) -> bool:
        return self.basis == OutcomeBasis.REMOTE


@dataclass
class _PollTracker:
    attempts: int = 0
    consecutive_sub_status: int = 0
    last_with_summary: Optional[SubmissionStatus] = None


# ----------------------------------------------------------------------
# State machine
# ----------------------------------------------------------------------

class PollingStateMachine:
    def __init__(
        self,
        *,
        gateway: StatusSource,
        policy: Optional[PollingPolicy] = None,
    ) -> None:
        self._gateway = gateway
        self.policy = policy or PollingPolicy()

    async def run(
        self,
        submission_uid: str,
        *,
        cancel: Optional[asyncio.Event] = None,
        emitter: Optional[SubmissionEventEmitter] = None,
        batch_id: Optional[str] = None,
    ) -> PollingResult:
        """
        Poll until a terminal state, an escape, or budget exhaustion.

        Raises:
            PollingTimeout: budget exhausted, no summary ever observed.
            SubmissionCancelled: `cancel` was set while waiting.
            AuthError: the credential could not be renewed.
        """
        emitter = emitter or NullEventEmitter()
        batch_id = batch_id or submission_uid
        policy = self.policy
        tracker = _PollTracker()

        async def pause(seconds: float) -> None:
            if cancel is None:
                await asyncio.sleep(seconds)
                return
            if cancel.is_set():
                raise SubmissionCancelled(submission_uid)
            try:
                await asyncio.wait_for(cancel.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                return
            raise SubmissionCancelled(submission_uid)

        async def attempt() -> PollingResult:
            if cancel is not None and cancel.is_set():
                raise SubmissionCancelled(submission_uid)

            tracker.attempts += 1
            status = await self._gateway.get_status(submission_uid)

            await emitter.emit(
                SubmissionEvent(
                    batch_id=batch_id,
                    event_type=SubmissionEventType.POLL_ATTEMPTED,
                    details={
                        "submission_uid": submission_uid,
                        "attempt": tracker.attempts,
                        "overall_status": status.overall_status.value,
                    },
                )
            )

            if status.document_summary:
                tracker.last_with_summary = status

            if status.overall_status != OverallStatus.IN_PROGRESS:
                return self._result(
                    submission_uid, status, OutcomeBasis.REMOTE, tracker
                )

            if status.all_documents_in(policy.heuristic_sub_status):
                tracker.consecutive_sub_status += 1
            else:
                tracker.consecutive_sub_status = 0

            if self._heuristic_applies(tracker):
                logger.warning(
                    "polling_heuristic_accepted",
                    extra={
                        "submission_uid": submission_uid,
                        "attempt": tracker.attempts,
                        "sub_status": policy.heuristic_sub_status,
                    },
                )
                return self._result(
                    submission_uid, status, OutcomeBasis.HEURISTIC, tracker
                )

            raise SubmissionPending(
                f"submission_pending:{submission_uid}:{tracker.attempts}"
            )

        if policy.initial_delay_seconds > 0:
            await pause(policy.initial_delay_seconds)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_fixed(policy.interval_seconds),
            retry=retry_if_exception_type(
                (
                    SubmissionPending,
                    TransportError,
                    RemoteRejection,
                    MalformedResponseError,
                )
            ),
            sleep=pause,
            before_sleep=self._log_retry(submission_uid),
        )

        try:
            result = await retrying(attempt)
        except RetryError:
            result = self._exhausted(submission_uid, tracker)

        await emitter.emit(
            SubmissionEvent(
                batch_id=batch_id,
                event_type=SubmissionEventType.POLL_SETTLED,
                details={
                    "submission_uid": submission_uid,
                    "attempts": result.attempts,
                    "reported_status": result.reported_status.value,
                    "basis": result.basis.value,
                },
            )
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _heuristic_applies(self, tracker: _PollTracker) -> bool:
        policy = self.policy
        return (
            policy.heuristic_enabled
            and tracker.attempts >= policy.heuristic_min_attempt
            and tracker.consecutive_sub_status
            >= policy.heuristic_consecutive_attempts
        )

    def _exhausted(
        self, submission_uid: str, tracker: _PollTracker
    ) -> PollingResult:
        last = tracker.last_with_summary
        if last is None:
            logger.error(
                "polling_timed_out",
                extra={
                    "submission_uid": submission_uid,
                    "attempts": tracker.attempts,
                },
            )
            raise PollingTimeout(submission_uid, tracker.attempts)

        logger.warning(
            "polling_budget_exhausted_reporting_last_summary",
            extra={
                "submission_uid": submission_uid,
                "attempts": tracker.attempts,
                "documents": len(last.document_summary),
            },
        )
        return self._result(
            submission_uid, last, OutcomeBasis.OPTIMISTIC, tracker
        )

    @staticmethod
    def _result(
        submission_uid: str,
        status: SubmissionStatus,
        basis: OutcomeBasis,
        tracker: _PollTracker,
    ) -> PollingResult:
        return PollingResult(
            submission_uid=submission_uid,
            reported_status=status.overall_status,
            basis=basis,
            attempts=tracker.attempts,
            status=status,
        )

    @staticmethod
    def _log_retry(submission_uid: str):
        def before_sleep(retry_state) -> None:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            if exc is None or isinstance(exc, SubmissionPending):
                return
            logger.warning(
                "polling_attempt_failed",
                extra={
                    "submission_uid": submission_uid,
                    "attempt": retry_state.attempt_number,
                    "error_type": type(exc).__name__,
                },
            )

        return before_sleep
