from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class SubmissionEventType(str, Enum):
    """
    Progression events emitted while a batch moves through the pipeline.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    # ------------------------------------------------------------------
    # Batch lifecycle
    # ------------------------------------------------------------------
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    BATCH_FAILED = "batch_failed"

    # ------------------------------------------------------------------
    # Local preparation
    # ------------------------------------------------------------------
    LOCAL_VALIDATION_FAILED = "local_validation_failed"
    DOCUMENTS_ENCODED = "documents_encoded"

    # ------------------------------------------------------------------
    # Remote protocol
    # ------------------------------------------------------------------
    BATCH_SUBMITTED = "batch_submitted"
    POLL_ATTEMPTED = "poll_attempted"
    POLL_SETTLED = "poll_settled"


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class SubmissionEvent(BaseModel):
    """
    An immutable observation of a batch phase transition.

    Events are strictly observational and never influence control flow.
    """

    event_id: UUID = Field(default_factory=uuid4)
    batch_id: str = Field(..., description="Caller-side batch identifier")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: SubmissionEventType

    # Optional contextual metadata (submission_uid, counts, attempt, ...)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENTS

    def to_sse_payload(self) -> str:
        """Render as one Server-Sent Events frame."""
        return f"event: {self.event_type.value}\ndata: {self.model_dump_json()}\n\n"


TERMINAL_EVENTS = frozenset(
    {
        SubmissionEventType.BATCH_COMPLETED,
        SubmissionEventType.BATCH_FAILED,
    }
)
