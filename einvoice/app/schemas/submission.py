"""
Submission domain model.

Defines the credential, the wire document, the remote batch and the
per-item outcome that the caller persists.

The set of DocumentOutcome entries returned for a batch partitions the
input set: exactly one outcome per input item, in input order.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from einvoice.app.utils.hashing import encode_transport


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------

class OverallStatus(str, Enum):
    """Batch-level status as reported by the intake service."""

    IN_PROGRESS = "InProgress"
    VALID = "Valid"
    INVALID = "Invalid"
    PARTIAL = "Partial"


class OutcomeStage(str, Enum):
    LOCAL_VALIDATION_FAILED = "LocalValidationFailed"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    TIMED_OUT = "TimedOut"


class OutcomeBasis(str, Enum):
    """
    How an outcome's stage was established.

    Callers auditing outcomes must treat HEURISTIC and OPTIMISTIC as
    unconfirmed: the remote service never reported a terminal state
    for those documents.
    """

    LOCAL = "local"
    REMOTE = "remote"
    HEURISTIC = "heuristic"
    OPTIMISTIC = "optimistic"


class DocumentFormat(str, Enum):
    JSON = "JSON"
    XML = "XML"


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

class Credential(BaseModel):
    """
    A bearer credential issued by the token endpoint.

    Replaced on renewal, never mutated. Owned exclusively by
    CredentialManager; other components only ever see the token value.
    """

    token: str = Field(..., repr=False)
    issued_at: float
    ttl_seconds: float

    model_config = ConfigDict(frozen=True)

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl_seconds

    def needs_renewal(self, now: float, threshold_seconds: float) -> bool:
        return now >= self.expires_at - threshold_seconds


class TokenProbe(BaseModel):
    """Diagnostic view of a freshly issued credential. Never carries the token."""

    token_type: str
    expires_in: float
    endpoint: str

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class Document(BaseModel):
    """
    A wire-format document, one per invoice.

    Immutable once built. content_hash is the hex SHA-256 of payload.
    """

    external_id: str
    payload: bytes = Field(..., repr=False)
    content_hash: str
    format: DocumentFormat

    model_config = ConfigDict(frozen=True)

    def to_wire(self) -> Dict[str, str]:
        return {
            "format": self.format.value,
            "document": encode_transport(self.payload),
            "documentHash": self.content_hash,
            "codeNumber": self.external_id,
        }


# ---------------------------------------------------------------------------
# Submission batch
# ---------------------------------------------------------------------------

class SubmissionBatch(BaseModel):
    """
    One remote-tracked batch.

    submission_id is the sole correlation key for polling. Members never
    change after creation.
    """

    submission_id: str
    members: Tuple[str, ...]
    overall_status: OverallStatus = OverallStatus.IN_PROGRESS

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

class DocumentOutcome(BaseModel):
    """The unit the caller persists. Exactly one per input item."""

    external_id: str
    stage: OutcomeStage
    basis: OutcomeBasis

    submission_uid: Optional[str] = None
    remote_id: Optional[str] = None
    long_term_id: Optional[str] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def confirmed(self) -> bool:
        return self.basis in {OutcomeBasis.LOCAL, OutcomeBasis.REMOTE}

    @classmethod
    def local_failure(
        cls, external_id: str, code: str, message: str
    ) -> "DocumentOutcome":
        return cls(
            external_id=external_id,
            stage=OutcomeStage.LOCAL_VALIDATION_FAILED,
            basis=OutcomeBasis.LOCAL,
            error_code=code,
            error_message=message,
        )


def derive_overall_status(outcomes: Sequence[DocumentOutcome]) -> OverallStatus:
    """
    Derive the batch status from its outcomes.

    Invalid when nothing was accepted and nothing is pending, Valid when
    everything was accepted, Partial otherwise. An empty batch is Invalid.
    """
    failed = {OutcomeStage.LOCAL_VALIDATION_FAILED, OutcomeStage.REJECTED}

    if all(o.stage in failed for o in outcomes):
        return OverallStatus.INVALID
    if all(o.stage == OutcomeStage.ACCEPTED for o in outcomes):
        return OverallStatus.VALID
    return OverallStatus.PARTIAL


class BatchResult(BaseModel):
    """Derived batch view. Never stored; recomputed from outcomes."""

    submission_uid: Optional[str] = None
    overall_status: OverallStatus
    outcomes: List[DocumentOutcome]

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[DocumentOutcome]) -> "BatchResult":
        submission_uid = next(
            (o.submission_uid for o in outcomes if o.submission_uid),
            None,
        )
        return cls(
            submission_uid=submission_uid,
            overall_status=derive_overall_status(outcomes),
            outcomes=list(outcomes),
        )
