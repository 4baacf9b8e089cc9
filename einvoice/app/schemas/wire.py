"""
Wire models for the intake service.

Field names follow the remote JSON (camelCase) through aliases. Unknown
fields are ignored: the remote service adds fields without versioning.
"""

from __future__ import annotations

from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from einvoice.app.schemas.submission import OverallStatus, SubmissionBatch


_WIRE_CONFIG = ConfigDict(
    frozen=True,
    extra="ignore",
    populate_by_name=True,
)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


# Remote sends "" where it means "not yet assigned"
OptionalText = Annotated[Optional[str], BeforeValidator(_blank_to_none)]


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

class TokenGrant(BaseModel):
    access_token: str = Field(..., repr=False, min_length=1)
    expires_in: float = Field(..., gt=0)
    token_type: str = "Bearer"

    model_config = _WIRE_CONFIG


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RemoteErrorBody(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None
    target: Optional[str] = None
    details: Optional[List[Any]] = None

    model_config = _WIRE_CONFIG

    @field_validator("code", mode="before")
    @classmethod
    def code_as_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


# ---------------------------------------------------------------------------
# POST /api/v1.0/documentsubmissions
# ---------------------------------------------------------------------------

class AcceptedDocument(BaseModel):
    uuid: str
    invoice_code_number: str = Field(..., alias="invoiceCodeNumber")

    model_config = _WIRE_CONFIG


class RejectedDocument(BaseModel):
    invoice_code_number: str = Field(..., alias="invoiceCodeNumber")
    error: RemoteErrorBody = Field(default_factory=RemoteErrorBody)

    model_config = _WIRE_CONFIG


class SubmissionReceipt(BaseModel):
    """Synchronous answer to a batch submission. No polling has happened yet."""

    submission_uid: OptionalText = Field(None, alias="submissionUid")
    accepted_documents: List[AcceptedDocument] = Field(
        default_factory=list, alias="acceptedDocuments"
    )
    rejected_documents: List[RejectedDocument] = Field(
        default_factory=list, alias="rejectedDocuments"
    )

    model_config = _WIRE_CONFIG

    @field_validator("accepted_documents", "rejected_documents", mode="before")
    @classmethod
    def null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def batch(self) -> Optional[SubmissionBatch]:
        """
        The remote batch created by this submission.

        None when nothing was accepted for processing: there is nothing
        to poll.
        """
        if not self.accepted_documents or not self.submission_uid:
            return None
        return SubmissionBatch(
            submission_id=self.submission_uid,
            members=tuple(
                d.invoice_code_number for d in self.accepted_documents
            ),
        )


# ---------------------------------------------------------------------------
# GET /api/v1.0/documentsubmissions/{submissionUid}
# ---------------------------------------------------------------------------

class DocumentSummary(BaseModel):
    uuid: str
    submission_uid: Optional[str] = Field(None, alias="submissionUid")
    long_id: OptionalText = Field(None, alias="longId")
    internal_id: Optional[str] = Field(None, alias="internalId")
    status: str

    model_config = _WIRE_CONFIG


class SubmissionStatus(BaseModel):
    submission_uid: Optional[str] = Field(None, alias="submissionUid")
    overall_status: OverallStatus = Field(..., alias="overallStatus")
    document_count: Optional[int] = Field(None, alias="documentCount")
    date_time_received: Optional[str] = Field(None, alias="dateTimeReceived")
    document_summary: List[DocumentSummary] = Field(
        default_factory=list, alias="documentSummary"
    )

    model_config = _WIRE_CONFIG

    @field_validator("overall_status", mode="before")
    @classmethod
    def case_insensitive_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            for status in OverallStatus:
                if status.value.lower() == v.strip().lower():
                    return status
        return v

    @field_validator("document_summary", mode="before")
    @classmethod
    def null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def all_documents_in(self, sub_status: str) -> bool:
        return bool(self.document_summary) and all(
            d.status == sub_status for d in self.document_summary
        )


# ---------------------------------------------------------------------------
# GET /api/v1.0/documents/{uuid}/details
# ---------------------------------------------------------------------------

class ValidationStep(BaseModel):
    name: Optional[str] = None
    status: Optional[str] = None
    error: Optional[RemoteErrorBody] = None

    model_config = _WIRE_CONFIG


class ValidationResults(BaseModel):
    status: Optional[str] = None
    validation_steps: List[ValidationStep] = Field(
        default_factory=list, alias="validationSteps"
    )

    model_config = _WIRE_CONFIG


class DocumentDetails(BaseModel):
    uuid: str
    submission_uid: Optional[str] = Field(None, alias="submissionUid")
    long_id: OptionalText = Field(None, alias="longId")
    internal_id: Optional[str] = Field(None, alias="internalId")
    status: str
    validation_results: Optional[ValidationResults] = Field(
        None, alias="validationResults"
    )

    model_config = _WIRE_CONFIG

    def first_error(self) -> Optional[RemoteErrorBody]:
        if self.validation_results is None:
            return None
        for step in self.validation_results.validation_steps:
            if step.error is not None:
                return step.error
        return None
