import hashlib
import json
from urllib.parse import parse_qs

import httpx
import pytest

from einvoice.app.core.errors import (
    AuthError,
    MalformedResponseError,
    RemoteRejection,
    TransportError,
)
from einvoice.app.schemas.submission import Document, DocumentFormat, OverallStatus
from einvoice.app.services.gateway import SubmissionGateway
from einvoice.app.utils.hashing import compute_document_hash, decode_transport
from einvoice.tests.fixtures.intake import (
    FakeIntakeService,
    make_settings,
    status_body,
)

pytestmark = pytest.mark.anyio


def document(code: str) -> Document:
    payload = json.dumps({"ID": code}).encode("utf-8")
    return Document(
        external_id=code,
        payload=payload,
        content_hash=compute_document_hash(payload),
        format=DocumentFormat.JSON,
    )


def gateway_for(fake: FakeIntakeService) -> SubmissionGateway:
    return SubmissionGateway.from_settings(
        make_settings(), fake.client(), proactive_refresh=False
    )


async def test_token_request_uses_client_credentials_form():
    fake = FakeIntakeService()
    gateway = gateway_for(fake)

    grant = await gateway.issue_token()

    form = parse_qs(fake.requests[0].content.decode())
    assert form["grant_type"] == ["client_credentials"]
    assert form["client_id"] == ["test-client"]
    assert form["client_secret"] == ["test-secret"]
    assert form["scope"] == ["InvoicingAPI"]
    assert grant.expires_in == 3600


async def test_token_rejection_raises_auth_error_with_remote_code():
    fake = FakeIntakeService()
    fake.token_response = httpx.Response(
        400,
        json={"error": "invalid_client", "error_description": "Bad secret"},
    )
    gateway = gateway_for(fake)

    with pytest.raises(AuthError) as info:
        await gateway.issue_token()

    assert info.value.status_code == 400
    assert info.value.code == "invalid_client"
    assert "Bad secret" in info.value.message


async def test_submit_sends_bearer_and_hash_of_exact_payload():
    fake = FakeIntakeService(reject={"INV-2"})
    gateway = gateway_for(fake)

    receipt = await gateway.submit_batch([document("INV-1"), document("INV-2")])

    submit = fake.requests[-1]
    assert submit.headers["Authorization"] == "Bearer token-1"

    for wire in fake.submitted[0]["documents"]:
        payload = decode_transport(wire["document"])
        assert wire["documentHash"] == hashlib.sha256(payload).hexdigest()
        assert wire["format"] == "JSON"

    assert receipt.submission_uid == "SUB-1"
    assert [d.invoice_code_number for d in receipt.accepted_documents] == ["INV-1"]
    assert receipt.rejected_documents[0].error.code == "DS302"
    assert receipt.batch().members == ("INV-1",)


async def test_submit_rejects_empty_batch():
    gateway = gateway_for(FakeIntakeService())

    with pytest.raises(ValueError):
        await gateway.submit_batch([])


async def test_non_success_status_becomes_remote_rejection():
    fake = FakeIntakeService()
    fake.submit_response = httpx.Response(
        422,
        json={"error": {"code": "BadStructure", "message": "Bad body"}},
    )
    gateway = gateway_for(fake)

    with pytest.raises(RemoteRejection) as info:
        await gateway.submit_batch([document("INV-1")])

    assert info.value.status_code == 422
    assert info.value.code == "BadStructure"
    assert info.value.body["message"] == "Bad body"


async def test_connection_failure_becomes_transport_error():
    fake = FakeIntakeService(statuses=[httpx.ConnectError("connection refused")])
    gateway = gateway_for(fake)

    with pytest.raises(TransportError) as info:
        await gateway.get_status("SUB-1")

    assert info.value.status_code is None


async def test_unparseable_success_body_becomes_malformed_response():
    fake = FakeIntakeService(statuses=[{"unexpected": True}])
    gateway = gateway_for(fake)

    with pytest.raises(MalformedResponseError):
        await gateway.get_status("SUB-1")


async def test_status_parses_summary():
    fake = FakeIntakeService(
        statuses=[status_body("inprogress", {"INV-1": "Submitted"})]
    )
    gateway = gateway_for(fake)

    status = await gateway.get_status("SUB-1")

    assert status.overall_status == OverallStatus.IN_PROGRESS
    assert status.document_summary[0].long_id is None
    assert status.all_documents_in("Submitted")


async def test_unauthorized_response_invalidates_credential():
    fake = FakeIntakeService(
        statuses=[
            httpx.Response(401),
            status_body("Valid", {"INV-1": "Valid"}),
        ]
    )
    gateway = gateway_for(fake)

    with pytest.raises(RemoteRejection):
        await gateway.get_status("SUB-1")

    status = await gateway.get_status("SUB-1")

    assert status.overall_status == OverallStatus.VALID
    assert fake.token_requests == 2
    assert fake.requests[-1].headers["Authorization"] == "Bearer token-2"


async def test_document_details_and_cancel():
    fake = FakeIntakeService()
    fake.details["uuid-INV-1"] = {
        "uuid": "uuid-INV-1",
        "longId": "",
        "internalId": "INV-1",
        "status": "Invalid",
        "validationResults": {
            "status": "Invalid",
            "validationSteps": [
                {"name": "Structure", "status": "Valid"},
                {
                    "name": "Taxpayer",
                    "status": "Invalid",
                    "error": {"code": "CF404", "message": "TIN not found"},
                },
            ],
        },
    }
    gateway = gateway_for(fake)

    details = await gateway.get_document_details("uuid-INV-1")
    assert details.first_error().code == "CF404"

    await gateway.cancel_document("uuid-INV-1", "Wrong buyer")
    cancel = fake.requests[-1]
    assert cancel.method == "PUT"
    assert cancel.url.path == "/api/v1.0/documents/state/uuid-INV-1/state"
    assert json.loads(cancel.content) == {"status": "cancelled", "reason": "Wrong buyer"}
