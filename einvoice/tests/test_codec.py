import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from einvoice.app.core.errors import DocumentEncodingError
from einvoice.app.schemas.invoice import InvoiceLine
from einvoice.app.schemas.submission import DocumentFormat
from einvoice.app.services.codec import (
    JsonInvoiceCodec,
    SupplierParty,
    encode_document,
    format_amount,
    format_phone_number,
)
from einvoice.app.utils.hashing import compute_document_hash, decode_transport
from einvoice.tests.fixtures.intake import make_customer, make_item, make_settings


@pytest.fixture
def codec():
    return JsonInvoiceCodec(SupplierParty.from_settings(make_settings()))


def test_document_hash_covers_exact_payload(codec):
    document = encode_document(codec, make_item("INV-1"), make_customer())

    assert document.external_id == "INV-1"
    assert document.format == DocumentFormat.JSON
    assert document.content_hash == hashlib.sha256(document.payload).hexdigest()

    wire = document.to_wire()
    assert decode_transport(wire["document"]) == document.payload
    assert wire["documentHash"] == document.content_hash
    assert wire["codeNumber"] == "INV-1"


def test_rendering_is_deterministic(codec):
    item = make_item("INV-1", issued_at=datetime(2026, 10, 17, 8, 30, tzinfo=timezone.utc))
    customer = make_customer()

    assert codec.render(item, customer) == codec.render(item, customer)


def test_rendered_invoice_carries_totals_and_parties(codec):
    item = make_item(
        "INV-7",
        issued_at=datetime(2026, 10, 17, 8, 30, tzinfo=timezone.utc),
        payment_type="I",
        lines=[
            InvoiceLine(
                description="Gadget",
                quantity=Decimal("3"),
                unit_price=Decimal("1.335"),
                tax_amount=Decimal("0.40"),
            )
        ],
    )

    invoice = json.loads(codec.render(item, make_customer()))["Invoice"][0]

    assert invoice["ID"][0]["_"] == "INV-7"
    assert invoice["IssueDate"][0]["_"] == "2026-10-17"
    assert invoice["PaymentMeans"][0]["PaymentMeansCode"][0]["_"] == "03"

    totals = invoice["LegalMonetaryTotal"][0]
    assert totals["LineExtensionAmount"][0]["_"] == 4.01
    assert totals["PayableAmount"][0]["_"] == 4.41

    customer = invoice["AccountingCustomerParty"][0]["Party"][0]
    assert customer["Contact"][0]["Telephone"][0]["_"] == "0123456789"
    assert customer["PartyIdentification"][0]["ID"][0]["_"] == "IG12345678901"


def test_missing_address_is_an_encoding_error(codec):
    with pytest.raises(DocumentEncodingError) as info:
        codec.render(make_item("INV-1"), make_customer(address=None))

    assert info.value.code == "MISSING_ADDRESS"


def test_empty_invoice_is_an_encoding_error(codec):
    with pytest.raises(DocumentEncodingError) as info:
        codec.render(make_item("INV-1", lines=[]), make_customer())

    assert info.value.code == "INV_VALIDATION"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+60 12-345 6789", "0123456789"),
        ("012-345 6789", "0123456789"),
        ("60123456789", "0123456789"),
        ("", ""),
        (None, ""),
    ],
)
def test_phone_numbers_are_normalized(raw, expected):
    assert format_phone_number(raw) == expected


def test_amounts_round_half_up():
    assert format_amount(Decimal("1.005")) == 1.01
    assert format_amount(Decimal("2")) == 2.0


def test_hash_rejects_text():
    with pytest.raises(TypeError):
        compute_document_hash("not bytes")


def test_transport_decode_rejects_garbage():
    with pytest.raises(ValueError):
        decode_transport("***")
