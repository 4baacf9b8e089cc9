"""
Document codec: invoice + customer reference data -> wire document.

The codec is a pure function of its inputs. It performs no I/O and holds
no state beyond the supplier party it renders into every document.

Rendering is delegated to a DocumentCodec implementation; hashing and
transport encoding always go through einvoice.app.utils.hashing so the
documentHash sent on the wire is computed over the exact payload bytes.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from einvoice.app.core.config import Settings
from einvoice.app.core.errors import DocumentEncodingError
from einvoice.app.schemas.invoice import CustomerRecord, InvoiceItem, InvoiceLine
from einvoice.app.schemas.submission import Document, DocumentFormat
from einvoice.app.utils.hashing import compute_document_hash


# ----------------------------------------------------------------------
# Codec interface
# ----------------------------------------------------------------------

class DocumentCodec(Protocol):
    format: DocumentFormat

    def render(self, item: InvoiceItem, customer: CustomerRecord) -> bytes:
        ...


def encode_document(
    codec: DocumentCodec,
    item: InvoiceItem,
    customer: CustomerRecord,
) -> Document:
    """Render an item and seal the result into an immutable Document."""
    payload = codec.render(item, customer)

    return Document(
        external_id=item.invoice_id,
        payload=payload,
        content_hash=compute_document_hash(payload),
        format=codec.format,
    )


# ----------------------------------------------------------------------
# Formatting helpers
# ----------------------------------------------------------------------

_CENT = Decimal("0.01")
_NON_DIGITS = re.compile(r"\D")


def format_amount(value: Decimal) -> float:
    return float(Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP))


def format_phone_number(phone: Optional[str]) -> str:
    """
    Normalize a Malaysian phone number to local form.

    Strips non-digits, the 60 country prefix and leading zeros, then
    prefixes a single 0. "+60 12-345 6789" -> "0123456789".
    """
    if not phone:
        return ""

    number = _NON_DIGITS.sub("", phone)
    if number.startswith("60"):
        number = number[2:]
    number = number.lstrip("0")

    return f"0{number}"


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _text(value: Any, **attrs: Any) -> List[Dict[str, Any]]:
    return [{"_": value, **attrs}]


def _money(value: Decimal, currency: str) -> List[Dict[str, Any]]:
    return _text(format_amount(value), currencyID=currency)


# ----------------------------------------------------------------------
# Supplier party
# ----------------------------------------------------------------------

class SupplierParty(BaseModel):
    name: str
    tin: str
    id_type: str
    id_number: str
    msic_code: str
    business_activity: str
    phone: str
    email: Optional[str] = None
    address_line: str
    city: str
    state_code: str
    postcode: str
    country_code: str = "MYS"

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupplierParty":
        return cls(
            name=settings.supplier_name,
            tin=settings.supplier_tin,
            id_type=settings.supplier_id_type,
            id_number=settings.supplier_id_number,
            msic_code=settings.supplier_msic_code,
            business_activity=settings.supplier_business_activity,
            phone=settings.supplier_phone,
            email=settings.supplier_email,
            address_line=settings.supplier_address_line,
            city=settings.supplier_city,
            state_code=settings.supplier_state_code,
            postcode=settings.supplier_postcode,
            country_code=settings.supplier_country_code,
        )


# ----------------------------------------------------------------------
# UBL-JSON codec
# ----------------------------------------------------------------------

class JsonInvoiceCodec:
    """
    Renders UBL 2.1 invoices in the intake service's JSON notation.

    Output is canonical JSON (sorted keys, compact separators, UTF-8) so
    that rendering the same inputs twice yields byte-identical payloads
    and therefore identical document hashes.
    """

    format = DocumentFormat.JSON

    INVOICE_TYPE_CODE = "01"
    INVOICE_TYPE_VERSION = "1.0"

    def __init__(self, supplier: SupplierParty) -> None:
        self._supplier = supplier

    def render(self, item: InvoiceItem, customer: CustomerRecord) -> bytes:
        document = {
            "_D": "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
            "_A": (
                "urn:oasis:names:specification:ubl:schema:xsd:"
                "CommonAggregateComponents-2"
            ),
            "_B": (
                "urn:oasis:names:specification:ubl:schema:xsd:"
                "CommonBasicComponents-2"
            ),
            "Invoice": [self._invoice(item, customer)],
        }

        return json.dumps(
            document,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _invoice(
        self, item: InvoiceItem, customer: CustomerRecord
    ) -> Dict[str, Any]:
        if not item.lines:
            raise DocumentEncodingError(
                "INV_VALIDATION",
                f"Invoice {item.invoice_id} has no lines",
            )

        issued = _utc(item.issued_at)
        currency = item.currency
        subtotal = item.subtotal
        tax_total = item.tax_total

        return {
            "ID": _text(item.invoice_id),
            "IssueDate": _text(issued.date().isoformat()),
            "IssueTime": _text(issued.strftime("%H:%M:%SZ")),
            "InvoiceTypeCode": _text(
                self.INVOICE_TYPE_CODE,
                listVersionID=self.INVOICE_TYPE_VERSION,
            ),
            "DocumentCurrencyCode": _text(currency),
            "AccountingSupplierParty": [
                {"Party": [self._supplier_party()]}
            ],
            "AccountingCustomerParty": [
                {"Party": [self._customer_party(item, customer)]}
            ],
            "PaymentMeans": [
                {"PaymentMeansCode": _text(self._payment_code(item))}
            ],
            "TaxTotal": [
                {
                    "TaxAmount": _money(tax_total, currency),
                    "TaxSubtotal": [
                        {
                            "TaxableAmount": _money(subtotal, currency),
                            "TaxAmount": _money(tax_total, currency),
                            "TaxCategory": [self._tax_category(tax_total)],
                        }
                    ],
                }
            ],
            "LegalMonetaryTotal": [
                {
                    "LineExtensionAmount": _money(subtotal, currency),
                    "TaxExclusiveAmount": _money(subtotal, currency),
                    "TaxInclusiveAmount": _money(subtotal + tax_total, currency),
                    "PayableAmount": _money(subtotal + tax_total, currency),
                }
            ],
            "InvoiceLine": [
                self._line(index, line, currency)
                for index, line in enumerate(item.lines, start=1)
            ],
        }

    def _supplier_party(self) -> Dict[str, Any]:
        s = self._supplier
        party = self._party(
            name=s.name,
            tin=s.tin,
            id_type=s.id_type,
            id_number=s.id_number,
            phone=format_phone_number(s.phone),
            email=s.email,
            address_lines=[s.address_line],
            city=s.city,
            state_code=s.state_code,
            postcode=s.postcode,
            country_code=s.country_code,
        )
        party["IndustryClassificationCode"] = _text(
            s.msic_code, name=s.business_activity
        )
        return party

    def _customer_party(
        self, item: InvoiceItem, customer: CustomerRecord
    ) -> Dict[str, Any]:
        address = customer.address
        if address is None:
            raise DocumentEncodingError(
                "MISSING_ADDRESS",
                f"Customer {customer.customer_id} has no address "
                f"(invoice {item.invoice_id})",
            )

        return self._party(
            name=customer.name,
            tin=customer.tin or "",
            id_type=customer.id_type or "",
            id_number=customer.id_number or "",
            phone=format_phone_number(customer.phone_number),
            email=customer.email,
            address_lines=[
                line for line in (address.line1, address.line2) if line
            ],
            city=address.city,
            state_code=address.state_code,
            postcode=address.postcode,
            country_code=address.country_code,
        )

    @staticmethod
    def _party(
        *,
        name: str,
        tin: str,
        id_type: str,
        id_number: str,
        phone: str,
        email: Optional[str],
        address_lines: List[str],
        city: str,
        state_code: str,
        postcode: Optional[str],
        country_code: str,
    ) -> Dict[str, Any]:
        postal: Dict[str, Any] = {
            "CityName": _text(city),
            "CountrySubentityCode": _text(state_code),
            "AddressLine": [{"Line": _text(line)} for line in address_lines],
            "Country": [
                {
                    "IdentificationCode": _text(
                        country_code,
                        listID="ISO3166-1",
                        listAgencyID="6",
                    )
                }
            ],
        }
        if postcode:
            postal["PostalZone"] = _text(postcode)

        contact: Dict[str, Any] = {"Telephone": _text(phone)}
        if email:
            contact["ElectronicMail"] = _text(email)

        return {
            "PartyIdentification": [
                {"ID": _text(tin, schemeID="TIN")},
                {"ID": _text(id_number, schemeID=id_type)},
            ],
            "PostalAddress": [postal],
            "PartyLegalEntity": [{"RegistrationName": _text(name)}],
            "Contact": [contact],
        }

    @staticmethod
    def _payment_code(item: InvoiceItem) -> str:
        # 01 = cash, 03 = bank transfer
        return "03" if item.payment_type.upper() == "I" else "01"

    @staticmethod
    def _tax_category(tax_amount: Decimal) -> Dict[str, Any]:
        # 01 = sales tax, 06 = not applicable
        return {
            "ID": _text("01" if tax_amount > 0 else "06"),
            "TaxScheme": [
                {
                    "ID": _text(
                        "OTH",
                        schemeID="UN/ECE 5153",
                        schemeAgencyID="6",
                    )
                }
            ],
        }

    def _line(
        self, index: int, line: InvoiceLine, currency: str
    ) -> Dict[str, Any]:
        return {
            "ID": _text(str(index)),
            "InvoicedQuantity": _text(float(line.quantity), unitCode="C62"),
            "LineExtensionAmount": _money(line.net_amount, currency),
            "TaxTotal": [
                {
                    "TaxAmount": _money(line.tax_amount, currency),
                    "TaxSubtotal": [
                        {
                            "TaxableAmount": _money(line.net_amount, currency),
                            "TaxAmount": _money(line.tax_amount, currency),
                            "TaxCategory": [self._tax_category(line.tax_amount)],
                        }
                    ],
                }
            ],
            "Item": [
                {
                    "CommodityClassification": [
                        {
                            "ItemClassificationCode": _text(
                                line.classification_code, listID="CLASS"
                            )
                        }
                    ],
                    "Description": _text(line.description),
                }
            ],
            "Price": [{"PriceAmount": _money(line.unit_price, currency)}],
            "ItemPriceExtension": [
                {"Amount": _money(line.net_amount, currency)}
            ],
        }
