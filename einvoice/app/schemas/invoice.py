"""
Caller-side input shapes.

InvoiceItem is a locally finalized invoice handed to the orchestrator.
CustomerRecord is the reference data the codec cross-references while
building the wire document. Both are owned by the CRUD layer; this
service only reads them.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InvoiceLine(BaseModel):
    description: str
    quantity: Decimal = Field(..., ge=0)
    unit_price: Decimal = Field(..., ge=0)
    tax_amount: Decimal = Field(Decimal("0"), ge=0)

    # Classification code "022" = Others
    classification_code: str = "022"

    model_config = ConfigDict(frozen=True)

    @property
    def net_amount(self) -> Decimal:
        return self.quantity * self.unit_price


class InvoiceItem(BaseModel):
    """
    A finalized invoice awaiting submission.

    invoice_id becomes the document's codeNumber and is the sole key used
    to correlate remote acknowledgements back to the input item.
    """

    invoice_id: str
    customer_id: Optional[str] = None
    issued_at: datetime
    currency: str = "MYR"

    # "C" = cash, "I" = invoice (bank transfer)
    payment_type: str = "C"

    lines: List[InvoiceLine] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.net_amount for line in self.lines), Decimal("0"))

    @property
    def tax_total(self) -> Decimal:
        return sum((line.tax_amount for line in self.lines), Decimal("0"))


class Address(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state_code: str
    postcode: Optional[str] = None
    country_code: str = "MYS"

    model_config = ConfigDict(frozen=True)


class CustomerRecord(BaseModel):
    """Result of the reference-data lookup for one customer."""

    customer_id: str
    name: str
    tin: Optional[str] = None

    # NRIC / BRN / PASSPORT / ARMY
    id_type: Optional[str] = None
    id_number: Optional[str] = None

    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[Address] = None

    model_config = ConfigDict(frozen=True, extra="ignore")
