"""
Local validation predicates.

Everything here runs before any document is sent. A failure produces a
LocalValidationError whose code and message are copied verbatim into the
item's LocalValidationFailed outcome.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from einvoice.app.core.errors import LocalValidationError
from einvoice.app.schemas.invoice import CustomerRecord, InvoiceItem


def validate_item(
    item: InvoiceItem,
    *,
    max_age_days: Optional[int] = 3,
    now: Optional[datetime] = None,
) -> None:
    """Checks that need nothing but the item itself."""
    if not item.invoice_id.strip():
        raise LocalValidationError("MISSING_INVOICE_ID", "Invoice has no ID")

    if not item.customer_id:
        raise LocalValidationError(
            "MISSING_CUSTOMER",
            f"Invoice {item.invoice_id} has no customer",
        )

    if not item.lines:
        raise LocalValidationError(
            "INV_VALIDATION",
            "Invoice must contain at least one order detail",
        )

    if max_age_days is not None:
        now = _as_utc(now or datetime.now(timezone.utc))
        issued = _as_utc(item.issued_at)

        earliest = (now - timedelta(days=max_age_days)).date()
        if not (earliest <= issued.date() <= now.date()):
            raise LocalValidationError(
                "DATE_VALIDATION",
                f"Invoice date must be within the last {max_age_days} days",
            )


def validate_customer(
    item: InvoiceItem, customer: Optional[CustomerRecord]
) -> CustomerRecord:
    """Cross-reference checks against the customer the item points at."""
    if customer is None:
        raise LocalValidationError(
            "CUSTOMER_NOT_FOUND",
            f"Customer data not found for invoice {item.invoice_id}",
        )

    if not customer.tin or not customer.id_number:
        raise LocalValidationError(
            "MISSING_REQUIRED_ID",
            f"Missing TIN Number or ID Number for customer {customer.name}",
        )

    if not customer.id_type:
        raise LocalValidationError(
            "MISSING_ID_TYPE",
            f"Missing ID type for customer {customer.name}",
        )

    if not customer.phone_number:
        raise LocalValidationError(
            "MISSING_PHONE",
            f"Missing phone number for customer {customer.name}",
        )

    if customer.address is None:
        raise LocalValidationError(
            "MISSING_ADDRESS",
            f"Missing address for customer {customer.name}",
        )

    return customer


def _as_utc(moment: datetime) -> datetime:
    # Same clock the codec renders IssueDate on
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
