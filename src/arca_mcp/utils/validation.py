"""
Local validation run before any request reaches the authority.

Checks:
- CUIT format and mod-11 check digit
- Invoice amounts and their consistency for C vouchers
- Service period coherence
- Credit/debit note references
"""

from __future__ import annotations

import re
from decimal import Decimal

from arca_mcp.api.models import Invoice, VoucherType

_CUIT_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)


def cuit_check_digit(first_ten: str) -> int | None:
    """Mod-11 check digit for the first ten CUIT digits; None if impossible."""
    total = sum(int(d) * w for d, w in zip(first_ten, _CUIT_WEIGHTS))
    digit = 11 - (total % 11)
    if digit == 11:
        return 0
    if digit == 10:
        return None
    return digit


def validate_cuit(cuit: str) -> list[str]:
    """Validate an Argentine CUIT (hyphens allowed)."""
    errors = []
    if not cuit:
        errors.append("CUIT is required")
        return errors
    digits = cuit.replace("-", "")
    if not re.fullmatch(r"\d{11}", digits):
        errors.append(f"CUIT must have 11 digits, got {cuit!r}")
        return errors
    if cuit_check_digit(digits[:10]) != int(digits[10]):
        errors.append("CUIT check digit is invalid")
    return errors


def validate_invoice(invoice: Invoice) -> list[str]:
    """
    Validate an invoice before authorization.

    Returns:
        List of error strings; empty when the invoice can be sent
    """
    errors = []

    if invoice.net_amount <= Decimal("0"):
        errors.append("Net amount must be positive")
    if invoice.total_amount <= Decimal("0"):
        errors.append("Total amount must be positive")
    # C vouchers itemize no VAT or other taxes
    if invoice.total_amount != invoice.net_amount:
        errors.append(
            f"Total amount {invoice.total_amount} must equal net amount "
            f"{invoice.net_amount} for C vouchers"
        )

    if invoice.receiver_cuit:
        for e in validate_cuit(invoice.receiver_cuit):
            errors.append(f"Receiver {e}")

    if not invoice.currency or len(invoice.currency) != 3:
        errors.append(f"Currency must be a 3-letter authority code, got {invoice.currency!r}")
    if invoice.exchange_rate <= Decimal("0"):
        errors.append("Exchange rate must be positive")

    if (
        invoice.concept_type.requires_service_period
        and invoice.service_from
        and invoice.service_to
        and invoice.service_from > invoice.service_to
    ):
        errors.append("Service period start is after its end")

    if (
        invoice.voucher_type in (VoucherType.NOTA_CREDITO_C, VoucherType.NOTA_DEBITO_C)
        and invoice.associated_invoice_id is None
    ):
        errors.append("Credit and debit notes must reference an original invoice")

    return errors
