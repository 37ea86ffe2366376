"""
Printed-invoice QR payload.

ARCA mandates a QR code on every printed voucher pointing at its
verification site. The payload is a fixed-schema JSON object, base64-encoded
and appended to the verification URL:

    https://www.afip.gob.ar/fe/qr/?p=<base64(json)>
"""

from __future__ import annotations

import base64
import json
from decimal import Decimal

from arca_mcp.api.models import AccountConfig, Invoice, InvoiceStatus
from arca_mcp.errors import ValidationError

QR_URL = "https://www.afip.gob.ar/fe/qr/?p="
QR_VERSION = 1
# "E" = CAE, "A" = CAEA
AUTH_CODE_TYPE = "E"


def build_qr_payload(account: AccountConfig, invoice: Invoice) -> dict:
    """
    Build the QR JSON payload for an authorized invoice.

    Raises:
        ValidationError: invoice has no number, CAE or issue date yet
    """
    if (
        invoice.status != InvoiceStatus.AUTHORIZED
        or invoice.number is None
        or not invoice.cae
        or invoice.issue_date is None
    ):
        raise ValidationError("QR data is only available for authorized invoices")

    return {
        "ver": QR_VERSION,
        "fecha": invoice.issue_date.isoformat(),
        "cuit": int(account.cuit_digits),
        "ptoVta": invoice.sales_point,
        "tipoCmp": invoice.voucher_type.code,
        "nroCmp": invoice.number,
        "importe": float(Decimal(invoice.total_amount).quantize(Decimal("0.01"))),
        "moneda": invoice.currency,
        "ctz": float(invoice.exchange_rate),
        "tipoDocRec": invoice.receiver_doc_type,
        "nroDocRec": invoice.receiver_doc_number,
        "tipoCodAut": AUTH_CODE_TYPE,
        "codAut": int(invoice.cae),
    }


def encode_qr_payload(payload: dict) -> str:
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def build_qr_url(account: AccountConfig, invoice: Invoice) -> str:
    """Verification URL to render as the voucher's QR code."""
    return QR_URL + encode_qr_payload(build_qr_payload(account, invoice))


def decode_qr_url(url: str) -> dict:
    """
    Decode a verification URL back into its payload.

    Raises:
        ValueError: not an ARCA QR URL or payload is not valid JSON
    """
    if not url.startswith(QR_URL):
        raise ValueError(f"Not an ARCA QR URL: {url}")
    encoded = url[len(QR_URL):]
    return json.loads(base64.b64decode(encoded).decode("utf-8"))
