"""
SOAP/XML request builders for ARCA web services.

Builds the WSAA login ticket request (TRA), the loginCms envelope and the
WSFEv1 operation envelopes. Each WSFE operation is one builder function;
adding an operation means adding a builder here and a parser in
``utils.parsers``.

Reference: ARCA WSAA developer manual, WSFEv1 manual (RG 4291 and updates)
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP

from lxml import etree

from arca_mcp.api.models import AssociatedVoucher, Invoice, VoucherType

NS = {
    "soapenv": "http://schemas.xmlsoap.org/soap/envelope/",
    "wsaa": "http://wsaa.view.sua.dvadac.desein.afip.gov",
    "ar": "http://ar.gov.afip.dif.FEV1/",
}

# ARCA operates in Argentina time (UTC-3, no DST)
AUTHORITY_TZ = timezone(timedelta(hours=-3), "ART")

TICKET_BACKDATE = timedelta(minutes=1)
TICKET_LIFETIME = timedelta(minutes=10)


def _qn(ns_prefix: str, local_name: str) -> str:
    """Create a Clark notation qualified name."""
    return f"{{{NS[ns_prefix]}}}{local_name}"


def _add_text_element(
    parent: etree._Element, ns_prefix: str | None, local_name: str, text
) -> etree._Element:
    """Add a child element with text content."""
    tag = _qn(ns_prefix, local_name) if ns_prefix else local_name
    elem = etree.SubElement(parent, tag)
    elem.text = str(text)
    return elem


def _serialize(root: etree._Element) -> bytes:
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8")


def format_amount(value: Decimal | float | int) -> str:
    """Two-decimal amount as the authority expects (e.g. "1000.00")."""
    return str(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_authority_date(value: date) -> str:
    """YYYYMMDD."""
    return value.strftime("%Y%m%d")


def authority_today(now: datetime | None = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(AUTHORITY_TZ).date()


# ═══════════════════════════════════════════════════
# WSAA
# ═══════════════════════════════════════════════════


def build_ticket_request(service: str = "wsfe", now: datetime | None = None) -> bytes:
    """
    Build a loginTicketRequest (TRA).

    The validity window starts one minute in the past to tolerate clock drift
    and closes ten minutes ahead. Timestamps carry an explicit UTC offset.

    Args:
        service: Target web service name
        now: Override for the current time (timezone-aware)

    Returns:
        UTF-8 XML bytes with declaration
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).replace(microsecond=0)

    root = etree.Element("loginTicketRequest", version="1.0")
    header = etree.SubElement(root, "header")
    _add_text_element(header, None, "uniqueId", int(now.timestamp()))
    _add_text_element(
        header, None, "generationTime", (now - TICKET_BACKDATE).isoformat()
    )
    _add_text_element(
        header, None, "expirationTime", (now + TICKET_LIFETIME).isoformat()
    )
    _add_text_element(root, None, "service", service)
    return _serialize(root)


def build_login_envelope(cms_b64: str) -> bytes:
    """Wrap a base64 CMS blob in a loginCms SOAP envelope."""
    envelope = etree.Element(
        _qn("soapenv", "Envelope"),
        nsmap={"soapenv": NS["soapenv"], "wsaa": NS["wsaa"]},
    )
    etree.SubElement(envelope, _qn("soapenv", "Header"))
    body = etree.SubElement(envelope, _qn("soapenv", "Body"))
    login = etree.SubElement(body, _qn("wsaa", "loginCms"))
    _add_text_element(login, "wsaa", "in0", cms_b64)
    return _serialize(envelope)


# ═══════════════════════════════════════════════════
# WSFEv1
# ═══════════════════════════════════════════════════


def wsfe_soap_action(operation: str) -> str:
    return f"{NS['ar']}{operation}"


def _wsfe_operation(operation: str) -> tuple[etree._Element, etree._Element]:
    envelope = etree.Element(
        _qn("soapenv", "Envelope"),
        nsmap={"soapenv": NS["soapenv"], "ar": NS["ar"]},
    )
    etree.SubElement(envelope, _qn("soapenv", "Header"))
    body = etree.SubElement(envelope, _qn("soapenv", "Body"))
    return envelope, etree.SubElement(body, _qn("ar", operation))


def _add_auth(parent: etree._Element, token: str, sign: str, cuit: str) -> None:
    auth = etree.SubElement(parent, _qn("ar", "Auth"))
    _add_text_element(auth, "ar", "Token", token)
    _add_text_element(auth, "ar", "Sign", sign)
    _add_text_element(auth, "ar", "Cuit", cuit.replace("-", ""))


def build_dummy_request() -> bytes:
    """FEDummy: unauthenticated infrastructure status check."""
    envelope, _ = _wsfe_operation("FEDummy")
    return _serialize(envelope)


def build_last_authorized_request(
    token: str,
    sign: str,
    cuit: str,
    sales_point: int,
    voucher_type: VoucherType,
) -> bytes:
    """FECompUltimoAutorizado for one sales point and voucher type."""
    envelope, op = _wsfe_operation("FECompUltimoAutorizado")
    _add_auth(op, token, sign, cuit)
    _add_text_element(op, "ar", "PtoVta", sales_point)
    _add_text_element(op, "ar", "CbteTipo", voucher_type.code)
    return _serialize(envelope)


def build_query_request(
    token: str,
    sign: str,
    cuit: str,
    sales_point: int,
    voucher_type: VoucherType,
    number: int,
) -> bytes:
    """FECompConsultar for a single voucher number."""
    envelope, op = _wsfe_operation("FECompConsultar")
    _add_auth(op, token, sign, cuit)
    req = etree.SubElement(op, _qn("ar", "FeCompConsReq"))
    _add_text_element(req, "ar", "CbteTipo", voucher_type.code)
    _add_text_element(req, "ar", "CbteNro", number)
    _add_text_element(req, "ar", "PtoVta", sales_point)
    return _serialize(envelope)


def build_authorization_request(
    token: str,
    sign: str,
    cuit: str,
    invoice: Invoice,
    number: int,
    issue_date: date,
    associated: AssociatedVoucher | None = None,
) -> bytes:
    """
    Build an FECAESolicitar request for a single voucher.

    Service period and payment due date are only sent when the concept type
    includes services; missing dates default to the emission date. Element
    order follows the FECAEDetRequest schema.

    Args:
        token: WSAA token
        sign: WSAA sign
        cuit: Issuer CUIT
        invoice: Invoice being authorized
        number: Sequence number (CbteDesde = CbteHasta)
        issue_date: Emission date
        associated: Referenced voucher for credit/debit notes

    Returns:
        SOAP envelope bytes
    """
    envelope, op = _wsfe_operation("FECAESolicitar")
    _add_auth(op, token, sign, cuit)

    req = etree.SubElement(op, _qn("ar", "FeCAEReq"))
    cab = etree.SubElement(req, _qn("ar", "FeCabReq"))
    _add_text_element(cab, "ar", "CantReg", 1)
    _add_text_element(cab, "ar", "PtoVta", invoice.sales_point)
    _add_text_element(cab, "ar", "CbteTipo", invoice.voucher_type.code)

    det_req = etree.SubElement(req, _qn("ar", "FeDetReq"))
    det = etree.SubElement(det_req, _qn("ar", "FECAEDetRequest"))
    _add_text_element(det, "ar", "Concepto", int(invoice.concept_type))
    _add_text_element(det, "ar", "DocTipo", invoice.receiver_doc_type)
    _add_text_element(det, "ar", "DocNro", invoice.receiver_doc_number)
    _add_text_element(det, "ar", "CbteDesde", number)
    _add_text_element(det, "ar", "CbteHasta", number)
    _add_text_element(det, "ar", "CbteFch", format_authority_date(issue_date))
    _add_text_element(det, "ar", "ImpTotal", format_amount(invoice.total_amount))
    _add_text_element(det, "ar", "ImpTotConc", "0")
    _add_text_element(det, "ar", "ImpNeto", format_amount(invoice.net_amount))
    _add_text_element(det, "ar", "ImpOpEx", "0")
    _add_text_element(det, "ar", "ImpTrib", "0")
    _add_text_element(det, "ar", "ImpIVA", "0")

    if invoice.concept_type.requires_service_period:
        for tag, value in (
            ("FchServDesde", invoice.service_from),
            ("FchServHasta", invoice.service_to),
            ("FchVtoPago", invoice.payment_due),
        ):
            _add_text_element(det, "ar", tag, format_authority_date(value or issue_date))

    _add_text_element(det, "ar", "MonId", invoice.currency)
    _add_text_element(det, "ar", "MonCotiz", format(invoice.exchange_rate.normalize(), "f"))
    _add_text_element(
        det, "ar", "CondicionIVAReceptorId", invoice.receiver_tax_condition.code
    )

    if associated is not None:
        asocs = etree.SubElement(det, _qn("ar", "CbtesAsoc"))
        asoc = etree.SubElement(asocs, _qn("ar", "CbteAsoc"))
        _add_text_element(asoc, "ar", "Tipo", associated.voucher_type.code)
        _add_text_element(asoc, "ar", "PtoVta", associated.sales_point)
        _add_text_element(asoc, "ar", "Nro", associated.number)
        _add_text_element(asoc, "ar", "Cuit", associated.cuit.replace("-", ""))
        if associated.issue_date:
            _add_text_element(
                asoc, "ar", "CbteFch", format_authority_date(associated.issue_date)
            )

    return _serialize(envelope)
