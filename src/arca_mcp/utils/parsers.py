"""
Response parsers for WSAA and WSFEv1.

Call sites only see these functions and the typed models they return; the
matching strategy behind each one can change without touching the clients.
WSAA responses are scanned with regular expressions after entity decoding
(the ticket XML arrives escaped inside the SOAP body, sometimes twice).
WSFE responses are well-formed SOAP and are parsed with lxml.
"""

from __future__ import annotations

import html
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from lxml import etree

from arca_mcp.api.models import (
    AuthorizationResult,
    ConceptType,
    LoginResponse,
    LoginTicket,
    QueriedInvoice,
    ServiceStatus,
    VoucherType,
)
from arca_mcp.errors import AuthorityRejection, TransportError

_TOKEN_RE = re.compile(r"<token>\s*([^<]+?)\s*</token>", re.DOTALL)
_SIGN_RE = re.compile(r"<sign>\s*([^<]+?)\s*</sign>", re.DOTALL)
_EXPIRATION_RE = re.compile(r"<expirationTime>\s*([^<]+?)\s*</expirationTime>")
_FAULT_RE = re.compile(r"<(?:\w+:)?faultstring>\s*(.*?)\s*</(?:\w+:)?faultstring>", re.DOTALL)
_ALREADY_AUTHENTICATED_RE = re.compile(
    r"ya\s+posee\s+un\s+TA\s+v[aá]lido", re.IGNORECASE
)

# FECompUltimoAutorizado / FECompConsultar "no data for these parameters"
NO_RECORDS_CODE = "602"
_NO_RECORDS_RE = re.compile(r"no\s+existen\s+datos", re.IGNORECASE)

_MAX_UNESCAPE_PASSES = 3


def _unescape(text: str) -> str:
    for _ in range(_MAX_UNESCAPE_PASSES):
        decoded = html.unescape(text)
        if decoded == text:
            break
        text = decoded
    return text


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        return None


def parse_authority_date(value: str | None) -> date | None:
    """Parse a YYYYMMDD date; blank or malformed values give None."""
    if not value:
        return None
    value = value.strip()
    if not re.fullmatch(r"\d{8}", value):
        return None
    try:
        return date(int(value[0:4]), int(value[4:6]), int(value[6:8]))
    except ValueError:
        return None


def is_already_authenticated_fault(fault: str) -> bool:
    """True for the WSAA fault meaning a valid ticket already exists."""
    return bool(_ALREADY_AUTHENTICATED_RE.search(_unescape(fault)))


# ═══════════════════════════════════════════════════
# WSAA
# ═══════════════════════════════════════════════════


def parse_login_response(response_text: str) -> LoginResponse:
    """
    Parse a loginCms response.

    Returns a LoginResponse holding either the ticket, or the fault string
    with ``already_authenticated`` set when the fault is the duplicate-ticket
    notice. A response with neither yields an empty LoginResponse.
    """
    decoded = _unescape(response_text)

    token = _TOKEN_RE.search(decoded)
    sign = _SIGN_RE.search(decoded)
    expiration_match = _EXPIRATION_RE.search(decoded)
    expiration = _parse_timestamp(expiration_match.group(1) if expiration_match else None)

    if token and sign:
        return LoginResponse(
            ticket=LoginTicket(
                token=token.group(1), sign=sign.group(1), expiration=expiration
            ),
        )

    fault = _FAULT_RE.search(decoded)
    if fault:
        message = fault.group(1)
        return LoginResponse(
            fault=message,
            already_authenticated=is_already_authenticated_fault(message),
        )

    return LoginResponse()


# ═══════════════════════════════════════════════════
# WSFEv1
# ═══════════════════════════════════════════════════


def _parse_xml(response_text: str) -> etree._Element:
    try:
        return etree.fromstring(response_text.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise TransportError(f"Unreadable authority response: {e}") from e


def _find(root: etree._Element, local_name: str) -> etree._Element | None:
    result = root.xpath(".//*[local-name()=$name]", name=local_name)
    return result[0] if result else None


def _text(root: etree._Element, local_name: str) -> str | None:
    elem = _find(root, local_name)
    if elem is None or elem.text is None:
        return None
    text = elem.text.strip()
    return text or None


def _decimal(root: etree._Element, local_name: str) -> Decimal:
    raw = _text(root, local_name)
    if raw is None:
        return Decimal("0")
    try:
        return Decimal(raw)
    except InvalidOperation:
        return Decimal("0")


def _int(root: etree._Element, local_name: str) -> int | None:
    raw = _text(root, local_name)
    return int(raw) if raw and raw.lstrip("-").isdigit() else None


def _first_message(root: etree._Element, block: str) -> tuple[str, str] | None:
    """First (code, message) pair of an Err or Obs block."""
    elem = _find(root, block)
    if elem is None:
        return None
    return (_text(elem, "Code") or "", _text(elem, "Msg") or "")


def _soap_fault(root: etree._Element) -> str | None:
    return _text(root, "faultstring")


def parse_authorization_response(response_text: str, number: int) -> AuthorizationResult:
    """
    Parse an FECAESolicitar response.

    Success requires both a CAE and its expiration. Otherwise the first Err
    block wins, then the first Obs block (no CAE was granted, so it counts as
    a rejection), then a SOAP fault.
    """
    root = _parse_xml(response_text)

    cae = _text(root, "CAE")
    cae_expiration = parse_authority_date(_text(root, "CAEFchVto"))
    if cae and cae.isdigit() and cae_expiration:
        return AuthorizationResult(
            success=True,
            number=number,
            cae=cae,
            cae_expiration=cae_expiration,
            authority_response=response_text,
        )

    error = _first_message(root, "Err")
    if error:
        return AuthorizationResult(
            success=False,
            error_code=error[0],
            error_message=f"Error {error[0]}: {error[1]}",
            authority_response=response_text,
        )

    observation = _first_message(root, "Obs")
    if observation:
        return AuthorizationResult(
            success=False,
            error_code=observation[0],
            error_message=f"Observación {observation[0]}: {observation[1]}",
            authority_response=response_text,
        )

    fault = _soap_fault(root)
    if fault:
        return AuthorizationResult(
            success=False,
            error_message=f"SOAP fault: {fault}",
            authority_response=response_text,
        )

    return AuthorizationResult(
        success=False,
        error_message="Unexpected authority response",
        authority_response=response_text,
    )


def _raise_for_errors(root: etree._Element, response_text: str) -> None:
    error = _first_message(root, "Err")
    if error:
        raise AuthorityRejection(
            f"Error {error[0]}: {error[1]}",
            code=error[0],
            authority_response=response_text,
        )
    fault = _soap_fault(root)
    if fault:
        raise AuthorityRejection(
            f"SOAP fault: {fault}", authority_response=response_text
        )


def _is_no_records(root: etree._Element) -> bool:
    error = _first_message(root, "Err")
    if not error:
        return False
    return error[0] == NO_RECORDS_CODE or bool(_NO_RECORDS_RE.search(error[1]))


def parse_last_authorized_response(response_text: str) -> int:
    """
    Parse an FECompUltimoAutorizado response into the last sequence number.

    "No vouchers for these parameters" is not an error: it means 0.
    """
    root = _parse_xml(response_text)

    if _is_no_records(root):
        return 0
    _raise_for_errors(root, response_text)

    number = _int(root, "CbteNro")
    if number is None:
        raise AuthorityRejection(
            "Authority response has no CbteNro", authority_response=response_text
        )
    return number


def parse_query_response(
    response_text: str, voucher_type: VoucherType | None = None
) -> QueriedInvoice:
    """Parse an FECompConsultar response into the authority's voucher record."""
    root = _parse_xml(response_text)
    _raise_for_errors(root, response_text)

    result = _find(root, "ResultGet")
    if result is None:
        raise AuthorityRejection(
            "Authority response has no ResultGet", authority_response=response_text
        )

    type_code = _int(result, "CbteTipo")
    if type_code is not None:
        try:
            voucher_type = VoucherType.from_code(type_code)
        except ValueError as e:
            raise AuthorityRejection(str(e), authority_response=response_text) from e
    if voucher_type is None:
        raise AuthorityRejection(
            "Authority response has no CbteTipo", authority_response=response_text
        )

    concept = _int(result, "Concepto")
    return QueriedInvoice(
        voucher_type=voucher_type,
        sales_point=_int(result, "PtoVta") or 0,
        number=_int(result, "CbteDesde") or 0,
        concept_type=ConceptType(concept) if concept in (1, 2, 3) else None,
        doc_type=_int(result, "DocTipo"),
        doc_number=_int(result, "DocNro"),
        issue_date=parse_authority_date(_text(result, "CbteFch")),
        net_amount=_decimal(result, "ImpNeto"),
        total_amount=_decimal(result, "ImpTotal"),
        currency=_text(result, "MonId") or "PES",
        exchange_rate=_decimal(result, "MonCotiz") or Decimal("1"),
        cae=_text(result, "CodAutorizacion"),
        cae_expiration=parse_authority_date(_text(result, "FchVto")),
        result=_text(result, "Resultado") or "",
        service_from=parse_authority_date(_text(result, "FchServDesde")),
        service_to=parse_authority_date(_text(result, "FchServHasta")),
        payment_due=parse_authority_date(_text(result, "FchVtoPago")),
    )


def parse_dummy_response(response_text: str) -> ServiceStatus:
    root = _parse_xml(response_text)
    return ServiceStatus(
        app_server=_text(root, "AppServer") or "",
        db_server=_text(root, "DbServer") or "",
        auth_server=_text(root, "AuthServer") or "",
    )
