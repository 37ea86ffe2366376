"""
ARCA MCP Server - Argentine electronic invoicing for AI agents.

An MCP (Model Context Protocol) server that lets AI agents authorize
type C vouchers with ARCA (ex AFIP): WSAA login, CAE requests, numbering,
credit-note cancellation, QR URLs and reconciliation.

Usage:
    # With MCP Inspector (development)
    mcp dev src/arca_mcp/server.py

    # With Claude Desktop
    Add to ~/.claude/claude_desktop_config.json:
    {
        "mcpServers": {
            "arca": {
                "command": "python",
                "args": ["-m", "arca_mcp.server"],
                "env": {"ARCA_ENVIRONMENT": "testing", "ARCA_STORE_PATH": "arca.json"}
            }
        }
    }
"""

from __future__ import annotations

import json
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from arca_mcp.api.models import LegalIdentity, VoucherType
from arca_mcp.config import get_settings
from arca_mcp.errors import ArcaError
from arca_mcp.logging_config import configure_logging
from arca_mcp.service import ArcaService
from arca_mcp.store import JsonFileStore, MemoryStore
from arca_mcp.utils.qr import decode_qr_url
from arca_mcp.utils.validation import validate_cuit

# Create the MCP server
mcp = FastMCP(
    "arca-mcp",
    instructions=(
        "ARCA (AFIP) e-invoicing MCP server for Argentina. "
        "Authorize Factura C vouchers, manage certificates and reconcile numbering."
    ),
)

_service: ArcaService | None = None


def get_service() -> ArcaService:
    """Build the shared service on first use from ARCA_* settings."""
    global _service
    if _service is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        store = JsonFileStore(settings.store_path) if settings.store_path else MemoryStore()
        _service = ArcaService(store, settings)
    return _service


def set_service(service: ArcaService | None) -> None:
    global _service
    _service = service


def _dump(data) -> str:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return json.dumps(data, indent=2, ensure_ascii=False)


def _error(e: Exception) -> str:
    message = e.message if isinstance(e, ArcaError) else str(e)
    return json.dumps({"error": message}, ensure_ascii=False)


def _voucher_type(value: str) -> VoucherType:
    try:
        return VoucherType(value)
    except ValueError:
        return VoucherType.from_code(int(value))


# ═══════════════════════════════════════════════════
# TOOL 1: Account configuration
# ═══════════════════════════════════════════════════

@mcp.tool()
async def save_config(
    account_id: int,
    cuit: str,
    legal_name: str,
    sales_point: int = 1,
    fiscal_address: str | None = None,
    tax_regime: str = "monotributo",
) -> str:
    """Create or update an account's ARCA fiscal data.

    Args:
        account_id: Local account identifier
        cuit: 11-digit issuer CUIT, hyphens allowed (e.g. "20-12345678-6")
        legal_name: Razón social as registered with ARCA
        sales_point: Punto de venta enabled for web services
        fiscal_address: Domicilio fiscal
        tax_regime: Issuer regime, normally "monotributo" for type C vouchers

    Returns:
        JSON with the stored configuration (without signing material)
    """
    try:
        account = get_service().save_config(
            account_id,
            {
                "cuit": cuit,
                "legal_name": legal_name,
                "sales_point": sales_point,
                "fiscal_address": fiscal_address,
                "tax_regime": tax_regime,
            },
        )
    except (ArcaError, ValueError) as e:
        return _error(e)
    return _dump(
        account.model_dump(mode="json", exclude={"certificate", "private_key", "token", "sign"})
    )


@mcp.tool()
async def get_config(account_id: int) -> str:
    """Show an account's ARCA configuration and whether signing material is present."""
    try:
        account = get_service().get_account(account_id)
    except ArcaError as e:
        return _error(e)
    data = account.model_dump(
        mode="json", exclude={"certificate", "private_key", "token", "sign"}
    )
    data["has_signing_material"] = account.has_signing_material
    return _dump(data)


@mcp.tool()
async def upload_certificate(account_id: int, certificate: str, private_key: str) -> str:
    """Store the certificate issued by ARCA together with its private key.

    PEM or bare base64 is accepted for both. The key must belong to the
    certificate.
    """
    try:
        account = get_service().upload_certificate(account_id, certificate, private_key)
    except ArcaError as e:
        return _error(e)
    return _dump({"account_id": account.id, "certificate_stored": True})


@mcp.tool()
async def validate_certificate(account_id: int) -> str:
    """Check the stored certificate by logging in to WSAA."""
    return _dump(await get_service().validate_certificate(account_id))


@mcp.tool()
async def generate_key_material(
    account_id: int,
    cuit: str,
    legal_name: str,
    email: str | None = None,
    locality: str | None = None,
    state: str | None = None,
) -> str:
    """Generate a 2048-bit RSA key and a CSR to request an ARCA certificate.

    The private key is stored on the account; upload the certificate ARCA
    returns with upload_certificate.

    Returns:
        JSON with the CSR (PEM), its subject and an equivalent openssl command
    """
    identity = LegalIdentity(
        cuit=cuit, legal_name=legal_name, email=email, locality=locality, state=state
    )
    try:
        material = get_service().generate_key_material(account_id, identity)
    except ArcaError as e:
        return _error(e)
    return _dump(material.model_dump(mode="json", exclude={"private_key_pem"}))


# ═══════════════════════════════════════════════════
# TOOL 2: Tokens & service health
# ═══════════════════════════════════════════════════

@mcp.tool()
async def token_status(account_id: int) -> str:
    """Report whether a WSAA ticket is cached and still valid."""
    try:
        return _dump(get_service().token_status(account_id))
    except ArcaError as e:
        return _error(e)


@mcp.tool()
async def update_token(
    account_id: int, token: str, sign: str, expiration: str | None = None
) -> str:
    """Store a WSAA ticket obtained outside this server.

    Args:
        expiration: ISO 8601 timestamp; defaults to the configured ticket lifetime
    """
    try:
        expires = datetime.fromisoformat(expiration) if expiration else None
        cached = get_service().update_token(account_id, token, sign, expires)
    except (ArcaError, ValueError) as e:
        return _error(e)
    return _dump({"account_id": account_id, "expiration": cached.expiration.isoformat()})


@mcp.tool()
async def check_service() -> str:
    """Call FEDummy and report WSFE application, database and auth server status."""
    try:
        status = await get_service().check_service()
    except ArcaError as e:
        return _error(e)
    return _dump({**status.model_dump(), "healthy": status.healthy})


# ═══════════════════════════════════════════════════
# TOOL 3: Invoices
# ═══════════════════════════════════════════════════

@mcp.tool()
async def create_invoice(
    account_id: int,
    total_amount: str,
    concept: str,
    voucher_type: str = "factura_c",
    receiver_name: str = "",
    receiver_cuit: str | None = None,
    receiver_tax_condition: str = "consumidor_final",
    concept_type: int = 2,
    service_from: str | None = None,
    service_to: str | None = None,
    payment_due: str | None = None,
    currency: str = "PES",
    exchange_rate: str = "1",
    associated_invoice_id: int | None = None,
) -> str:
    """Create a draft voucher ready for authorization.

    Type C vouchers carry no VAT breakdown, so the net amount equals the total.

    Args:
        total_amount: Invoice total as string (e.g. "15000.00")
        concept_type: 1 products, 2 services, 3 products and services
        service_from: Service period start (YYYY-MM-DD), services only
        associated_invoice_id: Original invoice for credit/debit notes
    """
    try:
        invoice = get_service().create_invoice(
            account_id,
            {
                "voucher_type": _voucher_type(voucher_type),
                "receiver_name": receiver_name,
                "receiver_cuit": receiver_cuit,
                "receiver_tax_condition": receiver_tax_condition,
                "net_amount": total_amount,
                "total_amount": total_amount,
                "currency": currency,
                "exchange_rate": exchange_rate,
                "concept": concept,
                "concept_type": concept_type,
                "service_from": service_from,
                "service_to": service_to,
                "payment_due": payment_due,
                "associated_invoice_id": associated_invoice_id,
            },
        )
    except (ArcaError, ValueError) as e:
        return _error(e)
    return _dump(invoice)


@mcp.tool()
async def authorize_invoice(account_id: int, invoice_id: int) -> str:
    """Request a CAE for a stored invoice.

    Returns:
        JSON with success, number, cae and cae_expiration, or the authority's
        error code and message
    """
    result = await get_service().authorize(account_id, invoice_id)
    return _dump(result.model_dump(mode="json", exclude={"authority_response"}))


@mcp.tool()
async def next_invoice_number(account_id: int, voucher_type: str = "factura_c") -> str:
    """Return the next number ARCA will accept for a voucher type."""
    try:
        number = await get_service().next_invoice_number(account_id, _voucher_type(voucher_type))
    except (ArcaError, ValueError) as e:
        return _error(e)
    return _dump({"voucher_type": voucher_type, "next_number": number})


@mcp.tool()
async def cancel_invoice(account_id: int, invoice_id: int) -> str:
    """Create a draft credit note that cancels an authorized invoice.

    The credit note must then be authorized with authorize_invoice.
    """
    try:
        return _dump(get_service().cancel_invoice(account_id, invoice_id))
    except ArcaError as e:
        return _error(e)


@mcp.tool()
async def consult_invoice(
    account_id: int, number: int, voucher_type: str = "factura_c"
) -> str:
    """Fetch ARCA's record of an issued voucher (FECompConsultar)."""
    try:
        record = await get_service().consult_invoice(account_id, _voucher_type(voucher_type), number)
    except (ArcaError, ValueError) as e:
        return _error(e)
    return _dump(record)


@mcp.tool()
async def sync_invoices(
    account_id: int, voucher_type: str = "factura_c", limit: int | None = None
) -> str:
    """Import vouchers authorized at ARCA that are missing locally."""
    try:
        result = await get_service().sync_invoices(account_id, _voucher_type(voucher_type), limit=limit)
    except (ArcaError, ValueError) as e:
        return _error(e)
    return _dump(result)


# ═══════════════════════════════════════════════════
# TOOL 4: QR codes
# ═══════════════════════════════════════════════════

@mcp.tool()
async def build_qr_url(account_id: int, invoice_id: int) -> str:
    """Build the ARCA verification QR URL for an authorized invoice."""
    try:
        url = get_service().build_compliance_qr_url(account_id, invoice_id)
    except ArcaError as e:
        return _error(e)
    return _dump({"qr_url": url})


@mcp.tool()
async def decode_qr(qr_url: str) -> str:
    """Decode an ARCA QR URL back to its JSON payload."""
    try:
        return _dump(decode_qr_url(qr_url))
    except ValueError as e:
        return json.dumps({"error": f"Failed to decode QR: {e}"})


@mcp.tool()
async def validate_cuit_number(cuit: str) -> str:
    """Check a CUIT's format and mod-11 check digit."""
    errors = validate_cuit(cuit)
    return _dump({"cuit": cuit, "valid": not errors, "errors": errors})


def main():
    """Entry point for the ARCA MCP server."""
    get_service()
    mcp.run()


if __name__ == "__main__":
    main()
