"""
Pydantic v2 models for ARCA accounts, invoices and WSAA/WSFE results.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from arca_mcp.config import Environment


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VoucherType(str, Enum):
    """Tipo de comprobante."""

    FACTURA_C = "factura_c"
    NOTA_DEBITO_C = "nota_debito_c"
    NOTA_CREDITO_C = "nota_credito_c"

    @property
    def code(self) -> int:
        return VOUCHER_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "VoucherType":
        for voucher, value in VOUCHER_CODES.items():
            if value == code:
                return voucher
        raise ValueError(f"Unknown voucher type code: {code}")


VOUCHER_CODES = {
    VoucherType.FACTURA_C: 11,
    VoucherType.NOTA_DEBITO_C: 12,
    VoucherType.NOTA_CREDITO_C: 13,
}


class ConceptType(int, Enum):
    PRODUCTS = 1
    SERVICES = 2
    PRODUCTS_AND_SERVICES = 3

    @property
    def requires_service_period(self) -> bool:
        return self is not ConceptType.PRODUCTS


class ReceiverTaxCondition(str, Enum):
    """Receiver VAT condition, sent as CondicionIVAReceptorId."""

    RESPONSABLE_INSCRIPTO = "responsable_inscripto"
    EXENTO = "exento"
    CONSUMIDOR_FINAL = "consumidor_final"
    MONOTRIBUTO = "monotributo"
    NO_CATEGORIZADO = "no_categorizado"

    @property
    def code(self) -> int:
        return TAX_CONDITION_CODES[self]


TAX_CONDITION_CODES = {
    ReceiverTaxCondition.RESPONSABLE_INSCRIPTO: 1,
    ReceiverTaxCondition.EXENTO: 4,
    ReceiverTaxCondition.CONSUMIDOR_FINAL: 5,
    ReceiverTaxCondition.MONOTRIBUTO: 6,
    ReceiverTaxCondition.NO_CATEGORIZADO: 7,
}

# Receiver document types
DOC_TYPE_CUIT = 80
DOC_TYPE_NONE = 99


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


# ═══════════════════════════════════════════════════
# Persisted records
# ═══════════════════════════════════════════════════


class AccountConfig(BaseModel):
    """Billing account: identity, signing material and cached WSAA ticket."""

    id: int
    cuit: str = Field(default="", description="Issuer tax id, hyphens allowed")
    legal_name: str = ""
    fiscal_address: str | None = None
    sales_point: int = 1
    tax_regime: str = "monotributo"
    environment: Environment = Environment.TESTING
    certificate: str | None = Field(default=None, description="PEM certificate")
    private_key: str | None = Field(default=None, description="PEM private key")
    token: str | None = None
    sign: str | None = None
    token_expiration: datetime | None = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def cuit_digits(self) -> str:
        return self.cuit.replace("-", "")

    @property
    def has_signing_material(self) -> bool:
        return bool(self.certificate) and bool(self.private_key)


class Invoice(BaseModel):
    """Electronic voucher as stored locally."""

    id: int | None = None
    account_id: int
    voucher_type: VoucherType = VoucherType.FACTURA_C
    sales_point: int = 1
    number: int | None = None

    receiver_name: str = ""
    receiver_cuit: str | None = None
    receiver_address: str | None = None
    receiver_tax_condition: ReceiverTaxCondition = ReceiverTaxCondition.CONSUMIDOR_FINAL

    net_amount: Decimal
    total_amount: Decimal
    currency: str = "PES"
    exchange_rate: Decimal = Decimal("1")

    concept: str = ""
    concept_type: ConceptType = ConceptType.SERVICES
    service_from: date | None = None
    service_to: date | None = None
    payment_due: date | None = None

    issue_date: date | None = None
    cae: str | None = None
    cae_expiration: date | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    authority_response: str | None = None
    error_message: str | None = None

    associated_invoice_id: int | None = Field(
        default=None, description="Original invoice for credit/debit notes"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def receiver_doc_type(self) -> int:
        return DOC_TYPE_CUIT if self.receiver_cuit else DOC_TYPE_NONE

    @property
    def receiver_doc_number(self) -> int:
        if not self.receiver_cuit:
            return 0
        return int(self.receiver_cuit.replace("-", ""))


# ═══════════════════════════════════════════════════
# Protocol results
# ═══════════════════════════════════════════════════


class LoginTicket(BaseModel):
    """Token/sign pair granted by WSAA."""

    token: str
    sign: str
    expiration: datetime | None = Field(
        default=None, description="None when the response carries no expirationTime"
    )


class LoginResponse(BaseModel):
    """Parsed loginCms response: a ticket, a fault, or neither."""

    ticket: LoginTicket | None = None
    fault: str | None = None
    already_authenticated: bool = Field(
        default=False,
        description="WSAA reports a still-valid ticket for this service",
    )


class CachedToken(BaseModel):
    token: str
    sign: str
    expiration: datetime


class AssociatedVoucher(BaseModel):
    """CbteAsoc entry for credit and debit notes."""

    voucher_type: VoucherType
    sales_point: int
    number: int
    cuit: str
    issue_date: date | None = None


class AuthorizationResult(BaseModel):
    success: bool
    number: int | None = None
    cae: str | None = None
    cae_expiration: date | None = None
    error_code: str | None = None
    error_message: str | None = None
    authority_response: str | None = None


class QueriedInvoice(BaseModel):
    """Canonical voucher record returned by FECompConsultar."""

    voucher_type: VoucherType
    sales_point: int
    number: int
    concept_type: ConceptType | None = None
    doc_type: int | None = None
    doc_number: int | None = None
    issue_date: date | None = None
    net_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    currency: str = "PES"
    exchange_rate: Decimal = Decimal("1")
    cae: str | None = None
    cae_expiration: date | None = None
    result: str = Field(default="", description="A (approved) or R (rejected)")
    service_from: date | None = None
    service_to: date | None = None
    payment_due: date | None = None


class ServiceStatus(BaseModel):
    app_server: str = ""
    db_server: str = ""
    auth_server: str = ""

    @property
    def healthy(self) -> bool:
        return all(
            v == "OK" for v in (self.app_server, self.db_server, self.auth_server)
        )


class CertificateStatus(BaseModel):
    valid: bool
    message: str


class KeyMaterial(BaseModel):
    private_key_pem: str
    subject: str
    external_csr_command: str
    csr_pem: str


class LegalIdentity(BaseModel):
    """Subject data for a certificate signing request."""

    cuit: str
    legal_name: str
    email: str | None = None
    locality: str | None = None
    state: str | None = None


class CancellationResult(BaseModel):
    credit_note_invoice_id: int


class SyncResult(BaseModel):
    last_authorized: int
    checked: int = 0
    imported: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class TokenStatus(BaseModel):
    has_token: bool
    valid: bool
    expiration: datetime | None = None
