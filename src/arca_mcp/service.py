"""
ARCA billing service.

Ties the store, token cache, WSAA and WSFE clients together behind the
operations the rest of the application calls: authorize an invoice, compute
the next number, validate or provision certificates, cancel via credit note,
build the QR URL and reconcile local records with the authority.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import httpx
from cryptography.hazmat.primitives import serialization

from arca_mcp.api.models import (
    AccountConfig,
    AssociatedVoucher,
    AuthorizationResult,
    CachedToken,
    CancellationResult,
    CertificateStatus,
    Invoice,
    InvoiceStatus,
    KeyMaterial,
    LegalIdentity,
    QueriedInvoice,
    ServiceStatus,
    SyncResult,
    TokenStatus,
    VoucherType,
    DOC_TYPE_CUIT,
)
from arca_mcp.api.wsaa import WSAAClient
from arca_mcp.api.wsfe import WSFEClient
from arca_mcp.config import Environment, Settings
from arca_mcp.errors import (
    ArcaError,
    AuthorityRejection,
    CertificateFormatError,
    SigningError,
    StaleTokenStateError,
    TransportError,
    ValidationError,
)
from arca_mcp.store import Store
from arca_mcp.token_cache import TokenCache
from arca_mcp.utils import signing
from arca_mcp.utils.qr import build_qr_url
from arca_mcp.utils.validation import validate_cuit, validate_invoice
from arca_mcp.utils.xml_builder import authority_today

logger = logging.getLogger(__name__)

# Fields owned by TokenCache, never written through save_config
_TOKEN_FIELDS = {"token", "sign", "token_expiration"}
# Never written through save_config
_PROTECTED_FIELDS = _TOKEN_FIELDS | {"id", "certificate", "private_key"}

_VOUCHER_LABELS = {
    VoucherType.FACTURA_C: "Factura",
    VoucherType.NOTA_DEBITO_C: "Nota de Débito",
    VoucherType.NOTA_CREDITO_C: "Nota de Crédito",
}


def format_voucher_number(sales_point: int, number: int) -> str:
    """Printed voucher number, e.g. ``00001-00000042``."""
    return f"{sales_point:05d}-{number:08d}"


class ArcaService:
    """Entry point for everything that talks to ARCA."""

    def __init__(
        self,
        store: Store,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.environment = self.settings.environment
        self.token_cache = TokenCache(store)
        self.wsaa = WSAAClient(
            self.token_cache,
            environment=self.environment,
            service=self.settings.wsfe_service,
            timeout=self.settings.request_timeout_seconds,
            default_ttl=timedelta(hours=self.settings.default_token_ttl_hours),
            transport=transport,
        )
        self.wsfe = WSFEClient(
            environment=self.environment,
            timeout=self.settings.request_timeout_seconds,
            transport=transport,
        )
        # Serializes "read last number -> authorize" per (account, sales point, type)
        self._numbering_locks: dict[tuple[int, int, VoucherType], asyncio.Lock] = {}

    # ═══════════════════════════════════════════════════
    # Accounts & credentials
    # ═══════════════════════════════════════════════════

    def get_account(self, account_id: int) -> AccountConfig:
        """
        Load an account usable in this service's environment.

        Raises:
            ValidationError: unknown account or environment mismatch
        """
        account = self.store.get_account(account_id)
        if account is None:
            raise ValidationError(f"No ARCA configuration for account {account_id}")
        if account.environment != self.environment:
            raise ValidationError(
                f"Account {account_id} is configured for {account.environment.value}, "
                f"service runs against {self.environment.value}"
            )
        return account

    def save_config(self, account_id: int, data: dict) -> AccountConfig:
        """
        Create or update an account's fiscal data.

        Signing material is only replaced through upload_certificate or
        generate_key_material, and an account stays in its environment.

        Raises:
            ValidationError: malformed CUIT or a different environment
        """
        data = {k: v for k, v in data.items() if k not in _PROTECTED_FIELDS}
        if data.get("cuit"):
            errors = validate_cuit(data["cuit"])
            if errors:
                raise ValidationError("; ".join(errors))

        existing = self.store.get_account(account_id)
        environment = existing.environment if existing else self.environment
        requested = data.pop("environment", None)
        if requested is not None:
            try:
                requested = Environment(requested)
            except ValueError:
                raise ValidationError(f"Unknown environment: {requested}")
            if requested != environment:
                raise ValidationError(
                    f"Account {account_id} is bound to {environment.value}; "
                    "create a separate account for the other environment"
                )
        if existing is None:
            account = AccountConfig.model_validate(
                {"environment": self.environment, **data, "id": account_id}
            )
        else:
            account = AccountConfig.model_validate(
                {**existing.model_dump(), **data, "id": account_id}
            )
        return self.store.save_account(account)

    def upload_certificate(
        self, account_id: int, certificate: str, private_key: str
    ) -> AccountConfig:
        """
        Store a certificate and its private key, both normalized to PEM.

        Raises:
            CertificateFormatError: unreadable material
            SigningError: key is not RSA or does not belong to the certificate
        """
        cert = signing.load_certificate(certificate)
        key = signing.load_private_key(private_key)
        if not signing.key_matches_certificate(key, cert):
            raise SigningError("Private key does not match the certificate")

        account = self.get_account(account_id)
        account.certificate = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
        account.private_key = signing.serialize_private_key(key).decode("ascii")
        logger.info("Certificate uploaded for account %s, valid until %s",
                    account_id, cert.not_valid_after_utc.isoformat())
        return self.store.save_account(account)

    async def validate_certificate(self, account_id: int) -> CertificateStatus:
        """
        Check the account's certificate against WSAA.

        Missing or unreadable material is reported without any network call.
        """
        account = self.store.get_account(account_id)
        if account is None:
            return CertificateStatus(valid=False, message="No ARCA configuration for this account")
        if not account.has_signing_material:
            return CertificateStatus(valid=False, message="No certificate or private key configured")
        if account.environment != self.environment:
            return CertificateStatus(
                valid=False,
                message=f"Certificate was issued for {account.environment.value}",
            )

        try:
            cert = signing.load_certificate(account.certificate)
            signing.load_private_key(account.private_key)
        except (CertificateFormatError, SigningError) as e:
            return CertificateStatus(valid=False, message=e.message)
        if cert.not_valid_after_utc <= datetime.now(timezone.utc):
            return CertificateStatus(
                valid=False,
                message=f"Certificate expired on {cert.not_valid_after_utc.date().isoformat()}",
            )

        try:
            token = await self.wsaa.get_token(account, force=True)
        except StaleTokenStateError:
            # WSAA only reports an existing ticket after verifying the signature
            return CertificateStatus(
                valid=True,
                message="Certificate accepted; the authority already holds an active ticket",
            )
        except ArcaError as e:
            return CertificateStatus(valid=False, message=f"Certificate validation failed: {e.message}")
        return CertificateStatus(
            valid=True,
            message=f"Certificate valid; ticket expires {token.expiration.isoformat()}",
        )

    def generate_key_material(self, account_id: int, identity: LegalIdentity) -> KeyMaterial:
        """
        Generate a new RSA key and the data needed to request its certificate.

        The key is stored on the account right away; any previous
        certificate is dropped because it cannot match the new key.

        Raises:
            ValidationError: malformed CUIT
        """
        errors = validate_cuit(identity.cuit)
        if errors:
            raise ValidationError("; ".join(errors))

        material = signing.generate_key_material(identity)

        account = self.store.get_account(account_id) or AccountConfig(
            id=account_id, environment=self.environment
        )
        account.cuit = identity.cuit
        account.legal_name = identity.legal_name
        account.private_key = material.private_key_pem
        account.certificate = None
        self.store.save_account(account)
        logger.info("Generated new key pair for account %s", account_id)
        return material

    # ═══════════════════════════════════════════════════
    # Tokens
    # ═══════════════════════════════════════════════════

    async def get_token(self, account: AccountConfig) -> CachedToken:
        if not account.has_signing_material:
            raise CertificateFormatError("No certificate or private key configured")
        return await self.wsaa.get_token(account)

    def token_status(self, account_id: int) -> TokenStatus:
        self.get_account(account_id)
        return self.token_cache.status(account_id)

    def update_token(
        self,
        account_id: int,
        token: str,
        sign: str,
        expiration: datetime | None = None,
    ) -> CachedToken:
        """Manually store a ticket obtained elsewhere."""
        if not token or not sign:
            raise ValidationError("Token and sign are required")
        self.get_account(account_id)
        expiration = expiration or (
            datetime.now(timezone.utc) + timedelta(hours=self.settings.default_token_ttl_hours)
        )
        return self.token_cache.set(account_id, token, sign, expiration)

    async def check_service(self) -> ServiceStatus:
        return await self.wsfe.dummy()

    # ═══════════════════════════════════════════════════
    # Numbering & authorization
    # ═══════════════════════════════════════════════════

    def create_invoice(self, account_id: int, data: dict) -> Invoice:
        """Store a new draft invoice; the sales point defaults to the account's."""
        account = self.get_account(account_id)
        data = {k: v for k, v in data.items() if k not in {"id", "number", "cae", "cae_expiration", "status"}}
        data.setdefault("sales_point", account.sales_point)
        invoice = Invoice.model_validate({**data, "account_id": account_id})
        return self.store.save_invoice(invoice)

    def _numbering_lock(self, account_id: int, sales_point: int, voucher_type: VoucherType) -> asyncio.Lock:
        key = (account_id, sales_point, voucher_type)
        if key not in self._numbering_locks:
            self._numbering_locks[key] = asyncio.Lock()
        return self._numbering_locks[key]

    async def next_invoice_number(
        self,
        account_id: int,
        voucher_type: VoucherType,
        sales_point: int | None = None,
    ) -> int:
        """Last number authorized at the authority plus one."""
        account = self.get_account(account_id)
        token = await self.get_token(account)
        last = await self.wsfe.last_authorized(account, token, voucher_type, sales_point)
        return last + 1

    def _associated_voucher(self, account: AccountConfig, invoice: Invoice) -> AssociatedVoucher | None:
        if invoice.associated_invoice_id is None:
            return None
        original = self.store.get_invoice(invoice.associated_invoice_id)
        if original is None or original.number is None or original.status != InvoiceStatus.AUTHORIZED:
            raise ValidationError(
                f"Referenced invoice {invoice.associated_invoice_id} is not an authorized voucher"
            )
        return AssociatedVoucher(
            voucher_type=original.voucher_type,
            sales_point=original.sales_point,
            number=original.number,
            cuit=account.cuit,
            issue_date=original.issue_date,
        )

    def _record_failure(
        self,
        invoice: Invoice,
        status: InvoiceStatus,
        message: str,
        authority_response: str | None = None,
    ) -> AuthorizationResult:
        invoice.status = status
        invoice.error_message = message
        if authority_response is not None:
            invoice.authority_response = authority_response
        self.store.save_invoice(invoice)
        return AuthorizationResult(
            success=False, error_message=message, authority_response=authority_response
        )

    async def authorize(self, account_id: int, invoice_id: int) -> AuthorizationResult:
        """
        Obtain a CAE for a stored invoice and write the outcome back.

        Success stores number, CAE, CAE expiration and issue date together and
        marks the invoice authorized. Authority rejections mark it rejected.
        Transient failures (network, pending ticket) leave it in draft so it
        can be retried. The raw authority response is kept in every case.
        """
        try:
            account = self.get_account(account_id)
        except ValidationError as e:
            return AuthorizationResult(success=False, error_message=e.message)

        invoice = self.store.get_invoice(invoice_id)
        if invoice is None or invoice.account_id != account_id:
            return AuthorizationResult(success=False, error_message="Invoice not found")

        if not account.has_signing_material:
            invoice.error_message = "No certificate configured"
            self.store.save_invoice(invoice)
            return AuthorizationResult(success=False, error_message=invoice.error_message)

        async with self._numbering_lock(account_id, invoice.sales_point, invoice.voucher_type):
            # Reload under the lock; a concurrent call may have finished first
            invoice = self.store.get_invoice(invoice_id)
            if invoice is None:
                return AuthorizationResult(success=False, error_message="Invoice not found")
            if invoice.status == InvoiceStatus.AUTHORIZED:
                return AuthorizationResult(success=False, error_message="Invoice is already authorized")

            try:
                errors = validate_invoice(invoice)
                if errors:
                    raise ValidationError("; ".join(errors))
                associated = self._associated_voucher(account, invoice)
            except ValidationError as e:
                invoice.error_message = e.message
                self.store.save_invoice(invoice)
                return AuthorizationResult(success=False, error_message=e.message)

            invoice.status = InvoiceStatus.PENDING
            invoice.error_message = None
            invoice = self.store.save_invoice(invoice)

            issue_date = authority_today()
            try:
                token = await self.wsaa.get_token(account)
                last = await self.wsfe.last_authorized(
                    account, token, invoice.voucher_type, invoice.sales_point
                )
                result = await self.wsfe.authorize(
                    account, token, invoice, last + 1, issue_date, associated
                )
            except (TransportError, StaleTokenStateError) as e:
                logger.warning("Transient failure authorizing invoice %s: %s", invoice_id, e.message)
                return self._record_failure(invoice, InvoiceStatus.DRAFT, e.message)
            except AuthorityRejection as e:
                return self._record_failure(
                    invoice, InvoiceStatus.REJECTED, e.message, e.authority_response
                )
            except ArcaError as e:
                logger.error("Authorization of invoice %s failed: %s", invoice_id, e.message)
                return self._record_failure(invoice, InvoiceStatus.REJECTED, e.message)

            if not result.success:
                return self._record_failure(
                    invoice, InvoiceStatus.REJECTED, result.error_message, result.authority_response
                ).model_copy(update={"error_code": result.error_code})

            invoice.number = result.number
            invoice.cae = result.cae
            invoice.cae_expiration = result.cae_expiration
            invoice.issue_date = issue_date
            invoice.status = InvoiceStatus.AUTHORIZED
            invoice.error_message = None
            invoice.authority_response = result.authority_response
            self.store.save_invoice(invoice)
            return result

    # ═══════════════════════════════════════════════════
    # Cancellation & QR
    # ═══════════════════════════════════════════════════

    def cancel_invoice(self, account_id: int, invoice_id: int) -> CancellationResult:
        """
        Create a draft credit note that cancels an authorized invoice.

        The original invoice is never modified; the credit note still needs
        its own authorization.

        Raises:
            ValidationError: invoice missing, not authorized, a credit note, or
                already covered by a credit note that was not rejected
        """
        original = self.store.get_invoice(invoice_id)
        if original is None or original.account_id != account_id:
            raise ValidationError("Original invoice not found")
        if original.status != InvoiceStatus.AUTHORIZED or original.number is None:
            raise ValidationError("Only authorized invoices can be cancelled")
        if original.voucher_type == VoucherType.NOTA_CREDITO_C:
            raise ValidationError("A credit note cannot be cancelled with another credit note")
        for note in self.store.list_invoices(account_id, VoucherType.NOTA_CREDITO_C):
            if note.associated_invoice_id == original.id and note.status != InvoiceStatus.REJECTED:
                raise ValidationError(
                    f"Invoice {invoice_id} already has credit note {note.id} ({note.status.value})"
                )

        credit_note = Invoice(
            account_id=account_id,
            voucher_type=VoucherType.NOTA_CREDITO_C,
            sales_point=original.sales_point,
            receiver_name=original.receiver_name,
            receiver_cuit=original.receiver_cuit,
            receiver_address=original.receiver_address,
            receiver_tax_condition=original.receiver_tax_condition,
            net_amount=original.net_amount,
            total_amount=original.total_amount,
            currency=original.currency,
            exchange_rate=original.exchange_rate,
            concept=(
                f"Anulación de {_VOUCHER_LABELS[original.voucher_type]} "
                f"{format_voucher_number(original.sales_point, original.number)}"
            ),
            concept_type=original.concept_type,
            service_from=original.service_from,
            service_to=original.service_to,
            payment_due=original.payment_due,
            status=InvoiceStatus.DRAFT,
            associated_invoice_id=original.id,
        )
        saved = self.store.save_invoice(credit_note)
        logger.info("Created credit note %s cancelling invoice %s", saved.id, invoice_id)
        return CancellationResult(credit_note_invoice_id=saved.id)

    def build_compliance_qr_url(self, account_id: int, invoice_id: int) -> str:
        account = self.get_account(account_id)
        invoice = self.store.get_invoice(invoice_id)
        if invoice is None or invoice.account_id != account_id:
            raise ValidationError("Invoice not found")
        return build_qr_url(account, invoice)

    # ═══════════════════════════════════════════════════
    # Query & reconciliation
    # ═══════════════════════════════════════════════════

    async def consult_invoice(
        self,
        account_id: int,
        voucher_type: VoucherType,
        number: int,
        sales_point: int | None = None,
    ) -> QueriedInvoice:
        account = self.get_account(account_id)
        token = await self.get_token(account)
        return await self.wsfe.query(account, token, voucher_type, number, sales_point)

    async def sync_invoices(
        self,
        account_id: int,
        voucher_type: VoucherType = VoucherType.FACTURA_C,
        sales_point: int | None = None,
        limit: int | None = None,
    ) -> SyncResult:
        """
        Import vouchers that exist at the authority but not locally.

        Walks down from the last authorized number, skipping numbers already
        stored, and queries at most ``limit`` of them with a pause between
        requests. Safe to run repeatedly.
        """
        account = self.get_account(account_id)
        sales_point = sales_point or account.sales_point
        limit = self.settings.sync_max_invoices if limit is None else limit

        token = await self.get_token(account)
        last = await self.wsfe.last_authorized(account, token, voucher_type, sales_point)
        result = SyncResult(last_authorized=last)

        local = {
            inv.number
            for inv in self.store.list_invoices(account_id, voucher_type, sales_point)
            if inv.number is not None
        }
        missing = [n for n in range(last, 0, -1) if n not in local][:limit]

        for position, number in enumerate(missing):
            if position:
                await asyncio.sleep(self.settings.sync_delay_seconds)
            try:
                remote = await self.wsfe.query(account, token, voucher_type, number, sales_point)
            except AuthorityRejection as e:
                result.errors.append(f"{number}: {e.message}")
                continue
            except TransportError as e:
                result.errors.append(f"{number}: {e.message}")
                break

            result.checked += 1
            if remote.result != "A" or not remote.cae:
                result.errors.append(f"{number}: not approved at the authority")
                continue

            imported = self.store.save_invoice(self._invoice_from_remote(account_id, remote))
            result.imported.append(imported.id)

        logger.info(
            "Sync %s at sales point %s: last=%s checked=%s imported=%s errors=%s",
            voucher_type.value, sales_point, last,
            result.checked, len(result.imported), len(result.errors),
        )
        return result

    @staticmethod
    def _invoice_from_remote(account_id: int, remote: QueriedInvoice) -> Invoice:
        receiver_cuit = (
            str(remote.doc_number)
            if remote.doc_type == DOC_TYPE_CUIT and remote.doc_number
            else None
        )
        data = {
            "account_id": account_id,
            "voucher_type": remote.voucher_type,
            "sales_point": remote.sales_point,
            "number": remote.number,
            "receiver_cuit": receiver_cuit,
            "net_amount": remote.net_amount,
            "total_amount": remote.total_amount,
            "currency": remote.currency,
            "exchange_rate": remote.exchange_rate,
            "concept": "Importado desde ARCA",
            "service_from": remote.service_from,
            "service_to": remote.service_to,
            "payment_due": remote.payment_due,
            "issue_date": remote.issue_date,
            "cae": remote.cae,
            "cae_expiration": remote.cae_expiration,
            "status": InvoiceStatus.AUTHORIZED,
        }
        if remote.concept_type is not None:
            data["concept_type"] = remote.concept_type
        return Invoice.model_validate(data)

    async def reconcile_periodically(
        self,
        account_id: int,
        voucher_type: VoucherType = VoucherType.FACTURA_C,
        interval_seconds: float = 3600.0,
        max_runs: int | None = None,
    ) -> None:
        """Run ``sync_invoices`` on a fixed interval; transient errors are logged and retried next run."""
        runs = 0
        while max_runs is None or runs < max_runs:
            try:
                await self.sync_invoices(account_id, voucher_type)
            except ArcaError as e:
                if not e.transient:
                    raise
                logger.warning("Reconciliation for account %s deferred: %s", account_id, e.message)
            runs += 1
            if max_runs is None or runs < max_runs:
                await asyncio.sleep(interval_seconds)
