"""End-to-end tests for ArcaService against a fake ARCA endpoint."""

import asyncio
import pytest
import sys
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from cryptography.hazmat.primitives.asymmetric import ec

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

httpx = pytest.importorskip("httpx", reason="httpx not installed")

import arca_fakes
from arca_fakes import FakeArca
from arca_mcp.api.models import (
    AccountConfig,
    ConceptType,
    Invoice,
    InvoiceStatus,
    LegalIdentity,
    VoucherType,
)
from arca_mcp.config import Environment
from arca_mcp.errors import SigningError, TransportError, ValidationError
from arca_mcp.service import ArcaService, format_voucher_number
from arca_mcp.store import MemoryStore
from arca_mcp.utils.qr import decode_qr_url
from conftest import make_credentials


def _service(store, settings, fake: FakeArca) -> ArcaService:
    return ArcaService(store, settings, transport=fake.transport)


def _draft(store, **overrides) -> Invoice:
    data = dict(
        account_id=1,
        voucher_type=VoucherType.FACTURA_C,
        sales_point=1,
        receiver_name="Consumidor Final",
        net_amount=Decimal("15000.00"),
        total_amount=Decimal("15000.00"),
        concept="Honorarios octubre",
        concept_type=ConceptType.SERVICES,
        service_from=date(2026, 10, 1),
        service_to=date(2026, 10, 31),
    )
    data.update(overrides)
    return store.save_invoice(Invoice(**data))


def _cache_token(service, account_id=1, hours=1):
    service.token_cache.set(
        account_id, "CACHED", "SIG", datetime.now(timezone.utc) + timedelta(hours=hours)
    )


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_first_authorization(self, store, account, settings):
        """Fresh account, no token: login, read last number, get a CAE."""
        fake = FakeArca(last_number=41)
        service = _service(store, settings, fake)
        invoice = _draft(store)

        result = await service.authorize(1, invoice.id)

        assert result.success
        assert result.number == 42
        assert result.cae == "74000000000042"
        assert fake.login_calls() == 1
        assert fake.calls("FECompUltimoAutorizado") == 1
        assert fake.calls("FECAESolicitar") == 1

        stored = store.get_invoice(invoice.id)
        assert stored.status == InvoiceStatus.AUTHORIZED
        assert stored.number == 42
        assert stored.cae == "74000000000042"
        assert stored.cae_expiration > stored.issue_date
        assert stored.cae_expiration == stored.issue_date + timedelta(days=10)
        assert "FECAESolicitarResponse" in stored.authority_response
        assert stored.error_message is None
        assert store.get_account(1).token == "TOKEN-abc"

    @pytest.mark.asyncio
    async def test_cached_token_reused(self, store, account, settings):
        fake = FakeArca()
        service = _service(store, settings, fake)
        _cache_token(service)

        result = await service.authorize(1, _draft(store).id)
        assert result.success
        assert fake.login_calls() == 0
        assert "<ar:Token>CACHED</ar:Token>" in fake.requests[-1].content.decode()

    @pytest.mark.asyncio
    async def test_observation_marks_rejected(self, store, account, settings):
        fake = FakeArca(last_number=3)
        fake.authorize_response = arca_fakes.cae_observed("10013", "Receptor inexistente")
        service = _service(store, settings, fake)
        invoice = _draft(store)

        result = await service.authorize(1, invoice.id)

        assert not result.success
        assert result.error_code == "10013"
        stored = store.get_invoice(invoice.id)
        assert stored.status == InvoiceStatus.REJECTED
        assert stored.cae is None
        assert stored.number is None
        assert "Receptor inexistente" in stored.error_message
        assert stored.authority_response == fake.authorize_response

    @pytest.mark.asyncio
    async def test_impossible_cae_expiration_marks_rejected(self, store, account, settings):
        fake = FakeArca(last_number=41)
        fake.authorize_response = arca_fakes.cae_approved(42, "74000000000042", expiration="20261340")
        service = _service(store, settings, fake)
        invoice = _draft(store)

        result = await service.authorize(1, invoice.id)

        assert not result.success
        stored = store.get_invoice(invoice.id)
        assert stored.status == InvoiceStatus.REJECTED
        assert stored.cae is None
        assert stored.error_message == "Unexpected authority response"

    @pytest.mark.asyncio
    async def test_invoice_removed_before_lock(self, account, settings, store):
        class VanishingStore(MemoryStore):
            reads = 0

            def get_invoice(self, invoice_id):
                self.reads += 1
                return super().get_invoice(invoice_id) if self.reads == 1 else None

        vanishing = VanishingStore()
        vanishing.save_account(store.get_account(1))
        invoice = _draft(vanishing)
        fake = FakeArca()

        result = await _service(vanishing, settings, fake).authorize(1, invoice.id)
        assert not result.success
        assert result.error_message == "Invoice not found"
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_duplicate_ticket_fault_uses_cache(self, store, account, settings):
        fake = FakeArca(last_number=9)
        fake.login_responses.append((500, arca_fakes.login_fault(arca_fakes.ALREADY_AUTHENTICATED)))
        service = _service(store, settings, fake)
        # Expired locally; WSAA still holds it
        _cache_token(service, hours=-1)

        result = await service.authorize(1, _draft(store).id)
        assert result.success
        assert result.number == 10
        assert "<ar:Token>CACHED</ar:Token>" in fake.requests[-1].content.decode()

    @pytest.mark.asyncio
    async def test_duplicate_ticket_without_cache_stays_draft(self, store, account, settings):
        fake = FakeArca()
        fake.login_responses.append((500, arca_fakes.login_fault(arca_fakes.ALREADY_AUTHENTICATED)))
        service = _service(store, settings, fake)
        invoice = _draft(store)

        result = await service.authorize(1, invoice.id)
        assert not result.success
        stored = store.get_invoice(invoice.id)
        assert stored.status == InvoiceStatus.DRAFT
        assert "active ticket" in stored.error_message
        assert fake.calls("FECAESolicitar") == 0

    @pytest.mark.asyncio
    async def test_timeout_stays_draft(self, store, account, settings):
        fake = FakeArca()
        service = _service(store, settings, fake)
        _cache_token(service)
        fake.fail_with = httpx.ReadTimeout("read timed out")
        invoice = _draft(store)

        result = await service.authorize(1, invoice.id)
        assert not result.success
        stored = store.get_invoice(invoice.id)
        assert stored.status == InvoiceStatus.DRAFT
        assert stored.error_message.startswith("Timeout")

    @pytest.mark.asyncio
    async def test_login_fault_marks_rejected(self, store, account, settings):
        fake = FakeArca()
        fake.login_responses.append((500, arca_fakes.login_fault("Certificado revocado")))
        service = _service(store, settings, fake)
        invoice = _draft(store)

        result = await service.authorize(1, invoice.id)
        assert not result.success
        assert store.get_invoice(invoice.id).status == InvoiceStatus.REJECTED
        assert result.error_message == "Certificado revocado"

    @pytest.mark.asyncio
    async def test_missing_certificate_no_network(self, store, settings):
        store.save_account(AccountConfig(id=1, cuit="20123456786"))
        fake = FakeArca()
        service = _service(store, settings, fake)
        invoice = _draft(store)

        result = await service.authorize(1, invoice.id)
        assert not result.success
        assert result.error_message == "No certificate configured"
        assert fake.requests == []
        assert store.get_invoice(invoice.id).status == InvoiceStatus.DRAFT

    @pytest.mark.asyncio
    async def test_missing_account(self, store, settings):
        fake = FakeArca()
        result = await _service(store, settings, fake).authorize(1, 1)
        assert not result.success
        assert "No ARCA configuration" in result.error_message
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_environment_mismatch(self, store, account, settings):
        account.environment = Environment.PRODUCTION
        store.save_account(account)
        fake = FakeArca()

        result = await _service(store, settings, fake).authorize(1, _draft(store).id)
        assert not result.success
        assert "production" in result.error_message
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_local_validation_no_network(self, store, account, settings):
        fake = FakeArca()
        service = _service(store, settings, fake)
        invoice = _draft(store, total_amount=Decimal("100"), net_amount=Decimal("90"))

        result = await service.authorize(1, invoice.id)
        assert not result.success
        assert "must equal net amount" in result.error_message
        assert fake.requests == []
        assert store.get_invoice(invoice.id).status == InvoiceStatus.DRAFT

    @pytest.mark.asyncio
    async def test_already_authorized(self, store, account, settings):
        fake = FakeArca()
        service = _service(store, settings, fake)
        invoice = _draft(store)
        assert (await service.authorize(1, invoice.id)).success

        again = await service.authorize(1, invoice.id)
        assert not again.success
        assert again.error_message == "Invoice is already authorized"
        assert fake.calls("FECAESolicitar") == 1

    @pytest.mark.asyncio
    async def test_other_accounts_invoice(self, store, account, settings):
        invoice = _draft(store, account_id=2)
        result = await _service(store, settings, FakeArca()).authorize(1, invoice.id)
        assert result.error_message == "Invoice not found"

    @pytest.mark.asyncio
    async def test_sequential_numbers(self, store, account, settings):
        fake = FakeArca(last_number=100)
        service = _service(store, settings, fake)
        numbers = []
        for _ in range(3):
            numbers.append((await service.authorize(1, _draft(store).id)).number)
        assert numbers == [101, 102, 103]

    @pytest.mark.asyncio
    async def test_concurrent_authorizations_get_distinct_numbers(self, store, account, settings):
        fake = FakeArca(last_number=0)
        service = _service(store, settings, fake)
        invoices = [_draft(store) for _ in range(4)]

        results = await asyncio.gather(*(service.authorize(1, inv.id) for inv in invoices))
        assert all(r.success for r in results)
        assert sorted(r.number for r in results) == [1, 2, 3, 4]
        assert fake.login_calls() == 1

    @pytest.mark.asyncio
    async def test_credit_note_references_original(self, store, account, settings):
        fake = FakeArca(last_number=7)
        service = _service(store, settings, fake)
        original = _draft(store)
        await service.authorize(1, original.id)

        note_id = service.cancel_invoice(1, original.id).credit_note_invoice_id
        result = await service.authorize(1, note_id)

        assert result.success
        assert result.number == 8
        body = fake.requests[-1].content.decode()
        assert "<ar:CbteTipo>13</ar:CbteTipo>" in body
        assert "<ar:CbtesAsoc>" in body
        assert "<ar:Nro>8</ar:Nro>" in body
        assert "<ar:Tipo>11</ar:Tipo>" in body


class TestNumbering:
    @pytest.mark.asyncio
    async def test_next_number(self, store, account, settings):
        service = _service(store, settings, FakeArca(last_number=41))
        assert await service.next_invoice_number(1, VoucherType.FACTURA_C) == 42
        assert await service.next_invoice_number(1, VoucherType.FACTURA_C) == 42

    @pytest.mark.asyncio
    async def test_next_number_empty_sequence(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        assert await service.next_invoice_number(1, VoucherType.NOTA_DEBITO_C) == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_creates_draft_credit_note(self, store, account, settings):
        service = _service(store, settings, FakeArca(last_number=41))
        original = _draft(store, receiver_cuit="20111111112")
        await service.authorize(1, original.id)
        before = store.get_invoice(original.id)

        result = service.cancel_invoice(1, original.id)

        note = store.get_invoice(result.credit_note_invoice_id)
        assert note.voucher_type == VoucherType.NOTA_CREDITO_C
        assert note.status == InvoiceStatus.DRAFT
        assert note.total_amount == before.total_amount
        assert note.net_amount == before.net_amount
        assert note.receiver_cuit == "20111111112"
        assert note.associated_invoice_id == original.id
        assert "00001-00000042" in note.concept
        assert note.service_from == before.service_from
        assert store.get_invoice(original.id) == before

    @pytest.mark.asyncio
    async def test_second_cancellation_refused(self, store, account, settings):
        service = _service(store, settings, FakeArca(last_number=41))
        original = _draft(store)
        await service.authorize(1, original.id)
        first = service.cancel_invoice(1, original.id)

        with pytest.raises(ValidationError, match="already has credit note"):
            service.cancel_invoice(1, original.id)

        note = store.get_invoice(first.credit_note_invoice_id)
        note.status = InvoiceStatus.REJECTED
        store.save_invoice(note)
        retry = service.cancel_invoice(1, original.id)
        assert retry.credit_note_invoice_id != first.credit_note_invoice_id

    def test_debit_note_concept(self, store, account, settings):
        debit = _draft(
            store,
            voucher_type=VoucherType.NOTA_DEBITO_C,
            status=InvoiceStatus.AUTHORIZED,
            number=3,
            cae="74000000000003",
        )
        result = _service(store, settings, FakeArca()).cancel_invoice(1, debit.id)
        note = store.get_invoice(result.credit_note_invoice_id)
        assert note.concept == "Anulación de Nota de Débito 00001-00000003"

    def test_draft_cannot_be_cancelled(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        with pytest.raises(ValidationError, match="authorized"):
            service.cancel_invoice(1, _draft(store).id)

    def test_unknown_invoice(self, store, account, settings):
        with pytest.raises(ValidationError):
            _service(store, settings, FakeArca()).cancel_invoice(1, 404)

    def test_format_voucher_number(self):
        assert format_voucher_number(1, 42) == "00001-00000042"


class TestQr:
    @pytest.mark.asyncio
    async def test_url_for_authorized_invoice(self, store, account, settings):
        service = _service(store, settings, FakeArca(last_number=41))
        invoice = _draft(store)
        await service.authorize(1, invoice.id)

        payload = decode_qr_url(service.build_compliance_qr_url(1, invoice.id))
        assert payload["cuit"] == 20123456786
        assert payload["nroCmp"] == 42
        assert payload["tipoCmp"] == 11
        assert payload["codAut"] == 74000000000042
        assert payload["importe"] == 15000.0

    def test_draft_has_no_qr(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        with pytest.raises(ValidationError):
            service.build_compliance_qr_url(1, _draft(store).id)


class TestCredentials:
    def test_generate_key_material(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        identity = LegalIdentity(cuit="20-40937847-2", legal_name="Nueva SRL")

        material = service.generate_key_material(1, identity)

        stored = store.get_account(1)
        assert stored.private_key == material.private_key_pem
        assert stored.certificate is None
        assert stored.cuit == "20-40937847-2"
        assert stored.legal_name == "Nueva SRL"
        assert "serialNumber=CUIT 20409378472" in material.subject
        assert material.csr_pem.startswith("-----BEGIN CERTIFICATE REQUEST-----")

    def test_generate_key_material_new_account(self, store, settings):
        service = _service(store, settings, FakeArca())
        service.generate_key_material(5, LegalIdentity(cuit="20123456786", legal_name="X"))
        assert store.get_account(5).environment == Environment.TESTING

    def test_generate_key_material_bad_cuit(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        with pytest.raises(ValidationError, match="check digit"):
            service.generate_key_material(1, LegalIdentity(cuit="20123456785", legal_name="X"))
        assert store.get_account(1).certificate is not None

    def test_upload_certificate(self, store, settings):
        store.save_account(AccountConfig(id=1, cuit="20123456786"))
        cert_pem, key_pem, _ = make_credentials()
        service = _service(store, settings, FakeArca())

        service.upload_certificate(1, cert_pem, key_pem)
        assert store.get_account(1).has_signing_material

    def test_upload_mismatched_pair(self, store, account, settings):
        cert_pem, _, _ = make_credentials()
        _, other_key, _ = make_credentials()
        with pytest.raises(SigningError):
            _service(store, settings, FakeArca()).upload_certificate(1, cert_pem, other_key)

    def test_upload_non_rsa_pair(self, store, account, settings):
        cert_pem, key_pem, _ = make_credentials(key=ec.generate_private_key(ec.SECP256R1()))
        with pytest.raises(SigningError, match="RSA"):
            _service(store, settings, FakeArca()).upload_certificate(1, cert_pem, key_pem)

    @pytest.mark.asyncio
    async def test_validate_non_rsa_material(self, store, settings):
        cert_pem, key_pem, _ = make_credentials(key=ec.generate_private_key(ec.SECP256R1()))
        store.save_account(
            AccountConfig(id=1, cuit="20123456786", certificate=cert_pem, private_key=key_pem)
        )
        fake = FakeArca()
        status = await _service(store, settings, fake).validate_certificate(1)
        assert not status.valid
        assert "RSA" in status.message
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_validate_certificate(self, store, account, settings):
        fake = FakeArca()
        status = await _service(store, settings, fake).validate_certificate(1)
        assert status.valid
        assert fake.login_calls() == 1

    @pytest.mark.asyncio
    async def test_validate_certificate_rejected(self, store, account, settings):
        fake = FakeArca()
        fake.login_responses.append((500, arca_fakes.login_fault("Computador no autorizado")))
        status = await _service(store, settings, fake).validate_certificate(1)
        assert not status.valid
        assert "Computador no autorizado" in status.message

    @pytest.mark.asyncio
    async def test_validate_certificate_active_ticket(self, store, account, settings):
        fake = FakeArca()
        fake.login_responses.append((500, arca_fakes.login_fault(arca_fakes.ALREADY_AUTHENTICATED)))
        status = await _service(store, settings, fake).validate_certificate(1)
        assert status.valid

    @pytest.mark.asyncio
    async def test_validate_without_material(self, store, settings):
        store.save_account(AccountConfig(id=1, cuit="20123456786"))
        fake = FakeArca()
        status = await _service(store, settings, fake).validate_certificate(1)
        assert not status.valid
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_validate_expired_certificate(self, store, settings):
        cert_pem, key_pem, _ = make_credentials(valid_days=-1)
        store.save_account(
            AccountConfig(id=1, cuit="20123456786", certificate=cert_pem, private_key=key_pem)
        )
        fake = FakeArca()
        status = await _service(store, settings, fake).validate_certificate(1)
        assert not status.valid
        assert "expired" in status.message
        assert fake.requests == []


class TestConfigAndTokens:
    def test_save_config_creates_account(self, store, settings):
        service = _service(store, settings, FakeArca())
        account = service.save_config(3, {"cuit": "20111111112", "legal_name": "Tres SA", "sales_point": 2})
        assert account.sales_point == 2
        assert account.environment == Environment.TESTING

    def test_save_config_keeps_token(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        _cache_token(service)
        service.save_config(1, {"legal_name": "Renamed", "token": "HIJACK"})
        stored = store.get_account(1)
        assert stored.legal_name == "Renamed"
        assert stored.token == "CACHED"
        assert stored.certificate is not None

    def test_save_config_ignores_signing_material(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        service.save_config(1, {"certificate": "garbage", "private_key": None})
        stored = store.get_account(1)
        assert stored.certificate == account.certificate
        assert stored.private_key == account.private_key

    def test_save_config_new_account_has_no_material(self, store, settings):
        service = _service(store, settings, FakeArca())
        account = service.save_config(3, {"cuit": "20111111112", "certificate": "garbage"})
        assert account.certificate is None

    def test_save_config_refuses_environment_switch(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        with pytest.raises(ValidationError, match="bound to testing"):
            service.save_config(1, {"environment": "production"})
        assert store.get_account(1).environment == Environment.TESTING

        service.save_config(1, {"environment": "testing", "legal_name": "Same Env SRL"})
        assert store.get_account(1).legal_name == "Same Env SRL"

    def test_save_config_new_account_other_environment(self, store, settings):
        with pytest.raises(ValidationError):
            _service(store, settings, FakeArca()).save_config(
                3, {"cuit": "20111111112", "environment": "production"}
            )
        assert store.get_account(3) is None

    def test_save_config_invalid_cuit(self, store, settings):
        with pytest.raises(ValidationError):
            _service(store, settings, FakeArca()).save_config(1, {"cuit": "123"})

    def test_update_token_and_status(self, store, account, settings):
        service = _service(store, settings, FakeArca())
        assert not service.token_status(1).has_token

        service.update_token(1, "MANUAL", "SIG")
        status = service.token_status(1)
        assert status.has_token
        assert status.valid
        assert status.expiration > datetime.now(timezone.utc) + timedelta(hours=11)

    def test_update_token_requires_values(self, store, account, settings):
        with pytest.raises(ValidationError):
            _service(store, settings, FakeArca()).update_token(1, "", "SIG")

    @pytest.mark.asyncio
    async def test_check_service(self, store, settings):
        status = await _service(store, settings, FakeArca()).check_service()
        assert status.healthy

    def test_create_invoice_defaults_sales_point(self, store, account, settings):
        account.sales_point = 4
        store.save_account(account)
        invoice = _service(store, settings, FakeArca()).create_invoice(
            1, {"net_amount": "10", "total_amount": "10", "concept": "x", "status": "authorized"}
        )
        assert invoice.sales_point == 4
        assert invoice.status == InvoiceStatus.DRAFT


class TestSync:
    @pytest.mark.asyncio
    async def test_imports_missing_numbers(self, store, account, settings):
        fake = FakeArca(last_number=5)
        service = _service(store, settings, fake)
        _draft(store, number=5, status=InvoiceStatus.AUTHORIZED, cae="1")
        _draft(store, number=4, status=InvoiceStatus.AUTHORIZED, cae="1")

        result = await service.sync_invoices(1, VoucherType.FACTURA_C, limit=2)

        assert result.last_authorized == 5
        assert result.checked == 2
        assert len(result.imported) == 2
        assert fake.calls("FECompConsultar") == 2
        imported = [store.get_invoice(i) for i in result.imported]
        assert [inv.number for inv in imported] == [3, 2]
        assert all(inv.status == InvoiceStatus.AUTHORIZED for inv in imported)
        assert imported[0].cae == "74000000000003"
        assert imported[0].total_amount == Decimal("1500.00")

    @pytest.mark.asyncio
    async def test_idempotent(self, store, account, settings):
        fake = FakeArca(last_number=3)
        service = _service(store, settings, fake)

        first = await service.sync_invoices(1)
        second = await service.sync_invoices(1)

        assert len(first.imported) == 3
        assert second.imported == []
        assert second.checked == 0

    @pytest.mark.asyncio
    async def test_rejected_remote_not_imported(self, store, account, settings):
        fake = FakeArca(last_number=1)
        fake.query_responses[1] = arca_fakes.query_result(1, result="R", cae="")
        result = await _service(store, settings, fake).sync_invoices(1)
        assert result.imported == []
        assert result.errors

    @pytest.mark.asyncio
    async def test_receiver_cuit_imported(self, store, account, settings):
        fake = FakeArca(last_number=1)
        fake.query_responses[1] = arca_fakes.query_result(1, doc_type=80, doc_number=20111111112)
        result = await _service(store, settings, fake).sync_invoices(1)
        assert store.get_invoice(result.imported[0]).receiver_cuit == "20111111112"

    @pytest.mark.asyncio
    async def test_periodic_reconciliation(self, store, account, settings):
        fake = FakeArca(last_number=2)
        service = _service(store, settings, fake)
        await service.reconcile_periodically(1, interval_seconds=0, max_runs=2)
        assert len(store.list_invoices(1)) == 2
        assert fake.calls("FECompUltimoAutorizado") == 2

    @pytest.mark.asyncio
    async def test_periodic_reconciliation_survives_transport_errors(self, store, account, settings):
        fake = FakeArca()
        fake.fail_with = httpx.ConnectError("down")
        service = _service(store, settings, fake)
        _cache_token(service)
        await service.reconcile_periodically(1, interval_seconds=0, max_runs=2)

    @pytest.mark.asyncio
    async def test_sync_propagates_transport_error(self, store, account, settings):
        fake = FakeArca()
        fake.fail_with = httpx.ConnectError("down")
        service = _service(store, settings, fake)
        _cache_token(service)
        with pytest.raises(TransportError):
            await service.sync_invoices(1)
