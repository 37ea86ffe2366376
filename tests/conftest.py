"""Shared fixtures: a self-signed RSA certificate and a configured test account."""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

pytest.importorskip("cryptography", reason="cryptography not installed")

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from arca_mcp.api.models import AccountConfig
from arca_mcp.config import Environment, Settings
from arca_mcp.store import MemoryStore

TEST_CUIT = "20123456786"


def make_credentials(valid_days: int = 365, key=None):
    """Self-signed certificate + key, shaped like an ARCA homologación cert."""
    key = key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "AR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test SRL"),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, f"CUIT {TEST_CUIT}"),
        x509.NameAttribute(NameOID.COMMON_NAME, "test-arca"),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=2))
        .not_valid_after(now + timedelta(days=valid_days))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem, key


@pytest.fixture(scope="session")
def credentials():
    return make_credentials()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def account(store, credentials):
    cert_pem, key_pem, _ = credentials
    return store.save_account(
        AccountConfig(
            id=1,
            cuit=TEST_CUIT,
            legal_name="Test SRL",
            sales_point=1,
            environment=Environment.TESTING,
            certificate=cert_pem,
            private_key=key_pem,
        )
    )


@pytest.fixture
def settings():
    return Settings(
        environment=Environment.TESTING,
        sync_delay_seconds=0,
        sync_max_invoices=20,
        store_path="",
    )
