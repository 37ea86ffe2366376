"""
Signing utilities for WSAA.

Provides certificate/key loading with PEM normalization, the CMS (PKCS#7)
SignedData envelope around the login ticket request, RSA key generation and
certificate signing requests in ARCA's required subject order.

Requires: cryptography>=42.0.0
"""

from __future__ import annotations

import base64
import re
import textwrap

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import NameOID

from arca_mcp.api.models import KeyMaterial, LegalIdentity
from arca_mcp.errors import CertificateFormatError, SigningError

RSA_KEY_SIZE = 2048
SUBJECT_FIELD_MAX = 64

_KEY_LABELS = ("PRIVATE KEY", "RSA PRIVATE KEY")


# ═══════════════════════════════════════════════════
# PEM Normalization & Loading
# ═══════════════════════════════════════════════════


def wrap_pem(material: str, label: str) -> str:
    """Wrap bare base64 material in PEM armour with the given label."""
    body = re.sub(r"\s+", "", material)
    lines = textwrap.wrap(body, 64)
    return "\n".join([f"-----BEGIN {label}-----", *lines, f"-----END {label}-----"]) + "\n"


def _clean(material: str) -> str:
    # Material pasted from JSON often arrives with literal "\n"
    return material.replace("\\n", "\n").strip()


def _is_armoured(material: str) -> bool:
    return "-----BEGIN" in material


def load_certificate(certificate: str) -> x509.Certificate:
    """
    Load an X.509 certificate from PEM or bare base64 DER.

    Raises:
        CertificateFormatError: material is empty or unparseable
    """
    if not certificate or not certificate.strip():
        raise CertificateFormatError("Certificate is missing")

    pem = _clean(certificate)
    if not _is_armoured(pem):
        pem = wrap_pem(pem, "CERTIFICATE")
    try:
        return x509.load_pem_x509_certificate(pem.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise CertificateFormatError(f"Invalid certificate: {e}") from e


def load_private_key(
    private_key: str,
    password: bytes | None = None,
) -> rsa.RSAPrivateKey:
    """
    Load an RSA private key in PKCS#8 or legacy PKCS#1 format.

    Bare base64 is re-wrapped, trying the PKCS#8 label first and the legacy
    RSA label second.

    Raises:
        CertificateFormatError: material is empty or unparseable
        SigningError: key is well-formed but not RSA
    """
    if not private_key or not private_key.strip():
        raise CertificateFormatError("Private key is missing")

    material = _clean(private_key)
    candidates = (
        [material] if _is_armoured(material)
        else [wrap_pem(material, label) for label in _KEY_LABELS]
    )

    last_error: Exception | None = None
    for pem in candidates:
        try:
            key = serialization.load_pem_private_key(
                pem.encode("ascii"), password=password
            )
        except (ValueError, TypeError, UnsupportedAlgorithm, UnicodeEncodeError) as e:
            last_error = e
            continue
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SigningError(
                f"Unsupported key type {type(key).__name__}; ARCA requires an RSA key"
            )
        return key

    raise CertificateFormatError(f"Invalid private key: {last_error}")


def serialize_private_key(
    key: rsa.RSAPrivateKey,
    password: bytes | None = None,
) -> bytes:
    """Serialize private key to PKCS#8 PEM."""
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )


def key_matches_certificate(key: rsa.RSAPrivateKey, cert: x509.Certificate) -> bool:
    cert_key = cert.public_key()
    if not isinstance(cert_key, rsa.RSAPublicKey):
        return False
    return cert_key.public_numbers() == key.public_key().public_numbers()


# ═══════════════════════════════════════════════════
# CMS SignedData
# ═══════════════════════════════════════════════════


def sign_ticket_request(
    ticket_request: bytes,
    certificate: str,
    private_key: str,
) -> str:
    """
    Sign a login ticket request as CMS SignedData for loginCms.

    The content is embedded (not detached), digested with SHA-256, and the
    signer certificate is included. Authenticated attributes are
    content-type, message-digest and signing-time; S/MIME capabilities are
    omitted and the content is signed as binary.

    Args:
        ticket_request: TRA XML bytes
        certificate: PEM (or bare base64) certificate
        private_key: PEM (or bare base64) RSA key, PKCS#8 or PKCS#1

    Returns:
        Base64 of the DER-encoded SignedData

    Raises:
        CertificateFormatError: unreadable certificate or key
        SigningError: key is not RSA, does not match the certificate, or signing failed
    """
    cert = load_certificate(certificate)
    key = load_private_key(private_key)

    if not key_matches_certificate(key, cert):
        raise SigningError("Private key does not match the certificate public key")

    try:
        der = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(ticket_request)
            .add_signer(cert, key, hashes.SHA256())
            .sign(
                serialization.Encoding.DER,
                [pkcs7.PKCS7Options.Binary, pkcs7.PKCS7Options.NoCapabilities],
            )
        )
    except (TypeError, ValueError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Could not sign ticket request: {e}") from e

    return base64.b64encode(der).decode("ascii")


# ═══════════════════════════════════════════════════
# Key Generation & CSR
# ═══════════════════════════════════════════════════


def generate_private_key() -> rsa.RSAPrivateKey:
    """Generate a 2048-bit RSA key (ARCA minimum)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)


def _subject_parts(identity: LegalIdentity) -> list[tuple[x509.ObjectIdentifier, str, str]]:
    """(oid, openssl short name, value) in ARCA's attribute order."""
    cuit = identity.cuit.replace("-", "")
    name = identity.legal_name[:SUBJECT_FIELD_MAX]
    parts = [(NameOID.COUNTRY_NAME, "C", "AR")]
    if identity.state:
        parts.append((NameOID.STATE_OR_PROVINCE_NAME, "ST", identity.state))
    if identity.locality:
        parts.append((NameOID.LOCALITY_NAME, "L", identity.locality))
    parts.append((NameOID.ORGANIZATION_NAME, "O", name))
    parts.append((NameOID.SERIAL_NUMBER, "serialNumber", f"CUIT {cuit}"))
    parts.append((NameOID.COMMON_NAME, "CN", name))
    if identity.email:
        parts.append((NameOID.EMAIL_ADDRESS, "emailAddress", identity.email))
    return parts


def build_csr_subject(identity: LegalIdentity) -> str:
    """OpenSSL-style subject, e.g. ``/C=AR/O=ACME/serialNumber=CUIT 20.../CN=ACME``."""
    escaped = [
        short + "=" + value.replace("/", "\\/")
        for _, short, value in _subject_parts(identity)
    ]
    return "/" + "/".join(escaped)


def build_openssl_command(subject: str, key_file: str = "private.key") -> str:
    safe_subject = subject.replace('"', '\\"')
    return f'openssl req -new -key {key_file} -out request.csr -subj "{safe_subject}"'


def generate_csr(key: rsa.RSAPrivateKey, identity: LegalIdentity) -> bytes:
    """
    Generate a PKCS#10 certificate signing request for ARCA.

    The subject uses the same attribute order as ``build_csr_subject``.

    Returns:
        PEM-encoded CSR bytes
    """
    subject = x509.Name([
        x509.NameAttribute(oid, value)
        for oid, _, value in _subject_parts(identity)
    ])
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


def generate_key_material(identity: LegalIdentity) -> KeyMaterial:
    """
    Generate a key pair plus everything needed to request a certificate.

    Tax id validation is the caller's job.
    """
    key = generate_private_key()
    subject = build_csr_subject(identity)
    return KeyMaterial(
        private_key_pem=serialize_private_key(key).decode("ascii"),
        subject=subject,
        external_csr_command=build_openssl_command(subject),
        csr_pem=generate_csr(key, identity).decode("ascii"),
    )
