"""
Shared pytest fixtures.

Certificates are generated on the fly with `cryptography` so every test gets
artifacts with exactly the validity window it needs.  `FakeIssuingBackend`
stands in for Vault: it signs real certificates in memory and can be told
to fail, block, or hand back the wrong common name.
"""
from __future__ import annotations

import datetime
import threading
from pathlib import Path
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from issuing.client import IssuedCertificate, IssuingError

UTC = datetime.timezone.utc


# ─── Certificate helpers ──────────────────────────────────────────────────────

_KEY_CACHE: dict[str, object] = {}


def _shared_key(kind: str = "ec"):
    """Key generation is slow for RSA; reuse one key per kind across tests."""
    if kind not in _KEY_CACHE:
        if kind == "rsa":
            _KEY_CACHE[kind] = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        else:
            _KEY_CACHE[kind] = ec.generate_private_key(ec.SECP256R1())
    return _KEY_CACHE[kind]


def make_cert(
    common_name: Optional[str] = "app.example.com",
    not_after: Optional[datetime.datetime] = None,
    days: Optional[float] = 90,
    not_before: Optional[datetime.datetime] = None,
    key=None,
    key_kind: str = "ec",
    issuer_cn: str = "Example Intermediate CA",
    san: Optional[list[str]] = None,
    issuer_key=None,
) -> tuple[str, str]:
    """Return (cert_pem, key_pem) for a certificate expiring *days* from now.

    Signed by *issuer_key* when given, otherwise by the certificate's own key.
    """
    key = key or _shared_key(key_kind)
    now = datetime.datetime.now(UTC)
    if not_after is None:
        not_after = now + datetime.timedelta(days=days)
    if not_before is None:
        not_before = min(now, not_after) - datetime.timedelta(days=30)

    subject_attrs = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Org")]
    if common_name is not None:
        subject_attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name(subject_attrs))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if san:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in san]), critical=False
        )
    cert = builder.sign(issuer_key or key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return cert_pem, key_pem


def make_ca(common_name: str = "Example Intermediate CA", key=None) -> tuple[str, object]:
    """Return (ca_pem, ca_key) for a self-signed CA whose subject is just *common_name*."""
    key = key or _shared_key("rsa")
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode(), key


def write_cert(path: Path, **kwargs) -> Path:
    cert_pem, _ = make_cert(**kwargs)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(cert_pem)
    return path


# ─── Fake issuing backend ─────────────────────────────────────────────────────


class FakeIssuingBackend:
    """In-memory issuing backend with switchable failure modes."""

    def __init__(self, ttl_days: float = 90) -> None:
        self.ttl_days = ttl_days
        self.calls: list[tuple[str, str, str]] = []
        self.revoked: list[str] = []
        self.reachable = True
        self.fail_with: Optional[Exception] = None
        self.wrong_cn: Optional[str] = None
        self.mismatched_key = False
        self.foreign_chain = False
        self.ca_pem, self.ca_key = make_ca()
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def issue(self, role: str, common_name: str, ttl: str) -> IssuedCertificate:
        with self._lock:
            self.calls.append((role, common_name, ttl))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.fail_with is not None:
            raise self.fail_with

        key = ec.generate_private_key(ec.SECP256R1())
        cert_pem, key_pem = make_cert(
            common_name=self.wrong_cn or common_name,
            days=self.ttl_days,
            not_before=datetime.datetime.now(UTC) - datetime.timedelta(minutes=1),
            key=key,
            issuer_key=self.ca_key,
        )
        if self.mismatched_key:
            _, key_pem = make_cert(common_name=common_name, key=ec.generate_private_key(ec.SECP256R1()))
        ca_pem = self.ca_pem
        if self.foreign_chain:
            # Same subject name, different key
            ca_pem, _ = make_ca(key=ec.generate_private_key(ec.SECP256R1()))
        serial = format(x509.load_pem_x509_certificate(cert_pem.encode()).serial_number, "x")
        return IssuedCertificate(
            certificate=cert_pem,
            private_key=key_pem,
            serial_number=serial,
            ca_chain=[ca_pem],
        )

    def health_check(self) -> bool:
        return self.reachable

    def revoke(self, serial_number: str) -> None:
        if self.fail_with is not None:
            raise IssuingError(500, ["revoke failed"])
        self.revoked.append(serial_number)


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def backend() -> FakeIssuingBackend:
    return FakeIssuingBackend()


@pytest.fixture()
def cert_dir(tmp_path: Path) -> Path:
    d = tmp_path / "certs"
    d.mkdir()
    return d
