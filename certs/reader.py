"""
Certificate reader — turns PEM artifact bytes into a CertificateRecord.

Boundary: this module owns X.509 parsing only.  It never writes, never
caches, and never looks at the clock; classification happens elsewhere.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed448, ed25519
from cryptography.x509.oid import NameOID

_PEM_CERT_BLOCK = re.compile(
    rb"-----BEGIN CERTIFICATE-----\s.+?-----END CERTIFICATE-----", re.DOTALL
)

_DIGESTS = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


class ParseErrorKind(str, enum.Enum):
    UNREADABLE = "unreadable"
    MALFORMED = "malformed"


class ParseError(Exception):
    """Raised when an artifact cannot be read or is not a valid certificate."""

    def __init__(self, kind: ParseErrorKind, path: str, detail: str) -> None:
        self.kind = kind
        self.path = path
        self.detail = detail
        super().__init__(f"{path}: {kind.value} — {detail}")


@dataclass(frozen=True)
class CertificateRecord:
    path: str
    common_name: str
    serial_number: str
    issuer: str
    subject: str
    not_before: datetime
    not_after: datetime
    key_bits: int
    fingerprint: str
    san_dns_names: tuple[str, ...] = ()


def read_artifact(path: str | Path, digest: str = "sha256") -> CertificateRecord:
    """Read *path* from disk and parse it.  I/O failures raise UNREADABLE."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ParseError(ParseErrorKind.UNREADABLE, str(path), exc.strerror or str(exc)) from exc
    return parse_certificate(data, str(path), digest=digest)


def parse_certificate(data: bytes, path: str = "<memory>", digest: str = "sha256") -> CertificateRecord:
    """
    Parse PEM bytes into a CertificateRecord.

    Only PEM-encoded X.509 is accepted.  When the artifact holds a chain, the
    first certificate block is taken as the leaf.
    """
    cert = load_leaf(data, path)

    not_before = _utc(cert, "not_valid_before")
    not_after = _utc(cert, "not_valid_after")
    if not not_before < not_after:
        raise ParseError(
            ParseErrorKind.MALFORMED, path,
            f"notBefore {not_before.isoformat()} is not before notAfter {not_after.isoformat()}",
        )

    try:
        issuer = cert.issuer.rfc4514_string()
        subject = cert.subject.rfc4514_string()
        common_name = common_name_of(cert)
        key_bits = _key_bits(cert)
    except ValueError as exc:
        raise ParseError(ParseErrorKind.MALFORMED, path, str(exc)) from exc

    return CertificateRecord(
        path=path,
        common_name=common_name,
        serial_number=format(cert.serial_number, "x"),
        issuer=issuer,
        subject=subject,
        not_before=not_before,
        not_after=not_after,
        key_bits=key_bits,
        fingerprint=fingerprint(cert, digest),
        san_dns_names=_san_dns_names(cert),
    )


def load_leaf(data: bytes, path: str = "<memory>") -> x509.Certificate:
    """Return the first certificate in a PEM blob, or raise MALFORMED."""
    match = _PEM_CERT_BLOCK.search(data)
    if match is None:
        raise ParseError(ParseErrorKind.MALFORMED, path, "no PEM certificate block found")
    try:
        return x509.load_pem_x509_certificate(match.group(0))
    except ValueError as exc:
        raise ParseError(ParseErrorKind.MALFORMED, path, f"invalid certificate: {exc}") from exc


def common_name_of(cert: x509.Certificate) -> str:
    """First CN of the subject, or '' when the subject has none."""
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return ""
    value = attrs[0].value
    return value.decode() if isinstance(value, bytes) else value


def fingerprint(cert: x509.Certificate, digest: str = "sha256") -> str:
    """Algorithm-tagged fingerprint over the DER encoding, e.g. ``sha256:AB:CD:…``."""
    try:
        algorithm = _DIGESTS[digest]()
    except KeyError:
        raise ValueError(f"unsupported fingerprint digest {digest!r}") from None
    raw = cert.fingerprint(algorithm)
    return f"{digest}:" + ":".join(f"{b:02X}" for b in raw)


def private_key_matches(cert_pem: str | bytes, key_pem: str | bytes) -> bool:
    """True when *key_pem* is the private half of the leaf certificate's public key."""
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode()
    if isinstance(key_pem, str):
        key_pem = key_pem.encode()
    try:
        cert = load_leaf(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ParseError, ValueError, TypeError):
        return False
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    enc = serialization.Encoding.DER
    return cert.public_key().public_bytes(enc, spki) == key.public_key().public_bytes(enc, spki)


# ─── Internal ──────────────────────────────────────────────────────────────────


def _utc(cert: x509.Certificate, attr: str) -> datetime:
    # cryptography >= 42 exposes the *_utc variants (timezone-aware)
    try:
        return getattr(cert, f"{attr}_utc")
    except AttributeError:
        return getattr(cert, attr).replace(tzinfo=timezone.utc)


def _key_bits(cert: x509.Certificate) -> int:
    public_key = cert.public_key()
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return 256
    if isinstance(public_key, ed448.Ed448PublicKey):
        return 456
    return getattr(public_key, "key_size", 0)


def _san_dns_names(cert: x509.Certificate) -> tuple[str, ...]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    return tuple(ext.value.get_values_for_type(x509.DNSName))
