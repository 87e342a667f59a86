"""
HashiCorp Vault PKI client — the issuing backend the renewal coordinator talks to.

This client is intentionally **stateless** beyond its HTTP session: every
call is a single bounded request, which keeps it easy to test with mocked
HTTP and easy to replace with an in-memory fake.

Vault endpoints used
--------------------
* ``POST /v1/<mount>/issue/<role>``  — issue a certificate + private key
* ``POST /v1/<mount>/revoke``        — revoke a superseded serial
* ``GET  /v1/sys/health``            — reachability; sealed or uninitialised
  counts as unreachable because it cannot issue
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import requests

if TYPE_CHECKING:
    from config import Settings

logger = logging.getLogger(__name__)

# 200 active, 429 unsealed standby, 472 DR secondary, 473 performance standby
_HEALTHY_STATUSES = {200, 429, 472, 473}


class IssuingError(Exception):
    """Raised when the issuing backend refuses or fails a request."""

    def __init__(self, status_code: int, errors: list[str]) -> None:
        self.status_code = status_code
        self.errors = errors
        detail = "; ".join(errors) or "no error detail"
        super().__init__(f"Vault {status_code}: {detail}")


@dataclass(frozen=True)
class IssuedCertificate:
    certificate: str
    private_key: str
    serial_number: str
    ca_chain: list[str] = field(default_factory=list)


class IssuingBackend(Protocol):
    def issue(self, role: str, common_name: str, ttl: str) -> IssuedCertificate: ...

    def health_check(self) -> bool: ...

    def revoke(self, serial_number: str) -> None: ...


class VaultPkiClient:
    """Issues and revokes certificates through Vault's PKI secrets engine."""

    def __init__(
        self,
        address: str,
        token: str,
        mount: str = "pki",
        namespace: str = "",
        timeout: float = 10.0,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.address = address.rstrip("/")
        self.mount = mount.strip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "cert-lifecycle-monitor/1.0"})
        if token:
            self._session.headers["X-Vault-Token"] = token
        if namespace:
            self._session.headers["X-Vault-Namespace"] = namespace

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Issuance ──────────────────────────────────────────────────────────

    def issue(self, role: str, common_name: str, ttl: str) -> IssuedCertificate:
        """POST /issue/<role> and return the certificate, key, chain and serial."""
        body = self._request(
            "POST",
            f"{self.mount}/issue/{role}",
            json={"common_name": common_name, "ttl": ttl},
        )
        data = body.get("data") or {}
        try:
            certificate = data["certificate"]
            private_key = data["private_key"]
        except KeyError as exc:
            raise IssuingError(0, [f"issue response missing {exc.args[0]!r}"]) from None

        chain = data.get("ca_chain") or ([data["issuing_ca"]] if data.get("issuing_ca") else [])
        return IssuedCertificate(
            certificate=certificate,
            private_key=private_key,
            serial_number=data.get("serial_number", ""),
            ca_chain=list(chain),
        )

    def revoke(self, serial_number: str) -> None:
        """POST /revoke for *serial_number* (colon-separated or plain hex)."""
        self._request("POST", f"{self.mount}/revoke", json={"serial_number": serial_number})

    # ── Health ────────────────────────────────────────────────────────────

    def health_check(self) -> bool:
        """True when Vault answers and is initialised and unsealed."""
        try:
            resp = self._session.get(f"{self.address}/v1/sys/health", timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Vault health check failed: %s", exc)
            return False
        if resp.status_code not in _HEALTHY_STATUSES:
            logger.warning("Vault health check returned HTTP %d", resp.status_code)
            return False
        return True

    # ── Internal ──────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.address}/v1/{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise IssuingError(0, [f"{type(exc).__name__}: {exc}"]) from exc

        if not resp.ok:
            try:
                errors = resp.json().get("errors") or []
            except ValueError:
                errors = [resp.text]
            raise IssuingError(resp.status_code, [str(e) for e in errors])

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise IssuingError(resp.status_code, [f"invalid JSON response: {exc}"]) from exc


def make_client(settings: "Settings") -> VaultPkiClient:
    """Create a VaultPkiClient from application settings."""
    return VaultPkiClient(
        address=settings.VAULT_ADDR,
        token=settings.VAULT_TOKEN,
        mount=settings.VAULT_PKI_MOUNT,
        namespace=settings.VAULT_NAMESPACE,
        timeout=settings.VAULT_TIMEOUT_SECONDS,
        ca_bundle=settings.VAULT_CA_BUNDLE,
        insecure=settings.VAULT_INSECURE,
    )
