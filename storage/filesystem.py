"""
PEM filesystem layout for managed certificate artifacts.

Two layouts are recognised, decided by the certificate's file name:

  <dir>/cert.pem              <dir>/<name>.pem  (or .crt)
  <dir>/privkey.pem  (0o600)  <dir>/<name>.key  (0o600)
  <dir>/chain.pem             <dir>/<name>.chain.pem
  <dir>/fullchain.pem

The first is the per-domain directory layout written by ACME-style tooling;
the second covers loose certificates dropped into a shared directory.

All writes go through storage.atomic: temp file + fsync + atomic rename,
certificate last, so the scanner never pairs a new key with an old cert.
"""
from __future__ import annotations

import logging
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from storage.atomic import atomic_write_many

if TYPE_CHECKING:
    from issuing.client import IssuedCertificate

logger = logging.getLogger(__name__)

# Companion files that live next to a certificate but are not themselves
# inventory entries.
COMPANION_PATTERNS = (
    "privkey.pem",
    "chain.pem",
    "fullchain.pem",
    "*.key",
    "*.chain.pem",
)

_KEY_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600


class WriteError(Exception):
    """Raised when renewed material could not be persisted.  Existing files are untouched."""


@dataclass(frozen=True)
class ArtifactPaths:
    certificate: Path
    private_key: Path
    chain: Path
    fullchain: Optional[Path] = None


def paths_for(cert_path: str | Path) -> ArtifactPaths:
    """Return the companion file paths for the certificate at *cert_path*."""
    cert = Path(cert_path)
    if cert.name == "cert.pem":
        return ArtifactPaths(
            certificate=cert,
            private_key=cert.with_name("privkey.pem"),
            chain=cert.with_name("chain.pem"),
            fullchain=cert.with_name("fullchain.pem"),
        )
    return ArtifactPaths(
        certificate=cert,
        private_key=cert.with_name(f"{cert.stem}.key"),
        chain=cert.with_name(f"{cert.stem}.chain.pem"),
    )


class ArtifactStore:
    """Persists renewed certificate material next to the artifact it replaces."""

    def write_renewal(self, cert_path: str | Path, issued: "IssuedCertificate") -> ArtifactPaths:
        """
        Write key, chain, optional fullchain and finally the certificate.

        Raises WriteError on any filesystem failure; in that case every temp
        file is removed and the previous artifacts are left byte-identical.
        """
        paths = paths_for(cert_path)
        cert_pem = _ensure_newline(issued.certificate)
        chain_pem = "".join(_ensure_newline(c) for c in issued.ca_chain)
        key_pem = _ensure_newline(issued.private_key)

        files: list[tuple[Path, bytes, Optional[int]]] = [
            (paths.private_key, key_pem.encode(), _KEY_MODE),
            (paths.chain, chain_pem.encode(), None),
        ]
        if paths.fullchain is not None:
            files.append((paths.fullchain, (cert_pem + chain_pem).encode(), None))
        files.append((paths.certificate, cert_pem.encode(), _existing_mode(paths.certificate)))

        try:
            atomic_write_many(files)
        except OSError as exc:
            raise WriteError(f"failed to write renewed artifacts for {paths.certificate}: {exc}") from exc

        logger.debug("Wrote renewed artifacts: %s", ", ".join(str(f[0]) for f in files))
        return paths


# ─── Internal ──────────────────────────────────────────────────────────────────


def _ensure_newline(pem: str) -> str:
    return pem if pem.endswith("\n") else pem + "\n"


def _existing_mode(path: Path) -> Optional[int]:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except OSError:
        return None
