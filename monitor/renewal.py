"""
Renewal coordinator — decides whether a classified certificate is renewed,
drives the issuing backend, validates what comes back and persists it.

Per-identity state machine::

    IDLE ──trigger──▶ RENEWING ──success/failure──▶ IDLE

The identity is the artifact path.  Each identity owns a lock that is
acquired without blocking: a second trigger while RENEWING observes
IN_PROGRESS instead of queueing up and issuing a duplicate certificate.
The lock is released in ``finally`` on every path.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature

from certs.reader import CertificateRecord, ParseError, load_leaf, parse_certificate, private_key_matches
from issuing.client import IssuedCertificate, IssuingBackend, IssuingError
from monitor.models import RenewalOutcome, RenewalStatus, StatusTier
from storage.filesystem import ArtifactStore, WriteError

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Raised when freshly issued material does not match what was requested."""


class RenewalCancelled(Exception):
    """Raised when the coordinator was cancelled while a renewal was in flight."""


@dataclass
class _IdentityState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_outcome: Optional[RenewalOutcome] = None


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class RenewalCoordinator:
    def __init__(
        self,
        backend: IssuingBackend,
        store: ArtifactStore,
        role_for: Callable[[str], str],
        ttl_for: Callable[[str], str],
        renew_at: StatusTier = StatusTier.CRITICAL,
        history_size: int = 100,
        revoke_superseded: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.backend = backend
        self.store = store
        self.role_for = role_for
        self.ttl_for = ttl_for
        self.renew_at = renew_at
        self.revoke_superseded = revoke_superseded
        self._clock = clock

        self._states: dict[str, _IdentityState] = {}
        self._states_lock = threading.Lock()
        self._renewed_this_cycle: set[tuple[str, str]] = set()
        self._renewed_lock = threading.Lock()
        self._history: deque[RenewalOutcome] = deque(maxlen=history_size)
        self._history_lock = threading.Lock()
        self._cancelled = threading.Event()

    # ── Cycle bookkeeping ─────────────────────────────────────────────────

    def begin_cycle(self) -> None:
        """Forget which (identity, serial) pairs were renewed in the previous cycle."""
        with self._renewed_lock:
            self._renewed_this_cycle.clear()

    def cancel(self) -> None:
        """Stop persisting results: renewals that finish from now on are FAILED."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def in_flight(self) -> list[str]:
        with self._states_lock:
            return sorted(path for path, st in self._states.items() if st.lock.locked())

    def history(self) -> list[RenewalOutcome]:
        with self._history_lock:
            return list(self._history)

    def last_outcome(self, path: str) -> Optional[RenewalOutcome]:
        with self._states_lock:
            state = self._states.get(path)
        return state.last_outcome if state else None

    # ── Renewal ───────────────────────────────────────────────────────────

    def needs_renewal(self, tier: StatusTier) -> bool:
        return tier.at_least(self.renew_at)

    def maybe_renew(self, record: CertificateRecord, tier: StatusTier) -> RenewalOutcome:
        """
        Renew *record* if its tier is at or past the renewal threshold.

        Never raises: every failure is folded into a FAILED outcome so one
        certificate cannot disturb the evaluation of the others.
        """
        role = self.role_for(record.common_name) if record.common_name else ""

        if not self.needs_renewal(tier):
            return self._outcome(record, role, RenewalStatus.SKIPPED, f"tier {tier.value} below {self.renew_at.value}")

        if not record.common_name:
            return self._finish(record, role, RenewalStatus.FAILED, "certificate has no common name")

        if not role:
            return self._finish(record, role, RenewalStatus.FAILED, f"no PKI role configured for {record.common_name}")

        if self._already_renewed(record):
            return self._finish(record, role, RenewalStatus.SKIPPED, "already renewed this cycle")

        if self.cancelled:
            return self._finish(record, role, RenewalStatus.SKIPPED, "coordinator is shutting down")

        state = self._state_for(record.path)
        if not state.lock.acquire(blocking=False):
            logger.info("Renewal for %s already in progress — skipping", record.path)
            return self._finish(record, role, RenewalStatus.IN_PROGRESS, "renewal already in progress")

        try:
            # A renewal of the same serial may have completed between the
            # check above and the acquire.
            if self._already_renewed(record):
                outcome = self._outcome(record, role, RenewalStatus.SKIPPED, "already renewed this cycle")
            else:
                outcome = self._renew(record, role)
        except Exception as exc:
            logger.exception("Unexpected error renewing %s", record.path)
            outcome = self._outcome(record, role, RenewalStatus.FAILED, f"unexpected error: {exc}")
        finally:
            state.lock.release()

        return self._finish_outcome(outcome)

    def _renew(self, record: CertificateRecord, role: str) -> RenewalOutcome:
        ttl = self.ttl_for(role)
        logger.info(
            "Renewing %s (CN=%s, serial=%s) via role %r, ttl=%s",
            record.path, record.common_name, record.serial_number, role, ttl,
        )
        try:
            issued = self.backend.issue(role, record.common_name, ttl)
            renewed = self._validate(record, issued)
            if self.cancelled:
                raise RenewalCancelled("shutdown in progress; discarding issued certificate")
            self.store.write_renewal(record.path, issued)
        except (IssuingError, ValidationError, WriteError, RenewalCancelled) as exc:
            logger.error("Renewal of %s failed: %s", record.path, exc)
            return self._outcome(record, role, RenewalStatus.FAILED, f"{type(exc).__name__}: {exc}")

        with self._renewed_lock:
            self._renewed_this_cycle.add((record.path, record.serial_number))

        logger.info(
            "Renewed %s — new serial %s, expires %s",
            record.path, renewed.serial_number, renewed.not_after.strftime("%Y-%m-%d"),
        )
        if self.revoke_superseded:
            self._revoke(record)

        return RenewalOutcome(
            path=record.path,
            common_name=record.common_name,
            role=role,
            status=RenewalStatus.SUCCEEDED,
            timestamp=self._clock(),
            old_serial=record.serial_number,
            new_serial=renewed.serial_number,
            new_not_after=renewed.not_after,
        )

    def _validate(self, record: CertificateRecord, issued: IssuedCertificate) -> CertificateRecord:
        try:
            renewed = parse_certificate(issued.certificate.encode(), record.path)
        except ParseError as exc:
            raise ValidationError(f"issued certificate is not valid PEM: {exc.detail}") from exc

        if renewed.common_name.casefold() != record.common_name.casefold():
            raise ValidationError(
                f"issued common name {renewed.common_name!r} does not match expected {record.common_name!r}"
            )
        if not private_key_matches(issued.certificate, issued.private_key):
            raise ValidationError("issued private key does not match issued certificate")
        self._verify_issuer(issued)
        if not renewed.not_after > record.not_after:
            raise ValidationError(
                f"issued notAfter {renewed.not_after.isoformat()} is not later than "
                f"current {record.not_after.isoformat()}"
            )
        return renewed

    @staticmethod
    def _verify_issuer(issued: IssuedCertificate) -> None:
        """The leaf must carry a valid signature from the first certificate of the returned chain."""
        if not issued.ca_chain:
            raise ValidationError("issuing backend returned no CA chain")
        try:
            leaf = load_leaf(issued.certificate.encode())
            issuer = load_leaf(issued.ca_chain[0].encode())
        except ParseError as exc:
            raise ValidationError(f"cannot load issued chain: {exc.detail}") from exc
        try:
            leaf.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature) as exc:
            raise ValidationError(
                f"issued certificate is not signed by {issuer.subject.rfc4514_string()}: {str(exc) or 'bad signature'}"
            ) from exc

    def _revoke(self, record: CertificateRecord) -> None:
        hex_serial = record.serial_number
        if len(hex_serial) % 2:
            hex_serial = "0" + hex_serial
        serial = ":".join(hex_serial[i:i + 2] for i in range(0, len(hex_serial), 2))
        try:
            self.backend.revoke(serial)
            logger.info("Revoked superseded serial %s for %s", serial, record.path)
        except IssuingError as exc:
            logger.warning("Could not revoke superseded serial %s for %s: %s", serial, record.path, exc)

    # ── Internal ──────────────────────────────────────────────────────────

    def _already_renewed(self, record: CertificateRecord) -> bool:
        with self._renewed_lock:
            return (record.path, record.serial_number) in self._renewed_this_cycle

    def _state_for(self, path: str) -> _IdentityState:
        with self._states_lock:
            state = self._states.get(path)
            if state is None:
                state = self._states[path] = _IdentityState()
            return state

    def _outcome(self, record: CertificateRecord, role: str, status: RenewalStatus, cause: str) -> RenewalOutcome:
        return RenewalOutcome(
            path=record.path,
            common_name=record.common_name,
            role=role,
            status=status,
            timestamp=self._clock(),
            cause=cause,
            old_serial=record.serial_number,
        )

    def _finish(self, record: CertificateRecord, role: str, status: RenewalStatus, cause: str) -> RenewalOutcome:
        return self._finish_outcome(self._outcome(record, role, status, cause))

    def _finish_outcome(self, outcome: RenewalOutcome) -> RenewalOutcome:
        with self._history_lock:
            self._history.append(outcome)
        if outcome.status is not RenewalStatus.IN_PROGRESS:
            self._state_for(outcome.path).last_outcome = outcome
        return outcome
