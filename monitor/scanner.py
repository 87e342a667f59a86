"""
Inventory scanner — walks the configured locations and builds one
InventorySnapshot per call.

A bad artifact never aborts the scan: read/parse problems become ScanFailure
entries (visible as "unreadable" metrics) and the walk continues.
"""
from __future__ import annotations

import fnmatch
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Sequence

from certs.reader import CertificateRecord, ParseError, ParseErrorKind, read_artifact
from monitor.classifier import days_remaining, tier_for_days, validate_thresholds
from monitor.models import ClassifiedCertificate, InventorySnapshot, ScanFailure
from storage.filesystem import COMPANION_PATTERNS

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS = ("*.pem", "*.crt")


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class InventoryScanner:
    def __init__(
        self,
        locations: Sequence[str | Path],
        warning_days: int = 30,
        critical_days: int = 7,
        patterns: Iterable[str] = DEFAULT_PATTERNS,
        exclude: Iterable[str] = COMPANION_PATTERNS,
        read_timeout: float = 10.0,
        digest: str = "sha256",
        max_readers: int = 8,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        validate_thresholds(warning_days, critical_days)
        self.locations = [Path(p) for p in locations]
        self.warning_days = warning_days
        self.critical_days = critical_days
        self.patterns = tuple(patterns)
        self.exclude = tuple(exclude)
        self.read_timeout = read_timeout
        self.digest = digest
        self.max_readers = max_readers
        self._clock = clock
        self._version = 0
        self._version_lock = threading.Lock()
        self._hung: dict[str, Future] = {}
        self._hung_lock = threading.Lock()

    # ── Discovery ─────────────────────────────────────────────────────────

    def discover(self) -> tuple[list[Path], list[ScanFailure]]:
        """
        Expand locations into candidate artifact paths.

        Files are taken as-is; directories are walked recursively.  A location
        that cannot be listed is returned as an UNREADABLE failure.
        """
        found: dict[str, Path] = {}
        failures: list[ScanFailure] = []
        for location in self.locations:
            if location.is_file():
                found.setdefault(str(location), location)
                continue
            if not location.is_dir():
                failures.append(
                    ScanFailure(str(location), ParseErrorKind.UNREADABLE, "location does not exist")
                )
                continue
            try:
                for path in sorted(location.rglob("*")):
                    if path.is_file() and self._wanted(path.name):
                        found.setdefault(str(path), path)
            except OSError as exc:
                failures.append(ScanFailure(str(location), ParseErrorKind.UNREADABLE, str(exc)))
        return list(found.values()), failures

    def _wanted(self, name: str) -> bool:
        if name.startswith("."):
            return False  # hidden files and in-flight temp files
        if any(fnmatch.fnmatch(name, pat) for pat in self.exclude):
            return False
        return any(fnmatch.fnmatch(name, pat) for pat in self.patterns)

    # ── Scan ──────────────────────────────────────────────────────────────

    def scan(self) -> InventorySnapshot:
        """Read, parse and classify every artifact; return a fresh snapshot."""
        started = time.monotonic()
        now = self._clock()
        paths, failures = self.discover()

        certificates: list[ClassifiedCertificate] = []
        for path, result in self._read_all(paths):
            if isinstance(result, ParseError):
                logger.warning("  %s → %s: %s", path, result.kind.value, result.detail)
                failures.append(ScanFailure(str(path), result.kind, result.detail))
                continue
            days = days_remaining(result.not_after, now)
            tier = tier_for_days(days, self.warning_days, self.critical_days)
            logger.debug(
                "  %s → %s expires %s (%d days) — %s",
                path, result.common_name or "(no CN)",
                result.not_after.strftime("%Y-%m-%d"), days, tier.value,
            )
            certificates.append(ClassifiedCertificate(record=result, tier=tier, days_remaining=days))

        with self._version_lock:
            self._version += 1
            version = self._version

        snapshot = InventorySnapshot(
            version=version,
            taken_at=now,
            duration_seconds=time.monotonic() - started,
            certificates=tuple(certificates),
            failures=tuple(failures),
        )
        logger.info(
            "Scan #%d: %d artifact(s), %d readable, %d unreadable in %.3fs",
            version, snapshot.artifact_count, len(certificates), len(failures),
            snapshot.duration_seconds,
        )
        return snapshot

    def _read_all(self, paths: list[Path]) -> list[tuple[Path, CertificateRecord | ParseError]]:
        """
        Read artifacts on a small pool; reads still pending after read_timeout
        are UNREADABLE.

        A read that is still running when the scan gives up cannot be
        interrupted.  Its path is remembered until that read returns, and
        later scans report it UNREADABLE without starting another reader, so
        a hung mount costs at most one thread per artifact.
        """
        results: list[tuple[Path, CertificateRecord | ParseError]] = []
        to_read: list[Path] = []
        with self._hung_lock:
            for path in paths:
                if str(path) in self._hung:
                    results.append((path, ParseError(
                        ParseErrorKind.UNREADABLE, str(path), "previous read still pending",
                    )))
                else:
                    to_read.append(path)
        if not to_read:
            return results

        pool = ThreadPoolExecutor(
            max_workers=min(self.max_readers, len(to_read)), thread_name_prefix="cert-read"
        )
        try:
            futures = {pool.submit(read_artifact, p, self.digest): p for p in to_read}
            wait(futures, timeout=self.read_timeout)
            for future, path in futures.items():
                if not future.done():
                    if not future.cancel():
                        self._track_hung(path, future)
                    results.append((path, ParseError(
                        ParseErrorKind.UNREADABLE, str(path),
                        f"read timed out after {self.read_timeout}s",
                    )))
                    continue
                try:
                    results.append((path, future.result()))
                except ParseError as exc:
                    results.append((path, exc))
                except Exception as exc:
                    results.append((path, ParseError(ParseErrorKind.MALFORMED, str(path), str(exc))))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        with self._hung_lock:
            abandoned = len(self._hung)
        if abandoned:
            logger.warning("%d reader thread(s) still blocked on earlier reads", abandoned)
        return results

    def _track_hung(self, path: Path, future: Future) -> None:
        key = str(path)
        with self._hung_lock:
            self._hung[key] = future

        def _forget(done: Future) -> None:
            with self._hung_lock:
                if self._hung.get(key) is done:
                    del self._hung[key]
            logger.info("Abandoned read of %s has returned", key)

        future.add_done_callback(_forget)

    def pending_reads(self) -> list[str]:
        """Paths whose abandoned read has not returned yet."""
        with self._hung_lock:
            return sorted(self._hung)
