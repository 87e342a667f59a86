"""
Scheduler / daemon loop.

Each cycle:
  1. health-check the issuing backend (reachability gauge)
  2. scan → classify → publish the snapshot to the metrics registry
  3. hand every CRITICAL/EXPIRED certificate to the renewal pool
     (fire-and-continue; outcomes are recorded as they complete)

The metrics endpoint runs on its own threads for the process lifetime.
Renewals run on a bounded pool so a hung issuing call only occupies one
worker and never delays the next scan.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional

import schedule

from issuing.client import IssuingBackend, make_client
from monitor.metrics import MetricsRegistry
from monitor.models import CycleReport, InventorySnapshot, RenewalOutcome, StatusTier
from monitor.renewal import RenewalCoordinator
from monitor.scanner import InventoryScanner
from monitor.server import MetricsServer
from storage.filesystem import ArtifactStore

logger = logging.getLogger(__name__)


class CertificateMonitor:
    def __init__(
        self,
        scanner: InventoryScanner,
        coordinator: RenewalCoordinator,
        metrics: MetricsRegistry,
        backend: IssuingBackend,
        server: Optional[MetricsServer] = None,
        interval_seconds: int = 300,
        renewal_workers: int = 4,
        shutdown_grace_seconds: float = 30.0,
    ) -> None:
        self.scanner = scanner
        self.coordinator = coordinator
        self.metrics = metrics
        self.backend = backend
        self.server = server
        self.interval_seconds = interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds

        self._pool = ThreadPoolExecutor(max_workers=renewal_workers, thread_name_prefix="renewal")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._snapshot: Optional[InventorySnapshot] = None
        self._stopping = threading.Event()

    @property
    def snapshot(self) -> Optional[InventorySnapshot]:
        """The latest completed snapshot (never one that is still being built)."""
        return self._snapshot

    # ── One cycle ─────────────────────────────────────────────────────────

    def run_cycle(self, wait_for_renewals: bool = False) -> CycleReport:
        reachable = self._check_backend()
        self.metrics.set_backend_reachable(reachable)

        self.coordinator.begin_cycle()
        snapshot = self.scanner.scan()
        self._snapshot = snapshot
        self.metrics.update(snapshot)

        candidates = snapshot.renewal_candidates(self.coordinator.renew_at)
        submitted: list[Future] = []
        paths: list[str] = []
        for cert in candidates:
            if self._stopping.is_set():
                break
            logger.info(
                "  %s → %s (%d days) — queueing renewal",
                cert.record.path, cert.tier.value, cert.days_remaining,
            )
            try:
                submitted.append(self._submit(cert.record, cert.tier))
            except RuntimeError:
                break  # pool shut down mid-cycle
            paths.append(cert.record.path)

        counts = snapshot.tier_counts()
        logger.info(
            "Cycle #%d: healthy=%d warning=%d critical=%d expired=%d unreadable=%d renewals=%d backend=%s",
            snapshot.version,
            counts[StatusTier.HEALTHY], counts[StatusTier.WARNING],
            counts[StatusTier.CRITICAL], counts[StatusTier.EXPIRED],
            len(snapshot.failures), len(submitted),
            "up" if reachable else "down",
        )

        outcomes: tuple[RenewalOutcome, ...] = ()
        if wait_for_renewals and submitted:
            wait(submitted)
            outcomes = tuple(f.result() for f in submitted if not f.cancelled())

        return CycleReport(
            snapshot=snapshot,
            backend_reachable=reachable,
            submitted=tuple(paths),
            outcomes=outcomes,
        )

    def _submit(self, record, tier) -> Future:
        future = self._pool.submit(self._renew_and_record, record, tier)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._on_renewal_done)
        return future

    def _renew_and_record(self, record, tier) -> RenewalOutcome:
        outcome = self.coordinator.maybe_renew(record, tier)
        self.metrics.record_outcome(outcome)
        return outcome

    def _on_renewal_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Renewal task raised: %s", future.exception())

    def _check_backend(self) -> bool:
        try:
            return bool(self.backend.health_check())
        except Exception as exc:
            logger.warning("Issuing backend health check raised: %s", exc)
            return False

    # ── Daemon loop ───────────────────────────────────────────────────────

    def run_forever(self, stop_event: threading.Event) -> None:
        """Serve metrics and run cycles every interval until *stop_event* is set."""
        if self.server is not None:
            self.server.start()

        scheduler = schedule.Scheduler()
        scheduler.every(self.interval_seconds).seconds.do(self._scheduled_cycle)

        logger.info("Running initial scan immediately...")
        self._scheduled_cycle()

        logger.info("Entering schedule loop — scanning every %ds", self.interval_seconds)
        try:
            while not stop_event.is_set():
                scheduler.run_pending()
                idle = scheduler.idle_seconds
                stop_event.wait(timeout=1.0 if idle is None else min(1.0, max(idle, 0.05)))
        finally:
            scheduler.clear()
            self.shutdown()

    def _scheduled_cycle(self) -> None:
        if self._stopping.is_set():
            return
        try:
            self.run_cycle()
        except Exception as exc:
            logger.exception("Scheduled cycle failed: %s", exc)

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop accepting renewals, give in-flight ones *grace_seconds* to finish,
        then cancel the coordinator so stragglers release their lock without writing.
        """
        if self._stopping.is_set():
            return
        self._stopping.set()
        grace = self.shutdown_grace_seconds if grace_seconds is None else grace_seconds

        self._pool.shutdown(wait=False, cancel_futures=True)
        with self._pending_lock:
            pending = set(self._pending)
        if pending:
            logger.info("Waiting up to %.0fs for %d in-flight renewal(s)", grace, len(pending))
            _, not_done = wait(pending, timeout=grace)
            if not_done:
                logger.warning(
                    "Abandoning %d renewal(s) still in flight: %s",
                    len(not_done), ", ".join(self.coordinator.in_flight()) or "?",
                )
        self.coordinator.cancel()

        if self.server is not None:
            self.server.stop()
        logger.info("Certificate monitor stopped")


def build_monitor(settings, backend: Optional[IssuingBackend] = None) -> CertificateMonitor:
    """Wire scanner, coordinator, metrics and endpoint from application settings."""
    backend = backend or make_client(settings)
    scanner = InventoryScanner(
        locations=settings.SCAN_LOCATIONS,
        warning_days=settings.WARNING_DAYS,
        critical_days=settings.CRITICAL_DAYS,
        patterns=settings.SCAN_PATTERNS,
        read_timeout=settings.SCAN_READ_TIMEOUT_SECONDS,
        digest=settings.FINGERPRINT_DIGEST,
    )
    coordinator = RenewalCoordinator(
        backend=backend,
        store=ArtifactStore(),
        role_for=settings.role_for,
        ttl_for=settings.ttl_for,
        renew_at=StatusTier(settings.RENEW_AT_TIER),
        history_size=settings.RENEWAL_HISTORY_SIZE,
        revoke_superseded=settings.REVOKE_SUPERSEDED,
    )
    metrics = MetricsRegistry()
    server = MetricsServer(
        metrics, host=settings.METRICS_HOST, port=settings.METRICS_PORT, path=settings.METRICS_PATH
    )
    return CertificateMonitor(
        scanner=scanner,
        coordinator=coordinator,
        metrics=metrics,
        backend=backend,
        server=server,
        interval_seconds=settings.SCAN_INTERVAL_SECONDS,
        renewal_workers=settings.RENEWAL_WORKERS,
        shutdown_grace_seconds=settings.SHUTDOWN_GRACE_SECONDS,
    )
