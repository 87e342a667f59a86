"""
Metrics registry — Prometheus exposition of inventory state and renewal counters.

The registry is a custom prometheus_client collector on its own
CollectorRegistry.  Inventory state lives in one immutable ``_View`` that
``update()`` swaps by reference; ``collect()`` grabs that reference once, so
a scrape sees exactly one completed snapshot even while an update is running.
Counters are copied under a lock before rendering.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterator, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from monitor.models import InventorySnapshot, RenewalOutcome, RenewalStatus, StatusTier

logger = logging.getLogger(__name__)

NAMESPACE = "certmon"


@dataclass(frozen=True)
class _View:
    snapshot: Optional[InventorySnapshot]
    backend_reachable: Optional[bool]


class MetricsRegistry:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._view = _View(snapshot=None, backend_reachable=None)
        self._view_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._succeeded: dict[str, int] = defaultdict(int)
        self._failed: dict[str, int] = defaultdict(int)
        self._skips: dict[str, int] = defaultdict(int)
        self.registry.register(self)

    # ── Writers ───────────────────────────────────────────────────────────

    def update(self, snapshot: InventorySnapshot) -> None:
        """Publish *snapshot*; identities missing from it disappear from the exposition."""
        with self._view_lock:
            current = self._view
            if current.snapshot is not None and snapshot.version < current.snapshot.version:
                logger.debug(
                    "Ignoring stale snapshot #%d (current #%d)",
                    snapshot.version, current.snapshot.version,
                )
                return
            self._view = _View(snapshot=snapshot, backend_reachable=current.backend_reachable)

    def set_backend_reachable(self, reachable: bool) -> None:
        with self._view_lock:
            self._view = _View(snapshot=self._view.snapshot, backend_reachable=reachable)

    def record_outcome(self, outcome: RenewalOutcome) -> None:
        """Fold *outcome* into the lifetime counters.  Counters only ever grow."""
        with self._counter_lock:
            if outcome.status is RenewalStatus.SUCCEEDED:
                self._succeeded[outcome.role] += 1
            elif outcome.status is RenewalStatus.FAILED:
                self._failed[outcome.role] += 1
            else:
                self._skips[outcome.status.value] += 1

    # ── Readers ───────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> Optional[InventorySnapshot]:
        return self._view.snapshot

    def counters(self) -> dict[str, dict[str, int]]:
        with self._counter_lock:
            return {
                "succeeded": dict(self._succeeded),
                "failed": dict(self._failed),
                "skipped": dict(self._skips),
            }

    def render(self) -> str:
        """Prometheus text exposition of the current state."""
        return generate_latest(self.registry).decode("utf-8")

    def collect(self) -> Iterator[Metric]:
        view = self._view
        counters = self.counters()

        yield from self._inventory_metrics(view.snapshot)

        succeeded = CounterMetricFamily(
            f"{NAMESPACE}_renewals_succeeded", "Successful certificate renewals.", labels=["role"]
        )
        for role, value in sorted(counters["succeeded"].items()):
            succeeded.add_metric([role], value)
        yield succeeded

        failed = CounterMetricFamily(
            f"{NAMESPACE}_renewals_failed", "Failed certificate renewals.", labels=["role"]
        )
        for role, value in sorted(counters["failed"].items()):
            failed.add_metric([role], value)
        yield failed

        skips = CounterMetricFamily(
            f"{NAMESPACE}_renewal_skips", "Renewal triggers that did not reach the issuing backend.",
            labels=["status"],
        )
        for status, value in sorted(counters["skipped"].items()):
            skips.add_metric([status], value)
        yield skips

        reachable = GaugeMetricFamily(
            f"{NAMESPACE}_issuer_reachable", "1 when the issuing backend passed its last health check."
        )
        if view.backend_reachable is not None:
            reachable.add_metric([], 1 if view.backend_reachable else 0)
        yield reachable

    def _inventory_metrics(self, snapshot: Optional[InventorySnapshot]) -> Iterator[Metric]:
        days = GaugeMetricFamily(
            f"{NAMESPACE}_certificate_days_remaining",
            "Whole days until the certificate expires (negative once expired).",
            labels=["path", "common_name"],
        )
        not_after = GaugeMetricFamily(
            f"{NAMESPACE}_certificate_not_after_timestamp_seconds",
            "Certificate notAfter as a Unix timestamp.",
            labels=["path", "common_name"],
        )
        status = GaugeMetricFamily(
            f"{NAMESPACE}_certificate_status",
            "1 for the certificate's current status tier, 0 for the others.",
            labels=["path", "common_name", "status"],
        )
        tiers = GaugeMetricFamily(
            f"{NAMESPACE}_certificates", "Readable certificates per status tier.", labels=["status"]
        )
        unreadable = GaugeMetricFamily(
            f"{NAMESPACE}_artifact_unreadable",
            "Artifacts that could not be read or parsed in the last scan.",
            labels=["path", "kind"],
        )
        unreadable_total = GaugeMetricFamily(
            f"{NAMESPACE}_unreadable_artifacts", "Number of unreadable or malformed artifacts in the last scan."
        )
        duration = GaugeMetricFamily(
            f"{NAMESPACE}_last_scan_duration_seconds", "Wall-clock duration of the last completed scan."
        )
        artifacts = GaugeMetricFamily(
            f"{NAMESPACE}_scan_artifacts", "Artifacts examined by the last completed scan."
        )
        version = GaugeMetricFamily(
            f"{NAMESPACE}_snapshot_version", "Sequence number of the published inventory snapshot."
        )
        taken_at = GaugeMetricFamily(
            f"{NAMESPACE}_last_scan_timestamp_seconds", "Unix time the last completed scan started."
        )

        if snapshot is not None:
            for cert in snapshot.certificates:
                rec = cert.record
                days.add_metric([rec.path, rec.common_name], cert.days_remaining)
                not_after.add_metric([rec.path, rec.common_name], rec.not_after.timestamp())
                for tier in StatusTier:
                    status.add_metric(
                        [rec.path, rec.common_name, tier.value.lower()], 1 if tier is cert.tier else 0
                    )
            for tier, count in snapshot.tier_counts().items():
                tiers.add_metric([tier.value.lower()], count)
            for failure in snapshot.failures:
                unreadable.add_metric([failure.path, failure.kind.value], 1)
            unreadable_total.add_metric([], len(snapshot.failures))
            duration.add_metric([], snapshot.duration_seconds)
            artifacts.add_metric([], snapshot.artifact_count)
            version.add_metric([], snapshot.version)
            taken_at.add_metric([], snapshot.taken_at.timestamp())

        yield from (days, not_after, status, tiers, unreadable, unreadable_total,
                    duration, artifacts, version, taken_at)

