"""
Tests for the Prometheus metrics registry.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone

from prometheus_client.parser import text_string_to_metric_families

from monitor.metrics import MetricsRegistry
from monitor.models import InventorySnapshot, RenewalOutcome, RenewalStatus
from monitor.scanner import InventoryScanner
from tests.conftest import write_cert


def _samples(text: str) -> dict[tuple[str, tuple], float]:
    """Flatten an exposition into {(sample_name, sorted label items): value}."""
    out = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            out[(sample.name, tuple(sorted(sample.labels.items())))] = sample.value
    return out


def _value(text: str, name: str, **labels) -> float | None:
    return _samples(text).get((name, tuple(sorted(labels.items()))))


def _outcome(status: RenewalStatus, role: str = "web") -> RenewalOutcome:
    return RenewalOutcome(
        path="/etc/ssl/a.pem",
        common_name="a.example.com",
        role=role,
        status=status,
        timestamp=datetime.now(timezone.utc),
    )


class TestInventoryGauges:
    def test_empty_registry_renders(self):
        text = MetricsRegistry().render()
        assert "certmon_certificate_days_remaining" in text
        assert _value(text, "certmon_snapshot_version") is None

    def test_snapshot_is_exposed(self, cert_dir):
        path = write_cert(cert_dir / "crit.pem", common_name="crit.example.com", days=5.5)
        (cert_dir / "bad.pem").write_text("garbage")
        snap = InventoryScanner([cert_dir]).scan()

        metrics = MetricsRegistry()
        metrics.update(snap)
        text = metrics.render()

        ident = {"path": str(path), "common_name": "crit.example.com"}
        assert _value(text, "certmon_certificate_days_remaining", **ident) == 5
        assert _value(text, "certmon_certificate_status", status="critical", **ident) == 1
        assert _value(text, "certmon_certificate_status", status="healthy", **ident) == 0
        assert _value(text, "certmon_certificates", status="critical") == 1
        assert _value(text, "certmon_certificates", status="healthy") == 0
        assert _value(text, "certmon_unreadable_artifacts") == 1
        assert _value(
            text, "certmon_artifact_unreadable", path=str(cert_dir / "bad.pem"), kind="malformed"
        ) == 1
        assert _value(text, "certmon_scan_artifacts") == 2
        assert _value(text, "certmon_snapshot_version") == snap.version

        not_after = _value(text, "certmon_certificate_not_after_timestamp_seconds", **ident)
        assert abs(not_after - snap.certificates[0].record.not_after.timestamp()) < 1

    def test_removed_identity_disappears(self, cert_dir):
        gone = write_cert(cert_dir / "gone.pem", common_name="gone.example.com")
        write_cert(cert_dir / "stays.pem", common_name="stays.example.com")
        scanner = InventoryScanner([cert_dir])
        metrics = MetricsRegistry()

        metrics.update(scanner.scan())
        assert str(gone) in metrics.render()

        gone.unlink()
        metrics.update(scanner.scan())
        text = metrics.render()
        assert str(gone) not in text
        assert "stays.example.com" in text

    def test_stale_snapshot_ignored(self):
        now = datetime.now(timezone.utc)
        metrics = MetricsRegistry()
        metrics.update(InventorySnapshot(version=5, taken_at=now, duration_seconds=0.1))
        metrics.update(InventorySnapshot(version=3, taken_at=now, duration_seconds=0.1))
        assert metrics.snapshot.version == 5

    def test_backend_reachability_gauge(self):
        metrics = MetricsRegistry()
        assert _value(metrics.render(), "certmon_issuer_reachable") is None
        metrics.set_backend_reachable(False)
        assert _value(metrics.render(), "certmon_issuer_reachable") == 0
        metrics.set_backend_reachable(True)
        assert _value(metrics.render(), "certmon_issuer_reachable") == 1


class TestCounters:
    def test_outcomes_are_counted_by_role_and_status(self):
        metrics = MetricsRegistry()
        metrics.record_outcome(_outcome(RenewalStatus.SUCCEEDED, "web"))
        metrics.record_outcome(_outcome(RenewalStatus.SUCCEEDED, "web"))
        metrics.record_outcome(_outcome(RenewalStatus.FAILED, "internal"))
        metrics.record_outcome(_outcome(RenewalStatus.IN_PROGRESS))
        metrics.record_outcome(_outcome(RenewalStatus.SKIPPED))

        text = metrics.render()
        assert _value(text, "certmon_renewals_succeeded_total", role="web") == 2
        assert _value(text, "certmon_renewals_failed_total", role="internal") == 1
        assert _value(text, "certmon_renewal_skips_total", status="IN_PROGRESS") == 1
        assert _value(text, "certmon_renewal_skips_total", status="SKIPPED") == 1

    def test_counters_survive_snapshot_updates(self, cert_dir):
        write_cert(cert_dir / "a.pem")
        scanner = InventoryScanner([cert_dir])
        metrics = MetricsRegistry()
        metrics.record_outcome(_outcome(RenewalStatus.SUCCEEDED))
        for _ in range(3):
            metrics.update(scanner.scan())
        assert metrics.counters()["succeeded"] == {"web": 1}

    def test_counters_never_decrease(self):
        metrics = MetricsRegistry()
        seen = []
        for status in [RenewalStatus.SUCCEEDED, RenewalStatus.FAILED] * 5:
            metrics.record_outcome(_outcome(status))
            counts = metrics.counters()
            seen.append(counts["succeeded"].get("web", 0) + counts["failed"].get("web", 0))
        assert seen == sorted(seen)
        assert seen[-1] == 10


def test_scrape_during_updates_sees_consistent_snapshot(cert_dir):
    for i in range(5):
        write_cert(cert_dir / f"c{i}.pem", common_name=f"c{i}.example.com")
    snap_full = InventoryScanner([cert_dir]).scan()
    now = datetime.now(timezone.utc)

    metrics = MetricsRegistry()
    stop = threading.Event()
    errors: list[str] = []

    def writer():
        version = snap_full.version
        while not stop.is_set():
            version += 1
            if version % 2:
                metrics.update(InventorySnapshot(
                    version=version, taken_at=now, duration_seconds=0.0,
                    certificates=snap_full.certificates,
                ))
            else:
                metrics.update(InventorySnapshot(version=version, taken_at=now, duration_seconds=0.0))

    thread = threading.Thread(target=writer)
    thread.start()
    try:
        for _ in range(50):
            text = metrics.render()
            samples = _samples(text)
            rows = [k for k in samples if k[0] == "certmon_certificate_days_remaining"]
            healthy = samples.get(("certmon_certificates", (("status", "healthy"),)))
            if healthy is not None and len(rows) != healthy:
                errors.append(f"{len(rows)} rows vs healthy={healthy}")
    finally:
        stop.set()
        thread.join()

    assert errors == []
