"""
Certificate Lifecycle Monitor — CLI entry point.

Usage:
  python main.py --scan                      # Report inventory health and exit
  python main.py --once                      # One scan + renewal cycle, then exit
  python main.py --daemon                    # Scan every SCAN_INTERVAL_SECONDS, serve /metrics
  python main.py --once --locations /etc/ssl/app /etc/ssl/api
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import structlog
from pydantic import ValidationError

log = logging.getLogger(__name__)


# ── Logging setup ─────────────────────────────────────────────────────────────


def configure_logging(level: str = "INFO") -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def load_settings(locations: list[str] | None = None):
    """Build settings, exiting with status 1 when the configuration is invalid."""
    from config import Settings

    overrides = {"SCAN_LOCATIONS": locations} if locations else {}
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        log.error("Invalid configuration — refusing to start:\n%s", exc)
        sys.exit(1)


# ── Modes ─────────────────────────────────────────────────────────────────────


def run_scan(settings) -> int:
    """Scan and classify without renewing; print one line per artifact."""
    from monitor.scanner import InventoryScanner

    scanner = InventoryScanner(
        locations=settings.SCAN_LOCATIONS,
        warning_days=settings.WARNING_DAYS,
        critical_days=settings.CRITICAL_DAYS,
        patterns=settings.SCAN_PATTERNS,
        read_timeout=settings.SCAN_READ_TIMEOUT_SECONDS,
        digest=settings.FINGERPRINT_DIGEST,
    )
    snapshot = scanner.scan()

    print(f"\n{'=' * 72}\nCertificate Inventory (scan #{snapshot.version})\n{'=' * 72}")
    for cert in sorted(snapshot.certificates, key=lambda c: c.days_remaining):
        rec = cert.record
        print(
            f"{cert.tier.value:<9} {cert.days_remaining:>6}d  "
            f"{rec.not_after:%Y-%m-%d}  {rec.common_name or '(no CN)':<32} {rec.path}"
        )
    for failure in snapshot.failures:
        print(f"{'UNREADABLE':<9} {'':>7}  {'':10}  {failure.kind.value:<32} {failure.path} ({failure.detail})")
    print("=" * 72)
    return 0


def run_once(settings) -> int:
    """Execute one full cycle, wait for renewals, and return a process exit code."""
    from monitor.daemon import build_monitor
    from monitor.models import RenewalStatus

    monitor = build_monitor(settings)
    try:
        report = monitor.run_cycle(wait_for_renewals=True)
    finally:
        monitor.shutdown(grace_seconds=0)

    renewed = [o.path for o in report.outcomes if o.status is RenewalStatus.SUCCEEDED]
    failed = [o.path for o in report.outcomes if o.status is RenewalStatus.FAILED]
    log.info("Run complete — renewed: %s | failed: %s", renewed or "none", failed or "none")
    return 1 if failed else 0


def run_daemon(settings) -> int:
    """Run scan cycles on the configured interval until SIGTERM/SIGINT."""
    from monitor.daemon import build_monitor

    monitor = build_monitor(settings)
    stop = threading.Event()

    def _stop(signum, _frame) -> None:
        log.info("Received %s — shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    monitor.run_forever(stop)
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Certificate Lifecycle Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --scan
  python main.py --once
  python main.py --daemon
  python main.py --once --locations /etc/ssl/app /etc/ssl/api
        """,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--scan", action="store_true", help="Report inventory health and exit (no renewal)")
    mode.add_argument("--once", action="store_true", help="Run one scan/renew cycle and exit")
    mode.add_argument("--daemon", action="store_true", help="Run cycles every SCAN_INTERVAL_SECONDS and serve metrics")
    parser.add_argument(
        "--locations",
        nargs="+",
        metavar="PATH",
        help="Override SCAN_LOCATIONS for this run",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (DEBUG, INFO, ...)")

    args = parser.parse_args(argv)

    if not (args.scan or args.once or args.daemon):
        parser.print_help()
        return 1

    configure_logging(args.log_level or "INFO")
    settings = load_settings(args.locations)
    if not args.log_level:
        configure_logging(settings.LOG_LEVEL)

    if args.scan:
        return run_scan(settings)
    if args.once:
        return run_once(settings)
    return run_daemon(settings)


if __name__ == "__main__":
    sys.exit(main())
