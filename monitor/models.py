"""
Value types shared by the scanner, renewal coordinator and metrics registry.

Everything here is immutable:
  - CertificateRecord (certs/reader.py) is rebuilt from disk on every scan.
  - InventorySnapshot is produced once per scan and superseded, never edited.
  - RenewalOutcome is appended to history and folded into counters.
"""
from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from certs.reader import CertificateRecord, ParseErrorKind


class StatusTier(str, enum.Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    EXPIRED = "EXPIRED"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def at_least(self, other: "StatusTier") -> bool:
        return self.severity >= other.severity


_SEVERITY = {
    StatusTier.HEALTHY: 0,
    StatusTier.WARNING: 1,
    StatusTier.CRITICAL: 2,
    StatusTier.EXPIRED: 3,
}


class RenewalStatus(str, enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    IN_PROGRESS = "IN_PROGRESS"


@dataclass(frozen=True)
class ClassifiedCertificate:
    record: CertificateRecord
    tier: StatusTier
    days_remaining: int


@dataclass(frozen=True)
class ScanFailure:
    path: str
    kind: ParseErrorKind
    detail: str


@dataclass(frozen=True)
class InventorySnapshot:
    version: int
    taken_at: datetime
    duration_seconds: float
    certificates: tuple[ClassifiedCertificate, ...] = ()
    failures: tuple[ScanFailure, ...] = ()

    @property
    def artifact_count(self) -> int:
        return len(self.certificates) + len(self.failures)

    def tier_counts(self) -> dict[StatusTier, int]:
        counts = Counter(c.tier for c in self.certificates)
        return {tier: counts.get(tier, 0) for tier in StatusTier}

    def renewal_candidates(self, min_tier: StatusTier) -> list[ClassifiedCertificate]:
        """Certificates at or above *min_tier*, most urgent first."""
        due = [c for c in self.certificates if c.tier.at_least(min_tier)]
        return sorted(due, key=lambda c: c.days_remaining)


@dataclass(frozen=True)
class RenewalOutcome:
    path: str
    common_name: str
    role: str
    status: RenewalStatus
    timestamp: datetime
    cause: str = ""
    old_serial: str = ""
    new_serial: Optional[str] = None
    new_not_after: Optional[datetime] = None


@dataclass(frozen=True)
class CycleReport:
    """Summary of one scan → classify → renew cycle."""
    snapshot: InventorySnapshot
    backend_reachable: bool
    submitted: tuple[str, ...] = ()
    outcomes: tuple[RenewalOutcome, ...] = field(default_factory=tuple)

    def count(self, status: RenewalStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)
