"""End-of-run report: per-phase summaries, security probes and JSON export."""

import json
import logging
import os
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import FundingReport, SecurityProbe, Severity

logger = logging.getLogger(__name__)


@dataclass
class PhaseSummary:
    """Aggregated outcome of one agent phase."""
    name: str
    total: int = 0
    succeeded: int = 0
    rejected: int = 0
    failed: int = 0
    gas_used: int = 0
    windows: List[int] = field(default_factory=list)
    failure_reasons: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    duration: float = 0.0

    def record(self, success: bool, reason: Optional[str] = None, gas_used: int = 0,
               rejected: bool = False) -> None:
        self.total += 1
        self.gas_used += gas_used
        if success:
            self.succeeded += 1
            return
        if rejected:
            self.rejected += 1
        else:
            self.failed += 1
        self.failure_reasons[reason or 'unknown'] += 1

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.succeeded / self.total) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'succeeded': self.succeeded,
            'rejected': self.rejected,
            'failed': self.failed,
            'success_rate': round(self.success_rate, 2),
            'gas_used': self.gas_used,
            'windows': list(self.windows),
            'failure_reasons': dict(self.failure_reasons),
            'duration_seconds': round(self.duration, 2),
        }


@dataclass
class RunReport:
    """Everything the orchestrator collected during one run."""
    mode: str
    network: str
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    funding: Optional[FundingReport] = None
    phases: Dict[str, PhaseSummary] = field(default_factory=dict)
    probes: List[SecurityProbe] = field(default_factory=list)
    elections: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None

    def phase(self, name: str) -> PhaseSummary:
        if name not in self.phases:
            self.phases[name] = PhaseSummary(name)
        return self.phases[name]

    @property
    def critical_probes(self) -> List[SecurityProbe]:
        return [p for p in self.probes if p.severity is Severity.CRITICAL]

    @property
    def total_gas_used(self) -> int:
        return sum(phase.gas_used for phase in self.phases.values())

    @property
    def duration(self) -> float:
        end = self.finished_at or time.time()
        return end - self.started_at

    def generate_report(self) -> str:
        """Render the report as text."""
        report = [
            "\n" + "=" * 70,
            "📊 SAFEVOTE BOT RUN RESULTS",
            "=" * 70,
            f"\n🌐 Network: {self.network}",
            f"🧭 Mode: {self.mode}",
            f"⏱️  Duration: {self.duration / 60:.1f} minutes",
        ]
        if self.cancelled:
            report.append("⚠️  Run was cancelled: results are partial")
        if self.error:
            report.append(f"❌ Run aborted: {self.error}")

        if self.funding is not None:
            report.extend([
                "\n💰 Funding:",
                f"   - Funded: {self.funding.successful}",
                f"   - Skipped (already funded): {self.funding.skipped}",
                f"   - Failed: {self.funding.failed}",
            ])

        for phase in self.phases.values():
            report.extend([
                f"\n📈 {phase.name.replace('_', ' ').title()}:",
                f"   - Total: {phase.total:,}",
                f"   - ✅ Succeeded: {phase.succeeded:,} ({phase.success_rate:.2f}%)",
                f"   - 🚫 Rejected: {phase.rejected:,}",
                f"   - ❌ Failed: {phase.failed:,}",
                f"   - ⛽ Gas used: {phase.gas_used:,}",
                f"   - Windows: {len(phase.windows)} {phase.windows}",
            ])
            if phase.failure_reasons:
                report.append("   ❗ Reasons:")
                for reason, count in sorted(phase.failure_reasons.items(), key=lambda x: -x[1]):
                    report.append(f"      - {reason}: {count}")

        if self.probes:
            passed = sum(1 for p in self.probes if p.passed is True)
            unknown = sum(1 for p in self.probes if p.passed is None)
            report.extend([
                "\n🔒 Security Tests:",
                f"   - ✅ Passed: {passed}/{len(self.probes)}",
                f"   - ❌ Failed: {len(self.critical_probes)}/{len(self.probes)}",
                f"   - ❓ Unknown: {unknown}/{len(self.probes)}",
            ])

        report.append("\n🎯 Assessment:")
        if self.critical_probes:
            report.append(f"   🚨 CRITICAL: {len(self.critical_probes)} security breach(es) detected!")
            for probe in self.critical_probes:
                report.append(f"      - {probe.voter_address} in {probe.election_uuid}: {probe.actual.value}")
        else:
            report.append("   ✅ No security breaches detected")
        report.append(f"   ⛽ Total gas used: {self.total_gas_used:,}")

        report.append("=" * 70 + "\n")
        return "\n".join(report)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': datetime.now().isoformat(),
            'mode': self.mode,
            'network': self.network,
            'duration_seconds': round(self.duration, 2),
            'cancelled': self.cancelled,
            'error': self.error,
            'funding': self.funding.to_dict() if self.funding else None,
            'phases': {name: phase.to_dict() for name, phase in self.phases.items()},
            'security': {
                'total': len(self.probes),
                'critical': len(self.critical_probes),
                'probes': [probe.to_dict() for probe in self.probes],
            },
            'elections': self.elections,
            'total_gas_used': self.total_gas_used,
        }


def save_results(report: RunReport, reports_dir: str) -> str:
    """Save the report as timestamped JSON and return the file path."""
    os.makedirs(reports_dir, exist_ok=True)
    filename = os.path.join(reports_dir, f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json")
    with open(filename, 'w') as f:
        json.dump(report.to_dict(), f, indent=2)
    logger.info(f"Detailed results saved to: {filename}")
    return filename
