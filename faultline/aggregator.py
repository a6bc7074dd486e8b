"""
Result aggregation.

Samples are folded into per-phase statistics once, when a phase ends.
Phase results are folded into the scenario result when the run ends.
SloTracker flags samples that exceed the scenario's thresholds.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from faultline.models import (
    METRIC_NAMES, InjectionOutcome, MetricsSample, MetricStats, PhaseResult, PhaseState,
    ScenarioResult, ScenarioState, SloViolation
)


logger = logging.getLogger(__name__)


def percentile(sorted_values: Sequence[float], fraction: float) -> float:
    """Nearest-rank percentile of an ascending sequence (0.0 when empty)."""
    if not sorted_values:
        return 0.0
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


def summarize(values: Iterable[float]) -> Optional[MetricStats]:
    """count/min/mean/max/p50/p95/p99 of the values, or None when there are none."""
    ordered = sorted(values)
    if not ordered:
        return None
    return MetricStats(
        count=len(ordered),
        min=ordered[0],
        mean=sum(ordered) / len(ordered),
        max=ordered[-1],
        p50=percentile(ordered, 0.50),
        p95=percentile(ordered, 0.95),
        p99=percentile(ordered, 0.99),
    )


class SloTracker:
    """Checks samples against per-metric maximums."""

    def __init__(self, thresholds: Optional[Mapping[str, float]] = None):
        self.thresholds: Dict[str, float] = dict(thresholds or {})
        self.violations: List[SloViolation] = []

    def add_slo(self, metric: str, threshold: float):
        if metric not in METRIC_NAMES:
            raise ValueError(f"unknown metric '{metric}'")
        self.thresholds[metric] = threshold

    def check(self, samples: Iterable[MetricsSample]) -> List[SloViolation]:
        """Record and return the violations found in samples."""
        found = []
        for sample in samples:
            for metric, threshold in self.thresholds.items():
                value = sample.value(metric)
                if value is not None and value > threshold:
                    found.append(SloViolation(metric, sample.target_id, threshold, value, sample.timestamp))
        self.violations.extend(found)
        return found

    def violation_count(self) -> int:
        return len(self.violations)

    def violation_rate(self, total_samples: int) -> float:
        if total_samples == 0:
            return 0.0
        return len(self.violations) / total_samples


class ResultAggregator:
    """Builds PhaseResult and ScenarioResult records from samples and outcomes."""

    def __init__(self, samples: List[MetricsSample], slo: Optional[SloTracker] = None):
        """
        Initialize aggregator.

        Args:
            samples: The sampler's append-only sample list (read, never modified)
            slo: Optional SLO tracker applied to each phase's samples
        """
        self.samples = samples
        self.slo = slo
        self.phase_results: List[PhaseResult] = []

    def phase_stats(self, phase_name: str) -> Dict[str, Dict[str, MetricStats]]:
        """Statistics per target and metric for the samples tagged with a phase."""
        by_target: Dict[str, Dict[str, List[float]]] = {}
        for sample in self.samples:
            if sample.phase != phase_name:
                continue
            metrics = by_target.setdefault(sample.target_id, {})
            for metric in METRIC_NAMES:
                value = sample.value(metric)
                if value is not None:
                    metrics.setdefault(metric, []).append(value)

        stats: Dict[str, Dict[str, MetricStats]] = {}
        for target_id, metrics in by_target.items():
            stats[target_id] = {}
            for metric, values in metrics.items():
                summary = summarize(values)
                if summary is not None:
                    stats[target_id][metric] = summary
        return stats

    def fold_phase(
        self,
        name: str,
        index: int,
        started_at: datetime,
        ended_at: datetime,
        outcomes: Sequence[InjectionOutcome],
        interrupted: bool = False
    ) -> PhaseResult:
        """Freeze the result of a finished (or interrupted) phase."""
        phase_samples = [sample for sample in self.samples if sample.phase == name]
        violations = tuple(self.slo.check(phase_samples)) if self.slo else ()
        if violations:
            logger.warning(f"Phase '{name}': {len(violations)} SLO violation(s)")

        result = PhaseResult(
            name=name,
            index=index,
            state=PhaseState.COMPLETED,
            started_at=started_at,
            ended_at=ended_at,
            interrupted=interrupted,
            outcomes=tuple(outcomes),
            stats=self.phase_stats(name),
            sample_count=len(phase_samples),
            slo_violations=violations
        )
        self.phase_results.append(result)
        return result

    def fold_scenario(
        self,
        scenario_name: str,
        state: ScenarioState,
        started_at: datetime,
        ended_at: datetime,
        skipped_phases: Sequence[str] = (),
        leaked_handles: Sequence[str] = (),
        sampling_gaps: int = 0,
        error: Optional[str] = None
    ) -> ScenarioResult:
        """Freeze the result of the whole run."""
        return ScenarioResult(
            scenario_name=scenario_name,
            state=state,
            started_at=started_at,
            ended_at=ended_at,
            phase_results=tuple(self.phase_results),
            skipped_phases=tuple(skipped_phases),
            leaked_handles=tuple(leaked_handles),
            sampling_gaps=sampling_gaps,
            error=error
        )
