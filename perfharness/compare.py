import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .benchmark import BenchmarkConfig, BenchmarkReport, BenchmarkRunner
from .device import DeviceDispatcher, Target

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 0.05
ESTIMATORS = ("min", "median", "mean")


class Verdict(Enum):
    IMPROVEMENT = "improvement"
    REGRESSION = "regression"
    INVARIANT = "invariant"


@dataclass(frozen=True)
class Comparison:
    baseline_time: float
    candidate_time: float
    estimator: str
    tolerance: float
    ratio: float
    verdict: Verdict

    @property
    def speedup(self) -> float:
        if self.candidate_time <= 0:
            return float("inf")
        return self.baseline_time / self.candidate_time

    def summary(self) -> str:
        return (
            f"{self.verdict.value}: {self.speedup:.2f}x speedup "
            f"({self.estimator} {self.baseline_time * 1e6:.2f}us -> "
            f"{self.candidate_time * 1e6:.2f}us, tolerance {self.tolerance:.0%})"
        )


def judge(
    baseline: BenchmarkReport,
    candidate: BenchmarkReport,
    tolerance: float = DEFAULT_TOLERANCE,
    estimator: str = "median",
) -> Comparison:
    if estimator not in ESTIMATORS:
        raise ValueError(f"estimator must be one of {ESTIMATORS}, got {estimator!r}")
    if tolerance < 0:
        raise ValueError(f"tolerance must be non-negative, got {tolerance}")
    baseline.raise_for_status()
    candidate.raise_for_status()

    baseline_time = getattr(baseline, estimator)
    candidate_time = getattr(candidate, estimator)
    if baseline_time <= 0:
        ratio = 1.0 if candidate_time <= 0 else float("inf")
    else:
        ratio = candidate_time / baseline_time

    if ratio < 1.0 - tolerance:
        verdict = Verdict.IMPROVEMENT
    elif ratio > 1.0 + tolerance:
        verdict = Verdict.REGRESSION
    else:
        verdict = Verdict.INVARIANT

    return Comparison(
        baseline_time=baseline_time,
        candidate_time=candidate_time,
        estimator=estimator,
        tolerance=tolerance,
        ratio=ratio,
        verdict=verdict,
    )


@dataclass(frozen=True)
class TargetComparison:
    host: BenchmarkReport
    accelerator: BenchmarkReport
    comparison: Comparison

    @property
    def accelerator_speedup(self) -> float:
        return self.comparison.speedup


def compare_targets(
    host_work: Callable[[], Any],
    accelerator_work: Callable[[], Any] | None = None,
    config: BenchmarkConfig | None = None,
    dispatcher: DeviceDispatcher | None = None,
    tolerance: float = DEFAULT_TOLERANCE,
    estimator: str = "median",
) -> TargetComparison:
    """Benchmark the same work on host and accelerator, host as baseline.

    ``accelerator_work`` is the device-resident twin of ``host_work`` (for
    example the same matmul on tensors already moved to the device); it
    defaults to ``host_work``. The accelerator is checked before anything
    runs, so a missing device fails without a host-only result.
    """
    dispatcher = dispatcher if dispatcher is not None else DeviceDispatcher()
    dispatcher.ensure_available(Target.ACCELERATOR)
    if accelerator_work is None:
        accelerator_work = host_work

    host = BenchmarkRunner(config, dispatcher, Target.HOST).run(host_work)
    accelerator = BenchmarkRunner(config, dispatcher, Target.ACCELERATOR).run(accelerator_work)
    comparison = judge(host, accelerator, tolerance=tolerance, estimator=estimator)
    logger.info("Accelerator vs host: %s", comparison.summary())
    return TargetComparison(host=host, accelerator=accelerator, comparison=comparison)
