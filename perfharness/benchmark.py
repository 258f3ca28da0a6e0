import gc
import logging
import math
import statistics
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any

from .device import DeviceDispatcher, Target
from .errors import InvalidReport, WorkFailure
from .timer import Timer, TimingSample

logger = logging.getLogger(__name__)


@dataclass
class BenchmarkConfig:
    warmup_runs: int = 1
    min_samples: int | None = None
    max_samples: int = 10_000
    max_time: float = 5.0
    min_time: float = 0.0
    evaluations_per_sample: int | None = 1
    gc_before_run: bool = True
    gc_each_sample: bool = False
    track_allocations: bool = True
    target_sample_time: float = 1e-4
    max_evaluations: int = 10_000

    def __post_init__(self):
        if self.warmup_runs < 0:
            raise ValueError(f"warmup_runs must be >= 0, got {self.warmup_runs}")
        if self.max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {self.max_samples}")
        if self.min_samples is not None:
            if self.min_samples < 1:
                raise ValueError(f"min_samples must be >= 1, got {self.min_samples}")
            if self.min_samples > self.max_samples:
                raise ValueError(
                    f"min_samples ({self.min_samples}) exceeds max_samples ({self.max_samples})"
                )
        if self.max_time < 0 or self.min_time < 0:
            raise ValueError("max_time and min_time must be non-negative")
        if self.evaluations_per_sample is not None and self.evaluations_per_sample < 1:
            raise ValueError(
                f"evaluations_per_sample must be >= 1 or None, got {self.evaluations_per_sample}"
            )
        if self.target_sample_time <= 0:
            raise ValueError("target_sample_time must be positive")
        if self.max_evaluations < 1:
            raise ValueError("max_evaluations must be >= 1")

    @classmethod
    def from_dict(cls, data: dict) -> "BenchmarkConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown benchmark options: {sorted(unknown)}")
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)


class ReportStatus(Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    INVALID = "invalid"


@dataclass(frozen=True)
class BenchmarkReport:
    status: ReportStatus
    samples: tuple[TimingSample, ...] = ()
    min: float | None = None
    max: float | None = None
    mean: float | None = None
    median: float | None = None
    std: float | None = None
    allocated_bytes: int | None = None
    gc_fraction: float | None = None
    evaluations_per_sample: int = 1
    warmup_runs: int = 0
    total_time: float = 0.0
    stop_reason: str = ""
    error: str | None = None
    target: Target = Target.HOST
    config: BenchmarkConfig = field(default_factory=BenchmarkConfig)

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    @property
    def valid(self) -> bool:
        return self.status is not ReportStatus.INVALID

    @property
    def is_partial(self) -> bool:
        return self.status is ReportStatus.PARTIAL

    @classmethod
    def build(
        cls,
        samples: list[TimingSample],
        config: BenchmarkConfig,
        *,
        evaluations_per_sample: int,
        total_time: float,
        stop_reason: str,
        error: str | None = None,
        target: Target = Target.HOST,
    ) -> "BenchmarkReport":
        if not samples:
            return cls(
                status=ReportStatus.INVALID,
                evaluations_per_sample=evaluations_per_sample,
                warmup_runs=config.warmup_runs,
                total_time=total_time,
                stop_reason=stop_reason,
                error=error,
                target=target,
                config=config,
            )

        if error is not None:
            status = ReportStatus.PARTIAL
        elif config.min_samples is not None and len(samples) < config.min_samples:
            status = ReportStatus.PARTIAL
        else:
            status = ReportStatus.COMPLETE

        times = [s.elapsed_time for s in samples]
        total_elapsed = sum(times)
        return cls(
            status=status,
            samples=tuple(samples),
            min=min(times),
            max=max(times),
            mean=statistics.mean(times),
            median=statistics.median(times),
            std=statistics.stdev(times) if len(times) > 1 else 0.0,
            allocated_bytes=int(statistics.median(s.allocated_bytes for s in samples)),
            gc_fraction=(
                sum(s.gc_time for s in samples) / total_elapsed if total_elapsed > 0 else 0.0
            ),
            evaluations_per_sample=evaluations_per_sample,
            warmup_runs=config.warmup_runs,
            total_time=total_time,
            stop_reason=stop_reason,
            error=error,
            target=target,
            config=config,
        )

    def raise_for_status(self) -> "BenchmarkReport":
        if not self.valid:
            raise InvalidReport(
                f"Benchmark recorded no samples (stopped by {self.stop_reason})",
                error=self.error,
            )
        return self

    def percentile(self, p: float) -> float:
        self.raise_for_status()
        return percentile([s.elapsed_time for s in self.samples], p)

    def to_dict(self, include_samples: bool = False) -> dict:
        data = {
            "status": self.status.value,
            "target": self.target.value,
            "sample_count": self.sample_count,
            "min": self.min,
            "max": self.max,
            "mean": self.mean,
            "median": self.median,
            "std": self.std,
            "allocated_bytes": self.allocated_bytes,
            "gc_fraction": self.gc_fraction,
            "evaluations_per_sample": self.evaluations_per_sample,
            "warmup_runs": self.warmup_runs,
            "total_time": self.total_time,
            "stop_reason": self.stop_reason,
            "error": self.error,
            "config": self.config.to_dict(),
        }
        if include_samples:
            data["samples"] = [s.to_dict() for s in self.samples]
        return data

    def summary(self) -> str:
        if not self.valid:
            return f"""
Benchmark Results ({self.target.value})
=================
INVALID: no samples recorded (stopped by {self.stop_reason})
Error: {self.error}
"""
        partial = ""
        if self.is_partial:
            partial = f"PARTIAL: stopped by {self.stop_reason}"
            if self.error:
                partial += f" ({self.error})"
            partial += "\n"
        return f"""
Benchmark Results ({self.target.value})
=================
{partial}Samples: {self.sample_count} x {self.evaluations_per_sample} evaluation(s)
Total time: {self.total_time:.2f}s

Time per evaluation:
  Min:    {self.min * 1e6:.2f}us
  Median: {self.median * 1e6:.2f}us
  Mean:   {self.mean * 1e6:.2f}us +/- {self.std * 1e6:.2f}us
  Max:    {self.max * 1e6:.2f}us

Memory:
  Host allocated: {self.allocated_bytes} bytes
  GC time:        {self.gc_fraction * 100:.2f}%
"""


def percentile(data: list[float], p: float) -> float:
    if not data:
        return 0.0
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p / 100)
    idx = min(idx, len(sorted_data) - 1)
    return sorted_data[idx]


def tune_evaluations(estimate: float, config: BenchmarkConfig) -> int:
    if estimate <= 0:
        return config.max_evaluations
    evaluations = math.ceil(config.target_sample_time / estimate)
    return max(1, min(evaluations, config.max_evaluations))


class BenchmarkRunner:
    """Budgeted multi-sample measurement of a unit of work.

    Warm-up runs are timed but discarded. Sampling stops once ``min_samples``
    are recorded and ``min_time`` has passed, at ``max_samples``, or when
    ``max_time`` is exhausted. ``max_time`` covers the whole run, warm-ups
    included; ``min_time`` counts from the first recorded sample. A warm-up
    or sample already in flight is never cut short.
    A failing work unit ends the run: with no samples the report is invalid,
    otherwise it is partial. Nothing is retried.
    """

    def __init__(
        self,
        config: BenchmarkConfig | None = None,
        dispatcher: DeviceDispatcher | None = None,
        target: Target = Target.HOST,
        label: str | None = None,
    ):
        self.config = config if config is not None else BenchmarkConfig()
        self.dispatcher = dispatcher if dispatcher is not None else DeviceDispatcher()
        self.target = target
        self.label = label

    def _timer(self, config: BenchmarkConfig) -> Timer:
        return Timer(
            dispatcher=self.dispatcher,
            target=self.target,
            track_allocations=config.track_allocations,
            label=self.label,
        )

    def _should_stop(
        self,
        config: BenchmarkConfig,
        num_samples: int,
        run_elapsed: float,
        loop_elapsed: float,
    ) -> str | None:
        if run_elapsed >= config.max_time:
            return "max_time"
        if num_samples >= config.max_samples:
            return "max_samples"
        if (
            config.min_samples is not None
            and num_samples >= config.min_samples
            and loop_elapsed >= config.min_time
        ):
            return "min_samples"
        return None

    def run(self, work: Callable[[], Any], config: BenchmarkConfig | None = None) -> BenchmarkReport:
        config = config if config is not None else self.config
        self.dispatcher.ensure_available(self.target)
        timer = self._timer(config)
        run_start = time.perf_counter()

        logger.info(
            "Benchmarking on %s: warmup=%d min_samples=%s max_time=%.2fs",
            self.target.value,
            config.warmup_runs,
            config.min_samples,
            config.max_time,
        )

        if config.gc_before_run:
            gc.collect()

        estimate = None
        warmups = config.warmup_runs
        if config.evaluations_per_sample is None and warmups == 0:
            warmups = 1

        for i in range(warmups):
            if time.perf_counter() - run_start >= config.max_time:
                logger.debug("Time budget spent after %d warm-up run(s)", i)
                break
            try:
                _, warm = timer.measure(work)
            except WorkFailure as exc:
                logger.warning("Warm-up run %d failed: %s", i, exc)
                return BenchmarkReport.build(
                    [],
                    config,
                    evaluations_per_sample=config.evaluations_per_sample or 1,
                    total_time=time.perf_counter() - run_start,
                    stop_reason="warmup_failure",
                    error=str(exc),
                    target=self.target,
                )
            estimate = warm.elapsed_time

        if config.evaluations_per_sample is None and estimate is None:
            evaluations = 1
        elif config.evaluations_per_sample is None:
            evaluations = tune_evaluations(estimate, config)
            logger.debug("Tuned to %d evaluation(s) per sample from %.3g s", evaluations, estimate)
        else:
            evaluations = config.evaluations_per_sample

        samples: list[TimingSample] = []
        error = None
        loop_start = time.perf_counter()
        while True:
            now = time.perf_counter()
            stop_reason = self._should_stop(config, len(samples), now - run_start, now - loop_start)
            if stop_reason is not None:
                break

            if config.gc_each_sample:
                gc.collect()

            try:
                _, sample = timer.measure(work, evaluations=evaluations)
            except WorkFailure as exc:
                logger.warning("Sample %d failed: %s", len(samples), exc)
                error = str(exc)
                stop_reason = "work_failure"
                break
            samples.append(sample)

        report = BenchmarkReport.build(
            samples,
            config,
            evaluations_per_sample=evaluations,
            total_time=time.perf_counter() - run_start,
            stop_reason=stop_reason,
            error=error,
            target=self.target,
        )

        if report.valid:
            logger.info(
                "Benchmark %s: %d sample(s), median %.3f us (stopped by %s)",
                report.status.value,
                report.sample_count,
                report.median * 1e6,
                stop_reason,
            )
        else:
            logger.warning("Benchmark invalid: no samples recorded (stopped by %s)", stop_reason)
        return report


def run_benchmark(
    work: Callable[[], Any],
    config: BenchmarkConfig | None = None,
    target: Target = Target.HOST,
    dispatcher: DeviceDispatcher | None = None,
) -> BenchmarkReport:
    return BenchmarkRunner(config=config, dispatcher=dispatcher, target=target).run(work)


if __name__ == "__main__":
    import torch

    from .device import explain_device_sync
    from .logging_utils import setup_logging

    setup_logging()
    print(explain_device_sync())

    print("\n" + "=" * 60)
    print("Benchmark Demo")
    print("-" * 60)

    config = BenchmarkConfig(warmup_runs=2, min_samples=50, max_time=2.0)

    a = torch.randn(256, 256)
    b = torch.randn(256, 256)
    host_report = run_benchmark(lambda: a @ b, config)
    print(host_report.summary())

    dispatcher = DeviceDispatcher()
    if dispatcher.is_available(Target.ACCELERATOR):
        device = dispatcher.accelerator.name
        a_dev = a.to(device)
        b_dev = b.to(device)
        accel_report = run_benchmark(lambda: a_dev @ b_dev, config, Target.ACCELERATOR, dispatcher)
        print(accel_report.summary())
    else:
        print("No accelerator available, skipping device benchmark")
