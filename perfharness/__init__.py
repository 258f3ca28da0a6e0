"""
perfharness: Timing, Benchmarking and Profiling for Host and Accelerator Work

This package covers:
- Single timed runs with allocation and GC accounting
- Budgeted multi-sample benchmarks with warm-up and batching
- Explicit host/accelerator dispatch with synchronization barriers
- A sampling profiler that builds a call tree
- Comparing runs and exporting reports
"""

from .benchmark import (
    BenchmarkConfig,
    BenchmarkReport,
    BenchmarkRunner,
    ReportStatus,
    run_benchmark,
)
from .compare import (
    Comparison,
    TargetComparison,
    Verdict,
    compare_targets,
    judge,
)
from .device import (
    Accelerator,
    CudaAccelerator,
    DeviceDispatcher,
    MpsAccelerator,
    Target,
    default_accelerator,
)
from .errors import (
    AlreadyActive,
    DeviceUnavailable,
    HarnessError,
    InvalidReport,
    NotActive,
    WorkFailure,
)
from .export import save_profile, save_report
from .profiler import (
    CallSite,
    ProfileFrame,
    Profiler,
    flatten,
    format_tree,
    profile,
    to_folded,
)
from .timer import Timer, TimingSample, measure

__all__ = [
    "BenchmarkConfig",
    "BenchmarkReport",
    "BenchmarkRunner",
    "ReportStatus",
    "run_benchmark",
    "Comparison",
    "TargetComparison",
    "Verdict",
    "compare_targets",
    "judge",
    "Accelerator",
    "CudaAccelerator",
    "MpsAccelerator",
    "DeviceDispatcher",
    "Target",
    "default_accelerator",
    "HarnessError",
    "WorkFailure",
    "DeviceUnavailable",
    "AlreadyActive",
    "NotActive",
    "InvalidReport",
    "save_report",
    "save_profile",
    "CallSite",
    "ProfileFrame",
    "Profiler",
    "profile",
    "flatten",
    "format_tree",
    "to_folded",
    "Timer",
    "TimingSample",
    "measure",
]
