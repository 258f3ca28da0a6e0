import json
import logging
from pathlib import Path

from .benchmark import BenchmarkReport
from .profiler import ProfileFrame, to_folded

logger = logging.getLogger(__name__)

PROFILE_FORMATS = ("folded", "json")


def save_report(report: BenchmarkReport, path: str | Path, include_samples: bool = True) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(include_samples=include_samples), f, indent=2, ensure_ascii=False)
    logger.info("Benchmark report written to %s", path)
    return path


def save_profile(frame: ProfileFrame, path: str | Path, fmt: str = "folded") -> Path:
    """Write a profile tree for external viewers.

    ``folded`` produces collapsed stacks (``a;b;c 42``) as read by
    flamegraph.pl and speedscope; ``json`` is the nested tree.
    """
    if fmt not in PROFILE_FORMATS:
        raise ValueError(f"fmt must be one of {PROFILE_FORMATS}, got {fmt!r}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        if fmt == "folded":
            for line in to_folded(frame):
                f.write(line + "\n")
        else:
            json.dump(frame.to_dict(), f, indent=2, ensure_ascii=False)
    logger.info("Profile (%s) written to %s", fmt, path)
    return path
