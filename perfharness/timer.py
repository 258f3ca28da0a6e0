import gc
import logging
import time
import tracemalloc
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .device import DeviceDispatcher, Target
from .errors import WorkFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimingSample:
    """One timed invocation (or batch of invocations) of a unit of work.

    ``elapsed_time``, ``gc_time`` and ``device_allocated_bytes`` are per
    evaluation when the sample batches several calls. ``allocated_bytes`` is
    the host high-water mark above the starting traced size, so it is not
    divided. It only covers memory obtained through the Python allocators
    that tracemalloc traces; torch CPU tensor storage comes from torch's own
    allocator and does not show up, so a host matmul reads close to zero.
    """

    elapsed_time: float
    allocated_bytes: int = 0
    gc_time: float = 0.0
    device_allocated_bytes: int = 0
    evaluations: int = 1

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_time * 1e3

    @property
    def elapsed_us(self) -> float:
        return self.elapsed_time * 1e6

    def to_dict(self) -> dict:
        return asdict(self)


class GCClock:
    def __init__(self):
        self.total = 0.0
        self.collections = 0
        self._started: float | None = None

    def _callback(self, phase: str, info: dict) -> None:
        if phase == "start":
            self._started = time.perf_counter()
        elif phase == "stop" and self._started is not None:
            self.total += time.perf_counter() - self._started
            self.collections += 1
            self._started = None

    def __enter__(self) -> "GCClock":
        gc.callbacks.append(self._callback)
        return self

    def __exit__(self, *exc_info) -> None:
        gc.callbacks.remove(self._callback)


class HostAllocationTracker:
    # tracemalloc is only stopped again if this tracker started it.
    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.allocated_bytes = 0
        self._baseline = 0
        self._owns_tracing = False

    def __enter__(self) -> "HostAllocationTracker":
        self.allocated_bytes = 0
        if not self.enabled:
            return self
        self._owns_tracing = not tracemalloc.is_tracing()
        if self._owns_tracing:
            tracemalloc.start()
        self._baseline, _ = tracemalloc.get_traced_memory()
        tracemalloc.reset_peak()
        return self

    def __exit__(self, *exc_info) -> None:
        if not self.enabled:
            return
        _, peak = tracemalloc.get_traced_memory()
        self.allocated_bytes = max(0, peak - self._baseline)
        if self._owns_tracing:
            tracemalloc.stop()
            self._owns_tracing = False


def _batched(work: Callable[[], Any], evaluations: int) -> Callable[[], Any]:
    def batch():
        result = None
        for _ in range(evaluations):
            result = work()
        return result

    return batch


class Timer:
    """Single fail-fast measurement of a unit of work.

    The work runs through the dispatcher, so on an accelerator target the
    barrier is inside the timed region. The device is also drained before
    the clock starts so earlier queued work is not billed to this sample.
    Host allocation tracking uses tracemalloc, which slows allocation-heavy
    code; pass ``track_allocations=False`` when only time matters.
    """

    def __init__(
        self,
        dispatcher: DeviceDispatcher | None = None,
        target: Target = Target.HOST,
        track_allocations: bool = True,
        label: str | None = None,
    ):
        self.dispatcher = dispatcher if dispatcher is not None else DeviceDispatcher()
        self.target = target
        self.track_allocations = track_allocations
        self.label = label

    def measure(
        self,
        work: Callable[[], Any],
        evaluations: int = 1,
    ) -> tuple[Any, TimingSample]:
        if evaluations < 1:
            raise ValueError(f"evaluations must be >= 1, got {evaluations}")

        self.dispatcher.ensure_available(self.target)
        batch = work if evaluations == 1 else _batched(work, evaluations)

        self.dispatcher.synchronize(self.target)
        with GCClock() as gc_clock, HostAllocationTracker(self.track_allocations) as host:
            device_before = self.dispatcher.allocated_bytes(self.target)
            start = time.perf_counter()
            try:
                result = self.dispatcher.execute(batch, self.target, label=self.label)
            except WorkFailure:
                raise
            except Exception as exc:
                logger.debug("Work failed after %.3f ms: %r", (time.perf_counter() - start) * 1e3, exc)
                raise WorkFailure.from_exception(exc) from exc
            elapsed = time.perf_counter() - start
            device_after = self.dispatcher.allocated_bytes(self.target)

        sample = TimingSample(
            elapsed_time=elapsed / evaluations,
            allocated_bytes=host.allocated_bytes,
            gc_time=gc_clock.total / evaluations,
            device_allocated_bytes=max(0, device_after - device_before) // evaluations,
            evaluations=evaluations,
        )
        logger.debug(
            "Measured %s sample: %.3f us x %d, %d bytes host, %d bytes device",
            self.target.value,
            sample.elapsed_us,
            evaluations,
            sample.allocated_bytes,
            sample.device_allocated_bytes,
        )
        return result, sample


def measure(
    work: Callable[[], Any],
    target: Target = Target.HOST,
    dispatcher: DeviceDispatcher | None = None,
    track_allocations: bool = True,
) -> tuple[Any, TimingSample]:
    timer = Timer(dispatcher=dispatcher, target=target, track_allocations=track_allocations)
    return timer.measure(work)
