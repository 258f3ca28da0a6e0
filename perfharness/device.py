import contextlib
import logging
from collections.abc import Callable, Iterator
from enum import Enum
from typing import Any

import torch

from .errors import DeviceUnavailable

logger = logging.getLogger(__name__)


class Target(Enum):
    HOST = "host"
    ACCELERATOR = "accelerator"


class Accelerator:
    """Minimal view of an asynchronous compute device.

    Subclasses report availability, block until queued work has finished,
    and expose a cumulative allocation counter so a timer can attribute
    device allocations to a sample.
    """

    name = "accelerator"

    def is_available(self) -> bool:
        raise NotImplementedError

    def synchronize(self) -> None:
        raise NotImplementedError

    def allocated_bytes(self) -> int:
        return 0

    @contextlib.contextmanager
    def annotate(self, label: str | None) -> Iterator[None]:
        yield


class CudaAccelerator(Accelerator):
    def __init__(self, device: int | str | torch.device | None = None):
        if device is None:
            device = torch.device("cuda", 0)
        elif isinstance(device, int):
            device = torch.device("cuda", device)
        else:
            device = torch.device(device)
        if device.type != "cuda":
            raise ValueError(f"CudaAccelerator needs a cuda device, got {device}")
        if device.index is None:
            device = torch.device("cuda", 0)
        self.device = device
        self.name = str(device)

    def is_available(self) -> bool:
        return torch.cuda.is_available() and self.device.index < torch.cuda.device_count()

    def synchronize(self) -> None:
        torch.cuda.synchronize(self.device)

    def allocated_bytes(self) -> int:
        return torch.cuda.memory_stats(self.device).get("allocated_bytes.all.allocated", 0)

    @contextlib.contextmanager
    def annotate(self, label: str | None) -> Iterator[None]:
        if label is None:
            yield
            return
        torch.cuda.nvtx.range_push(label)
        try:
            yield
        finally:
            torch.cuda.nvtx.range_pop()


class MpsAccelerator(Accelerator):
    # MPS only exposes the current allocation, so a sample sees the net growth.
    name = "mps"

    def is_available(self) -> bool:
        return torch.backends.mps.is_available()

    def synchronize(self) -> None:
        torch.mps.synchronize()

    def allocated_bytes(self) -> int:
        return torch.mps.current_allocated_memory()


def accelerator_for(device: str | torch.device) -> Accelerator:
    device = torch.device(device)
    if device.type == "cuda":
        return CudaAccelerator(device)
    if device.type == "mps":
        return MpsAccelerator()
    raise ValueError(f"Unsupported accelerator device: {device}")


def default_accelerator() -> Accelerator | None:
    if torch.cuda.is_available():
        return CudaAccelerator()
    if torch.backends.mps.is_available():
        return MpsAccelerator()
    return None


class DeviceDispatcher:
    """Runs a unit of work on an explicitly chosen target.

    Accelerator work is queued asynchronously by the runtime, so
    ``execute`` issues a barrier before returning. There is no fallback:
    asking for the accelerator when none is configured raises
    ``DeviceUnavailable`` without running the work.
    """

    def __init__(self, accelerator: Accelerator | str | torch.device | None = "auto"):
        if isinstance(accelerator, str) and accelerator == "auto":
            accelerator = default_accelerator()
        elif isinstance(accelerator, (str, torch.device)):
            accelerator = accelerator_for(accelerator)
        self.accelerator = accelerator
        logger.debug("Dispatcher accelerator: %s", accelerator.name if accelerator else None)

    def is_available(self, target: Target) -> bool:
        if target is Target.HOST:
            return True
        return self.accelerator is not None and self.accelerator.is_available()

    def ensure_available(self, target: Target) -> None:
        if target is Target.HOST:
            return
        if self.accelerator is None:
            raise DeviceUnavailable("No accelerator is configured")
        if not self.accelerator.is_available():
            raise DeviceUnavailable(f"Accelerator {self.accelerator.name} is not available")

    def synchronize(self, target: Target) -> None:
        if target is Target.HOST:
            return
        self.ensure_available(target)
        self.accelerator.synchronize()

    def allocated_bytes(self, target: Target) -> int:
        if target is Target.HOST:
            return 0
        self.ensure_available(target)
        return self.accelerator.allocated_bytes()

    def execute(
        self,
        work: Callable[[], Any],
        target: Target,
        label: str | None = None,
    ) -> Any:
        self.ensure_available(target)

        if target is Target.HOST:
            return work()

        with self.accelerator.annotate(label):
            result = work()
        self.accelerator.synchronize()
        return result

    def describe(self) -> dict:
        return {
            "accelerator": self.accelerator.name if self.accelerator else None,
            "accelerator_available": self.is_available(Target.ACCELERATOR),
        }


def explain_device_sync() -> str:
    return """
Timing Accelerator Work

Problem: kernel launches return immediately
  - The host enqueues work on a device stream and moves on
  - Stopping a timer right after the launch measures queue latency
  - The real cost shows up later, wherever the next sync happens

Solution: explicit barriers around the timed region
  - Synchronize before starting the clock (drain earlier work)
  - Run the unit of work
  - Synchronize again before stopping the clock

Rules of thumb:
  - Never fall back to the host silently; the comparison becomes meaningless
  - Warm up first: allocator growth, cuBLAS handles and JIT compilation
    all land on the first call
  - Batch very short calls and divide, since a single launch is close to
    the timer resolution
"""
