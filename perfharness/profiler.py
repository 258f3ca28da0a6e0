import logging
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from types import FrameType, MappingProxyType
from typing import Any

from .errors import AlreadyActive, NotActive, WorkFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallSite:
    filename: str
    function: str
    lineno: int = 0

    def __str__(self) -> str:
        if self.lineno:
            return f"{self.function} ({self.filename}:{self.lineno})"
        return f"{self.function} ({self.filename})"


ROOT = CallSite("<root>", "<root>", 0)


@dataclass(frozen=True)
class ProfileFrame:
    call_site_id: CallSite
    hit_count: int = 0
    children: Mapping[CallSite, "ProfileFrame"] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def self_hits(self) -> int:
        # samples whose leaf was this frame
        return self.hit_count - sum(c.hit_count for c in self.children.values())

    def walk(self) -> Iterator[tuple[tuple[CallSite, ...], "ProfileFrame"]]:
        stack = [((), self)]
        while stack:
            path, node = stack.pop()
            yield path, node
            for site, child in node.children.items():
                stack.append((path + (site,), child))

    def to_dict(self) -> dict:
        return {
            "call_site": {
                "filename": self.call_site_id.filename,
                "function": self.call_site_id.function,
                "lineno": self.call_site_id.lineno,
            },
            "hit_count": self.hit_count,
            "children": [child.to_dict() for child in self.children.values()],
        }


class _Node:
    __slots__ = ("call_site", "hit_count", "children")

    def __init__(self, call_site: CallSite):
        self.call_site = call_site
        self.hit_count = 0
        self.children: dict[CallSite, _Node] = {}

    def freeze(self) -> ProfileFrame:
        return ProfileFrame(
            call_site_id=self.call_site,
            hit_count=self.hit_count,
            children=MappingProxyType({k: v.freeze() for k, v in self.children.items()}),
        )


class Profiler:
    """Statistical profiler that samples one thread's call stack.

    A daemon thread wakes every ``interval`` seconds, reads the monitored
    thread's current frame through ``sys._current_frames()`` and adds one hit
    along the root-to-leaf path. The monitored thread is never paused or
    instrumented; the cost per tick is one stack walk under the GIL, bounded
    by the stack depth (and by ``max_depth`` when set).

    When sampling the thread that calls ``start``, the tree is rooted at
    that caller: only frames below it are recorded, and samples landing in
    the caller itself count at the root. A monitored ``thread`` is recorded
    from its outermost frame.

    Samples accumulate across start/stop sessions until ``clear()``.
    """

    def __init__(
        self,
        interval: float = 0.001,
        thread: threading.Thread | None = None,
        include_lines: bool = True,
        max_depth: int | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if max_depth is not None and max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {max_depth}")
        self.interval = interval
        self.thread = thread
        self.include_lines = include_lines
        self.max_depth = max_depth

        self._root = _Node(ROOT)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sampler: threading.Thread | None = None
        self._target_ident: int | None = None
        self._entry_frame: FrameType | None = None

    @property
    def is_active(self) -> bool:
        return self._sampler is not None

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._root.hit_count

    def start(self, interval: float | None = None) -> None:
        if self.is_active:
            raise AlreadyActive("Profiler is already sampling")
        if interval is not None:
            if interval <= 0:
                raise ValueError(f"interval must be positive, got {interval}")
            self.interval = interval

        if self.thread is not None:
            if self.thread.ident is None:
                raise ValueError("Monitored thread has not been started")
            self._target_ident = self.thread.ident
            self._entry_frame = None
        else:
            self._target_ident = threading.get_ident()
            self._entry_frame = sys._getframe(1)

        self._stop_event.clear()
        self._sampler = threading.Thread(target=self._run, name="perfharness-sampler", daemon=True)
        self._sampler.start()
        logger.debug("Profiler started on thread %d every %.3g s", self._target_ident, self.interval)

    def stop(self) -> ProfileFrame:
        if not self.is_active:
            raise NotActive("Profiler is not sampling")
        self._stop_event.set()
        self._sampler.join()
        self._sampler = None
        self._entry_frame = None
        snapshot = self.snapshot()
        logger.debug("Profiler stopped with %d sample(s)", snapshot.hit_count)
        return snapshot

    def clear(self) -> None:
        with self._lock:
            self._root = _Node(ROOT)

    def snapshot(self) -> ProfileFrame:
        with self._lock:
            return self._root.freeze()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            frame = sys._current_frames().get(self._target_ident)
            if frame is None:
                continue
            stack = self._extract_stack(frame)
            del frame
            if stack is None:
                continue
            with self._lock:
                self._record(stack)

    def _extract_stack(self, frame: FrameType) -> list[CallSite] | None:
        # A stack that no longer passes through the entry frame is kept whole.
        stack = []
        code = None
        current = frame
        while current is not None:
            if current is self._entry_frame:
                if code in _SESSION_CODES:
                    return None
                break
            code = current.f_code
            lineno = current.f_lineno if self.include_lines else 0
            stack.append(CallSite(code.co_filename, code.co_name, lineno or 0))
            current = current.f_back
        stack.reverse()
        if self.max_depth is not None:
            stack = stack[: self.max_depth]
        return stack

    def _record(self, stack: list[CallSite]) -> None:
        node = self._root
        node.hit_count += 1
        for site in stack:
            child = node.children.get(site)
            if child is None:
                child = _Node(site)
                node.children[site] = child
            child.hit_count += 1
            node = child


# Samples caught inside start/stop belong to the profiler, not the work.
_SESSION_CODES = frozenset({Profiler.start.__code__, Profiler.stop.__code__})


def profile(
    work: Callable[[], Any],
    interval: float | None = None,
    profiler: Profiler | None = None,
) -> tuple[Any, ProfileFrame]:
    if profiler is None:
        profiler = Profiler() if interval is None else Profiler(interval=interval)
    profiler.start(interval)

    try:
        result = work()
    except WorkFailure:
        raise
    except Exception as exc:
        raise WorkFailure.from_exception(exc) from exc
    finally:
        frame = profiler.stop()
    return result, frame


def flatten(frame: ProfileFrame) -> list[tuple[CallSite, int]]:
    """Inclusive hit counts per call site, most frequent first.

    A recursive call site is counted once per sample, not once per level.
    """
    counts: dict[CallSite, int] = {}

    def visit(node: ProfileFrame, ancestors: frozenset) -> None:
        for site, child in node.children.items():
            if site not in ancestors:
                counts[site] = counts.get(site, 0) + child.hit_count
            visit(child, ancestors | {site})

    visit(frame, frozenset())
    return sorted(counts.items(), key=lambda item: (-item[1], str(item[0])))


def format_tree(frame: ProfileFrame, min_hits: int = 0, max_depth: int | None = None) -> str:
    lines = [f"{frame.hit_count:>8}  {frame.call_site_id}"]

    def visit(node: ProfileFrame, depth: int) -> None:
        if max_depth is not None and depth > max_depth:
            return
        children = sorted(node.children.values(), key=lambda c: -c.hit_count)
        for child in children:
            if child.hit_count < min_hits:
                continue
            lines.append(f"{child.hit_count:>8}  {'  ' * depth}{child.call_site_id}")
            visit(child, depth + 1)

    visit(frame, 1)
    return "\n".join(lines)


def to_folded(frame: ProfileFrame) -> list[str]:
    lines = []
    for path, node in frame.walk():
        if not path or node.self_hits <= 0:
            continue
        stack = ";".join(
            f"{site.function}:{site.lineno}" if site.lineno else site.function
            for site in path
        )
        lines.append(f"{stack} {node.self_hits}")
    return sorted(lines)


def explain_sampling_profiler() -> str:
    return """
Sampling Profilers

Instrumentation vs sampling:
  - Instrumenting profilers hook every call and return
  - The hooks dominate short functions and distort the profile
  - Sampling peeks at the stack every few milliseconds instead

How a sample is recorded:
  1. A background thread wakes up on a fixed interval
  2. It reads the monitored thread's current frame
  3. It walks the frames from the entry point to the leaf
  4. Each node on that path gets one more hit

Reading the tree:
  - A node's count is the number of samples with that frame on the stack
  - Count minus the children's counts is time spent in the frame itself
  - Short runs give few samples; profile something that runs for a while
  - Accelerator kernels run asynchronously, so the host stack mostly
    shows launch and synchronization overhead
"""


if __name__ == "__main__":
    from .logging_utils import setup_logging

    setup_logging()
    print(explain_sampling_profiler())

    def busy(n: int) -> int:
        total = 0
        for i in range(n):
            total += i * i
        return total

    def workload() -> int:
        deadline = time.perf_counter() + 0.5
        count = 0
        while time.perf_counter() < deadline:
            busy(10_000)
            count += 1
        return count

    result, tree = profile(workload, interval=0.001)
    print(f"Ran {result} iterations, {tree.hit_count} samples")
    print(format_tree(tree, min_hits=5))
