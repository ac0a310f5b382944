"""Window buffer for process samples.

Accumulates every sample since the last flush, keyed by pid. The aggregator
drains it once per window; appends and the drain share one lock so a sample
arriving at the boundary lands in exactly one window.
"""

import threading
from dataclasses import dataclass
from datetime import datetime

from proc_ranker.sampler import ProcessSample


@dataclass(frozen=True)
class WindowSnapshot:
    """Immutable drained window, ready for reduction."""

    flushed_at: datetime
    samples_by_pid: dict[int, tuple[ProcessSample, ...]]

    @property
    def sample_count(self) -> int:
        return sum(len(s) for s in self.samples_by_pid.values())


class WindowBuffer:
    """Per-pid sample buffer with an atomic drain-and-clear."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: dict[int, list[ProcessSample]] = {}

    def __len__(self) -> int:
        """Return number of pids in buffer."""
        with self._lock:
            return len(self._samples)

    @property
    def is_empty(self) -> bool:
        """Return True if buffer has no samples."""
        return len(self) == 0

    def append(self, samples: list[ProcessSample]) -> None:
        """Add one tick's samples to the buffer."""
        with self._lock:
            for sample in samples:
                self._samples.setdefault(sample.pid, []).append(sample)

    def drain(self, flushed_at: datetime | None = None) -> WindowSnapshot:
        """Swap out the buffer contents and return them as a snapshot."""
        with self._lock:
            drained = self._samples
            self._samples = {}
        return WindowSnapshot(
            flushed_at=(flushed_at or datetime.now()).replace(microsecond=0),
            samples_by_pid={pid: tuple(s) for pid, s in drained.items()},
        )

    def clear(self) -> None:
        """Empty the buffer."""
        with self._lock:
            self._samples = {}
