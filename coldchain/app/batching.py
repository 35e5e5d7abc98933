"""
batching.py - Per-shipment telemetry batcher.

Samples accumulate per fingerprint until one of two things happens:
  1. the batch reaches batch_size samples  -> flushed by add_sample()
  2. batch_timeout seconds pass after the first sample -> flushed by a timer

Size-flushed batches are returned to the caller. Timer-flushed batches are
handed to the on_flush callback (from the timer thread), which is how the
dispatcher gets them into the commitment pipeline.

A single lock guards the fingerprint -> batch map. It is held only for the
in-memory check-and-flush decision, never across I/O, so different
shipments do not wait on each other for more than a dict operation. Each
timer remembers the exact batch object it was armed for; if that batch has
already been flushed (size trigger, forced drain) the timer is a no-op. A
batch is therefore flushed exactly once.
"""
import logging
import threading
from typing import Callable, Optional

from .hashing import now_ms
from .schemas import Sample

log = logging.getLogger("coldchain.batching")

DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_TIMEOUT_S = 30.0

FlushCallback = Callable[[str, list[Sample]], None]


class _ActiveBatch:
    __slots__ = ("samples", "timer")

    def __init__(self):
        self.samples: list[Sample] = []
        self.timer: Optional[threading.Timer] = None


class TelemetryBatcher:
    """Owns the active batches of one gateway instance."""

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE,
                 batch_timeout: float = DEFAULT_BATCH_TIMEOUT_S,
                 on_flush: Optional[FlushCallback] = None,
                 clock: Callable[[], int] = now_ms):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if batch_timeout <= 0:
            raise ValueError("batch_timeout must be > 0")
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self.on_flush = on_flush
        self._clock = clock
        self._lock = threading.Lock()
        self._batches: dict[str, _ActiveBatch] = {}

    def add_sample(self, fingerprint: str, sample: Sample) -> Optional[list[Sample]]:
        """Append a sample; return the batch if this sample filled it."""
        stamped = sample.model_copy(update={"timestamp": self._clock()})
        with self._lock:
            active = self._batches.get(fingerprint)
            if active is None:
                active = _ActiveBatch()
                active.timer = self._arm(fingerprint, active)
                self._batches[fingerprint] = active
            active.samples.append(stamped)
            if len(active.samples) >= self.batch_size:
                return self._flush_locked(fingerprint)
        return None

    def flush_batch(self, fingerprint: str) -> Optional[list[Sample]]:
        """Remove and return the active batch, or None if there is nothing to flush."""
        with self._lock:
            return self._flush_locked(fingerprint)

    def flush_all(self) -> list[tuple[str, list[Sample]]]:
        """Drain every active batch (graceful shutdown)."""
        drained = []
        with self._lock:
            for fingerprint in list(self._batches):
                batch = self._flush_locked(fingerprint)
                if batch:
                    drained.append((fingerprint, batch))
        if drained:
            log.info("drained %d active batch(es)", len(drained))
        return drained

    def get_batch(self, fingerprint: str) -> tuple[Sample, ...]:
        """Read-only snapshot of the active batch (empty if none)."""
        with self._lock:
            active = self._batches.get(fingerprint)
            return tuple(active.samples) if active else ()

    def active_count(self) -> int:
        with self._lock:
            return len(self._batches)

    def _arm(self, fingerprint: str, active: _ActiveBatch) -> threading.Timer:
        timer = threading.Timer(self.batch_timeout, self._on_timeout, args=(fingerprint, active))
        timer.daemon = True
        timer.start()
        return timer

    def _flush_locked(self, fingerprint: str) -> Optional[list[Sample]]:
        active = self._batches.pop(fingerprint, None)
        if active is None:
            return None
        if active.timer is not None:
            active.timer.cancel()
        if not active.samples:
            return None
        return active.samples

    def _on_timeout(self, fingerprint: str, armed_for: _ActiveBatch):
        with self._lock:
            if self._batches.get(fingerprint) is not armed_for:
                return
            batch = self._flush_locked(fingerprint)
        if not batch:
            return
        log.info("batch timeout fingerprint=%s samples=%d", fingerprint[:18], len(batch))
        if self.on_flush is None:
            log.warning("timer flushed %d sample(s) for %s with no handler attached",
                        len(batch), fingerprint[:18])
            return
        try:
            self.on_flush(fingerprint, batch)
        except Exception:
            log.exception("flush handler failed for %s", fingerprint[:18])
