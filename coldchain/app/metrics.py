"""
Metrics collection for the telemetry gateway.

Tracks per-batch commit latency, throughput, and the stage at which failed
batches stopped. Results are exported to a timestamped CSV directory under
results/.
"""
import csv
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


@dataclass
class BatchMetric:
    ts: str
    fingerprint: str
    sample_count: int
    latency_ms: float
    stage: str          # last stage reached: archive | merkle | nonce | sign | submit | attest | done
    success: bool
    error: Optional[str] = None


@dataclass
class RunSummary:
    run_id: str
    started_at: str
    ended_at: Optional[str]
    total_batches: int
    total_success: int
    total_failed: int
    total_samples: int
    avg_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    throughput_bps: float


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class MetricsCollector:
    """Thread-safe collector for batch commit metrics."""

    def __init__(self, results_dir: str = "results"):
        self._lock = threading.Lock()
        self._records: list[BatchMetric] = []
        self._started_at = utc_now_iso()
        self._run_id = datetime.now(timezone.utc).strftime("run_%Y%m%d_%H%M%S")
        self._results_dir = Path(results_dir) / self._run_id

    def record(self, metric: BatchMetric):
        with self._lock:
            self._records.append(metric)

    def summary(self) -> RunSummary:
        with self._lock:
            records = list(self._records)

        latencies = sorted(r.latency_ms for r in records if r.success)
        success_count = len(latencies)

        avg = sum(latencies) / len(latencies) if latencies else 0.0
        p95 = latencies[int(len(latencies) * 0.95)] if latencies else 0.0
        p99 = latencies[int(len(latencies) * 0.99)] if latencies else 0.0

        # Throughput: committed batches over wall-clock duration
        started = datetime.fromisoformat(self._started_at)
        elapsed = (datetime.now(timezone.utc) - started).total_seconds()
        bps = success_count / elapsed if elapsed > 0 else 0.0

        return RunSummary(
            run_id=self._run_id,
            started_at=self._started_at,
            ended_at=utc_now_iso(),
            total_batches=len(records),
            total_success=success_count,
            total_failed=len(records) - success_count,
            total_samples=sum(r.sample_count for r in records if r.success),
            avg_latency_ms=round(avg, 2),
            p95_latency_ms=round(p95, 2),
            p99_latency_ms=round(p99, 2),
            throughput_bps=round(bps, 4),
        )

    def export(self) -> str:
        """Write batches.csv and metrics.csv to the run directory."""
        with self._lock:
            records = list(self._records)
        self._results_dir.mkdir(parents=True, exist_ok=True)

        if records:
            with open(self._results_dir / "batches.csv", "w", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=asdict(records[0]).keys())
                writer.writeheader()
                for r in records:
                    writer.writerow(asdict(r))

        summary = self.summary()
        with open(self._results_dir / "metrics.csv", "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=asdict(summary).keys())
            writer.writeheader()
            writer.writerow(asdict(summary))

        return str(self._results_dir)

    def recent(self, n: int = 50) -> list[BatchMetric]:
        with self._lock:
            return list(self._records[-n:])

    @property
    def run_id(self) -> str:
        return self._run_id
