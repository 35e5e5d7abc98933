"""
pipeline.py - Commitment pipeline and batch dispatch.

For every flushed batch:
  1. Archive the raw batch                 -> cid       (failure aborts)
  2. Merkle root over the in-memory batch  -> root      (not re-read from the archive)
  3. Summary: average temperature/humidity, first sample's tag
  4. Read the gateway nonce for the channel from the registry
  5. Sign the EIP-712 payload
  6. sync:  submit to the registry (gateway pays)
     async: enqueue for the relayer and return without waiting
  7. Fan out one attestation task per type  (failure is reported, not raised)

A batch that fails in steps 1-6 is gone from the batcher; it is not
requeued here. Callers that need at-least-once delivery persist raw
samples upstream and re-ingest them.

On nonce-mismatch the pipeline re-reads the nonce and re-signs, up to
nonce_retries times. Any other rejection is final.
"""
import asyncio
import logging
import time
from typing import Optional, Sequence

from .archive.adapter import MIN_PAYLOAD_BYTES, Archive, encode_batch
from .attestation import DEFAULT_TEMP_MAX, DEFAULT_TEMP_MIN, AttestationIndex, Attestor, fan_out
from .batching import TelemetryBatcher
from .errors import GatewayError, rejection_for
from .ledger.adapter import Registry
from .merkle import compute_root
from .metrics import BatchMetric, MetricsCollector, utc_now_iso
from .relayer import RelayQueue
from .schemas import BatchCommitment, Channel, Sample, SubmissionFields, SubmissionResult
from .signing import NonceCoordinator

log = logging.getLogger("coldchain.pipeline")


def rounded_mean(values: Sequence[int]) -> int:
    """Integer mean, rounding half up (-2.5 -> -2, 2.5 -> 3)."""
    n = len(values)
    return (2 * sum(values) + n) // (2 * n)


class CommitmentPipeline:

    def __init__(self, archive: Archive, registry: Registry, attestor: Attestor,
                 coordinator: NonceCoordinator, *,
                 channel: Channel = Channel.SYNC,
                 relay_queue: Optional[RelayQueue] = None,
                 nonce_retries: int = 1,
                 temp_min: int = DEFAULT_TEMP_MIN,
                 temp_max: int = DEFAULT_TEMP_MAX):
        if channel.is_async and relay_queue is None:
            raise ValueError("async submission needs a relay queue")
        self.archive = archive
        self.registry = registry
        self.attestor = attestor
        self.coordinator = coordinator
        self.channel = channel
        self.relay_queue = relay_queue
        self.nonce_retries = nonce_retries
        self.temp_min = temp_min
        self.temp_max = temp_max

    async def process_batch(self, fingerprint: str, batch: Sequence[Sample]) -> BatchCommitment:
        stage = "archive"
        try:
            cid = await self.archive.put(encode_batch(batch), MIN_PAYLOAD_BYTES)

            stage = "merkle"
            merkle_root = compute_root(batch)
            log.info("batch %s: %d samples cid=%s root=%s",
                     fingerprint[:18], len(batch), cid[:20], merkle_root[:18])

            fields = SubmissionFields(
                fingerprint=fingerprint,
                merkle_root=merkle_root,
                cid=cid,
                temperature=rounded_mean([s.temperature for s in batch]),
                humidity=rounded_mean([s.humidity for s in batch]),
                rfid_tag=batch[0].rfid_tag,
            )

            stage = "sign"
            identity = self.coordinator.require_signer().address
            nonce, submission = await self._submit(fields, identity)
        except GatewayError as exc:
            exc.stage = exc.stage or stage
            log.error("batch %s failed at %s: %s", fingerprint[:18], exc.stage, exc)
            raise

        commitment = BatchCommitment(
            fingerprint=fingerprint, cid=cid, merkle_root=merkle_root,
            nonce=nonce, channel=self.channel, sample_count=len(batch),
            temperature=fields.temperature, humidity=fields.humidity,
            rfid_tag=fields.rfid_tag, submission=submission,
        )

        try:
            commitment.attestation_tasks = await fan_out(
                self.attestor, fingerprint=fingerprint, cid=cid, merkle_root=merkle_root,
                temperature=fields.temperature, temp_min=self.temp_min, temp_max=self.temp_max,
            )
        except Exception as exc:
            # commitment is already durable; attestation is auxiliary
            log.warning("attestation fan-out failed for %s: %s", fingerprint[:18], exc)
            commitment.attestation_error = str(exc)

        return commitment

    async def _submit(self, fields: SubmissionFields, identity: str) -> tuple[int, SubmissionResult]:
        attempts = 0
        while True:
            stage = "nonce"
            try:
                if self.channel.is_async:
                    nonce = await self.coordinator.reserve_nonce(identity, self.channel)
                else:
                    nonce = await self.coordinator.get_current_nonce(identity, self.channel)
                stage = "sign"
                signed = await self.coordinator.sign(fields, nonce, self.channel)

                stage = "submit"
                if self.channel.is_async:
                    self.relay_queue.put(signed)
                    return nonce, SubmissionResult(accepted=False, queued=True)

                result = await self.registry.submit(signed)
                if result.accepted:
                    log.info("committed %s nonce=%d tx=%s",
                             fields.fingerprint[:18], nonce, (result.tx_hash or "?")[:18])
                    return nonce, result
                raise rejection_for(result.reason,
                                    f"registry rejected nonce {nonce}: {result.reason}")
            except GatewayError as exc:
                exc.stage = exc.stage or stage
                if getattr(exc, "retryable", False) and attempts < self.nonce_retries:
                    attempts += 1
                    log.warning("nonce %d for %s already consumed; re-reading (retry %d/%d)",
                                nonce, fields.fingerprint[:18], attempts, self.nonce_retries)
                    continue
                raise


class BatchDispatcher:
    """Routes flushed batches into the pipeline and records the outcome."""

    def __init__(self, pipeline: CommitmentPipeline, index: AttestationIndex,
                 metrics: MetricsCollector):
        self.pipeline = pipeline
        self.index = index
        self.metrics = metrics
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    async def commit(self, fingerprint: str, batch: Sequence[Sample]) -> BatchCommitment:
        t0 = time.monotonic()
        try:
            commitment = await self.pipeline.process_batch(fingerprint, batch)
        except GatewayError as exc:
            self.metrics.record(BatchMetric(
                ts=utc_now_iso(), fingerprint=fingerprint, sample_count=len(batch),
                latency_ms=round((time.monotonic() - t0) * 1000, 2),
                stage=exc.stage or "unknown", success=False, error=str(exc),
            ))
            raise
        self.index.add(fingerprint, commitment.attestation_tasks)
        self.metrics.record(BatchMetric(
            ts=utc_now_iso(), fingerprint=fingerprint, sample_count=len(batch),
            latency_ms=round((time.monotonic() - t0) * 1000, 2),
            stage="done" if commitment.attestation_ok else "attest", success=True,
            error=commitment.attestation_error,
        ))
        return commitment

    def on_timer_flush(self, fingerprint: str, batch: list[Sample]):
        """Batcher callback; runs on the timer thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            log.error("no event loop bound; dropping timer-flushed batch %s (%d samples)",
                      fingerprint[:18], len(batch))
            return
        fut = asyncio.run_coroutine_threadsafe(self._commit_logged(fingerprint, batch), loop)
        fut.add_done_callback(self._report)

    async def _commit_logged(self, fingerprint: str, batch: list[Sample]):
        try:
            await self.commit(fingerprint, batch)
        except GatewayError as exc:
            log.error("timer-flushed batch %s not committed (%s): %s",
                      fingerprint[:18], exc.stage, exc)

    @staticmethod
    def _report(fut):
        if not fut.cancelled() and fut.exception() is not None:
            log.error("unexpected error committing batch: %r", fut.exception())

    async def drain(self, batcher: TelemetryBatcher) -> list[dict]:
        """Flush every active batch and commit each one. Failures are reported per batch."""
        results = []
        for fingerprint, batch in batcher.flush_all():
            try:
                commitment = await self.commit(fingerprint, batch)
                results.append({"shipmentKey": fingerprint, "committed": True,
                                "commitment": commitment.model_dump(by_alias=True)})
            except GatewayError as exc:
                results.append({"shipmentKey": fingerprint, "committed": False,
                                "stage": exc.stage, "error": str(exc)})
        return results
