"""
Tests for the commitment pipeline and the batch dispatcher.

Ordering (archive before commit), nonce retry, async queueing and the
non-fatal attestation stage.
"""
import asyncio

import pytest

from coldchain.app.archive.adapter import MemoryArchive, decode_batch
from coldchain.app.attestation import AttestationIndex, MemoryAttestor
from coldchain.app.batching import TelemetryBatcher
from coldchain.app.errors import (
    ArchiveUnavailableError, AttestorUnavailableError, NonceMismatchError,
    SigningUnavailableError, UnauthorizedSignerError,
)
from coldchain.app.ledger.adapter import StubRegistry
from coldchain.app.merkle import compute_root
from coldchain.app.metrics import MetricsCollector
from coldchain.app.pipeline import BatchDispatcher, CommitmentPipeline, rounded_mean
from coldchain.app.relayer import Relayer, RelayQueue
from coldchain.app.schemas import Channel, SubmissionFields
from coldchain.app.signing import GatewaySigner, NonceCoordinator

from conftest import GATEWAY_ADDR, make_sample

KEY = "0x" + "ab" * 32


def _batch():
    return [
        make_sample(temperature=2500, humidity=6500, rfid_tag="TAG-1", timestamp=1),
        make_sample(temperature=2600, humidity=7000, rfid_tag="TAG-2", timestamp=2),
        make_sample(temperature=2700, humidity=7200, rfid_tag="TAG-3", timestamp=3),
    ]


class RacingRegistry(StubRegistry):
    """Another writer consumes the gateway's nonce right before each of the first `races` submits."""

    def __init__(self, rival: GatewaySigner, races: int = 1, **kw):
        super().__init__(**kw)
        self.rival = NonceCoordinator(self, rival)
        self.races = races

    async def submit(self, signed):
        if self.races > 0:
            self.races -= 1
            other = SubmissionFields(fingerprint="0x" + "99" * 32, merkle_root="0x" + "98" * 32,
                                     cid="mem-rival", temperature=0, humidity=0)
            await super().submit(await self.rival.sign(other, signed.nonce, signed.channel))
        return await super().submit(signed)


class DownArchive(MemoryArchive):
    async def put(self, data, min_size=127):
        raise ArchiveUnavailableError("archive offline")


class DownAttestor(MemoryAttestor):
    async def submit_task(self, task_type, payload):
        raise AttestorUnavailableError("relay offline")


def _pipeline(registry, signer, archive=None, attestor=None, **kw):
    return CommitmentPipeline(archive if archive is not None else MemoryArchive(), registry,
                              attestor if attestor is not None else MemoryAttestor(),
                              NonceCoordinator(registry, signer), **kw)


@pytest.mark.parametrize("values, expected", [
    ([2500, 2600, 2700], 2600),
    ([1, 2], 2),
    ([-3, -2], -2),
    ([-250], -250),
    ([6500, 7000, 7200], 6900),
])
def test_rounded_mean_rounds_half_up(values, expected):
    assert rounded_mean(values) == expected


@pytest.mark.anyio
async def test_sync_commit_end_to_end(registry, signer, archive, attestor):
    pipeline = _pipeline(registry, signer, archive, attestor)
    batch = _batch()
    c = await pipeline.process_batch(KEY, batch)

    assert c.submission.accepted
    assert c.nonce == 0
    assert c.sample_count == 3
    assert c.merkle_root == compute_root(batch)
    assert (c.temperature, c.humidity, c.rfid_tag) == (2600, 6900, "TAG-1")
    assert len(c.attestation_tasks) == 5
    assert c.attestation_ok

    record = await registry.get_record(KEY)
    assert record.merkle_root == c.merkle_root
    assert record.cid == c.cid
    # root committed on-chain matches the archived bytes
    assert compute_root(decode_batch(await archive.get(c.cid))) == record.merkle_root


@pytest.mark.anyio
async def test_consecutive_batches_use_consecutive_nonces(registry, signer):
    pipeline = _pipeline(registry, signer)
    a = await pipeline.process_batch(KEY, _batch())
    b = await pipeline.process_batch("0x" + "cd" * 32, _batch())
    assert (a.nonce, b.nonce) == (0, 1)


@pytest.mark.anyio
async def test_archive_failure_aborts_before_commit(registry, signer):
    pipeline = _pipeline(registry, signer, archive=DownArchive())
    with pytest.raises(ArchiveUnavailableError) as exc_info:
        await pipeline.process_batch(KEY, _batch())
    assert exc_info.value.stage == "archive"
    assert await registry.get_record(KEY) is None
    assert await registry.get_nonce(GATEWAY_ADDR, Channel.SYNC) == 0


@pytest.mark.anyio
async def test_missing_key_fails_at_signing(registry):
    pipeline = _pipeline(registry, None)
    with pytest.raises(SigningUnavailableError) as exc_info:
        await pipeline.process_batch(KEY, _batch())
    assert exc_info.value.stage == "sign"


@pytest.mark.anyio
async def test_unauthorized_gateway_is_rejected(signer):
    registry = StubRegistry(authorized=[])
    with pytest.raises(UnauthorizedSignerError) as exc_info:
        await _pipeline(registry, signer).process_batch(KEY, _batch())
    assert exc_info.value.stage == "submit"
    assert not exc_info.value.retryable


@pytest.mark.anyio
async def test_nonce_race_is_retried_once(signer):
    registry = RacingRegistry(signer, races=1, authorized=[signer.address])
    c = await _pipeline(registry, signer, nonce_retries=1).process_batch(KEY, _batch())
    assert c.submission.accepted
    assert c.nonce == 1
    assert await registry.get_nonce(GATEWAY_ADDR, Channel.SYNC) == 2


@pytest.mark.anyio
async def test_nonce_race_beyond_retries_surfaces(signer):
    registry = RacingRegistry(signer, races=2, authorized=[signer.address])
    with pytest.raises(NonceMismatchError) as exc_info:
        await _pipeline(registry, signer, nonce_retries=1).process_batch(KEY, _batch())
    assert exc_info.value.retryable
    assert await registry.get_record(KEY) is None


@pytest.mark.anyio
async def test_attestation_failure_does_not_undo_commit(registry, signer):
    c = await _pipeline(registry, signer, attestor=DownAttestor()).process_batch(KEY, _batch())
    assert c.submission.accepted
    assert not c.attestation_ok
    assert "relay offline" in c.attestation_error
    assert c.attestation_tasks == []
    assert await registry.get_record(KEY) is not None


@pytest.mark.anyio
async def test_async_mode_queues_for_relayer(registry, signer):
    queue = RelayQueue()
    pipeline = _pipeline(registry, signer, channel=Channel.ASYNC, relay_queue=queue)
    c = await pipeline.process_batch(KEY, _batch())

    assert c.submission.queued
    assert not c.submission.accepted
    assert c.channel is Channel.ASYNC
    assert len(queue) == 1
    assert await registry.get_record(KEY) is None

    outcomes = await Relayer(queue, registry).drain()
    assert outcomes[0].success
    assert (await registry.get_record(KEY)).merkle_root == c.merkle_root
    assert await registry.get_nonce(GATEWAY_ADDR, Channel.SYNC) == 0


def test_async_mode_needs_a_queue(registry, signer):
    with pytest.raises(ValueError):
        _pipeline(registry, signer, channel=Channel.ASYNC)


@pytest.mark.anyio
async def test_dispatcher_records_metrics_and_indexes_tasks(registry, signer, tmp_path):
    metrics = MetricsCollector(results_dir=str(tmp_path))
    index = AttestationIndex()
    dispatcher = BatchDispatcher(_pipeline(registry, signer), index, metrics)

    await dispatcher.commit(KEY, _batch())
    assert len(index.get(KEY)) == 5
    summary = metrics.summary()
    assert summary.total_success == 1
    assert summary.total_samples == 3


@pytest.mark.anyio
async def test_dispatcher_records_failed_stage(signer, tmp_path):
    metrics = MetricsCollector(results_dir=str(tmp_path))
    dispatcher = BatchDispatcher(_pipeline(StubRegistry(), signer, archive=DownArchive()),
                                 AttestationIndex(), metrics)
    with pytest.raises(ArchiveUnavailableError):
        await dispatcher.commit(KEY, _batch())
    [metric] = metrics.recent()
    assert not metric.success
    assert metric.stage == "archive"


@pytest.mark.anyio
async def test_drain_commits_every_active_batch(registry, signer, tmp_path):
    dispatcher = BatchDispatcher(_pipeline(registry, signer), AttestationIndex(),
                                 MetricsCollector(results_dir=str(tmp_path)))
    batcher = TelemetryBatcher(batch_size=10, batch_timeout=60)
    batcher.add_sample(KEY, make_sample())
    batcher.add_sample("0x" + "cd" * 32, make_sample())

    results = await dispatcher.drain(batcher)
    assert len(results) == 2
    assert all(r["committed"] for r in results)
    assert batcher.active_count() == 0


@pytest.mark.anyio
async def test_timer_flushed_batch_is_committed_on_the_loop(registry, signer, tmp_path):
    dispatcher = BatchDispatcher(_pipeline(registry, signer), AttestationIndex(),
                                 MetricsCollector(results_dir=str(tmp_path)))
    dispatcher.bind_loop(asyncio.get_running_loop())
    batcher = TelemetryBatcher(batch_size=10, batch_timeout=0.05,
                               on_flush=dispatcher.on_timer_flush)
    batcher.add_sample(KEY, make_sample())

    for _ in range(40):
        await asyncio.sleep(0.05)
        if await registry.get_record(KEY) is not None:
            break
    assert await registry.get_record(KEY) is not None


@pytest.mark.anyio
async def test_batches_queued_before_a_relay_pass_all_land(registry, signer):
    queue = RelayQueue()
    coordinator = NonceCoordinator(registry, signer)
    pipeline = CommitmentPipeline(MemoryArchive(), registry, MemoryAttestor(), coordinator,
                                  channel=Channel.ASYNC, relay_queue=queue)
    keys = [KEY, "0x" + "cd" * 32, "0x" + "ef" * 32]
    commitments = [await pipeline.process_batch(k, _batch()) for k in keys]
    assert [c.nonce for c in commitments] == [0, 1, 2]

    outcomes = await Relayer(queue, registry, coordinator).drain()
    assert [(o.nonce, o.success) for o in outcomes] == [(0, True), (1, True), (2, True)]
    for key, c in zip(keys, commitments):
        assert (await registry.get_record(key)).merkle_root == c.merkle_root
    assert await registry.get_nonce(GATEWAY_ADDR, Channel.ASYNC) == 3

    # a later batch continues from the registry's counter
    later = await pipeline.process_batch("0x" + "12" * 32, _batch())
    assert later.nonce == 3
