"""
Unit tests for attestation task fan-out and the integrity checks.
"""
import pytest
from eth_abi import decode

from coldchain.app.archive.adapter import encode_batch
from coldchain.app.attestation import (
    AttestationIndex, MemoryAttestor, RelayAttestor, build_task_payload, derive_task_id, fan_out,
    verify_archive_dataset, verify_merkle_integrity, verify_sensor_data,
    verify_shipment_integrity, verify_temperature_threshold,
)
from coldchain.app.errors import AttestorUnavailableError
from coldchain.app.merkle import compute_root
from coldchain.app.schemas import AttestationType, is_hex32

from conftest import make_sample

KEY = "0x" + "ab" * 32


async def _archived(archive, temps=(300, 450, 500)):
    batch = [make_sample(temperature=t, timestamp=1_000 + i) for i, t in enumerate(temps)]
    cid = await archive.put(encode_batch(batch))
    return cid, compute_root(batch)


def test_task_payload_layout():
    payload = build_task_payload(AttestationType.MERKLE_INTEGRITY, "mem-1",
                                 "0x" + "22" * 32, KEY, -150, -2000, 800)
    decoded = decode(["string", "string", "bytes32", "bytes32", "int256", "int256", "int256"], payload)
    assert decoded[0] == "merkle-integrity"
    assert decoded[1] == "mem-1"
    assert decoded[4:] == (-150, -2000, 800)


def test_task_id_depends_on_time():
    payload = b"\x01" * 32
    a = derive_task_id(AttestationType.DATA_VALIDITY, payload, 1)
    assert is_hex32(a)
    assert a != derive_task_id(AttestationType.DATA_VALIDITY, payload, 2)
    assert a != derive_task_id(AttestationType.FULL_INTEGRITY, payload, 1)


@pytest.mark.anyio
async def test_fan_out_creates_one_task_per_type():
    attestor = MemoryAttestor(clock=lambda: 42)
    tasks = await fan_out(attestor, fingerprint=KEY, cid="mem-1",
                          merkle_root="0x" + "22" * 32, temperature=300)
    assert [t.type for t in tasks] == list(AttestationType)
    assert len({t.task_id for t in tasks}) == 5
    assert all(t.status == "pending" for t in tasks)
    assert len(attestor.pending()) == 5


@pytest.mark.anyio
async def test_identical_tasks_in_same_millisecond_get_distinct_ids():
    attestor = MemoryAttestor(clock=lambda: 7)
    a = await attestor.submit_task(AttestationType.DATA_VALIDITY, b"same")
    b = await attestor.submit_task(AttestationType.DATA_VALIDITY, b"same")
    assert a != b


@pytest.mark.anyio
async def test_memory_attestor_result_lifecycle():
    attestor = MemoryAttestor(clock=lambda: 5)
    task_id = await attestor.submit_task(AttestationType.ARCHIVE_VERIFIED, b"p")
    assert not (await attestor.get_result(task_id)).completed
    attestor.resolve(task_id, "1", timestamp=99)
    result = await attestor.get_result(task_id)
    assert result.completed
    assert result.result == "1"
    assert result.timestamp == 99
    assert attestor.pending() == []


@pytest.mark.anyio
async def test_memory_attestor_unknown_task():
    result = await MemoryAttestor().get_result("0x" + "00" * 32)
    assert not result.completed
    assert result.error == "unknown task"


@pytest.mark.anyio
async def test_relay_attestor_without_address_is_unavailable():
    with pytest.raises(AttestorUnavailableError):
        await RelayAttestor("http://127.0.0.1:9", None).submit_task(AttestationType.DATA_VALIDITY, b"p")


@pytest.mark.anyio
async def test_relay_attestor_unreachable_node_reports_incomplete():
    attestor = RelayAttestor("http://127.0.0.1:9", "0x" + "11" * 20)
    result = await attestor.get_result("0x" + "00" * 32)
    assert not result.completed
    assert result.error


def test_index_is_case_insensitive():
    index = AttestationIndex()
    index.add(KEY.upper().replace("0X", "0x"), ["t1"])
    index.add(KEY, ["t2"])
    assert index.get(KEY) == ["t1", "t2"]
    assert index.get("0x" + "cd" * 32) == []


@pytest.mark.anyio
async def test_checks_pass_for_untampered_batch(archive):
    cid, root = await _archived(archive)
    assert (await verify_sensor_data(archive, cid, root))["valid"]
    assert (await verify_merkle_integrity(archive, cid, root))["match"]
    assert (await verify_archive_dataset(archive, cid))["accessible"]
    temp = await verify_temperature_threshold(archive, cid)
    assert temp["valid"]
    assert temp["total_samples"] == 3


@pytest.mark.anyio
async def test_threshold_check_reports_excursions(archive):
    cid, _ = await _archived(archive, temps=(300, 1400, -2500))
    result = await verify_temperature_threshold(archive, cid, -2000, 800)
    assert not result["valid"]
    assert result["violation_count"] == 2
    assert [v["temperature"] for v in result["violations"]] == [1400, -2500]


@pytest.mark.anyio
async def test_merkle_check_detects_wrong_root(archive):
    cid, _ = await _archived(archive)
    result = await verify_merkle_integrity(archive, cid, "0x" + "00" * 32)
    assert not result["valid"]
    assert not (await verify_sensor_data(archive, cid, "0x" + "00" * 32))["valid"]


@pytest.mark.anyio
async def test_missing_archive_fails_every_check(archive):
    result = await verify_shipment_integrity(archive, cid="mem-missing",
                                             merkle_root="0x" + "00" * 32, shipment_key=KEY)
    assert not result["overall_valid"]
    assert not result["checks"]["archive"]["accessible"]


@pytest.mark.anyio
async def test_full_integrity_passes(archive):
    cid, root = await _archived(archive)
    result = await verify_shipment_integrity(archive, cid=cid, merkle_root=root, shipment_key=KEY)
    assert result["overall_valid"]
    assert set(result["checks"]) == {"archive", "merkle", "temperature", "sensor_data"}
