"""
Tests for the standalone verifier and the simulator's reading generator.
"""
import random

import pytest

from coldchain import simulator, verifier
from coldchain.app.main import create_app
from coldchain.app.config import Settings
from coldchain.app.merkle import compute_root

from conftest import GATEWAY_KEY, make_client, make_sample


def test_verifier_root_matches_gateway_root():
    batch = [make_sample(temperature=t, timestamp=i, metadata={"seq": i})
             for i, t in enumerate((2500, 2600, 2700, 2800, 2900))]
    wire = [s.canonical() for s in batch]
    assert verifier.compute_root(wire) == compute_root(batch)


def test_verifier_root_of_nothing_is_none():
    assert verifier.compute_root([]) is None


def _record(samples, root):
    return {"shipmentKey": "0x" + "ab" * 32, "onChain": {"merkleRoot": root}, "batchData": samples}


def test_check_shipment_pass_and_tamper():
    wire = [make_sample(temperature=t).canonical() for t in (300, 400, 500)]
    root = verifier.compute_root(wire)
    assert verifier.check_shipment(_record(wire, root))["verdict"] == "PASS"

    tampered = [dict(s) for s in wire]
    tampered[1]["temperature"] = 100
    result = verifier.check_shipment(_record(tampered, root))
    assert result["verdict"] == "FAIL"
    assert result["reason"] == "Merkle root mismatch"


def test_check_shipment_without_archive_fails():
    assert verifier.check_shipment(_record(None, "0x" + "00" * 32))["verdict"] == "FAIL"


@pytest.mark.anyio
async def test_verifier_agrees_with_live_gateway(tmp_path):
    app = create_app(Settings(gateway_private_key=GATEWAY_KEY, batch_size=2,
                              batch_timeout_ms=60_000, results_dir=str(tmp_path)))
    headers = {"X-Role": "gateway"}
    async with make_client(app) as ac:
        for i in range(2):
            r = await ac.post("/telemetry", headers=headers,
                              json=simulator.reading("SHP-9", "B-1", i, rng=random.Random(i)))
            assert r.status_code == 200
        key = r.json()["shipmentKey"]
        record = (await ac.get(f"/shipment/{key}", headers={"X-Role": "inspector"})).json()
    assert verifier.check_shipment(record)["verdict"] == "PASS"


def test_simulated_readings_are_in_band():
    rng = random.Random(1)
    for i in range(50):
        body = simulator.reading("SHP-1", "B-1", i, rng=rng)
        assert simulator.BAND_LOW <= body["temperature"] <= simulator.BAND_HIGH
        assert 0 <= body["humidity"] <= 100
        assert body["metadata"]["seq"] == i


def test_excursion_profile_breaches_middle_third():
    temps = simulator.excursion_profile(9, peak=14.0)
    assert temps[:3] == [5.0] * 3
    assert temps[3:6] == [14.0] * 3
    assert temps[6:] == [5.0] * 3
