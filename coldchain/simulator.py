#!/usr/bin/env python3
"""
simulator.py - Cold-chain sensor simulator.

Generates refrigerated-shipment readings and posts them to the telemetry
gateway over HTTP, acting as the edge gateway role.

Usage:
    coldchain-sim --scenario normal    --shipments 1  --readings 20
    coldchain-sim --scenario excursion --shipments 1  --readings 20
    coldchain-sim --scenario load      --shipments 50 --readings 10 --rps 100
"""
import argparse
import random
import sys
import time
from typing import Optional

import requests

GATEWAY = "http://localhost:8000"

SESSION = requests.Session()
SESSION.headers["Content-Type"] = "application/json"
SESSION.headers["X-Role"] = "gateway"

# 2-8 C is the usual band for refrigerated pharma
BAND_LOW, BAND_HIGH = 2.0, 8.0


def reading(shipment_id: str, batch_id: str, seq: int,
            temperature: Optional[float] = None, rng: random.Random = random) -> dict:
    """One telemetry body in the gateway's wire format (degrees / percent)."""
    if temperature is None:
        temperature = round(rng.uniform(BAND_LOW + 0.5, BAND_HIGH - 0.5), 2)
    return {
        "shipmentId": shipment_id,
        "batchId": batch_id,
        "temperature": temperature,
        "humidity": round(rng.uniform(55.0, 75.0), 2),
        "rfidTag": f"RFID-{shipment_id}",
        "metadata": {"seq": seq, "sensor": "probe-1"},
    }


def excursion_profile(n: int, peak: float = 14.0) -> list[float]:
    """In-band readings with a breach above the band in the middle third."""
    start, end = n // 3, max(n // 3 + 1, 2 * n // 3)
    temps = []
    for i in range(n):
        if start <= i < end:
            temps.append(peak)
        else:
            temps.append(5.0)
    return temps


def submit(gateway: str, body: dict) -> dict:
    resp = SESSION.post(f"{gateway}/telemetry", json=body, timeout=30)
    resp.raise_for_status()
    return resp.json()


def _report(result: dict):
    commitment = result.get("commitment")
    if commitment:
        print(f"  COMMIT key={result['shipmentKey'][:18]}... "
              f"root={commitment['merkleRoot'][:18]}... cid={commitment['cid'][:24]}")


def run_normal(gateway: str, shipments: int, readings: int, rps: float):
    """Scenario A: in-band readings for each shipment."""
    print(f"[normal] {shipments} shipment(s) x {readings} reading(s)")
    ok, fail = 0, 0
    interval = 1.0 / rps
    for s in range(shipments):
        shipment_id = f"SHP-{s + 1:04d}"
        for i in range(readings):
            t0 = time.monotonic()
            try:
                _report(submit(gateway, reading(shipment_id, "B-001", i)))
                ok += 1
            except requests.RequestException as exc:
                fail += 1
                print(f"  FAIL: {exc}", file=sys.stderr)
            time.sleep(max(0, interval - (time.monotonic() - t0)))
    print(f"[normal] done: ok={ok} fail={fail}")


def run_excursion(gateway: str, shipments: int, readings: int, rps: float):
    """Scenario B: a temperature breach mid-run. Attestation should flag it."""
    print(f"[excursion] {shipments} shipment(s), breach in the middle third")
    profile = excursion_profile(readings)
    for s in range(shipments):
        shipment_id = f"SHP-EXC-{s + 1:04d}"
        for i, temp in enumerate(profile):
            try:
                _report(submit(gateway, reading(shipment_id, "B-001", i, temperature=temp)))
            except requests.RequestException as exc:
                print(f"  FAIL reading {i}: {exc}", file=sys.stderr)
            time.sleep(1.0 / rps)
    print("[excursion] done - run coldchain-verify against the shipment key")


def run_load(gateway: str, shipments: int, readings: int, rps: float):
    """Scenario C: many shipments interleaved, with detailed timing."""
    print(f"[load] {shipments} shipments x {readings} readings at {rps} req/s")
    latencies = []
    fail = 0
    for i in range(readings):
        for s in range(shipments):
            t0 = time.monotonic()
            try:
                submit(gateway, reading(f"SHP-LOAD-{s + 1:04d}", "B-001", i))
                latencies.append((time.monotonic() - t0) * 1000)
            except requests.RequestException as exc:
                fail += 1
                print(f"  FAIL: {exc}", file=sys.stderr)
            time.sleep(max(0, 1.0 / rps - (time.monotonic() - t0)))
    if latencies:
        latencies.sort()
        p95 = latencies[int(len(latencies) * 0.95)]
        print(f"[load] done: ok={len(latencies)} fail={fail} "
              f"avg={sum(latencies) / len(latencies):.1f}ms p95={p95:.1f}ms")
    else:
        print(f"[load] done: ok=0 fail={fail}")


SCENARIOS = {
    "normal":    run_normal,
    "excursion": run_excursion,
    "load":      run_load,
}


def main(argv=None):
    parser = argparse.ArgumentParser(description="Cold-chain sensor simulator")
    parser.add_argument("--scenario", default="normal", choices=list(SCENARIOS))
    parser.add_argument("--shipments", type=int, default=1)
    parser.add_argument("--readings", type=int, default=20,
                        help="Readings per shipment")
    parser.add_argument("--rps", type=float, default=5.0,
                        help="Requests per second")
    parser.add_argument("--flush", action="store_true",
                        help="Force-flush remaining batches when done")
    parser.add_argument("--gateway", default=GATEWAY)
    args = parser.parse_args(argv)

    gateway = args.gateway.rstrip("/")
    print(f"Gateway: {gateway}  scenario={args.scenario}")

    try:
        h = SESSION.get(f"{gateway}/health", timeout=5).json()
        print(f"Connected - channel={h.get('channel')} ledger={h.get('ledger_backend')}")
    except requests.RequestException as exc:
        print(f"Cannot reach gateway: {exc}", file=sys.stderr)
        sys.exit(1)

    SCENARIOS[args.scenario](gateway, args.shipments, args.readings, args.rps)

    if args.flush:
        resp = SESSION.post(f"{gateway}/batches/flush", timeout=60)
        resp.raise_for_status()
        print(f"Flushed {resp.json().get('flushed', 0)} remaining batch(es)")


if __name__ == "__main__":
    main()
