#!/usr/bin/env python3
"""
verifier.py - Standalone shipment integrity verifier.

Runs independently of the gateway code: it only talks HTTP and re-implements
the leaf/node hashing itself, so a bug in the gateway's Merkle code cannot
hide a bug here.

  1. GET /shipment/{key}   -> on-chain record + archived batch
  2. recompute the Merkle root over the archived samples
  3. compare with the on-chain merkleRoot

Exit status: 0 when every shipment matches, 1 otherwise.

Output: JSON + CSV to results/verify_<timestamp>.{json,csv}
"""
from __future__ import annotations

import argparse
import csv
import json
import os
import sys
import time
import unicodedata
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from eth_utils import keccak

DEFAULT_GATEWAY = os.getenv("GATEWAY_URL", "http://localhost:8000")


def build_session() -> requests.Session:
    s = requests.Session()
    s.headers["X-Role"] = "inspector"
    return s


def _sort_keys(o: Any) -> Any:
    if isinstance(o, dict):
        return {k: _sort_keys(o[k]) for k in sorted(o)}
    if isinstance(o, list):
        return [_sort_keys(v) for v in o]
    return o


def leaf(sample: Dict[str, Any]) -> bytes:
    raw = json.dumps(_sort_keys(sample), separators=(",", ":"), ensure_ascii=False)
    return keccak(unicodedata.normalize("NFC", raw).encode("utf-8"))


def _hash_pair(a: bytes, b: bytes) -> bytes:
    lo, hi = (a, b) if a <= b else (b, a)
    return keccak(lo + hi)


def compute_root(samples: List[Dict[str, Any]]) -> Optional[str]:
    """Merkle root in arrival order; odd node carried up. None for no samples."""
    if not samples:
        return None
    layer = [leaf(s) for s in samples]
    while len(layer) > 1:
        nxt: List[bytes] = []
        for i in range(0, len(layer), 2):
            if i + 1 < len(layer):
                nxt.append(_hash_pair(layer[i], layer[i + 1]))
            else:
                nxt.append(layer[i])
        layer = nxt
    return "0x" + layer[0].hex()


def check_shipment(record: Dict[str, Any]) -> Dict[str, Any]:
    """Compare a /shipment/{key} response against its own archived batch."""
    key = record.get("shipmentKey")
    on_chain = (record.get("onChain") or {}).get("merkleRoot")
    samples = record.get("batchData")
    if samples is None:
        return {"shipment_key": key, "verdict": "FAIL",
                "reason": "archived batch not available", "on_chain_root": on_chain}

    computed = compute_root(samples)
    match = computed is not None and on_chain is not None and computed.lower() == on_chain.lower()
    return {
        "shipment_key": key,
        "verdict": "PASS" if match else "FAIL",
        "reason": "" if match else "Merkle root mismatch",
        "on_chain_root": on_chain,
        "computed_root": computed,
        "samples": len(samples),
    }


def verify_shipment(session: requests.Session, base_url: str, key: str) -> Dict[str, Any]:
    t0 = time.monotonic()
    resp = session.get(f"{base_url}/shipment/{key}", timeout=20)
    elapsed = (time.monotonic() - t0) * 1000

    if resp.status_code == 404:
        return {"shipment_key": key, "verdict": "FAIL", "reason": "Shipment not found",
                "verify_ms": round(elapsed, 2)}

    resp.raise_for_status()
    result = check_shipment(resp.json())
    result["verify_ms"] = round(elapsed, 2)
    return result


def write_outputs(out_dir: Path, ts: str, results: List[Dict[str, Any]]) -> None:
    out_json = out_dir / f"verify_{ts}.json"
    out_json.write_text(json.dumps(results, indent=2))

    out_csv = out_dir / f"verify_{ts}.csv"
    keys = sorted({k for r in results for k in r})
    with open(out_csv, "w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=keys)
        w.writeheader()
        for r in results:
            w.writerow({k: r.get(k, "") for k in keys})

    passed = sum(1 for r in results if r["verdict"] == "PASS")
    print(f"\nTotal: {len(results)}  PASS: {passed}  FAIL: {len(results) - passed}")
    print(f"Results -> {out_json}  {out_csv}")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Cold-chain shipment verifier")
    parser.add_argument("keys", nargs="+", help="Shipment key(s), 0x-prefixed bytes32")
    parser.add_argument("--gateway", default=DEFAULT_GATEWAY, help="Gateway base URL")
    parser.add_argument("--out", default="results", help="Output directory for CSV/JSON")
    args = parser.parse_args(argv)

    session = build_session()
    gateway = args.gateway.rstrip("/")

    results: List[Dict[str, Any]] = []
    for key in args.keys:
        try:
            r = verify_shipment(session, gateway, key)
        except requests.RequestException as exc:
            r = {"shipment_key": key, "verdict": "FAIL", "reason": f"gateway error: {exc}"}
        results.append(r)
        print(f"  {key[:20]}...  {r['verdict']:5s}  {r.get('reason', '')[:60]}")

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    write_outputs(out_dir, datetime.now().strftime("%Y%m%d_%H%M%S"), results)

    if any(r["verdict"] != "PASS" for r in results):
        sys.exit(1)


if __name__ == "__main__":
    main()
