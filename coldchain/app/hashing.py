"""
Canonical hashing for the telemetry gateway.

All sample hashing goes through this module to guarantee consistency.
Two samples that are semantically identical always produce the same bytes,
whatever order their fields arrived in.

Canonicalisation rules:
  - Keys sorted alphabetically (recursive)
  - No extra whitespace
  - Unicode normalised to NFC
  - Encoding: UTF-8

Digests are keccak-256, 0x-prefixed lowercase hex, so they can be compared
directly with bytes32 values read from the registry contract.
"""
import json
import time
import unicodedata
from typing import Any

from eth_abi import encode
from eth_utils import keccak


def _sort_keys_recursive(obj):
    """Recursively sort dict keys for canonical serialisation."""
    if isinstance(obj, dict):
        return {k: _sort_keys_recursive(obj[k]) for k in sorted(obj.keys())}
    if isinstance(obj, list):
        return [_sort_keys_recursive(v) for v in obj]
    return obj


def canonical_json(payload: dict[str, Any]) -> str:
    """Return the canonical JSON string of a payload dict."""
    normalised = _sort_keys_recursive(payload)
    raw = json.dumps(normalised, separators=(",", ":"), ensure_ascii=False)
    return unicodedata.normalize("NFC", raw)


def canonical_bytes(payload: dict[str, Any]) -> bytes:
    return canonical_json(payload).encode("utf-8")


def keccak_hex(data: bytes) -> str:
    return "0x" + keccak(data).hex()


def to_bytes32(hex_str: str) -> bytes:
    """Convert a hex digest (with or without 0x) to exactly 32 bytes."""
    s = (hex_str or "").strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if len(s) != 64:
        raise ValueError(f"expected 32-byte hex, got {len(s)} chars")
    return bytes.fromhex(s)


def shipment_fingerprint(shipment_id: str, batch_id: str) -> str:
    """keccak256(abi.encode(string, string)) of the shipment/batch pair.

    ABI encoding length-prefixes each string, so ("AB", "C") and
    ("A", "BC") never collide. Matches the registry's on-chain key.
    """
    return keccak_hex(encode(["string", "string"], [shipment_id, batch_id]))


def now_ms() -> int:
    return time.time_ns() // 1_000_000
