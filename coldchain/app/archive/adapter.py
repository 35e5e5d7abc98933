"""
archive/adapter.py - Content-addressed archive interface.

Raw batches are archived before anything is committed on-chain: the
registry record stores the CID, so an unarchived batch must never be
committed.

The archive refuses payloads under MIN_PAYLOAD_BYTES. Padding is the
caller's job; encode_batch() pads with trailing spaces so the payload is
still valid JSON.
"""
import abc
import hashlib
import json
import logging
import threading
from typing import Any, Sequence

from ..errors import ArchiveError, PayloadTooSmallError
from ..schemas import Sample

log = logging.getLogger("coldchain.archive")

MIN_PAYLOAD_BYTES = 127


def encode_batch(samples: Sequence[Sample], min_size: int = MIN_PAYLOAD_BYTES) -> bytes:
    """Serialize a batch as a JSON array, padded up to min_size bytes."""
    raw = json.dumps([s.canonical() for s in samples], indent=2, ensure_ascii=False).encode("utf-8")
    if len(raw) < min_size:
        raw += b" " * (min_size - len(raw))
    return raw


def decode_batch(data: bytes) -> list[dict[str, Any]]:
    """Parse an archived batch back into sample dicts (wire field names)."""
    try:
        parsed = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ArchiveError(f"archived payload is not a JSON batch: {exc}") from exc
    if not isinstance(parsed, list) or not all(isinstance(s, dict) for s in parsed):
        raise ArchiveError("archived payload is not a list of samples")
    return parsed


class Archive(abc.ABC):

    @abc.abstractmethod
    async def put(self, data: bytes, min_size: int = MIN_PAYLOAD_BYTES) -> str:
        """Store bytes and return their content id."""

    @abc.abstractmethod
    async def get(self, cid: str) -> bytes:
        ...


#  Memory backend

class MemoryArchive(Archive):
    """In-process content-addressed store. CID = "mem-" + sha256(bytes)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blobs: dict[str, bytes] = {}

    async def put(self, data: bytes, min_size: int = MIN_PAYLOAD_BYTES) -> str:
        if len(data) < min_size:
            raise PayloadTooSmallError(len(data), min_size)
        cid = "mem-" + hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[cid] = bytes(data)
        log.info("archived %d bytes cid=%s", len(data), cid[:20])
        return cid

    async def get(self, cid: str) -> bytes:
        with self._lock:
            data = self._blobs.get(cid)
        if data is None:
            raise ArchiveError(f"cid {cid} not found")
        return data

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)
