"""
Unit tests for batch encoding and the archive backends.
"""
import json

import pytest
import requests

from coldchain.app.archive.adapter import MIN_PAYLOAD_BYTES, MemoryArchive, decode_batch, encode_batch
from coldchain.app.archive.ipfs import IpfsArchive
from coldchain.app.errors import ArchiveError, ArchiveUnavailableError, PayloadTooSmallError

from conftest import make_sample


def test_small_batch_is_padded_to_minimum_and_still_parses():
    data = encode_batch([make_sample()], min_size=4096)
    assert len(data) == 4096
    assert data.endswith(b" ")
    assert decode_batch(data) == [make_sample().canonical()]


def test_default_minimum_is_met_for_one_sample():
    assert len(encode_batch([make_sample()])) >= MIN_PAYLOAD_BYTES


def test_large_batch_is_not_padded():
    batch = [make_sample(temperature=i) for i in range(20)]
    data = encode_batch(batch)
    assert not data.endswith(b" ")
    assert json.loads(data) == [s.canonical() for s in batch]


def test_decode_rejects_non_batch_payloads():
    with pytest.raises(ArchiveError):
        decode_batch(b"not json")
    with pytest.raises(ArchiveError):
        decode_batch(b'{"a": 1}')


@pytest.mark.anyio
async def test_memory_archive_round_trip_is_content_addressed():
    archive = MemoryArchive()
    data = encode_batch([make_sample()])
    cid = await archive.put(data)
    assert cid.startswith("mem-")
    assert await archive.put(data) == cid
    assert await archive.get(cid) == data
    assert len(archive) == 1


@pytest.mark.anyio
async def test_memory_archive_refuses_small_payload():
    with pytest.raises(PayloadTooSmallError) as exc_info:
        await MemoryArchive().put(b"[]")
    assert exc_info.value.size == 2
    assert exc_info.value.min_size == MIN_PAYLOAD_BYTES


@pytest.mark.anyio
async def test_memory_archive_unknown_cid():
    with pytest.raises(ArchiveError):
        await MemoryArchive().get("mem-missing")


class _FakeResponse:
    def __init__(self, payload=None, content=b"", status=200):
        self._payload = payload
        self.content = content
        self.text = json.dumps(payload) if payload is not None else ""
        self.status_code = status

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class _FakeSession:
    def __init__(self):
        self.blobs = {}
        self.down = False

    def post(self, url, params=None, files=None, timeout=None):
        if self.down:
            raise requests.ConnectionError("connection refused")
        if url.endswith("/api/v0/add"):
            data = files["file"][1]
            cid = f"bafy{len(self.blobs)}"
            self.blobs[cid] = data
            return _FakeResponse({"Hash": cid})
        if url.endswith("/api/v0/cat"):
            return _FakeResponse(content=self.blobs[params["arg"]])
        return _FakeResponse(status=404)


@pytest.mark.anyio
async def test_ipfs_archive_add_and_cat():
    session = _FakeSession()
    archive = IpfsArchive("http://ipfs:5001/", session=session)
    data = encode_batch([make_sample()])
    cid = await archive.put(data)
    assert cid == "bafy0"
    assert await archive.get(cid) == data


@pytest.mark.anyio
async def test_ipfs_archive_unreachable():
    session = _FakeSession()
    session.down = True
    archive = IpfsArchive("http://ipfs:5001", session=session)
    with pytest.raises(ArchiveUnavailableError):
        await archive.put(encode_batch([make_sample()]))


@pytest.mark.anyio
async def test_ipfs_archive_checks_size_before_network():
    session = _FakeSession()
    session.down = True
    with pytest.raises(PayloadTooSmallError):
        await IpfsArchive("http://ipfs:5001", session=session).put(b"x")
