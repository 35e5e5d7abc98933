"""
archive/ipfs.py - IPFS (Kubo HTTP RPC) archive backend.

put -> POST /api/v0/add   (pinned, CIDv1)
get -> POST /api/v0/cat?arg=<cid>

requests is blocking, so both calls run in the default executor.
"""
import asyncio
import logging
from typing import Optional

import requests

from ..errors import ArchiveError, ArchiveUnavailableError, PayloadTooSmallError
from .adapter import MIN_PAYLOAD_BYTES, Archive

log = logging.getLogger("coldchain.archive.ipfs")


class IpfsArchive(Archive):

    def __init__(self, api_url: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _add(self, data: bytes) -> str:
        resp = self.session.post(
            f"{self.api_url}/api/v0/add",
            params={"pin": "true", "cid-version": "1"},
            files={"file": ("batch.json", data, "application/json")},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        cid = resp.json().get("Hash")
        if not cid:
            raise ArchiveError(f"IPFS add returned no Hash: {resp.text[:200]}")
        return cid

    def _cat(self, cid: str) -> bytes:
        resp = self.session.post(f"{self.api_url}/api/v0/cat",
                                 params={"arg": cid}, timeout=self.timeout)
        resp.raise_for_status()
        return resp.content

    async def put(self, data: bytes, min_size: int = MIN_PAYLOAD_BYTES) -> str:
        if len(data) < min_size:
            raise PayloadTooSmallError(len(data), min_size)
        try:
            cid = await asyncio.get_running_loop().run_in_executor(None, self._add, data)
        except requests.RequestException as exc:
            raise ArchiveUnavailableError(f"IPFS add failed: {exc}") from exc
        log.info("archived %d bytes to IPFS cid=%s", len(data), cid)
        return cid

    async def get(self, cid: str) -> bytes:
        try:
            return await asyncio.get_running_loop().run_in_executor(None, self._cat, cid)
        except requests.RequestException as exc:
            raise ArchiveUnavailableError(f"IPFS cat {cid} failed: {exc}") from exc
