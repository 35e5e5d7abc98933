"""
ledger/adapter.py - Abstract registry interface.

The pipeline talks to Registry without knowing whether the backend is the
deployed EVM contract or the in-memory stub. Swapping backends requires
only changing LEDGER_BACKEND, not the pipeline logic.

Registry semantics the pipeline relies on:
  - two independent counters per identity: sync and async
  - a counter advances by exactly 1 on each accepted submission, never otherwise
  - submit() rejects with unauthorized-signer, nonce-mismatch or malformed-payload
"""
import abc
import logging
import threading
import time
from typing import Iterable, Optional

from eth_utils import is_address, to_checksum_address

from ..hashing import keccak_hex
from ..schemas import (
    Channel, DomainInfo, RegistryRecord, SignedSubmission, SubmissionResult, is_hex32,
)
from ..signing import recover_signer

log = logging.getLogger("coldchain.ledger")


class Registry(abc.ABC):

    @abc.abstractmethod
    async def get_nonce(self, identity: str, channel: Channel) -> int:
        ...

    @abc.abstractmethod
    async def get_domain_info(self) -> DomainInfo:
        ...

    @abc.abstractmethod
    async def submit(self, signed: SignedSubmission) -> SubmissionResult:
        ...

    @abc.abstractmethod
    async def get_record(self, fingerprint: str) -> Optional[RegistryRecord]:
        ...


#  Stub backend

class StubRegistry(Registry):
    """In-memory registry with the contract's acceptance rules.

    Every instance owns its own state: two gateways (or two tests) never
    see each other's nonces or records.
    """

    def __init__(self, authorized: Iterable[str] = (),
                 chain_id: int = 31337,
                 contract_address: str = "0x8DfD8F3b766085ea072FB4C5EE60669e25CC915C"):
        self._lock = threading.Lock()
        self._authorized = {to_checksum_address(a) for a in authorized}
        self._nonces: dict[tuple[str, Channel], int] = {}
        self._records: dict[str, RegistryRecord] = {}
        self._tx_counter = 0
        self.domain = DomainInfo(chain_id=chain_id,
                                 contract_address=to_checksum_address(contract_address))

    def authorize(self, address: str):
        with self._lock:
            self._authorized.add(to_checksum_address(address))

    def revoke(self, address: str):
        with self._lock:
            self._authorized.discard(to_checksum_address(address))

    async def get_nonce(self, identity: str, channel: Channel) -> int:
        key = (to_checksum_address(identity), Channel(channel))
        with self._lock:
            return self._nonces.get(key, 0)

    async def get_domain_info(self) -> DomainInfo:
        return self.domain

    async def submit(self, signed: SignedSubmission) -> SubmissionResult:
        if not (is_hex32(signed.fingerprint) and is_hex32(signed.merkle_root)) \
                or not signed.cid or not is_address(signed.gateway):
            return SubmissionResult(accepted=False, reason="malformed-payload")
        try:
            signer = recover_signer(self.domain, signed)
        except (ValueError, TypeError) as exc:
            log.warning("stub registry: signature recovery failed: %s", exc)
            return SubmissionResult(accepted=False, reason="malformed-payload")

        with self._lock:
            if signer not in self._authorized:
                return SubmissionResult(accepted=False, reason="unauthorized-signer")
            key = (signer, signed.channel)
            current = self._nonces.get(key, 0)
            if signed.nonce != current:
                return SubmissionResult(accepted=False, reason="nonce-mismatch")

            self._nonces[key] = current + 1
            self._tx_counter += 1
            tx_hash = keccak_hex(f"stub-tx:{self._tx_counter}:{signed.fingerprint}".encode())
            self._records[signed.fingerprint.lower()] = RegistryRecord(
                gateway=signer,
                merkle_root=signed.merkle_root.lower(),
                cid=signed.cid,
                timestamp=int(time.time()),
                temperature=signed.temperature,
                humidity=signed.humidity,
                rfid_tag=signed.rfid_tag,
            )

        log.info("stub registry accepted key=%s nonce=%d channel=%s tx=%s",
                 signed.fingerprint[:18], signed.nonce, signed.channel.value, tx_hash[:18])
        return SubmissionResult(accepted=True, tx_hash=tx_hash)

    async def get_record(self, fingerprint: str) -> Optional[RegistryRecord]:
        with self._lock:
            return self._records.get(fingerprint.lower())
