"""
attestation.py - Off-chain attestation tasks and the checks behind them.

After a batch is committed the gateway fans out one task per attestation
type. Attestors (an oracle / relay network) pick the tasks up, run the
checks below against the archived batch, and publish a result keyed by
task id. The gateway only submits and later polls; attestation never
gates the commitment itself.

Task payload (ABI):
  (string type, string cid, bytes32 merkleRoot, bytes32 shipmentKey,
   int256 temperature, int256 tempMin, int256 tempMax)
Task id:
  keccak256(abi.encode(string type, bytes payload, uint256 createdAtMs))
"""
import abc
import asyncio
import logging
import threading
from typing import Any, Callable, Optional

from eth_abi import encode

from .archive.adapter import Archive, decode_batch
from .errors import ArchiveError, AttestorUnavailableError, EmptyInputError
from .hashing import keccak_hex, now_ms, to_bytes32
from .merkle import compute_root
from .schemas import AttestationResult, AttestationTask, AttestationType

log = logging.getLogger("coldchain.attestation")

DEFAULT_TEMP_MIN = -20 * 100   # -20.00 C
DEFAULT_TEMP_MAX = 8 * 100     #   8.00 C (cold chain)

REQUIRED_SAMPLE_FIELDS = ("temperature", "humidity", "timestamp")


def build_task_payload(task_type: AttestationType, cid: str, merkle_root: str,
                       fingerprint: str, temperature: int,
                       temp_min: int = DEFAULT_TEMP_MIN,
                       temp_max: int = DEFAULT_TEMP_MAX) -> bytes:
    return encode(
        ["string", "string", "bytes32", "bytes32", "int256", "int256", "int256"],
        [AttestationType(task_type).value, cid, to_bytes32(merkle_root),
         to_bytes32(fingerprint), int(temperature), int(temp_min), int(temp_max)],
    )


def derive_task_id(task_type: AttestationType, payload: bytes, created_at_ms: int) -> str:
    return keccak_hex(encode(["string", "bytes", "uint256"],
                             [AttestationType(task_type).value, payload, int(created_at_ms)]))


class Attestor(abc.ABC):

    @abc.abstractmethod
    async def submit_task(self, task_type: AttestationType, payload: bytes) -> str:
        """Fire-and-forget submission. Returns the task id."""

    @abc.abstractmethod
    async def get_result(self, task_id: str) -> AttestationResult:
        ...


class MemoryAttestor(Attestor):
    """Records tasks in-process; resolve() plays the role of the attestor network."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._lock = threading.Lock()
        self._tasks: dict[str, tuple[AttestationType, bytes]] = {}
        self._results: dict[str, tuple[str, int]] = {}

    async def submit_task(self, task_type: AttestationType, payload: bytes) -> str:
        with self._lock:
            created = self._clock()
            task_id = derive_task_id(task_type, payload, created)
            # same type+payload within one millisecond: bump the timestamp
            while task_id in self._tasks:
                created += 1
                task_id = derive_task_id(task_type, payload, created)
            self._tasks[task_id] = (AttestationType(task_type), payload)
        log.debug("attestation task %s type=%s", task_id[:18], AttestationType(task_type).value)
        return task_id

    def resolve(self, task_id: str, result: str, timestamp: Optional[int] = None):
        with self._lock:
            if task_id not in self._tasks:
                raise KeyError(task_id)
            self._results[task_id] = (result, timestamp if timestamp is not None else self._clock())

    def pending(self) -> list[str]:
        with self._lock:
            return [t for t in self._tasks if t not in self._results]

    async def get_result(self, task_id: str) -> AttestationResult:
        with self._lock:
            known = task_id in self._tasks
            done = self._results.get(task_id)
        if not known:
            return AttestationResult(task_id=task_id, completed=False, error="unknown task")
        if done is None:
            return AttestationResult(task_id=task_id, completed=False)
        result, ts = done
        return AttestationResult(task_id=task_id, completed=True, result=result, timestamp=ts)


RELAY_ABI = [
    {
        "inputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
        "name": "responses",
        "outputs": [
            {"internalType": "uint48", "name": "timestamp", "type": "uint48"},
            {"internalType": "uint256", "name": "result", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


class RelayAttestor(Attestor):
    """Attestation relay contract client.

    Task ids are derived locally from the published payload; relay
    validators answer into responses(taskId), which get_result() reads.
    """

    def __init__(self, rpc_url: str, relay_address: Optional[str],
                 clock: Callable[[], int] = now_ms):
        self.rpc_url = rpc_url
        self.relay_address = relay_address
        self._clock = clock
        self._contract = None

    def _connect(self):
        if not self.relay_address:
            raise AttestorUnavailableError("ATTESTATION_RELAY_ADDRESS not set - attestations disabled")
        if self._contract is None:
            from web3 import Web3
            w3 = Web3(Web3.HTTPProvider(self.rpc_url))
            self._contract = w3.eth.contract(
                address=Web3.to_checksum_address(self.relay_address), abi=RELAY_ABI)
            log.info("attestation relay bound: %s", self.relay_address)
        return self._contract

    async def submit_task(self, task_type: AttestationType, payload: bytes) -> str:
        self._connect()
        task_id = derive_task_id(task_type, payload, self._clock())
        log.info("attestation task %s type=%s published", task_id[:18], AttestationType(task_type).value)
        return task_id

    async def get_result(self, task_id: str) -> AttestationResult:
        contract = self._connect()
        try:
            ts, result = await asyncio.get_running_loop().run_in_executor(
                None, contract.functions.responses(to_bytes32(task_id)).call)
        except Exception as exc:
            return AttestationResult(task_id=task_id, completed=False, error=str(exc))
        if int(ts) == 0:
            return AttestationResult(task_id=task_id, completed=False)
        return AttestationResult(task_id=task_id, completed=True,
                                 result=str(result), timestamp=int(ts))


async def fan_out(attestor: Attestor, *, fingerprint: str, cid: str, merkle_root: str,
                  temperature: int, temp_min: int = DEFAULT_TEMP_MIN,
                  temp_max: int = DEFAULT_TEMP_MAX,
                  clock: Callable[[], int] = now_ms) -> list[AttestationTask]:
    """Submit exactly one task per attestation type. Raises on the first failure."""
    tasks = []
    for task_type in AttestationType:
        payload = build_task_payload(task_type, cid, merkle_root, fingerprint,
                                     temperature, temp_min, temp_max)
        task_id = await attestor.submit_task(task_type, payload)
        tasks.append(AttestationTask(task_id=task_id, type=task_type, created_at=clock()))
    return tasks


class AttestationIndex:
    """fingerprint -> attestation tasks created for it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_fingerprint: dict[str, list[AttestationTask]] = {}

    def add(self, fingerprint: str, tasks: list[AttestationTask]):
        with self._lock:
            self._by_fingerprint.setdefault(fingerprint.lower(), []).extend(tasks)

    def get(self, fingerprint: str) -> list[AttestationTask]:
        with self._lock:
            return list(self._by_fingerprint.get(fingerprint.lower(), []))


#  Checks run by attestors (and by POST /verify on demand)

async def _load(archive: Archive, cid: str) -> list[dict[str, Any]]:
    return decode_batch(await archive.get(cid))


async def verify_sensor_data(archive: Archive, cid: str, expected_root: str) -> dict[str, Any]:
    try:
        batch = await _load(archive, cid)
        if not batch:
            return {"valid": False, "reason": "Invalid batch data format"}
        computed = compute_root(batch)
        if computed.lower() != expected_root.lower():
            return {"valid": False,
                    "reason": f"Merkle root mismatch: expected {expected_root}, got {computed}"}
        for sample in batch:
            if any(f not in sample for f in REQUIRED_SAMPLE_FIELDS):
                return {"valid": False, "reason": "Invalid sample structure"}
        return {"valid": True, "batch_size": len(batch), "merkle_root": computed}
    except ArchiveError as exc:
        return {"valid": False, "reason": f"Verification error: {exc}"}


async def verify_temperature_threshold(archive: Archive, cid: str,
                                       temp_min: int = DEFAULT_TEMP_MIN,
                                       temp_max: int = DEFAULT_TEMP_MAX) -> dict[str, Any]:
    try:
        batch = await _load(archive, cid)
    except ArchiveError as exc:
        return {"valid": False, "reason": f"Temperature verification error: {exc}"}
    violations = []
    for sample in batch:
        temp = sample.get("temperature")
        if not isinstance(temp, int) or temp < temp_min or temp > temp_max:
            violations.append({
                "timestamp": sample.get("timestamp"),
                "temperature": temp,
                "threshold": {"min": temp_min, "max": temp_max},
            })
    return {
        "valid": not violations,
        "violations": violations,
        "total_samples": len(batch),
        "violation_count": len(violations),
    }


async def verify_merkle_integrity(archive: Archive, cid: str, expected_root: str) -> dict[str, Any]:
    try:
        computed = compute_root(await _load(archive, cid))
    except (ArchiveError, EmptyInputError) as exc:
        return {"valid": False, "reason": f"Merkle verification error: {exc}"}
    match = computed.lower() == expected_root.lower()
    return {"valid": match, "expected_root": expected_root,
            "computed_root": computed, "match": match}


async def verify_archive_dataset(archive: Archive, cid: str) -> dict[str, Any]:
    try:
        data = await archive.get(cid)
    except ArchiveError as exc:
        return {"valid": False, "cid": cid, "accessible": False,
                "reason": f"Archive fetch error: {exc}"}
    return {"valid": True, "cid": cid, "accessible": True, "data_size": len(data)}


async def verify_shipment_integrity(archive: Archive, *, cid: str, merkle_root: str,
                                    shipment_key: str,
                                    temp_min: int = DEFAULT_TEMP_MIN,
                                    temp_max: int = DEFAULT_TEMP_MAX) -> dict[str, Any]:
    checks = {
        "archive":     await verify_archive_dataset(archive, cid),
        "merkle":      await verify_merkle_integrity(archive, cid, merkle_root),
        "temperature": await verify_temperature_threshold(archive, cid, temp_min, temp_max),
        "sensor_data": await verify_sensor_data(archive, cid, merkle_root),
    }
    return {
        "cid": cid,
        "merkle_root": merkle_root,
        "shipment_key": shipment_key,
        "checks": checks,
        "overall_valid": all(c["valid"] for c in checks.values()),
    }
