"""
schemas.py - Telemetry, submission and attestation data contracts.

Wire names are camelCase (shipmentId, rfidTag, ...) because the same
field names are hashed into Merkle leaves and re-hashed by browser and
on-chain verifiers. Python attributes stay snake_case.

Temperature and humidity are integers scaled by 100 everywhere past the
HTTP boundary (2550 == 25.50). TelemetryIn is the only place that sees
floating-point readings.
"""
import math
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SCALE = 100
HEX32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def scale(value: float) -> int:
    """Scale a reading by 100, rounding half up."""
    return int(math.floor(value * SCALE + 0.5))


def is_hex32(value: str) -> bool:
    return bool(HEX32_RE.match(value or ""))


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Channel(str, Enum):
    """Nonce track. SYNC is gateway-paid, ASYNC is relayed (gasless)."""
    SYNC  = "sync"
    ASYNC = "async"

    @property
    def is_async(self) -> bool:
        return self is Channel.ASYNC


class Sample(WireModel):
    """One sensor reading. Immutable once it enters a batch."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    shipment_id: str = Field(..., min_length=1, max_length=128)
    batch_id:    str = Field(..., min_length=1, max_length=128)
    temperature: int
    humidity:    int = Field(..., ge=0)
    rfid_tag:    str = ""
    metadata:    dict[str, Any] = Field(default_factory=dict)
    timestamp:   int = Field(default=0, description="ms since epoch, stamped by the batcher")

    def canonical(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TelemetryIn(WireModel):
    """Input schema for POST /telemetry. Readings are in degrees / percent."""
    shipment_id: str = Field(..., min_length=1, max_length=128)
    batch_id:    str = Field(..., min_length=1, max_length=128)
    temperature: float = Field(..., ge=-273.15, le=1000)
    humidity:    float = Field(..., ge=0, le=100)
    rfid_tag:    Optional[str] = Field(default=None, max_length=128)
    metadata:    Optional[dict[str, Any]] = None

    @field_validator("shipment_id", "batch_id")
    @classmethod
    def strip_ids(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("identifier must not be blank")
        return v

    def to_sample(self) -> Sample:
        return Sample(
            shipment_id=self.shipment_id,
            batch_id=self.batch_id,
            temperature=scale(self.temperature),
            humidity=scale(self.humidity),
            rfid_tag=self.rfid_tag or "",
            metadata=self.metadata or {},
        )


class Signature(WireModel):
    v: int
    r: str
    s: str


class DomainInfo(WireModel):
    chain_id: int
    contract_address: str


class SubmissionFields(WireModel):
    """The commitment content that gets signed (minus nonce and channel)."""
    fingerprint: str
    merkle_root: str
    cid:         str
    temperature: int
    humidity:    int = Field(..., ge=0)
    rfid_tag:    str = ""


class SignedSubmission(SubmissionFields):
    nonce:     int = Field(..., ge=0)
    channel:   Channel = Channel.SYNC
    signature: Signature
    gateway:   str


class SubmissionResult(WireModel):
    accepted: bool
    reason:   Optional[str] = None
    tx_hash:  Optional[str] = None
    queued:   bool = False


class RegistryRecord(WireModel):
    gateway:     str
    merkle_root: str
    cid:         str
    timestamp:   int
    temperature: int
    humidity:    int
    rfid_tag:    str = ""


class AttestationType(str, Enum):
    DATA_VALIDITY        = "data-validity"
    THRESHOLD_COMPLIANCE = "threshold-compliance"
    MERKLE_INTEGRITY     = "merkle-integrity"
    ARCHIVE_VERIFIED     = "archive-verified"
    FULL_INTEGRITY       = "full-integrity"


class AttestationTask(WireModel):
    task_id:    str
    type:       AttestationType
    status:     str = "pending"   # pending | completed
    created_at: int
    result:     Optional[str] = None


class AttestationResult(WireModel):
    task_id:   str
    completed: bool
    result:    Optional[str] = None
    timestamp: Optional[int] = None
    error:     Optional[str] = None


class BatchCommitment(WireModel):
    """What processBatch hands back once the commitment is durable."""
    fingerprint:  str
    cid:          str
    merkle_root:  str
    nonce:        int
    channel:      Channel
    sample_count: int
    temperature:  int
    humidity:     int
    rfid_tag:     str = ""
    submission:   SubmissionResult
    attestation_tasks: list[AttestationTask] = Field(default_factory=list)
    attestation_error: Optional[str] = None

    @property
    def attestation_ok(self) -> bool:
        return self.attestation_error is None


class VerifyRequest(WireModel):
    cid:          str = Field(..., min_length=1)
    merkle_root:  str
    shipment_key: str
    temp_min:     int = -2000
    temp_max:     int = 800

    @field_validator("merkle_root", "shipment_key")
    @classmethod
    def check_hex32(cls, v: str) -> str:
        if not is_hex32(v):
            raise ValueError("expected 0x-prefixed 64-char hex")
        return v.lower()
