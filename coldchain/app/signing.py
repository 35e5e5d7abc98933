"""
Gateway signing module.

The gateway signs every batch commitment with its secp256k1 key using
EIP-712 typed data. The registry contract recomputes the same struct hash
and recovers the signer, so:

  - a signature only verifies against the deployment it was made for
    (chainId + verifyingContract are in the domain separator)
  - no field can be swapped after signing (every field is in the struct)
  - a signature can be replayed only while its nonce is still current

Nonces are never cached here. Every submission re-reads the registry
counter for (gateway, channel) right before signing. Relayed submissions
also count the nonces already handed to messages still in the relay queue,
since the async counter only moves once the relayer lands them.
"""
import logging
import threading
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address

from .errors import ConfigError, SigningUnavailableError
from .hashing import to_bytes32
from .schemas import Channel, DomainInfo, Signature, SignedSubmission, SubmissionFields

log = logging.getLogger("coldchain.signing")

DOMAIN_NAME = "ShipmentRegistryEVVM"
DOMAIN_VERSION = "1"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

RECORD_TELEMETRY_TYPE = [
    {"name": "shipmentKey", "type": "bytes32"},
    {"name": "merkleRoot", "type": "bytes32"},
    {"name": "cid", "type": "string"},
    {"name": "temperature", "type": "int256"},
    {"name": "humidity", "type": "uint256"},
    {"name": "rfidTag", "type": "string"},
    {"name": "nonce", "type": "uint256"},
    {"name": "isAsync", "type": "bool"},
]


def typed_data(domain: DomainInfo, fields: SubmissionFields,
               nonce: int, channel: Channel) -> dict:
    """Full EIP-712 message for one RecordTelemetry submission."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "RecordTelemetry": RECORD_TELEMETRY_TYPE,
        },
        "primaryType": "RecordTelemetry",
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": int(domain.chain_id),
            "verifyingContract": to_checksum_address(domain.contract_address),
        },
        "message": {
            "shipmentKey": to_bytes32(fields.fingerprint),
            "merkleRoot": to_bytes32(fields.merkle_root),
            "cid": fields.cid,
            "temperature": int(fields.temperature),
            "humidity": int(fields.humidity),
            "rfidTag": fields.rfid_tag,
            "nonce": int(nonce),
            "isAsync": channel.is_async,
        },
    }


def _hex32(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def recover_signer(domain: DomainInfo, submission: SignedSubmission) -> str:
    """Return the checksum address that produced submission.signature."""
    msg = encode_typed_data(full_message=typed_data(
        domain, submission, submission.nonce, submission.channel))
    sig = submission.signature
    return Account.recover_message(msg, vrs=(sig.v, int(sig.r, 16), int(sig.s, 16)))


class GatewaySigner:
    """Holds the gateway private key. The key never leaves this object."""

    def __init__(self, private_key: str):
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigError(f"GATEWAY_PRIVATE_KEY is not a valid secp256k1 key: {exc}") from None

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed(self, message: dict) -> Signature:
        signed = self._account.sign_message(encode_typed_data(full_message=message))
        return Signature(v=signed.v, r=_hex32(signed.r), s=_hex32(signed.s))


class NonceCoordinator:
    """Reads registry nonces and produces authenticated submissions.

    Neither operation retries: registry and signing failures surface to
    the pipeline, which owns the retry policy.
    """

    def __init__(self, registry, signer: Optional[GatewaySigner]):
        self.registry = registry
        self.signer = signer
        self._lock = threading.Lock()
        self._reserved: dict[tuple[str, Channel], int] = {}

    @property
    def identity(self) -> Optional[str]:
        return self.signer.address if self.signer else None

    def require_signer(self) -> GatewaySigner:
        if self.signer is None:
            raise SigningUnavailableError("no gateway private key configured (GATEWAY_PRIVATE_KEY)")
        return self.signer

    async def get_current_nonce(self, identity: str, channel: Channel) -> int:
        return int(await self.registry.get_nonce(identity, channel))

    async def reserve_nonce(self, identity: str, channel: Channel) -> int:
        """Nonce for a submission that reaches the registry later (relayed).

        The registry counter only moves when a relayed submission lands, so
        nonces already handed to queued messages are counted on top of it:
        max(registry nonce, last reserved + 1).
        """
        current = await self.get_current_nonce(identity, channel)
        key = (to_checksum_address(identity), Channel(channel))
        with self._lock:
            last = self._reserved.get(key)
            nonce = current if last is None else max(current, last + 1)
            self._reserved[key] = nonce
        return nonce

    async def sign(self, fields: SubmissionFields, nonce: int, channel: Channel) -> SignedSubmission:
        signer = self.require_signer()
        domain = await self.registry.get_domain_info()
        signature = signer.sign_typed(typed_data(domain, fields, nonce, channel))
        log.debug("signed fingerprint=%s nonce=%d channel=%s",
                  fields.fingerprint[:18], nonce, channel.value)
        return SignedSubmission(
            **fields.model_dump(),
            nonce=nonce,
            channel=channel,
            signature=signature,
            gateway=signer.address,
        )
