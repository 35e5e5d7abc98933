"""
ledger/evm.py - Shipment registry adapter using web3.py.

Connects to an EVM node via JSON-RPC, binds the deployed ShipmentRegistry
contract, and calls recordTelemetryWithSignature(...) with the gateway's
EIP-712 signature.

The account that sends the transaction (and pays gas) does not need to be
the gateway: the contract authenticates the signature, not msg.sender.
For the sync channel the gateway sends its own transactions; a relayer
passes its own key here.

All web3 calls are blocking and run in the default executor.
"""
import asyncio
import logging
from typing import Optional

from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.middleware import ExtraDataToPOAMiddleware

from ..errors import RegistryUnavailableError
from ..hashing import to_bytes32
from ..schemas import Channel, DomainInfo, RegistryRecord, SignedSubmission, SubmissionResult
from .adapter import Registry

log = logging.getLogger("coldchain.ledger.evm")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SHIPMENT_REGISTRY_ABI = [
    {
        "inputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
        "name": "records",
        "outputs": [
            {"internalType": "address", "name": "gateway", "type": "address"},
            {"internalType": "bytes32", "name": "merkleRoot", "type": "bytes32"},
            {"internalType": "string", "name": "cid", "type": "string"},
            {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
            {"internalType": "int256", "name": "temperature", "type": "int256"},
            {"internalType": "uint256", "name": "humidity", "type": "uint256"},
            {"internalType": "string", "name": "rfidTag", "type": "string"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "shipmentKey", "type": "bytes32"},
            {"internalType": "bytes32", "name": "merkleRoot", "type": "bytes32"},
            {"internalType": "string", "name": "cid", "type": "string"},
            {"internalType": "int256", "name": "temperature", "type": "int256"},
            {"internalType": "uint256", "name": "humidity", "type": "uint256"},
            {"internalType": "string", "name": "rfidTag", "type": "string"},
            {"internalType": "uint256", "name": "nonce", "type": "uint256"},
            {"internalType": "bool", "name": "isAsync", "type": "bool"},
            {"internalType": "uint8", "name": "v", "type": "uint8"},
            {"internalType": "bytes32", "name": "r", "type": "bytes32"},
            {"internalType": "bytes32", "name": "s", "type": "bytes32"},
        ],
        "name": "recordTelemetryWithSignature",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "gateway", "type": "address"}],
        "name": "getSyncNonce",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "gateway", "type": "address"}],
        "name": "getAsyncNonce",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def classify_revert(message: str) -> str:
    """Map a contract revert message to a registry rejection reason."""
    m = (message or "").lower()
    if "nonce" in m:
        return "nonce-mismatch"
    if "signature" in m or "signer" in m or "unauthori" in m or "gateway" in m:
        return "unauthorized-signer"
    return "malformed-payload"


class EvmRegistry(Registry):

    def __init__(self, rpc_url: str, contract_address: str,
                 sender_key: Optional[str] = None, poa: bool = False,
                 receipt_timeout: int = 60):
        self.rpc_url = rpc_url
        self.contract_address = to_checksum_address(contract_address)
        self._sender_key = sender_key
        self._poa = poa
        self._receipt_timeout = receipt_timeout
        self._w3: Optional[Web3] = None
        self._contract = None

    def _connect(self):
        if self._w3 is not None:
            return
        w3 = Web3(Web3.HTTPProvider(self.rpc_url))
        if self._poa:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self._contract = w3.eth.contract(address=self.contract_address, abi=SHIPMENT_REGISTRY_ABI)
        self._w3 = w3
        log.info("registry connected: rpc=%s contract=%s", self.rpc_url, self.contract_address)

    async def _run(self, fn, *args):
        try:
            return await asyncio.get_running_loop().run_in_executor(None, fn, *args)
        except Exception as exc:
            raise RegistryUnavailableError(f"registry call failed: {exc}") from exc

    async def get_nonce(self, identity: str, channel: Channel) -> int:
        def _read():
            self._connect()
            fns = self._contract.functions
            getter = fns.getAsyncNonce if Channel(channel).is_async else fns.getSyncNonce
            return getter(to_checksum_address(identity)).call()
        return int(await self._run(_read))

    async def get_domain_info(self) -> DomainInfo:
        def _read():
            self._connect()
            return self._w3.eth.chain_id
        chain_id = await self._run(_read)
        return DomainInfo(chain_id=int(chain_id), contract_address=self.contract_address)

    async def get_record(self, fingerprint: str) -> Optional[RegistryRecord]:
        def _read():
            self._connect()
            return self._contract.functions.records(to_bytes32(fingerprint)).call()
        gateway, root, cid, ts, temp, hum, tag = await self._run(_read)
        if gateway == ZERO_ADDRESS:
            return None
        return RegistryRecord(
            gateway=gateway, merkle_root="0x" + bytes(root).hex(), cid=cid,
            timestamp=int(ts), temperature=int(temp), humidity=int(hum), rfid_tag=tag,
        )

    def _call_args(self, signed: SignedSubmission) -> tuple:
        sig = signed.signature
        return (
            to_bytes32(signed.fingerprint), to_bytes32(signed.merkle_root), signed.cid,
            int(signed.temperature), int(signed.humidity), signed.rfid_tag,
            int(signed.nonce), signed.channel.is_async,
            int(sig.v), to_bytes32(sig.r), to_bytes32(sig.s),
        )

    async def submit(self, signed: SignedSubmission) -> SubmissionResult:
        if not self._sender_key:
            raise RegistryUnavailableError("no transaction sender key configured for the EVM registry")

        def _send():
            self._connect()
            account = self._w3.eth.account.from_key(self._sender_key)
            fn = self._contract.functions.recordTelemetryWithSignature(*self._call_args(signed))

            # preflight: simulate to catch revert reasons (auth / nonce / malformed)
            try:
                fn.call({"from": account.address})
            except ContractLogicError as exc:
                return SubmissionResult(accepted=False, reason=classify_revert(str(exc)))

            base_tx = {
                "from": account.address,
                "nonce": self._w3.eth.get_transaction_count(account.address),
            }
            try:
                gas_limit = int(fn.estimate_gas(base_tx) * 1.30) + 50_000
            except ContractLogicError as exc:
                return SubmissionResult(accepted=False, reason=classify_revert(str(exc)))

            tx = fn.build_transaction({**base_tx, "gas": gas_limit})
            raw = account.sign_transaction(tx).raw_transaction
            tx_hash = self._w3.eth.send_raw_transaction(raw)
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)

            if int(receipt["status"]) != 1:
                log.warning("submission reverted key=%s tx=%s gasUsed=%s gasLimit=%s",
                            signed.fingerprint[:18], tx_hash.hex(), receipt.get("gasUsed"), gas_limit)
                return SubmissionResult(accepted=False, reason="malformed-payload",
                                        tx_hash=tx_hash.hex())

            log.info("recorded key=%s nonce=%d tx=%s block=%s",
                     signed.fingerprint[:18], signed.nonce, tx_hash.hex(), receipt["blockNumber"])
            return SubmissionResult(accepted=True, tx_hash=tx_hash.hex())

        return await self._run(_send)
