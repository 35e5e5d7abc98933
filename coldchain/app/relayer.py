"""
relayer.py - Async-channel relay queue and worker.

In async submission mode the pipeline does not send the registry
transaction itself. It signs against the gateway's *async* nonce, drops the
signed submission on the RelayQueue and returns. A relayer (which pays gas
with its own key) drains the queue:

  1. re-read the async nonce for the gateway
  2. skip messages already recorded; re-sign the rest at the current nonce
     when they no longer match (a queued message failed or arrived out of order)
  3. submit to the registry

The sync and async counters are independent, so relayed submissions never
race with gateway-paid ones.
"""
import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

from .errors import GatewayError
from .ledger.adapter import Registry
from .schemas import Channel, SignedSubmission, SubmissionFields
from .signing import NonceCoordinator

log = logging.getLogger("coldchain.relayer")


class RelayQueue:
    """Thread-safe FIFO of signed submissions waiting for a relayer."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: deque[SignedSubmission] = deque()

    def put(self, message: SignedSubmission):
        with self._lock:
            self._items.append(message)
        log.info("queued submission key=%s nonce=%d", message.fingerprint[:18], message.nonce)

    def take_all(self) -> list[SignedSubmission]:
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class RelayOutcome:
    fingerprint: str
    nonce: int
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


class Relayer:
    """Drains the relay queue into the registry.

    With a coordinator (the gateway's signer) a message whose nonce no
    longer matches is re-signed at the registry's current nonce, unless the
    same commitment is already recorded. Without one it is reported and
    dropped.
    """

    def __init__(self, queue: RelayQueue, registry: Registry,
                 coordinator: Optional[NonceCoordinator] = None):
        self.queue = queue
        self.registry = registry
        self.coordinator = coordinator

    async def process(self, message: SignedSubmission) -> RelayOutcome:
        """Relay one message. Failures are reported in the outcome, not raised."""
        try:
            current = await self.registry.get_nonce(message.gateway, Channel.ASYNC)
            if current != message.nonce:
                record = await self.registry.get_record(message.fingerprint)
                if record is not None and record.merkle_root.lower() == message.merkle_root.lower():
                    return RelayOutcome(message.fingerprint, message.nonce, False,
                                        error="already relayed")
                if self.coordinator is None:
                    return RelayOutcome(
                        message.fingerprint, message.nonce, False,
                        error=(f"nonce mismatch: message has {message.nonce}, "
                               f"registry has {current}; out of order"),
                    )
                log.info("re-signing key=%s nonce %d -> %d",
                         message.fingerprint[:18], message.nonce, current)
                fields = SubmissionFields(**message.model_dump(include=set(SubmissionFields.model_fields)))
                message = await self.coordinator.sign(fields, current, Channel.ASYNC)
            result = await self.registry.submit(message)
        except GatewayError as exc:
            log.error("relay failed key=%s: %s", message.fingerprint[:18], exc)
            return RelayOutcome(message.fingerprint, message.nonce, False, error=str(exc))

        if not result.accepted:
            log.warning("relay rejected key=%s nonce=%d reason=%s",
                        message.fingerprint[:18], message.nonce, result.reason)
            return RelayOutcome(message.fingerprint, message.nonce, False, error=result.reason)

        log.info("relayed key=%s nonce=%d tx=%s",
                 message.fingerprint[:18], message.nonce, (result.tx_hash or "?")[:18])
        return RelayOutcome(message.fingerprint, message.nonce, True, tx_hash=result.tx_hash)

    async def drain(self) -> list[RelayOutcome]:
        return [await self.process(m) for m in self.queue.take_all()]


async def relay_worker(relayer: Relayer, poll_seconds: float):
    """Relay loop. Runs until cancelled."""
    log.info("relay worker started: poll=%.1fs", poll_seconds)
    while True:
        await asyncio.sleep(poll_seconds)
        try:
            outcomes = await relayer.drain()
            if outcomes:
                ok = sum(1 for o in outcomes if o.success)
                log.info("relay pass: %d message(s), %d relayed", len(outcomes), ok)
        except Exception as exc:
            log.error("relay worker error: %s", exc)
