"""
main.py - Cold-chain telemetry gateway REST API.

Architecture position: this process sits between the shipment sensors and
the registry.
  sensor -> POST /telemetry -> batcher -> archive -> Merkle root -> sign -> registry
                                                                         -> attestation tasks

Role enforcement: telemetry submission requires the gateway role.
Read endpoints require operator or inspector; verification requires inspector.

Run with:  uvicorn --factory coldchain.app.main:create_app
"""
import asyncio
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .archive.adapter import Archive, MemoryArchive, decode_batch
from .attestation import (
    AttestationIndex, Attestor, MemoryAttestor, RelayAttestor, verify_shipment_integrity,
)
from .batching import TelemetryBatcher
from .config import Settings, load_settings
from .errors import (
    ArchiveError, AttestorUnavailableError, GatewayError, RegistryUnavailableError,
    SigningUnavailableError, SubmissionRejectedError,
)
from .hashing import shipment_fingerprint
from .ledger.adapter import Registry, StubRegistry
from .metrics import MetricsCollector
from .pipeline import BatchDispatcher, CommitmentPipeline
from .relayer import Relayer, RelayQueue, relay_worker
from .roles import PERMISSIONS, ROLE_DESCRIPTIONS, Role, require
from .schemas import Channel, TelemetryIn, VerifyRequest, is_hex32
from .signing import GatewaySigner, NonceCoordinator

log = logging.getLogger("coldchain.gateway")


class Gateway:
    """Everything one gateway instance owns. Lives on app.state.gateway."""

    def __init__(self, settings: Settings, archive: Archive, registry: Registry,
                 attestor: Attestor, signer: Optional[GatewaySigner],
                 relay_registry: Optional[Registry] = None):
        self.settings = settings
        self.archive = archive
        self.registry = registry
        self.attestor = attestor
        self.signer = signer
        self.channel = Channel.ASYNC if settings.async_submission else Channel.SYNC
        self.coordinator = NonceCoordinator(registry, signer)
        self.relay_queue = RelayQueue()
        self.relayer = Relayer(self.relay_queue, relay_registry or registry, self.coordinator)
        self.index = AttestationIndex()
        self.metrics = MetricsCollector(results_dir=settings.results_dir)
        self.pipeline = CommitmentPipeline(
            archive, registry, attestor, self.coordinator,
            channel=self.channel, relay_queue=self.relay_queue,
            nonce_retries=settings.nonce_retries,
            temp_min=settings.temp_min, temp_max=settings.temp_max,
        )
        self.dispatcher = BatchDispatcher(self.pipeline, self.index, self.metrics)
        self.batcher = TelemetryBatcher(
            batch_size=settings.batch_size,
            batch_timeout=settings.batch_timeout_s,
            on_flush=self.dispatcher.on_timer_flush,
        )
        self.relay_task: Optional[asyncio.Task] = None


def _build_registry(settings: Settings, signer: Optional[GatewaySigner]) -> tuple[Registry, Registry]:
    if settings.ledger_backend == "evm":
        from .ledger.evm import EvmRegistry
        gateway_side = EvmRegistry(settings.rpc_url, settings.registry_address,
                                   sender_key=settings.gateway_private_key, poa=settings.poa_chain)
        relay_side = EvmRegistry(settings.rpc_url, settings.registry_address,
                                 sender_key=settings.relayer_private_key or settings.gateway_private_key,
                                 poa=settings.poa_chain)
        return gateway_side, relay_side
    stub = StubRegistry(authorized=[signer.address] if signer else [],
                        chain_id=settings.chain_id, contract_address=settings.registry_address)
    return stub, stub


def _build_archive(settings: Settings) -> Archive:
    if settings.archive_backend == "ipfs":
        from .archive.ipfs import IpfsArchive
        return IpfsArchive(settings.ipfs_api_url)
    return MemoryArchive()


def _build_attestor(settings: Settings) -> Attestor:
    if settings.attestor_backend == "relay":
        return RelayAttestor(settings.rpc_url, settings.attestation_relay_address)
    return MemoryAttestor()


def _status_for(exc: GatewayError) -> int:
    if isinstance(exc, SubmissionRejectedError):
        return 409
    if isinstance(exc, ArchiveError):
        return 502
    if isinstance(exc, (RegistryUnavailableError, SigningUnavailableError, AttestorUnavailableError)):
        return 503
    return 500


def _check_key(value: str, what: str = "shipmentKey") -> str:
    if not is_hex32(value):
        raise HTTPException(400, detail=f"Invalid {what} format (expected 0x-prefixed 64-char hex)")
    return value.lower()


def create_app(settings: Optional[Settings] = None, *,
               archive: Optional[Archive] = None,
               registry: Optional[Registry] = None,
               attestor: Optional[Attestor] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    signer = GatewaySigner(settings.gateway_private_key) if settings.gateway_private_key else None
    if signer is None:
        log.warning("GATEWAY_PRIVATE_KEY not set - batches will fail at the signing stage")

    relay_registry = None
    if registry is None:
        registry, relay_registry = _build_registry(settings, signer)
    gw = Gateway(settings, archive or _build_archive(settings), registry,
                 attestor or _build_attestor(settings), signer, relay_registry)

    app = FastAPI(
        title="Cold-Chain Telemetry Gateway",
        description=(
            "Batches shipment sensor readings, archives each batch, and commits its "
            "Merkle root to the shipment registry with an EIP-712 gateway signature.\n\n"
            "**Flow**: telemetry -> batch -> archive -> Merkle root -> registry -> attestations\n\n"
            "**Roles** (X-Role header): `gateway` | `operator` | `inspector`"
        ),
        version="1.0.0",
    )
    app.state.gateway = gw
    app.add_middleware(CORSMiddleware, allow_origins=["*"],
                       allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError):
        body = {"error": str(exc), "type": type(exc).__name__, "stage": exc.stage}
        if isinstance(exc, SubmissionRejectedError):
            body["reason"] = exc.reason
            body["retryable"] = exc.retryable
        return JSONResponse(status_code=_status_for(exc), content=body)

    #  Startup / Shutdown

    @app.on_event("startup")
    async def startup():
        gw.dispatcher.bind_loop(asyncio.get_running_loop())
        if gw.channel.is_async:
            gw.relay_task = asyncio.create_task(
                relay_worker(gw.relayer, settings.relay_poll_seconds))
        log.info("gateway started: address=%s channel=%s ledger=%s archive=%s batch=%d/%dms",
                 signer.address if signer else None, gw.channel.value,
                 settings.ledger_backend, settings.archive_backend,
                 settings.batch_size, settings.batch_timeout_ms)

    @app.on_event("shutdown")
    async def shutdown():
        results = await gw.dispatcher.drain(gw.batcher)
        log.info("shutdown: flushed %d batch(es)", len(results))
        if gw.relay_task is not None:
            gw.relay_task.cancel()
            await gw.relayer.drain()

    #  System endpoints

    @app.get("/health", tags=["system"])
    async def health():
        return {
            "status": "ok",
            "gateway": signer.address if signer else None,
            "contract": settings.registry_address,
            "channel": gw.channel.value,
            "ledger_backend": settings.ledger_backend,
            "archive_backend": settings.archive_backend,
            "attestor_backend": settings.attestor_backend,
            "batches": gw.batcher.active_count(),
            "relay_queue": len(gw.relay_queue),
        }

    @app.get("/roles", tags=["system"])
    async def list_roles():
        return {
            "roles": {r.value: ROLE_DESCRIPTIONS[r] for r in Role},
            "permissions": {r.value: sorted(p) for r, p in PERMISSIONS.items()},
        }

    @app.get("/metrics", tags=["system"], dependencies=[Depends(require("read_metrics"))])
    async def metrics():
        return asdict(gw.metrics.summary())

    @app.post("/metrics/export", tags=["system"], dependencies=[Depends(require("export_metrics"))])
    async def export_metrics():
        path = gw.metrics.export()
        return {"exported_to": path, "run_id": gw.metrics.run_id}

    #  Telemetry ingestion - gateway only

    @app.post("/telemetry", tags=["telemetry"], dependencies=[Depends(require("submit_telemetry"))])
    async def receive_telemetry(body: TelemetryIn):
        """Accept one sensor reading. Commits the batch if this reading fills it.

        Readings arrive in degrees / percent and are scaled by 100. The
        capture timestamp is assigned here, not taken from the device.
        """
        gw.dispatcher.bind_loop(asyncio.get_running_loop())
        sample = body.to_sample()
        key = shipment_fingerprint(sample.shipment_id, sample.batch_id)

        batch = gw.batcher.add_sample(key, sample)
        commitment = await gw.dispatcher.commit(key, batch) if batch else None

        return {
            "success": True,
            "message": "Telemetry received",
            "shipmentKey": key,
            "batchSize": len(gw.batcher.get_batch(key)),
            "commitment": commitment.model_dump(by_alias=True) if commitment else None,
        }

    @app.get("/batch/{shipment_key}", tags=["telemetry"],
             dependencies=[Depends(require("read_batches"))])
    async def get_batch_status(shipment_key: str):
        key = _check_key(shipment_key)
        samples = gw.batcher.get_batch(key)
        return {
            "shipmentKey": key,
            "batchSize": len(samples),
            "samples": [s.canonical() for s in samples],
        }

    @app.post("/batches/flush", tags=["telemetry"], status_code=202,
              dependencies=[Depends(require("flush_batches"))])
    async def flush_batches():
        """Force every active batch through the pipeline without waiting for timers."""
        results = await gw.dispatcher.drain(gw.batcher)
        return {"flushed": len(results), "results": results}

    #  Shipment queries

    @app.get("/shipment/{shipment_key}", tags=["shipments"],
             dependencies=[Depends(require("read_shipments"))])
    async def get_shipment(shipment_key: str):
        key = _check_key(shipment_key)
        record = await gw.registry.get_record(key)
        if record is None:
            raise HTTPException(404, detail="Shipment not found")

        batch_data = None
        try:
            batch_data = decode_batch(await gw.archive.get(record.cid))
        except ArchiveError as exc:
            log.error("archive fetch failed for cid=%s: %s", record.cid, exc)

        return {
            "shipmentKey": key,
            "onChain": {
                "gateway": record.gateway,
                "merkleRoot": record.merkle_root,
                "cid": record.cid,
                "timestamp": record.timestamp,
                "temperature": record.temperature / 100,
                "humidity": record.humidity / 100,
                "rfidTag": record.rfid_tag,
            },
            "batchData": batch_data,
        }

    @app.get("/shipment/{shipment_key}/attestations", tags=["attestations"],
             dependencies=[Depends(require("read_attestations"))])
    async def get_shipment_attestations(shipment_key: str):
        key = _check_key(shipment_key)
        record = await gw.registry.get_record(key)
        if record is None:
            raise HTTPException(404, detail="Shipment not found")

        tasks = []
        for task in gw.index.get(key):
            entry = task.model_dump(by_alias=True)
            try:
                result = await gw.attestor.get_result(task.task_id)
            except GatewayError as exc:
                entry.update(status="pending", error=str(exc))
            else:
                entry.update(status="completed" if result.completed else "pending",
                             result=result.result if result.completed else None)
            tasks.append(entry)

        return {
            "shipmentKey": key,
            "cid": record.cid,
            "merkleRoot": record.merkle_root,
            "tasks": tasks,
            "count": len(tasks),
        }

    @app.get("/attestation/{task_id}", tags=["attestations"],
             dependencies=[Depends(require("read_attestations"))])
    async def get_attestation(task_id: str):
        tid = _check_key(task_id, "taskId")
        result = await gw.attestor.get_result(tid)
        return result.model_dump(by_alias=True)

    #  Integrity verification

    @app.post("/verify", tags=["integrity"], dependencies=[Depends(require("verify_shipment"))])
    async def verify_shipment(body: VerifyRequest):
        """Run every attestation check now, against the archived batch."""
        return await verify_shipment_integrity(
            gw.archive, cid=body.cid, merkle_root=body.merkle_root,
            shipment_key=body.shipment_key, temp_min=body.temp_min, temp_max=body.temp_max,
        )

    return app
