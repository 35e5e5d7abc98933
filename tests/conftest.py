"""Shared fixtures. Everything here is in-process: no chain, no IPFS."""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from coldchain.app.archive.adapter import MemoryArchive
from coldchain.app.attestation import MemoryAttestor
from coldchain.app.ledger.adapter import StubRegistry
from coldchain.app.schemas import Sample
from coldchain.app.signing import GatewaySigner, NonceCoordinator

# well-known local devnet accounts #0 and #1
GATEWAY_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
GATEWAY_ADDR = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
OTHER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def signer():
    return GatewaySigner(GATEWAY_KEY)


@pytest.fixture
def registry(signer):
    return StubRegistry(authorized=[signer.address])


@pytest.fixture
def coordinator(registry, signer):
    return NonceCoordinator(registry, signer)


@pytest.fixture
def archive():
    return MemoryArchive()


@pytest.fixture
def attestor():
    return MemoryAttestor()


def make_sample(temperature=2500, humidity=6500, shipment_id="SHP-1", batch_id="B-1", **kw):
    return Sample(shipment_id=shipment_id, batch_id=batch_id,
                  temperature=temperature, humidity=humidity, **kw)


def make_client(app):
    from httpx import ASGITransport, AsyncClient
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
