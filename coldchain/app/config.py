"""
config.py - Gateway settings.

All knobs come from environment variables (optionally seeded from a .env
file). Settings are loaded once and passed explicitly into create_app();
nothing reads os.environ after startup.
"""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

LEDGER_BACKENDS = ("stub", "evm")
ARCHIVE_BACKENDS = ("memory", "ipfs")
ATTESTOR_BACKENDS = ("memory", "relay")
SUBMISSION_MODES = ("sync", "async")


@dataclass(frozen=True)
class Settings:
    batch_size: int = 10
    batch_timeout_ms: int = 30_000
    submission_mode: str = "sync"
    nonce_retries: int = 1

    gateway_private_key: Optional[str] = None
    relayer_private_key: Optional[str] = None

    ledger_backend: str = "stub"
    rpc_url: str = "http://localhost:8545"
    registry_address: str = "0x8DfD8F3b766085ea072FB4C5EE60669e25CC915C"
    chain_id: int = 31337
    poa_chain: bool = False

    archive_backend: str = "memory"
    ipfs_api_url: str = "http://localhost:5001"

    attestor_backend: str = "memory"
    attestation_relay_address: Optional[str] = None

    temp_min: int = -2000
    temp_max: int = 800

    relay_poll_seconds: float = 5.0
    results_dir: str = "results"
    log_level: str = "INFO"

    @property
    def batch_timeout_s(self) -> float:
        return self.batch_timeout_ms / 1000.0

    @property
    def async_submission(self) -> bool:
        return self.submission_mode == "async"

    def validate(self) -> "Settings":
        if self.batch_size < 1:
            raise ConfigError(f"BATCH_SIZE must be >= 1, got {self.batch_size}")
        if self.batch_timeout_ms < 1:
            raise ConfigError(f"BATCH_TIMEOUT_MS must be >= 1, got {self.batch_timeout_ms}")
        if self.nonce_retries < 0:
            raise ConfigError(f"NONCE_RETRIES must be >= 0, got {self.nonce_retries}")
        if self.temp_min > self.temp_max:
            raise ConfigError(f"TEMP_MIN ({self.temp_min}) is above TEMP_MAX ({self.temp_max})")
        for name, value, allowed in (
            ("SUBMISSION_MODE", self.submission_mode, SUBMISSION_MODES),
            ("LEDGER_BACKEND", self.ledger_backend, LEDGER_BACKENDS),
            ("ARCHIVE_BACKEND", self.archive_backend, ARCHIVE_BACKENDS),
            ("ATTESTOR_BACKEND", self.attestor_backend, ATTESTOR_BACKENDS),
        ):
            if value not in allowed:
                raise ConfigError(f"{name} must be one of {'|'.join(allowed)}, got {value!r}")
        return self


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings(env: Optional[Mapping[str, str]] = None,
                  dotenv_path: Optional[str] = None) -> Settings:
    """Build Settings from `env` (defaults to os.environ after loading .env)."""
    if env is None:
        load_dotenv(dotenv_path=dotenv_path)
        env = os.environ

    defaults = Settings()
    settings = Settings(
        batch_size=_int(env, "BATCH_SIZE", defaults.batch_size),
        batch_timeout_ms=_int(env, "BATCH_TIMEOUT_MS", defaults.batch_timeout_ms),
        submission_mode=env.get("SUBMISSION_MODE", defaults.submission_mode).lower(),
        nonce_retries=_int(env, "NONCE_RETRIES", defaults.nonce_retries),
        gateway_private_key=env.get("GATEWAY_PRIVATE_KEY") or None,
        relayer_private_key=env.get("RELAYER_PRIVATE_KEY") or None,
        ledger_backend=env.get("LEDGER_BACKEND", defaults.ledger_backend).lower(),
        rpc_url=env.get("RPC_URL", defaults.rpc_url),
        registry_address=env.get("REGISTRY_ADDRESS", defaults.registry_address),
        chain_id=_int(env, "CHAIN_ID", defaults.chain_id),
        poa_chain=_bool(env, "POA_CHAIN", defaults.poa_chain),
        archive_backend=env.get("ARCHIVE_BACKEND", defaults.archive_backend).lower(),
        ipfs_api_url=env.get("IPFS_API_URL", defaults.ipfs_api_url),
        attestor_backend=env.get("ATTESTOR_BACKEND", defaults.attestor_backend).lower(),
        attestation_relay_address=env.get("ATTESTATION_RELAY_ADDRESS") or None,
        temp_min=_int(env, "TEMP_MIN", defaults.temp_min),
        temp_max=_int(env, "TEMP_MAX", defaults.temp_max),
        relay_poll_seconds=_float(env, "RELAY_POLL_SECONDS", defaults.relay_poll_seconds),
        results_dir=env.get("RESULTS_DIR", defaults.results_dir),
        log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
    )
    return settings.validate()
