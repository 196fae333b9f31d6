"""
Pytest configuration and fixtures for ciphergate tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from ciphergate.acl import AccessControlLedger
from ciphergate.algebra import CiphertextAlgebra
from ciphergate.engine import ConfidentialEngine
from ciphergate.runtime import LocalDecryptionOracle, LocalRuntime
from ciphergate.schema import EngineConfig
from ciphergate.store import LedgerDB

ADMIN = "0xa11ce"
ALICE = "0xa1"
BOB = "0xb0b"
MALLORY = "0xbad"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db() -> Generator[LedgerDB, None, None]:
    """In-memory ledger database."""
    database = LedgerDB(":memory:")
    yield database
    database.close()


@pytest.fixture
def runtime(db: LedgerDB) -> LocalRuntime:
    """Local runtime with native boolean literals."""
    return LocalRuntime(db)


@pytest.fixture
def algebra(runtime: LocalRuntime) -> CiphertextAlgebra:
    """Algebra adapter over the local runtime."""
    return CiphertextAlgebra(runtime)


@pytest.fixture
def ledger(db: LedgerDB) -> AccessControlLedger:
    """Access control ledger with a fixed engine identity."""
    return AccessControlLedger(db, engine_identity="ciphergate.engine")


@pytest.fixture
def config() -> EngineConfig:
    """In-memory configuration with developer mode enabled."""
    return EngineConfig(db_path=":memory:", developer_mode=True)


@pytest.fixture
def engine(config: EngineConfig) -> Generator[ConfidentialEngine, None, None]:
    """Engine with ADMIN installed."""
    eng = ConfidentialEngine(config, admin=ADMIN)
    yield eng
    eng.close()


@pytest.fixture
def oracle(engine: ConfidentialEngine) -> LocalDecryptionOracle:
    """Decryption oracle bound to the engine's ledger."""
    return LocalDecryptionOracle(engine.runtime, engine.acl)


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a simple config YAML for testing."""
    return """
db_path: ":memory:"
developer_mode: true
allow_list_cap: 4
mask_bits: 16
log_level: info
"""
