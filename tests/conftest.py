import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import locus`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless LOCUS_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('LOCUS_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set LOCUS_RUN_SLOW=1 to enable'))


@pytest.fixture
def keypair():
    from locus.signing import generate_keypair
    return generate_keypair()


@pytest.fixture
def other_keypair():
    from locus.signing import generate_keypair
    return generate_keypair()


@pytest.fixture
def presence(keypair):
    from locus.proofs import build_presence_proof
    return build_presence_proof(
        37.7749, -122.4194, 5.0, keypair.private_key,
        timestamp_ms=1714564800000, nonce="a1b2c3d4e5f60718293a4b5c6d7e8f90",
    )


@pytest.fixture
def draft(keypair):
    from locus.proofs import build_object_draft
    return build_object_draft("note/v1", 25.0, {"text": "hello"}, keypair.private_key)


@pytest.fixture
def ledger():
    from locus.ledger import InMemoryObjectStore, ResolverLedger
    return ResolverLedger(InMemoryObjectStore())


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    """Every test starts from default configuration and no LOCUS_* overrides."""
    from locus.config import ConfigManager
    for name in list(os.environ):
        if name.startswith("LOCUS_") and name != "LOCUS_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset()
    yield
    ConfigManager.reset()
