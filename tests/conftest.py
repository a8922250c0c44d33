"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import structlog
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["API_KEY"] = "test-key-12345"
os.environ["DEVICE_ID"] = "device-test"

from node_ledger.config import DeviceIdentity, NodeSettings
from node_ledger.ledger import EarningsLedger, TaskLedger
from node_ledger.persistence import Database, DeviceRepository, EarningRepository, TaskRepository

DEVICE_ID = "device-test"
GATEWAY = "http://gateway.test"


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo logging configuration done by CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def db():
    """In-memory database with schema applied."""
    database = Database("sqlite:///:memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield f"sqlite:///{db_path}"

    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def device_repo(db):
    repo = DeviceRepository(db)
    repo.register(DEVICE_ID)
    return repo


@pytest.fixture
def task_repo(db):
    return TaskRepository(db)


@pytest.fixture
def earning_repo(db):
    return EarningRepository(db)


@pytest.fixture
def task_ledger(task_repo):
    return TaskLedger(task_repo)


@pytest.fixture
def earnings_ledger(earning_repo, task_repo, device_repo):
    return EarningsLedger(earning_repo, task_repo, device_repo)


@pytest.fixture
def device():
    """A registered device able to sync."""
    return DeviceIdentity(
        device_id=DEVICE_ID,
        gateway_address=GATEWAY,
        auth_key="gateway-key",
        registered=True,
    )


@pytest.fixture
def settings():
    return NodeSettings(
        database_url="sqlite:///:memory:",
        api_key="test-key-12345",
        inference_backend_url="http://backend.test",
    )
