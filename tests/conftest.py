"""Test session fixtures.

Ensures database writes during tests go to an isolated file instead of the
production `forward_testing.db`.
"""

import atexit
import logging
import os
import tempfile
import warnings
from unittest.mock import MagicMock

import pytest

# Flag that we are under pytest so logger_config can direct logs to test files
os.environ.setdefault("PYTEST_RUNNING", "1")
# Test-safe defaults to avoid long sleeps during pytest
os.environ.setdefault("LOOP_INTERVAL_SECONDS", "1")
os.environ.setdefault("RETRY_BASE_DELAY", "0")
os.environ.setdefault("RECONNECT_BASE_DELAY", "0")
warnings.simplefilter("ignore", ResourceWarning)

from forward_tester.audit_log import AuditLog
from forward_tester.connection_supervisor import ConnectionRegistry
from forward_tester.database import TradingDatabase
from tests.fakes import FakeBroker, SleepRecorder, make_session

_cleanup_target = None


def _ensure_test_db_path():
    global _cleanup_target

    if os.environ.get("TRADING_DB_PATH"):
        return os.environ["TRADING_DB_PATH"]

    fd, path = tempfile.mkstemp(prefix="forward-tester-test-", suffix=".db")
    os.close(fd)
    os.environ["TRADING_DB_PATH"] = path
    _cleanup_target = path
    return path


TEST_DB_PATH = _ensure_test_db_path()


@atexit.register
def _remove_temp_db():
    if _cleanup_target and os.path.exists(_cleanup_target):
        try:
            os.remove(_cleanup_target)
        except OSError:
            pass


@pytest.fixture
def test_db_path(tmp_path, monkeypatch):
    """Provide an isolated DB path and set TRADING_DB_PATH for the test."""
    path = tmp_path / "forward-tester-test.db"
    monkeypatch.setenv("TRADING_DB_PATH", str(path))
    return path


@pytest.fixture
def db(test_db_path):
    database = TradingDatabase(str(test_db_path))
    yield database
    database.close()


@pytest.fixture
def audit(db):
    return AuditLog(db)


@pytest.fixture
def fake_logger():
    """Shared lightweight logger mock for tests."""
    logger = MagicMock(spec=logging.Logger)
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    return logger


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def registry_factory(sleep_recorder):
    """Registry whose supervisors hand out the given broker and never really sleep."""
    def _factory(broker, **supervisor_kwargs):
        kwargs = {"sleep": sleep_recorder}
        kwargs.update(supervisor_kwargs)
        return ConnectionRegistry(broker_factory=lambda _creds: broker, supervisor_kwargs=kwargs)

    return _factory


@pytest.fixture
def session_factory():
    """Factory for TradingSession values with per-test overrides."""
    def _factory(**overrides):
        return make_session(**overrides)

    return _factory
