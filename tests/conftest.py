import os

import pytest

from bookinggate.observability.internal_metrics import reset as reset_metrics


def pytest_configure(config):
    os.environ.setdefault("BOOKINGGATE_LOG_FORMAT", "text")
    os.environ.setdefault("BOOKINGGATE_RECORD_DECISIONS", "true")


@pytest.fixture(autouse=True)
def _isolated_db(tmp_path, monkeypatch):
    db_path = tmp_path / "bookinggate.db"
    monkeypatch.setenv("BOOKINGGATE_DB_PATH", str(db_path))
    reset_metrics()
    yield str(db_path)
    reset_metrics()


@pytest.fixture
def db_path(_isolated_db):
    return _isolated_db
