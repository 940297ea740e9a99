"""Shared pytest configuration for the Meterline test suite.

Puts the project root on sys.path so tests can import source modules
(db, instances, billing, api, ...) directly, keeps log output in a temp
directory, and makes sure no test ever reaches a real Postgres mirror.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

_tmp_ctx = tempfile.TemporaryDirectory(prefix="meterline_test_")
os.environ["METERLINE_LOG_FILE"] = os.path.join(_tmp_ctx.name, "meterline.log")
os.environ["METERLINE_DB_PATH"] = os.path.join(_tmp_ctx.name, "meterline.db")
os.environ["METERLINE_POSTGRES_DSN"] = ""
os.environ["METERLINE_ENV"] = "test"

from db import DualWriteCoordinator  # noqa: E402
from users import create_user  # noqa: E402

# 2023-11-14T22:13:20Z
T0 = 1_700_000_000


class FakeClock:
    """Controllable stand-in for wall-clock Unix seconds."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class FakeSecondary:
    """Records what the coordinator mirrors. Set `fail_on` to a SQL fragment
    to make matching statements raise."""

    def __init__(self):
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.fail_on = None

    def execute(self, sql, params=()):
        if self.fail_on is not None and self.fail_on in sql:
            raise RuntimeError("mirror connection lost")
        self.executed.append((sql, tuple(params)))

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def secondary():
    return FakeSecondary()


@pytest.fixture
def coordinator(tmp_path):
    c = DualWriteCoordinator(db_path=str(tmp_path / "primary.db"), secondary_dsn="")
    yield c
    c.close()


@pytest.fixture
def dual_coordinator(tmp_path, secondary):
    c = DualWriteCoordinator(db_path=str(tmp_path / "primary.db"), secondary=secondary)
    yield c
    c.close()


@pytest.fixture
def make_user(coordinator, clock):
    """Create users registered `age` seconds before the fake clock's now."""
    counter = {"n": 0}

    def _make(age=1, c=None):
        counter["n"] += 1
        n = counter["n"]
        return create_user(
            f"user{n}", f"user{n}@example.com", "argon2$hash",
            coordinator=c or coordinator, clock=lambda: clock() - age,
        )

    return _make
