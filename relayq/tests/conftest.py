from __future__ import annotations

import os
import tempfile

# Point the app at a throwaway SQLite file before any relayq module builds its engine.
_DB_DIR = tempfile.mkdtemp(prefix="relayq-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'relayq.db')}")
os.environ.setdefault("SMS_PROVIDER", "fake")
os.environ.setdefault("EMAIL_PROVIDER", "fake")

import pytest  # noqa: E402

from relayq.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests() -> None:
    # Counters are process-global; isolate them per test.
    reset_telemetry()
    yield
    reset_telemetry()
