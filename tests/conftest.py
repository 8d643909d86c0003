from __future__ import annotations

import pytest

from auditwatch.errors import StreamTransportError
from auditwatch.services.session_store import SessionRecordStore


@pytest.fixture
def store(tmp_path) -> SessionRecordStore:
    return SessionRecordStore(tmp_path / "sessions.json")


@pytest.fixture
def transport_error() -> StreamTransportError:
    return StreamTransportError("connection refused")
