"""Durable map of job id → SessionRecord, backed by one JSON file.

Persistence is best-effort: read failures yield an empty map and write
failures are logged and swallowed. The live stream and report fetch remain
the source of truth.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from auditwatch.config import settings
from auditwatch.models.session import SessionRecord

STORE_VERSION = 1


class SessionRecordStore:
    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path or settings.session_store_path)

    def _read_raw(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load sessions from {self.path}: {e}")
            return {}
        if not isinstance(payload, dict):
            logger.error(f"Session store {self.path} is not a JSON object, ignoring it")
            return {}
        sessions = payload.get("sessions", {})
        return sessions if isinstance(sessions, dict) else {}

    def _write_raw(self, sessions: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(
                json.dumps({"version": STORE_VERSION, "sessions": sessions}, ensure_ascii=False),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def load_all(self) -> dict[str, SessionRecord]:
        records: dict[str, SessionRecord] = {}
        for job_id, raw in self._read_raw().items():
            try:
                records[job_id] = SessionRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable session record {job_id}: {e.error_count()} errors")
        return records

    def load(self, job_id: str) -> SessionRecord | None:
        raw = self._read_raw().get(job_id)
        if raw is None:
            return None
        try:
            return SessionRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Stored session {job_id} is unreadable, treating as absent: {e.error_count()} errors")
            return None

    def save(self, record: SessionRecord) -> None:
        try:
            sessions = self._read_raw()
            sessions[record.job_id] = record.model_dump(mode="json")
            self._write_raw(sessions)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save session {record.job_id}: {e}")
