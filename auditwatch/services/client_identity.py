from __future__ import annotations

import uuid
from pathlib import Path

from loguru import logger


def generate_client_id() -> str:
    return str(uuid.uuid4())


def load_or_create_client_id(path: str | Path) -> str:
    """Return the persisted client id, creating it on first use.

    Call once at startup and pass the value to the components that need it.
    """
    id_path = Path(path)
    try:
        existing = id_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        existing = ""
    except OSError as e:
        logger.warning(f"Could not read client id from {id_path}: {e}")
        existing = ""

    if existing:
        return existing

    client_id = generate_client_id()
    try:
        id_path.parent.mkdir(parents=True, exist_ok=True)
        id_path.write_text(client_id, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not persist client id to {id_path}, using it for this run only: {e}")
    return client_id
