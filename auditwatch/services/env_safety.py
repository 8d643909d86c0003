from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

_CERT_BUNDLE_VARS = ("SSL_CERT_FILE", "REQUESTS_CA_BUNDLE")


def _keylog_is_usable(keylog_path: str) -> bool:
    try:
        path = Path(keylog_path)
        parent = path.parent
        if parent and not parent.exists():
            return False

        # Validate writability without truncating existing files.
        with open(path, "a", encoding="utf-8"):
            pass
    except Exception:
        return False
    return True


def sanitize_tls_environment() -> None:
    """Drop TLS-related environment variables that point at unusable paths.

    A stale SSLKEYLOGFILE or a missing CA bundle makes httpx fail while it
    builds the SSL context, long before any request is sent.
    """
    keylog_path = os.getenv("SSLKEYLOGFILE", "").strip()
    if keylog_path and not _keylog_is_usable(keylog_path):
        logger.warning(f"Ignoring unusable SSLKEYLOGFILE {keylog_path!r}")
        os.environ.pop("SSLKEYLOGFILE", None)

    for name in _CERT_BUNDLE_VARS:
        bundle = os.getenv(name, "").strip()
        if bundle and not Path(bundle).is_file():
            logger.warning(f"Ignoring {name}: {bundle!r} does not exist")
            os.environ.pop(name, None)
