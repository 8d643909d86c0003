from __future__ import annotations

import os
from unittest.mock import patch

from auditwatch.services.env_safety import sanitize_tls_environment


def test_unsets_unwritable_keylog_path():
    with patch.dict(os.environ, {"SSLKEYLOGFILE": r"Z:\does-not-exist\virtual_file.log"}, clear=False):
        with patch("builtins.open", side_effect=PermissionError):
            sanitize_tls_environment()
        assert "SSLKEYLOGFILE" not in os.environ


def test_keeps_usable_keylog_path(tmp_path):
    keylog = tmp_path / "keylog.log"
    with patch.dict(os.environ, {"SSLKEYLOGFILE": str(keylog)}, clear=False):
        sanitize_tls_environment()
        assert os.environ.get("SSLKEYLOGFILE") == str(keylog)


def test_drops_missing_ca_bundle_but_keeps_existing_one(tmp_path):
    bundle = tmp_path / "ca.pem"
    bundle.write_text("---", encoding="utf-8")
    env = {"SSL_CERT_FILE": str(tmp_path / "missing.pem"), "REQUESTS_CA_BUNDLE": str(bundle)}
    with patch.dict(os.environ, env, clear=False):
        sanitize_tls_environment()
        assert "SSL_CERT_FILE" not in os.environ
        assert os.environ["REQUESTS_CA_BUNDLE"] == str(bundle)
