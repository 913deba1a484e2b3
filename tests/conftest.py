"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that build settings/engine at import time.
"""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="payments-tests-")

os.environ.setdefault("DATABASE__URL", f"sqlite+aiosqlite:///{_DB_DIR}/app.db")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("GATEWAY__LOGIN_ID", "test-login")
os.environ.setdefault("GATEWAY__TRANSACTION_KEY", "test-transaction-key")
