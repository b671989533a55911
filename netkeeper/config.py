# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Environment driven configuration shared by the WebUI and the CLI.
# Path: /netkeeper/config.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"
STATIC_DIR = BASE_DIR / "static"


def _env_flag(name: str, default: str = "1") -> bool:
    return os.environ.get(name, default).strip().lower() not in ("0", "false", "no", "")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


# ---- config ----
BIND_HOST = os.environ.get("WEBUI_BIND", "0.0.0.0")
BIND_PORT = _env_int("WEBUI_PORT", 3001)

DATA_DIR = Path(os.environ.get("NETKEEPER_DATA_DIR", "/var/lib/netkeeper"))
BACKEND = os.environ.get("NETKEEPER_BACKEND", "sqlite").strip().lower()
SECRET_KEY = os.environ.get("NETKEEPER_SECRET_KEY", "")

FPING = os.environ.get("NETKEEPER_FPING", "fping")
# Base URL put into push notifications as a click-through link (optional).
PUBLIC_URL = os.environ.get("NETKEEPER_PUBLIC_URL", "").strip()
MONITOR_INTERVAL = _env_int("NETKEEPER_MONITOR_INTERVAL", 30)
MONITOR_AUTOSTART = _env_flag("NETKEEPER_MONITOR_AUTOSTART")

# WebUI debug log (backend), written into the data dir.
WEBUI_DEBUG_ENABLED = _env_flag("NETKEEPER_WEBUI_DEBUG")

JSON_DB_NAME = "db.json"
SQLITE_DB_NAME = "netkeeper.db"
DEBUG_LOG_NAME = "webui_debug.log"

# Refresh intervals offered by the monitoring view.
MONITOR_INTERVAL_CHOICES = (10, 30, 60, 300)


def read_version() -> str:
    # try repo root VERSION first
    try:
        candidates = [
            (BASE_DIR.parent / "VERSION"),
            (BASE_DIR / "VERSION"),
        ]
        for p in candidates:
            if p.exists():
                return p.read_text(encoding="utf-8").strip()
    except OSError:
        pass
    return "0.0.0"


def flask_defaults() -> dict:
    """Values copied into ``APP.config`` at import time."""
    return {
        "DATA_DIR": DATA_DIR,
        "BACKEND": BACKEND,
        "FPING": FPING,
        "PUBLIC_URL": PUBLIC_URL,
        "MONITOR_INTERVAL": MONITOR_INTERVAL,
        "MONITOR_AUTOSTART": MONITOR_AUTOSTART,
        "WEBUI_DEBUG": WEBUI_DEBUG_ENABLED,
    }
