# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Dataset persistence (flat JSON file or SQLite) plus key/value settings.
# Path: /netkeeper/storage.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

"""Whole-dataset persistence.

Both backends expose the same surface:

  load() -> dataset dict
  save(dataset)            replaces everything
  get_setting(key, default)
  set_setting(key, value)

A save is always a full replace. The SQLite backend deletes every row and
re-inserts inside one transaction; the JSON backend rewrites the file via a
temp file + rename.
"""

import json
import logging
import os
import shutil
import sqlite3
import threading
import time
from pathlib import Path

from netkeeper.config import JSON_DB_NAME, SQLITE_DB_NAME
from netkeeper.models import COLLECTIONS, empty_dataset

log = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """The backing file or database could not be read or written."""


# (record key, column, kind)
#   kind: str | optstr | int | optint | bool | optbool | json
TABLES = {
    "subnets": ("subnets", [
        ("id", "id", "str"),
        ("name", "name", "str"),
        ("cidr", "cidr", "str"),
        ("gateway", "gateway", "str"),
        ("vlanId", "vlan_id", "str"),
        ("vlanName", "vlan_name", "str"),
        ("vlanDescription", "vlan_description", "str"),
        ("description", "description", "str"),
        ("usedIps", "used_ips", "int"),
        ("totalIps", "total_ips", "int"),
        ("dhcpEnabled", "dhcp_enabled", "bool"),
        ("dhcpStart", "dhcp_start", "optstr"),
        ("dhcpEnd", "dhcp_end", "optstr"),
    ]),
    "vlans": ("vlans", [
        ("id", "id", "str"),
        ("vlanNumber", "vlan_number", "int"),
        ("name", "name", "str"),
        ("description", "description", "str"),
        ("subnets", "subnets", "json"),
    ]),
    "ipAddresses": ("ip_addresses", [
        ("id", "id", "str"),
        ("address", "ip", "str"),
        ("subnetId", "subnet_id", "str"),
        ("hostname", "hostname", "str"),
        ("mac", "mac_address", "str"),
        ("status", "status", "str"),
        ("owner", "owner", "str"),
        ("notes", "notes", "optstr"),
        ("isOnline", "is_online", "optbool"),
        ("lastChecked", "last_checked", "optstr"),
        ("monitorEnabled", "monitor_enabled", "optbool"),
        ("deviceType", "device_type", "optstr"),
        ("parentDeviceId", "parent_device_id", "optstr"),
        ("connectionType", "connection_type", "optstr"),
    ]),
    "natRules": ("nat_rules", [
        ("id", "id", "str"),
        ("internalIp", "internal_ip", "str"),
        ("externalIp", "external_ip", "str"),
        ("internalPort", "internal_port", "optint"),
        ("externalPort", "external_port", "optint"),
        ("protocol", "protocol", "str"),
        ("description", "description", "str"),
    ]),
    "wifiNetworks": ("wifi_networks", [
        ("id", "id", "str"),
        ("ssid", "ssid", "str"),
        ("password", "password", "optstr"),
        ("security", "security", "str"),
        ("band", "band", "str"),
        ("vlanId", "vlan_id", "optstr"),
        ("description", "description", "str"),
        ("isActive", "enabled", "bool"),
    ]),
    "applications": ("applications", [
        ("id", "id", "str"),
        ("name", "name", "str"),
        ("url", "url", "str"),
        ("description", "description", "str"),
        ("host", "host", "str"),
    ]),
}

# Children first when deleting, parents first when inserting.
INSERT_ORDER = ("subnets", "vlans", "ipAddresses", "natRules", "wifiNetworks", "applications")

SCHEMA = """
CREATE TABLE IF NOT EXISTS subnets (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL DEFAULT 0,
  name TEXT NOT NULL,
  cidr TEXT NOT NULL,
  gateway TEXT,
  vlan_id TEXT,
  vlan_name TEXT,
  vlan_description TEXT,
  description TEXT,
  used_ips INTEGER DEFAULT 0,
  total_ips INTEGER DEFAULT 0,
  dhcp_enabled INTEGER DEFAULT 0,
  dhcp_start TEXT,
  dhcp_end TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS vlans (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL DEFAULT 0,
  vlan_number INTEGER,
  name TEXT,
  description TEXT,
  subnets TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS ip_addresses (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL DEFAULT 0,
  ip TEXT NOT NULL,
  subnet_id TEXT,
  hostname TEXT,
  mac_address TEXT,
  status TEXT,
  owner TEXT,
  notes TEXT,
  is_online INTEGER,
  last_checked TEXT,
  monitor_enabled INTEGER,
  device_type TEXT,
  parent_device_id TEXT,
  connection_type TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (subnet_id) REFERENCES subnets(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS nat_rules (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL DEFAULT 0,
  internal_ip TEXT NOT NULL,
  external_ip TEXT NOT NULL,
  internal_port INTEGER,
  external_port INTEGER,
  protocol TEXT NOT NULL,
  description TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS wifi_networks (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL DEFAULT 0,
  ssid TEXT NOT NULL,
  password TEXT,
  security TEXT NOT NULL,
  band TEXT,
  vlan_id TEXT,
  description TEXT,
  enabled INTEGER DEFAULT 1,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS applications (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL DEFAULT 0,
  name TEXT NOT NULL,
  url TEXT,
  description TEXT,
  host TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT,
  updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_ip_subnet ON ip_addresses(subnet_id);
CREATE INDEX IF NOT EXISTS idx_ip_status ON ip_addresses(status);
CREATE INDEX IF NOT EXISTS idx_subnet_vlan ON subnets(vlan_id);
"""


def _to_column(value, kind):
    if kind == "json":
        return json.dumps(value or [])
    if kind in ("bool", "optbool"):
        if value is None:
            return None if kind == "optbool" else 0
        return 1 if value else 0
    if kind == "int":
        return int(value or 0)
    return value


def _from_column(value, kind):
    if kind == "json":
        try:
            return json.loads(value) if value else []
        except ValueError:
            return []
    if kind == "bool":
        return bool(value)
    if kind == "optbool":
        return None if value is None else bool(value)
    if kind == "int":
        return int(value or 0)
    if kind == "str":
        return value or ""
    return value


class JsonStore:
    """Flat ``db.json`` backend, one pretty-printed document."""

    backend = "json"

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / JSON_DB_NAME
        self.settings_path = self.data_dir / "settings.json"
        self._lock = threading.Lock()
        self.ensure()

    def ensure(self):
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write(self.path, empty_dataset())
        except OSError as e:
            raise StorageError(f"Failed to initialise {self.path}: {e}") from e

    def _write(self, path: Path, obj):
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(str(tmp), str(path))

    def _read(self, path: Path) -> dict:
        if not path.exists():
            return {}
        raw = path.read_text(encoding="utf-8").strip()
        return json.loads(raw) if raw else {}

    def load(self) -> dict:
        with self._lock:
            try:
                data = self._read(self.path)
            except (OSError, ValueError) as e:
                raise StorageError("Failed to read database") from e
        out = empty_dataset()
        for name in COLLECTIONS:
            out[name] = list(data.get(name) or [])
        return out

    def save(self, dataset: dict):
        with self._lock:
            try:
                self._write(self.path, dataset)
            except OSError as e:
                raise StorageError("Failed to save data") from e

    def get_setting(self, key: str, default=None):
        with self._lock:
            try:
                settings = self._read(self.settings_path)
            except (OSError, ValueError) as e:
                raise StorageError("Failed to read settings") from e
        return settings.get(key, default)

    def set_setting(self, key: str, value):
        with self._lock:
            try:
                settings = self._read(self.settings_path)
                settings[key] = value
                self._write(self.settings_path, settings)
            except (OSError, ValueError) as e:
                raise StorageError("Failed to save settings") from e


class SqliteStore:
    """SQLite backend. Every public call opens its own short-lived connection."""

    backend = "sqlite"

    def __init__(self, db_path: Path):
        self.path = Path(db_path)
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.path), timeout=2.0)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA busy_timeout=2000;")
        con.execute("PRAGMA foreign_keys = ON;")
        return con

    def init_db(self):
        """Create tables and indexes (idempotent)."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            con = self.connect()
            try:
                con.executescript(SCHEMA)
                con.commit()
            finally:
                con.close()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Failed to initialise {self.path}: {e}") from e
        log.debug("database ready at %s", self.path)

    def load(self) -> dict:
        out = empty_dataset()
        try:
            con = self.connect()
            try:
                for name, (table, cols) in TABLES.items():
                    names = ", ".join(c for _, c, _ in cols)
                    rows = con.execute(f"SELECT {names} FROM {table} ORDER BY position ASC;").fetchall()
                    out[name] = [
                        {key: _from_column(r[col], kind) for key, col, kind in cols}
                        for r in rows
                    ]
            finally:
                con.close()
        except sqlite3.Error as e:
            raise StorageError("Failed to read database") from e
        return out

    def save(self, dataset: dict):
        try:
            con = self.connect()
        except sqlite3.Error as e:
            raise StorageError("Failed to save data") from e
        try:
            with con:
                for name in reversed(INSERT_ORDER):
                    con.execute(f"DELETE FROM {TABLES[name][0]};")
                for name in INSERT_ORDER:
                    self._insert(con, name, dataset.get(name) or [])
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save data: {e}") from e
        finally:
            con.close()

    def _insert(self, con, name, records):
        table, cols = TABLES[name]
        names = ", ".join(["position"] + [c for _, c, _ in cols])
        marks = ", ".join("?" for _ in range(len(cols) + 1))
        sql = f"INSERT INTO {table} ({names}) VALUES ({marks});"
        con.executemany(sql, [
            [pos] + [_to_column(rec.get(key), kind) for key, _, kind in cols]
            for pos, rec in enumerate(records)
        ])

    def get_setting(self, key: str, default=None):
        try:
            con = self.connect()
            try:
                row = con.execute("SELECT value FROM settings WHERE key=? LIMIT 1;", (key,)).fetchone()
            finally:
                con.close()
        except sqlite3.Error as e:
            raise StorageError("Failed to read settings") from e
        if not row or row["value"] is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError:
            return default

    def set_setting(self, key: str, value):
        try:
            con = self.connect()
            try:
                with con:
                    con.execute(
                        "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP) "
                        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP;",
                        (key, json.dumps(value)),
                    )
            finally:
                con.close()
        except sqlite3.Error as e:
            raise StorageError("Failed to save settings") from e


def open_store(data_dir: Path, backend: str = "sqlite"):
    data_dir = Path(data_dir)
    backend = (backend or "sqlite").strip().lower()
    if backend == "json":
        return JsonStore(data_dir)
    if backend == "sqlite":
        return SqliteStore(data_dir / SQLITE_DB_NAME)
    raise StorageError(f"Unknown storage backend: {backend}")


def migrate_from_json(json_path: Path, db_path: Path) -> dict:
    """Copy a ``db.json`` document into SQLite.

    An existing database is backed up first as ``<db>.backup-<epoch ms>``.
    The JSON file is left in place. Returns ``{collection: count}``; empty
    when there was nothing to migrate.
    """
    from netkeeper.ipam import prepare_dataset

    json_path = Path(json_path)
    db_path = Path(db_path)
    log.info("Starting migration from %s to SQLite...", json_path.name)

    if not json_path.exists():
        log.info("No %s file found. Nothing to migrate.", json_path.name)
        return {}

    try:
        raw = json.loads(json_path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError) as e:
        raise StorageError(f"Failed to read {json_path}: {e}") from e
    log.info("Read existing %s", json_path.name)

    if db_path.exists():
        backup = db_path.with_name(f"{db_path.name}.backup-{int(time.time() * 1000)}")
        log.info("Backing up existing database to %s", backup.name)
        shutil.copyfile(str(db_path), str(backup))

    dataset = prepare_dataset(raw)
    store = SqliteStore(db_path)
    store.save(dataset)

    counts = {name: len(dataset[name]) for name in INSERT_ORDER}
    for name in INSERT_ORDER:
        log.info("Migrated %d %s", counts[name], name)
    log.info("Migration completed. SQLite database at %s; %s was preserved.", db_path, json_path.name)
    return counts
