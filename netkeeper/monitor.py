# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Device up/down tracking, latency history, alerts and the background poller.
# Path: /netkeeper/monitor.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

"""Polling-based device monitor.

A check round pings every enabled monitored device once, updates its status,
latency history and uptime, then raises alerts for state transitions. The
device list lives in the settings area under ``monitoredDevices``; sent alerts
are kept under ``notifications``.
"""

import datetime
import logging
import threading
import time

from netkeeper import notify
from netkeeper.models import new_id
from netkeeper.scanner import check_devices

log = logging.getLogger(__name__)

DEVICES_KEY = "monitoredDevices"
NOTIFICATIONS_KEY = "notifications"
STATE_KEY = "monitorState"

HISTORY_LEN = 30
MAX_NOTIFICATIONS = 200
DEFAULT_CHECK_INTERVAL = 30

# one check round at a time; _STATE_LOCK guards read-modify-write of the settings keys
_ROUND_LOCK = threading.Lock()
_STATE_LOCK = threading.RLock()

# alert types counted in alertsSent
COUNTED_ALERTS = ("offline", "online")


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


def _sample_label(ts: float) -> str:
    return time.strftime("%H:%M", time.localtime(ts))


def new_device(ip_rec: dict) -> dict:
    return {
        "id": ip_rec["id"],
        "ipAddress": ip_rec.get("address") or "",
        "hostname": ip_rec.get("hostname") or "Unknown",
        "status": "online" if ip_rec.get("isOnline") else "offline",
        "latency": 0,
        "lastSeen": _now_iso(),
        "uptimePercent": 100.0,
        "checkInterval": DEFAULT_CHECK_INTERVAL,
        "enabled": True,
        "latencyHistory": [],
    }


def sync_devices(ip_records: list, devices: list) -> list:
    """Line up monitored devices with the IP records.

    Existing devices keep their state; new IP records become devices; devices
    whose IP record is gone (or has monitoring switched off) are dropped.
    """
    by_id = {d.get("id"): d for d in devices or []}
    out = []
    for rec in ip_records or []:
        if rec.get("monitorEnabled") is False:
            continue
        cur = by_id.get(rec["id"])
        if cur is None:
            out.append(new_device(rec))
            continue
        cur = dict(cur)
        cur["ipAddress"] = rec.get("address") or cur.get("ipAddress") or ""
        cur["hostname"] = rec.get("hostname") or cur.get("hostname") or "Unknown"
        cur.setdefault("latencyHistory", [])
        out.append(cur)
    return out


def uptime_percent(history: list) -> float:
    if not history:
        return 100.0
    online = sum(1 for h in history if (h.get("latency") or 0) > 0)
    return round((online / len(history)) * 100.0, 1)


def apply_result(device: dict, result: dict, threshold: int, ts: float | None = None) -> dict:
    """Fold one ping result into a device record and return the updated copy."""
    ts = time.time() if ts is None else ts
    online = bool(result.get("isOnline"))
    latency = int(result.get("latency") or 0) if online else 0

    history = list(device.get("latencyHistory") or [])
    history.append({"time": _sample_label(ts), "latency": latency})
    history = history[-HISTORY_LEN:]

    if not online:
        status = "offline"
    elif threshold and latency > threshold:
        status = "warning"
    else:
        status = "online"

    out = dict(device)
    out.update({
        "status": status,
        "latency": latency,
        "latencyHistory": history,
        "uptimePercent": uptime_percent(history),
    })
    if online:
        out["lastSeen"] = datetime.datetime.fromtimestamp(ts, datetime.timezone.utc).isoformat(timespec="seconds")
    return out


def alerts_for(device: dict, previous_status: str, settings: dict) -> list:
    """Alert payloads owed for a device after a check."""
    current = device.get("status")
    name = device.get("hostname") or "Unknown"
    ip = device.get("ipAddress") or ""
    out = []

    if previous_status != current:
        if current == "offline" and settings.get("alertOnOffline"):
            out.append(notify.offline_alert(name, ip))
        elif current in ("online", "warning") and previous_status == "offline" and settings.get("alertOnBackOnline"):
            out.append(notify.online_alert(name, ip))

    threshold = settings.get("highLatencyThreshold") or 0
    if (settings.get("alertOnHighLatency") and current != "offline"
            and int(device.get("latency") or 0) > int(threshold)):
        out.append(notify.high_latency_alert(name, ip, int(device.get("latency") or 0)))
    return out


def compute_stats(devices: list, state: dict | None = None) -> dict:
    enabled = [d for d in devices or [] if d.get("enabled")]
    reachable = [d for d in enabled if d.get("status") != "offline"]
    state = state or {}
    return {
        "totalDevices": len(enabled),
        "onlineDevices": sum(1 for d in enabled if d.get("status") == "online"),
        "offlineDevices": sum(1 for d in enabled if d.get("status") == "offline"),
        "warningDevices": sum(1 for d in enabled if d.get("status") == "warning"),
        "averageLatency": round(sum(int(d.get("latency") or 0) for d in reachable) / max(1, len(reachable))),
        "averageUptime": round(sum(float(d.get("uptimePercent") or 0) for d in enabled) / max(1, len(enabled)), 1),
        "alertsSent": int(state.get("alertsSent") or 0),
        "lastCheck": state.get("lastCheck") or "",
    }


# ---- store helpers ----
def load_devices(store) -> list:
    dataset = store.load()
    devices = sync_devices(dataset.get("ipAddresses") or [], store.get_setting(DEVICES_KEY) or [])
    return devices


def toggle_device(store, device_id: str) -> dict:
    with _STATE_LOCK:
        devices = load_devices(store)
        for d in devices:
            if d.get("id") == device_id:
                d["enabled"] = not d.get("enabled")
                store.set_setting(DEVICES_KEY, devices)
                return d
    raise KeyError(device_id)


def load_notifications(store) -> list:
    return store.get_setting(NOTIFICATIONS_KEY) or []


def record_notification(store, device: dict, payload: dict) -> dict:
    entry = {
        "id": new_id(),
        "deviceId": device.get("id"),
        "deviceName": payload.get("deviceName") or device.get("hostname") or "",
        "ipAddress": payload.get("ipAddress") or device.get("ipAddress") or "",
        "message": payload.get("message") or "",
        "timestamp": payload.get("timestamp") or _now_iso(),
        "read": False,
    }
    with _STATE_LOCK:
        items = load_notifications(store)
        items.insert(0, entry)
        store.set_setting(NOTIFICATIONS_KEY, items[:MAX_NOTIFICATIONS])
    return entry


def mark_read(store, notification_id: str | None = None) -> int:
    """Mark one notification (or all, when no id is given) as read."""
    with _STATE_LOCK:
        items = load_notifications(store)
        n = 0
        for it in items:
            if notification_id is None or it.get("id") == notification_id:
                if not it.get("read"):
                    n += 1
                it["read"] = True
        store.set_setting(NOTIFICATIONS_KEY, items)
    return n


def _keep_current_switches(checked: list, stored: list) -> list:
    """Carry ``enabled`` flags toggled while a round was pinging into its results."""
    switches = {d.get("id"): d.get("enabled") for d in stored or []}
    out = []
    for d in checked:
        if d.get("id") in switches and switches[d["id"]] != d.get("enabled"):
            d = dict(d, enabled=switches[d["id"]])
        out.append(d)
    return out


def run_check(store, fping: str = "fping", click_url: str = "") -> dict:
    """One monitoring round. Returns ``{devices, stats, alerts}``.

    ``alerts`` and the ``alertsSent`` counter cover offline / back-online
    alerts only; high-latency alerts are delivered and listed as
    notifications but not counted.
    """
    with _ROUND_LOCK:
        settings = notify.load_settings(store)
        devices = load_devices(store)
        targets = [d for d in devices if d.get("enabled")]
        results = {r["id"]: r for r in check_devices(targets, fping=fping)} if targets else {}

        ts = time.time()
        threshold = int(settings.get("highLatencyThreshold") or 0)
        updated = []
        owed = []
        for d in devices:
            if not d.get("enabled") or d.get("id") not in results:
                updated.append(d)
                continue
            previous = d.get("status")
            nd = apply_result(d, results[d["id"]], threshold, ts=ts)
            updated.append(nd)
            owed.extend((nd, p) for p in alerts_for(nd, previous, settings))

        sent = 0
        for device, payload in owed:
            res = notify.send_alert(store, device["id"], payload, settings=settings, click_url=click_url)
            if res["success"]:
                if payload.get("alertType") in COUNTED_ALERTS:
                    sent += 1
                record_notification(store, device, payload)

        with _STATE_LOCK:
            updated = _keep_current_switches(updated, store.get_setting(DEVICES_KEY))
            state = store.get_setting(STATE_KEY) or {}
            state["alertsSent"] = int(state.get("alertsSent") or 0) + sent
            state["lastCheck"] = _now_iso()
            store.set_setting(DEVICES_KEY, updated)
            store.set_setting(STATE_KEY, state)

        log.info("monitor: checked %d device(s), %d alert(s) sent", len(targets), sent)
        return {"devices": updated, "stats": compute_stats(updated, state), "alerts": sent}


class MonitorPoller:
    """Runs ``run_check`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, store_factory, fping: str = "fping", interval: int = DEFAULT_CHECK_INTERVAL,
                 click_url: str = ""):
        self.store_factory = store_factory
        self.fping = fping
        self.interval = max(1, int(interval))
        self.click_url = click_url
        self.last_error = ""
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def stopping(self) -> bool:
        return self.running and self._stop.is_set()

    def start(self) -> bool:
        """Start the loop. False while a stopped loop is still finishing its round."""
        if self.stopping:
            return False
        if self.running:
            return True
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(target=self._loop, name="netkeeper-monitor", daemon=True)
        self._thread.start()
        log.info("monitor: poller started (every %ss)", self.interval)
        return True

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                log.warning("monitor: poller still finishing a round after %ss", timeout)
                return
        self._thread = None
        log.info("monitor: poller stopped")

    def set_interval(self, seconds: int):
        self.interval = max(1, int(seconds))
        self._wake.set()

    def status(self) -> dict:
        return {"running": self.running, "interval": self.interval, "lastError": self.last_error}

    def _loop(self):
        while not self._stop.is_set():
            try:
                run_check(self.store_factory(), fping=self.fping, click_url=self.click_url)
                self.last_error = ""
            except Exception as e:
                # keep polling; the next round may succeed (fping installed, DB unlocked)
                self.last_error = str(e)
                log.warning("monitor: check failed: %s", e)
            self._wake.wait(self.interval)
            self._wake.clear()
