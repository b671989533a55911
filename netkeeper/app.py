#!/usr/bin/env python3
from flask import Flask, request, jsonify, render_template, Response, session
import os
import time
import logging
import secrets
import smtplib

from werkzeug.exceptions import HTTPException

from netkeeper import auth, ipam, monitor, notify, scanner
from netkeeper.config import (
    BIND_HOST,
    BIND_PORT,
    DEBUG_LOG_NAME,
    MONITOR_INTERVAL_CHOICES,
    SECRET_KEY,
    STATIC_DIR,
    TEMPLATES_DIR,
    flask_defaults,
    read_version,
)
from netkeeper.export import BACKUP_FILENAME, EXPORTERS, backup_bytes, export_basename, inventory_rows, restore
from netkeeper.models import ValidationError
from netkeeper.scanner import ScanError
from netkeeper.storage import StorageError, open_store
from netkeeper.topology import build_topology

APP = Flask(
    __name__,
    template_folder=str(TEMPLATES_DIR),
    static_folder=str(STATIC_DIR),
)
APP.config.update(flask_defaults())
APP.config["SECRET_KEY"] = SECRET_KEY or secrets.token_hex(32)
APP.config["SESSION_COOKIE_HTTPONLY"] = True
APP.config["SESSION_COOKIE_SAMESITE"] = "Lax"
APP.json.sort_keys = False

UI_VERSION = read_version()
COPYRIGHT_YEAR = "2026"

# Collections editable through /api/<kind>[/<id>]
KINDS = {
    "subnets": "subnets",
    "ips": "ipAddresses",
    "nat": "natRules",
    "wifi": "wifiNetworks",
    "applications": "applications",
}

# Ensure the logger is usable under systemd (stdout/stderr -> journal)
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

_LAST_DEBUG_TS = 0


def _debug_log(msg: str, force: bool = False):
    """Write a debug line to the app logger + a file in the data dir.

    Throttled to one line every 3 seconds unless forced; the UI polls.
    """
    global _LAST_DEBUG_TS
    if not APP.config.get("WEBUI_DEBUG"):
        return
    now = int(time.time())
    if not force and (now - _LAST_DEBUG_TS) < 3:
        return
    _LAST_DEBUG_TS = now

    line = f"[webui] {msg}"
    APP.logger.info(line)
    try:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
        with open(os.path.join(str(APP.config["DATA_DIR"]), DEBUG_LOG_NAME), "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
    except OSError:
        pass


def die_json(msg: str, code: int = 500):
    return jsonify({"ok": False, "message": msg}), code


@APP.errorhandler(ValidationError)
def _handle_validation(err):
    return die_json(str(err), 400)


@APP.errorhandler(StorageError)
def _handle_storage(err):
    APP.logger.error("storage: %s", err)
    return die_json(str(err), 500)


@APP.errorhandler(ScanError)
def _handle_scan(err):
    APP.logger.warning("scan: %s", err)
    return die_json(str(err), 500)


@APP.before_request
def _require_json_body():
    """Mutating API calls carry JSON (or a multipart backup upload), never form or text bodies."""
    if request.method not in ("POST", "PUT", "PATCH", "DELETE") or not request.path.startswith("/api/"):
        return None
    if not request.content_length and not request.mimetype:
        return None
    if request.is_json:
        return None
    if request.path == "/api/restore" and request.mimetype == "multipart/form-data":
        return None
    return die_json("Content-Type must be application/json", 415)


@APP.errorhandler(Exception)
def _handle_all_errors(err):
    """Return JSON for API routes so the frontend doesn't explode on HTML errors."""
    if request and request.path and request.path.startswith("/api/"):
        code = getattr(err, "code", 500)
        if not isinstance(code, int):
            code = 500
        if code >= 500:
            APP.logger.exception("unhandled error on %s", request.path)
        return jsonify({"ok": False, "message": str(err)}), code
    if isinstance(err, HTTPException):
        return err
    raise err


# ---- store / poller ----
def get_store():
    """Store for the configured data dir + backend, opened once and cached."""
    key = (str(APP.config["DATA_DIR"]), APP.config["BACKEND"])
    cached = APP.extensions.get("netkeeper_store")
    if cached and cached[0] == key:
        return cached[1]
    store = open_store(APP.config["DATA_DIR"], APP.config["BACKEND"])
    APP.extensions["netkeeper_store"] = (key, store)
    auth.ensure_account(store)
    return store


def get_poller() -> monitor.MonitorPoller:
    poller = APP.extensions.get("netkeeper_poller")
    if poller is None:
        poller = monitor.MonitorPoller(
            get_store,
            fping=APP.config["FPING"],
            interval=APP.config["MONITOR_INTERVAL"],
            click_url=APP.config.get("PUBLIC_URL") or "",
        )
        APP.extensions["netkeeper_poller"] = poller
    return poller


def json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _save(dataset: dict) -> dict:
    dataset = ipam.prepare_dataset(dataset)
    get_store().save(dataset)
    return dataset


# ---- Routes ----
@APP.get("/")
def index():
    # hard fail with a clear error if template missing
    tpl = TEMPLATES_DIR / "index.html"
    if not tpl.exists():
        return f"Missing templates/index.html (looked for {tpl})", 500
    return render_template(
        "index.html",
        ui_version=UI_VERSION,
        copyright_year=COPYRIGHT_YEAR,
        poll_choices=MONITOR_INTERVAL_CHOICES,
        poll_seconds=APP.config["MONITOR_INTERVAL"],
    )


@APP.get("/api/health")
def api_health():
    return jsonify({"ok": True, "version": UI_VERSION, "backend": APP.config["BACKEND"]})


# ---- API: auth ----
@APP.post("/api/login")
def api_login():
    body = json_body()
    username = str(body.get("username") or "").strip()
    if not auth.verify_login(get_store(), username, body.get("password") or ""):
        _debug_log(f"failed login for {username!r} from {request.remote_addr}", force=True)
        return die_json("Invalid credentials. Access denied.", 401)
    session.clear()
    session["user"] = username
    return jsonify({"ok": True, "username": username})


@APP.post("/api/logout")
def api_logout():
    session.clear()
    return jsonify({"ok": True})


@APP.get("/api/session")
def api_session():
    user = session.get("user")
    return jsonify({"ok": True, "authenticated": bool(user), "username": user or ""})


@APP.post("/api/account")
@auth.login_required
def api_account():
    body = json_body()
    acct = auth.update_account(
        get_store(),
        body.get("username") or "",
        body.get("password") or "",
        body.get("confirmPassword") or "",
    )
    session["user"] = acct["username"]
    return jsonify({"ok": True, "message": "Credentials updated successfully!", "username": acct["username"]})


# ---- API: dataset ----
@APP.get("/api/data")
@auth.login_required
def api_data_get():
    try:
        return jsonify(get_store().load())
    except StorageError:
        return jsonify({"error": "Failed to read database"}), 500


@APP.post("/api/data")
@auth.login_required
def api_data_post():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid JSON body"}), 400
    try:
        _save(payload)
    except StorageError:
        return jsonify({"error": "Failed to save data"}), 500
    return jsonify({"status": "success"})


@APP.post("/api/<kind>")
@auth.login_required
def api_record_add(kind):
    if kind not in KINDS:
        return die_json(f"Unknown collection: {kind}", 404)
    dataset = get_store().load()
    rec = ipam.upsert(dataset, KINDS[kind], json_body())
    _save(dataset)
    return jsonify({"ok": True, "record": rec}), 201


@APP.put("/api/<kind>/<rec_id>")
@auth.login_required
def api_record_edit(kind, rec_id):
    if kind not in KINDS:
        return die_json(f"Unknown collection: {kind}", 404)
    dataset = get_store().load()
    try:
        rec = ipam.upsert(dataset, KINDS[kind], json_body(), rec_id=rec_id)
    except KeyError:
        return die_json("Record not found", 404)
    dataset = _save(dataset)
    # usedIps may have been recounted
    return jsonify({"ok": True, "record": ipam.find(dataset, KINDS[kind], rec["id"])})


@APP.delete("/api/<kind>/<rec_id>")
@auth.login_required
def api_record_delete(kind, rec_id):
    if kind not in KINDS:
        return die_json(f"Unknown collection: {kind}", 404)
    dataset = get_store().load()
    if not ipam.delete(dataset, KINDS[kind], rec_id):
        return die_json("Record not found", 404)
    _save(dataset)
    return jsonify({"ok": True})


@APP.get("/api/vlans")
@auth.login_required
def api_vlans():
    return jsonify({"ok": True, "vlans": ipam.derive_vlans(get_store().load()["subnets"])})


@APP.get("/api/dashboard")
@auth.login_required
def api_dashboard():
    return jsonify({"ok": True, **ipam.dashboard_stats(get_store().load())})


@APP.get("/api/topology")
@auth.login_required
def api_topology():
    dataset = get_store().load()
    return jsonify({"ok": True, **build_topology(dataset["subnets"], dataset["ipAddresses"])})


# ---- API: scanning ----
@APP.post("/api/scan")
@auth.login_required
def api_scan():
    cidr = str(json_body().get("cidr") or "").strip()
    if not cidr:
        return jsonify({"error": "CIDR required"}), 400
    try:
        alive = scanner.scan_cidr(cidr, fping=APP.config["FPING"])
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"aliveHosts": alive})


@APP.post("/api/subnets/<subnet_id>/scan")
@auth.login_required
def api_subnet_scan(subnet_id):
    """Scan a stored subnet and mark its IP records online/offline."""
    dataset = get_store().load()
    subnet = ipam.find(dataset, "subnets", subnet_id)
    if not subnet:
        return die_json("Subnet not found", 404)
    try:
        alive = scanner.scan_cidr(subnet["cidr"], fping=APP.config["FPING"])
    except ValueError as e:
        return die_json(str(e), 400)
    updated = ipam.apply_scan(dataset, subnet_id, alive)
    _save(dataset)
    return jsonify({"ok": True, "aliveHosts": alive, "updated": updated})


@APP.post("/api/subnets/<subnet_id>/import")
@auth.login_required
def api_subnet_import(subnet_id):
    devices = json_body().get("devices") or []
    if not isinstance(devices, list):
        return die_json("devices must be a list", 400)
    dataset = get_store().load()
    added = ipam.import_scan_results(dataset, subnet_id, devices)
    _save(dataset)
    subnet = ipam.find(dataset, "subnets", subnet_id)
    return jsonify({
        "ok": True,
        "message": f"Successfully added {len(added)} device(s) to {subnet['name']}",
        "added": added,
    })


# ---- API: monitoring ----
@APP.post("/api/monitor/check")
@auth.login_required
def api_monitor_check():
    devices = json_body().get("devices") or []
    if not isinstance(devices, list):
        return die_json("devices must be a list", 400)
    results = scanner.check_devices(devices, fping=APP.config["FPING"])
    return jsonify({"results": results})


@APP.get("/api/monitor/devices")
@auth.login_required
def api_monitor_devices():
    store = get_store()
    devices = monitor.load_devices(store)
    state = store.get_setting(monitor.STATE_KEY) or {}
    return jsonify({"ok": True, "devices": devices, "stats": monitor.compute_stats(devices, state)})


@APP.post("/api/monitor/devices/<device_id>/toggle")
@auth.login_required
def api_monitor_toggle(device_id):
    try:
        device = monitor.toggle_device(get_store(), device_id)
    except KeyError:
        return die_json("Device not found", 404)
    return jsonify({"ok": True, "device": device})


@APP.get("/api/monitor/stats")
@auth.login_required
def api_monitor_stats():
    store = get_store()
    state = store.get_setting(monitor.STATE_KEY) or {}
    return jsonify({"ok": True, **monitor.compute_stats(monitor.load_devices(store), state)})


@APP.post("/api/monitor/run")
@auth.login_required
def api_monitor_run():
    result = monitor.run_check(get_store(), fping=APP.config["FPING"], click_url=APP.config.get("PUBLIC_URL") or "")
    return jsonify({"ok": True, **result})


@APP.get("/api/monitor/poller")
@auth.login_required
def api_poller_status():
    return jsonify({"ok": True, **get_poller().status()})


@APP.post("/api/monitor/poller")
@auth.login_required
def api_poller_set():
    body = json_body()
    poller = get_poller()
    if "interval" in body:
        try:
            interval = int(body["interval"])
        except (TypeError, ValueError):
            return die_json("interval must be a number of seconds", 400)
        if interval not in MONITOR_INTERVAL_CHOICES:
            return die_json(f"interval must be one of {', '.join(map(str, MONITOR_INTERVAL_CHOICES))}", 400)
        poller.set_interval(interval)
    if "running" in body:
        if body["running"]:
            if not poller.start():
                return die_json("Monitor poller is still stopping, try again shortly", 409)
        else:
            poller.stop()
    return jsonify({"ok": True, **poller.status()})


# ---- API: notifications ----
@APP.get("/api/notifications")
@auth.login_required
def api_notifications():
    items = monitor.load_notifications(get_store())
    return jsonify({"ok": True, "notifications": items, "unread": sum(1 for n in items if not n.get("read"))})


@APP.post("/api/notifications/<notification_id>/read")
@auth.login_required
def api_notification_read(notification_id):
    return jsonify({"ok": True, "updated": monitor.mark_read(get_store(), notification_id)})


@APP.post("/api/notifications/read-all")
@auth.login_required
def api_notifications_read_all():
    return jsonify({"ok": True, "updated": monitor.mark_read(get_store())})


@APP.get("/api/notifications/settings")
@auth.login_required
def api_notification_settings_get():
    return jsonify({"ok": True, "settings": notify.load_settings(get_store())})


@APP.post("/api/notifications/settings")
@auth.login_required
def api_notification_settings_set():
    settings = notify.save_settings(get_store(), json_body())
    return jsonify({"ok": True, "settings": settings})


@APP.post("/api/notifications/test")
@auth.login_required
def api_notification_test():
    body = json_body()
    channel = str(body.get("channel") or "").strip().lower()
    if channel not in notify.CHANNELS:
        return die_json(f"Unknown channel: {channel or '-'}", 400)
    ok = notify.send_test_notification(channel, body.get("config") or {}, click_url=APP.config.get("PUBLIC_URL") or "")
    return jsonify({"ok": ok, "message": "Test notification sent" if ok else "Test notification failed"})


@APP.post("/api/notifications/smtp")
@auth.login_required
def api_notification_smtp():
    body = json_body()
    config = body.get("config") or {}
    payload = body.get("payload") or {}
    if not isinstance(config, dict) or not isinstance(payload, dict):
        return die_json("config and payload must be objects", 400)
    try:
        notify.send_smtp_mail(config, payload)
    except ValueError as e:
        return die_json(str(e), 400)
    except (smtplib.SMTPException, OSError) as e:
        APP.logger.warning("smtp: delivery failed: %s", e)
        return die_json(f"SMTP delivery failed: {e}", 502)
    return jsonify({"ok": True, "message": "Email sent"})


# ---- API: backup / export ----
@APP.get("/api/backup")
@auth.login_required
def api_backup():
    return Response(
        backup_bytes(get_store().load()),
        mimetype="application/json",
        headers={"Content-Disposition": f"attachment; filename={BACKUP_FILENAME}"},
    )


@APP.post("/api/restore")
@auth.login_required
def api_restore():
    upload = request.files.get("file")
    raw = upload.read() if upload else request.get_data()
    store = get_store()
    dataset = restore(store.load(), raw)
    store.save(dataset)
    _debug_log(f"restore: {', '.join(f'{k}={len(v)}' for k, v in dataset.items())}", force=True)
    return jsonify({"ok": True, "message": "Backup restored"})


@APP.get("/api/export")
@auth.login_required
def api_export():
    fmt = (request.args.get("fmt") or "csv").strip().lower()
    if fmt not in EXPORTERS:
        return die_json("Unknown format", 400)
    render, mimetype = EXPORTERS[fmt]
    rows = inventory_rows(get_store().load())
    try:
        data = render(rows)
    except ImportError as e:
        return die_json(f"{fmt.upper()} export failed: {e}", 500)
    return Response(
        data,
        mimetype=mimetype,
        headers={"Content-Disposition": f"attachment; filename={export_basename()}.{fmt}"},
    )


# For SPA routing: serve the UI for every non-API path
@APP.get("/<path:path>")
def spa_fallback(path):
    if path.startswith("api/"):
        return die_json("Not found", 404)
    return index()


def run_server(host: str = BIND_HOST, port: int = BIND_PORT, start_monitor: bool | None = None):
    store = get_store()
    APP.logger.info(
        "NetKeeper %s on %s:%s (backend=%s, data=%s)",
        UI_VERSION, host, port, store.backend, APP.config["DATA_DIR"],
    )
    if start_monitor if start_monitor is not None else APP.config["MONITOR_AUTOSTART"]:
        get_poller().start()
    APP.run(host=host, port=port, threaded=True)


if __name__ == "__main__":
    run_server()
