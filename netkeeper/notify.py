# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Alert fan-out to Discord, Gotify, ntfy and SMTP with per-device cooldown.
# Path: /netkeeper/notify.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

"""Notification providers.

Every provider takes its own config dict and an alert payload::

    {title, message, deviceName, ipAddress, alertType, timestamp, latency?}

and returns True/False. Provider errors are logged, never raised, so one
broken channel cannot stop the others.
"""

import base64
import concurrent.futures
import copy
import datetime
import html
import logging
import smtplib
import time
from email.message import EmailMessage

import requests

from netkeeper.models import ValidationError

log = logging.getLogger(__name__)

SETTINGS_KEY = "notificationSettings"
COOLDOWN_KEY = "notificationCooldowns"

HTTP_TIMEOUT_S = 10
SMTP_TIMEOUT_S = 20

CHANNELS = ("smtp", "discord", "gotify", "ntfy")
ALERT_TYPES = ("offline", "online", "high_latency", "warning")

DEFAULT_SETTINGS = {
    "smtp": {
        "enabled": False,
        "host": "",
        "port": 587,
        "secure": False,
        "username": "",
        "password": "",
        "fromAddress": "",
        "toAddresses": [],
    },
    "discord": {
        "enabled": False,
        "webhookUrl": "",
        "username": "NetKeeper",
        "avatarUrl": "",
    },
    "gotify": {
        "enabled": False,
        "serverUrl": "",
        "appToken": "",
        "priority": 5,
    },
    "ntfy": {
        "enabled": False,
        "serverUrl": "https://ntfy.sh",
        "topic": "",
        "priority": 3,
    },
    "alertOnOffline": True,
    "alertOnBackOnline": True,
    "alertOnHighLatency": False,
    "highLatencyThreshold": 200,
    "cooldownMinutes": 5,
}

ALERT_EMOJI = {
    "offline": "\U0001F534",
    "online": "\U0001F7E2",
    "high_latency": "\U0001F7E1",
    "warning": "⚠️",
}
DEFAULT_EMOJI = "\U0001F4E1"

DISCORD_COLORS = {
    "offline": 0xFF0000,
    "online": 0x00FF00,
    "high_latency": 0xFFAA00,
    "warning": 0xFFFF00,
}
DEFAULT_COLOR = 0x0099FF

NTFY_TAGS = {"offline": "rotating_light", "online": "white_check_mark"}

EMAIL_HEADER_COLORS = {"offline": "#dc2626", "online": "#16a34a"}


# ---- settings ----
_NUMBER_LIMITS = (
    # (provider or None, key, low, high)
    (None, "highLatencyThreshold", 0, None),
    (None, "cooldownMinutes", 0, None),
    ("gotify", "priority", 0, 10),
    ("ntfy", "priority", 1, 5),
    ("smtp", "port", 1, 65535),
)


def _whole_number(value, default, name: str, low: int, high: int | None) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool) or isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"{name} must be a whole number")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a whole number") from None
    if n < low or (high is not None and n > high):
        bounds = f"between {low} and {high}" if high is not None else f"at least {low}"
        raise ValidationError(f"{name} must be {bounds}")
    return n


def merge_settings(saved: dict | None) -> dict:
    """Overlay saved settings on the defaults, provider by provider.

    Numeric fields are coerced to ints; anything that is not a whole number in
    range raises ``ValidationError``.
    """
    out = copy.deepcopy(DEFAULT_SETTINGS)
    for k, v in (saved or {}).items():
        if k in CHANNELS:
            if not isinstance(v, dict):
                raise ValidationError(f"{k} settings must be an object")
            out[k].update(v)
        elif k in out:
            out[k] = v
    for provider, key, low, high in _NUMBER_LIMITS:
        section = out[provider] if provider else out
        defaults = DEFAULT_SETTINGS[provider] if provider else DEFAULT_SETTINGS
        name = f"{provider}.{key}" if provider else key
        section[key] = _whole_number(section.get(key), defaults[key], name, low, high)
    smtp_to = out["smtp"].get("toAddresses") or []
    if isinstance(smtp_to, str):
        smtp_to = [a.strip() for a in smtp_to.replace(";", ",").split(",")]
    out["smtp"]["toAddresses"] = [a for a in smtp_to if a]
    return out


def load_settings(store) -> dict:
    return merge_settings(store.get_setting(SETTINGS_KEY))


def save_settings(store, settings: dict) -> dict:
    merged = merge_settings(settings)
    store.set_setting(SETTINGS_KEY, merged)
    return merged


# ---- cooldown ----
def _cooldown_key(device_id: str, alert_type: str) -> str:
    return f"{device_id}_{alert_type}"


def is_on_cooldown(store, device_id: str, alert_type: str, cooldown_minutes, now: float | None = None) -> bool:
    now = time.time() if now is None else now
    cooldowns = store.get_setting(COOLDOWN_KEY) or {}
    last = cooldowns.get(_cooldown_key(device_id, alert_type))
    if not last:
        return False
    try:
        return (now - float(last)) < float(cooldown_minutes or 0) * 60
    except (TypeError, ValueError):
        return False


def set_cooldown(store, device_id: str, alert_type: str, now: float | None = None):
    cooldowns = store.get_setting(COOLDOWN_KEY) or {}
    cooldowns[_cooldown_key(device_id, alert_type)] = time.time() if now is None else now
    store.set_setting(COOLDOWN_KEY, cooldowns)


# ---- payload helpers ----
def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


def _human_time(ts: str) -> str:
    try:
        dt = datetime.datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
        return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return str(ts or "")


def alert_emoji(alert_type: str) -> str:
    return ALERT_EMOJI.get(alert_type, DEFAULT_EMOJI)


def _details_text(payload: dict) -> str:
    text = f"{payload['message']}\n\nDevice: {payload['deviceName']}\nIP: {payload['ipAddress']}"
    if payload.get("latency") is not None:
        text += f"\nLatency: {payload['latency']}ms"
    return text


def offline_alert(device_name: str, ip_address: str) -> dict:
    return {
        "title": "Device Offline",
        "message": f"{device_name} ({ip_address}) is no longer responding to network checks.",
        "deviceName": device_name,
        "ipAddress": ip_address,
        "alertType": "offline",
        "timestamp": _now_iso(),
    }


def online_alert(device_name: str, ip_address: str) -> dict:
    return {
        "title": "Device Back Online",
        "message": f"{device_name} ({ip_address}) is now responding again.",
        "deviceName": device_name,
        "ipAddress": ip_address,
        "alertType": "online",
        "timestamp": _now_iso(),
    }


def high_latency_alert(device_name: str, ip_address: str, latency: int) -> dict:
    return {
        "title": "High Latency Detected",
        "message": f"{device_name} ({ip_address}) is experiencing high latency.",
        "deviceName": device_name,
        "ipAddress": ip_address,
        "alertType": "high_latency",
        "latency": latency,
        "timestamp": _now_iso(),
    }


def sample_payload() -> dict:
    return {
        "title": "Test Notification",
        "message": (
            "This is a test notification from NetKeeper. If you see this, "
            "your notification channel is configured correctly!"
        ),
        "deviceName": "Test Device",
        "ipAddress": "192.168.1.1",
        "alertType": "warning",
        "timestamp": _now_iso(),
    }


# ---- providers ----
def send_discord(config: dict, payload: dict) -> bool:
    if not config.get("enabled") or not config.get("webhookUrl"):
        return False

    fields = [
        {"name": "Device", "value": payload["deviceName"], "inline": True},
        {"name": "IP Address", "value": payload["ipAddress"], "inline": True},
    ]
    if payload.get("latency") is not None:
        fields.append({"name": "Latency", "value": f"{payload['latency']}ms", "inline": True})

    body = {
        "username": config.get("username") or "NetKeeper",
        "embeds": [{
            "title": f"{alert_emoji(payload['alertType'])} {payload['title']}",
            "description": payload["message"],
            "color": DISCORD_COLORS.get(payload["alertType"], DEFAULT_COLOR),
            "fields": fields,
            "timestamp": payload["timestamp"],
            "footer": {"text": "NetKeeper"},
        }],
    }
    if config.get("avatarUrl"):
        body["avatar_url"] = config["avatarUrl"]
    if config.get("mentionRoleId"):
        body["content"] = f"<@&{config['mentionRoleId']}>"

    try:
        r = requests.post(config["webhookUrl"], json=body, timeout=HTTP_TIMEOUT_S)
        return r.ok
    except requests.exceptions.RequestException as e:
        log.warning("Discord notification failed: %s", e)
        return False


def send_gotify(config: dict, payload: dict, click_url: str = "") -> bool:
    if not config.get("enabled") or not config.get("serverUrl") or not config.get("appToken"):
        return False

    url = f"{str(config['serverUrl']).rstrip('/')}/message"
    body = {
        "title": f"{alert_emoji(payload['alertType'])} {payload['title']}",
        "message": _details_text(payload),
        "priority": int(config.get("priority") or 5),
    }
    if click_url:
        body["extras"] = {"client::notification": {"click": {"url": click_url}}}

    try:
        r = requests.post(url, params={"token": config["appToken"]}, json=body, timeout=HTTP_TIMEOUT_S)
        return r.ok
    except requests.exceptions.RequestException as e:
        log.warning("Gotify notification failed: %s", e)
        return False


def send_ntfy(config: dict, payload: dict) -> bool:
    if not config.get("enabled") or not config.get("topic"):
        return False

    server = str(config.get("serverUrl") or "https://ntfy.sh").rstrip("/")
    url = f"{server}/{config['topic']}"
    title = f"{alert_emoji(payload['alertType'])} {payload['title']}"
    headers = {
        # HTTP headers must be latin-1; ntfy decodes RFC 2047 encoded words.
        "Title": "=?UTF-8?B?" + _b64(title) + "?=",
        "Priority": str(config.get("priority") or 3),
        "Tags": NTFY_TAGS.get(payload["alertType"], "warning"),
    }
    auth = None
    if config.get("username") and config.get("password"):
        auth = (config["username"], config["password"])

    try:
        r = requests.post(
            url,
            data=_details_text(payload).encode("utf-8"),
            headers=headers,
            auth=auth,
            timeout=HTTP_TIMEOUT_S,
        )
        return r.ok
    except requests.exceptions.RequestException as e:
        log.warning("Ntfy notification failed: %s", e)
        return False


def _b64(s: str) -> str:
    return base64.b64encode(s.encode("utf-8")).decode("ascii")


def build_email(payload: dict) -> dict:
    """Subject, HTML and text bodies for an alert email."""
    emoji = alert_emoji(payload["alertType"])
    color = EMAIL_HEADER_COLORS.get(payload["alertType"], "#ea580c")
    when = _human_time(payload.get("timestamp"))
    esc = html.escape

    rows = [("Device", esc(payload["deviceName"]), ""),
            ("IP Address", esc(payload["ipAddress"]), " font-family: monospace;")]
    if payload.get("latency") is not None:
        rows.append(("Latency", f"{payload['latency']}ms", ""))
    row_html = "".join(
        f'<tr><td style="padding: 8px 0; border-bottom: 1px solid #334155; color: #94a3b8;">{label}</td>'
        f'<td style="padding: 8px 0; border-bottom: 1px solid #334155; text-align: right;{extra}">{value}</td></tr>'
        for label, value, extra in rows
    )
    row_html += (
        '<tr><td style="padding: 8px 0; color: #94a3b8;">Time</td>'
        f'<td style="padding: 8px 0; text-align: right;">{esc(when)}</td></tr>'
    )

    body_html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<div style="background: {color}; color: white; padding: 20px; border-radius: 8px 8px 0 0;">'
        f'<h2 style="margin: 0;">{emoji} {esc(payload["title"])}</h2></div>'
        '<div style="background: #1e293b; color: #e2e8f0; padding: 20px; border-radius: 0 0 8px 8px;">'
        f'<p style="font-size: 16px; margin-bottom: 20px;">{esc(payload["message"])}</p>'
        f'<table style="width: 100%; border-collapse: collapse;">{row_html}</table>'
        '<p style="margin-top: 20px; font-size: 12px; color: #64748b;">Sent by NetKeeper</p>'
        '</div></div>'
    )
    text = f"{payload['title']}\n\n{_details_text(payload)}\nTime: {when}"
    return {
        "subject": f"{emoji} NetKeeper: {payload['title']}",
        "html": body_html,
        "text": text,
    }


def send_smtp_mail(config: dict, message: dict):
    """Deliver one email. ``message`` is ``{subject, html?, text?}``.

    Raises ``ValueError`` for an incomplete config and ``smtplib.SMTPException``
    / ``OSError`` for delivery failures.
    """
    host = str(config.get("host") or "").strip()
    smtp = merge_settings({"smtp": config})["smtp"]
    to = smtp["toAddresses"]
    if not host:
        raise ValueError("SMTP host is required")
    if not to:
        raise ValueError("At least one recipient is required")

    sender = config.get("fromAddress") or config.get("username") or f"netkeeper@{host}"
    msg = EmailMessage()
    msg["Subject"] = message.get("subject") or "NetKeeper notification"
    msg["From"] = sender
    msg["To"] = ", ".join(to)
    msg.set_content(message.get("text") or "")
    if message.get("html"):
        msg.add_alternative(message["html"], subtype="html")

    port = smtp["port"]
    if config.get("secure"):
        server = smtplib.SMTP_SSL(host, port, timeout=SMTP_TIMEOUT_S)
    else:
        server = smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT_S)
    try:
        if not config.get("secure"):
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
        if config.get("username"):
            server.login(config["username"], config.get("password") or "")
        server.send_message(msg)
    finally:
        try:
            server.quit()
        except (smtplib.SMTPException, OSError):
            pass
    log.info("smtp: sent %r to %d recipient(s)", msg["Subject"], len(to))


def send_smtp(config: dict, payload: dict) -> bool:
    if not config.get("enabled") or not config.get("host") or not config.get("toAddresses"):
        return False
    try:
        send_smtp_mail(config, build_email(payload))
        return True
    except (ValueError, smtplib.SMTPException, OSError) as e:
        log.warning("SMTP notification failed: %s", e)
        return False


def _dispatch(channel: str, config: dict, payload: dict, click_url: str = "") -> bool:
    if channel == "discord":
        return send_discord(config, payload)
    if channel == "gotify":
        return send_gotify(config, payload, click_url=click_url)
    if channel == "ntfy":
        return send_ntfy(config, payload)
    if channel == "smtp":
        return send_smtp(config, payload)
    return False


def send_alert(store, device_id: str, payload: dict, settings: dict | None = None,
               click_url: str = "", now: float | None = None) -> dict:
    """Send ``payload`` through every enabled channel.

    Returns ``{"success": bool, "results": {channel: bool}}``. When the
    device/alert type pair is still cooling down nothing is sent and the
    results are ``{"cooldown": True}``.
    """
    config = settings or load_settings(store)

    if is_on_cooldown(store, device_id, payload["alertType"], config.get("cooldownMinutes"), now=now):
        log.info("Alert for %s (%s) is on cooldown", device_id, payload["alertType"])
        return {"success": False, "results": {"cooldown": True}}

    enabled = [ch for ch in CHANNELS if (config.get(ch) or {}).get("enabled")]
    results: dict[str, bool] = {}
    if enabled:
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(enabled)) as ex:
            futs = {ex.submit(_dispatch, ch, config[ch], payload, click_url): ch for ch in enabled}
            for fut in concurrent.futures.as_completed(futs):
                ch = futs[fut]
                try:
                    results[ch] = bool(fut.result())
                except Exception as e:
                    log.error("%s notification crashed: %s", ch, e)
                    results[ch] = False

    success = any(results.values())
    if success:
        set_cooldown(store, device_id, payload["alertType"], now=now)
    log.info("alert %s for %s: %s", payload["alertType"], device_id, results or "no channels enabled")
    return {"success": success, "results": results}


def send_test_notification(channel: str, config: dict, click_url: str = "") -> bool:
    """Send the fixed test payload through a single channel."""
    if channel not in CHANNELS:
        return False
    cfg = merge_settings({channel: config or {}})[channel]
    cfg["enabled"] = True
    return _dispatch(channel, cfg, sample_payload(), click_url=click_url)
