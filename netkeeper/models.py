# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Record shapes, defaults and required-field checks for the dataset.
# Path: /netkeeper/models.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

"""Dataset records.

Records travel as plain dicts with the camelCase keys the browser uses. The
helpers here fill defaults and coerce types so that a record read back from
either backend looks exactly like the one that was saved.
"""

import ipaddress
import secrets
import string

COLLECTIONS = ("subnets", "vlans", "natRules", "ipAddresses", "wifiNetworks", "applications")

IP_STATUSES = ("active", "reserved", "static", "dhcp")
DEVICE_TYPES = (
    "router", "switch", "firewall", "server", "desktop", "laptop", "phone", "iot",
    "printer", "camera", "ap", "nas", "vm", "container", "unknown",
)
CONNECTION_TYPES = ("wired", "wireless")
NAT_PROTOCOLS = ("TCP", "UDP", "ICMP")
WIFI_SECURITY = ("WPA2-PSK", "WPA3-SAE", "Enterprise", "Open")
WIFI_BANDS = ("2.4GHz", "5GHz", "6GHz", "Dual", "Tri")

DEFAULT_TOTAL_IPS = 254

_ID_ALPHABET = string.ascii_lowercase + string.digits


class ValidationError(ValueError):
    """A record is missing a required field or carries an unusable value."""


def new_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))


def empty_dataset() -> dict:
    return {name: [] for name in COLLECTIONS}


def _str(v, default: str = "") -> str:
    if v is None:
        return default
    return str(v).strip()


def _opt_str(v):
    s = _str(v)
    return s or None


def _opt_int(v):
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _bool(v, default: bool = False) -> bool:
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _choice(v, choices, default):
    s = _str(v)
    return s if s in choices else default


def _require(rec: dict, kind: str, *fields):
    missing = [f for f in fields if not _str(rec.get(f))]
    if missing:
        raise ValidationError(f"{kind}: missing required field(s): {', '.join(missing)}")


def usable_hosts(cidr: str) -> int:
    """Number of assignable host addresses in ``cidr``."""
    try:
        net = ipaddress.ip_network(_str(cidr), strict=False)
    except ValueError:
        return DEFAULT_TOTAL_IPS
    if net.version == 4 and net.prefixlen >= 31:
        return int(net.num_addresses)
    return max(0, int(net.num_addresses) - 2)


def normalize_subnet(rec: dict) -> dict:
    rec = dict(rec or {})
    _require(rec, "subnet", "name", "cidr")
    out = {
        "id": _str(rec.get("id")) or new_id(),
        "name": _str(rec.get("name")),
        "cidr": _str(rec.get("cidr")),
        "gateway": _str(rec.get("gateway")),
        "vlanId": _str(rec.get("vlanId")),
        "vlanName": _str(rec.get("vlanName")),
        "vlanDescription": _str(rec.get("vlanDescription")),
        "description": _str(rec.get("description")),
        "usedIps": _opt_int(rec.get("usedIps")) or 0,
        "totalIps": usable_hosts(rec.get("cidr")),
        "dhcpEnabled": _bool(rec.get("dhcpEnabled")),
        "dhcpStart": _opt_str(rec.get("dhcpStart")),
        "dhcpEnd": _opt_str(rec.get("dhcpEnd")),
    }
    return out


def normalize_ip(rec: dict) -> dict:
    rec = dict(rec or {})
    _require(rec, "ip address", "address", "hostname", "subnetId")
    out = {
        "id": _str(rec.get("id")) or new_id(),
        "address": _str(rec.get("address")),
        "subnetId": _str(rec.get("subnetId")),
        "hostname": _str(rec.get("hostname")),
        "mac": _str(rec.get("mac")),
        "status": _choice(rec.get("status"), IP_STATUSES, "active"),
        "owner": _str(rec.get("owner")),
        "notes": _opt_str(rec.get("notes")),
        "isOnline": None if rec.get("isOnline") is None else _bool(rec.get("isOnline")),
        "lastChecked": _opt_str(rec.get("lastChecked")),
        "monitorEnabled": None if rec.get("monitorEnabled") is None else _bool(rec.get("monitorEnabled")),
        "deviceType": _choice(rec.get("deviceType"), DEVICE_TYPES, None),
        "parentDeviceId": _opt_str(rec.get("parentDeviceId")),
        "connectionType": _choice(rec.get("connectionType"), CONNECTION_TYPES, None),
    }
    return out


def normalize_nat(rec: dict) -> dict:
    rec = dict(rec or {})
    _require(rec, "nat rule", "internalIp", "externalIp", "protocol")
    protocol = _str(rec.get("protocol")).upper()
    if protocol not in NAT_PROTOCOLS:
        raise ValidationError(f"nat rule: unsupported protocol {rec.get('protocol')!r}")
    return {
        "id": _str(rec.get("id")) or new_id(),
        "internalIp": _str(rec.get("internalIp")),
        "externalIp": _str(rec.get("externalIp")),
        "internalPort": _opt_int(rec.get("internalPort")),
        "externalPort": _opt_int(rec.get("externalPort")),
        "protocol": protocol,
        "description": _str(rec.get("description")),
    }


def normalize_wifi(rec: dict) -> dict:
    rec = dict(rec or {})
    _require(rec, "wifi network", "ssid")
    return {
        "id": _str(rec.get("id")) or new_id(),
        "ssid": _str(rec.get("ssid")),
        "password": _opt_str(rec.get("password")),
        "security": _choice(rec.get("security"), WIFI_SECURITY, "WPA2-PSK"),
        "band": _choice(rec.get("band"), WIFI_BANDS, "Dual"),
        "vlanId": _opt_str(rec.get("vlanId")),
        "description": _str(rec.get("description")),
        "isActive": _bool(rec.get("isActive"), default=True),
    }


def normalize_application(rec: dict) -> dict:
    rec = dict(rec or {})
    _require(rec, "application", "name", "url")
    return {
        "id": _str(rec.get("id")) or new_id(),
        "name": _str(rec.get("name")),
        "url": _str(rec.get("url")),
        "description": _str(rec.get("description")),
        "host": _str(rec.get("host")),
    }


def normalize_vlan(rec: dict) -> dict:
    rec = dict(rec or {})
    number = _opt_int(rec.get("vlanNumber"))
    if number is None:
        number = _opt_int(rec.get("id"))
    return {
        "id": _str(rec.get("id")) or new_id(),
        "vlanNumber": number or 0,
        "name": _str(rec.get("name")),
        "description": _str(rec.get("description")),
        "subnets": [str(s) for s in (rec.get("subnets") or [])],
    }


NORMALIZERS = {
    "subnets": normalize_subnet,
    "vlans": normalize_vlan,
    "natRules": normalize_nat,
    "ipAddresses": normalize_ip,
    "wifiNetworks": normalize_wifi,
    "applications": normalize_application,
}


def normalize_dataset(data: dict) -> dict:
    """Return a complete dataset; missing collections become empty lists."""
    if not isinstance(data, dict):
        raise ValidationError("dataset must be a JSON object")
    out = empty_dataset()
    for name in COLLECTIONS:
        items = data.get(name) or []
        if not isinstance(items, list):
            raise ValidationError(f"{name} must be a list")
        out[name] = [NORMALIZERS[name](item) for item in items]
    return out
