# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: IPAM operations over the dataset (CRUD, VLAN grouping, scan import).
# Path: /netkeeper/ipam.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

import ipaddress
import time

from netkeeper.models import (
    COLLECTIONS,
    NORMALIZERS,
    ValidationError,
    new_id,
    normalize_dataset,
)


def ip_key(ip: str):
    try:
        return (0, int(ipaddress.ip_address((ip or "").strip())))
    except ValueError:
        return (1, 0)


def recount_subnets(dataset: dict) -> dict:
    """Recompute ``usedIps`` of every subnet from the IP records."""
    counts: dict[str, int] = {}
    for rec in dataset.get("ipAddresses") or []:
        sid = rec.get("subnetId") or ""
        counts[sid] = counts.get(sid, 0) + 1
    for s in dataset.get("subnets") or []:
        s["usedIps"] = counts.get(s["id"], 0)
    return dataset


def prepare_dataset(data: dict) -> dict:
    """Normalise an incoming dataset before it replaces the stored one.

    IP records must point at a subnet that is part of the same dataset, and ids
    are unique within each collection.
    """
    dataset = normalize_dataset(data)
    for name, items in dataset.items():
        seen = set()
        for rec in items:
            rid = rec.get("id")
            if rid in seen:
                raise ValidationError(f"{name}: duplicate id {rid}")
            seen.add(rid)
    subnet_ids = {s["id"] for s in dataset["subnets"]}
    orphans = [r["address"] for r in dataset["ipAddresses"] if r["subnetId"] not in subnet_ids]
    if orphans:
        raise ValidationError(f"ip address: unknown subnet for {', '.join(orphans[:5])}")
    return recount_subnets(dataset)


def derive_vlans(subnets: list) -> list:
    """Group subnets sharing a ``vlanId`` into VLAN segments, first-seen order."""
    groups: dict[str, dict] = {}
    for s in subnets or []:
        vid = str(s.get("vlanId") or "").strip()
        if not vid:
            continue
        if vid not in groups:
            groups[vid] = {
                "vlanNumber": vid,
                "name": s.get("vlanName") or "",
                "description": s.get("vlanDescription") or "",
                "subnets": [],
            }
        groups[vid]["subnets"].append({"id": s.get("id"), "name": s.get("name"), "cidr": s.get("cidr")})
    return list(groups.values())


def find(dataset: dict, collection: str, rec_id: str):
    for rec in dataset.get(collection) or []:
        if rec.get("id") == rec_id:
            return rec
    return None


def upsert(dataset: dict, collection: str, rec: dict, rec_id: str | None = None) -> dict:
    """Add a record, or merge ``rec`` into the record with ``rec_id``.

    Returns the stored (normalised) record. Raises ``KeyError`` when editing an
    id that does not exist.
    """
    if collection not in COLLECTIONS:
        raise KeyError(collection)
    items = dataset.setdefault(collection, [])
    if rec_id:
        for i, cur in enumerate(items):
            if cur.get("id") == rec_id:
                merged = dict(cur)
                merged.update(rec or {})
                merged["id"] = rec_id
                items[i] = NORMALIZERS[collection](merged)
                return items[i]
        raise KeyError(rec_id)

    added = NORMALIZERS[collection](dict(rec or {}, id=(rec or {}).get("id") or new_id()))
    if find(dataset, collection, added["id"]):
        raise ValidationError(f"{collection}: duplicate id {added['id']}")
    items.append(added)
    return added


def delete(dataset: dict, collection: str, rec_id: str) -> bool:
    """Remove a record. Deleting a subnet also removes its IP records."""
    items = dataset.get(collection) or []
    before = len(items)
    dataset[collection] = [r for r in items if r.get("id") != rec_id]
    if len(dataset[collection]) == before:
        return False
    if collection == "subnets":
        dataset["ipAddresses"] = [r for r in dataset.get("ipAddresses") or [] if r.get("subnetId") != rec_id]
    return True


def apply_scan(dataset: dict, subnet_id: str, alive_hosts: list, checked: str | None = None) -> int:
    """Mark every IP record of ``subnet_id`` online/offline from a scan result."""
    alive = set(alive_hosts or [])
    checked = checked or time.strftime("%H:%M:%S", time.localtime())
    n = 0
    for rec in dataset.get("ipAddresses") or []:
        if rec.get("subnetId") != subnet_id:
            continue
        rec["isOnline"] = rec.get("address") in alive
        rec["lastChecked"] = checked
        n += 1
    return n


def import_scan_results(dataset: dict, subnet_id: str, devices: list) -> list:
    """Add discovered devices to a subnet, skipping addresses already present.

    ``devices`` is a list of ``{ip, hostname?, mac?}``. Returns the new IP
    records. Raises ``ValidationError`` with the user-facing reason when
    nothing can be added.
    """
    subnet = find(dataset, "subnets", subnet_id)
    if not subnet:
        raise ValidationError("Please select a subnet to add devices to")
    devices = [d for d in devices or [] if isinstance(d, dict) and str(d.get("ip") or "").strip()]
    if not devices:
        raise ValidationError("Please select at least one device to add")

    existing = {r.get("address") for r in dataset.get("ipAddresses") or [] if r.get("subnetId") == subnet_id}
    checked = time.strftime("%H:%M:%S", time.localtime())
    added = []
    for d in devices:
        ip = str(d["ip"]).strip()
        if ip in existing:
            continue
        existing.add(ip)
        added.append(NORMALIZERS["ipAddresses"]({
            "id": new_id(),
            "subnetId": subnet_id,
            "address": ip,
            "hostname": (d.get("hostname") or "").strip() or f"host-{ip.split('.')[-1]}",
            "mac": d.get("mac") or "",
            "status": "active",
            "owner": "Discovered via scan",
            "isOnline": True,
            "lastChecked": checked,
        }))

    if not added:
        raise ValidationError("All selected devices already exist in the subnet")
    dataset.setdefault("ipAddresses", []).extend(added)
    recount_subnets(dataset)
    return added


def dashboard_stats(dataset: dict) -> dict:
    subnets = dataset.get("subnets") or []
    ips = dataset.get("ipAddresses") or []
    used = sum(int(s.get("usedIps") or 0) for s in subnets)
    total = sum(int(s.get("totalIps") or 0) for s in subnets)
    vlans = derive_vlans(subnets)
    return {
        "onlineDevices": sum(1 for r in ips if r.get("isOnline") is True),
        "offlineDevices": sum(1 for r in ips if r.get("isOnline") is False),
        "totalTracked": len(ips),
        "vlanCount": len(vlans) or len(dataset.get("vlans") or []),
        "natRuleCount": len(dataset.get("natRules") or []),
        "usedIps": used,
        "totalIps": total,
        "occupancyRate": round((used / total) * 100.0, 1) if total > 0 else 0.0,
        "subnetOccupancy": [{"name": s.get("name"), "value": int(s.get("usedIps") or 0)} for s in subnets],
    }
