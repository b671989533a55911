# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: JSON backup/restore and CSV/XLSX/PDF inventory exports.
# Path: /netkeeper/export.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

import csv
import json
import time
from io import BytesIO, StringIO

from netkeeper.ipam import ip_key, prepare_dataset
from netkeeper.models import COLLECTIONS, ValidationError

BACKUP_FILENAME = "netkeeper_backup.json"

INVENTORY_COLUMNS = ("subnet", "cidr", "vlan", "address", "hostname", "mac", "status", "deviceType", "owner", "online")


def backup_bytes(dataset: dict) -> bytes:
    return json.dumps({name: dataset.get(name) or [] for name in COLLECTIONS}, indent=2, ensure_ascii=False).encode("utf-8")


def restore(current: dict, raw) -> dict:
    """Replace the collections present in a backup document.

    ``raw`` is the uploaded bytes/str or an already-parsed dict.
    """
    try:
        backup = json.loads(raw) if isinstance(raw, (bytes, str)) else raw
    except ValueError:
        raise ValidationError("Invalid backup file.") from None
    if not isinstance(backup, dict) or not any(name in backup for name in COLLECTIONS):
        raise ValidationError("Invalid backup file.")

    merged = {name: list(current.get(name) or []) for name in COLLECTIONS}
    for name in COLLECTIONS:
        if backup.get(name) is not None:
            merged[name] = backup[name]
    try:
        return prepare_dataset(merged)
    except ValidationError as e:
        raise ValidationError(f"Invalid backup file. {e}") from None


def inventory_rows(dataset: dict) -> list[dict]:
    subnets = {s["id"]: s for s in dataset.get("subnets") or []}
    rows = []
    for r in sorted(dataset.get("ipAddresses") or [], key=lambda r: ip_key(r.get("address"))):
        s = subnets.get(r.get("subnetId")) or {}
        online = r.get("isOnline")
        rows.append({
            "subnet": s.get("name") or "",
            "cidr": s.get("cidr") or "",
            "vlan": s.get("vlanId") or "",
            "address": r.get("address") or "",
            "hostname": r.get("hostname") or "",
            "mac": r.get("mac") or "",
            "status": r.get("status") or "",
            "deviceType": r.get("deviceType") or "",
            "owner": r.get("owner") or "",
            "online": "" if online is None else ("yes" if online else "no"),
        })
    return rows


def export_basename() -> str:
    ts = time.strftime("%Y%m%d-%H%M%S", time.localtime(int(time.time())))
    return f"netkeeper-inventory-{ts}"


def to_csv(rows: list[dict]) -> bytes:
    buf = StringIO()
    w = csv.DictWriter(buf, fieldnames=INVENTORY_COLUMNS)
    w.writeheader()
    w.writerows(rows)
    return buf.getvalue().encode("utf-8")


def to_xlsx(rows: list[dict]) -> bytes:
    from openpyxl import Workbook
    wb = Workbook()
    ws = wb.active
    ws.title = "Inventory"
    ws.append(list(INVENTORY_COLUMNS))
    for r in rows:
        ws.append([r[c] for c in INVENTORY_COLUMNS])
    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()


def to_pdf(rows: list[dict]) -> bytes:
    from reportlab.lib.pagesizes import landscape, letter
    from reportlab.pdfgen import canvas

    bio = BytesIO()
    c = canvas.Canvas(bio, pagesize=landscape(letter))
    width, height = landscape(letter)
    ts = time.strftime("%Y-%m-%d %H:%M", time.localtime())
    cols = [("address", 40), ("hostname", 130), ("mac", 270), ("status", 380), ("deviceType", 440),
            ("subnet", 520), ("vlan", 640), ("online", 690)]

    def draw_header_footer():
        c.setFont("Helvetica-Bold", 10)
        c.drawString(40, height - 38, "netkeeper – IP inventory")
        c.setFont("Helvetica", 8)
        c.drawRightString(width - 40, height - 38, ts)
        c.setFont("Helvetica-Bold", 8)
        for name, x in cols:
            c.drawString(x, height - 56, name)
        c.setFont("Helvetica", 8)
        c.setFillColorRGB(0.6, 0.6, 0.6)
        c.drawRightString(width - 40, 24, f"Page {c.getPageNumber()}")
        c.setFillColorRGB(0, 0, 0)

    draw_header_footer()
    y = height - 72
    for r in rows:
        if y < 40:
            c.showPage()
            draw_header_footer()
            y = height - 72
        for name, x in cols:
            s = str(r.get(name) or "")
            if len(s) > 28:
                s = s[:25] + "..."
            c.drawString(x, y, s)
        y -= 12
    c.save()
    return bio.getvalue()


EXPORTERS = {
    "csv": (to_csv, "text/csv"),
    "xlsx": (to_xlsx, "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    "pdf": (to_pdf, "application/pdf"),
}
