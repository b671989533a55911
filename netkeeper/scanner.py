# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: fping wrappers for subnet sweeps and per-device reachability checks.
# Path: /netkeeper/scanner.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

import ipaddress
import logging
import re
import subprocess

from netkeeper.ipam import ip_key

log = logging.getLogger(__name__)

MAX_HOSTS_PER_CIDR = 4096
SCAN_TIMEOUT_S = 180
CHECK_TIMEOUT_S = 60

# 10.0.0.1 : xmt/rcv/%loss = 1/1/0%, min/avg/max = 0.35/0.35/0.35
# 10.0.0.2 : xmt/rcv/%loss = 1/0/100%
SUMMARY_RE = re.compile(
    r"^(?P<ip>\S+)\s*:\s*xmt/rcv/%loss\s*=\s*(?P<xmt>\d+)/(?P<rcv>\d+)/(?P<loss>\d+)%"
    r"(?:,\s*min/avg/max\s*=\s*(?P<min>[\d.]+)/(?P<avg>[\d.]+)/(?P<max>[\d.]+))?"
)

# 10.0.0.1 : [0], 64 bytes, 0.35 ms (0.35 avg, 0% loss)
REPLY_RE = re.compile(r"^(?P<ip>\S+)\s*:\s*\[\d+\],\s*\d+\s+bytes,\s*(?P<ms>[\d.]+)\s+ms")


class ScanError(RuntimeError):
    """fping could not be run or the request cannot be scanned."""


def parse_cidr(cidr: str):
    cidr = (cidr or "").strip()
    if not cidr:
        raise ValueError("CIDR required")
    try:
        net = ipaddress.ip_network(cidr, strict=False)
    except ValueError:
        raise ValueError(f"Invalid CIDR: {cidr}") from None
    host_count = max(0, int(net.num_addresses) - 2)
    if host_count > MAX_HOSTS_PER_CIDR:
        raise ValueError(f"{cidr} has {host_count} hosts, too large to scan (max {MAX_HOSTS_PER_CIDR})")
    return net


def _run_fping(fping: str, args: list[str], timeout: int) -> subprocess.CompletedProcess:
    cmd = [fping] + args
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        raise ScanError(f"{fping} is not installed on this host") from None
    except subprocess.TimeoutExpired:
        raise ScanError(f"{fping} timed out after {timeout}s") from None
    # rc 1 = some hosts unreachable, rc 2 = some names not found. Both are normal.
    if p.returncode not in (0, 1, 2):
        err = (p.stderr or "").strip().splitlines()
        short = " ".join(err[-3:]) if err else f"rc={p.returncode}"
        raise ScanError(f"fping failed: {short}")
    return p


def scan_cidr(cidr: str, fping: str = "fping") -> list[str]:
    """Return alive hosts in ``cidr`` (``fping -g <cidr> -a -r 0 -q``)."""
    net = parse_cidr(cidr)
    log.info("scan: %s", net)
    p = _run_fping(fping, ["-g", str(net), "-a", "-r", "0", "-q"], SCAN_TIMEOUT_S)

    alive = []
    for line in (p.stdout or "").splitlines():
        ip = line.strip()
        if not ip:
            continue
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            continue
        alive.append(ip)
    alive = sorted(set(alive), key=ip_key)
    log.info("scan: %s finished, %d alive", net, len(alive))
    return alive


def parse_check_output(text: str) -> dict:
    """Parse ``fping -c`` output into ``{ip: {"alive": bool, "latency": int}}``.

    Summary lines win; bare reply lines are used when no summary was printed.
    """
    out: dict[str, dict] = {}
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        m = SUMMARY_RE.match(line)
        if m:
            rcv = int(m.group("rcv"))
            avg = m.group("avg")
            latency = int(round(float(avg))) if (rcv > 0 and avg) else 0
            out[m.group("ip")] = {"alive": rcv > 0, "latency": max(latency, 1) if rcv > 0 else 0}
            continue
        m = REPLY_RE.match(line)
        if m and m.group("ip") not in out:
            latency = int(round(float(m.group("ms"))))
            out[m.group("ip")] = {"alive": True, "latency": max(latency, 1)}
    return out


def check_devices(devices: list[dict], fping: str = "fping") -> list[dict]:
    """Ping each device once (``fping -c 1 -t 500``).

    ``devices`` are ``{id?, ipAddress}`` dicts. Returns one
    ``{id, ipAddress, isOnline, latency}`` per input device, in input order.
    """
    devices = [d for d in devices or [] if isinstance(d, dict)]
    addrs = []
    for d in devices:
        ip = str(d.get("ipAddress") or "").strip()
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            continue
        if ip not in addrs:
            addrs.append(ip)

    parsed = {}
    if addrs:
        p = _run_fping(fping, ["-c", "1", "-t", "500"] + addrs, CHECK_TIMEOUT_S)
        # per-host summaries go to stderr, reply lines to stdout
        parsed = parse_check_output((p.stdout or "") + "\n" + (p.stderr or ""))

    results = []
    for d in devices:
        ip = str(d.get("ipAddress") or "").strip()
        st = parsed.get(ip) or {"alive": False, "latency": 0}
        results.append({
            "id": d.get("id"),
            "ipAddress": ip,
            "isOnline": bool(st["alive"]),
            "latency": int(st["latency"]),
        })
    return results
