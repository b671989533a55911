# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Topology graph and layered layout for the diagram view.
# Path: /netkeeper/topology.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

"""Network diagram.

Builds a graph of core gateway -> subnets -> devices and assigns every node a
layer and canvas coordinates. Devices hang off their ``parentDeviceId`` when
that device exists, otherwise off their subnet.
"""

from typing import Dict, List, Tuple

import networkx as nx

GATEWAY_ID = "CORE_ROUTER"

CANVAS_WIDTH = 800
CANVAS_HEIGHT = 500
MARGIN = 40

# Device layer below the subnet row, by device type.
DEVICE_LAYERS = {
    "router": 0,
    "firewall": 0,
    "switch": 1,
    "ap": 2,
}
DEFAULT_DEVICE_LAYER = 3


def device_layer(device_type: str | None) -> int:
    return DEVICE_LAYERS.get((device_type or "").strip().lower(), DEFAULT_DEVICE_LAYER)


def _subnet_node(subnet_id: str) -> str:
    return f"subnet:{subnet_id}"


def _device_node(ip_id: str) -> str:
    return f"device:{ip_id}"


def build_graph(subnets: List[Dict], ip_addresses: List[Dict]) -> nx.Graph:
    """Undirected graph with ``layer``/``kind`` attributes on every node."""
    G = nx.Graph()
    G.add_node(GATEWAY_ID, kind="gateway", label="Core Gateway", layer=0)

    subnet_ids = set()
    for s in subnets or []:
        node = _subnet_node(s["id"])
        subnet_ids.add(s["id"])
        G.add_node(node, kind="subnet", label=s.get("name") or s.get("cidr") or "", cidr=s.get("cidr") or "", layer=1)
        G.add_edge(GATEWAY_ID, node, connectionType="wired")

    ip_ids = {r["id"] for r in ip_addresses or []}
    for r in ip_addresses or []:
        node = _device_node(r["id"])
        G.add_node(
            node,
            kind="device",
            label=r.get("hostname") or r.get("address") or "",
            address=r.get("address") or "",
            deviceType=r.get("deviceType") or "unknown",
            isOnline=r.get("isOnline"),
            layer=2 + device_layer(r.get("deviceType")),
        )

    for r in ip_addresses or []:
        node = _device_node(r["id"])
        parent = r.get("parentDeviceId")
        if parent and parent in ip_ids and parent != r["id"]:
            G.add_edge(node, _device_node(parent), connectionType=r.get("connectionType") or "wired")
        elif r.get("subnetId") in subnet_ids:
            G.add_edge(node, _subnet_node(r["subnetId"]), connectionType=r.get("connectionType") or "wired")
    return G


def _layout(G: nx.Graph) -> Dict[str, Tuple[float, float]]:
    """Layered positions scaled into the canvas, top layer first."""
    if len(G) == 0:
        return {}
    layers = sorted({d["layer"] for _, d in G.nodes(data=True)})
    rank = {layer: i for i, layer in enumerate(layers)}

    raw = nx.multipartite_layout(G, subset_key="layer", align="horizontal")
    xs = [float(p[0]) for p in raw.values()]
    x_min, x_max = min(xs), max(xs)
    span = (x_max - x_min) or 1.0

    usable_w = CANVAS_WIDTH - 2 * MARGIN
    usable_h = CANVAS_HEIGHT - 2 * MARGIN
    step = usable_h / max(1, len(layers) - 1)

    pos = {}
    for node, p in raw.items():
        if x_max == x_min:
            x = CANVAS_WIDTH / 2
        else:
            x = MARGIN + (float(p[0]) - x_min) / span * usable_w
        y = MARGIN + rank[G.nodes[node]["layer"]] * step if len(layers) > 1 else CANVAS_HEIGHT / 2
        pos[node] = (round(x, 1), round(y, 1))
    return pos


def build_topology(subnets: List[Dict], ip_addresses: List[Dict]) -> Dict:
    """Nodes and links for the diagram view.

    Nodes carry ``critical=True`` when removing them would split the graph
    (articulation points), i.e. single points of failure.
    """
    G = build_graph(subnets, ip_addresses)
    pos = _layout(G)
    critical = set(nx.articulation_points(G)) if len(G) > 2 else set()

    nodes = []
    for node, data in G.nodes(data=True):
        x, y = pos.get(node, (CANVAS_WIDTH / 2, CANVAS_HEIGHT / 2))
        item = {
            "id": node,
            "type": data["kind"],
            "label": data.get("label") or "",
            "layer": data["layer"],
            "x": x,
            "y": y,
            "critical": node in critical,
        }
        for key in ("cidr", "address", "deviceType", "isOnline"):
            if key in data:
                item[key] = data[key]
        nodes.append(item)

    links = [
        {"source": a, "target": b, "connectionType": d.get("connectionType") or "wired"}
        for a, b, d in G.edges(data=True)
    ]
    return {"width": CANVAS_WIDTH, "height": CANVAS_HEIGHT, "nodes": nodes, "links": links}
