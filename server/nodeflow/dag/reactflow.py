"""Import React Flow exports into a :class:`GraphStore`."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import GraphError
from .graph import GraphStore
from .models import Edge, Node

# React Flow node ``type`` values used by the editor, mapped to engine kinds.
NODE_TYPE_ALIASES = {
    "languageNode": "file",
    "fileNode": "file",
    "apiNode": "api",
    "dbNode": "database",
    "db": "database",
}

_RESERVED_DATA_KEYS = {"kind", "type", "name", "label", "params", "parameters", "config"}


def simplify_reactflow_json(reactflow_json: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a React Flow graph to the minimal form accepted by the graph store:
      {
        "nodes": [{"id", "kind", "name", "config", "params", "position"}],
        "edges": [{"source", "target", "sourcePort", "targetPort"}]
      }

    Supported layouts:
    - Top-level: { "nodes": [...], "edges": [...] }
    - Nested: { "pipeline": { "nodes": [...], "edges": [...] } }
    """
    container = reactflow_json.get("pipeline", reactflow_json)

    raw_nodes = container.get("nodes", [])
    raw_edges = container.get("edges", [])

    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []

    def _extract_kind(n: Dict[str, Any]) -> Optional[str]:
        data = n.get("data", {})
        kind = (
            data.get("kind")
            or n.get("kind")
            or data.get("type")
            or n.get("type")
        )
        return NODE_TYPE_ALIASES.get(kind, kind)

    def _extract_config(n: Dict[str, Any], kind: Optional[str]) -> Dict[str, Any]:
        data = n.get("data", {})
        config = data.get("config", n.get("config"))
        if config is None:
            # Older exports keep the configuration flat inside ``data``.
            config = {k: v for k, v in data.items() if k not in _RESERVED_DATA_KEYS}
        if not isinstance(config, dict):
            raise GraphError(f"Node '{n.get('id')}' config must be a dict.")
        return {**config, "kind": kind}

    def _extract_params(n: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = n.get("data", {})
        params = data.get("params", data.get("parameters", n.get("params", [])))
        if params is None:
            params = []
        if isinstance(params, dict):
            params = [{"key": k, "value": v} for k, v in params.items()]
        if not isinstance(params, list):
            raise GraphError(f"Node '{n.get('id')}' params must be a list.")
        return params

    seen_ids = set()
    for n in raw_nodes:
        nid = str(n.get("id"))
        if not nid or nid == "None":
            raise GraphError("Each node must have a non-empty string 'id'.")
        if nid in seen_ids:
            raise GraphError(f"Duplicate node id '{nid}'.")
        seen_ids.add(nid)

        kind = _extract_kind(n)
        data = n.get("data", {})
        nodes.append({
            "id": nid,
            "kind": kind,
            "name": data.get("name") or data.get("label") or data.get("fileName") or n.get("name") or nid,
            "config": _extract_config(n, kind),
            "params": _extract_params(n),
            "position": n.get("position") or {"x": 0, "y": 0},
        })

    for e in raw_edges:
        src = e.get("source")
        tgt = e.get("target")
        if not src or not tgt:
            raise GraphError("Each edge must include 'source' and 'target'.")
        edges.append({
            "source": str(src),
            "target": str(tgt),
            "sourcePort": e.get("sourceHandle"),
            "targetPort": e.get("targetHandle"),
        })

    return {"nodes": nodes, "edges": edges}


def load_reactflow_graph(reactflow_json: Dict[str, Any]) -> GraphStore:
    """Validate a React Flow export and build a graph store from it."""
    simplified = simplify_reactflow_json(reactflow_json)
    store = GraphStore()
    for raw in simplified["nodes"]:
        try:
            node = Node.model_validate(raw)
        except ValidationError as exc:
            raise GraphError(f"Node '{raw['id']}' is invalid: {exc}") from exc
        store.add_node(node)
    for raw in simplified["edges"]:
        edge = Edge.model_validate(raw)
        store.add_edge(
            edge.source,
            edge.target,
            source_port=edge.source_port,
            target_port=edge.target_port,
        )
    return store


def load_reactflow_file(path: str) -> GraphStore:
    with open(path, "r", encoding="utf-8") as f:
        rf = json.load(f)
    return load_reactflow_graph(rf)
