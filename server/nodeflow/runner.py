"""Bindings between the nodeflow server and the DAG execution engine."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .dag import ResultStore, RunOutcome
from .workspace import FlowWorkspace


async def run_target(
    workspace: FlowWorkspace,
    node_id: str,
    *,
    full_rerun: Optional[bool] = None,
) -> tuple[RunOutcome, Dict[str, Any]]:
    """Run ``node_id`` and return both the raw outcome and a summary."""
    outcome = await workspace.run_node(node_id, full_rerun=full_rerun)
    return outcome, summarize_outcome(outcome, workspace.results)


def summarize_outcome(outcome: RunOutcome, results: ResultStore) -> Dict[str, Any]:
    """Produce a JSON-friendly snapshot of a finished run."""
    nodes: Dict[str, Any] = {}
    for node_id in outcome.executed:
        result = results.get(node_id)
        if result is None:
            continue
        nodes[node_id] = {
            "status": result.status.value,
            "durationMs": result.duration_ms,
            "output": _describe_value(result.output),
            "error": result.error,
        }
    return {**outcome.to_payload(), "nodes": nodes}


def _describe_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"type": "none"}
    if isinstance(value, (str, int, float, bool)):
        return {"type": type(value).__name__, "value": value}
    if isinstance(value, dict):
        return {"type": "dict", "keys": list(value.keys()), "size": len(value)}
    if isinstance(value, list):
        return {"type": "list", "length": len(value)}
    return {"type": type(value).__name__, "repr": repr(value)[:200]}


def encode_summary(summary: Dict[str, Any]) -> str:
    return json.dumps(summary, default=str)


def decode_summary(payload: str | None) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return {"raw": payload}
