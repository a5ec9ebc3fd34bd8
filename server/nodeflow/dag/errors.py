"""Error kinds raised by the DAG engine."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every failure surfaced by the engine."""


# ================================
# Graph-structural errors
# ================================
class GraphError(EngineError):
    """Raised for malformed graphs (duplicate ids, bad payloads, etc.)."""


class NodeNotFound(GraphError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node '{node_id}' was not found in the graph.")
        self.node_id = node_id


class CycleDetected(GraphError):
    def __init__(self, source: str, target: str, cycle: list[str] | None = None) -> None:
        path = " -> ".join(cycle) if cycle else f"{target} -> ... -> {source}"
        super().__init__(
            f"Edge {source} -> {target} would create a cycle ({path})."
        )
        self.source = source
        self.target = target
        self.cycle = cycle or []


# ================================
# Reference resolution errors
# ================================
class ResolutionError(EngineError):
    """Raised when a bound parameter cannot be materialized."""


class UpstreamNotReady(ResolutionError):
    def __init__(self, node_id: str, status: str) -> None:
        super().__init__(
            f"Referenced node '{node_id}' has not completed successfully (status={status})."
        )
        self.node_id = node_id
        self.status = status


class FieldNotFound(ResolutionError):
    def __init__(self, node_id: str, field: str) -> None:
        super().__init__(f"Field '{field}' was not found in the output of node '{node_id}'.")
        self.node_id = node_id
        self.field = field


class InvalidReference(ResolutionError):
    """The referenced node is not an ancestor of the node owning the parameter."""

    def __init__(self, node_id: str, reference_node_id: str) -> None:
        super().__init__(
            f"Node '{node_id}' cannot reference '{reference_node_id}': it is not an upstream node."
        )
        self.node_id = node_id
        self.reference_node_id = reference_node_id


# ================================
# Scheduler errors
# ================================
class AlreadyRunning(EngineError):
    def __init__(self, run_id: str | None = None) -> None:
        message = "Another run is already in progress"
        if run_id:
            message += f" (run={run_id})"
        super().__init__(message + ".")
        self.run_id = run_id


class ActionFailed(EngineError):
    """The node's own action raised; the message is passed through verbatim."""
