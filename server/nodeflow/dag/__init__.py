"""DAG engine: graph store, reference resolution, scheduling and run records."""

from .errors import (
    ActionFailed,
    AlreadyRunning,
    CycleDetected,
    EngineError,
    FieldNotFound,
    GraphError,
    InvalidReference,
    NodeNotFound,
    ResolutionError,
    UpstreamNotReady,
)
from .graph import GraphStore
from .logs import LogEntry, LogEvent, LogSink, LogType, LogView, NodeLogsCleared
from .models import (
    BoundParameter,
    Edge,
    Node,
    NodeKind,
    NodeReference,
    NodeStatus,
)
from .reactflow import load_reactflow_file, load_reactflow_graph, simplify_reactflow_json
from .references import ReferenceResolver, coerce_literal, extract_path, resolve
from .results import NodeResult, ResultStore
from .scheduler import RunOutcome, Scheduler

__all__ = [
    "ActionFailed",
    "AlreadyRunning",
    "BoundParameter",
    "CycleDetected",
    "Edge",
    "EngineError",
    "FieldNotFound",
    "GraphError",
    "GraphStore",
    "InvalidReference",
    "LogEntry",
    "LogEvent",
    "LogSink",
    "LogType",
    "LogView",
    "NodeLogsCleared",
    "Node",
    "NodeKind",
    "NodeNotFound",
    "NodeReference",
    "NodeResult",
    "NodeStatus",
    "ReferenceResolver",
    "ResolutionError",
    "ResultStore",
    "RunOutcome",
    "Scheduler",
    "UpstreamNotReady",
    "coerce_literal",
    "extract_path",
    "load_reactflow_file",
    "load_reactflow_graph",
    "resolve",
    "simplify_reactflow_json",
]
