"""Node actions: the executable capability behind each node kind."""

from typing import Dict, Mapping, Tuple

from .api import API_OUTPUT_FIELDS, call_api
from .base import ActionContext, ActionFn, LogFn, NodeAction
from .database import DATABASE_OUTPUT_FIELDS, run_query
from .file import FILE_OUTPUT_FIELDS, run_file

# ================================
# Registry of node kinds
# ================================
ACTIONS: Dict[str, NodeAction] = {
    "file": NodeAction("file", run_file, FILE_OUTPUT_FIELDS),
    "api": NodeAction("api", call_api, API_OUTPUT_FIELDS),
    "database": NodeAction("database", run_query, DATABASE_OUTPUT_FIELDS),
}


def declared_output_fields(registry: Mapping[str, NodeAction] = ACTIONS) -> Dict[str, Tuple[str, ...]]:
    return {kind: action.output_fields for kind, action in registry.items()}


__all__ = [
    "ACTIONS",
    "ActionContext",
    "ActionFn",
    "LogFn",
    "NodeAction",
    "call_api",
    "declared_output_fields",
    "run_file",
    "run_query",
]
