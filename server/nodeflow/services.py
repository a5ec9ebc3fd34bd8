"""Stateful services (workspace, handlers, routing)."""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Coroutine, Dict, Optional, Tuple

from .codes import (
    CODE_ADD_EDGE,
    CODE_ADD_NODE,
    CODE_ALREADY_RUNNING,
    CODE_BAD_REQUEST,
    CODE_BIND_PARAMETER,
    CODE_CANCEL_OK,
    CODE_CANCEL_RUN,
    CODE_CLEAR_LOGS,
    CODE_CLEAR_RESULTS,
    CODE_CLEARED,
    CODE_CYCLE_DETECTED,
    CODE_EDGE_OK,
    CODE_GET_GRAPH,
    CODE_GET_LOGS,
    CODE_GET_REFERENCES,
    CODE_GET_RESULTS,
    CODE_GRAPH,
    CODE_GRAPH_ERROR,
    CODE_LOAD_GRAPH,
    CODE_LOG_ENTRY,
    CODE_LOGS,
    CODE_LOGS_CLEARED,
    CODE_NODE_NOT_FOUND,
    CODE_NODE_OK,
    CODE_NODE_STATUS,
    CODE_NOT_RUNNING,
    CODE_PARAMETERS,
    CODE_PREVIEW_PARAMETERS,
    CODE_REFERENCE_ERROR,
    CODE_REFERENCES,
    CODE_REMOVE_EDGE,
    CODE_REMOVE_NODE,
    CODE_RESULTS,
    CODE_RUN_CANCELLED,
    CODE_RUN_FINISHED_ERROR,
    CODE_RUN_FINISHED_OK,
    CODE_RUN_NODE,
    CODE_RUN_STARTED,
    CODE_UNKNOWN_TYPE,
    CODE_UPDATE_NODE,
    REQUEST_TYPES,
)
from .context import RequestContext
from .dag import (
    AlreadyRunning,
    CycleDetected,
    EngineError,
    LogEvent,
    NodeLogsCleared,
    NodeNotFound,
    NodeResult,
    ResolutionError,
)
from .protocol import FlowMessage, ProtocolError
from .runner import run_target
from .workspace import FlowWorkspace

WORKSPACE = FlowWorkspace()
LOGGER = logging.getLogger("nodeflow-server")

HandlerResult = Tuple[int, Dict[str, Any], Optional[Coroutine[Any, Any, None]]]

RUN_STATUS_CODES = {
    "success": CODE_RUN_FINISHED_OK,
    "error": CODE_RUN_FINISHED_ERROR,
    "cancelled": CODE_RUN_CANCELLED,
}


def _log(level: int, context: RequestContext, message: str, *args: Any) -> None:
    if context and context.log_label:
        LOGGER.log(level, "%s " + message, context.log_label, *args)
    else:
        LOGGER.log(level, message, *args)


def _result(code: int, content: Dict[str, Any], post: Optional[Coroutine[Any, Any, None]] = None) -> HandlerResult:
    return code, content, post


def _required(content: Dict[str, Any], key: str) -> Any:
    value = content.get(key)
    if value in (None, ""):
        raise ValueError(f"{key} is required")
    return value


def reset_server_state() -> None:
    WORKSPACE.reset()


def error_code_for(exc: Exception) -> int:
    if isinstance(exc, NodeNotFound):
        return CODE_NODE_NOT_FOUND
    if isinstance(exc, CycleDetected):
        return CODE_CYCLE_DETECTED
    if isinstance(exc, ResolutionError):
        return CODE_REFERENCE_ERROR
    if isinstance(exc, AlreadyRunning):
        return CODE_ALREADY_RUNNING
    if isinstance(exc, EngineError):
        return CODE_GRAPH_ERROR
    return CODE_BAD_REQUEST


def _guarded(handler: Callable[[FlowMessage, RequestContext], HandlerResult]):
    """Turn engine and validation errors into protocol error replies."""

    @functools.wraps(handler)
    def _wrapper(message: FlowMessage, context: RequestContext) -> HandlerResult:
        try:
            return handler(message, context)
        except (EngineError, ValueError) as exc:
            _log(logging.WARNING, context, "Request type %s rejected: %s", message.type_code, exc)
            content: Dict[str, Any] = {"error": str(exc)}
            if isinstance(exc, CycleDetected):
                content["cycle"] = exc.cycle
            return _result(error_code_for(exc), content)

    return _wrapper


# ================================
# Live pushes
# ================================
def attach_listeners(context: RequestContext) -> None:
    """Forward result and log changes of the workspace to this connection."""

    def _on_result(node_id: str, result: Optional[NodeResult]) -> None:
        context.push(
            CODE_NODE_STATUS,
            {
                "nodeId": node_id,
                "status": result.status.value if result else "idle",
                "result": result.to_payload() if result else None,
            },
        )

    def _on_log(event: LogEvent) -> None:
        if event is None:
            context.push(CODE_LOGS_CLEARED, {})
        elif isinstance(event, NodeLogsCleared):
            context.push(CODE_LOGS_CLEARED, {"nodeId": event.node_id, "removed": event.removed})
        else:
            context.push(CODE_LOG_ENTRY, event.to_payload())

    context.unsubscribers.append(WORKSPACE.results.subscribe(_on_result))
    context.unsubscribers.append(WORKSPACE.logs.subscribe(_on_log))


# ================================
# Graph editing
# ================================
@_guarded
def handle_load_graph(message, context):
    graph = WORKSPACE.load_graph(_required(message.content, "graph"))
    _log(logging.INFO, context, "Graph loaded (%d nodes)", len(graph))
    return _result(CODE_GRAPH, {"graph": graph.to_payload(), "running": False})


@_guarded
def handle_get_graph(message, context):
    return _result(
        CODE_GRAPH,
        {"graph": WORKSPACE.graph.to_payload(), "running": WORKSPACE.is_running},
    )


@_guarded
def handle_add_node(message, context):
    node = WORKSPACE.add_node(_required(message.content, "node"))
    return _result(CODE_NODE_OK, {"node": node.to_payload(), "status": "added"})


@_guarded
def handle_update_node(message, context):
    node = WORKSPACE.update_node(_required(message.content, "node"))
    return _result(CODE_NODE_OK, {"node": node.to_payload(), "status": "updated"})


@_guarded
def handle_remove_node(message, context):
    node = WORKSPACE.remove_node(_required(message.content, "nodeId"))
    return _result(CODE_NODE_OK, {"node": node.to_payload(), "status": "removed"})


@_guarded
def handle_add_edge(message, context):
    content = message.content
    edge = WORKSPACE.add_edge(
        _required(content, "source"),
        _required(content, "target"),
        source_port=content.get("sourcePort"),
        target_port=content.get("targetPort"),
    )
    return _result(CODE_EDGE_OK, {"edge": edge.to_payload(), "status": "added"})


@_guarded
def handle_remove_edge(message, context):
    content = message.content
    edge = WORKSPACE.remove_edge(_required(content, "source"), _required(content, "target"))
    return _result(CODE_EDGE_OK, {"edge": edge.to_payload(), "status": "removed"})


# ================================
# Parameters and references
# ================================
@_guarded
def handle_get_references(message, context):
    node_id = _required(message.content, "nodeId")
    references = WORKSPACE.get_available_references(
        node_id, message.content.get("includeTransitive")
    )
    return _result(
        CODE_REFERENCES,
        {"nodeId": node_id, "references": [ref.to_payload() for ref in references]},
    )


@_guarded
def handle_bind_parameter(message, context):
    content = message.content
    node_id = _required(content, "nodeId")
    key = _required(content, "key")
    if "reference" in content and content["reference"] is not None:
        node = WORKSPACE.bind_parameter(
            node_id, key, reference=content["reference"], type=content.get("paramType")
        )
    elif "value" in content:
        node = WORKSPACE.bind_parameter(
            node_id, key, value=content["value"], type=content.get("paramType")
        )
    else:
        raise ValueError("value or reference is required")
    return _result(CODE_PARAMETERS, {"node": node.to_payload()})


@_guarded
def handle_preview_parameters(message, context):
    node_id = _required(message.content, "nodeId")
    return _result(
        CODE_PARAMETERS,
        {"nodeId": node_id, "parameters": WORKSPACE.preview_parameters(node_id)},
    )


# ================================
# Execution
# ================================
async def _run_and_report(
    *,
    message: FlowMessage,
    context: RequestContext,
    node_id: str,
    full_rerun: Optional[bool],
) -> None:
    request_id = message.message_id
    try:
        outcome, summary = await run_target(WORKSPACE, node_id, full_rerun=full_rerun)
    except AlreadyRunning as exc:
        context.push(CODE_ALREADY_RUNNING, {"nodeId": node_id, "error": str(exc)}, request_id)
        return
    except EngineError as exc:
        _log(logging.ERROR, context, "Run of %s could not start: %s", node_id, exc)
        context.push(
            CODE_RUN_FINISHED_ERROR,
            {"targetId": node_id, "status": "error", "error": str(exc)},
            request_id,
        )
        return

    _log(
        logging.INFO,
        context,
        "Run %s for %s finished with status %s",
        outcome.run_id,
        node_id,
        outcome.status,
    )
    context.push(RUN_STATUS_CODES[outcome.status], summary, request_id)


@_guarded
def handle_run_node(message, context):
    node_id = _required(message.content, "nodeId")
    WORKSPACE.graph.get_node(node_id)
    if WORKSPACE.is_running:
        raise AlreadyRunning(WORKSPACE.scheduler.current_run_id)
    full_rerun = message.content.get("fullRerun")
    _log(logging.INFO, context, "Run requested for node %s", node_id)
    coro = _run_and_report(
        message=message,
        context=context,
        node_id=node_id,
        full_rerun=full_rerun,
    )
    return _result(
        CODE_RUN_STARTED,
        {"nodeId": node_id, "status": "run-started", "fullRerun": bool(full_rerun)},
        coro,
    )


@_guarded
def handle_cancel_run(message, context):
    run_id = WORKSPACE.scheduler.current_run_id
    if not WORKSPACE.cancel_run():
        return _result(CODE_NOT_RUNNING, {"error": "no run in progress"})
    _log(logging.WARNING, context, "Run %s cancellation requested by client", run_id)
    return _result(CODE_CANCEL_OK, {"runId": run_id, "status": "cancel-requested"})


# ================================
# Results and logs
# ================================
@_guarded
def handle_get_results(message, context):
    snapshot = WORKSPACE.results.snapshot()
    node_ids = message.content.get("nodeIds")
    if node_ids is not None:
        snapshot = {nid: snapshot[nid] for nid in node_ids if nid in snapshot}
    last = WORKSPACE.last_outcome
    return _result(
        CODE_RESULTS,
        {
            "results": {nid: result.to_payload() for nid, result in snapshot.items()},
            "lastRun": last.to_payload() if last else None,
        },
    )


@_guarded
def handle_get_logs(message, context):
    content = message.content
    view = WORKSPACE.logs.filter(
        type=content.get("logType"),
        search=content.get("search"),
        node_id=content.get("nodeId"),
        run_id=content.get("runId"),
    )
    return _result(
        CODE_LOGS,
        {
            "entries": [entry.to_payload() for entry in view.entries],
            "count": view.count,
            "total": view.total,
        },
    )


@_guarded
def handle_clear_logs(message, context):
    removed = WORKSPACE.clear_logs(message.content.get("nodeId"))
    return _result(CODE_CLEARED, {"target": "logs", "removed": removed})


@_guarded
def handle_clear_results(message, context):
    node_ids = message.content.get("nodeIds")
    WORKSPACE.clear_results(node_ids)
    return _result(CODE_CLEARED, {"target": "results", "nodeIds": node_ids})


Handler = Callable[[FlowMessage, RequestContext], HandlerResult]

MESSAGE_HANDLERS: Dict[int, Handler] = {
    CODE_LOAD_GRAPH: handle_load_graph,
    CODE_GET_GRAPH: handle_get_graph,
    CODE_ADD_NODE: handle_add_node,
    CODE_UPDATE_NODE: handle_update_node,
    CODE_REMOVE_NODE: handle_remove_node,
    CODE_ADD_EDGE: handle_add_edge,
    CODE_REMOVE_EDGE: handle_remove_edge,
    CODE_GET_REFERENCES: handle_get_references,
    CODE_BIND_PARAMETER: handle_bind_parameter,
    CODE_PREVIEW_PARAMETERS: handle_preview_parameters,
    CODE_RUN_NODE: handle_run_node,
    CODE_CANCEL_RUN: handle_cancel_run,
    CODE_GET_RESULTS: handle_get_results,
    CODE_GET_LOGS: handle_get_logs,
    CODE_CLEAR_LOGS: handle_clear_logs,
    CODE_CLEAR_RESULTS: handle_clear_results,
}


def route_message(message: FlowMessage, context: RequestContext) -> HandlerResult:
    if message.type_code not in REQUEST_TYPES:
        raise ProtocolError(
            f"Unsupported message type: {message.type_code}",
            error_code=CODE_UNKNOWN_TYPE,
        )
    handler = MESSAGE_HANDLERS[message.type_code]
    return handler(message, context)
