"""FastAPI surface for inspecting and driving a nodeflow workspace."""

from __future__ import annotations

import mimetypes
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional
from urllib.parse import quote

from fastapi import Body, Depends, FastAPI, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from nodeflow import config
from nodeflow.dag import (
    AlreadyRunning,
    CycleDetected,
    Edge,
    EngineError,
    LogEntry,
    Node,
    NodeNotFound,
    NodeReference,
    NodeResult,
    RunOutcome,
)
from nodeflow.services import WORKSPACE
from nodeflow.workspace import FlowWorkspace

app = FastAPI(title="nodeflow Engine API", version="0.1.0")


class GraphView(BaseModel):
    nodes: List[Node]
    edges: List[Edge]
    running: bool = False


class EdgeRequest(BaseModel):
    source: str
    target: str
    source_port: Optional[str] = None
    target_port: Optional[str] = None


class BindRequest(BaseModel):
    value: Any = None
    reference: Optional[NodeReference] = None
    type: Optional[str] = None


class RunRequest(BaseModel):
    full_rerun: Optional[bool] = None


class ResultView(BaseModel):
    node_id: str
    status: str
    output: Any = None
    error: Optional[str] = None
    run_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None


class LogEntryView(BaseModel):
    id: str
    timestamp: datetime
    node_id: str
    node_name: str
    type: str
    message: str
    run_id: Optional[str] = None


class LogsView(BaseModel):
    entries: List[LogEntryView]
    count: int
    total: int


class RunView(BaseModel):
    run_id: str
    target_id: str
    order: List[str]
    executed: List[str]
    skipped: List[str]
    status: str
    target_status: str
    failed_node: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None


class FileInfo(BaseModel):
    path: str
    name: str
    size_bytes: int
    media_type: Optional[str] = None
    modified_at: str
    download_url: str


class ClearedView(BaseModel):
    target: str
    removed: int = 0
    node_ids: List[str] = Field(default_factory=list)


def get_workspace() -> FlowWorkspace:
    """Return the process-wide workspace shared with the WebSocket services."""
    return WORKSPACE


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, NodeNotFound):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, (CycleDetected, AlreadyRunning)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def _result_view(result: NodeResult) -> ResultView:
    return ResultView(
        node_id=result.node_id,
        status=result.status.value,
        output=result.output,
        error=result.error,
        run_id=result.run_id,
        started_at=result.started_at,
        finished_at=result.finished_at,
        duration_ms=result.duration_ms,
    )


def _log_view(entry: LogEntry) -> LogEntryView:
    return LogEntryView(
        id=entry.id,
        timestamp=entry.timestamp,
        node_id=entry.node_id,
        node_name=entry.node_name,
        type=entry.type.value,
        message=entry.message,
        run_id=entry.run_id,
    )


def _run_view(outcome: RunOutcome) -> RunView:
    return RunView(
        run_id=outcome.run_id,
        target_id=outcome.target_id,
        order=outcome.order,
        executed=outcome.executed,
        skipped=outcome.skipped,
        status=outcome.status,
        target_status=outcome.target_status.value,
        failed_node=outcome.failed_node,
        error=outcome.error,
        started_at=outcome.started_at,
        finished_at=outcome.finished_at,
    )


def _graph_view(workspace: FlowWorkspace) -> GraphView:
    return GraphView(
        nodes=workspace.get_node_data(),
        edges=workspace.get_edge_data(),
        running=workspace.is_running,
    )


def _run_root(run_id: str) -> Path:
    outputs_root = Path(config.OUTPUTS_DIR).resolve()
    root = (outputs_root / run_id).resolve()
    try:
        root.relative_to(outputs_root)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid run id.") from exc
    return root


def _resolve_requested_file(root: Path, relative_path: str) -> Path:
    if not relative_path:
        raise HTTPException(status_code=400, detail="File path must be provided.")
    candidate = (root / relative_path).resolve()
    try:
        candidate.relative_to(root)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid file path.") from exc
    return candidate


# ================================
# Graph
# ================================
@app.get("/graph", response_model=GraphView)
def get_graph(workspace: FlowWorkspace = Depends(get_workspace)) -> GraphView:
    return _graph_view(workspace)


@app.put("/graph", response_model=GraphView)
def load_graph(
    payload: Dict[str, Any] = Body(...),
    workspace: FlowWorkspace = Depends(get_workspace),
) -> GraphView:
    try:
        workspace.load_graph(payload)
    except EngineError as exc:
        _raise_http(exc)
    return _graph_view(workspace)


@app.post("/nodes", response_model=Node, status_code=201)
def add_node(node: Node, workspace: FlowWorkspace = Depends(get_workspace)) -> Node:
    try:
        return workspace.add_node(node)
    except EngineError as exc:
        _raise_http(exc)


@app.delete("/nodes/{node_id}", response_model=Node)
def remove_node(node_id: str, workspace: FlowWorkspace = Depends(get_workspace)) -> Node:
    try:
        return workspace.remove_node(node_id)
    except EngineError as exc:
        _raise_http(exc)


@app.post("/edges", response_model=Edge, status_code=201)
def add_edge(request: EdgeRequest, workspace: FlowWorkspace = Depends(get_workspace)) -> Edge:
    try:
        return workspace.add_edge(
            request.source,
            request.target,
            source_port=request.source_port,
            target_port=request.target_port,
        )
    except EngineError as exc:
        _raise_http(exc)


@app.delete("/edges/{source}/{target}", response_model=Edge)
def remove_edge(source: str, target: str, workspace: FlowWorkspace = Depends(get_workspace)) -> Edge:
    try:
        return workspace.remove_edge(source, target)
    except EngineError as exc:
        _raise_http(exc)


# ================================
# Parameters and references
# ================================
@app.get("/nodes/{node_id}/references", response_model=List[NodeReference])
def list_references(
    node_id: str,
    include_transitive: Optional[bool] = None,
    workspace: FlowWorkspace = Depends(get_workspace),
) -> List[NodeReference]:
    try:
        return workspace.get_available_references(node_id, include_transitive)
    except EngineError as exc:
        _raise_http(exc)


@app.put("/nodes/{node_id}/params/{key}", response_model=Node)
def bind_parameter(
    node_id: str,
    key: str,
    request: BindRequest,
    workspace: FlowWorkspace = Depends(get_workspace),
) -> Node:
    try:
        if request.reference is not None:
            return workspace.bind_parameter(node_id, key, reference=request.reference, type=request.type)
        return workspace.bind_parameter(node_id, key, value=request.value, type=request.type)
    except (EngineError, ValueError) as exc:
        _raise_http(exc)


@app.get("/nodes/{node_id}/params/preview")
def preview_parameters(
    node_id: str, workspace: FlowWorkspace = Depends(get_workspace)
) -> Dict[str, Dict[str, Any]]:
    try:
        return workspace.preview_parameters(node_id)
    except EngineError as exc:
        _raise_http(exc)


# ================================
# Runs and results
# ================================
@app.post("/nodes/{node_id}/run", response_model=RunView)
async def run_node(
    node_id: str,
    request: Optional[RunRequest] = None,
    workspace: FlowWorkspace = Depends(get_workspace),
) -> RunView:
    full_rerun = request.full_rerun if request else None
    try:
        outcome = await workspace.run_node(node_id, full_rerun=full_rerun)
    except EngineError as exc:
        _raise_http(exc)
    return _run_view(outcome)


@app.post("/runs/cancel")
def cancel_run(workspace: FlowWorkspace = Depends(get_workspace)) -> Dict[str, Any]:
    run_id = workspace.scheduler.current_run_id
    if not workspace.cancel_run():
        raise HTTPException(status_code=409, detail="No run in progress.")
    return {"run_id": run_id, "status": "cancel-requested"}


@app.get("/runs/last", response_model=RunView)
def last_run(workspace: FlowWorkspace = Depends(get_workspace)) -> RunView:
    outcome = workspace.last_outcome
    if outcome is None:
        raise HTTPException(status_code=404, detail="No run has finished yet.")
    return _run_view(outcome)


@app.get("/results", response_model=List[ResultView])
def list_results(workspace: FlowWorkspace = Depends(get_workspace)) -> List[ResultView]:
    return [_result_view(result) for result in workspace.results.snapshot().values()]


@app.get("/results/{node_id}", response_model=ResultView)
def get_result(node_id: str, workspace: FlowWorkspace = Depends(get_workspace)) -> ResultView:
    result = workspace.results.get(node_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No result recorded for node '{node_id}'.")
    return _result_view(result)


@app.delete("/results", response_model=ClearedView)
def clear_results(workspace: FlowWorkspace = Depends(get_workspace)) -> ClearedView:
    node_ids = list(workspace.results.snapshot())
    workspace.clear_results()
    return ClearedView(target="results", removed=len(node_ids), node_ids=node_ids)


# ================================
# Logs
# ================================
@app.get("/logs", response_model=LogsView)
def list_logs(
    type: Optional[str] = None,
    search: Optional[str] = None,
    node_id: Optional[str] = None,
    run_id: Optional[str] = None,
    workspace: FlowWorkspace = Depends(get_workspace),
) -> LogsView:
    try:
        view = workspace.logs.filter(type=type, search=search, node_id=node_id, run_id=run_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown log type '{type}'.") from exc
    return LogsView(
        entries=[_log_view(entry) for entry in view.entries],
        count=view.count,
        total=view.total,
    )


@app.delete("/logs", response_model=ClearedView)
def clear_logs(
    node_id: Optional[str] = None, workspace: FlowWorkspace = Depends(get_workspace)
) -> ClearedView:
    removed = workspace.clear_logs(node_id)
    return ClearedView(target="logs", removed=removed, node_ids=[node_id] if node_id else [])


# ================================
# Files written by file nodes
# ================================
@app.get("/runs/{run_id}/files", response_model=List[FileInfo])
def list_run_files(run_id: str) -> List[FileInfo]:
    root = _run_root(run_id)
    if not root.exists():
        return []
    files: List[FileInfo] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        posix_path = path.relative_to(root).as_posix()
        stat = path.stat()
        media_type, _ = mimetypes.guess_type(path.name)
        files.append(
            FileInfo(
                path=posix_path,
                name=path.name,
                size_bytes=stat.st_size,
                media_type=media_type,
                modified_at=datetime.fromtimestamp(stat.st_mtime).isoformat(),
                download_url=f"/runs/{run_id}/files/{quote(posix_path)}",
            )
        )
    return files


@app.get("/runs/{run_id}/files/{file_path:path}")
def stream_run_file(run_id: str, file_path: str) -> FileResponse:
    root = _run_root(run_id)
    if not root.exists():
        raise HTTPException(status_code=404, detail="No files recorded for this run.")
    requested_file = _resolve_requested_file(root, file_path)
    if not requested_file.is_file():
        raise HTTPException(
            status_code=404,
            detail=f"File '{file_path}' was not found for run '{run_id}'.",
        )
    media_type, _ = mimetypes.guess_type(requested_file.name)
    return FileResponse(
        path=requested_file,
        media_type=media_type or "application/octet-stream",
        filename=requested_file.name,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
