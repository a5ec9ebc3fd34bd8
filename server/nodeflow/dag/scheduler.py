"""Execution Scheduler: runs a target node and its ancestors in dependency order.

Only one run may be in flight at a time.  Nodes that already succeeded are
skipped unless they are the target or a full re-run is requested.  The first
failure stops the run; later nodes keep whatever status they had before.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple
from uuid import uuid4

from ..actions.base import ActionContext, NodeAction
from .errors import AlreadyRunning, GraphError, NodeNotFound, ResolutionError
from .graph import GraphStore
from .logs import LogSink, LogType
from .models import Node, NodeStatus
from .references import ReferenceResolver
from .results import NodeResult, ResultStore

LOGGER = logging.getLogger("nodeflow-engine")

RunStatus = Literal["success", "error", "cancelled"]


@dataclass(frozen=True)
class RunOutcome:
    """Terminal summary of one ``run_node`` invocation."""
    run_id: str
    target_id: str
    order: List[str]
    executed: List[str]
    skipped: List[str]
    status: RunStatus
    target_status: NodeStatus
    failed_node: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "targetId": self.target_id,
            "order": list(self.order),
            "executed": list(self.executed),
            "skipped": list(self.skipped),
            "status": self.status,
            "targetStatus": self.target_status.value,
            "failedNode": self.failed_node,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class Scheduler:
    def __init__(
        self,
        graph: GraphStore,
        results: ResultStore,
        logs: LogSink,
        resolver: ReferenceResolver,
        actions: Mapping[str, NodeAction],
    ) -> None:
        self.graph = graph
        self.results = results
        self.logs = logs
        self.resolver = resolver
        self.actions = actions
        self._admission = threading.Lock()
        self._cancel_requested = threading.Event()
        self._current_run: Optional[str] = None
        self._last_outcome: Optional[RunOutcome] = None

    @property
    def is_running(self) -> bool:
        return self._admission.locked()

    @property
    def current_run_id(self) -> Optional[str]:
        return self._current_run

    @property
    def last_outcome(self) -> Optional[RunOutcome]:
        return self._last_outcome

    def cancel(self) -> bool:
        """Ask the active run to stop before its next node. Returns False when idle."""
        if self._current_run is None:
            return False
        self._cancel_requested.set()
        LOGGER.info("Cancellation requested for run %s", self._current_run)
        return True

    async def run_node(self, target_id: str, *, full_rerun: bool = False) -> RunOutcome:
        if not self._admission.acquire(blocking=False):
            raise AlreadyRunning(self._current_run)
        try:
            self._cancel_requested.clear()
            order = self.graph.execution_order(target_id)
            run_id = uuid4().hex
            self._current_run = run_id
            outcome = await self._execute(run_id, target_id, order, full_rerun)
            self._last_outcome = outcome
            return outcome
        finally:
            self._current_run = None
            self._cancel_requested.clear()
            self._admission.release()

    # ------------------------------------------------------------------
    async def _execute(
        self, run_id: str, target_id: str, order: List[str], full_rerun: bool
    ) -> RunOutcome:
        started_at = datetime.now(timezone.utc)
        executed: List[str] = []
        skipped: List[str] = []
        status: RunStatus = "success"
        failed_node: Optional[str] = None
        error: Optional[str] = None

        LOGGER.info("Run %s: target=%s order=%s full_rerun=%s", run_id, target_id, order, full_rerun)
        for node_id in order:
            is_target = node_id == target_id
            if not is_target and not full_rerun and self.results.status_of(node_id) is NodeStatus.SUCCESS:
                skipped.append(node_id)
                continue

            try:
                node = self.graph.get_node(node_id)
            except NodeNotFound as exc:
                status, failed_node, error = "error", node_id, str(exc)
                self.logs.append(node_id, node_id, LogType.ERROR, error, run_id)
                break

            if self._cancel_requested.is_set():
                status = "cancelled"
                self.logs.append(
                    node.id,
                    node.name,
                    LogType.WARNING,
                    f"Run cancelled before '{node.name}' started",
                    run_id,
                )
                break

            executed.append(node_id)
            ok, message = await self._run_one(node, run_id)
            if not ok:
                status, failed_node, error = "error", node_id, message
                break

        outcome = RunOutcome(
            run_id=run_id,
            target_id=target_id,
            order=order,
            executed=executed,
            skipped=skipped,
            status=status,
            target_status=self.results.status_of(target_id),
            failed_node=failed_node,
            error=error,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        LOGGER.info(
            "Run %s finished: status=%s executed=%s skipped=%s",
            run_id,
            status,
            executed,
            skipped,
        )
        return outcome

    async def _run_one(self, node: Node, run_id: str) -> Tuple[bool, Optional[str]]:
        running = NodeResult.running(node.id, run_id)
        self.results.set(node.id, running)
        self.logs.append(
            node.id,
            node.name,
            LogType.INFO,
            f"Starting {node.kind.value} node '{node.name}'",
            run_id,
        )

        try:
            self.resolver.validate_parameters(node.id, node.params)
            params = self.resolver.resolve_all(node.params, self.results)
        except (ResolutionError, GraphError) as exc:
            return self._fail(running, node, str(exc))

        action = self.actions.get(node.kind.value)
        if action is None:
            return self._fail(running, node, f"No action registered for kind '{node.kind.value}'")

        def _log(log_type: str, message: str) -> None:
            self.logs.append(node.id, node.name, log_type, message, run_id)

        ctx = ActionContext(run_id=run_id, node_id=node.id, node_name=node.name, log=_log)
        try:
            output = await action.execute(node.config, params, ctx)
        except (asyncio.CancelledError, KeyboardInterrupt):
            self._fail(running, node, f"Run interrupted while '{node.name}' was running")
            raise
        except Exception as exc:
            return self._fail(running, node, str(exc) or exc.__class__.__name__)
        except BaseException as exc:
            # SystemExit from user code fails the node, not the engine.
            return self._fail(running, node, f"{exc.__class__.__name__}: {exc}")

        finished = running.succeeded(output)
        self.results.set(node.id, finished)
        self.logs.append(
            node.id,
            node.name,
            LogType.SUCCESS,
            f"Node '{node.name}' completed successfully ({finished.duration_ms}ms)",
            run_id,
        )
        return True, None

    def _fail(self, running: NodeResult, node: Node, message: str) -> Tuple[bool, str]:
        self.results.set(node.id, running.failed(message))
        self.logs.append(node.id, node.name, LogType.ERROR, message, run_id=running.run_id)
        LOGGER.warning("Run %s: node %s failed: %s", running.run_id, node.id, message)
        return False, message
