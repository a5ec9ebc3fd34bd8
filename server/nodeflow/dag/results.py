"""Result Store: latest execution record per node."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .models import NodeStatus

LOGGER = logging.getLogger("nodeflow-engine")

ResultListener = Callable[[str, Optional["NodeResult"]], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NodeResult:
    """Immutable snapshot of one node's last execution attempt.

    ``output`` is only present on success and ``error`` only on failure.
    Records are replaced as a whole, never patched.
    """

    node_id: str
    status: NodeStatus
    output: Any = None
    error: Optional[str] = None
    run_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status is not NodeStatus.SUCCESS and self.output is not None:
            raise ValueError("output is only recorded for successful nodes")
        if self.status is NodeStatus.ERROR and not self.error:
            raise ValueError("an error result needs a message")
        if self.status is not NodeStatus.ERROR and self.error is not None:
            raise ValueError("error is only recorded for failed nodes")

    @classmethod
    def running(cls, node_id: str, run_id: Optional[str] = None) -> "NodeResult":
        return cls(node_id=node_id, status=NodeStatus.RUNNING, run_id=run_id, started_at=_now())

    def succeeded(self, output: Any) -> "NodeResult":
        return NodeResult(
            node_id=self.node_id,
            status=NodeStatus.SUCCESS,
            output=output,
            run_id=self.run_id,
            started_at=self.started_at,
            finished_at=_now(),
        )

    def failed(self, error: str) -> "NodeResult":
        return NodeResult(
            node_id=self.node_id,
            status=NodeStatus.ERROR,
            error=error or "Unknown error occurred",
            run_id=self.run_id,
            started_at=self.started_at,
            finished_at=_now(),
        )

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds() * 1000, 3)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "runId": self.run_id,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationMs": self.duration_ms,
        }


class ResultStore:
    """Keyed store of :class:`NodeResult` records.

    Writes swap a whole immutable record under a lock, so readers always see
    either the previous or the new record for a node.
    """

    def __init__(self) -> None:
        self._results: Dict[str, NodeResult] = {}
        self._listeners: List[ResultListener] = []
        self._lock = threading.RLock()

    def get(self, node_id: str) -> Optional[NodeResult]:
        with self._lock:
            return self._results.get(node_id)

    def status_of(self, node_id: str) -> NodeStatus:
        result = self.get(node_id)
        return result.status if result else NodeStatus.IDLE

    def set(self, node_id: str, result: NodeResult) -> None:
        if result.node_id != node_id:
            raise ValueError(f"Result for '{result.node_id}' stored under '{node_id}'")
        with self._lock:
            self._results[node_id] = result
        self._notify(node_id, result)

    def clear(self, node_id: str) -> None:
        with self._lock:
            removed = self._results.pop(node_id, None)
        if removed is not None:
            self._notify(node_id, None)

    def clear_all(self) -> None:
        with self._lock:
            cleared = list(self._results)
            self._results.clear()
        for node_id in cleared:
            self._notify(node_id, None)

    def snapshot(self) -> Dict[str, NodeResult]:
        with self._lock:
            return dict(self._results)

    def subscribe(self, listener: ResultListener) -> Callable[[], None]:
        """Register ``listener(node_id, result_or_None)``; returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, node_id: str, result: Optional[NodeResult]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(node_id, result)
            except Exception:
                LOGGER.exception("Result listener failed for node %s", node_id)
