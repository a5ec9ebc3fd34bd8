"""Log Sink: ordered record of execution events shown in the log panel."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

LOGGER = logging.getLogger("nodeflow-engine")


class LogType(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    INFO = "info"
    ERROR = "error"
    SUCCESS = "success"
    WARNING = "warning"


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: datetime
    node_id: str
    node_name: str
    type: LogType
    message: str
    run_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "type": self.type.value,
            "message": self.message,
            "runId": self.run_id,
        }


@dataclass(frozen=True)
class LogView:
    """Filtered slice of the sink plus the counters shown in the panel header."""

    entries: List[LogEntry]
    total: int

    @property
    def count(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class NodeLogsCleared:
    """Delivered to listeners after one node's entries were removed."""

    node_id: str
    removed: int


LogEvent = Union[LogEntry, NodeLogsCleared, None]
LogListener = Callable[[LogEvent], None]


class LogSink:
    """Append-only log; only an explicit clear removes entries."""

    def __init__(self) -> None:
        self._entries: List[LogEntry] = []
        self._listeners: List[LogListener] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(
        self,
        node_id: str,
        node_name: str,
        type: LogType | str,
        message: str,
        run_id: Optional[str] = None,
    ) -> LogEntry:
        entry = LogEntry(
            id=uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            node_id=node_id,
            node_name=node_name,
            type=LogType(type),
            message=message,
            run_id=run_id,
        )
        with self._lock:
            self._entries.append(entry)
        self._notify(entry)
        return entry

    def entries(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def filter(
        self,
        *,
        type: LogType | str | None = None,
        search: Optional[str] = None,
        node_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> LogView:
        with self._lock:
            entries = list(self._entries)
        wanted_type = LogType(type) if type else None
        needle = search.lower() if search else None
        selected = [
            entry
            for entry in entries
            if (wanted_type is None or entry.type is wanted_type)
            and (needle is None or needle in entry.message.lower())
            and (node_id is None or entry.node_id == node_id)
            and (run_id is None or entry.run_id == run_id)
        ]
        return LogView(entries=selected, total=len(entries))

    def node_logs(self, node_id: str) -> List[LogEntry]:
        return self.filter(node_id=node_id).entries

    def run_logs(self, run_id: str) -> List[LogEntry]:
        return self.filter(run_id=run_id).entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self._notify(None)

    def clear_node(self, node_id: str) -> int:
        with self._lock:
            kept = [e for e in self._entries if e.node_id != node_id]
            removed = len(self._entries) - len(kept)
            self._entries[:] = kept
        if removed:
            self._notify(NodeLogsCleared(node_id, removed))
        return removed

    def subscribe(self, listener: LogListener) -> Callable[[], None]:
        """Register ``listener(event)``.

        Each new entry is delivered as it is appended, ``None`` after a full
        clear and a ``NodeLogsCleared`` after a per-node clear.
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, event: LogEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Log listener failed")
