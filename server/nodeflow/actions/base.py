from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Tuple

# ================================
# Type system for node actions
# ================================
LogFn = Callable[[str, str], None]
ActionFn = Callable[[Any, Dict[str, Any], "ActionContext"], Any]


def _discard(_type: str, _message: str) -> None:
    return None


@dataclass(frozen=True)
class ActionContext:
    """What an action knows about the run it is executing in.

    ``log(type, message)`` appends to the execution log of the current node.
    """
    run_id: str
    node_id: str
    node_name: str
    log: LogFn = field(default=_discard, compare=False)


@dataclass(frozen=True)
class NodeAction:
    """Executable capability for one node kind plus the output fields it declares."""
    kind: str
    fn: ActionFn
    output_fields: Tuple[str, ...] = ()

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.fn)

    async def execute(self, config: Any, params: Dict[str, Any], ctx: ActionContext) -> Any:
        """Await the action; blocking actions run in a worker thread."""
        if self.is_async:
            return await self.fn(config, params, ctx)
        return await asyncio.to_thread(self.fn, config, params, ctx)
