"""Execution scheduling against stub actions."""

from __future__ import annotations

import asyncio
import sys
import threading
import unittest
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import patch

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from nodeflow.actions import ActionContext, NodeAction
from nodeflow.dag import ActionFailed, AlreadyRunning, Node, NodeNotFound, NodeStatus
from nodeflow.workspace import FlowWorkspace


class Recorder:
    """Stub ``file`` action: records calls and returns ``{"result": <node id>}``."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.params: Dict[str, Dict[str, Any]] = {}
        self.fail: Dict[str, str] = {}
        self.outputs: Dict[str, Any] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.entered: Dict[str, asyncio.Event] = {}

    async def __call__(self, config: Any, params: Dict[str, Any], ctx: ActionContext) -> Any:
        self.calls.append(ctx.node_id)
        self.params[ctx.node_id] = params
        ctx.log("stdout", f"hello from {ctx.node_id}")
        if ctx.node_id in self.gates:
            self.entered.setdefault(ctx.node_id, asyncio.Event()).set()
            await self.gates[ctx.node_id].wait()
        if ctx.node_id in self.fail:
            raise ActionFailed(self.fail[ctx.node_id])
        return self.outputs.get(ctx.node_id, {"result": ctx.node_id})

    def gate(self, node_id: str) -> asyncio.Event:
        self.entered[node_id] = asyncio.Event()
        self.gates[node_id] = asyncio.Event()
        return self.gates[node_id]


def file_node(node_id: str, params: List[Dict[str, Any]] | None = None) -> Node:
    return Node(
        id=node_id,
        kind="file",
        name=f"Node {node_id}",
        config={"kind": "file", "filePath": f"{node_id}.py"},
        params=params or [],
    )


class SchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.recorder = Recorder()
        actions = {"file": NodeAction("file", self.recorder, ("result",))}
        self.ws = FlowWorkspace(actions=actions)

    def build(self, *node_ids: str, edges: List[tuple[str, str]] | None = None) -> None:
        for node_id in node_ids:
            self.ws.add_node(file_node(node_id))
        if edges is None:
            edges = list(zip(node_ids, node_ids[1:]))
        for source, target in edges:
            self.ws.add_edge(source, target)

    def status(self, node_id: str) -> NodeStatus:
        return self.ws.results.status_of(node_id)

    async def test_runs_chain_in_order(self) -> None:
        self.build("A", "B", "C")
        outcome = await self.ws.run_node("C")

        self.assertEqual(self.recorder.calls, ["A", "B", "C"])
        self.assertEqual(outcome.status, "success")
        self.assertEqual(outcome.order, ["A", "B", "C"])
        self.assertIs(outcome.target_status, NodeStatus.SUCCESS)
        self.assertEqual(self.ws.results.get("C").output, {"result": "C"})
        self.assertFalse(self.ws.is_running)

        messages = [e.message for e in self.ws.logs.node_logs("A")]
        self.assertEqual(messages[0], "Starting file node 'Node A'")
        self.assertEqual(messages[1], "hello from A")
        self.assertTrue(messages[2].startswith("Node 'Node A' completed successfully ("))

    async def test_failure_stops_run(self) -> None:
        self.build("A", "B", "C")
        self.recorder.fail["B"] = "boom"
        outcome = await self.ws.run_node("C")

        self.assertEqual(self.recorder.calls, ["A", "B"])
        self.assertEqual(outcome.status, "error")
        self.assertEqual(outcome.failed_node, "B")
        self.assertEqual(outcome.error, "boom")
        self.assertIs(self.status("A"), NodeStatus.SUCCESS)
        self.assertEqual(self.ws.results.get("B").error, "boom")
        self.assertIs(self.status("C"), NodeStatus.IDLE)
        errors = self.ws.logs.filter(type="error").entries
        self.assertEqual([(e.node_id, e.message) for e in errors], [("B", "boom")])

    async def test_successful_upstream_is_skipped(self) -> None:
        self.build("A", "B", "C")
        await self.ws.run_node("A")
        self.recorder.calls.clear()

        outcome = await self.ws.run_node("C")
        self.assertEqual(self.recorder.calls, ["B", "C"])
        self.assertEqual(outcome.skipped, ["A"])

        self.recorder.calls.clear()
        await self.ws.run_node("C")
        self.assertEqual(self.recorder.calls, ["C"])

        self.recorder.calls.clear()
        await self.ws.run_node("C", full_rerun=True)
        self.assertEqual(self.recorder.calls, ["A", "B", "C"])

    async def test_failed_upstream_is_retried(self) -> None:
        self.build("A", "B")
        self.recorder.fail["A"] = "down"
        await self.ws.run_node("B")
        del self.recorder.fail["A"]
        self.recorder.calls.clear()

        outcome = await self.ws.run_node("B")
        self.assertEqual(self.recorder.calls, ["A", "B"])
        self.assertEqual(outcome.status, "success")

    async def test_diamond_runs_each_node_once(self) -> None:
        self.build("A", "C", "B", "D", edges=[("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")])
        await self.ws.run_node("D")
        self.assertEqual(self.recorder.calls, ["A", "C", "B", "D"])

    async def test_second_run_is_rejected(self) -> None:
        self.build("A", "B")
        gate = self.recorder.gate("A")
        first = asyncio.create_task(self.ws.run_node("B"))
        await self.recorder.entered["A"].wait()

        self.assertTrue(self.ws.is_running)
        with self.assertRaises(AlreadyRunning):
            await self.ws.run_node("A")
        self.assertIs(self.status("A"), NodeStatus.RUNNING)

        gate.set()
        outcome = await first
        self.assertEqual(outcome.status, "success")
        self.assertEqual(self.recorder.calls, ["A", "B"])

    async def test_cancel_stops_before_next_node(self) -> None:
        self.build("A", "B", "C")
        gate = self.recorder.gate("A")
        task = asyncio.create_task(self.ws.run_node("C"))
        await self.recorder.entered["A"].wait()

        self.assertTrue(self.ws.cancel_run())
        gate.set()
        outcome = await task

        self.assertEqual(outcome.status, "cancelled")
        self.assertEqual(outcome.executed, ["A"])
        self.assertIs(self.status("A"), NodeStatus.SUCCESS)
        self.assertIs(self.status("B"), NodeStatus.IDLE)
        warnings = self.ws.logs.filter(type="warning").entries
        self.assertEqual(warnings[0].message, "Run cancelled before 'Node B' started")
        self.assertFalse(self.ws.cancel_run())

    async def test_cancel_during_admission_is_not_acknowledged(self) -> None:
        self.build("A", "B")
        acknowledged: List[bool] = []
        order = self.ws.graph.execution_order

        def ordering(target_id: str) -> List[str]:
            acknowledged.append(self.ws.cancel_run())
            return order(target_id)

        with patch.object(self.ws.graph, "execution_order", side_effect=ordering):
            outcome = await self.ws.run_node("B")

        self.assertEqual(acknowledged, [False])
        self.assertEqual(outcome.status, "success")
        self.assertEqual(self.recorder.calls, ["A", "B"])

    async def test_exiting_action_fails_the_node(self) -> None:
        def exiting(config: Any, params: Dict[str, Any], ctx: ActionContext) -> Any:
            raise SystemExit(1)

        ws = FlowWorkspace(actions={"file": NodeAction("file", exiting, ("result",))})
        ws.add_node(file_node("A"))
        outcome = await ws.run_node("A")

        self.assertEqual(outcome.status, "error")
        self.assertEqual(outcome.error, "SystemExit: 1")
        self.assertIs(ws.results.status_of("A"), NodeStatus.ERROR)
        self.assertFalse(ws.is_running)

    async def test_cancelled_task_does_not_leave_node_running(self) -> None:
        self.build("A", "B")
        self.recorder.gate("A")
        task = asyncio.create_task(self.ws.run_node("B"))
        await self.recorder.entered["A"].wait()

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertIs(self.status("A"), NodeStatus.ERROR)
        self.assertIn("interrupted", self.ws.results.get("A").error)
        self.assertIs(self.status("B"), NodeStatus.IDLE)
        self.assertFalse(self.ws.is_running)

    async def test_references_reach_the_action(self) -> None:
        self.build("A", "B")
        self.recorder.outputs["A"] = {"result": {"items": [{"id": 7}]}}
        self.ws.bind_parameter("B", "first", reference={"nodeId": "A", "field": "result.items[0].id"})
        self.ws.bind_parameter("B", "limit", value="25", type="number")

        await self.ws.run_node("B")
        self.assertEqual(self.recorder.params["B"], {"first": 7, "limit": 25})

    async def test_missing_field_fails_the_node(self) -> None:
        self.build("A", "B")
        self.ws.bind_parameter("B", "x", reference={"nodeId": "A", "field": "result.nope"})
        outcome = await self.ws.run_node("B")

        self.assertEqual(self.recorder.calls, ["A"])
        self.assertEqual(outcome.failed_node, "B")
        self.assertIn("nope", self.ws.results.get("B").error)

    async def test_reference_to_former_ancestor_fails(self) -> None:
        self.build("A", "B")
        self.ws.bind_parameter("B", "x", reference={"nodeId": "A", "field": "result"})
        self.ws.remove_edge("A", "B")

        outcome = await self.ws.run_node("B")
        self.assertEqual(outcome.status, "error")
        self.assertEqual(self.recorder.calls, [])
        self.assertIn("not an upstream node", outcome.error)

    async def test_sync_actions_run_off_the_event_loop(self) -> None:
        threads: List[threading.Thread] = []

        def blocking(config: Any, params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
            threads.append(threading.current_thread())
            return {"result": 1}

        ws = FlowWorkspace(actions={"file": NodeAction("file", blocking, ("result",))})
        ws.add_node(file_node("A"))
        outcome = await ws.run_node("A")

        self.assertEqual(outcome.status, "success")
        self.assertIsNot(threads[0], threading.main_thread())

    async def test_unknown_target_releases_admission(self) -> None:
        with self.assertRaises(NodeNotFound):
            await self.ws.run_node("ghost")
        self.assertFalse(self.ws.is_running)
        self.build("A")
        outcome = await self.ws.run_node("A")
        self.assertEqual(outcome.status, "success")

    async def test_unregistered_kind_fails(self) -> None:
        self.ws.add_node(
            Node(id="api", kind="api", config={"kind": "api", "url": "https://example.test"})
        )
        outcome = await self.ws.run_node("api")
        self.assertEqual(outcome.status, "error")
        self.assertIn("No action registered", outcome.error)

    async def test_logs_carry_run_id(self) -> None:
        self.build("A")
        outcome = await self.ws.run_node("A")
        entries = self.ws.logs.run_logs(outcome.run_id)
        self.assertEqual(len(entries), 3)
        self.assertEqual({e.type.value for e in entries}, {"info", "stdout", "success"})
        self.assertIs(self.ws.last_outcome, outcome)


if __name__ == "__main__":
    unittest.main()
