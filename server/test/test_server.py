"""Integration tests for the nodeflow WebSocket server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import sys
import tempfile
import textwrap
import unittest
from pathlib import Path
from typing import Any, Dict, List, Tuple
from unittest.mock import patch

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

import server as nodeflow_server
from nodeflow import config

TEST_PORT = 8799
PUSH_CODES = range(250, 256)
RUN_FINISHED_CODES = (
    nodeflow_server.CODE_RUN_FINISHED_OK,
    nodeflow_server.CODE_RUN_FINISHED_ERROR,
    nodeflow_server.CODE_RUN_CANCELLED,
)

SOURCE_SCRIPT = """
import json
print("fetching value")
print(json.dumps({"value": 21}))
"""

DOUBLE_SCRIPT = """
import json, sys
with open(sys.argv[1]) as fh:
    params = json.load(fh)
print(json.dumps(params["x"] * 2))
"""


def decode(raw: str | bytes) -> Dict[str, Any]:
    frame = json.loads(raw)
    if isinstance(frame.get("content"), str):
        try:
            frame["content"] = json.loads(frame["content"])
        except json.JSONDecodeError:
            frame["content"] = {}
    return frame


class NodeflowServerTests(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def tearDownClass(cls) -> None:
        print(
            "\nServer integration summary:\n"
            " • Bad credentials close the connection with 4401.\n"
            " • Unknown/out-of-order frames return protocol-safe errors.\n"
            " • Graph edits report cycles and missing nodes with error codes.\n"
            " • Runs stream node status and logs before the 252 summary.\n"
        )

    async def asyncSetUp(self) -> None:
        nodeflow_server.reset_server_state()
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        outputs = patch.object(config, "OUTPUTS_DIR", self.root / "outputs")
        outputs.start()
        self.addCleanup(outputs.stop)
        self.addCleanup(self._tmp.cleanup)

        self.next_id = 1
        self.stop_event = asyncio.Event()
        self.server_task = asyncio.create_task(
            nodeflow_server.run_server(stop_event=self.stop_event, port=TEST_PORT)
        )
        await asyncio.sleep(0.1)  # Ensure the server is listening before tests run.

    async def asyncTearDown(self) -> None:
        self.stop_event.set()
        try:
            await asyncio.wait_for(self.server_task, timeout=1)
        except asyncio.TimeoutError:
            self.server_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.server_task
        nodeflow_server.reset_server_state()

    def _connect(self, query: str = "?username=admin&password=admin"):
        return connect(
            f"ws://localhost:{TEST_PORT}/{query}",
            subprotocols=[nodeflow_server.SUBPROTOCOL],
        )

    def _track(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        self.next_id = max(self.next_id, frame["id"] + 1)
        return frame

    async def _send(self, websocket, type_code: int, content: dict, message_id: int | None = None) -> int:
        message_id = self.next_id if message_id is None else message_id
        payload = {
            "id": message_id,
            "requestId": 0,
            "type": type_code,
            "content": json.dumps(content),
        }
        await websocket.send(json.dumps(payload))
        return message_id

    async def _drain(self, websocket, quiet: float = 0.2) -> List[Dict[str, Any]]:
        frames: List[Dict[str, Any]] = []
        while True:
            try:
                raw = await asyncio.wait_for(websocket.recv(), timeout=quiet)
            except asyncio.TimeoutError:
                return frames
            frames.append(self._track(decode(raw)))

    async def _wait_for(self, websocket, codes, timeout: float = 10.0) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        seen: List[Dict[str, Any]] = []
        while True:
            frame = self._track(decode(await asyncio.wait_for(websocket.recv(), timeout=timeout)))
            if frame["type"] in codes:
                return frame, seen
            seen.append(frame)

    async def _exchange(
        self, websocket, type_code: int, content: dict, message_id: int | None = None
    ) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """Send one request; return its reply and any pushes that arrived around it."""
        sent_id = await self._send(websocket, type_code, content, message_id)
        pushes: List[Dict[str, Any]] = []
        while True:
            frame = self._track(decode(await asyncio.wait_for(websocket.recv(), timeout=5)))
            if frame["requestId"] == sent_id and frame["type"] not in PUSH_CODES:
                break
            pushes.append(frame)
        pushes.extend(await self._drain(websocket))
        return frame, pushes

    def _write_script(self, name: str, body: str) -> str:
        path = self.root / name
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return str(path)

    def _pipeline(self) -> Dict[str, Any]:
        return {
            "nodes": [
                {
                    "id": "src",
                    "type": "languageNode",
                    "data": {"label": "Source", "config": {"filePath": self._write_script("src.py", SOURCE_SCRIPT)}},
                },
                {
                    "id": "double",
                    "type": "languageNode",
                    "data": {
                        "label": "Double",
                        "config": {"filePath": self._write_script("double.py", DOUBLE_SCRIPT)},
                        "params": [{"key": "x", "reference": {"nodeId": "src", "field": "result.value"}}],
                    },
                },
            ],
            "edges": [{"source": "src", "target": "double"}],
        }

    async def test_pipeline_run_streams_progress(self) -> None:
        async with self._connect() as websocket:
            reply, _ = await self._exchange(websocket, 100, {"graph": self._pipeline()})
            self.assertEqual(reply["type"], nodeflow_server.CODE_GRAPH)
            self.assertEqual(reply["requestId"], 1)
            self.assertEqual(len(reply["content"]["graph"]["nodes"]), 2)

            reply, _ = await self._exchange(websocket, 107, {"nodeId": "double"})
            self.assertEqual(reply["type"], nodeflow_server.CODE_REFERENCES)
            self.assertIn("Source → result", [r["displayPath"] for r in reply["content"]["references"]])

            run_id = await self._send(websocket, 110, {"nodeId": "double"})
            finished, frames = await self._wait_for(websocket, RUN_FINISHED_CODES)
            await self._drain(websocket)

            self.assertEqual(frames[0]["type"], nodeflow_server.CODE_RUN_STARTED)
            self.assertEqual(frames[0]["requestId"], run_id)
            self.assertEqual(finished["type"], nodeflow_server.CODE_RUN_FINISHED_OK)
            self.assertEqual(finished["requestId"], run_id)
            self.assertEqual(finished["content"]["executed"], ["src", "double"])

            statuses = [
                (f["content"]["nodeId"], f["content"]["status"])
                for f in frames
                if f["type"] == nodeflow_server.CODE_NODE_STATUS
            ]
            self.assertEqual(
                statuses,
                [("src", "running"), ("src", "success"), ("double", "running"), ("double", "success")],
            )
            log_messages = [f["content"]["message"] for f in frames if f["type"] == nodeflow_server.CODE_LOG_ENTRY]
            self.assertIn("fetching value", log_messages)

            reply, _ = await self._exchange(websocket, 112, {"nodeIds": ["double"]})
            self.assertEqual(reply["type"], nodeflow_server.CODE_RESULTS)
            self.assertEqual(reply["content"]["results"]["double"]["output"]["result"], 42)
            self.assertEqual(reply["content"]["lastRun"]["status"], "success")

            reply, _ = await self._exchange(websocket, 113, {"logType": "stdout", "nodeId": "src"})
            self.assertEqual(reply["type"], nodeflow_server.CODE_LOGS)
            self.assertEqual(reply["content"]["count"], 2)

            reply, pushes = await self._exchange(websocket, 114, {})
            self.assertEqual(reply["content"]["target"], "logs")
            self.assertIn(255, [p["type"] for p in pushes])

    async def test_failed_node_reports_error(self) -> None:
        async with self._connect() as websocket:
            await self._exchange(
                websocket,
                102,
                {"node": {"id": "gone", "kind": "file", "config": {"kind": "file", "filePath": "/nonexistent/x.py"}}},
            )
            await self._send(websocket, 110, {"nodeId": "gone"})
            finished, _ = await self._wait_for(websocket, RUN_FINISHED_CODES)
            self.assertEqual(finished["type"], nodeflow_server.CODE_RUN_FINISHED_ERROR)
            self.assertEqual(finished["content"]["failedNode"], "gone")
            self.assertIn("File not found", finished["content"]["error"])

    async def test_graph_errors_map_to_codes(self) -> None:
        async with self._connect() as websocket:
            for node_id in ("a", "b"):
                reply, _ = await self._exchange(
                    websocket,
                    102,
                    {"node": {"id": node_id, "kind": "file", "config": {"kind": "file", "filePath": f"{node_id}.py"}}},
                )
                self.assertEqual(reply["type"], 201)

            reply, _ = await self._exchange(websocket, 105, {"source": "a", "target": "b"})
            self.assertEqual(reply["type"], 202)

            reply, _ = await self._exchange(websocket, 105, {"source": "b", "target": "a"})
            self.assertEqual(reply["type"], nodeflow_server.CODE_CYCLE_DETECTED)
            self.assertEqual(reply["content"]["cycle"], ["b", "a", "b"])

            reply, _ = await self._exchange(websocket, 110, {"nodeId": "ghost"})
            self.assertEqual(reply["type"], nodeflow_server.CODE_NODE_NOT_FOUND)

            reply, _ = await self._exchange(
                websocket, 108, {"nodeId": "a", "key": "x", "reference": {"nodeId": "b", "field": "result"}}
            )
            self.assertEqual(reply["type"], 303)

            reply, _ = await self._exchange(websocket, 111, {})
            self.assertEqual(reply["type"], 305)

            reply, _ = await self._exchange(websocket, 108, {"nodeId": "a"})
            self.assertEqual(reply["type"], 306)

    async def test_unknown_type_triggers_396(self) -> None:
        async with self._connect() as websocket:
            reply, _ = await self._exchange(websocket, 101, {})
            self.assertEqual(reply["type"], nodeflow_server.CODE_GRAPH)

            sent_id = self.next_id
            reply, _ = await self._exchange(websocket, 150, {})
            self.assertEqual(reply["type"], nodeflow_server.CODE_UNKNOWN_TYPE)
            self.assertEqual(reply["requestId"], sent_id)

    async def test_out_of_order_message_id_returns_395(self) -> None:
        async with self._connect() as websocket:
            await self._exchange(websocket, 101, {})
            expected = self.next_id

            reply, _ = await self._exchange(websocket, 101, {}, message_id=expected + 5)
            self.assertEqual(reply["type"], nodeflow_server.CODE_MESSAGE_ID_ERROR)
            self.assertEqual(reply["content"]["expectedId"], expected)

            reply, _ = await self._exchange(websocket, 101, {})
            self.assertEqual(reply["type"], nodeflow_server.CODE_GRAPH)

    async def test_bad_credentials_close_connection(self) -> None:
        async with self._connect("?username=admin&password=wrong") as websocket:
            with self.assertRaises(ConnectionClosed) as ctx:
                await websocket.recv()
            self.assertEqual(ctx.exception.rcvd.code, 4401)


if __name__ == "__main__":
    unittest.main()
