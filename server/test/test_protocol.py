"""Frame parsing and request routing without a socket."""

from __future__ import annotations

import json
import sys
import unittest
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from nodeflow import FlowMessage, ProtocolError, RequestContext, ensure_credentials
from nodeflow import codes
from nodeflow.services import WORKSPACE, attach_listeners, reset_server_state, route_message


def frame(type_code: int, content: dict, message_id: int = 1) -> FlowMessage:
    return FlowMessage(message_id=message_id, request_id=0, type_code=type_code, content=content)


class FrameTests(unittest.TestCase):
    def test_parse_and_serialize(self) -> None:
        raw = json.dumps({"id": 3, "requestId": 0, "type": 101, "content": json.dumps({"a": 1})})
        message = FlowMessage.parse(raw, error_code=396)
        self.assertEqual((message.message_id, message.type_code, message.content), (3, 101, {"a": 1}))

        encoded = json.loads(message.to_json())
        self.assertIsInstance(encoded["content"], str)
        self.assertEqual(json.loads(encoded["content"]), {"a": 1})

    def test_empty_content_is_an_empty_object(self) -> None:
        raw = json.dumps({"id": 1, "requestId": 0, "type": 101, "content": ""})
        self.assertEqual(FlowMessage.parse(raw, error_code=396).content, {})

    def test_malformed_frames(self) -> None:
        cases = {
            "not json": "{nope",
            "not an object": "[1, 2]",
            "missing id": json.dumps({"requestId": 0, "type": 1, "content": "{}"}),
            "content not string": json.dumps({"id": 1, "requestId": 0, "type": 1, "content": {}}),
            "content not object": json.dumps({"id": 1, "requestId": 0, "type": 1, "content": "[1]"}),
        }
        for label, raw in cases.items():
            with self.subTest(label):
                with self.assertRaises(ProtocolError) as ctx:
                    FlowMessage.parse(raw, error_code=396)
                self.assertEqual(ctx.exception.error_code, 396)

    def test_credentials(self) -> None:
        self.assertEqual(ensure_credentials("/?username=admin&password=admin"), "admin")
        for path in ("/", "/?username=admin", "/?username=admin&password=x"):
            with self.subTest(path=path):
                with self.assertRaises(PermissionError):
                    ensure_credentials(path)


class RoutingTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_server_state()
        self.pushes: list[tuple[int, dict]] = []
        self.context = RequestContext(
            username="admin",
            connection_id="test",
            status_callback=lambda code, payload, request_id: self.pushes.append((code, payload)),
        )
        attach_listeners(self.context)
        self.addCleanup(self.context.detach)
        self.addCleanup(reset_server_state)

    def add(self, node_id: str) -> int:
        node = {"id": node_id, "kind": "file", "config": {"kind": "file", "filePath": f"{node_id}.py"}}
        code, _, _ = route_message(frame(codes.CODE_ADD_NODE, {"node": node}), self.context)
        return code

    def test_unknown_type(self) -> None:
        with self.assertRaises(ProtocolError) as ctx:
            route_message(frame(150, {}), self.context)
        self.assertEqual(ctx.exception.error_code, codes.CODE_UNKNOWN_TYPE)

    def test_edit_and_error_codes(self) -> None:
        self.assertEqual(self.add("a"), codes.CODE_NODE_OK)
        self.assertEqual(self.add("a"), codes.CODE_GRAPH_ERROR)
        self.assertEqual(self.add("b"), codes.CODE_NODE_OK)

        code, content, _ = route_message(
            frame(codes.CODE_ADD_EDGE, {"source": "a", "target": "b"}), self.context
        )
        self.assertEqual(code, codes.CODE_EDGE_OK)
        self.assertEqual(content["edge"]["id"], "a-b")

        code, content, _ = route_message(
            frame(codes.CODE_ADD_EDGE, {"source": "b", "target": "a"}), self.context
        )
        self.assertEqual(code, codes.CODE_CYCLE_DETECTED)
        self.assertEqual(content["cycle"], ["b", "a", "b"])

        code, _, _ = route_message(frame(codes.CODE_REMOVE_NODE, {"nodeId": "zzz"}), self.context)
        self.assertEqual(code, codes.CODE_NODE_NOT_FOUND)

        code, content, _ = route_message(frame(codes.CODE_ADD_NODE, {}), self.context)
        self.assertEqual(code, codes.CODE_BAD_REQUEST)
        self.assertEqual(content["error"], "node is required")

    def test_bind_and_preview(self) -> None:
        self.add("a")
        self.add("b")
        route_message(frame(codes.CODE_ADD_EDGE, {"source": "a", "target": "b"}), self.context)

        code, content, _ = route_message(
            frame(
                codes.CODE_BIND_PARAMETER,
                {"nodeId": "b", "key": "input", "reference": {"nodeId": "a", "field": "result"}},
            ),
            self.context,
        )
        self.assertEqual(code, codes.CODE_PARAMETERS)
        self.assertEqual(content["node"]["params"][0]["reference"]["nodeId"], "a")

        code, content, _ = route_message(
            frame(codes.CODE_BIND_PARAMETER, {"nodeId": "b", "key": "limit", "value": "7", "paramType": "number"}),
            self.context,
        )
        self.assertEqual(code, codes.CODE_PARAMETERS)

        code, content, _ = route_message(frame(codes.CODE_PREVIEW_PARAMETERS, {"nodeId": "b"}), self.context)
        self.assertEqual(content["parameters"]["limit"], {"value": 7, "error": None})
        self.assertIsNotNone(content["parameters"]["input"]["error"])

    def test_result_and_log_changes_are_pushed(self) -> None:
        self.add("a")
        WORKSPACE.logs.append("a", "a", "info", "hello")
        code, content, _ = route_message(frame(codes.CODE_CLEAR_LOGS, {}), self.context)

        self.assertEqual((code, content["removed"]), (codes.CODE_CLEARED, 1))
        self.assertEqual(
            [code for code, _ in self.pushes], [codes.CODE_LOG_ENTRY, codes.CODE_LOGS_CLEARED]
        )

    def test_node_log_clear_is_pushed(self) -> None:
        self.add("a")
        WORKSPACE.logs.append("a", "a", "info", "one")
        WORKSPACE.logs.append("b", "b", "info", "two")
        self.pushes.clear()

        code, content, _ = route_message(frame(codes.CODE_CLEAR_LOGS, {"nodeId": "a"}), self.context)
        self.assertEqual((code, content["removed"]), (codes.CODE_CLEARED, 1))
        self.assertEqual(self.pushes, [(codes.CODE_LOGS_CLEARED, {"nodeId": "a", "removed": 1})])
        self.assertEqual([e.node_id for e in WORKSPACE.logs.entries()], ["b"])

    def test_run_returns_follow_up(self) -> None:
        self.add("a")
        code, content, follow_up = route_message(frame(codes.CODE_RUN_NODE, {"nodeId": "a"}), self.context)
        self.assertEqual(code, codes.CODE_RUN_STARTED)
        self.assertEqual(content["nodeId"], "a")
        self.assertIsNotNone(follow_up)
        follow_up.close()

        code, _, follow_up = route_message(frame(codes.CODE_CANCEL_RUN, {}), self.context)
        self.assertEqual(code, codes.CODE_NOT_RUNNING)
        self.assertIsNone(follow_up)


if __name__ == "__main__":
    unittest.main()
