"""WebSocket server speaking the nodeflow protocol.

One connection is one editing session on the shared workspace: requests are
answered in order, and node status / log changes are pushed as they happen.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from typing import Any, Dict, Optional
from uuid import uuid4

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from nodeflow import (
    HOST,
    PORT,
    SUBPROTOCOL,
    FlowMessage,
    ProtocolError,
    RequestContext,
    build_status_response,
    ensure_credentials,
)
from nodeflow.codes import (
    CODE_ALREADY_RUNNING,
    CODE_CYCLE_DETECTED,
    CODE_GRAPH,
    CODE_LOG_ENTRY,
    CODE_LOGS,
    CODE_MESSAGE_ID_ERROR,
    CODE_NODE_NOT_FOUND,
    CODE_NODE_STATUS,
    CODE_REFERENCES,
    CODE_RESULTS,
    CODE_RUN_CANCELLED,
    CODE_RUN_FINISHED_ERROR,
    CODE_RUN_FINISHED_OK,
    CODE_RUN_STARTED,
    CODE_UNKNOWN_TYPE,
)
from nodeflow.services import WORKSPACE, attach_listeners, reset_server_state, route_message

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | pid=%(process)d | %(levelname)s | %(name)s | %(message)s",
)
LOGGER = logging.getLogger("nodeflow-server")

CLOSE_BAD_CREDENTIALS = 4401
CLOSE_BAD_SUBPROTOCOL = 4406

__all__ = [
    "HOST",
    "PORT",
    "SUBPROTOCOL",
    "WORKSPACE",
    "CODE_ALREADY_RUNNING",
    "CODE_CYCLE_DETECTED",
    "CODE_GRAPH",
    "CODE_LOG_ENTRY",
    "CODE_LOGS",
    "CODE_MESSAGE_ID_ERROR",
    "CODE_NODE_NOT_FOUND",
    "CODE_NODE_STATUS",
    "CODE_REFERENCES",
    "CODE_RESULTS",
    "CODE_RUN_CANCELLED",
    "CODE_RUN_FINISHED_ERROR",
    "CODE_RUN_FINISHED_OK",
    "CODE_RUN_STARTED",
    "CODE_UNKNOWN_TYPE",
    "reset_server_state",
    "run_server",
    "main",
]


def _session_log(level: int, context: Optional[RequestContext], message: str, *args: Any) -> None:
    if context is not None and context.log_label:
        LOGGER.log(level, "%s " + message, context.log_label, *args)
    else:
        LOGGER.log(level, message, *args)


def _watch(fut: asyncio.Future[Any] | Future, label: str) -> None:
    """Log failures of fire-and-forget sends; a closed peer is not a failure."""

    def _done(done: asyncio.Future[Any] | Future) -> None:
        if done.cancelled():
            return
        exc = done.exception()
        if exc is not None and not isinstance(exc, ConnectionClosed):
            LOGGER.error("%s failed: %s", label, exc)

    fut.add_done_callback(_done)


# ================================
# Outgoing frames
# ================================
class MessageDispatcher:
    """Numbers and serializes every frame sent on one connection.

    Server and client share one id sequence: a client frame must carry the id
    right after the last frame the server sent, pushes included.
    """

    def __init__(self, websocket: ServerConnection, loop: asyncio.AbstractEventLoop) -> None:
        self._websocket = websocket
        self._loop = loop
        self._lock = asyncio.Lock()
        self.last_message_id = 0

    @property
    def expected_id(self) -> int:
        return self.last_message_id + 1

    async def send(self, *, type_code: int, request_id: int, content: Dict[str, Any]) -> FlowMessage:
        async with self._lock:
            frame = build_status_response(
                message_id=self.last_message_id + 1,
                request_id=request_id,
                type_code=type_code,
                content=content,
            )
            await self._websocket.send(frame.to_json())
            self.last_message_id = frame.message_id
            return frame

    def push(self, type_code: int, payload: Dict[str, Any], request_id: int) -> None:
        """Queue a push from the event loop or from an action's worker thread."""
        coro = self.send(type_code=type_code, request_id=request_id, content=payload)
        try:
            on_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            _watch(self._loop.create_task(coro), "push")
        else:
            _watch(asyncio.run_coroutine_threadsafe(coro, self._loop), "push")


# ================================
# Connection handling
# ================================
async def _admit(websocket: ServerConnection) -> Optional[str]:
    """Return the authenticated username, or close the connection and return None."""
    path = websocket.request.path if websocket.request else ""
    try:
        username = ensure_credentials(path)
    except PermissionError as exc:
        LOGGER.warning("Authentication failed: %s", exc)
        await websocket.close(code=CLOSE_BAD_CREDENTIALS, reason=str(exc))
        return None
    if websocket.subprotocol != SUBPROTOCOL:
        LOGGER.warning("Rejected client without %s subprotocol", SUBPROTOCOL)
        await websocket.close(code=CLOSE_BAD_SUBPROTOCOL, reason=f"Subprotocol '{SUBPROTOCOL}' required")
        return None
    return username


async def _handle_frame(raw: str | bytes, dispatcher: MessageDispatcher, context: RequestContext) -> None:
    try:
        message = FlowMessage.parse(raw, error_code=CODE_UNKNOWN_TYPE)
    except ProtocolError as exc:
        _session_log(logging.ERROR, context, "Protocol violation: %s", exc)
        await dispatcher.send(type_code=exc.error_code, request_id=0, content={"error": str(exc)})
        return

    expected = dispatcher.expected_id
    if message.message_id != expected:
        _session_log(
            logging.WARNING,
            context,
            "Out-of-sequence frame: expected id %s, got %s",
            expected,
            message.message_id,
        )
        await dispatcher.send(
            type_code=CODE_MESSAGE_ID_ERROR,
            request_id=message.message_id,
            content={
                "error": "incorrect message id",
                "expectedId": expected,
                "receivedId": message.message_id,
            },
        )
        return

    follow_up = None
    try:
        reply_type, reply_content, follow_up = route_message(message, context)
    except ProtocolError as exc:
        reply_type, reply_content = exc.error_code, {"error": str(exc)}

    await dispatcher.send(type_code=reply_type, request_id=message.message_id, content=reply_content)
    if follow_up is not None:
        _watch(asyncio.create_task(follow_up), f"follow-up-{context.connection_id}")


async def nodeflow_handler(websocket: ServerConnection) -> None:
    """Serve one client session until it disconnects."""
    username = await _admit(websocket)
    if username is None:
        return

    remote = websocket.remote_address
    connection_id = uuid4().hex[:12]
    context = RequestContext(
        username=username,
        connection_id=connection_id,
        client_ip=str(remote[0]) if isinstance(remote, tuple) and remote else None,
        log_label=f"[conn={connection_id} user={username}]",
    )
    dispatcher = MessageDispatcher(websocket, asyncio.get_running_loop())
    context.status_callback = dispatcher.push
    attach_listeners(context)
    _session_log(logging.INFO, context, "Client connected from %s", remote)

    try:
        async for raw in websocket:
            await _handle_frame(raw, dispatcher, context)
    except ConnectionClosed as exc:
        _session_log(logging.INFO, context, "Client disconnected: %s", exc)
    finally:
        context.detach()
        _session_log(logging.INFO, context, "Session closed")


async def run_server(
    stop_event: asyncio.Event | None = None,
    *,
    host: str = HOST,
    port: int = PORT,
) -> None:
    """Serve until cancelled or until ``stop_event`` is set."""
    LOGGER.info("Starting nodeflow WebSocket server on %s:%s", host, port)
    try:
        async with serve(nodeflow_handler, host, port, subprotocols=[SUBPROTOCOL]):
            if stop_event is None:
                await asyncio.Future()
            else:
                await stop_event.wait()
    except InvalidHandshake as exc:
        LOGGER.error("Failed to start server handshake: %s", exc)
        raise


async def main() -> None:
    await run_server()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        LOGGER.info("Server shutdown requested via keyboard interrupt.")
