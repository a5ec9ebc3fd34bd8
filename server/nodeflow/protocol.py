"""Frame format of the nodeflow WebSocket protocol.

Every frame is ``{"id", "requestId", "type", "content"}`` where ``content`` is
itself a JSON-encoded string holding an object.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping
from urllib.parse import parse_qs, urlparse

from .config import PASSWORD, USERNAME

_HEADER_FIELDS = (("message_id", "id"), ("request_id", "requestId"), ("type_code", "type"))


class ProtocolError(Exception):
    """A frame could not be understood; ``error_code`` is the reply type."""

    def __init__(self, message: str, error_code: int) -> None:
        super().__init__(message)
        self.error_code = error_code


def _decode_json(text: str | bytes, what: str, error_code: int) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"{what} is not valid JSON", error_code) from exc


@dataclass
class FlowMessage:
    message_id: int
    request_id: int
    type_code: int
    content: Dict[str, Any]

    @classmethod
    def parse(cls, raw_payload: str | bytes, *, error_code: int) -> "FlowMessage":
        frame = _decode_json(raw_payload, "Payload", error_code)
        if not isinstance(frame, Mapping):
            raise ProtocolError("Frame must be a JSON object", error_code)

        header: Dict[str, int] = {}
        for attr, key in _HEADER_FIELDS:
            try:
                header[attr] = int(frame[key])
            except (KeyError, TypeError, ValueError) as exc:
                raise ProtocolError(f"Field '{key}' is missing or not an integer", error_code) from exc

        encoded = frame.get("content")
        if not isinstance(encoded, str):
            raise ProtocolError("Field 'content' must be a JSON-encoded string", error_code)
        content = _decode_json(encoded or "{}", "Content", error_code)
        if not isinstance(content, dict):
            raise ProtocolError("Content must encode a JSON object", error_code)
        return cls(content=content, **header)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "requestId": self.request_id,
            "type": self.type_code,
            "content": self.content,
        }

    def to_json(self) -> str:
        frame = self.as_dict()
        frame["content"] = json.dumps(self.content, default=str)
        return json.dumps(frame)


def ensure_credentials(path: str) -> str:
    """Return the username from ``?username=..&password=..`` or raise ``PermissionError``."""
    query = parse_qs(urlparse(path).query)
    username = next(iter(query.get("username", [])), None)
    password = next(iter(query.get("password", [])), None)
    if username != USERNAME or password != PASSWORD:
        raise PermissionError("Invalid username/password pair")
    return username


def build_status_response(
    *,
    message_id: int,
    request_id: int,
    type_code: int,
    content: Dict[str, Any],
) -> FlowMessage:
    return FlowMessage(
        message_id=message_id,
        request_id=request_id,
        type_code=type_code,
        content=content,
    )
