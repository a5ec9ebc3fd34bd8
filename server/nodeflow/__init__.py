"""Application package encapsulating the nodeflow engine and server helpers."""

from .config import (
    API_HOST,
    API_PORT,
    HOST,
    OUTPUTS_DIR,
    PASSWORD,
    PORT,
    SUBPROTOCOL,
    USERNAME,
    default_engine_settings,
)
from .context import RequestContext
from .protocol import (
    FlowMessage,
    ProtocolError,
    build_status_response,
    ensure_credentials,
)

__all__ = [
    "API_HOST",
    "API_PORT",
    "HOST",
    "OUTPUTS_DIR",
    "PASSWORD",
    "PORT",
    "SUBPROTOCOL",
    "USERNAME",
    "default_engine_settings",
    "RequestContext",
    "FlowMessage",
    "ProtocolError",
    "build_status_response",
    "ensure_credentials",
]
