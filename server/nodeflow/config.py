"""Configuration constants and helpers for the nodeflow server."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List

SUBPROTOCOL = "nodeflow"
USERNAME = "admin"
PASSWORD = "admin"
HOST = "0.0.0.0"
PORT = 8765
API_HOST = "0.0.0.0"
API_PORT = 8000

BASE_DIR = Path(__file__).resolve().parent.parent
OUTPUTS_DIR = BASE_DIR / "outputs"

# Node action defaults (seconds / rows)
DEFAULT_API_TIMEOUT = 30.0
DEFAULT_DB_TIMEOUT = 30.0
DEFAULT_FILE_TIMEOUT = 120.0
DEFAULT_MAX_ROWS = 1000

# Interpreter command per script extension; script, request and response paths are appended.
FILE_INTERPRETERS: Dict[str, List[str]] = {
    "py": [sys.executable],
    "js": ["node"],
    "mjs": ["node"],
    "ts": ["npx", "ts-node"],
    "sh": ["sh"],
}


def default_engine_settings() -> Dict[str, Any]:
    return {
        "include_transitive_references": True,
        "full_rerun": False,
    }
