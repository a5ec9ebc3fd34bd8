"""API node action: one HTTP request through ``requests``."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..dag.errors import ActionFailed
from ..dag.models import ApiNodeConfig, KeyValue
from .base import ActionContext

API_OUTPUT_FIELDS = ("status", "statusText", "headers", "data")

BODYLESS_METHODS = {"GET", "HEAD", "OPTIONS"}


def _enabled(items: List[KeyValue]) -> Dict[str, str]:
    return {item.key: item.value for item in items if item.enabled and item.key}


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def build_request(cfg: ApiNodeConfig, params: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a node configuration plus resolved parameters into ``requests`` kwargs."""
    headers = _enabled(cfg.headers)
    query: Dict[str, Any] = _enabled(cfg.query_params)
    auth: Optional[Tuple[str, str]] = None

    if cfg.auth.type == "bearer" and cfg.auth.token:
        headers["Authorization"] = f"Bearer {cfg.auth.token}"
    elif cfg.auth.type == "basic" and cfg.auth.username and cfg.auth.password is not None:
        auth = (cfg.auth.username, cfg.auth.password)
    elif cfg.auth.type == "api-key" and cfg.auth.api_key:
        headers[cfg.auth.api_key_header] = cfg.auth.api_key
    headers.setdefault("Accept", "application/json")

    kwargs: Dict[str, Any] = {
        "method": cfg.method,
        "url": cfg.url,
        "headers": headers,
        "timeout": cfg.timeout,
    }
    if auth is not None:
        kwargs["auth"] = auth

    carries_body = cfg.method not in BODYLESS_METHODS
    body = cfg.body
    if carries_body and body.type == "json" and body.raw:
        headers.setdefault("Content-Type", "application/json")
        kwargs["data"] = body.raw
    elif carries_body and body.type == "raw" and body.raw:
        kwargs["data"] = body.raw
    elif carries_body and body.type == "x-www-form-urlencoded":
        kwargs["data"] = _enabled(body.items)
    elif carries_body and body.type == "form-data":
        kwargs["files"] = {key: (None, value) for key, value in _enabled(body.items).items()}
    elif carries_body and params:
        kwargs["json"] = params
        params = {}

    # Parameters not consumed as a body travel in the query string.
    for key, value in params.items():
        query.setdefault(key, _stringify(value))
    if query:
        kwargs["params"] = query
    return kwargs


def decode_body(response: requests.Response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def call_api(cfg: ApiNodeConfig, params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    kwargs = build_request(cfg, params)
    ctx.log("info", f"Sending {cfg.method} request to {cfg.url}")
    try:
        response = requests.request(**kwargs)
    except requests.Timeout:
        raise ActionFailed(f"Request to {cfg.url} timed out after {cfg.timeout:g}s") from None
    except requests.RequestException as exc:
        raise ActionFailed(str(exc)) from exc

    status_text = response.reason or "Unknown"
    ctx.log("info", f"Response: {response.status_code} {status_text}")
    if not 200 <= response.status_code < 300:
        raise ActionFailed(f"HTTP {response.status_code}: {status_text}")
    return {
        "status": response.status_code,
        "statusText": status_text,
        "headers": dict(response.headers),
        "data": decode_body(response),
    }
