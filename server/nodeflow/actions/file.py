"""File node action: run a local script with the resolved parameters.

The parameters are written to ``<OUTPUTS_DIR>/<run_id>/<node>.json`` and the
script is invoked as ``<interpreter> <script> <request.json> <response.json>``.
A script may write its result to the response path; otherwise its stdout is
taken as the result (parsed as JSON when possible).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from .. import config
from ..dag.errors import ActionFailed
from ..dag.models import FileNodeConfig
from .base import ActionContext

FILE_OUTPUT_FIELDS = ("result", "stdout", "stderr", "exitCode")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name).strip("._") or "node"


def interpreter_for(cfg: FileNodeConfig) -> List[str]:
    if cfg.interpreter:
        return list(cfg.interpreter)
    try:
        return list(config.FILE_INTERPRETERS[cfg.file_extension])
    except KeyError:
        raise ActionFailed(
            f"No interpreter configured for '.{cfg.file_extension}' files ({cfg.file_path})"
        ) from None


def write_request(ctx: ActionContext, params: Dict[str, Any]) -> Path:
    run_dir = Path(config.OUTPUTS_DIR) / _safe_name(ctx.run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    request_path = run_dir / f"{_safe_name(ctx.node_id)}.json"
    request_path.write_text(json.dumps(params, indent=2, default=str), encoding="utf-8")
    return request_path


def parse_result(text: str) -> Any:
    """Decode script output: whole text as JSON, then its last line, then raw text."""
    stripped = text.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass
    last_line = stripped.splitlines()[-1]
    try:
        return json.loads(last_line)
    except json.JSONDecodeError:
        return stripped


_READ_CHUNK = 65536


async def _pump(stream: Optional[asyncio.StreamReader], lines: List[str], log_type: str, ctx: ActionContext) -> None:
    """Forward a pipe line by line; lines may be longer than the reader's buffer limit."""
    if stream is None:
        return

    def _emit(raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        lines.append(line)
        ctx.log(log_type, line)

    pending = b""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            _emit(raw)
    if pending:
        _emit(pending)


async def _reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


async def run_file(cfg: FileNodeConfig, params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    script = Path(cfg.file_path)
    if not script.is_file():
        raise ActionFailed(f"File not found: {cfg.file_path}")

    command = interpreter_for(cfg)
    request_path = write_request(ctx, params)
    response_path = request_path.with_name(f"{request_path.stem}_save.json")
    if response_path.exists():
        response_path.unlink()
    command += [str(script), str(request_path), str(response_path)]
    cwd = cfg.project_path or str(script.parent)
    timeout = cfg.timeout or config.DEFAULT_FILE_TIMEOUT

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except FileNotFoundError:
        raise ActionFailed(f"Failed to execute process: '{command[0]}' was not found") from None

    stdout_lines: List[str] = []
    stderr_lines: List[str] = []
    try:
        await asyncio.wait_for(
            asyncio.gather(
                _pump(proc.stdout, stdout_lines, "stdout", ctx),
                _pump(proc.stderr, stderr_lines, "stderr", ctx),
                proc.wait(),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        await _reap(proc)
        raise ActionFailed(f"Process timed out after {timeout:g}s") from None
    except BaseException:
        await _reap(proc)
        raise

    stdout = "\n".join(stdout_lines)
    stderr = "\n".join(stderr_lines)
    if proc.returncode != 0:
        detail = stderr.strip() or f"Process exited with code {proc.returncode}"
        raise ActionFailed(detail)

    if response_path.is_file():
        result = parse_result(response_path.read_text(encoding="utf-8"))
    else:
        result = parse_result(stdout)
    return {
        "result": result,
        "stdout": stdout,
        "stderr": stderr,
        "exitCode": proc.returncode,
    }
