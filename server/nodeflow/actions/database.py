"""Database node action: run one SQL query against SQLite, PostgreSQL or Oracle.

Resolved parameters are bound as named query parameters (``:name`` for SQLite
and Oracle, ``%(name)s`` for PostgreSQL); only the names the query actually
uses are passed to the driver.
"""

from __future__ import annotations

import json
import re
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .. import config
from ..dag.errors import ActionFailed
from ..dag.models import (
    ColumnSelection,
    DatabaseNodeConfig,
    OracleConnection,
    PostgresConnection,
    PostProcessScript,
    SqliteConnection,
)
from .base import ActionContext

DATABASE_OUTPUT_FIELDS = ("success", "rowCount", "data", "truncated")

Rows = List[Dict[str, Any]]
# (rows, truncated, affected) for a single statement
QueryResult = Tuple[Rows, bool, int]

_COLON_PARAM = re.compile(r"(?<!:):([A-Za-z_]\w*)")
_PYFORMAT_PARAM = re.compile(r"%\(([A-Za-z_]\w*)\)s")


def _bind_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def bind_params(query: str, params: Dict[str, Any], pattern: re.Pattern) -> Dict[str, Any]:
    names = set(pattern.findall(query))
    return {key: _bind_value(value) for key, value in params.items() if key in names}


def _fetch(cursor: Any, max_rows: Optional[int]) -> Tuple[List[Any], bool]:
    if max_rows is None or max_rows <= 0:
        return cursor.fetchall(), False
    rows = cursor.fetchmany(max_rows + 1)
    return rows[:max_rows], len(rows) > max_rows


# ================================
# Engines
# ================================
def _query_sqlite(conn_cfg: SqliteConnection, cfg: DatabaseNodeConfig, params: Dict[str, Any]) -> QueryResult:
    if conn_cfg.file_path != ":memory:" and not Path(conn_cfg.file_path).is_file():
        raise ActionFailed(f"SQLite database not found: {conn_cfg.file_path}")
    timeout = cfg.timeout or config.DEFAULT_DB_TIMEOUT
    try:
        conn = sqlite3.connect(conn_cfg.file_path, timeout=timeout)
    except sqlite3.Error as exc:
        raise ActionFailed(f"Failed to open SQLite database: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        cursor = conn.execute(cfg.query, bind_params(cfg.query, params, _COLON_PARAM))
        if cursor.description is None:
            conn.commit()
            return [], False, max(cursor.rowcount, 0)
        rows, truncated = _fetch(cursor, cfg.max_rows)
        return [dict(row) for row in rows], truncated, len(rows)
    except sqlite3.Error as exc:
        raise ActionFailed(f"Query failed: {exc}") from exc
    finally:
        conn.close()


def _query_postgres(conn_cfg: PostgresConnection, cfg: DatabaseNodeConfig, params: Dict[str, Any]) -> QueryResult:
    try:
        import psycopg
        from psycopg.rows import dict_row
    except ImportError:
        raise ActionFailed("PostgreSQL support requires the 'psycopg' package") from None

    timeout = cfg.timeout or config.DEFAULT_DB_TIMEOUT
    options = f"-c search_path={conn_cfg.search_path}" if conn_cfg.search_path else None
    try:
        with psycopg.connect(
            host=conn_cfg.host,
            port=conn_cfg.port,
            dbname=conn_cfg.database,
            user=conn_cfg.username,
            password=conn_cfg.password,
            sslmode="require" if conn_cfg.ssl_mode else "prefer",
            connect_timeout=int(timeout),
            options=options,
            row_factory=dict_row,
        ) as conn:
            with conn.cursor() as cursor:
                bound = bind_params(cfg.query, params, _PYFORMAT_PARAM)
                cursor.execute(cfg.query, bound or None)
                if cursor.description is None:
                    conn.commit()
                    return [], False, max(cursor.rowcount, 0)
                rows, truncated = _fetch(cursor, cfg.max_rows)
                return [dict(row) for row in rows], truncated, len(rows)
    except psycopg.Error as exc:
        raise ActionFailed(f"Query failed: {exc}") from exc


def _query_oracle(conn_cfg: OracleConnection, cfg: DatabaseNodeConfig, params: Dict[str, Any]) -> QueryResult:
    try:
        import oracledb
    except ImportError:
        raise ActionFailed("Oracle support requires the 'oracledb' package") from None

    timeout = cfg.timeout or config.DEFAULT_DB_TIMEOUT
    try:
        with oracledb.connect(
            user=conn_cfg.username,
            password=conn_cfg.password,
            dsn=conn_cfg.dsn,
        ) as conn:
            conn.call_timeout = int(timeout * 1000)
            with conn.cursor() as cursor:
                cursor.execute(cfg.query, bind_params(cfg.query, params, _COLON_PARAM))
                if cursor.description is None:
                    conn.commit()
                    return [], False, max(cursor.rowcount, 0)
                columns = [d[0] for d in cursor.description]
                rows, truncated = _fetch(cursor, cfg.max_rows)
                return [dict(zip(columns, row)) for row in rows], truncated, len(rows)
    except oracledb.Error as exc:
        raise ActionFailed(f"Query failed: {exc}") from exc


ENGINES: Dict[str, Callable[[Any, DatabaseNodeConfig, Dict[str, Any]], QueryResult]] = {
    "sqlite": _query_sqlite,
    "postgresql": _query_postgres,
    "oracle": _query_oracle,
}


# ================================
# Shaping the result
# ================================
def select_columns(rows: Rows, columns: List[ColumnSelection]) -> Rows:
    chosen = [c for c in columns if c.enabled]
    if not chosen:
        return rows
    return [{(c.alias or c.name): row.get(c.name) for c in chosen} for row in rows]


def apply_post_process(rows: Rows, script: PostProcessScript, ctx: ActionContext) -> Any:
    """Run ``process(results)`` from the user script; on failure keep ``rows``."""
    namespace: Dict[str, Any] = {}
    ctx.log("info", "Running post-process script...")
    try:
        exec(compile(script.code, f"<post-process {ctx.node_id}>", "exec"), namespace)
        process = namespace.get("process")
        processed = process(rows) if callable(process) else rows
    except KeyboardInterrupt:
        raise
    except BaseException as exc:
        ctx.log("error", f"Post-process script error: {exc.__class__.__name__}: {exc}")
        return rows
    ctx.log("info", "Post-processing completed")
    return processed


def run_query(cfg: DatabaseNodeConfig, params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    if not cfg.query.strip():
        raise ActionFailed("Query is empty")
    engine = ENGINES[cfg.connection.type]
    ctx.log("info", f"Executing {cfg.connection.type} query")
    rows, truncated, affected = engine(cfg.connection, cfg, params)

    data: Any = select_columns(rows, cfg.columns)
    if cfg.post_process is not None and cfg.post_process.code.strip():
        data = apply_post_process(data, cfg.post_process, ctx)

    row_count = len(data) if isinstance(data, list) else affected
    if truncated:
        ctx.log("warning", f"Result truncated to {cfg.max_rows} rows")
    return {
        "success": True,
        "rowCount": row_count,
        "data": data,
        "truncated": truncated,
    }
