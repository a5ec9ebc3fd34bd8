"""Graph data model: nodes, edges, kind-specific configuration and parameters.

Node configuration is a tagged union keyed by ``kind`` (``file``, ``api``,
``database``); database connections are a second tagged union keyed by the
engine ``type``.  Models accept the camelCase keys produced by the front-end
(``filePath``, ``maxRows``...) as well as their snake_case field names.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..config import DEFAULT_API_TIMEOUT, DEFAULT_MAX_ROWS


class NodeKind(str, Enum):
    """Closed set of node kinds, one action per kind."""

    FILE = "file"
    API = "api"
    DATABASE = "database"


class NodeStatus(str, Enum):
    """Per-node execution status, driven only by the scheduler."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


ParameterType = Literal["string", "number", "boolean", "object", "array"]


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-friendly dict using the front-end (camelCase) keys."""
        return self.model_dump(mode="json", by_alias=True)


# ================================
# Database connection descriptors
# ================================
class SqliteConnection(_Model):
    type: Literal["sqlite"] = "sqlite"
    file_path: str


class PostgresConnection(_Model):
    type: Literal["postgresql"] = "postgresql"
    host: str = "localhost"
    port: int = 5432
    database: str
    username: str
    password: str = ""
    search_path: Optional[str] = Field(default=None, alias="schema")
    ssl_mode: bool = False


class OracleConnection(_Model):
    type: Literal["oracle"] = "oracle"
    host: str = "localhost"
    port: int = 1521
    service_name: Optional[str] = None
    sid: Optional[str] = None
    username: str
    password: str = ""

    @model_validator(mode="after")
    def check_service_or_sid(self) -> "OracleConnection":
        if not self.service_name and not self.sid:
            raise ValueError("Either service_name or sid must be provided for Oracle connection")
        return self

    @property
    def dsn(self) -> str:
        if self.service_name:
            return f"{self.host}:{self.port}/{self.service_name}"
        return f"{self.host}:{self.port}:{self.sid}"


ConnectionDescriptor = Annotated[
    Union[SqliteConnection, PostgresConnection, OracleConnection],
    Field(discriminator="type"),
]


# ================================
# Kind-specific node configuration
# ================================
class KeyValue(_Model):
    key: str
    value: str = ""
    enabled: bool = True


class ApiBody(_Model):
    type: Literal["none", "json", "raw", "x-www-form-urlencoded", "form-data"] = "none"
    raw: Optional[str] = None
    items: List[KeyValue] = Field(default_factory=list)


class ApiAuth(_Model):
    type: Literal["none", "bearer", "basic", "api-key"] = "none"
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: str = "X-API-Key"


class ColumnSelection(_Model):
    name: str
    alias: Optional[str] = None
    enabled: bool = True


class PostProcessScript(_Model):
    """User script defining ``process(results)`` applied to fetched rows."""

    code: str
    language: Literal["python"] = "python"


class FileNodeConfig(_Model):
    kind: Literal["file"] = "file"
    file_path: str
    file_name: str = ""
    file_extension: str = ""
    project_path: Optional[str] = None
    interpreter: Optional[List[str]] = None
    timeout: Optional[float] = None

    @model_validator(mode="after")
    def fill_file_details(self) -> "FileNodeConfig":
        path = Path(self.file_path)
        if not self.file_name:
            self.file_name = path.stem
        if not self.file_extension:
            self.file_extension = path.suffix.lstrip(".")
        self.file_extension = self.file_extension.lower().lstrip(".")
        return self


HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


class ApiNodeConfig(_Model):
    kind: Literal["api"] = "api"
    method: str = "GET"
    url: str
    headers: List[KeyValue] = Field(default_factory=list)
    query_params: List[KeyValue] = Field(default_factory=list)
    body: ApiBody = Field(default_factory=ApiBody)
    auth: ApiAuth = Field(default_factory=ApiAuth)
    timeout: float = DEFAULT_API_TIMEOUT

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        method = v.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {v}")
        return method


class DatabaseNodeConfig(_Model):
    kind: Literal["database"] = "database"
    connection: ConnectionDescriptor
    query: str = ""
    max_rows: Optional[int] = DEFAULT_MAX_ROWS
    timeout: Optional[float] = None
    columns: List[ColumnSelection] = Field(default_factory=list)
    post_process: Optional[PostProcessScript] = None


NodeConfig = Annotated[
    Union[FileNodeConfig, ApiNodeConfig, DatabaseNodeConfig],
    Field(discriminator="kind"),
]


# ================================
# References and bound parameters
# ================================
class NodeReference(_Model):
    """Pointer to one output field of an upstream node.

    ``display_path`` is a label for pickers and is never used for resolution.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    node_id: str
    field: str
    display_path: str = ""
    node_name: str = ""


class BoundParameter(_Model):
    """A node input bound either to a literal value or to a ``NodeReference``."""

    key: str
    type: ParameterType = "string"
    value: Any = None
    reference: Optional[NodeReference] = None

    @model_validator(mode="after")
    def check_single_source(self) -> "BoundParameter":
        if self.reference is not None and self.value is not None:
            raise ValueError(
                f"Parameter '{self.key}' cannot carry both a literal value and a reference"
            )
        return self

    @property
    def is_reference(self) -> bool:
        return self.reference is not None

    def with_literal(self, value: Any) -> "BoundParameter":
        return self.model_copy(update={"value": value, "reference": None})

    def with_reference(self, reference: NodeReference) -> "BoundParameter":
        return self.model_copy(update={"value": None, "reference": reference})


# ================================
# Graph vertices and arcs
# ================================
class Position(_Model):
    x: float = 0.0
    y: float = 0.0


class Node(_Model):
    id: str
    kind: NodeKind
    name: str = ""
    config: NodeConfig
    params: List[BoundParameter] = Field(default_factory=list)
    position: Position = Field(default_factory=Position)

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Each node must have a non-empty string 'id'.")
        return v

    @model_validator(mode="after")
    def validate_node(self) -> "Node":
        if self.config.kind != self.kind.value:
            raise ValueError(
                f"Node '{self.id}' of kind '{self.kind.value}' has a '{self.config.kind}' configuration"
            )
        if not self.name:
            self.name = self.id
        keys = [p.key for p in self.params]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"Node '{self.id}' has duplicate parameter keys: {duplicates}")
        return self

    def param(self, key: str) -> BoundParameter:
        for p in self.params:
            if p.key == key:
                return p
        raise KeyError(key)

    def with_param(self, param: BoundParameter) -> "Node":
        """Return a copy with ``param`` replacing the parameter of the same key."""
        params = [p for p in self.params if p.key != param.key]
        index = next((i for i, p in enumerate(self.params) if p.key == param.key), len(params))
        params.insert(index, param)
        return self.model_copy(update={"params": params})


class Edge(_Model):
    source: str
    target: str
    source_port: Optional[str] = None
    target_port: Optional[str] = None
    id: str = ""

    @model_validator(mode="after")
    def fill_id(self) -> "Edge":
        if not self.source or not self.target:
            raise ValueError("Each edge must include 'source' and 'target'.")
        if not self.id:
            self.id = f"{self.source}-{self.target}"
        return self
