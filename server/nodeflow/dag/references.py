"""Reference Resolver: which upstream outputs a node may bind to, and their values.

Reference paths are dot-separated segments into the upstream node's output.
A segment may carry list indexes (``data[0].name``) and purely numeric
segments index sequences as well (``data.0.name``).  Anything else that does
not land on a value raises :class:`FieldNotFound`.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, Union

from .errors import FieldNotFound, InvalidReference, UpstreamNotReady
from .graph import GraphStore
from .models import BoundParameter, NodeReference, NodeStatus
from .results import ResultStore

PathToken = Union[str, int]

_SEGMENT = re.compile(r"^(?P<name>[^\[\]]*)(?P<indexes>(?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


# ================================
# Literal coercion
# ================================
def _parse_number(text: str) -> Any:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def coerce_literal(value: Any, param_type: str) -> Any:
    """Coerce a literal to its declared type.

    Only strings are coerced.  A string that cannot be parsed for its type is
    returned unchanged instead of failing.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    if param_type == "number":
        return _parse_number(text) if text else None
    if param_type == "boolean":
        lowered = text.lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS or not lowered:
            return False
        return value
    if param_type in ("object", "array"):
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return value
    if text[:1] in ("{", "[") and text[-1:] in ("}", "]"):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return value
    return value


# ================================
# Path dereferencing
# ================================
def parse_path(path: str) -> List[PathToken]:
    """Split ``a.b[0].1`` into ``["a", "b", 0, "1"]``; raise ``ValueError`` if malformed."""
    if not path or not path.strip():
        raise ValueError("empty path")
    tokens: List[PathToken] = []
    for segment in path.split("."):
        match = _SEGMENT.match(segment)
        if match is None:
            raise ValueError(f"malformed segment {segment!r}")
        name = match.group("name")
        indexes = [int(i) for i in _INDEX.findall(match.group("indexes"))]
        if not name and not indexes:
            raise ValueError("empty segment")
        if name:
            tokens.append(name)
        tokens.extend(indexes)
    return tokens


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def extract_path(value: Any, path: str, *, node_id: str) -> Any:
    try:
        tokens = parse_path(path)
    except ValueError:
        raise FieldNotFound(node_id, path) from None

    current = value
    for token in tokens:
        if isinstance(token, str) and isinstance(current, Mapping):
            if token not in current:
                raise FieldNotFound(node_id, path)
            current = current[token]
            continue
        if _is_sequence(current):
            if isinstance(token, str):
                if not token.isdigit():
                    raise FieldNotFound(node_id, path)
                token = int(token)
            if token >= len(current):
                raise FieldNotFound(node_id, path)
            current = current[token]
            continue
        raise FieldNotFound(node_id, path)
    return current


# ================================
# Resolver
# ================================
def resolve(param: BoundParameter, results: ResultStore) -> Any:
    """Materialize one parameter. Side-effect free; safe for previews."""
    reference = param.reference
    if reference is None:
        return coerce_literal(param.value, param.type)
    result = results.get(reference.node_id)
    status = result.status if result is not None else NodeStatus.IDLE
    if result is None or status is not NodeStatus.SUCCESS:
        raise UpstreamNotReady(reference.node_id, status.value)
    return extract_path(result.output, reference.field, node_id=reference.node_id)


class ReferenceResolver:
    """Discovers bindable upstream fields and dereferences bound parameters.

    ``output_fields`` maps a node kind to the fields its action declares, so
    references can be offered before anything has run.
    """

    def __init__(self, graph: GraphStore, output_fields: Mapping[str, Sequence[str]]) -> None:
        self.graph = graph
        self.output_fields = {kind: tuple(fields) for kind, fields in output_fields.items()}

    def get_available_references(
        self, node_id: str, include_transitive: bool = True
    ) -> List[NodeReference]:
        if include_transitive:
            upstream = self.graph.get_ancestors(node_id)
        else:
            upstream = self.graph.get_predecessors(node_id)
        references: List[NodeReference] = []
        for node in upstream:
            for field in self.output_fields.get(node.kind.value, ()):
                references.append(
                    NodeReference(
                        node_id=node.id,
                        field=field,
                        node_name=node.name,
                        display_path=f"{node.name} → {field}",
                    )
                )
        return references

    def validate_binding(self, node_id: str, reference: NodeReference) -> None:
        if not self.graph.is_ancestor(reference.node_id, node_id):
            raise InvalidReference(node_id, reference.node_id)

    def validate_parameters(self, node_id: str, params: Iterable[BoundParameter]) -> None:
        for param in params:
            if param.reference is not None:
                self.validate_binding(node_id, param.reference)

    def resolve(self, param: BoundParameter, results: ResultStore) -> Any:
        return resolve(param, results)

    def resolve_all(
        self, params: Iterable[BoundParameter], results: ResultStore
    ) -> Dict[str, Any]:
        return {param.key: resolve(param, results) for param in params}

    def preview(
        self, params: Iterable[BoundParameter], results: ResultStore
    ) -> Dict[str, Tuple[Any, str | None]]:
        """Resolve each parameter for display; failures become messages."""
        previews: Dict[str, Tuple[Any, str | None]] = {}
        for param in params:
            try:
                previews[param.key] = (resolve(param, results), None)
            except (UpstreamNotReady, FieldNotFound) as exc:
                previews[param.key] = (None, str(exc))
        return previews
