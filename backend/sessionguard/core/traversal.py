"""Cycle-safe recursive traversal over nested payloads.

Payloads are treated as a tagged union of mapping, sequence and scalar
nodes. ``transform_leaves`` rebuilds the structure, passing every scalar
leaf through a callback together with the nearest enclosing mapping key.
Sequence elements inherit the key of the sequence itself, so a list under
``"emails"`` has each element visited with key ``"emails"``.
"""

from collections.abc import Callable, Mapping
from typing import Any

MAX_DEPTH = 32
CIRCULAR_MARKER = "[CIRCULAR]"
MAX_DEPTH_MARKER = "[MAX_DEPTH]"

LeafTransform = Callable[[str | None, Any], Any]
LeafVisitor = Callable[[str | None, Any], None]


def is_mapping(value: Any) -> bool:
    return isinstance(value, Mapping)


def is_sequence(value: Any) -> bool:
    # str/bytes are scalars here
    return isinstance(value, (list, tuple))


def transform_leaves(
    value: Any,
    transform: LeafTransform,
    key: str | None = None,
    max_depth: int = MAX_DEPTH,
) -> Any:
    """Return a copy of ``value`` with every scalar leaf replaced by ``transform(key, leaf)``.

    Mappings keep their keys and become plain dicts, lists stay lists and
    tuples stay tuples. A container that appears inside itself is replaced
    by ``CIRCULAR_MARKER``; nesting beyond ``max_depth`` by ``MAX_DEPTH_MARKER``.
    """
    return _transform(value, transform, key, 0, set(), max_depth)


def _transform(
    value: Any,
    transform: LeafTransform,
    key: str | None,
    depth: int,
    ancestors: set[int],
    max_depth: int,
) -> Any:
    if not (is_mapping(value) or is_sequence(value)):
        return transform(key, value)

    if depth >= max_depth:
        return MAX_DEPTH_MARKER
    node_id = id(value)
    if node_id in ancestors:
        return CIRCULAR_MARKER

    ancestors.add(node_id)
    try:
        if is_mapping(value):
            return {
                k: _transform(v, transform, str(k), depth + 1, ancestors, max_depth)
                for k, v in value.items()
            }
        items = [_transform(v, transform, key, depth + 1, ancestors, max_depth) for v in value]
        return tuple(items) if isinstance(value, tuple) else items
    finally:
        ancestors.discard(node_id)


def walk_leaves(
    value: Any,
    visit: LeafVisitor,
    key: str | None = None,
    max_depth: int = MAX_DEPTH,
) -> None:
    """Call ``visit(key, leaf)`` for every scalar leaf."""

    def _visit(k: str | None, leaf: Any) -> Any:
        visit(k, leaf)
        return leaf

    _transform(value, _visit, key, 0, set(), max_depth)
