"""
Extraction and reassembly of translatable strings in structured-text trees.

Nodes are plain dicts with a ``type`` (the DAST shape the CMS returns). Strings
stored under a node's ``value`` key are the translatable leaves; the walk only
descends through ``children``, so attributes such as link ``meta`` pass through
untouched.
"""
import copy
from enum import Enum
from typing import Any, Dict, Iterator, List

TYPE_KEY = 'type'
TEXT_KEY = 'value'
CHILDREN_KEY = 'children'
ID_KEY = 'id'
ORIGINAL_INDEX_KEY = 'originalIndex'
BLOCK_TYPE = 'block'


class NodeKind(Enum):
    TEXT = 'text'
    BLOCK = 'block'
    OTHER = 'other'


def classify_node(node: Any) -> NodeKind:
    """
    Classify a top-level structured-text node.

    Args:
        node: A node dict (anything else is treated as opaque).

    Returns:
        NodeKind.BLOCK for embedded block nodes, NodeKind.TEXT for nodes with a
        string value or children to walk, NodeKind.OTHER otherwise.
    """
    if not isinstance(node, dict):
        return NodeKind.OTHER
    if node.get(TYPE_KEY) == BLOCK_TYPE:
        return NodeKind.BLOCK
    if isinstance(node.get(TEXT_KEY), str) or isinstance(node.get(CHILDREN_KEY), list):
        return NodeKind.TEXT
    return NodeKind.OTHER


def _is_node(obj: Any) -> bool:
    return isinstance(obj, dict) and isinstance(obj.get(TYPE_KEY), str)


def _iter_text_values(obj: Any) -> Iterator[str]:
    # Only typed nodes are walked, and only through ``children``; must mirror _rebuild.
    if isinstance(obj, list):
        for item in obj:
            yield from _iter_text_values(item)
    elif _is_node(obj):
        if isinstance(obj.get(TEXT_KEY), str):
            yield obj[TEXT_KEY]
        children = obj.get(CHILDREN_KEY)
        if isinstance(children, list):
            yield from _iter_text_values(children)


def extract_text_values(nodes: Any) -> List[str]:
    """
    Collect every translatable string in traversal order.

    Empty strings are kept so positions line up with ``reconstruct_object``.

    Args:
        nodes: A node, or a list of nodes.

    Returns:
        List[str]: The text leaves, depth-first.
    """
    return list(_iter_text_values(nodes))


def _rebuild(obj: Any, values: Iterator[str]) -> Any:
    if isinstance(obj, list):
        return [_rebuild(item, values) for item in obj]
    if not _is_node(obj):
        return copy.deepcopy(obj)

    rebuilt: Dict[str, Any] = {}
    for key, item in obj.items():
        if key == TEXT_KEY and isinstance(item, str):
            try:
                rebuilt[key] = next(values)
            except StopIteration:
                raise ValueError("Not enough translated values to rebuild the structure") from None
        elif key == CHILDREN_KEY and isinstance(item, list):
            rebuilt[key] = _rebuild(item, values)
        else:
            rebuilt[key] = copy.deepcopy(item)
    return rebuilt


def reconstruct_object(nodes: Any, translated_values: List[str]) -> Any:
    """
    Rebuild ``nodes`` with the k-th text leaf replaced by ``translated_values[k]``.

    The input is not mutated. Callers must reconcile lengths first
    (see ``batching.ensure_array_lengths_match``); surplus values are ignored.

    Raises:
        ValueError: If fewer values than text leaves are supplied.
    """
    return _rebuild(nodes, iter(translated_values))


def insert_object_at_index(nodes: List[Any], node: Any, index: int) -> List[Any]:
    """Return a new list with ``node`` inserted at ``index`` (clamped to the list bounds)."""
    index = max(0, min(index, len(nodes)))
    return nodes[:index] + [node] + nodes[index:]


def remove_ids(obj: Any) -> Any:
    """
    Deep copy of ``obj`` with the ``id`` key removed from every typed node, at any depth.

    Untyped dicts (such as link ``meta`` entries ``{"id": "rel", "value": "nofollow"}``)
    keep their ``id``.
    """
    if isinstance(obj, list):
        return [remove_ids(item) for item in obj]
    if isinstance(obj, dict):
        typed = _is_node(obj)
        return {key: remove_ids(item) for key, item in obj.items() if not (typed and key == ID_KEY)}
    return copy.deepcopy(obj)


def strip_original_index(nodes: List[Any]) -> List[Any]:
    """Drop the temporary ``originalIndex`` marker from top-level nodes."""
    return [
        {key: item for key, item in node.items() if key != ORIGINAL_INDEX_KEY}
        if isinstance(node, dict) else node
        for node in nodes
    ]
