"""
Marker detection in ADF (Atlassian Document Format) trees.

A false "not found" from contains_marker leads to live data being
quarantined, so every known encoding of a marker id is checked.
"""

from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

DEFAULT_MAX_DEPTH = 100

MARKER_NODE_TYPES = ("extension", "bodiedExtension")

EMBED_EXTENSION_KEYS = ("blueprint-standard-embed", "smart-excerpt-include")
SOURCE_EXTENSION_KEYS = ("blueprint-standard-source", "smart-excerpt")

# Lookup chain for a marker's local id, tried in order
LOCAL_ID_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("attrs", "localId"),
    ("attrs", "parameters", "localId"),
    ("attrs", "parameters", "macroParams", "localId"),
    ("attrs", "parameters", "macroParams", "localId", "value"),
)

# Lookup chain for the Source id carried by an Embed or Source marker
SOURCE_ID_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("attrs", "parameters", "guestParams", "excerptId"),
    ("attrs", "parameters", "guestParams", "sourceId"),
    ("attrs", "parameters", "excerptId"),
    ("attrs", "parameters", "sourceId"),
    ("attrs", "parameters", "macroParams", "excerptId", "value"),
    ("attrs", "parameters", "macroParams", "sourceId", "value"),
)

INJECTED_CONTENT_PARAM = "blueprint-local"


def dig(node: Any, path: Tuple[str, ...]) -> Any:
    current = node
    for part in path:
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def is_valid_id(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def node_matches_local_id(node: Dict[str, Any], target_id: str) -> bool:
    return any(dig(node, path) == target_id for path in LOCAL_ID_PATHS)


def first_string(node: Dict[str, Any], paths: Tuple[Tuple[str, ...], ...]) -> Optional[str]:
    for path in paths:
        value = dig(node, path)
        if is_valid_id(value):
            return value
    return None


def is_marker_node(node: Any) -> bool:
    return isinstance(node, dict) and node.get("type") in MARKER_NODE_TYPES


def _extension_key(node: Dict[str, Any]) -> str:
    key = dig(node, ("attrs", "extensionKey"))
    return key if isinstance(key, str) else ""


def is_embed_marker(node: Any) -> bool:
    if not is_marker_node(node):
        return False
    key = _extension_key(node)
    return any(name in key for name in EMBED_EXTENSION_KEYS)


def is_source_marker(node: Any) -> bool:
    if not is_marker_node(node) or is_embed_marker(node):
        return False
    key = _extension_key(node)
    return any(name in key for name in SOURCE_EXTENSION_KEYS)


def contains_marker(tree: Any, target_id: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> bool:
    """Return True if a marker node carrying target_id exists anywhere in tree.

    Depth-first over ``content`` arrays. Branches deeper than max_depth and
    nodes already on the current path count as "not found". Malformed input
    and invalid ids return False instead of raising.
    """
    if not is_valid_id(target_id):
        return False
    return _search(tree, target_id, 0, max_depth, set())


def _search(node: Any, target_id: str, depth: int, max_depth: int, on_path: Set[int]) -> bool:
    if depth > max_depth or not isinstance(node, dict):
        return False

    node_ref = id(node)
    if node_ref in on_path:
        return False
    on_path.add(node_ref)

    try:
        if is_marker_node(node) and node_matches_local_id(node, target_id):
            return True

        children = node.get("content")
        if isinstance(children, list):
            for child in children:
                if _search(child, target_id, depth + 1, max_depth, on_path):
                    return True
        return False
    finally:
        # Backtrack so the same node reached through another path is checked again
        on_path.discard(node_ref)


def iter_marker_nodes(tree: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> Iterator[Dict[str, Any]]:
    """Yield every marker node in document order, with the same depth and cycle limits."""
    yield from _walk(tree, 0, max_depth, set())


def _walk(node: Any, depth: int, max_depth: int, on_path: Set[int]) -> Iterator[Dict[str, Any]]:
    if depth > max_depth or not isinstance(node, dict):
        return
    node_ref = id(node)
    if node_ref in on_path:
        return
    on_path.add(node_ref)
    try:
        if is_marker_node(node):
            yield node
        children = node.get("content")
        if isinstance(children, list):
            for child in children:
                yield from _walk(child, depth + 1, max_depth, on_path)
    finally:
        on_path.discard(node_ref)


def find_embed_markers(tree: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> List[Dict[str, Optional[str]]]:
    """Embed placements on a page as ``{"localId", "sourceId"}``, first occurrence wins."""
    found: Dict[str, Dict[str, Optional[str]]] = {}
    for node in iter_marker_nodes(tree, max_depth):
        if not is_embed_marker(node):
            continue
        local_id = first_string(node, LOCAL_ID_PATHS)
        if local_id and local_id not in found:
            found[local_id] = {"localId": local_id, "sourceId": first_string(node, SOURCE_ID_PATHS)}
    return list(found.values())


def find_source_markers(tree: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> List[str]:
    """Distinct Source ids whose Source macro sits on the page."""
    source_ids: List[str] = []
    for node in iter_marker_nodes(tree, max_depth):
        if not is_source_marker(node):
            continue
        source_id = first_string(node, SOURCE_ID_PATHS)
        if source_id and source_id not in source_ids:
            source_ids.append(source_id)
    return source_ids


def extract_injected_content(
    tree: Any, local_id: str, max_depth: int = DEFAULT_MAX_DEPTH
) -> Optional[List[Any]]:
    """Return the body of the section injected for an Embed, or None.

    The section is a bodiedExtension whose parameters carry
    ``blueprint-local`` equal to local_id and whose content is non-empty.
    """
    if not is_valid_id(local_id):
        return None
    for node in iter_marker_nodes(tree, max_depth):
        if node.get("type") != "bodiedExtension":
            continue
        marker = dig(node, ("attrs", "parameters", INJECTED_CONTENT_PARAM))
        if marker is None:
            marker = dig(node, ("attrs", "parameters", "macroParams", INJECTED_CONTENT_PARAM, "value"))
        if marker != local_id:
            continue
        content = node.get("content")
        if isinstance(content, list) and content:
            return content
    return None
