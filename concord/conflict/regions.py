"""
Structural region helpers.

Regions are slash-separated paths into an element's structured content
(``/cells/A1``, ``/body/2``). Two regions overlap when they are equal or one
is an ancestor of the other. Payloads without region hints touch the root.
"""

import copy
from typing import Any

from concord.core.state import EditPayload

ROOT_REGION = "/"


def normalize_region(path: str) -> str:
    """Canonical form: leading slash, no empty segments, no trailing slash."""
    segments = [s for s in str(path).strip().split("/") if s]
    if not segments:
        return ROOT_REGION
    return "/" + "/".join(segments)


def _segments(region: str) -> list[str]:
    return [s for s in region.split("/") if s]


def touched_regions(payload: EditPayload) -> frozenset[str]:
    """Regions a payload writes to."""
    if payload.delete or payload.regions is None:
        return frozenset({ROOT_REGION})
    return frozenset(normalize_region(r) for r in payload.regions)


def regions_overlap(a: str, b: str) -> bool:
    seg_a, seg_b = _segments(a), _segments(b)
    shortest = min(len(seg_a), len(seg_b))
    return seg_a[:shortest] == seg_b[:shortest]


def region_sets_overlap(a: frozenset[str], b: frozenset[str]) -> bool:
    return any(regions_overlap(x, y) for x in a for y in b)


def _set_path(node: Any, segments: list[str], value: Any) -> Any:
    if not segments:
        return copy.deepcopy(value)

    head, rest = segments[0], segments[1:]

    if isinstance(node, list) and head.isdigit():
        index = int(head)
        if index < len(node):
            node[index] = _set_path(node[index], rest, value)
        elif index == len(node):
            node.append(_set_path(None, rest, value))
        else:
            raise ValueError(f"List index {index} out of range for region segment")
        return node

    if not isinstance(node, dict):
        node = {}
    node[head] = _set_path(node.get(head), rest, value)
    return node


def apply_payload(content: Any, payload: EditPayload) -> tuple[Any, bool]:
    """
    Apply a payload to element content.

    Returns:
        Tuple of (new content, deleted flag)
    """
    if payload.delete:
        return None, True

    if payload.regions is None:
        return copy.deepcopy(payload.content), False

    result = copy.deepcopy(content)
    for region in sorted(payload.regions, key=normalize_region):
        result = _set_path(result, _segments(normalize_region(region)), payload.regions[region])
    return result, False
