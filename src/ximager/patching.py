"""Inject runtime parameters into engine execution graphs.

Graphs are plain ``dict[str, node]`` documents in the engine's API format::

    {"6": {"class_type": "CLIPTextEncode", "inputs": {"text": "..."}, "_meta": {"title": "Prompt"}}}

There is no schema. Target nodes are found structurally (class name plus the
presence of the field being written), and anything that does not have the
expected shape is skipped. Every function returns a patched deep copy and
never raises for malformed nodes.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Collection, Iterator, Mapping, Sequence
from typing import Any

from .models import Dimensions, OverrideSet

TEXT_ENCODER_CLASSES: frozenset[str] = frozenset({"CLIPTextEncode", "PromptNode", "Text"})
IMAGE_LOADER_CLASSES: frozenset[str] = frozenset({"LoadImage", "ImageLoader"})
PRIMITIVE_INT_CLASSES: frozenset[str] = frozenset({"PrimitiveInt"})

WIDTH_TITLE = "Width"
HEIGHT_TITLE = "Height"
DEFAULT_DIMENSION = 512

_NUMERIC_ID_RE = re.compile(r"[0-9]+")

ExecutionGraph = dict[str, Any]


def _iter_nodes(graph: Any, classes: Collection[str]) -> Iterator[tuple[Any, dict[str, Any]]]:
    if not isinstance(graph, Mapping):
        return
    for node_id, node in graph.items():
        if not isinstance(node, dict):
            continue
        if node.get("class_type") in classes:
            yield node_id, node


def _node_title(node: Mapping[str, Any]) -> str | None:
    meta = node.get("_meta")
    if not isinstance(meta, Mapping):
        return None
    title = meta.get("title")
    return title if isinstance(title, str) else None


def _has_input(node: Mapping[str, Any], field_name: str) -> bool:
    inputs = node.get("inputs")
    return isinstance(inputs, dict) and field_name in inputs


def _clone(graph: Any) -> Any:
    return copy.deepcopy(graph)


def _node_sort_key(node_id: Any) -> tuple[int, int, str]:
    key = str(node_id)
    if _NUMERIC_ID_RE.fullmatch(key):
        return (0, int(key), "")
    return (1, 0, key)


def asset_node_order(graph: Any, *, classes: Collection[str] = IMAGE_LOADER_CLASSES) -> list[Any]:
    """Image-loader node ids that expose ``inputs.image``, in slot order.

    Numeric ids sort numerically and come first; the rest sort lexicographically.
    """
    node_ids = [node_id for node_id, node in _iter_nodes(graph, classes) if _has_input(node, "image")]
    return sorted(node_ids, key=_node_sort_key)


def apply_prompt(graph: Any, text: str, *, classes: Collection[str] = TEXT_ENCODER_CLASSES) -> Any:
    """Overwrite ``inputs.text`` on every text-encoder node that has it."""
    patched = _clone(graph)
    for _, node in _iter_nodes(patched, classes):
        if _has_input(node, "text"):
            node["inputs"]["text"] = text
    return patched


def apply_assets(
    graph: Any,
    refs: Sequence[str | None],
    *,
    classes: Collection[str] = IMAGE_LOADER_CLASSES,
) -> Any:
    """Assign ``refs[i]`` to the i-th image-loader node in slot order.

    Surplus refs are ignored, surplus nodes keep their current image, and a
    ``None`` entry leaves its node untouched.
    """
    patched = _clone(graph)
    for node_id, ref in zip(asset_node_order(patched, classes=classes), refs):
        if ref is None:
            continue
        patched[node_id]["inputs"]["image"] = ref
    return patched


def apply_asset(graph: Any, ref: str, *, classes: Collection[str] = IMAGE_LOADER_CLASSES) -> Any:
    """Legacy single-image form: the same ref goes into every image-loader node."""
    patched = _clone(graph)
    for _, node in _iter_nodes(patched, classes):
        if _has_input(node, "image"):
            node["inputs"]["image"] = ref
    return patched


def apply_dimensions(
    graph: Any,
    dimensions: Dimensions,
    *,
    classes: Collection[str] = PRIMITIVE_INT_CLASSES,
) -> Any:
    """Write width/height into primitive nodes titled exactly "Width" / "Height"."""
    patched = _clone(graph)
    overrides = {WIDTH_TITLE: dimensions.width, HEIGHT_TITLE: dimensions.height}
    for _, node in _iter_nodes(patched, classes):
        value = overrides.get(_node_title(node) or "")
        if value is None:
            continue
        inputs = node.setdefault("inputs", {})
        if not isinstance(inputs, dict):
            continue
        inputs["value"] = value
    return patched


def extract_dimensions(graph: Any, *, classes: Collection[str] = PRIMITIVE_INT_CLASSES) -> Dimensions:
    found = {WIDTH_TITLE: DEFAULT_DIMENSION, HEIGHT_TITLE: DEFAULT_DIMENSION}
    for _, node in _iter_nodes(graph, classes):
        title = _node_title(node)
        if title not in found:
            continue
        inputs = node.get("inputs")
        value = inputs.get("value") if isinstance(inputs, Mapping) else None
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            found[title] = value
        elif isinstance(value, float) and value.is_integer():
            found[title] = int(value)
    return Dimensions(width=found[WIDTH_TITLE], height=found[HEIGHT_TITLE])


def count_asset_slots(graph: Any, *, classes: Collection[str] = IMAGE_LOADER_CLASSES) -> int:
    """Number of image-loader nodes, matched by class alone. 0 when there are none."""
    return sum(1 for _ in _iter_nodes(graph, classes))


def required_slot_count(graph: Any, *, classes: Collection[str] = IMAGE_LOADER_CLASSES) -> int:
    """Slots to collect before submission. A graph always offers at least one."""
    return max(1, count_asset_slots(graph, classes=classes))


def apply_overrides(graph: Any, overrides: OverrideSet) -> Any:
    """Apply each present field of ``overrides``; absent fields leave nodes alone."""
    patched = _clone(graph)
    if overrides.asset_refs is not None:
        patched = apply_assets(patched, overrides.asset_refs)
    if overrides.prompt_text is not None:
        patched = apply_prompt(patched, overrides.prompt_text)
    if overrides.dimensions is not None:
        patched = apply_dimensions(patched, overrides.dimensions)
    return patched
