"""
Conversion between the diagram intermediate form and canvas elements.

Rendering is deliberately plain: nodes are laid out in layers by longest
path from the roots, each shape gets a bound text label and edges become
bound arrows.
"""
import copy
import random
from collections import defaultdict
from typing import Any, Optional

from diagram_agent.database import now_ms
from diagram_agent.diagram_models import (
    DiagramEdge,
    DiagramIntermediate,
    DiagramNode,
    ElementTweaks,
)

NODE_WIDTH = 200
NODE_HEIGHT = 80
GAP_MAJOR = 120
GAP_MINOR = 60
FONT_SIZE = 20
ARROW_GAP = 8

SHAPE_TYPES = ("rectangle", "ellipse", "diamond")


def _nonce() -> int:
    return random.randint(1, 2**31 - 1)


def _base_element(element_type: str, element_id: str, x: float, y: float,
                  width: float, height: float) -> dict[str, Any]:
    return {
        "id": element_id,
        "type": element_type,
        "x": x,
        "y": y,
        "width": width,
        "height": height,
        "angle": 0,
        "strokeColor": "#1e1e1e",
        "backgroundColor": "transparent",
        "fillStyle": "solid",
        "strokeWidth": 2,
        "strokeStyle": "solid",
        "roughness": 1,
        "opacity": 100,
        "groupIds": [],
        "frameId": None,
        "roundness": None,
        "seed": _nonce(),
        "version": 1,
        "versionNonce": _nonce(),
        "isDeleted": False,
        "boundElements": [],
        "updated": now_ms(),
        "link": None,
        "locked": False,
    }


def _text_element(element_id: str, text: str, container: dict[str, Any]) -> dict[str, Any]:
    lines = text.split("\n") if text else [""]
    height = FONT_SIZE * 1.25 * len(lines)
    width = min(container["width"] - 10, max(len(line) for line in lines) * FONT_SIZE * 0.6)
    element = _base_element(
        "text",
        element_id,
        container["x"] + (container["width"] - width) / 2,
        container["y"] + (container["height"] - height) / 2,
        width,
        height,
    )
    element.update({
        "text": text,
        "originalText": text,
        "fontSize": FONT_SIZE,
        "fontFamily": 1,
        "textAlign": "center",
        "verticalAlign": "middle",
        "containerId": container["id"],
        "lineHeight": 1.25,
    })
    return element


def _layers(intermediate: DiagramIntermediate) -> dict[str, int]:
    """Longest-path layer per node; cycles are cut by a visit bound."""
    incoming = defaultdict(int)
    outgoing = defaultdict(list)
    node_ids = [node.id for node in intermediate.nodes]
    known = set(node_ids)
    for edge in intermediate.edges:
        if edge.from_id in known and edge.to_id in known and edge.from_id != edge.to_id:
            outgoing[edge.from_id].append(edge.to_id)
            incoming[edge.to_id] += 1

    layer = {node_id: 0 for node_id in node_ids}
    roots = [node_id for node_id in node_ids if incoming[node_id] == 0] or node_ids[:1]
    queue = list(roots)
    max_layer = len(node_ids)
    while queue:
        current = queue.pop(0)
        for target in outgoing[current]:
            candidate = layer[current] + 1
            if candidate > layer[target] and candidate < max_layer:
                layer[target] = candidate
                queue.append(target)
    return layer


def render_intermediate(intermediate: DiagramIntermediate) -> list[dict[str, Any]]:
    """Render nodes and edges to canvas elements."""
    layer_of = _layers(intermediate)
    by_layer: dict[int, list[DiagramNode]] = defaultdict(list)
    for node in intermediate.nodes:
        by_layer[layer_of[node.id]].append(node)

    shapes: dict[str, dict[str, Any]] = {}
    elements: list[dict[str, Any]] = []
    for layer_index in sorted(by_layer):
        for position, node in enumerate(by_layer[layer_index]):
            major = layer_index * ((NODE_HEIGHT if intermediate.direction == "TB" else NODE_WIDTH) + GAP_MAJOR)
            minor = position * ((NODE_WIDTH if intermediate.direction == "TB" else NODE_HEIGHT) + GAP_MINOR)
            x, y = (minor, major) if intermediate.direction == "TB" else (major, minor)

            shape = _base_element(node.shape, node.id, x, y, NODE_WIDTH, NODE_HEIGHT)
            if node.shape == "rectangle":
                shape["roundness"] = {"type": 3}
            if node.background_color:
                shape["backgroundColor"] = node.background_color
            label = _text_element(f"{node.id}-label", node.label, shape)
            shape["boundElements"].append({"type": "text", "id": label["id"]})
            shapes[node.id] = shape
            elements.extend([shape, label])

    for index, edge in enumerate(intermediate.edges):
        source = shapes.get(edge.from_id)
        target = shapes.get(edge.to_id)
        if source is None or target is None:
            continue
        elements.extend(_arrow(f"edge-{index}-{edge.from_id}-{edge.to_id}", source, target, edge.label))

    return elements


def _arrow(arrow_id: str, source: dict[str, Any], target: dict[str, Any],
           label: Optional[str]) -> list[dict[str, Any]]:
    start_x = source["x"] + source["width"] / 2
    start_y = source["y"] + source["height"] / 2
    end_x = target["x"] + target["width"] / 2
    end_y = target["y"] + target["height"] / 2
    dx = end_x - start_x
    dy = end_y - start_y

    arrow = _base_element("arrow", arrow_id, start_x, start_y, abs(dx), abs(dy))
    arrow.update({
        "points": [[0, 0], [dx, dy]],
        "startBinding": {"elementId": source["id"], "focus": 0, "gap": ARROW_GAP},
        "endBinding": {"elementId": target["id"], "focus": 0, "gap": ARROW_GAP},
        "startArrowhead": None,
        "endArrowhead": "arrow",
        "roundness": {"type": 2},
    })
    source["boundElements"].append({"type": "arrow", "id": arrow_id})
    target["boundElements"].append({"type": "arrow", "id": arrow_id})

    rendered = [arrow]
    if label:
        text = _text_element(f"{arrow_id}-label", label, {
            "id": arrow_id,
            "x": start_x + dx / 2 - NODE_WIDTH / 2,
            "y": start_y + dy / 2 - FONT_SIZE,
            "width": NODE_WIDTH,
            "height": FONT_SIZE * 2,
        })
        arrow["boundElements"].append({"type": "text", "id": text["id"]})
        rendered.append(text)
    return rendered


def simplify_elements(elements: list[dict[str, Any]]) -> DiagramIntermediate:
    """Reduce canvas elements to nodes and edges, keeping element ids."""
    live = [e for e in elements if e.get("isDeleted") is not True]
    labels: dict[str, str] = {}
    for element in live:
        if element.get("type") == "text" and element.get("containerId"):
            labels[element["containerId"]] = element.get("originalText") or element.get("text") or ""

    nodes = []
    for element in live:
        if element.get("type") not in SHAPE_TYPES:
            continue
        background = element.get("backgroundColor")
        nodes.append(DiagramNode(
            id=element["id"],
            label=labels.get(element["id"], ""),
            shape=element["type"],
            background_color=None if background in (None, "transparent") else background,
        ))

    node_ids = {node.id for node in nodes}
    edges = []
    for element in live:
        if element.get("type") != "arrow":
            continue
        start = (element.get("startBinding") or {}).get("elementId")
        end = (element.get("endBinding") or {}).get("elementId")
        if start in node_ids and end in node_ids:
            edges.append(DiagramEdge(from_id=start, to_id=end, label=labels.get(element["id"]) or None))

    return DiagramIntermediate(nodes=nodes, edges=edges)


def validate_edge_references(intermediate: DiagramIntermediate) -> list[str]:
    issues = []
    seen: set[str] = set()
    for node in intermediate.nodes:
        if node.id in seen:
            issues.append(f"Duplicate node id: {node.id}")
        seen.add(node.id)

    for edge in intermediate.edges:
        if edge.from_id not in seen:
            issues.append(f"Edge references unknown node: {edge.from_id}")
        if edge.to_id not in seen:
            issues.append(f"Edge references unknown node: {edge.to_id}")

    if not intermediate.nodes:
        issues.append("Diagram has no nodes")
    return issues


_STYLE_FIELDS = {
    "stroke_color": "strokeColor",
    "background_color": "backgroundColor",
    "stroke_style": "strokeStyle",
    "stroke_width": "strokeWidth",
    "opacity": "opacity",
}


def _touch(element: dict[str, Any]) -> None:
    element["version"] = element.get("version", 0) + 1
    element["versionNonce"] = _nonce()
    element["updated"] = now_ms()


def apply_tweaks(elements: list[dict[str, Any]], tweaks: ElementTweaks) -> list[dict[str, Any]]:
    """Apply per-element updates and deletions to a copy of ``elements``.

    Text and font changes on a shape go to its bound label. Raises
    ValueError for an id that is not a live element.
    """
    result = copy.deepcopy(elements)
    by_id = {e["id"]: e for e in result if e.get("isDeleted") is not True}
    bound_text = {
        e["containerId"]: e for e in by_id.values()
        if e.get("type") == "text" and e.get("containerId")
    }

    unknown = [
        element_id
        for element_id in [u.id for u in tweaks.updates] + tweaks.delete_ids
        if element_id not in by_id
    ]
    if unknown:
        raise ValueError(f"Unknown element id: {', '.join(unknown)}")

    for update in tweaks.updates:
        element = by_id[update.id]
        changes = update.model_dump(exclude_none=True, exclude={"id"})
        for field, key in _STYLE_FIELDS.items():
            if field in changes:
                element[key] = changes[field]

        text_target = element if element.get("type") == "text" else bound_text.get(element["id"])
        if text_target is not None:
            if update.text is not None:
                text_target["text"] = update.text
                text_target["originalText"] = update.text
            if update.font_size is not None:
                text_target["fontSize"] = update.font_size
            if text_target is not element:
                _touch(text_target)
        _touch(element)

    deleted = set(tweaks.delete_ids)
    for element in by_id.values():
        start = (element.get("startBinding") or {}).get("elementId")
        end = (element.get("endBinding") or {}).get("elementId")
        if element.get("type") == "arrow" and (start in deleted or end in deleted):
            deleted.add(element["id"])
    for element in by_id.values():
        if element.get("containerId") in deleted:
            deleted.add(element["id"])

    for element_id in deleted:
        element = by_id[element_id]
        element["isDeleted"] = True
        _touch(element)

    return result
