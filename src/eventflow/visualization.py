"""Storyline flow visualization.

Extracts the event/option structure of a StoryGraph and renders it as DOT
(Graphviz) or Mermaid markup. Read-only: nothing here feeds back into the
graph.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from eventflow.graph.normalize import display_percentages
from eventflow.observability.logging import get_logger

if TYPE_CHECKING:
    from eventflow.graph.graph import StoryGraph

log = get_logger(__name__)

_START_COLOR = "#90EE90"  # light green
_ENDING_COLOR = "#FFB6C1"  # light pink
_DEFAULT_COLOR = "#ADD8E6"  # light blue
_UNREACHABLE_COLOR = "#D3D3D3"  # light grey
_GATED_BORDER = "#FF4500"  # orange-red border for events with trigger requirements
_SUCCESS_COLOR = "#2E8B57"  # sea green
_FAILURE_COLOR = "#B22222"  # firebrick


@dataclass
class FlowNode:
    """An event node in the visualization."""

    id: str
    label: str
    is_start: bool = False
    is_ending: bool = False
    is_reachable: bool = True
    is_gated: bool = False
    option_count: int = 0


@dataclass
class FlowEdge:
    """One option target in the visualization."""

    from_id: str
    to_id: str
    label: str = ""
    outcome: str | None = None  # "success", "failure" or None


@dataclass
class FlowDiagram:
    """Complete visualization data extracted from a storyline."""

    title: str
    nodes: list[FlowNode]
    edges: list[FlowEdge]


def build_flow(graph: StoryGraph) -> FlowDiagram:
    """Extract visualization data from a storyline graph.

    Edges are labelled with the option text plus the display percentage
    (probability options) or the outcome (skill-check options). Targets
    pointing at missing events are left out.
    """
    reachable = graph.reachable_from()
    has_starter = graph.starter_id is not None

    nodes = [
        FlowNode(
            id=event.id,
            label=_truncate(event.title or event.id, 40),
            is_start=event.is_starter,
            is_ending=not event.outgoing_ids(),
            is_reachable=not has_starter or event.id in reachable,
            is_gated=bool(event.trigger_requirements),
            option_count=len(event.options),
        )
        for event in graph
    ]

    edges: list[FlowEdge] = []
    for event in graph:
        for option in event.options:
            text = _truncate(option.text, 30)
            if option.is_skill_check:
                for target in option.targets:
                    outcome = "success" if target.is_success else "failure"
                    check = option.skill_check
                    label = f"{text} [{check.skill} >= {check.min_value}: {outcome}]" if check else text
                    edges.append(FlowEdge(event.id, target.event_id, label, outcome))
                continue
            for target, pct in zip(option.targets, display_percentages(option.targets), strict=True):
                label = text if len(option.targets) == 1 else f"{text} ({pct}%)"
                edges.append(FlowEdge(event.id, target.event_id, label))

    known = set(graph.event_ids())
    visible = [e for e in edges if e.to_id in known]
    skipped = len(edges) - len(visible)
    if skipped:
        log.warning("flow_dangling_targets_skipped", storyline_id=graph.storyline_id, count=skipped)

    log.info(
        "flow_built",
        storyline_id=graph.storyline_id,
        nodes=len(nodes),
        edges=len(visible),
    )
    return FlowDiagram(title=graph.storyline.title, nodes=nodes, edges=visible)


def render_dot(flow: FlowDiagram, *, no_labels: bool = False) -> str:
    """Render a FlowDiagram as DOT (Graphviz) markup.

    Args:
        flow: Flow data.
        no_labels: If True, omit option labels on edges.
    """
    lines = [
        "digraph storyline {",
        "  rankdir=LR;",
        f'  label="{_dot_escape(flow.title)}";',
        '  node [fontname="Helvetica" fontsize=10 style="filled,solid"];',
        '  edge [fontname="Helvetica" fontsize=8];',
        "",
    ]

    for node in flow.nodes:
        attrs = _dot_node_attrs(node)
        attr_str = " ".join(f"{k}={v}" for k, v in attrs.items())
        lines.append(f'  "{node.id}" [{attr_str}];')

    lines.append("")

    for edge in flow.edges:
        edge_attrs: dict[str, str] = {}
        if not no_labels and edge.label:
            edge_attrs["label"] = f'"{_dot_escape(edge.label)}"'
        if edge.outcome == "success":
            edge_attrs["color"] = f'"{_SUCCESS_COLOR}"'
        elif edge.outcome == "failure":
            edge_attrs["color"] = f'"{_FAILURE_COLOR}"'
            edge_attrs["style"] = '"dashed"'
        edge_attr_str = " ".join(f"{k}={v}" for k, v in edge_attrs.items())
        suffix = f" [{edge_attr_str}]" if edge_attr_str else ""
        lines.append(f'  "{edge.from_id}" -> "{edge.to_id}"{suffix};')

    lines.append("}")
    return "\n".join(lines)


def render_mermaid(flow: FlowDiagram, *, no_labels: bool = False) -> str:
    """Render a FlowDiagram as Mermaid markup.

    Args:
        flow: Flow data.
        no_labels: If True, omit option labels on edges.
    """
    lines = ["graph LR"]

    for node in flow.nodes:
        safe_id = _mermaid_id(node.id)
        label = _mermaid_escape(node.label)
        if node.is_start:
            lines.append(f'  {safe_id}["{label}"]:::start')
        elif not node.is_reachable:
            lines.append(f'  {safe_id}["{label}"]:::unreachable')
        elif node.is_ending:
            lines.append(f'  {safe_id}["{label}"]:::ending')
        else:
            lines.append(f'  {safe_id}["{label}"]')
        if node.is_gated:
            lines.append(f"  class {safe_id} gated")

    lines.append("")

    for edge in flow.edges:
        src = _mermaid_id(edge.from_id)
        dst = _mermaid_id(edge.to_id)
        arrow = "-.->" if edge.outcome == "failure" else "-->"
        if not no_labels and edge.label:
            lines.append(f'  {src} {arrow}|"{_mermaid_escape(edge.label)}"| {dst}')
        else:
            lines.append(f"  {src} {arrow} {dst}")

    lines.append("")
    lines.append(f"  classDef start fill:{_START_COLOR},stroke:#333")
    lines.append(f"  classDef ending fill:{_ENDING_COLOR},stroke:#333")
    lines.append(f"  classDef unreachable fill:{_UNREACHABLE_COLOR},stroke:#999")
    lines.append(f"  classDef gated stroke:{_GATED_BORDER},stroke-width:3px")
    success_indices = [i for i, e in enumerate(flow.edges) if e.outcome == "success"]
    if success_indices:
        idx_list = ",".join(str(i) for i in success_indices)
        lines.append(f"  linkStyle {idx_list} stroke:{_SUCCESS_COLOR},stroke-width:2px")
    failure_indices = [i for i, e in enumerate(flow.edges) if e.outcome == "failure"]
    if failure_indices:
        idx_list = ",".join(str(i) for i in failure_indices)
        lines.append(f"  linkStyle {idx_list} stroke:{_FAILURE_COLOR},stroke-width:2px")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _truncate(text: str, max_len: int) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _dot_node_attrs(node: FlowNode) -> dict[str, str]:
    """Build DOT attribute dict for a node."""
    attrs: dict[str, str] = {}

    if node.is_start:
        attrs["shape"] = "doubleoctagon"
        attrs["fillcolor"] = f'"{_START_COLOR}"'
    elif not node.is_reachable:
        attrs["shape"] = "box"
        attrs["fillcolor"] = f'"{_UNREACHABLE_COLOR}"'
    elif node.is_ending:
        attrs["shape"] = "octagon"
        attrs["fillcolor"] = f'"{_ENDING_COLOR}"'
    else:
        attrs["shape"] = "box"
        attrs["fillcolor"] = f'"{_DEFAULT_COLOR}"'

    if node.is_gated:
        attrs["color"] = f'"{_GATED_BORDER}"'
        attrs["penwidth"] = '"2.5"'

    attrs["label"] = f'"{_dot_escape(node.label)}"'
    return attrs


def _dot_escape(text: str) -> str:
    """Escape special characters for DOT labels."""
    return text.replace('"', '\\"').replace("\n", "\\n")


def _mermaid_id(node_id: str) -> str:
    """Convert an event ID to a Mermaid-safe identifier."""
    return node_id.replace(" ", "_").replace("-", "_")


def _mermaid_escape(text: str) -> str:
    """Escape special characters for Mermaid labels."""
    return text.replace('"', "&quot;").replace("\n", " ")
