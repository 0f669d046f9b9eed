"""Graph renderer support.

Pure functions over a :class:`GraphViewData` snapshot. Nothing here touches
the index; the snapshot is built by ``Database.get_graph_view_data``.
"""

from dataclasses import asdict, dataclass, field

# Above either threshold the renderer switches to the degraded profile
DEGRADE_NODE_THRESHOLD = 300
DEGRADE_EDGE_THRESHOLD = 1000

DEFAULT_TICK_CAP = 220
DEFAULT_LABEL_VISIBLE_SCALE = 0.5
DEGRADED_TICK_CAP = 185
DEGRADED_EDGE_RENDER_LIMIT = 800
DEGRADED_LABEL_VISIBLE_SCALE = 0.95


@dataclass
class GraphNode:
    id: str
    rel_path: str
    file_name: str
    unresolved: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "relPath": self.rel_path,
            "fileName": self.file_name,
            "unresolved": self.unresolved,
        }


@dataclass
class GraphEdge:
    source: str
    target: str
    unresolved: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GraphViewData:
    """Snapshot of the link graph consumed by the renderer."""

    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass
class RenderNode:
    """A graph node annotated with its degree."""

    id: str
    rel_path: str
    file_name: str
    unresolved: bool
    degree: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "relPath": self.rel_path,
            "fileName": self.file_name,
            "unresolved": self.unresolved,
            "degree": self.degree,
        }


@dataclass(frozen=True)
class DegradeProfile:
    is_degraded: bool
    simulation_tick_cap: int
    edge_render_limit: int
    label_visible_scale: float

    def to_dict(self) -> dict:
        return {
            "isDegraded": self.is_degraded,
            "simulationTickCap": self.simulation_tick_cap,
            "edgeRenderLimit": self.edge_render_limit,
            "labelVisibleScale": self.label_visible_scale,
        }


@dataclass(frozen=True)
class OpenAction:
    type: str  # "open" or "unresolved"
    rel_path: str

    def to_dict(self) -> dict:
        return {"type": self.type, "relPath": self.rel_path}


def build_node_degree_map(graph: GraphViewData) -> dict[str, int]:
    """Count edges touching each node, in both directions.

    Every node is present in the result, with 0 when it has no edges. A
    self-loop counts twice, once for each endpoint.
    """
    degrees = {node.id: 0 for node in graph.nodes}
    for edge in graph.edges:
        degrees[edge.source] = degrees.get(edge.source, 0) + 1
        degrees[edge.target] = degrees.get(edge.target, 0) + 1
    return degrees


def to_render_nodes(graph: GraphViewData) -> list[RenderNode]:
    """Attach the degree to every node, keeping node order."""
    degrees = build_node_degree_map(graph)
    return [
        RenderNode(
            id=node.id,
            rel_path=node.rel_path,
            file_name=node.file_name,
            unresolved=node.unresolved,
            degree=degrees.get(node.id, 0),
        )
        for node in graph.nodes
    ]


def get_node_visual_state(node: GraphNode | RenderNode) -> str:
    return "unresolved" if node.unresolved else "resolved"


def get_node_open_action(node: GraphNode | RenderNode) -> OpenAction:
    """What clicking a node does: open the note, or offer to create it."""
    if node.unresolved:
        return OpenAction(type="unresolved", rel_path=node.rel_path)
    return OpenAction(type="open", rel_path=node.rel_path)


def get_graph_degrade_profile(node_count: int, edge_count: int) -> DegradeProfile:
    """Rendering limits for a graph of the given size.

    The profile only ever tightens as the graph grows.
    """
    if node_count > DEGRADE_NODE_THRESHOLD or edge_count > DEGRADE_EDGE_THRESHOLD:
        return DegradeProfile(
            is_degraded=True,
            simulation_tick_cap=DEGRADED_TICK_CAP,
            edge_render_limit=DEGRADED_EDGE_RENDER_LIMIT,
            label_visible_scale=DEGRADED_LABEL_VISIBLE_SCALE,
        )
    return DegradeProfile(
        is_degraded=False,
        simulation_tick_cap=DEFAULT_TICK_CAP,
        edge_render_limit=max(edge_count, 0),
        label_visible_scale=DEFAULT_LABEL_VISIBLE_SCALE,
    )


def sample_edges_for_render(edges: list[GraphEdge], limit: int) -> list[GraphEdge]:
    """Pick at most ``limit`` edges, unresolved ones first.

    Relative order is preserved within the unresolved and resolved groups.
    """
    if limit <= 0:
        return []
    if len(edges) <= limit:
        return list(edges)
    unresolved = [e for e in edges if e.unresolved]
    resolved = [e for e in edges if not e.unresolved]
    return (unresolved + resolved)[:limit]
