"""
Graph Index + Router.

The index is built once per flow version and shared read-only by every
session running that version. Outgoing edges keep their authoring order
so "first outgoing edge" is a stable default path.
"""
from __future__ import annotations

import structlog
from collections import Counter
from typing import Optional

from flows.models import Edge, Flow, FlowNode, MenuNode, StartNode, UnknownNode

logger = structlog.get_logger()


class RoutingError(Exception):
    """Raised by strict routing when no edge carries the requested handle."""


class GraphIndex:
    """O(1) lookup of nodes by id and outgoing edges by source node id."""

    def __init__(self, flow: Flow):
        self.flow = flow
        self.node_by_id: dict[str, FlowNode] = {}
        self.edges_by_source: dict[str, list[Edge]] = {}

        for node in flow.nodes:
            # first definition wins; duplicates are reported by validate()
            self.node_by_id.setdefault(node.id, node)
        for edge in flow.edges:
            self.edges_by_source.setdefault(edge.source, []).append(edge)

    @property
    def flow_id(self) -> str:
        return self.flow.id

    @property
    def version(self) -> int:
        return self.flow.version

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        return self.node_by_id.get(node_id)

    def start_node(self) -> Optional[FlowNode]:
        for node in self.flow.nodes:
            if isinstance(node, StartNode):
                return node
        return None

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return self.edges_by_source.get(node_id, [])

    def has_handle(self, node_id: str, handle: str) -> bool:
        return any(e.source_handle == handle for e in self.outgoing_edges(node_id))

    # ── Routing ───────────────────────────────────────

    def next_node(self, current_id: str, handle: str = None, strict: bool = False) -> Optional[FlowNode]:
        """
        Pick the successor of current_id.

        No outgoing edges -> None. A handle selects the first edge carrying
        it; on a miss the first outgoing edge is taken unless strict is set.
        """
        edges = self.outgoing_edges(current_id)
        if not edges:
            return None

        edge = edges[0]
        if handle:
            matched = next((e for e in edges if e.source_handle == handle), None)
            if matched is not None:
                edge = matched
            elif strict:
                raise RoutingError(f"node '{current_id}' has no edge for handle '{handle}'")
            else:
                logger.warning("route_handle_missing", flow_id=self.flow_id,
                               node_id=current_id, handle=handle, fallback=edge.target)

        target = self.node_by_id.get(edge.target)
        if target is None:
            logger.warning("route_dangling_edge", flow_id=self.flow_id,
                           edge_id=edge.id, source=current_id, target=edge.target)
        return target

    # ── Validation ────────────────────────────────────

    def validate(self) -> list[str]:
        """Return configuration errors; an empty list means the graph is runnable."""
        errors: list[str] = []

        starts = [n.id for n in self.flow.nodes if isinstance(n, StartNode)]
        if not starts:
            errors.append("flow has no start node")
        elif len(starts) > 1:
            errors.append(f"flow has {len(starts)} start nodes: {', '.join(starts)}")

        dupes = [nid for nid, n in Counter(n.id for n in self.flow.nodes).items() if n > 1]
        for nid in dupes:
            errors.append(f"duplicate node id '{nid}'")

        for edge in self.flow.edges:
            if edge.source not in self.node_by_id:
                errors.append(f"edge '{edge.id}' references unknown source '{edge.source}'")
            if edge.target not in self.node_by_id:
                errors.append(f"edge '{edge.id}' references unknown target '{edge.target}'")

        unknown = [n.id for n in self.flow.nodes if isinstance(n, UnknownNode)]
        if unknown:
            logger.warning("flow_unknown_node_kinds", flow_id=self.flow_id, nodes=unknown)

        # options without their own edge route down the first outgoing edge
        unrouted = [
            f"{n.id}:{opt.id}"
            for n in self.flow.nodes if isinstance(n, MenuNode) and self.outgoing_edges(n.id)
            for opt in n.data.options if not self.has_handle(n.id, opt.id)
        ]
        if unrouted:
            logger.warning("flow_menu_options_unrouted", flow_id=self.flow_id, options=unrouted)

        return errors
