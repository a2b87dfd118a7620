"""
Flow Graph - immutable view over a published {nodes, edges} definition
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from crmbot.core.exceptions import FlowDefinitionError
from crmbot.state_machine.nodes import NodeKind, classify

DEFAULT_HANDLE = "next"

# Builders disagree on yes/no vs true/false for conditional outputs
_HANDLE_ALIASES = {
    "yes": ("true",),
    "true": ("yes",),
    "no": ("false",),
    "false": ("no",),
}


@dataclass(frozen=True)
class FlowNode:
    id: str
    type: str
    data: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    position_y: Optional[float] = None

    @property
    def kind(self) -> NodeKind:
        return classify(self.type)

    @property
    def label(self) -> str:
        return str(self.data.get("label") or "")


@dataclass(frozen=True)
class FlowEdge:
    source: str
    target: str
    handle: str = DEFAULT_HANDLE


class FlowGraph:
    """Nodes in authoring order plus an edge map keyed by (source, handle)"""

    def __init__(self, nodes: list[FlowNode], edges: list[FlowEdge]):
        self._nodes = tuple(nodes)
        self._by_id = {node.id: node for node in nodes}
        self._edges: dict[tuple[str, str], str] = {}
        for edge in edges:
            # First edge wins when an author drew duplicates
            self._edges.setdefault((edge.source, edge.handle), edge.target)

    @classmethod
    def from_json(
        cls,
        payload: Any,
        activation_id: Optional[str] = None,
    ) -> "FlowGraph":
        if not isinstance(payload, Mapping):
            raise FlowDefinitionError("Flow definition must be an object", activation_id)

        raw_nodes = payload.get("nodes")
        raw_edges = payload.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise FlowDefinitionError(
                "Flow definition needs 'nodes' and 'edges' lists", activation_id
            )

        nodes = []
        for raw in raw_nodes:
            if not isinstance(raw, Mapping) or not raw.get("id"):
                raise FlowDefinitionError("Every node needs an id", activation_id)
            data = raw.get("data") if isinstance(raw.get("data"), Mapping) else {}
            position = raw.get("position") if isinstance(raw.get("position"), Mapping) else {}
            position_y = position.get("y")
            nodes.append(
                FlowNode(
                    id=str(raw["id"]),
                    type=str(raw.get("type") or ""),
                    data=MappingProxyType(dict(data)),
                    position_y=float(position_y) if isinstance(position_y, (int, float)) else None,
                )
            )

        edges = []
        for raw in raw_edges:
            if not isinstance(raw, Mapping) or not raw.get("source") or not raw.get("target"):
                continue
            edges.append(
                FlowEdge(
                    source=str(raw["source"]),
                    target=str(raw["target"]),
                    handle=str(raw.get("sourceHandle") or DEFAULT_HANDLE),
                )
            )

        return cls(nodes, edges)

    @property
    def nodes(self) -> tuple[FlowNode, ...]:
        return self._nodes

    def get(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if node_id is None:
            return None
        return self._by_id.get(node_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._by_id

    def __len__(self) -> int:
        return len(self._nodes)

    def next_node_id(self, node_id: str, handle: str = DEFAULT_HANDLE) -> Optional[str]:
        target = self._edges.get((node_id, handle))
        if target is not None:
            return target
        for alias in _HANDLE_ALIASES.get(handle, ()):
            target = self._edges.get((node_id, alias))
            if target is not None:
                return target
        return None
