"""
Best-effort heuristics for loosely authored graphs.

Graph builders do not guarantee a single canonical start node, stable node
ids between publishes, or a greeting on the first reachable path. Everything
that guesses lives here so the engine loop stays deterministic.
"""
import re
from typing import Iterable, Optional

from crmbot.core.logging import get_logger
from crmbot.state_machine.graph import FlowGraph, FlowNode
from crmbot.state_machine.nodes import NodeKind

logger = get_logger(__name__)

START_IDS = frozenset({"start", "inicio", "start-node", "startnode"})
WELCOME_WORDS = ("welcome", "bienvenida")

_GREETING = re.compile(
    r"\b(hi|hello|hey|hola|welcome|bienvenid\w*|buenos d[ií]as|buenas|"
    r"good (morning|afternoon|evening)|greetings)\b",
    re.IGNORECASE,
)
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _normalize(value: str) -> str:
    return _NON_ALNUM.sub("", (value or "").lower())


def _is_start_like(node: FlowNode) -> bool:
    return (
        node.kind == NodeKind.START
        or node.id.lower() in START_IDS
        or node.label.strip().lower() in START_IDS
    )


def resolve_entry_node(graph: FlowGraph) -> Optional[str]:
    """
    Pick the node a fresh session starts on.

    Order: the node after the start node's "next" edge, the start node itself,
    any start-like id/label, the top-most node on the canvas, the first node.
    """
    if not len(graph):
        return None

    start_nodes = [node for node in graph.nodes if node.kind == NodeKind.START]
    for start in start_nodes:
        downstream = graph.next_node_id(start.id)
        if downstream and downstream in graph:
            return downstream
    if start_nodes:
        return start_nodes[0].id

    for node in graph.nodes:
        if _is_start_like(node):
            downstream = graph.next_node_id(node.id)
            return downstream if downstream in graph else node.id

    positioned = [node for node in graph.nodes if node.position_y is not None]
    if positioned:
        top = min(positioned, key=lambda node: node.position_y)
        logger.info(
            "No start node in flow, using top-most node",
            extra_data={"node_id": top.id},
        )
        return top.id

    return graph.nodes[0].id


def recover_node_id(graph: FlowGraph, missing_id: str) -> Optional[str]:
    """Map a node id that is not in the graph to the most plausible existing one"""
    wanted = _normalize(missing_id)
    if wanted:
        for node in graph.nodes:
            candidate = _normalize(node.id)
            if candidate and (wanted in candidate or candidate in wanted):
                return node.id

    lowered = (missing_id or "").lower()
    if "start" in lowered or "inicio" in lowered:
        return resolve_entry_node(graph)

    if any(word in lowered for word in WELCOME_WORDS):
        for node in graph.nodes:
            haystack = f"{node.id} {node.label}".lower()
            if any(word in haystack for word in WELCOME_WORDS):
                return node.id

    return None


def is_welcome_node(node: FlowNode) -> bool:
    haystack = f"{node.id} {node.label}".lower()
    return any(word in haystack for word in WELCOME_WORDS)


def looks_like_greeting(text: Optional[str]) -> bool:
    return bool(text) and bool(_GREETING.search(text))


def any_greeting(texts: Iterable[str]) -> bool:
    return any(looks_like_greeting(text) for text in texts)
