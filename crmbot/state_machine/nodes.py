"""
Node Kinds and Conversation State

Graph authoring tools emit loosely named type tags ("messageNode", "message",
"text"...). They are folded into a closed set of NodeKind values here so the
executor dispatches over a fixed variant set with an explicit UNKNOWN member.
"""
import re
from enum import Enum
from typing import Any, Iterable, Mapping, Optional


class NodeKind(str, Enum):
    START = "start"
    MESSAGE = "message"
    INPUT = "input"
    CONDITIONAL = "conditional"
    BUTTONS = "buttons"
    LIST = "list"
    END = "end"
    BUSINESS_ACTION = "business_action"
    PASSTHROUGH = "passthrough"  # action/router nodes with no behaviour of their own
    UNKNOWN = "unknown"


BUSINESS_ACTION_TAGS = frozenset({
    "check_availability",
    "book_appointment",
    "lead_qualification",
})

_KIND_BY_TAG = {
    "start": NodeKind.START,
    "startnode": NodeKind.START,
    "message": NodeKind.MESSAGE,
    "messagenode": NodeKind.MESSAGE,
    "text": NodeKind.MESSAGE,
    "textnode": NodeKind.MESSAGE,
    "input": NodeKind.INPUT,
    "inputnode": NodeKind.INPUT,
    "conditional": NodeKind.CONDITIONAL,
    "conditionalnode": NodeKind.CONDITIONAL,
    "condition": NodeKind.CONDITIONAL,
    "conditionnode": NodeKind.CONDITIONAL,
    "buttons": NodeKind.BUTTONS,
    "buttonsnode": NodeKind.BUTTONS,
    "list": NodeKind.LIST,
    "listnode": NodeKind.LIST,
    "end": NodeKind.END,
    "endnode": NodeKind.END,
    "action": NodeKind.PASSTHROUGH,
    "actionnode": NodeKind.PASSTHROUGH,
    "router": NodeKind.PASSTHROUGH,
    "routernode": NodeKind.PASSTHROUGH,
}


def normalize_business_tag(type_tag: str) -> str:
    """'check-availability' and 'check_availability' are the same action"""
    return (type_tag or "").strip().lower().replace("-", "_")


def classify(type_tag: Optional[str]) -> NodeKind:
    if not type_tag:
        return NodeKind.UNKNOWN
    if normalize_business_tag(type_tag) in BUSINESS_ACTION_TAGS:
        return NodeKind.BUSINESS_ACTION
    return _KIND_BY_TAG.get(type_tag.strip().lower(), NodeKind.UNKNOWN)


# ---------------------------------------------------------------------------
# State data
# ---------------------------------------------------------------------------

WAITING_KEY = "waitingFor"


class StateData:
    """
    Typed accessor over a session's open-ended variable map.

    Works on a private copy of the persisted dict and remembers which keys were
    written during the turn, so the store can merge only the deltas.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._data: dict[str, Any] = dict(initial or {})
        self._changed: set[str] = set()

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._changed.add(key)

    def update(self, values: Optional[Mapping[str, Any]]) -> None:
        for key, value in (values or {}).items():
            self.set(key, value)

    def lookup(self, path: str | Iterable[Any]) -> Any:
        """Resolve a dotted path ("lead.name") or a key sequence; missing -> None"""
        parts = path.split(".") if isinstance(path, str) else list(path)
        current: Any = self._data
        for part in parts:
            if isinstance(current, Mapping):
                current = current.get(part)
            elif isinstance(current, (list, tuple)):
                try:
                    current = current[int(part)]
                except (ValueError, IndexError, TypeError):
                    return None
            else:
                return None
            if current is None:
                return None
        return current

    def as_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def changes(self) -> dict[str, Any]:
        return {key: self._data[key] for key in self._changed}

    # Suspension bookkeeping: {"nodeId": ..., "variableName": ...}

    @property
    def waiting_for(self) -> Optional[dict[str, Any]]:
        value = self._data.get(WAITING_KEY)
        return value if isinstance(value, dict) else None

    @property
    def waiting_variable(self) -> Optional[str]:
        waiting = self.waiting_for
        return waiting.get("variableName") if waiting else None

    @property
    def waiting_node_id(self) -> Optional[str]:
        waiting = self.waiting_for
        return waiting.get("nodeId") if waiting else None

    def mark_waiting(self, node_id: str, variable_name: Optional[str] = None) -> None:
        self.set(WAITING_KEY, {"nodeId": node_id, "variableName": variable_name})

    def clear_waiting(self) -> None:
        if self.waiting_for is not None:
            self.set(WAITING_KEY, None)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

DEFAULT_TEMPLATE_VALUES = {
    "nombre_usuario": "User",
    "user_name": "User",
    "nombre": "User",
    "nombre_lead": "User",
    "email_usuario": "",
    "telefono_usuario": "",
    "company_name": "our company",
    "tenant_name": "our company",
    "business_name": "our company",
}


def render_template(text: Optional[str], state: Mapping[str, Any]) -> str:
    """
    Replace {{name}} placeholders from state, then from DEFAULT_TEMPLATE_VALUES.
    Unknown placeholders are left untouched.
    """
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        name = match.group(1).strip()
        value = state.get(name)
        if value is not None:
            return str(value)
        if name in DEFAULT_TEMPLATE_VALUES:
            return DEFAULT_TEMPLATE_VALUES[name]
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, text)
