"""
Node Executor - runs one graph node and reports where the flow goes next.

The executor knows nothing about the graph: it receives a node and the
current state, and answers with a handle name ("next", "yes", "no", "error")
or None to suspend until the user replies.
"""
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.core.logging import get_logger
from crmbot.state_machine import replies
from crmbot.state_machine.conditions import ConditionError, evaluate_condition
from crmbot.state_machine.graph import FlowNode
from crmbot.state_machine.nodes import NodeKind, render_template

logger = get_logger(__name__)

ERROR_HANDLE = "error"


@dataclass
class ExecutionContext:
    tenant_id: str
    session_id: str
    user_id: str
    node_id: str
    state: Mapping[str, Any]


@dataclass
class NodeResult:
    next_handle: Optional[str]
    response_text: Optional[str] = None
    state_updates: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    # Tried when next_handle has no outgoing edge
    fallback_handle: Optional[str] = None
    ends_session: bool = False

    @property
    def suspends(self) -> bool:
        return self.next_handle is None and not self.ends_session

    @property
    def is_error(self) -> bool:
        return self.next_handle == ERROR_HANDLE


class BusinessAction(Protocol):
    async def execute(
        self,
        tenant_id: str,
        state_data: dict[str, Any],
        node_data: Mapping[str, Any],
    ) -> Any:
        ...


class BusinessActionLookup(Protocol):
    def get(self, type_tag: str) -> Optional[BusinessAction]:
        ...


def _error_result(message: str = replies.APOLOGY, **metadata: Any) -> NodeResult:
    return NodeResult(
        next_handle=ERROR_HANDLE,
        response_text=message,
        metadata={"error": True, **metadata},
    )


def _option_label(option: Any) -> str:
    if isinstance(option, Mapping):
        return str(
            option.get("label") or option.get("text") or option.get("title")
            or option.get("value") or ""
        )
    return str(option)


class NodeExecutor:
    """Dispatches a node to the handler for its NodeKind"""

    def __init__(
        self,
        actions: Optional[BusinessActionLookup] = None,
        db: Optional[AsyncSession] = None,
    ):
        self.actions = actions
        # Adapter writes run in a savepoint on this session when it is given
        self.db = db
        self._handlers = {
            NodeKind.START: self._execute_start,
            NodeKind.MESSAGE: self._execute_message,
            NodeKind.INPUT: self._execute_input,
            NodeKind.CONDITIONAL: self._execute_conditional,
            NodeKind.BUTTONS: self._execute_buttons,
            NodeKind.LIST: self._execute_list,
            NodeKind.END: self._execute_end,
            NodeKind.BUSINESS_ACTION: self._execute_business_action,
            NodeKind.PASSTHROUGH: self._execute_passthrough,
            NodeKind.UNKNOWN: self._execute_unknown,
        }

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        """Never raises; failures come back as an "error" result with an apology"""
        kind = node.kind
        logger.debug(
            "Executing node",
            extra_data={"node_id": node.id, "node_type": node.type, "kind": kind.value},
        )

        try:
            result = await self._handlers[kind](node, context)
        except Exception as e:
            logger.error(
                "Node execution failed",
                extra_data={
                    "node_id": node.id,
                    "node_type": node.type,
                    "error": str(e),
                },
                exc_info=True,
            )
            return _error_result(node_type=node.type)

        if result.is_error and not result.response_text:
            result.response_text = replies.APOLOGY
        result.metadata.setdefault("nodeType", kind.value)
        return result

    # ------------------------------------------------------------------

    async def _execute_start(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        return NodeResult(next_handle="next")

    async def _execute_passthrough(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        # action/router nodes: no behaviour of their own yet
        return NodeResult(next_handle="next", metadata={"originalType": node.type})

    async def _execute_message(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        data = node.data
        wait = data.get("waitForResponse") is True
        text = render_template(
            data.get("message") or data.get("text") or data.get("content"),
            context.state,
        )
        return NodeResult(
            next_handle=None if wait else "next",
            response_text=text or None,
            metadata={
                "waitForResponse": wait,
                "variableName": data.get("variableName"),
            },
        )

    async def _execute_input(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        data = node.data
        prompt = render_template(data.get("prompt") or data.get("question"), context.state)
        return NodeResult(
            next_handle=None,
            response_text=prompt or None,
            metadata={
                "variableName": data.get("variableName"),
                "inputType": data.get("inputType"),
            },
        )

    async def _execute_conditional(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        condition = node.data.get("condition") or ""
        try:
            outcome = evaluate_condition(condition, context.state)
        except ConditionError as e:
            logger.warning(
                "Condition could not be evaluated, taking the 'no' branch",
                extra_data={"node_id": node.id, "condition": condition, "error": str(e)},
            )
            return NodeResult(
                next_handle="no",
                metadata={"conditionResult": False, "error": str(e)},
            )

        return NodeResult(
            next_handle="yes" if outcome else "no",
            metadata={"conditionResult": outcome},
        )

    async def _execute_buttons(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        data = node.data
        options = list(data.get("options") or data.get("buttons") or [])
        text = render_template(
            data.get("message") or data.get("question") or replies.CHOOSE_OPTION,
            context.state,
        )
        labels = [label for label in (_option_label(o) for o in options) if label]
        if labels:
            text = "\n".join([text] + [f"{i}. {label}" for i, label in enumerate(labels, 1)])

        return NodeResult(
            next_handle=None,
            response_text=text,
            metadata={
                "contentType": "buttons",
                "options": options,
                "variableName": data.get("variableName"),
            },
        )

    async def _execute_list(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        data = node.data
        items = list(data.get("listItems") or data.get("items") or [])
        text = render_template(data.get("message") or replies.CHOOSE_OPTION, context.state)
        labels = [label for label in (_option_label(i) for i in items) if label]
        if labels:
            text = "\n".join([text] + [f"- {label}" for label in labels])

        wait = data.get("waitForResponse") is not False
        return NodeResult(
            next_handle=None if wait else "next",
            response_text=text,
            metadata={
                "contentType": "list",
                "listItems": items,
                "listTitle": data.get("listTitle"),
                "variableName": data.get("variableName"),
            },
        )

    async def _execute_end(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        text = render_template(node.data.get("message") or replies.END_OF_FLOW, context.state)
        return NodeResult(
            next_handle=None,
            response_text=text,
            ends_session=True,
            metadata={"endsSession": True},
        )

    async def _execute_business_action(
        self, node: FlowNode, context: ExecutionContext
    ) -> NodeResult:
        adapter = self.actions.get(node.type) if self.actions else None
        if adapter is None:
            logger.error(
                "No business action registered for node type",
                extra_data={"node_id": node.id, "node_type": node.type},
            )
            return _error_result(node_type=node.type)

        # Adapters may raise; execute() turns that into an "error" result
        if self.db is None:
            outcome = await adapter.execute(
                context.tenant_id, dict(context.state), node.data
            )
        else:
            # A failing adapter leaves neither partial rows nor a broken session
            async with self.db.begin_nested():
                outcome = await adapter.execute(
                    context.tenant_id, dict(context.state), node.data
                )
        return NodeResult(
            next_handle=outcome.next_handle,
            response_text=outcome.message or None,
            state_updates=dict(outcome.context or {}),
            fallback_handle="next",
            metadata={"action": node.type},
        )

    async def _execute_unknown(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        logger.warning(
            "Unknown node type, passing through",
            extra_data={"node_id": node.id, "node_type": node.type},
        )
        data = node.data
        text = (
            data.get("message") or data.get("response") or data.get("text")
            or data.get("prompt") or data.get("question")
        )
        return NodeResult(
            next_handle="next",
            response_text=render_template(text, context.state) if text else replies.UNKNOWN_NODE,
            metadata={"originalType": node.type},
        )
