"""
Flow Engine - advances a conversation through its flow graph, one turn per
inbound message.

A turn:
1. finds (or creates) the open session for the user on the channel
2. records the inbound message
3. resumes a session that was waiting for input
4. resolves the entry node for sessions that have no position yet
5. walks the graph node by node, bounded by a step and a time ceiling
6. greets brand-new conversations that did not receive a greeting
7. stores the replies in the order they are sent, then position, state and
   status; never finishes without a reply

The engine keeps nothing between turns: everything it needs is in the
session row.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.core.config import settings
from crmbot.core.logging import bind_conversation, get_logger, log_async_operation
from crmbot.db.database import utcnow
from crmbot.db.models.conversation_message import ContentType
from crmbot.domain.services.business_actions import BusinessActionRegistry
from crmbot.domain.services.graph_source import GraphSource
from crmbot.state_machine import replies
from crmbot.state_machine.graph import DEFAULT_HANDLE, FlowGraph
from crmbot.state_machine.heuristics import (
    any_greeting,
    recover_node_id,
    resolve_entry_node,
)
from crmbot.state_machine.locks import SessionLockRegistry, session_locks
from crmbot.state_machine.node_executor import (
    ExecutionContext,
    NodeExecutor,
    NodeResult,
)
from crmbot.state_machine.nodes import NodeKind, StateData
from crmbot.state_machine.session_store import SessionStore
from crmbot.state_machine.states import SessionStatus

logger = get_logger(__name__)

FLOW_END_REASON = "flow_end"


@dataclass
class TurnResult:
    responses: list[str]
    session_id: Optional[str]
    session_status: str
    is_new_conversation: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "responses": list(self.responses),
            "session_id": self.session_id,
            "session_status": self.session_status,
            "is_new_conversation": self.is_new_conversation,
        }


@dataclass
class _Turn:
    """Mutable bookkeeping of the turn in progress"""

    tenant_id: str
    user_channel_id: str
    channel_type: str
    channel_identifier: Optional[str] = None
    session_id: Optional[str] = None
    is_new: bool = False
    responses: list[str] = field(default_factory=list)
    # Texts that came from graph nodes, as opposed to the engine's own replies
    node_responses: list[str] = field(default_factory=list)
    # Bot messages to persist, in the order they are sent
    outbox: list[dict[str, Any]] = field(default_factory=list)


def _option_handles(option: Any, index: int) -> list[str]:
    handles = [f"option-{index}", f"option_{index}", str(index)]
    if isinstance(option, dict):
        for key in ("id", "value", "handle"):
            if option.get(key):
                handles.insert(0, str(option[key]))
    return handles


def _option_matches(option: Any, index: int, text: str) -> bool:
    answer = text.strip().lower()
    if answer == str(index + 1):
        return True
    if isinstance(option, dict):
        values = [option.get(k) for k in ("label", "text", "title", "value", "id")]
    else:
        values = [option]
    return any(v is not None and str(v).strip().lower() == answer for v in values)


class FlowEngine:
    """
    Per-turn orchestrator.

    Collaborators are injected; by default they are built on the given
    database session.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        store: Optional[SessionStore] = None,
        graph_source: Optional[GraphSource] = None,
        executor: Optional[NodeExecutor] = None,
        locks: Optional[SessionLockRegistry] = None,
        max_steps: Optional[int] = None,
        max_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.store = store or SessionStore(db)
        self.graph_source = graph_source or GraphSource(db)
        self.executor = executor or NodeExecutor(BusinessActionRegistry(db), db=db)
        self.locks = locks or session_locks
        self.max_steps = max_steps or settings.FLOW_MAX_STEPS
        self.max_seconds = max_seconds or settings.FLOW_MAX_SECONDS
        self.clock = clock

    @log_async_operation("process_message")
    async def process_message(
        self,
        tenant_id: str,
        user_channel_id: str,
        text: str,
        channel_type: str = "whatsapp",
        channel_identifier: Optional[str] = None,
    ) -> TurnResult:
        """
        Run one conversation turn. Never raises: unexpected failures mark the
        session failed and come back as a single apology.

        ``channel_identifier`` is the business endpoint the message arrived on
        (a WhatsApp phone number id); it picks that channel's default flow
        when a new session is created.
        """
        bind_conversation(tenant_id=tenant_id)
        turn = _Turn(tenant_id, user_channel_id, channel_type, channel_identifier)

        async with self.locks.lock_for(tenant_id, user_channel_id, channel_type):
            try:
                return await self._run_turn(turn, text)
            except Exception as e:
                logger.error(
                    "Conversation turn failed",
                    extra_data={
                        "tenant_id": tenant_id,
                        "session_id": turn.session_id,
                        "channel_type": channel_type,
                        "error": str(e),
                    },
                    exc_info=True,
                )
                return await self._fail_turn(turn, e)

    # ------------------------------------------------------------------
    # Turn steps
    # ------------------------------------------------------------------

    async def _run_turn(self, turn: _Turn, text: str) -> TurnResult:
        started = self.clock()

        # 1. Session resolution
        session = await self.store.find_active_session(
            turn.tenant_id, turn.user_channel_id, turn.channel_type
        )
        if session is None:
            activation_id = await self.graph_source.resolve_activation_id(
                turn.tenant_id, turn.channel_type, turn.channel_identifier
            )
            session = await self.store.create_session(
                turn.tenant_id,
                turn.user_channel_id,
                turn.channel_type,
                activation_id,
                state_data={
                    "user_channel_id": turn.user_channel_id,
                    "channel_type": turn.channel_type,
                },
            )
            turn.is_new = True

        turn.session_id = session.id
        bind_conversation(session_id=session.id)

        state = StateData(session.state_data)
        status = SessionStatus(session.status)
        current_node_id = session.current_node_id

        # 2. Durability first
        await self.store.add_message(turn.session_id, text, is_from_user=True)

        graph = await self.graph_source.load_for_session(session)

        # 3. Resume
        resumed = False
        if status == SessionStatus.WAITING_INPUT:
            waiting_node_id = state.waiting_node_id or current_node_id
            variable = state.waiting_variable
            if variable:
                state.set(variable, text)
            state.clear_waiting()
            status = SessionStatus.ACTIVE
            resumed = True

            current_node_id = self._resume_target(graph, waiting_node_id, text)
            logger.info(
                "Resuming suspended conversation",
                extra_data={
                    "waiting_node_id": waiting_node_id,
                    "variable": variable,
                    "next_node_id": current_node_id,
                },
            )
            if waiting_node_id and current_node_id:
                await self.store.log_node_transition(
                    turn.session_id, waiting_node_id, current_node_id, trigger_type="user_input"
                )

        # 4. Entry point
        if current_node_id is None and not resumed:
            current_node_id = resolve_entry_node(graph)

        # 5. Traversal
        current_node_id, status, ended = await self._traverse(
            turn, graph, state, current_node_id, status, started
        )

        # 6. New-conversation safeguard
        if turn.is_new and not any_greeting(turn.node_responses):
            self._say(turn, replies.WELCOME, metadata={"synthetic": "welcome"}, first=True)

        # 7. Finalization
        if not turn.responses:
            self._say(turn, replies.FALLBACK, metadata={"synthetic": "fallback"})

        for message in turn.outbox:
            await self.store.add_message(turn.session_id, is_from_user=False, **message)

        await self.store.update_session(
            turn.session_id,
            status=status,
            current_node_id=current_node_id,
            state_updates=state.changes(),
        )
        if ended:
            await self.store.end_session(
                turn.session_id, SessionStatus.COMPLETED, reason=FLOW_END_REASON
            )
            status = SessionStatus.COMPLETED

        return TurnResult(
            responses=list(turn.responses),
            session_id=turn.session_id,
            session_status=status.value,
            is_new_conversation=turn.is_new,
        )

    def _resume_target(
        self, graph: FlowGraph, waiting_node_id: Optional[str], text: str
    ) -> Optional[str]:
        """Node after the one that was waiting; choice nodes may branch per option"""
        if not waiting_node_id:
            return None

        node = graph.get(waiting_node_id)
        if node is not None and node.kind in (NodeKind.BUTTONS, NodeKind.LIST):
            options = node.data.get("options") or node.data.get("buttons") or node.data.get("listItems") or []
            for index, option in enumerate(options):
                if not _option_matches(option, index, text):
                    continue
                for handle in _option_handles(option, index):
                    target = graph.next_node_id(waiting_node_id, handle)
                    if target:
                        return target

        return graph.next_node_id(waiting_node_id, DEFAULT_HANDLE)

    async def _traverse(
        self,
        turn: _Turn,
        graph: FlowGraph,
        state: StateData,
        current_node_id: Optional[str],
        status: SessionStatus,
        started: float,
    ) -> tuple[Optional[str], SessionStatus, bool]:
        """
        Walk the graph from current_node_id.

        Returns the position to persist, the session status and whether an
        end node finished the flow.
        """
        visited: set[str] = set()
        previous_node_id: Optional[str] = None
        steps = 0

        while current_node_id is not None:
            elapsed = self.clock() - started
            if steps >= self.max_steps or elapsed > self.max_seconds:
                logger.warning(
                    "Flow ceiling reached, pausing traversal",
                    extra_data={
                        "steps": steps,
                        "elapsed_seconds": round(elapsed, 3),
                        "pending_node_id": current_node_id,
                    },
                )
                self._say(turn, replies.LIMIT_APOLOGY, metadata={"error": "flow_limit"})
                break

            node = graph.get(current_node_id)
            if node is None:
                recovered = recover_node_id(graph, current_node_id)
                logger.warning(
                    "Node not found in flow",
                    extra_data={"node_id": current_node_id, "recovered_node_id": recovered},
                )
                if recovered is None:
                    if steps == 0:
                        self._say(
                            turn, replies.GENERIC_GREETING, metadata={"synthetic": "greeting"}
                        )
                    current_node_id = None
                    break
                node = graph.get(recovered)

            if node.id in visited:
                logger.error(
                    "Cycle detected in flow graph",
                    extra_data={
                        "node_id": node.id,
                        "previous_node_id": previous_node_id,
                        "visited": sorted(visited),
                    },
                )
                self._say(turn, replies.CYCLE_APOLOGY, metadata={"error": "cycle"})
                current_node_id = None
                break
            visited.add(node.id)

            if previous_node_id is not None:
                await self.store.log_node_transition(turn.session_id, previous_node_id, node.id)

            result = await self.executor.execute(
                node,
                ExecutionContext(
                    tenant_id=turn.tenant_id,
                    session_id=turn.session_id,
                    user_id=turn.user_channel_id,
                    node_id=node.id,
                    state=state.as_dict(),
                ),
            )
            steps += 1
            state.update(result.state_updates)

            if result.response_text:
                turn.node_responses.append(result.response_text)
                self._say(
                    turn,
                    result.response_text,
                    node_id=node.id,
                    content_type=result.metadata.get("contentType", ContentType.TEXT.value),
                    metadata=result.metadata,
                )

            if result.ends_session:
                return None, status, True

            if result.suspends:
                state.mark_waiting(node.id, result.metadata.get("variableName"))
                return node.id, SessionStatus.WAITING_INPUT, False

            previous_node_id = node.id
            current_node_id = self._next_node_id(graph, node.id, result)

        return current_node_id, status, False

    @staticmethod
    def _next_node_id(graph: FlowGraph, node_id: str, result: NodeResult) -> Optional[str]:
        target = graph.next_node_id(node_id, result.next_handle)
        if target is None and result.fallback_handle and not result.is_error:
            target = graph.next_node_id(node_id, result.fallback_handle)
        return target

    @staticmethod
    def _say(
        turn: _Turn,
        text: str,
        node_id: Optional[str] = None,
        content_type: str = ContentType.TEXT.value,
        metadata: Optional[dict] = None,
        first: bool = False,
    ) -> None:
        """Queue a bot reply; rows are written when the turn finalizes"""
        message = {
            "content": text,
            "content_type": content_type,
            "node_id": node_id,
            "metadata": metadata,
        }
        if first:
            turn.responses.insert(0, text)
            turn.outbox.insert(0, message)
        else:
            turn.responses.append(text)
            turn.outbox.append(message)

    async def _fail_turn(self, turn: _Turn, error: Exception) -> TurnResult:
        try:
            await self.store.rollback()
            if turn.session_id:
                await self.store.update_session(
                    turn.session_id,
                    status=SessionStatus.FAILED,
                    metadata_updates={
                        "failed_at": utcnow().isoformat(),
                        "last_error": str(error)[:500],
                    },
                )
                await self.store.add_message(
                    turn.session_id, replies.APOLOGY, is_from_user=False,
                    metadata={"error": type(error).__name__},
                )
        except Exception as e:
            logger.error(
                "Could not mark session as failed",
                extra_data={"session_id": turn.session_id, "error": str(e)},
                exc_info=True,
            )

        return TurnResult(
            responses=[replies.APOLOGY],
            session_id=turn.session_id,
            session_status=SessionStatus.FAILED.value,
            is_new_conversation=turn.is_new,
        )
