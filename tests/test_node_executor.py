"""
Tests for the node executor - one node in, a handle and a reply out
"""
from types import MappingProxyType

import pytest
from sqlalchemy import func, select

from crmbot.db.models.lead import Lead
from crmbot.domain.services.business_actions import ActionResult
from crmbot.state_machine import replies
from crmbot.state_machine.graph import FlowNode
from crmbot.state_machine.node_executor import (
    ERROR_HANDLE,
    ExecutionContext,
    NodeExecutor,
)


def _node(node_id: str, node_type: str, **data) -> FlowNode:
    return FlowNode(id=node_id, type=node_type, data=MappingProxyType(data))


def _context(node_id: str = "n", **state) -> ExecutionContext:
    return ExecutionContext(
        tenant_id="tenant-1",
        session_id="session-1",
        user_id="+15550001111",
        node_id=node_id,
        state=state,
    )


class _StaticAction:
    def __init__(self, outcome=None, error: Exception | None = None):
        self.outcome = outcome
        self.error = error
        self.calls = []

    async def execute(self, tenant_id, state_data, node_data):
        self.calls.append((tenant_id, state_data, dict(node_data)))
        if self.error:
            raise self.error
        return self.outcome


class _LeadWriter:
    """Adds a lead, then either succeeds or raises"""

    def __init__(self, db, error: Exception | None = None):
        self.db = db
        self.error = error

    async def execute(self, tenant_id, state_data, node_data):
        self.db.add(Lead(tenant_id=tenant_id, phone="+15550001111"))
        await self.db.flush()
        if self.error:
            raise self.error
        return ActionResult("yes", "Saved")


class _Registry:
    def __init__(self, **actions):
        self.actions = actions

    def get(self, type_tag):
        return self.actions.get(type_tag.replace("-", "_"))


class TestMessageNodes:

    @pytest.fixture
    def executor(self) -> NodeExecutor:
        return NodeExecutor()

    @pytest.mark.unit
    async def test_message_renders_template_and_continues(self, executor):
        result = await executor.execute(_node("m", "message", message="Hi {{name}}!"), _context(name="Ana"))
        assert result.next_handle == "next"
        assert result.response_text == "Hi Ana!"
        assert result.metadata["nodeType"] == "message"
        assert not result.suspends

    @pytest.mark.unit
    async def test_message_with_wait_for_response_suspends(self, executor):
        result = await executor.execute(
            _node("m", "message", message="Tell me more", waitForResponse=True, variableName="details"),
            _context(),
        )
        assert result.suspends
        assert result.metadata["variableName"] == "details"

    @pytest.mark.unit
    async def test_message_text_fallback_keys(self, executor):
        result = await executor.execute(_node("m", "textNode", text="plain"), _context())
        assert result.response_text == "plain"

    @pytest.mark.unit
    async def test_empty_message_has_no_reply(self, executor):
        result = await executor.execute(_node("m", "message"), _context())
        assert result.response_text is None
        assert result.next_handle == "next"


class TestInputAndChoiceNodes:

    @pytest.fixture
    def executor(self) -> NodeExecutor:
        return NodeExecutor()

    @pytest.mark.unit
    async def test_input_always_suspends(self, executor):
        result = await executor.execute(
            _node("ask", "input", prompt="What is your name?", variableName="name", inputType="text"),
            _context(),
        )
        assert result.next_handle is None
        assert result.suspends
        assert result.response_text == "What is your name?"
        assert result.metadata["variableName"] == "name"
        assert result.metadata["inputType"] == "text"

    @pytest.mark.unit
    async def test_buttons_list_numbered_options(self, executor):
        result = await executor.execute(
            _node(
                "b", "buttons",
                message="Pick a plan",
                options=[{"id": "basic", "label": "Basic"}, {"id": "pro", "label": "Pro"}],
                variableName="plan",
            ),
            _context(),
        )
        assert result.suspends
        assert result.response_text == "Pick a plan\n1. Basic\n2. Pro"
        assert result.metadata["contentType"] == "buttons"
        assert result.metadata["variableName"] == "plan"

    @pytest.mark.unit
    async def test_list_waits_by_default(self, executor):
        result = await executor.execute(
            _node("l", "list", message="Our services", listItems=["Cuts", "Color"]),
            _context(),
        )
        assert result.suspends
        assert result.response_text == "Our services\n- Cuts\n- Color"
        assert result.metadata["contentType"] == "list"

    @pytest.mark.unit
    async def test_list_can_continue(self, executor):
        result = await executor.execute(
            _node("l", "list", listItems=[{"title": "A"}], waitForResponse=False),
            _context(),
        )
        assert result.next_handle == "next"
        assert result.response_text == f"{replies.CHOOSE_OPTION}\n- A"


class TestConditionalNodes:

    @pytest.fixture
    def executor(self) -> NodeExecutor:
        return NodeExecutor()

    @pytest.mark.unit
    @pytest.mark.parametrize("age,handle", [(20, "yes"), (10, "no")])
    async def test_branches(self, executor, age, handle):
        result = await executor.execute(
            _node("c", "conditional", condition="stateData.age >= 18"), _context(age=age)
        )
        assert result.next_handle == handle
        assert result.response_text is None

    @pytest.mark.unit
    async def test_malformed_condition_takes_no(self, executor):
        result = await executor.execute(
            _node("c", "conditional", condition="stateData.age >>> 18"), _context(age=20)
        )
        assert result.next_handle == "no"
        assert result.metadata["conditionResult"] is False

    @pytest.mark.unit
    async def test_missing_condition_takes_no(self, executor):
        result = await executor.execute(_node("c", "conditional"), _context())
        assert result.next_handle == "no"


class TestTerminalAndUnknownNodes:

    @pytest.fixture
    def executor(self) -> NodeExecutor:
        return NodeExecutor()

    @pytest.mark.unit
    async def test_end_node(self, executor):
        result = await executor.execute(_node("e", "end"), _context())
        assert result.ends_session
        assert not result.suspends
        assert result.response_text == replies.END_OF_FLOW

    @pytest.mark.unit
    async def test_start_and_router_pass_through(self, executor):
        assert (await executor.execute(_node("s", "start"), _context())).next_handle == "next"
        result = await executor.execute(_node("r", "router"), _context())
        assert result.next_handle == "next"
        assert result.response_text is None

    @pytest.mark.unit
    async def test_unknown_type_uses_any_text(self, executor):
        result = await executor.execute(_node("x", "carousel", response="Some text"), _context())
        assert result.next_handle == "next"
        assert result.response_text == "Some text"
        assert result.metadata["originalType"] == "carousel"

    @pytest.mark.unit
    async def test_unknown_type_without_text(self, executor):
        result = await executor.execute(_node("x", "carousel"), _context())
        assert result.response_text == replies.UNKNOWN_NODE


class TestBusinessActionNodes:

    @pytest.mark.unit
    async def test_adapter_outcome_becomes_result(self):
        action = _StaticAction(ActionResult("yes", "Booked!", {"appointment_id": 7}))
        executor = NodeExecutor(_Registry(book_appointment=action))

        result = await executor.execute(
            _node("book", "book-appointment", location="Office"), _context(name="Ana")
        )

        assert result.next_handle == "yes"
        assert result.response_text == "Booked!"
        assert result.state_updates == {"appointment_id": 7}
        assert result.fallback_handle == "next"
        assert action.calls == [("tenant-1", {"name": "Ana"}, {"location": "Office"})]

    @pytest.mark.unit
    async def test_adapter_exception_becomes_error(self):
        action = _StaticAction(error=RuntimeError("db down"))
        executor = NodeExecutor(_Registry(check_availability=action))

        result = await executor.execute(_node("a", "check_availability"), _context())

        assert result.next_handle == ERROR_HANDLE
        assert result.is_error
        assert result.response_text == replies.APOLOGY
        assert result.state_updates == {}

    @pytest.mark.unit
    async def test_missing_adapter_is_error(self):
        executor = NodeExecutor()
        result = await executor.execute(_node("q", "lead_qualification"), _context())
        assert result.next_handle == ERROR_HANDLE
        assert result.response_text == replies.APOLOGY

    @pytest.mark.integration
    async def test_adapter_writes_are_kept_on_success(self, db_session):
        executor = NodeExecutor(_Registry(book_appointment=_LeadWriter(db_session)), db=db_session)

        result = await executor.execute(_node("book", "book_appointment"), _context())
        await db_session.commit()

        assert result.next_handle == "yes"
        assert await db_session.scalar(select(func.count()).select_from(Lead)) == 1

    @pytest.mark.integration
    async def test_adapter_writes_are_discarded_on_failure(self, db_session):
        action = _LeadWriter(db_session, error=RuntimeError("calendar unavailable"))
        executor = NodeExecutor(_Registry(book_appointment=action), db=db_session)

        result = await executor.execute(_node("book", "book_appointment"), _context())
        await db_session.commit()

        assert result.is_error
        assert await db_session.scalar(select(func.count()).select_from(Lead)) == 0
