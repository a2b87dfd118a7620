"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- In-memory Redis replacement for the graph cache
- Flow template / activation / session factories
"""
# Settings are read at import time; set them before crmbot is imported
import os
os.environ.setdefault("CHATBOT_API_KEY", "test-chatbot-api-key")
os.environ.setdefault("WHATSAPP_CLOUD_API_APP_SECRET", "test-app-secret")
os.environ.setdefault("WHATSAPP_CLOUD_API_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("GRAPH_CACHE_ENABLED", "false")

from typing import AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from crmbot.db.database import Base, get_db, utcnow
from crmbot.db.models.chatbot_template import ChatbotActivation, ChatbotChannel, ChatbotTemplate
from crmbot.db.models.conversation_session import ConversationSession
from crmbot.main import app
from crmbot.state_machine.locks import SessionLockRegistry


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = "tenant-1"
USER_ID = "+15550001111"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def api_headers() -> dict[str, str]:
    return {"X-API-Key": os.environ["CHATBOT_API_KEY"]}


@pytest.fixture
def locks() -> SessionLockRegistry:
    """Fresh lock registry so tests never share per-session locks"""
    return SessionLockRegistry()


# ============================================================================
# Flow graph builders
# ============================================================================


def node(node_id: str, node_type: str, y: Optional[float] = None, **data) -> dict:
    """One node in the {nodes, edges} format published by the flow builder"""
    raw = {"id": node_id, "type": node_type, "data": data}
    if y is not None:
        raw["position"] = {"x": 0, "y": y}
    return raw


def edge(source: str, target: str, handle: Optional[str] = None) -> dict:
    raw = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle is not None:
        raw["sourceHandle"] = handle
    return raw


def flow(nodes: list[dict], edges: list[dict]) -> dict:
    return {"nodes": nodes, "edges": edges}


# ============================================================================
# Test Data Factories
# ============================================================================


@pytest.fixture
def activation_factory(db_session: AsyncSession):
    """Publish a flow for a tenant; returns the activation"""
    async def _create_activation(
        react_flow_json: dict,
        tenant_id: str = TENANT_ID,
        is_active: bool = True,
        name: str = "Test flow",
    ) -> ChatbotActivation:
        template = ChatbotTemplate(name=name, react_flow_json=react_flow_json)
        db_session.add(template)
        await db_session.flush()

        activation = ChatbotActivation(
            tenant_id=tenant_id,
            template_id=template.id,
            is_active=is_active,
            activated_at=utcnow(),
        )
        db_session.add(activation)
        await db_session.commit()
        await db_session.refresh(activation)
        return activation

    return _create_activation


@pytest.fixture
def channel_factory(db_session: AsyncSession):
    async def _create_channel(
        channel_identifier: str,
        default_activation_id: Optional[str] = None,
        tenant_id: str = TENANT_ID,
        channel_type: str = "whatsapp",
    ) -> ChatbotChannel:
        channel = ChatbotChannel(
            tenant_id=tenant_id,
            channel_type=channel_type,
            channel_identifier=channel_identifier,
            default_activation_id=default_activation_id,
        )
        db_session.add(channel)
        await db_session.commit()
        await db_session.refresh(channel)
        return channel

    return _create_channel


@pytest.fixture
def session_factory(db_session: AsyncSession):
    """Create a conversation session directly, bypassing the engine"""
    async def _create_session(
        activation_id: Optional[str],
        current_node_id: Optional[str] = None,
        state_data: Optional[dict] = None,
        status: str = "active",
        tenant_id: str = TENANT_ID,
        user_channel_id: str = USER_ID,
        channel_type: str = "webchat",
        last_interaction_at=None,
    ) -> ConversationSession:
        now = utcnow()
        session = ConversationSession(
            tenant_id=tenant_id,
            user_channel_id=user_channel_id,
            channel_type=channel_type,
            active_chatbot_activation_id=activation_id,
            current_node_id=current_node_id,
            state_data=dict(state_data or {}),
            status=status,
            session_metadata={},
            created_at=now,
            last_interaction_at=last_interaction_at or now,
        )
        db_session.add(session)
        await db_session.commit()
        await db_session.refresh(session)
        return session

    return _create_session


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from crmbot.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """In-memory Redis replacement with the subset of the API the cache uses"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("crmbot.core.redis_client.get_redis", _get_fake_redis), \
         patch("crmbot.domain.services.graph_source.get_redis", _get_fake_redis):
        yield _fake
