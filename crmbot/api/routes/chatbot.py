"""
Chatbot API Routes - web-chat turn entrypoint and session inspection
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.api.dependencies.auth import require_chatbot_api_key
from crmbot.core.exceptions import ValidationException
from crmbot.core.logging import get_logger
from crmbot.core.validation import TextSanitizer
from crmbot.db.database import get_db
from crmbot.domain.services.graph_source import GraphCache
from crmbot.state_machine.flow_engine import FlowEngine
from crmbot.state_machine.session_store import SessionStore
from crmbot.state_machine.states import TERMINAL_STATUSES, SessionStatus

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_chatbot_api_key)])


class MessageRequest(BaseModel):
    """One inbound user message from the web-chat widget"""
    tenant_id: str = Field(min_length=1, max_length=64)
    user_channel_id: str = Field(min_length=1, max_length=100)
    text: str
    channel_type: str = Field(default="webchat", min_length=1, max_length=20)

    @field_validator("text")
    @classmethod
    def sanitize_text(cls, v: str) -> str:
        cleaned = TextSanitizer.sanitize(v)
        if not cleaned:
            raise ValueError("Message text cannot be empty")
        return cleaned


class TurnResponse(BaseModel):
    responses: list[str]
    session_id: Optional[str]
    session_status: str
    is_new_conversation: bool


class MessageResponse(BaseModel):
    id: int
    content: str
    content_type: str
    is_from_user: bool
    node_id: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class SessionResponse(BaseModel):
    id: str
    tenant_id: str
    user_channel_id: str
    channel_type: str
    status: str
    current_node_id: Optional[str]
    state_data: dict[str, Any]
    last_interaction_at: Optional[datetime]

    model_config = {"from_attributes": True}


class EndSessionRequest(BaseModel):
    status: SessionStatus = SessionStatus.COMPLETED
    reason: Optional[str] = Field(default=None, max_length=200)

    @field_validator("status")
    @classmethod
    def must_be_terminal(cls, v: SessionStatus) -> SessionStatus:
        if v not in TERMINAL_STATUSES:
            raise ValueError("A session can only be ended with a terminal status")
        return v


class CacheInvalidateRequest(BaseModel):
    activation_id: str = Field(min_length=1, max_length=36)


@router.post("/message", response_model=TurnResponse)
async def post_message(
    payload: MessageRequest,
    db: AsyncSession = Depends(get_db),
) -> TurnResponse:
    """Run one conversation turn and return the bot's replies"""
    engine = FlowEngine(db)
    result = await engine.process_message(
        payload.tenant_id,
        payload.user_channel_id,
        payload.text,
        channel_type=payload.channel_type,
    )
    return TurnResponse(**result.to_dict())


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    session = await SessionStore(db).require_session(session_id)
    return SessionResponse.model_validate(session)


@router.get("/sessions/{session_id}/messages", response_model=list[MessageResponse])
async def get_session_messages(
    session_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[MessageResponse]:
    store = SessionStore(db)
    await store.require_session(session_id)
    messages = await store.get_messages(session_id, limit=limit, offset=offset)
    return [MessageResponse.model_validate(m) for m in messages]


@router.get("/sessions/{session_id}/analysis")
async def get_session_analysis(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await SessionStore(db).analyze_session(session_id)


@router.post("/sessions/{session_id}/end", response_model=SessionResponse)
async def end_session(
    session_id: str,
    payload: EndSessionRequest,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    """Close a session, e.g. when an agent takes the conversation over"""
    session = await SessionStore(db).end_session(
        session_id, status=payload.status, reason=payload.reason or "manual"
    )
    return SessionResponse.model_validate(session)


@router.post("/cache/invalidate")
async def invalidate_graph_cache(payload: CacheInvalidateRequest) -> dict[str, Any]:
    """Drop the cached graph of an activation after its template is republished"""
    if not payload.activation_id.strip():
        raise ValidationException("activation_id cannot be blank", field="activation_id")
    removed = await GraphCache().invalidate(payload.activation_id)
    logger.info(
        "Graph cache invalidated",
        extra_data={"activation_id": payload.activation_id, "removed": removed},
    )
    return {"activation_id": payload.activation_id, "invalidated": removed}
