from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from portal.api.chat_user import get_current_chat_user, require_secondary_db
from portal.db.secondary_models import ChatConversation, ChatMessage, ChatUser

router = APIRouter(prefix="/messages", tags=["messages"])

PAGE_SIZE = 20


class MessageCreateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=8000)
    topic: Optional[str] = Field(default=None, max_length=120)


class MessageItem(BaseModel):
    id: int
    conversation_id: int
    role: str
    text: str
    topic: Optional[str] = None
    created_at: datetime


class MessageListResponse(BaseModel):
    items: list[MessageItem]
    has_more: bool


def _to_item(row: ChatMessage) -> MessageItem:
    # Assistant replies are stored in `message`, user turns in `content`.
    body = row.message if row.role == "assistant" else row.content
    return MessageItem(
        id=row.id,
        conversation_id=row.conversation_id,
        role=row.role,
        text=body or "",
        topic=row.topic,
        created_at=row.created_at,
    )


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def get_or_create_conversation(secondary_db: Session, chat_user: ChatUser) -> ChatConversation:
    conversation = (
        secondary_db.query(ChatConversation)
        .filter(ChatConversation.user_id == chat_user.id)
        .order_by(ChatConversation.started_at.desc(), ChatConversation.id.desc())
        .first()
    )
    if conversation:
        return conversation
    conversation = ChatConversation(user_id=chat_user.id, started_at=datetime.utcnow())
    secondary_db.add(conversation)
    secondary_db.flush()
    return conversation


@router.get("", response_model=MessageListResponse)
def list_messages(
    before: Optional[datetime] = Query(default=None),
    limit: int = Query(default=PAGE_SIZE, ge=1, le=100),
    chat_user: ChatUser = Depends(get_current_chat_user),
    secondary_db: Session = Depends(require_secondary_db),
) -> MessageListResponse:
    query = (
        secondary_db.query(ChatMessage)
        .join(ChatConversation, ChatMessage.conversation_id == ChatConversation.id)
        .filter(ChatConversation.user_id == chat_user.id)
    )
    if before is not None:
        query = query.filter(ChatMessage.created_at < _to_naive_utc(before))
    rows = query.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(limit + 1).all()
    return MessageListResponse(items=[_to_item(row) for row in rows[:limit]], has_more=len(rows) > limit)


@router.post("", response_model=MessageItem, status_code=status.HTTP_201_CREATED)
def send_message(
    payload: MessageCreateRequest,
    chat_user: ChatUser = Depends(get_current_chat_user),
    secondary_db: Session = Depends(require_secondary_db),
) -> MessageItem:
    conversation = get_or_create_conversation(secondary_db, chat_user)
    row = ChatMessage(
        conversation_id=conversation.id,
        role="user",
        content=payload.content.strip(),
        topic=(payload.topic or "").strip() or None,
        created_at=datetime.utcnow(),
    )
    secondary_db.add(row)
    secondary_db.commit()
    secondary_db.refresh(row)
    return _to_item(row)
