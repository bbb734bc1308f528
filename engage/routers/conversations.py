from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from engage.database import get_db
from engage.models import Conversation
from engage.schemas.conversation import ConversationActionRequest, ConversationActionResponse
from engage.services.conversation_service import ConversationActionError, apply_action

router = APIRouter()

ACTION_MESSAGES = {
    "take": "Agent took the conversation",
    "resolve": "Conversation resolved",
    "reopen": "Conversation reopened",
    "return_to_bot": "Conversation returned to bot",
}


@router.post("/conversations/{conversation_id}/actions", response_model=ConversationActionResponse)
def conversation_action(
    conversation_id: UUID,
    request: ConversationActionRequest,
    db: Session = Depends(get_db),
):
    """Agent action on a conversation (take/resolve/reopen/return_to_bot)."""
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")

    try:
        old_status, new_status = apply_action(db, conversation, request.action, request.agent_id)
    except ConversationActionError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=e.message)

    db.commit()

    return ConversationActionResponse(
        success=True,
        conversation_id=conversation.id,
        action=request.action,
        old_status=old_status,
        new_status=new_status,
        is_bot_active=conversation.is_bot_active,
        message=ACTION_MESSAGES.get(request.action),
    )
