from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel


class ConversationActionRequest(BaseModel):
    action: Literal["take", "resolve", "reopen", "return_to_bot"]
    agent_id: Optional[str] = None


class ConversationActionResponse(BaseModel):
    success: bool
    conversation_id: UUID
    action: str
    old_status: str
    new_status: str
    is_bot_active: bool
    message: Optional[str] = None
