from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class Chat(BaseModel):
    """Conversation reference inside a Telegram message."""
    id: int


class Message(BaseModel):
    """Inbound text message (or edited message)."""
    message_id: Optional[int] = None
    chat: Chat
    text: Optional[str] = None


class CallbackQuery(BaseModel):
    """Inline button tap carrying an opaque `namespace:value[:value2]` payload."""
    id: str
    data: Optional[str] = None
    message: Optional[Message] = None


class Update(BaseModel):
    """Telegram webhook envelope; exactly one of the optional fields is set."""
    update_id: Optional[int] = None
    message: Optional[Message] = None
    edited_message: Optional[Message] = None
    callback_query: Optional[CallbackQuery] = None

    @property
    def kind(self) -> str:
        if self.callback_query is not None:
            return "callback_query"
        if self.message is not None:
            return "message"
        if self.edited_message is not None:
            return "edited_message"
        return "unknown"


class Verdict(BaseModel):
    """Judge decision between the canonical and the generated answer."""
    winner: Literal["canonical", "generated"]
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""


class IntentClassification(BaseModel):
    """Constrained classifier output; `intent` is validated against the catalog by the caller."""
    intent: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
