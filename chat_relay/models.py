"""Request, upstream payload and error models for the chat relay."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, StrictStr

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    role: Role
    content: StrictStr


class ChatRequest(BaseModel):
    """Incoming chat request from the browser client."""

    messages: List[ChatMessage] = Field(..., description="Conversation messages")


class UpstreamPayload(BaseModel):
    """Outbound body for the upstream chat-completions endpoint."""

    model: str
    messages: List[ChatMessage]
    temperature: float
    stream: Literal[True] = True


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: str
    detail: Optional[str] = None
