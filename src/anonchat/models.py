"""Data models and schemas for the anonchat proxy."""

from typing import List, Optional
from pydantic import BaseModel, Field


class Message(BaseModel):
    """Chat message model."""
    role: str
    content: str


class ChatCompletionRequest(BaseModel):
    """Request model for chat completions."""
    messages: List[Message] = Field(min_length=1)
    stream: Optional[bool] = False
    conversation_id: Optional[str] = None
    model: Optional[str] = None


class Delta(BaseModel):
    """Delta model for streaming responses."""
    content: str = ""


class ResponseMessage(BaseModel):
    role: str = "assistant"
    content: str


class ChunkChoice(BaseModel):
    index: int = 0
    delta: Delta
    finish_reason: Optional[str] = None


class Choice(BaseModel):
    """Choice model for chat completions."""
    index: int = 0
    message: ResponseMessage
    finish_reason: Optional[str] = "stop"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionChunk(BaseModel):
    """One server-sent event of a streamed chat completion."""
    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    conversation_id: Optional[str] = None
    choices: List[ChunkChoice]


class ChatCompletionResponse(BaseModel):
    """Response model for chat completions."""
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    conversation_id: Optional[str] = None
    choices: List[Choice]
    usage: Usage = Field(default_factory=Usage)
