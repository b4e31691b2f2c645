"""Request and response models for the HTTP API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from converse_driver.models.llm import Message


class ConversationRequest(BaseModel):
    """Request model for conversation endpoint."""

    message: str = Field(..., min_length=1)
    conversation_id: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class ConversationResponse(BaseModel):
    """Response model for conversation endpoint."""

    response: str
    conversation_id: str
    round_trips: int = 0
    stop_reason: str | None = None


class ConversationHistoryResponse(BaseModel):
    """Response model for the conversation history endpoint."""

    conversation_id: str
    messages: list[Message]


class ErrorResponse(BaseModel):
    """Body returned when a turn fails."""

    error: str
    detail: str
    retryable: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
