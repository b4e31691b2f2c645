"""API endpoints for the conversation driver service."""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from converse_driver import __version__
from converse_driver.errors import (
    DriverError,
    EndpointError,
    IterationLimitExceeded,
    UnsupportedParameterError,
)
from converse_driver.models.conversation import (
    ConversationHistoryResponse,
    ConversationRequest,
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
)
from converse_driver.models.llm import InferenceParams
from converse_driver.services.conversation import (
    ConversationNotFoundError,
    ConversationService,
    get_conversation_service,
)
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def error_response(error: DriverError) -> JSONResponse:
    """Map a driver failure onto an HTTP response."""
    extra: dict[str, Any] = {}
    retryable = False

    if isinstance(error, EndpointError):
        retryable = error.retryable
        extra = {"status_code": error.status_code, "retry_after": error.retry_after}
    elif isinstance(error, UnsupportedParameterError):
        extra = {"parameter": error.parameter}
    elif isinstance(error, IterationLimitExceeded):
        extra = {"limit": error.limit}

    body = ErrorResponse(error=type(error).__name__, detail=str(error), retryable=retryable, extra=extra)
    headers = None
    if isinstance(error, EndpointError) and error.retry_after is not None:
        headers = {"Retry-After": str(int(error.retry_after))}
    return JSONResponse(status_code=error.http_status, content=body.model_dump(), headers=headers)


@router.post(
    "/conversation",
    response_model=ConversationResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Conversation"],
)
async def handle_conversation(
    request: ConversationRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationResponse | JSONResponse:
    """Send a message and run the turn until the model produces an answer.

    A new conversation is created when ``conversation_id`` is omitted.
    """
    inference_params = None
    if request.temperature is not None or request.max_tokens is not None:
        inference_params = InferenceParams(temperature=request.temperature, max_tokens=request.max_tokens)

    try:
        logger.info(f"Processing message for conversation {request.conversation_id}: {request.message[:50]}...")
        conversation, result = await service.process_message(
            request.message, request.conversation_id, inference_params
        )
    except ConversationNotFoundError as e:
        logger.warning(f"Invalid conversation ID provided: {request.conversation_id}")
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        logger.warning(f"Message validation error for conversation {request.conversation_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e
    except DriverError as e:
        logger.error(f"Turn failed for conversation {request.conversation_id}: {e}", exc_info=True)
        return error_response(e)

    logger.info(f"Generated response for conversation {conversation.conversation_id}: {result.text[:50]}...")
    return ConversationResponse(
        response=result.text,
        conversation_id=conversation.conversation_id,
        round_trips=result.round_trips,
        stop_reason=result.stop_reason,
    )


@router.get(
    "/conversation/{conversation_id}/messages",
    response_model=ConversationHistoryResponse,
    tags=["Conversation"],
)
async def get_conversation_messages(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationHistoryResponse:
    """Return the committed message history of a conversation."""
    try:
        conversation = service.get_conversation(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return ConversationHistoryResponse(conversation_id=conversation_id, messages=list(conversation.messages))


@router.delete("/conversation/{conversation_id}", status_code=204, tags=["Conversation"])
async def delete_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> None:
    if not service.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail=f"Unknown conversation: {conversation_id}")
    logger.info(f"Deleted conversation {conversation_id}")


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
