from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Body, Query
from fastapi.responses import StreamingResponse

from ...domain.errors import NotFoundError, SpinError, ValidationError
from ...domain.models import GenerateRequest
from ...infrastructure.conversation_store import get_conversation_store
from ...services.generation import GenerationService, format_sse


LOG = logging.getLogger("spin.api")

router = APIRouter(prefix="/anthropic", tags=["generate"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_generation_service() -> GenerationService:
    return GenerationService(store=get_conversation_store())


@router.post("")
async def generate(req: GenerateRequest = Body(...)):
    service = get_generation_service()
    # SpinError subclasses are rendered as {"error": ...} by the app handler.
    plan = await service.prepare(req)

    if req.streaming:
        async def event_stream() -> AsyncIterator[str]:
            async for event in service.stream(plan):
                yield format_sse(event)

        return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    try:
        result = await service.run(plan)
    except SpinError:
        raise
    except Exception as exc:
        LOG.exception("generation_failed")
        raise SpinError(str(exc) or "Generation failed") from exc
    return result.to_response().to_wire()


@router.get("")
async def history(
    user_id: Optional[str] = Query(None, alias="userId"),
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
):
    if not user_id:
        raise ValidationError("userId is required")
    store = get_conversation_store()
    try:
        if conversation_id:
            conversation = await store.get_conversation(conversation_id, user_id)
            return {"conversation": conversation.to_wire()}
        conversations = await store.list_conversations(user_id)
    except NotFoundError:
        raise
    except Exception as exc:
        LOG.exception("history_lookup_failed")
        raise SpinError("Failed to retrieve conversations") from exc
    return {"conversations": [c.to_wire() for c in conversations]}
