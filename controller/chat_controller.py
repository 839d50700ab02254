# controller/chat_controller.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from fastapi_limiter.depends import RateLimiter
from config.settings import settings
from core.entities import CallerIdentity, PipelineRequest
from model.api import ChatRequest
from service.chat_service import ChatService
from util.constants import InternalURIs
from controller.controller_dependencies import get_caller, get_chat_service

chat_router = APIRouter(
    dependencies=[
        Depends(
            RateLimiter(
                times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS
            )
        )
    ]
)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@chat_router.post(InternalURIs.CHAT)
async def chat(
    payload: ChatRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    service: ChatService = Depends(get_chat_service),
):
    generator = service.stream_chat(
        PipelineRequest(message=payload.message, user_id=caller.user_id),
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        generator, media_type="text/event-stream", headers=SSE_HEADERS
    )
