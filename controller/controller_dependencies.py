# controller/controller_dependencies.py
from typing import Optional
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from core.entities import CallerIdentity
from core.rag_pipeline import RagPipeline
from service.chat_service import ChatService
from service.identity_service import IdentityService
from service.inspect_service import InspectService
from service.rag_state import RagState

_bearer = HTTPBearer(auto_error=False)


def get_rag_state(request: Request) -> RagState:
    return request.app.state.rag


def get_identity_service() -> IdentityService:
    return IdentityService()


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    identity: IdentityService = Depends(get_identity_service),
) -> CallerIdentity:
    token = credentials.credentials if credentials else None
    return await identity.verify(token)


def get_chat_service(state: RagState = Depends(get_rag_state)) -> ChatService:
    _pipeline = RagPipeline(state.pipeline_context())
    _service = ChatService(_pipeline)
    return _service


def get_inspect_service(state: RagState = Depends(get_rag_state)) -> InspectService:
    return InspectService(state.store, state.embedder, state.metrics)
