# controller/inspect_controller.py
from fastapi import APIRouter, Depends
from fastapi_limiter.depends import RateLimiter
from config.settings import settings
from model.api import InspectRequest, InspectResponse, StatsResponse, RequestCounts
from service.inspect_service import InspectService
from service.rag_state import RagState
from util.constants import InternalURIs, SourceType
from controller.controller_dependencies import get_inspect_service, get_rag_state

inspect_router = APIRouter(
    dependencies=[
        Depends(
            RateLimiter(
                times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS
            )
        )
    ]
)


@inspect_router.post(InternalURIs.INSPECT_VECTORS, response_model=InspectResponse)
async def inspect_vectors(
    payload: InspectRequest,
    service: InspectService = Depends(get_inspect_service),
) -> InspectResponse:
    return await service.inspect(payload)


@inspect_router.get(InternalURIs.STATS, response_model=StatsResponse)
async def stats(state: RagState = Depends(get_rag_state)) -> StatsResponse:
    return StatsResponse(
        documents=await state.store.count(),
        reference_documents=await state.store.count_by_source(
            SourceType.REFERENCE_CORPUS
        ),
        requests=RequestCounts(**state.metrics.snapshot()),
    )
