from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.container import Resilience
from app.core.deps import get_current_user, get_resilience, rate_limit
from app.database import get_db
from app.models import AnalyzeRequest, ChatRequest, PrioritizeRequest, TaskAnalysis
from app.services.ai_client import AIClient
from app.services.ai_service import AIService

router = APIRouter(
    prefix="/api/ai",
    tags=["ai"],
    dependencies=[Depends(rate_limit("ai", operation="ai"))],
)


def get_ai_client(resilience: Resilience = Depends(get_resilience)) -> AIClient:
    return AIClient(resilience.outbound["ai"], resilience.settings)


async def get_ai_service(
    user_id: str = Depends(get_current_user),
    client: AIClient = Depends(get_ai_client),
    db: AsyncSession = Depends(get_db),
    resilience: Resilience = Depends(get_resilience),
) -> AIService:
    return AIService(client, user_id, resilience.cache, db, resilience.breakers["database"])


@router.post("/analyze")
async def analyze(body: AnalyzeRequest, service: AIService = Depends(get_ai_service)):
    """Analyze a batch of tasks; degrades to generic advice when the provider is down"""
    return await service.analyze(body.tasks)


@router.post("/prioritize")
async def prioritize(body: PrioritizeRequest, service: AIService = Depends(get_ai_service)):
    return await service.prioritize(body.task)


@router.post("/chat")
async def chat(body: ChatRequest, service: AIService = Depends(get_ai_service)):
    return await service.chat(body.message, body.context)


@router.get("/history", response_model=list[TaskAnalysis])
async def history(
    limit: int = Query(default=10, ge=1, le=100),
    service: AIService = Depends(get_ai_service),
):
    return await service.history(limit)
