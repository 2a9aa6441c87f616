import hashlib
import json
import logging
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.manager import CacheManager
from app.core.errors import CircuitOpenError, OperationTimeoutError
from app.models import TaskAnalysis, TaskSummary
from app.resilience.breaker import CircuitBreaker
from app.services.ai_client import AIClient, AIProviderError

logger = logging.getLogger(__name__)

AI_TIER = "ai"
ANALYSIS_TTL = 300
PRIORITIZE_TTL = 180
CHAT_TTL = 120

PROVIDER_ERRORS = (CircuitOpenError, OperationTimeoutError, AIProviderError, httpx.HTTPError)

QUADRANT_LABELS = {
    1: "Urgent + Important",
    2: "Important + Not urgent",
    3: "Urgent + Not important",
    4: "Not urgent + Not important",
}

# Served when the provider is unreachable or the circuit is open
FALLBACK_ANALYSIS = {
    "priority_order": [
        "Do urgent and important tasks first",
        "Schedule important tasks",
        "Delegate urgent but unimportant tasks",
        "Drop tasks that are neither",
    ],
    "recommendations": ["Focus on quadrant 1", "Invest time in quadrant 2", "Delegate quadrant 3", "Eliminate quadrant 4"],
    "time_suggestions": ["6h-9h: quadrant 1", "9h-12h: quadrant 2", "14h-17h: quadrant 3", "Avoid: quadrant 4"],
    "insights": ["Keep the quadrants balanced", "Plan ahead to prevent urgent work"],
    "focus_areas": ["Time management", "Prioritization", "Removing distractions"],
}

# Used when the provider answered but not with valid JSON
DEFAULT_ANALYSIS = {
    "priority_order": ["Execute quadrant 1 first", "Plan quadrant 2", "Delegate quadrant 3", "Eliminate quadrant 4"],
    "recommendations": ["Focus on what is urgent and important", "Set time aside for planning"],
    "time_suggestions": ["Morning: quadrant 1", "Afternoon: quadrant 2", "End of day: quadrant 3"],
    "insights": ["Review the balance between quadrants"],
    "focus_areas": ["Time management", "Prioritization", "Delegation"],
}

DEFAULT_PRIORITY = {
    "suggested_quadrant": 2,
    "reasoning": "Needs manual review for an accurate classification",
    "urgency_level": "medium",
    "importance_level": "medium",
    "estimated_time": 30,
    "best_time_to_do": "During your most productive hours",
}


def _parse_json(text: str, default: dict) -> dict:
    cleaned = text.strip().removeprefix("```json").removeprefix("```").removesuffix("```").strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.error("Failed to parse AI response as JSON")
        return dict(default)
    return parsed if isinstance(parsed, dict) else dict(default)


class AIService:
    """AI suggestions for one caller, cached in the ``ai`` tier."""

    def __init__(
        self,
        client: AIClient,
        user_id: str,
        cache: CacheManager,
        db: AsyncSession,
        db_breaker: CircuitBreaker,
    ):
        self.client = client
        self.user_id = user_id
        self.cache = cache
        self.db = db
        self.db_breaker = db_breaker

    def _cache_key(self, kind: str, payload: Any) -> str:
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()
        return f"user:{self.user_id}:ai:{kind}:{digest[:32]}"

    async def analyze(self, tasks: dict[int, list[TaskSummary]]) -> dict:
        payload = {q: [t.model_dump() for t in items] for q, items in sorted(tasks.items())}
        key = self._cache_key("analyze", payload)
        cached = self.cache.get(AI_TIER, key)
        if cached is not None:
            return cached

        sections = "\n\n".join(
            f"QUADRANT {q} ({label}):\n"
            + ("\n".join(f"- {t['title']}" for t in payload.get(q, [])) or "No tasks")
            for q, label in QUADRANT_LABELS.items()
        )
        prompt = (
            "Analyze these Eisenhower Matrix tasks and answer with JSON only, using the keys "
            "priority_order, recommendations, time_suggestions, insights and focus_areas.\n\n"
            f"{sections}"
        )
        try:
            text = await self.client.generate(prompt)
        except PROVIDER_ERRORS as e:
            logger.error(f"AI analysis error: {e}")
            return {**FALLBACK_ANALYSIS, "degraded": True}

        analysis = _parse_json(text, DEFAULT_ANALYSIS)
        await self._save_analysis(analysis)
        self.cache.set(AI_TIER, key, analysis, ttl=ANALYSIS_TTL)
        logger.info(f"AI analysis performed for user {self.user_id}")
        return analysis

    async def prioritize(self, task: TaskSummary) -> dict:
        key = self._cache_key("prioritize", task.model_dump())
        cached = self.cache.get(AI_TIER, key)
        if cached is not None:
            return cached

        prompt = (
            "Suggest the Eisenhower Matrix quadrant for this task. Answer with JSON only, using the keys "
            "suggested_quadrant, reasoning, urgency_level, importance_level, estimated_time, best_time_to_do.\n\n"
            f'TASK: "{task.title}"\nDESCRIPTION: "{task.description or "No description"}"'
        )
        suggestion = _parse_json(await self.client.generate(prompt), DEFAULT_PRIORITY)
        self.cache.set(AI_TIER, key, suggestion, ttl=PRIORITIZE_TTL)
        return suggestion

    async def chat(self, message: str, context: dict | None = None) -> dict:
        key = self._cache_key("chat", {"message": message, "context": context})
        cached = self.cache.get(AI_TIER, key)
        if cached is not None:
            return cached

        prompt = (
            "You are a productivity assistant specialised in the Eisenhower Matrix. "
            "Answer concisely and practically, in at most 300 words.\n\n"
            f"USER CONTEXT: {json.dumps(context) if context else 'none'}\n"
            f'QUESTION: "{message}"'
        )
        text = await self.client.generate(prompt)
        response = {"message": text.strip()}
        self.cache.set(AI_TIER, key, response, ttl=CHAT_TTL)
        return response

    async def _save_analysis(self, analysis: dict) -> None:
        async def operation():
            self.db.add(TaskAnalysis(user_id=self.user_id, analysis_data=analysis))
            await self.db.commit()

        # the analysis is still returned to the caller when saving fails
        try:
            await self.db_breaker.execute(operation)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Save analysis error: {e}")
        except (CircuitOpenError, OperationTimeoutError) as e:
            logger.error(f"Save analysis error: {e}")

    async def history(self, limit: int = 10) -> list[TaskAnalysis]:
        async def operation():
            result = await self.db.exec(
                select(TaskAnalysis)
                .where(TaskAnalysis.user_id == self.user_id)
                .order_by(TaskAnalysis.created_at.desc())
                .limit(limit)
            )
            return result.all()

        return await self.db_breaker.execute(operation)
