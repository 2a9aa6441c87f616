import logging
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.decorators import async_cached, async_cached_expire
from app.cache.manager import CacheManager
from app.core.config import Settings
from app.models import QUADRANTS, Task, TaskCreate, TaskStats, TaskUpdate
from app.resilience.breaker import CircuitBreaker
from app.resilience.retry import retry_operation

logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, ConnectionError)
STATUSES = ("pending", "in_progress", "completed")


def _user_scope(self, *_, **__) -> str:
    return f"user:{self.user_id}:"


class TaskService:
    """
    Task CRUD for one caller. Every data-store round trip goes through the
    ``database`` breaker (with retries for transient errors); reads are
    cached in the ``main`` tier and writes invalidate the caller's entries.
    """

    def __init__(
        self,
        db: AsyncSession,
        user_id: str,
        cache: CacheManager,
        breaker: CircuitBreaker,
        settings: Settings,
    ):
        self.db = db
        self.user_id = user_id
        self.cache = cache
        self.breaker = breaker
        self.settings = settings

    async def _run(self, operation):
        async def attempt():
            try:
                return await operation()
            except DBAPIError:
                await self.db.rollback()
                raise

        return await self.breaker.execute(
            lambda: retry_operation(
                attempt,
                attempts=self.settings.database_retry_attempts,
                base_seconds=self.settings.database_retry_base_seconds,
                retry_on=TRANSIENT_DB_ERRORS,
            )
        )

    async def _get_owned(self, task_id: int) -> Task | None:
        task = await self.db.get(Task, task_id)
        if task is None or task.user_id != self.user_id:
            return None
        return task

    async def _next_task_number(self, quadrant: int) -> int:
        result = await self.db.exec(
            select(func.max(Task.task_number)).where(
                Task.user_id == self.user_id, Task.quadrant == quadrant
            )
        )
        return (result.one() or 0) + 1

    @async_cached_expire("main", _user_scope)
    async def create_task(self, task_data: TaskCreate):
        async def operation():
            task = Task.model_validate(
                task_data,
                update={
                    "user_id": self.user_id,
                    "task_number": await self._next_task_number(task_data.quadrant),
                },
            )
            self.db.add(task)
            await self.db.commit()
            await self.db.refresh(task)
            return task

        task = await self._run(operation)
        logger.info(f"Task created: {task.id} by user {self.user_id}")
        return task

    @async_cached("main", lambda self: f"user:{self.user_id}:tasks")
    async def get_tasks_by_quadrant(self):
        async def operation():
            query = (
                select(Task)
                .where(Task.user_id == self.user_id)
                .order_by(Task.created_at.desc())
            )
            result = await self.db.exec(query)
            return result.all()

        tasks = await self._run(operation)
        return {q: [task for task in tasks if task.quadrant == q] for q in QUADRANTS}

    @async_cached("main", lambda self, task_id: f"user:{self.user_id}:task:{task_id}", ttl=120)
    async def get_task(self, task_id: int):
        return await self._run(lambda: self._get_owned(task_id))

    @async_cached_expire("main", _user_scope)
    async def update_task(self, task_id: int, task_data: TaskUpdate):
        async def operation():
            task = await self._get_owned(task_id)
            if not task:
                return None
            now = datetime.now(timezone.utc)
            update_data = task_data.model_dump(exclude_unset=True)
            if update_data.get("status") == "completed" and task.status != "completed":
                update_data["completed_at"] = now
            task.sqlmodel_update(update_data)
            task.updated_at = now
            self.db.add(task)
            await self.db.commit()
            await self.db.refresh(task)
            return task

        return await self._run(operation)

    async def complete_task(self, task_id: int):
        return await self.update_task(task_id, TaskUpdate(status="completed"))

    @async_cached_expire("main", _user_scope)
    async def move_task(self, task_id: int, quadrant: int):
        async def operation():
            task = await self._get_owned(task_id)
            if not task:
                return None
            previous = task.quadrant
            task.task_number = await self._next_task_number(quadrant)
            task.quadrant = quadrant
            task.updated_at = datetime.now(timezone.utc)
            self.db.add(task)
            await self.db.commit()
            await self.db.refresh(task)
            logger.info(f"Task moved: {task_id} from Q{previous} to Q{quadrant} by user {self.user_id}")
            return task

        return await self._run(operation)

    @async_cached_expire("main", _user_scope)
    async def delete_task(self, task_id: int):
        async def operation():
            task = await self._get_owned(task_id)
            if not task:
                return False
            await self.db.delete(task)
            await self.db.commit()
            return True

        return await self._run(operation)

    @async_cached("main", lambda self: f"user:{self.user_id}:stats", ttl=60)
    async def get_stats(self):
        async def operation():
            result = await self.db.exec(select(Task).where(Task.user_id == self.user_id))
            return result.all()

        tasks = await self._run(operation)
        by_status = {s: sum(1 for t in tasks if t.status == s) for s in STATUSES}
        return TaskStats(
            total=len(tasks),
            completed=by_status["completed"],
            by_quadrant={q: sum(1 for t in tasks if t.quadrant == q) for q in QUADRANTS},
            by_status=by_status,
        )
