from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import SettingsDep
from app.core.container import Resilience
from app.core.deps import circuit_headers, get_current_user, get_resilience, rate_limit
from app.database import get_db
from app.models import TaskCreate, TaskMove, TaskResponse, TaskStats, TaskUpdate
from app.services.task_service import TaskService

router = APIRouter(
    prefix="/api/tasks",
    tags=["tasks"],
    dependencies=[Depends(rate_limit("tasks")), Depends(circuit_headers("database"))],
)


async def get_task_service(
    settings: SettingsDep,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    resilience: Resilience = Depends(get_resilience),
) -> TaskService:
    return TaskService(db, user_id, resilience.cache, resilience.breakers["database"], settings)


def _not_found(task_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Task with id {task_id} not found",
    )


@router.get("/", response_model=dict[int, list[TaskResponse]])
async def get_tasks(service: TaskService = Depends(get_task_service)):
    """Get the caller's tasks grouped by quadrant"""
    return await service.get_tasks_by_quadrant()


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, service: TaskService = Depends(get_task_service)):
    """Create a new task"""
    return await service.create_task(task_data)


@router.get("/stats", response_model=TaskStats)
async def get_stats(service: TaskService = Depends(get_task_service)):
    return await service.get_stats()


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: int, service: TaskService = Depends(get_task_service)):
    """Get a specific task by ID"""

    task = await service.get_task(task_id)

    if not task:
        raise _not_found(task_id)
    return task


@router.api_route("/{task_id}", methods=["PUT", "PATCH"], response_model=TaskResponse)
async def update_task(
    task_id: int, task_data: TaskUpdate, service: TaskService = Depends(get_task_service)
):
    task = await service.update_task(task_id, task_data)
    if not task:
        raise _not_found(task_id)
    return task


@router.patch("/{task_id}/move", response_model=TaskResponse)
async def move_task(
    task_id: int, move: TaskMove, service: TaskService = Depends(get_task_service)
):
    """Move a task to another quadrant"""
    task = await service.move_task(task_id, move.quadrant)
    if not task:
        raise _not_found(task_id)
    return task


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: int, service: TaskService = Depends(get_task_service)):
    """Delete a task"""
    result = await service.delete_task(task_id)

    if not result:
        raise _not_found(task_id)


@router.post("/{task_id}/complete", response_model=TaskResponse)
async def mark_task_complete(task_id: int, service: TaskService = Depends(get_task_service)):
    """Mark a task as completed"""
    task = await service.complete_task(task_id)
    if not task:
        raise _not_found(task_id)
    return task
