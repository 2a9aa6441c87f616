from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


QUADRANTS = (1, 2, 3, 4)
PRIORITY_PATTERN = "^(low|medium|high)$"
STATUS_PATTERN = "^(pending|in_progress|completed)$"


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=200, index=True)
    description: str | None = Field(default=None, max_length=1000)
    quadrant: int = Field(ge=1, le=4, index=True)
    priority: str = Field(default="medium", regex=PRIORITY_PATTERN)
    due_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    task_number: int = Field(default=1)
    status: str = Field(default="pending", regex=STATUS_PATTERN)
    completed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    pass


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    priority: str | None = Field(default=None, regex=PRIORITY_PATTERN)
    status: str | None = Field(default=None, regex=STATUS_PATTERN)
    due_date: datetime | None = None


class TaskMove(SQLModel):
    quadrant: int = Field(ge=1, le=4)


class TaskResponse(TaskBase):
    """Schema for task responses"""

    id: int
    task_number: int
    status: str
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class TaskStats(SQLModel):
    total: int
    completed: int
    by_quadrant: dict[int, int]
    by_status: dict[str, int]


class TaskAnalysis(SQLModel, table=True):
    """AI analysis results kept per user"""

    __tablename__ = "task_analysis"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    analysis_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class TaskSummary(SQLModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None


class AnalyzeRequest(SQLModel):
    """Task titles grouped by quadrant, as sent to the AI provider"""

    tasks: dict[int, list[TaskSummary]]


class PrioritizeRequest(SQLModel):
    task: TaskSummary


class ChatRequest(SQLModel):
    message: str = Field(min_length=3, max_length=2000)
    context: dict[str, Any] | None = None
