from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel


Category = Literal["work", "personal", "shopping", "health", "other"]
Priority = Literal["low", "medium", "high"]

CATEGORIES: tuple[str, ...] = get_args(Category)
PRIORITIES: tuple[str, ...] = get_args(Priority)

Tag = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=30)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TodoCreate(CamelModel):
    task: str = Field(min_length=1, max_length=500)
    description: str = Field(default="", max_length=2000)
    category: Category
    priority: Priority = "medium"
    due_date: date | None = None
    tags: list[Tag] = Field(default_factory=list, max_length=10)

    @field_validator("task", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("due_date", mode="before")
    @classmethod
    def _blank_date_is_none(cls, value: Any) -> Any:
        # HTML date inputs submit "" when left empty.
        if isinstance(value, str) and not value.strip():
            return None
        return value


class Todo(CamelModel):
    id: int
    task: str
    description: str = ""
    category: Category
    priority: Priority
    due_date: date | None = None
    tags: list[str] = Field(default_factory=list)
    completed: bool = False
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TodoListResponse(CamelModel):
    total: int
    active: int
    completed: int
    todos: list[Todo]


class TodoCreatedResponse(CamelModel):
    success: bool = True
    entry: Todo


class TodoToggledResponse(CamelModel):
    success: bool = True
    todo: Todo


class SuccessResponse(CamelModel):
    success: bool = True


class InfoResponse(CamelModel):
    version: str
    deployment_time: datetime
    status: str = "running"
    total_todos: int
    completed_todos: int
    total_requests: int


class StatsResponse(CamelModel):
    total: int
    completed: int
    completion_rate: float
    by_category: dict[str, int]
    by_priority: dict[str, int]
    overdue: int


class HealthResponse(CamelModel):
    status: Literal["healthy"] = "healthy"
    uptime: float
    timestamp: datetime
