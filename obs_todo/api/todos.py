from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from obs_todo.api.dependencies import get_app_metrics, get_store
from obs_todo.models.schemas import (
    SuccessResponse,
    TodoCreatedResponse,
    TodoListResponse,
    TodoToggledResponse,
)
from obs_todo.observability.logging import log_event
from obs_todo.observability.metrics import AppMetrics
from obs_todo.services.todo_store import TodoStore

router = APIRouter(prefix="/api", tags=["todos"])


@router.get("/todos", response_model=TodoListResponse)
async def list_todos(
    search: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    completed: bool | None = None,
    store: TodoStore = Depends(get_store),
) -> TodoListResponse:
    todos = store.list_todos(search=search, category=category, priority=priority, completed=completed)
    counts = store.counts()
    log_event("info", "todos.listed", returned=len(todos), total=counts.total)
    return TodoListResponse(total=counts.total, active=counts.active, completed=counts.completed, todos=todos)


@router.post("/todos", status_code=201, response_model=TodoCreatedResponse)
async def create_todo(
    payload: Any = Body(default=None),
    store: TodoStore = Depends(get_store),
    metrics: AppMetrics = Depends(get_app_metrics),
) -> TodoCreatedResponse:
    todo = store.create(payload)

    metrics.todos_created_total.inc((todo.priority,))
    metrics.refresh_todo_gauges(store)

    log_event("info", "todo.created", todo_id=todo.id, category=todo.category, priority=todo.priority)
    return TodoCreatedResponse(entry=todo)


@router.put("/todos/{todo_id}/toggle", response_model=TodoToggledResponse)
async def toggle_todo(
    todo_id: int,
    store: TodoStore = Depends(get_store),
    metrics: AppMetrics = Depends(get_app_metrics),
) -> TodoToggledResponse:
    todo = store.toggle(todo_id)

    # Toggle always flips, so completed now means it just went false -> true.
    if todo.completed:
        metrics.todos_completed_total.inc((todo.priority,))
    metrics.refresh_todo_gauges(store)

    log_event("info", "todo.toggled", todo_id=todo.id, completed=todo.completed)
    return TodoToggledResponse(todo=todo)


@router.delete("/todos/{todo_id}", response_model=SuccessResponse)
async def delete_todo(
    todo_id: int,
    store: TodoStore = Depends(get_store),
    metrics: AppMetrics = Depends(get_app_metrics),
) -> SuccessResponse:
    store.delete(todo_id)

    metrics.todos_deleted_total.inc()
    metrics.refresh_todo_gauges(store)

    log_event("info", "todo.deleted", todo_id=todo_id)
    return SuccessResponse()
