from __future__ import annotations

from fastapi import Request

from obs_todo.config import Settings
from obs_todo.observability.metrics import AppMetrics
from obs_todo.services.todo_store import TodoStore


def get_store(request: Request) -> TodoStore:
    return request.app.state.store


def get_app_metrics(request: Request) -> AppMetrics:
    return request.app.state.metrics


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
