from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from obs_todo.errors import FieldError, NotFoundError, ValidationError
from obs_todo.models.schemas import CATEGORIES, PRIORITIES, Todo, TodoCreate


@dataclass(frozen=True)
class TodoCounts:
    total: int
    active: int
    completed: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _field_errors(exc: PydanticValidationError) -> list[FieldError]:
    """One message per offending field, first error wins."""

    errors: dict[str, str] = {}
    for err in exc.errors():
        loc = err.get("loc") or ()
        field = str(loc[0]) if loc else "body"
        errors.setdefault(field, err.get("msg", "Invalid value"))
    return [FieldError(field=field, message=message) for field, message in errors.items()]


class TodoStore:
    """Process-local todo storage keyed by an incrementing integer id.

    Ids are never reused, even after a delete. All public methods return copies,
    so callers can't mutate stored records behind the store's back.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._lock = Lock()
        self._todos: dict[int, Todo] = {}
        self._next_id = 1
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._todos)

    def create(self, data: Any) -> Todo:
        try:
            payload = TodoCreate.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(_field_errors(exc)) from exc

        with self._lock:
            now = self._clock()
            todo = Todo(
                id=self._next_id,
                created_at=now,
                updated_at=now,
                **payload.model_dump(),
            )
            self._next_id += 1
            self._todos[todo.id] = todo

        return todo.model_copy(deep=True)

    def get(self, todo_id: int) -> Todo:
        with self._lock:
            return self._require(todo_id).model_copy(deep=True)

    def list_todos(
        self,
        *,
        search: str | None = None,
        category: str | None = None,
        priority: str | None = None,
        completed: bool | None = None,
    ) -> list[Todo]:
        """Todos matching every supplied filter, newest first."""

        needle = search.strip().lower() if search else ""
        with self._lock:
            todos = [todo.model_copy(deep=True) for todo in self._todos.values()]

        matches = []
        for todo in todos:
            if needle and needle not in f"{todo.task} {todo.description}".lower():
                continue
            if category and todo.category != category:
                continue
            if priority and todo.priority != priority:
                continue
            if completed is not None and todo.completed != completed:
                continue
            matches.append(todo)

        # Ids are handed out in creation order.
        matches.sort(key=lambda t: t.id, reverse=True)
        return matches

    def toggle(self, todo_id: int) -> Todo:
        with self._lock:
            todo = self._require(todo_id)
            now = self._clock()
            todo.completed = not todo.completed
            todo.completed_at = now if todo.completed else None
            todo.updated_at = now
            return todo.model_copy(deep=True)

    def delete(self, todo_id: int) -> Todo:
        with self._lock:
            todo = self._require(todo_id)
            del self._todos[todo_id]
        return todo

    def counts(self) -> TodoCounts:
        with self._lock:
            total = len(self._todos)
            completed = sum(1 for t in self._todos.values() if t.completed)
        return TodoCounts(total=total, active=total - completed, completed=completed)

    def active_by_category(self) -> dict[str, int]:
        return self._active_by("category", CATEGORIES)

    def active_by_priority(self) -> dict[str, int]:
        return self._active_by("priority", PRIORITIES)

    def overdue_count(self, today: date) -> int:
        with self._lock:
            return sum(
                1
                for t in self._todos.values()
                if not t.completed and t.due_date is not None and t.due_date < today
            )

    def _active_by(self, attribute: str, keys: tuple[str, ...]) -> dict[str, int]:
        counts = dict.fromkeys(keys, 0)
        with self._lock:
            for todo in self._todos.values():
                if not todo.completed:
                    counts[getattr(todo, attribute)] += 1
        return counts

    def _require(self, todo_id: int) -> Todo:
        todo = self._todos.get(todo_id)
        if todo is None:
            raise NotFoundError("Todo not found")
        return todo
