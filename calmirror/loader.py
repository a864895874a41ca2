from __future__ import annotations

import logging
from dataclasses import dataclass, field

from calmirror.models import Task, TaskSchedule
from calmirror.state_store import StoreSession


logger = logging.getLogger(__name__)


@dataclass
class ExistingState:
    """Calendar-derived tasks of one connection, indexed by source event id."""

    tasks_by_event_id: dict[str, Task] = field(default_factory=dict)
    schedules_by_task_id: dict[str, list[TaskSchedule]] = field(default_factory=dict)
    detached_event_ids: set[str] = field(default_factory=set)
    duplicate_task_ids: list[str] = field(default_factory=list)
    max_idx: int = 0

    def next_idx(self) -> int:
        self.max_idx += 1
        return self.max_idx

    def task_for(self, calendar_event_id: str) -> Task | None:
        return self.tasks_by_event_id.get(calendar_event_id)

    def schedules_for(self, task_id: str) -> list[TaskSchedule]:
        return list(self.schedules_by_task_id.get(task_id, []))

    def is_detached(self, calendar_event_id: str) -> bool:
        return calendar_event_id in self.detached_event_ids

    def remember(self, task: Task, schedules: list[TaskSchedule]) -> None:
        if task.calendar_event_id:
            self.tasks_by_event_id[task.calendar_event_id] = task
        self.schedules_by_task_id[task.id] = list(schedules)


def load_existing_state(session: StoreSession, connection_id: str, user_id: str) -> ExistingState:
    state = ExistingState(max_idx=session.max_calendar_task_idx(user_id))
    for task in session.list_connection_tasks(connection_id, user_id):
        event_id = task.calendar_event_id
        if not event_id:
            continue
        if task.is_detached:
            state.detached_event_ids.add(event_id)
            continue
        if event_id in state.tasks_by_event_id:
            # Rows come ordered by idx, so the first one seen stays canonical.
            state.duplicate_task_ids.append(task.id)
            continue
        state.tasks_by_event_id[event_id] = task

    state.schedules_by_task_id = session.list_schedules_for_tasks(
        [task.id for task in state.tasks_by_event_id.values()]
    )
    if state.duplicate_task_ids:
        logger.warning(
            "Connection %s has %d duplicate calendar tasks; keeping the lowest idx per event",
            connection_id,
            len(state.duplicate_task_ids),
        )
    return state
