from __future__ import annotations

import logging
from typing import Callable, Iterable, TypeVar

from calmirror.models import SyncEventsResult
from calmirror.state_store import StateStore, StoreSession


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run_step(
    store: StateStore,
    result: SyncEventsResult | None,
    description: str,
    step: Callable[[StoreSession], T],
    default: T,
) -> T:
    try:
        with store.transaction() as session:
            return step(session)
    except Exception as exc:
        logger.exception("Failed to %s", description)
        if result is not None:
            result.add_error(f"Failed to {description}: {exc}")
        return default


def propagate_deletions(
    store: StateStore,
    *,
    connection_id: str,
    user_id: str,
    external_event_ids: Iterable[str],
    result: SyncEventsResult | None = None,
) -> int:
    """Hard-delete the tasks, schedules and links derived from deleted events.

    Every statement is scoped to ``connection_id`` / ``user_id``. Detached
    tasks are left alone. Each sub-step commits on its own so a failing step
    does not prevent the following ones, but a staged row outlives the
    step only while a task derived from it survives, so a retry can reach
    that task again. Returns the number of tasks removed.
    """
    external_ids = [str(value).strip() for value in external_event_ids if str(value).strip()]
    if not external_ids:
        return 0

    events = _run_step(
        store,
        result,
        f"look up deleted events for connection {connection_id}",
        lambda session: session.list_events_by_external_ids(connection_id, external_ids),
        [],
    )
    if not events:
        logger.debug("No staged events match %d deleted id(s) on %s", len(external_ids), connection_id)
        return 0
    event_ids = [event.id for event in events]

    tasks = _run_step(
        store,
        result,
        "find tasks for deleted events",
        lambda session: session.find_tasks_for_events(user_id, event_ids),
        [],
    )
    task_ids = [task.id for task in tasks]

    tasks_deleted = 0
    if task_ids:
        _run_step(
            store,
            result,
            "delete calendar event links for deleted events",
            lambda session: session.delete_links_for_tasks(user_id, task_ids),
            0,
        )
        schedules_deleted = _run_step(
            store,
            result,
            "delete task schedules for deleted events",
            lambda session: session.delete_schedules_for_tasks(user_id, task_ids),
            0,
        )
        tasks_deleted = _run_step(
            store,
            result,
            "delete tasks for deleted events",
            lambda session: session.delete_tasks(user_id, task_ids),
            0,
        )
        logger.info(
            "Removed %d task(s) and %d schedule row(s) for deleted events on %s",
            tasks_deleted,
            schedules_deleted,
            connection_id,
        )

    def delete_released_events(session: StoreSession) -> int:
        # A staged row is the only path back to its tasks; keep it while any remain.
        pending = {task.calendar_event_id for task in session.find_tasks_for_events(user_id, event_ids)}
        if pending:
            logger.warning(
                "Keeping %d staged event(s) on %s until their tasks are removed", len(pending), connection_id
            )
        return session.delete_staged_events(connection_id, [e for e in event_ids if e not in pending])

    events_deleted = _run_step(store, result, "delete staged calendar events", delete_released_events, 0)
    logger.info(
        "Handled %d deleted event id(s) on %s: %d staged row(s) removed",
        len(external_ids),
        connection_id,
        events_deleted,
    )

    if result is not None:
        result.record_deleted(tasks_deleted)
    return tasks_deleted
