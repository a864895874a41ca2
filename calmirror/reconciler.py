from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable

from calmirror.deletions import propagate_deletions
from calmirror.loader import ExistingState, load_existing_state
from calmirror.models import (
    CalendarEventLink,
    Provider,
    ScheduleDescriptor,
    StagedEvent,
    SyncConfig,
    SyncEventsResult,
    Task,
    TaskSchedule,
)
from calmirror.splitter import EventSchedulePlan, plan_event_schedule
from calmirror.state_store import StateStore, StoreSession, new_id


logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
SKIPPED = "skipped"


@dataclass
class ReconcileOutcome:
    action: str
    task: Task | None = None
    schedules: list[TaskSchedule] = field(default_factory=list)
    removed_schedule_ids: list[str] = field(default_factory=list)


def _task_name(event: StagedEvent, config: SyncConfig) -> str:
    return event.summary.strip() or config.untitled_event_name


def _task_details(event: StagedEvent) -> str | None:
    return event.description or None


def _ordered(schedules: Iterable[TaskSchedule]) -> list[TaskSchedule]:
    return sorted(schedules, key=lambda item: (item.date, item.start_time or ""))


def _content_matches(
    task: Task,
    schedules: list[TaskSchedule],
    event: StagedEvent,
    plan: EventSchedulePlan,
    config: SyncConfig,
) -> bool:
    if task.name != _task_name(event, config):
        return False
    if (task.details or None) != _task_details(event):
        return False
    if task.estimated_duration_minutes != plan.duration_minutes:
        return False
    if len(schedules) != len(plan.descriptors):
        return False
    return all(
        descriptor.matches(schedule)
        for schedule, descriptor in zip(_ordered(schedules), plan.descriptors)
    )


def assign_schedule_rows(
    existing: list[TaskSchedule],
    descriptors: Iterable[ScheduleDescriptor],
) -> tuple[list[tuple[TaskSchedule | None, ScheduleDescriptor]], list[TaskSchedule]]:
    """Pair each descriptor with an existing row to update in place.

    Rows on the descriptor's date are preferred; any remaining row is reused
    next, which is how a moved event keeps its schedule row id. Returns the
    pairs (row is None when a new row must be inserted) and the leftover rows.
    """
    descriptors = list(descriptors)
    remaining = _ordered(existing)
    pairs: list[TaskSchedule | None] = [None] * len(descriptors)

    for position, descriptor in enumerate(descriptors):
        for row in remaining:
            if row.date == descriptor.date:
                pairs[position] = row
                remaining.remove(row)
                break

    for position in range(len(descriptors)):
        if pairs[position] is None and remaining:
            pairs[position] = remaining.pop(0)

    return list(zip(pairs, descriptors)), remaining


def _link_for(
    event: StagedEvent,
    task: Task,
    schedule: TaskSchedule,
    provider: Provider,
) -> CalendarEventLink:
    return CalendarEventLink(
        id=new_id(),
        user_id=task.user_id,
        calendar_connection_id=event.calendar_connection_id,
        calendar_event_id=event.id,
        external_event_id=event.external_event_id,
        task_id=task.id,
        task_schedule_id=schedule.id,
        task_name=task.name,
        metadata={"provider": provider.value, "calendar_id": event.calendar_id},
    )


def _schedule_from(descriptor: ScheduleDescriptor, task: Task, schedule_id: str) -> TaskSchedule:
    return TaskSchedule(
        id=schedule_id,
        task_id=task.id,
        user_id=task.user_id,
        date=descriptor.date,
        start_time=descriptor.start_time,
        end_time=descriptor.end_time,
        duration_minutes=descriptor.duration_minutes,
    )


def create_from_event(
    session: StoreSession,
    *,
    event: StagedEvent,
    user_id: str,
    plan: EventSchedulePlan,
    state: ExistingState,
    provider: Provider,
    config: SyncConfig,
) -> ReconcileOutcome:
    task = Task(
        id=new_id(),
        user_id=user_id,
        name=_task_name(event, config),
        idx=state.next_idx(),
        details=_task_details(event),
        estimated_duration_minutes=plan.duration_minutes,
        priority=config.task_priority,
        is_calendar_event=True,
        calendar_event_id=event.id,
        is_detached=False,
    )
    session.insert_task(task)

    schedules: list[TaskSchedule] = []
    for descriptor in plan.descriptors:
        schedule = _schedule_from(descriptor, task, new_id())
        session.insert_schedule(schedule)
        session.upsert_link(_link_for(event, task, schedule, provider))
        schedules.append(schedule)

    logger.debug(
        "Created task %s with %d schedule row(s) from event %s",
        task.id,
        len(schedules),
        event.external_event_id,
    )
    return ReconcileOutcome(action=CREATED, task=task, schedules=schedules)


def update_from_event(
    session: StoreSession,
    *,
    event: StagedEvent,
    task: Task,
    existing_schedules: list[TaskSchedule],
    plan: EventSchedulePlan,
    provider: Provider,
    config: SyncConfig,
) -> ReconcileOutcome:
    if _content_matches(task, existing_schedules, event, plan, config):
        return ReconcileOutcome(action=UNCHANGED, task=task, schedules=list(existing_schedules))

    name = _task_name(event, config)
    details = _task_details(event)
    touched = session.update_task_content(
        task_id=task.id,
        user_id=task.user_id,
        name=name,
        details=details,
        estimated_duration_minutes=plan.duration_minutes,
    )
    if touched == 0:
        raise RuntimeError(f"task {task.id} is detached or no longer exists")
    updated_task = Task(
        id=task.id,
        user_id=task.user_id,
        name=name,
        idx=task.idx,
        plan_id=task.plan_id,
        details=details,
        estimated_duration_minutes=plan.duration_minutes,
        priority=task.priority,
        is_calendar_event=task.is_calendar_event,
        calendar_event_id=task.calendar_event_id,
        is_detached=False,
    )

    pairs, leftovers = assign_schedule_rows(existing_schedules, plan.descriptors)
    if leftovers:
        # Rows beyond what the event needs now (stale split halves, old duplicates).
        stray_ids = [row.id for row in leftovers]
        session.delete_links_for_schedules(stray_ids)
        session.delete_schedules(stray_ids)

    schedules: list[TaskSchedule] = []
    for row, descriptor in pairs:
        if row is None:
            schedule = _schedule_from(descriptor, updated_task, new_id())
            session.insert_schedule(schedule)
        else:
            schedule = _schedule_from(descriptor, updated_task, row.id)
            if not descriptor.matches(row):
                session.update_schedule(schedule)
        session.upsert_link(_link_for(event, updated_task, schedule, provider))
        schedules.append(schedule)

    logger.debug(
        "Updated task %s from event %s (%d row(s), %d stray removed)",
        task.id,
        event.external_event_id,
        len(schedules),
        len(leftovers),
    )
    return ReconcileOutcome(
        action=UPDATED,
        task=updated_task,
        schedules=schedules,
        removed_schedule_ids=[row.id for row in leftovers],
    )


def reconcile_event(
    session: StoreSession,
    *,
    event: StagedEvent,
    user_id: str,
    state: ExistingState,
    provider: Provider,
    config: SyncConfig,
    plan: EventSchedulePlan | None = None,
) -> ReconcileOutcome:
    if state.is_detached(event.id):
        return ReconcileOutcome(action=SKIPPED)
    if plan is None:
        plan = plan_event_schedule(event, config)
    existing = state.task_for(event.id)
    if existing is None:
        return create_from_event(
            session,
            event=event,
            user_id=user_id,
            plan=plan,
            state=state,
            provider=provider,
            config=config,
        )
    return update_from_event(
        session,
        event=event,
        task=existing,
        existing_schedules=state.schedules_for(existing.id),
        plan=plan,
        provider=provider,
        config=config,
    )


def _filter_calendars(events: list[StagedEvent], calendar_ids: Iterable[str]) -> list[StagedEvent]:
    wanted = {str(calendar_id).strip() for calendar_id in calendar_ids if str(calendar_id).strip()}
    if not wanted:
        return events
    return [event for event in events if event.calendar_id in wanted]


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        text = str(value or "").strip()
        if text:
            seen.setdefault(text, None)
    return list(seen)


def reconcile_connection(
    store: StateStore,
    *,
    connection_id: str,
    user_id: str,
    provider: Provider | str,
    calendar_ids: Iterable[str] = (),
    deleted_external_event_ids: Iterable[str] = (),
    config: SyncConfig | None = None,
    cancel_event: threading.Event | None = None,
) -> SyncEventsResult:
    """Mirror the staged events of one connection into tasks and schedules.

    The caller owns the ownership check and the per-connection lock. Every
    per-event failure is captured in the returned result; each event's writes
    run in their own transaction so a failure leaves no partial rows.
    """
    provider = Provider.parse(provider)
    config = config or SyncConfig()
    result = SyncEventsResult()

    with store.transaction() as session:
        events = session.list_active_events(connection_id)
        upstream_deleted = session.list_deleted_upstream_external_ids(connection_id)
        state = load_existing_state(session, connection_id, user_id)

    events = _filter_calendars(events, calendar_ids)
    logger.info(
        "Reconciling %d staged %s event(s) for connection %s",
        len(events),
        provider.value,
        connection_id,
    )

    for event in events:
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            logger.info("Reconciliation of connection %s cancelled", connection_id)
            break

        if state.is_detached(event.id):
            result.record_skipped()
            continue

        action = "update task" if state.task_for(event.id) else "create task"
        try:
            plan = plan_event_schedule(event, config)
            with store.transaction() as session:
                outcome = reconcile_event(
                    session,
                    event=event,
                    user_id=user_id,
                    state=state,
                    provider=provider,
                    config=config,
                    plan=plan,
                )
        except Exception as exc:
            logger.exception("Failed to %s for event %s", action, event.external_event_id)
            result.add_error(f"Failed to {action} for event {event.label}: {exc}")
            continue

        if outcome.task is not None:
            state.remember(outcome.task, outcome.schedules)
        if outcome.action == CREATED:
            result.record_created()
        elif outcome.action == UPDATED:
            result.record_updated()
        elif outcome.action == UNCHANGED:
            result.record_unchanged()
        else:
            result.record_skipped()

    deletion_ids = _dedupe([*deleted_external_event_ids, *upstream_deleted])
    propagate_deletions(
        store,
        connection_id=connection_id,
        user_id=user_id,
        external_event_ids=deletion_ids,
        result=result,
    )

    logger.info("Reconciled connection %s: %s", connection_id, result.summary())
    return result
