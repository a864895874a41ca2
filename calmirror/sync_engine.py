from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Iterable

from calmirror.config_manager import ConfigManager
from calmirror.locks import ConnectionLocks
from calmirror.models import CalendarConnection, Provider, StagedEvent, SyncEventsResult
from calmirror.reconciler import reconcile_connection
from calmirror.state_store import StateStore, new_id


logger = logging.getLogger(__name__)

MAX_AUDITED_ERRORS = 20


class ConnectionAccessError(PermissionError):
    def __init__(self, connection_id: str, user_id: str) -> None:
        super().__init__("Connection not found or access denied")
        self.connection_id = connection_id
        self.user_id = user_id


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _run_status(result: SyncEventsResult) -> str:
    if result.cancelled:
        return "cancelled"
    return "success" if result.ok else "partial"


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        locks: ConnectionLocks | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.locks = locks or ConnectionLocks()

    def _require_owner(self, connection_id: str, user_id: str, action: str) -> None:
        if self.state_store.connection_belongs_to_user(connection_id, user_id):
            return
        logger.warning("Connection %s not found or not owned by user %s", connection_id, user_id)
        self.state_store.record_audit_event(
            connection_id=connection_id,
            subject=user_id,
            action="access_denied",
            details={"attempted": action},
        )
        raise ConnectionAccessError(connection_id, user_id)

    def register_connection(
        self,
        connection_id: str,
        user_id: str,
        provider: Provider | str,
        selected_calendar_ids: Iterable[str] = (),
    ) -> CalendarConnection:
        existing = self.state_store.get_connection(connection_id)
        if existing is not None and existing.user_id != user_id:
            raise ConnectionAccessError(connection_id, user_id)
        connection = CalendarConnection(
            id=connection_id,
            user_id=user_id,
            provider=Provider.parse(provider),
            selected_calendar_ids=[str(x).strip() for x in selected_calendar_ids if str(x).strip()],
        )
        self.state_store.upsert_connection(connection)
        return connection

    def stage_events(self, connection_id: str, user_id: str, payloads: Iterable[dict[str, Any]]) -> int:
        """Validate provider payloads once and persist them as staged events.

        Raises ValueError for a malformed payload; nothing is staged in that case.
        """
        self._require_owner(connection_id, user_id, "stage_events")
        events: list[StagedEvent] = []
        for payload in payloads:
            data = dict(payload)
            data.setdefault("id", new_id())
            data["calendar_connection_id"] = connection_id
            data["user_id"] = user_id
            events.append(StagedEvent.from_dict(data))
        count = self.state_store.stage_events(events)
        logger.info("Staged %d event(s) for connection %s", count, connection_id)
        return count

    def detach_task(self, task_id: str, user_id: str) -> bool:
        detached = self.state_store.set_task_detached(task_id, user_id, True)
        if detached:
            logger.info("Detached task %s from its calendar event", task_id)
            self.state_store.record_audit_event(
                connection_id="system",
                subject=task_id,
                action="detach_task",
                details={"user_id": user_id},
            )
        return detached

    def reconcile(
        self,
        connection_id: str,
        user_id: str,
        provider: Provider | str,
        calendar_ids: Iterable[str] = (),
        deleted_external_event_ids: Iterable[str] = (),
        *,
        trigger: str = "manual",
        cancel_event: threading.Event | None = None,
    ) -> SyncEventsResult:
        provider = Provider.parse(provider)
        self._require_owner(connection_id, user_id, "reconcile")
        calendar_ids = [str(x).strip() for x in calendar_ids if str(x).strip()]
        deleted_ids = list(deleted_external_event_ids)

        with self.locks.hold(connection_id):
            config = self.config_manager.load()
            if not calendar_ids:
                connection = self.state_store.get_connection(connection_id)
                if connection is not None:
                    calendar_ids = list(connection.selected_calendar_ids)

            started_at = datetime.now(timezone.utc)
            run_id = self.state_store.start_sync_run(trigger=trigger, connection_id=connection_id)
            try:
                result = reconcile_connection(
                    self.state_store,
                    connection_id=connection_id,
                    user_id=user_id,
                    provider=provider,
                    calendar_ids=calendar_ids,
                    deleted_external_event_ids=deleted_ids,
                    config=config.sync,
                    cancel_event=cancel_event,
                )
            except Exception as exc:
                error_message = f"{type(exc).__name__}: {exc}"
                logger.exception("Sync run %s for connection %s failed", run_id, connection_id)
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=_elapsed_ms(started_at),
                )
                self.state_store.record_audit_event(
                    run_id=run_id,
                    connection_id=connection_id,
                    subject="sync",
                    action="run_error",
                    details={
                        "trigger": trigger,
                        "provider": provider.value,
                        "error": error_message,
                        "traceback": traceback.format_exc(limit=5),
                    },
                )
                raise

            status = _run_status(result)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=result.summary(),
                duration_ms=_elapsed_ms(started_at),
                created=result.created,
                updated=result.updated,
                skipped=result.skipped,
                deleted=result.deleted,
                errors=len(result.errors),
            )
            details = result.to_dict()
            details["errors"] = details["errors"][:MAX_AUDITED_ERRORS]
            details.update({"trigger": trigger, "provider": provider.value, "user_id": user_id})
            self.state_store.record_audit_event(
                run_id=run_id,
                connection_id=connection_id,
                subject="sync",
                action=f"run_{status}",
                details=details,
            )
            return result
