"""
PostgreSQL-backed repository.

All statements go through the shared asyncpg pool in `storage.db`. The
claim protocol relies on single conditional UPDATE statements whose command
tag is checked, so two workers can never lock the same task.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from smart_schedule.models import (
    AVAILABLE_ANALYSIS_STATUSES,
    AnalyzableTask,
    Event,
    Notification,
    ParsingRule,
    ScheduleAnalysis,
    ScheduleEntry,
    ScheduleImport,
    ScheduleSlot,
    ScheduleTemplate,
    TaskSource,
)
from storage import db
from storage.repository import CLAIM_FIELDS, ScheduleRepository, TaskKey

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

TASK_TABLES: Dict[str, str] = {"event": "events", "entry": "schedule_entries"}
TASK_MODELS: Dict[str, Type[AnalyzableTask]] = {"event": Event, "entry": ScheduleEntry}


def _task_table(source: str) -> str:
    try:
        return TASK_TABLES[source]
    except KeyError:
        raise ValueError(f"unknown task source: {source}")


class PostgresRepository(ScheduleRepository):

    # helpers

    async def _insert(self, table: str, model: M) -> M:
        data = model.model_dump(exclude={"id"})
        cols = ", ".join(data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
        row = await db.fetchrow(
            f"INSERT INTO {table} ({cols}) VALUES ({placeholders}) RETURNING *",
            *data.values(),
        )
        return type(model)(**dict(row))

    async def _insert_many(self, table: str, models: Sequence[M]) -> List[M]:
        out: List[M] = []
        async with db.transaction() as conn:
            for model in models:
                data = model.model_dump(exclude={"id"})
                cols = ", ".join(data)
                placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
                row = await conn.fetchrow(
                    f"INSERT INTO {table} ({cols}) VALUES ({placeholders}) RETURNING *",
                    *data.values(),
                )
                out.append(type(model)(**dict(row)))
        return out

    async def _update(self, table: str, model: BaseModel, exclude: set = frozenset()) -> None:
        data = model.model_dump(exclude={"id", *exclude})
        sets = ", ".join(f"{col} = ${i}" for i, col in enumerate(data, start=2))
        status = await db.execute(
            f"UPDATE {table} SET {sets} WHERE id = $1", model.id, *data.values()
        )
        if db.affected_rows(status) != 1:
            raise KeyError(f"{type(model).__name__} {model.id} is not stored")

    async def _get(self, table: str, cls: Type[M], key: int) -> Optional[M]:
        row = await db.fetchrow(f"SELECT * FROM {table} WHERE id = $1", key)
        return cls(**dict(row)) if row else None

    # imports

    async def create_import(self, imp: ScheduleImport) -> ScheduleImport:
        return await self._insert("schedule_imports", imp)

    async def save_import(self, imp: ScheduleImport) -> None:
        await self._update("schedule_imports", imp, exclude={"raw_content"})

    async def get_import(self, import_id: int) -> Optional[ScheduleImport]:
        return await self._get("schedule_imports", ScheduleImport, import_id)

    # entries

    async def add_entries(self, entries: Sequence[ScheduleEntry]) -> List[ScheduleEntry]:
        return await self._insert_many("schedule_entries", entries)

    async def save_entry(self, entry: ScheduleEntry) -> None:
        await self._update("schedule_entries", entry, exclude=CLAIM_FIELDS)

    async def get_entry(self, entry_id: int) -> Optional[ScheduleEntry]:
        return await self._get("schedule_entries", ScheduleEntry, entry_id)

    async def list_entries(self, import_id: int) -> List[ScheduleEntry]:
        rows = await db.fetch(
            "SELECT * FROM schedule_entries WHERE import_id = $1 ORDER BY row_number, id",
            import_id,
        )
        return [ScheduleEntry(**dict(r)) for r in rows]

    async def find_conversion_candidates(
        self,
        user_id: int,
        min_confidence: float,
        import_id: Optional[int] = None,
        entry_ids: Optional[Sequence[int]] = None,
    ) -> List[ScheduleEntry]:
        where = [
            "user_id = $1",
            "processing_status = 'parsed'",
            "conversion_status IN ('pending', 'failed')",
            "NOT manual_review_required",
            "ai_confidence >= $2",
        ]
        args: List[Any] = [user_id, min_confidence]
        if import_id is not None:
            args.append(import_id)
            where.append(f"import_id = ${len(args)}")
        if entry_ids is not None:
            args.append(list(entry_ids))
            where.append(f"id = ANY(${len(args)}::bigint[])")

        rows = await db.fetch(
            f"SELECT * FROM schedule_entries WHERE {' AND '.join(where)} ORDER BY id",
            *args,
        )
        return [ScheduleEntry(**dict(r)) for r in rows]

    # events

    async def create_event(self, event: Event) -> Event:
        return await self._insert("events", event)

    async def get_event(self, event_id: int) -> Optional[Event]:
        return await self._get("events", Event, event_id)

    async def save_event(self, event: Event) -> None:
        await self._update("events", event, exclude=CLAIM_FIELDS)

    # analyzable tasks

    async def get_task(self, source: TaskSource, task_id: int) -> Optional[AnalyzableTask]:
        return await self._get(_task_table(source), TASK_MODELS[source], task_id)

    async def list_tasks(self, user_id: int, include_locked: bool = False) -> List[AnalyzableTask]:
        out: List[AnalyzableTask] = []
        for source in ("event", "entry"):
            query = f"SELECT * FROM {_task_table(source)} WHERE user_id = $1"
            if not include_locked:
                query += " AND NOT ai_analysis_locked"
            rows = await db.fetch(query + " ORDER BY id", user_id)
            out.extend(TASK_MODELS[source](**dict(r)) for r in rows)
        return out

    async def try_claim(
        self, source: TaskSource, task_id: int, batch_id: str, claimed_at: datetime
    ) -> bool:
        query = f"""
            UPDATE {_task_table(source)}
            SET ai_analysis_locked = TRUE,
                ai_analysis_status = 'in_progress',
                ai_analysis_batch_id = $2,
                ai_analysis_claimed_at = $3
            WHERE id = $1
              AND NOT ai_analysis_locked
              AND ai_analysis_status = ANY($4::text[])
        """
        result = await db.execute(
            query, task_id, batch_id, claimed_at, list(AVAILABLE_ANALYSIS_STATUSES)
        )
        return result == "UPDATE 1"

    async def finish_analysis(
        self,
        source: TaskSource,
        task_id: int,
        status: str,
        result: Optional[Dict[str, Any]],
        finished_at: datetime,
        batch_id: Optional[str] = None,
    ) -> bool:
        query = f"""
            UPDATE {_task_table(source)}
            SET ai_analysis_status = $2,
                ai_analysis_locked = FALSE,
                ai_analysis_result = $3,
                ai_analyzed_at = $4
            WHERE id = $1
              AND ai_analysis_status = 'in_progress'
              AND ($5::text IS NULL OR ai_analysis_batch_id = $5)
        """
        tag = await db.execute(query, task_id, status, result, finished_at, batch_id)
        return tag == "UPDATE 1"

    async def reset_analysis(self, source: TaskSource, task_id: int) -> bool:
        query = f"""
            UPDATE {_task_table(source)}
            SET ai_analysis_status = 'pending',
                ai_analysis_locked = FALSE,
                ai_analysis_batch_id = NULL,
                ai_analysis_claimed_at = NULL,
                ai_analysis_result = NULL,
                ai_analyzed_at = NULL
            WHERE id = $1
        """
        return await db.execute(query, task_id) == "UPDATE 1"

    async def recover_stale_claims(self, claimed_before: datetime) -> List[TaskKey]:
        recovered: List[TaskKey] = []
        for source in ("event", "entry"):
            rows = await db.fetch(
                f"""
                UPDATE {_task_table(source)}
                SET ai_analysis_status = 'failed',
                    ai_analysis_locked = FALSE,
                    ai_analysis_result = $2
                WHERE ai_analysis_status = 'in_progress'
                  AND ai_analysis_claimed_at < $1
                RETURNING id
                """,
                claimed_before,
                {"error": "analysis claim expired"},
            )
            recovered.extend((source, r["id"]) for r in rows)
        return recovered

    # rules and templates

    async def list_rules(self, active_only: bool = True) -> List[ParsingRule]:
        query = "SELECT * FROM parsing_rules"
        if active_only:
            query += " WHERE is_active"
        rows = await db.fetch(query + " ORDER BY id")
        return [ParsingRule(**dict(r)) for r in rows]

    async def save_rule(self, rule: ParsingRule) -> ParsingRule:
        if rule.id is None:
            return await self._insert("parsing_rules", rule)
        await self._update("parsing_rules", rule)
        return rule

    async def get_template(self, template_id: int) -> Optional[ScheduleTemplate]:
        return await self._get("schedule_templates", ScheduleTemplate, template_id)

    async def save_template(self, template: ScheduleTemplate) -> ScheduleTemplate:
        if template.id is None:
            return await self._insert("schedule_templates", template)
        await self._update("schedule_templates", template)
        return template

    # analyses and slots

    async def create_analysis(self, analysis: ScheduleAnalysis) -> ScheduleAnalysis:
        return await self._insert("schedule_analyses", analysis)

    async def save_analysis(self, analysis: ScheduleAnalysis) -> None:
        await self._update("schedule_analyses", analysis)

    async def get_analysis(self, analysis_id: int) -> Optional[ScheduleAnalysis]:
        return await self._get("schedule_analyses", ScheduleAnalysis, analysis_id)

    async def add_slots(self, slots: Sequence[ScheduleSlot]) -> List[ScheduleSlot]:
        return await self._insert_many("schedule_slots", slots)

    async def save_slot(self, slot: ScheduleSlot) -> None:
        await self._update("schedule_slots", slot)

    async def get_slot(self, slot_id: int) -> Optional[ScheduleSlot]:
        return await self._get("schedule_slots", ScheduleSlot, slot_id)

    async def list_slots(
        self,
        user_id: Optional[int] = None,
        on: Optional[date] = None,
        analysis_id: Optional[int] = None,
    ) -> List[ScheduleSlot]:
        where: List[str] = []
        args: List[Any] = []
        for col, value in (("user_id", user_id), ("date", on), ("analysis_id", analysis_id)):
            if value is not None:
                args.append(value)
                where.append(f"{col} = ${len(args)}")
        query = "SELECT * FROM schedule_slots"
        if where:
            query += " WHERE " + " AND ".join(where)
        rows = await db.fetch(query + " ORDER BY date, start_time, id", *args)
        return [ScheduleSlot(**dict(r)) for r in rows]

    # notifications

    async def create_notification(self, notification: Notification) -> Optional[Notification]:
        data = notification.model_dump(exclude={"id"})
        cols = ", ".join(data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
        row = await db.fetchrow(
            f"""
            INSERT INTO notifications ({cols}) VALUES ({placeholders})
            ON CONFLICT (dedup_key) DO NOTHING
            RETURNING *
            """,
            *data.values(),
        )
        return Notification(**dict(row)) if row else None

    async def list_due_notifications(self, now: datetime, limit: int = 100) -> List[Notification]:
        rows = await db.fetch(
            """
            SELECT * FROM notifications
            WHERE status = 'pending' AND trigger_datetime <= $1
            ORDER BY trigger_datetime, id
            LIMIT $2
            """,
            now,
            limit,
        )
        return [Notification(**dict(r)) for r in rows]

    async def update_pending_notification(
        self, dedup_key: str, *, message: str, action_data: Dict[str, Any]
    ) -> bool:
        status = await db.execute(
            """
            UPDATE notifications SET message = $2, action_data = $3
            WHERE dedup_key = $1 AND status = 'pending'
            """,
            dedup_key,
            message,
            action_data,
        )
        return db.affected_rows(status) == 1

    async def save_notification(self, notification: Notification) -> None:
        await self._update("notifications", notification)

    async def list_notifications(self, user_id: Optional[int] = None) -> List[Notification]:
        if user_id is None:
            rows = await db.fetch("SELECT * FROM notifications ORDER BY id")
        else:
            rows = await db.fetch(
                "SELECT * FROM notifications WHERE user_id = $1 ORDER BY id", user_id
            )
        return [Notification(**dict(r)) for r in rows]
