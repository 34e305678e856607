from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, TypeVar

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
from storage.repository import CLAIM_FIELDS, ScheduleRepository, TaskKey

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class InMemoryRepository(ScheduleRepository):
    """
    Process-local repository.

    Every mutation runs under one asyncio.Lock and callers only ever see deep
    copies, so a caller mutating a returned model never changes stored state.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._imports: Dict[int, ScheduleImport] = {}
        self._entries: Dict[int, ScheduleEntry] = {}
        self._events: Dict[int, Event] = {}
        self._rules: Dict[int, ParsingRule] = {}
        self._templates: Dict[int, ScheduleTemplate] = {}
        self._analyses: Dict[int, ScheduleAnalysis] = {}
        self._slots: Dict[int, ScheduleSlot] = {}
        self._notifications: Dict[int, Notification] = {}
        self._dedup_keys: Dict[str, int] = {}

    # helpers

    def _insert(self, table: Dict[int, M], model: M) -> M:
        stored = model.model_copy(deep=True)
        stored.id = next(self._ids)
        table[stored.id] = stored
        return stored.model_copy(deep=True)

    def _replace(self, table: Dict[int, M], model: M) -> None:
        if model.id is None or model.id not in table:
            raise KeyError(f"{type(model).__name__} {model.id} is not stored")
        table[model.id] = model.model_copy(deep=True)

    def _replace_task(self, table: Dict[int, M], model: M) -> None:
        # claim columns are owned by try_claim/finish_analysis/reset_analysis
        current = table.get(model.id) if model.id is not None else None
        if current is None:
            raise KeyError(f"{type(model).__name__} {model.id} is not stored")
        stored = model.model_copy(deep=True)
        for name in CLAIM_FIELDS:
            setattr(stored, name, getattr(current, name))
        table[model.id] = stored

    @staticmethod
    def _get(table: Dict[int, M], key: Optional[int]) -> Optional[M]:
        found = table.get(key) if key is not None else None
        return found.model_copy(deep=True) if found is not None else None

    def _task_table(self, source: TaskSource) -> Dict[int, Any]:
        if source == "event":
            return self._events
        if source == "entry":
            return self._entries
        raise ValueError(f"unknown task source: {source}")

    # imports

    async def create_import(self, imp: ScheduleImport) -> ScheduleImport:
        async with self._lock:
            return self._insert(self._imports, imp)

    async def save_import(self, imp: ScheduleImport) -> None:
        async with self._lock:
            self._replace(self._imports, imp)

    async def get_import(self, import_id: int) -> Optional[ScheduleImport]:
        return self._get(self._imports, import_id)

    # entries

    async def add_entries(self, entries: Sequence[ScheduleEntry]) -> List[ScheduleEntry]:
        async with self._lock:
            return [self._insert(self._entries, e) for e in entries]

    async def save_entry(self, entry: ScheduleEntry) -> None:
        async with self._lock:
            self._replace_task(self._entries, entry)

    async def get_entry(self, entry_id: int) -> Optional[ScheduleEntry]:
        return self._get(self._entries, entry_id)

    async def list_entries(self, import_id: int) -> List[ScheduleEntry]:
        rows = [e for e in self._entries.values() if e.import_id == import_id]
        rows.sort(key=lambda e: (e.row_number or 0, e.id))
        return [e.model_copy(deep=True) for e in rows]

    async def find_conversion_candidates(
        self,
        user_id: int,
        min_confidence: float,
        import_id: Optional[int] = None,
        entry_ids: Optional[Sequence[int]] = None,
    ) -> List[ScheduleEntry]:
        wanted = set(entry_ids) if entry_ids is not None else None
        out = []
        for e in self._entries.values():
            if e.user_id != user_id:
                continue
            if import_id is not None and e.import_id != import_id:
                continue
            if wanted is not None and e.id not in wanted:
                continue
            if e.processing_status != "parsed":
                continue
            if e.conversion_status not in ("pending", "failed") or e.manual_review_required:
                continue
            if e.ai_confidence is None or e.ai_confidence < min_confidence:
                continue
            out.append(e.model_copy(deep=True))
        out.sort(key=lambda e: e.id)
        return out

    # events

    async def create_event(self, event: Event) -> Event:
        async with self._lock:
            return self._insert(self._events, event)

    async def get_event(self, event_id: int) -> Optional[Event]:
        return self._get(self._events, event_id)

    async def save_event(self, event: Event) -> None:
        async with self._lock:
            self._replace_task(self._events, event)

    # analyzable tasks

    async def get_task(self, source: TaskSource, task_id: int) -> Optional[AnalyzableTask]:
        return self._get(self._task_table(source), task_id)

    async def list_tasks(self, user_id: int, include_locked: bool = False) -> List[AnalyzableTask]:
        out: List[AnalyzableTask] = []
        for table in (self._events, self._entries):
            for t in sorted(table.values(), key=lambda t: t.id):
                if t.user_id != user_id:
                    continue
                if not include_locked and t.ai_analysis_locked:
                    continue
                out.append(t.model_copy(deep=True))
        return out

    async def try_claim(
        self, source: TaskSource, task_id: int, batch_id: str, claimed_at: datetime
    ) -> bool:
        async with self._lock:
            task = self._task_table(source).get(task_id)
            if task is None:
                return False
            if task.ai_analysis_locked or task.ai_analysis_status not in AVAILABLE_ANALYSIS_STATUSES:
                return False
            task.ai_analysis_locked = True
            task.ai_analysis_status = "in_progress"
            task.ai_analysis_batch_id = batch_id
            task.ai_analysis_claimed_at = claimed_at
            return True

    async def finish_analysis(
        self,
        source: TaskSource,
        task_id: int,
        status: str,
        result: Optional[Dict[str, Any]],
        finished_at: datetime,
        batch_id: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            task = self._task_table(source).get(task_id)
            if task is None or task.ai_analysis_status != "in_progress":
                return False
            if batch_id is not None and task.ai_analysis_batch_id != batch_id:
                return False
            task.ai_analysis_status = status
            task.ai_analysis_locked = False
            task.ai_analysis_result = result
            task.ai_analyzed_at = finished_at
            return True

    async def reset_analysis(self, source: TaskSource, task_id: int) -> bool:
        async with self._lock:
            task = self._task_table(source).get(task_id)
            if task is None:
                return False
            task.ai_analysis_status = "pending"
            task.ai_analysis_locked = False
            task.ai_analysis_batch_id = None
            task.ai_analysis_claimed_at = None
            task.ai_analysis_result = None
            task.ai_analyzed_at = None
            return True

    async def recover_stale_claims(self, claimed_before: datetime) -> List[TaskKey]:
        recovered: List[TaskKey] = []
        async with self._lock:
            for source in ("event", "entry"):
                for task in self._task_table(source).values():
                    if task.ai_analysis_status != "in_progress":
                        continue
                    if task.ai_analysis_claimed_at is None or task.ai_analysis_claimed_at >= claimed_before:
                        continue
                    task.ai_analysis_status = "failed"
                    task.ai_analysis_locked = False
                    task.ai_analysis_result = {"error": "analysis claim expired"}
                    recovered.append((source, task.id))
        return recovered

    # rules and templates

    async def list_rules(self, active_only: bool = True) -> List[ParsingRule]:
        rules = [r for r in self._rules.values() if r.is_active or not active_only]
        return [r.model_copy(deep=True) for r in sorted(rules, key=lambda r: r.id)]

    async def save_rule(self, rule: ParsingRule) -> ParsingRule:
        async with self._lock:
            if rule.id is None:
                return self._insert(self._rules, rule)
            self._replace(self._rules, rule)
            return rule

    async def get_template(self, template_id: int) -> Optional[ScheduleTemplate]:
        return self._get(self._templates, template_id)

    async def save_template(self, template: ScheduleTemplate) -> ScheduleTemplate:
        async with self._lock:
            if template.id is None:
                return self._insert(self._templates, template)
            self._replace(self._templates, template)
            return template

    # analyses and slots

    async def create_analysis(self, analysis: ScheduleAnalysis) -> ScheduleAnalysis:
        async with self._lock:
            return self._insert(self._analyses, analysis)

    async def save_analysis(self, analysis: ScheduleAnalysis) -> None:
        async with self._lock:
            self._replace(self._analyses, analysis)

    async def get_analysis(self, analysis_id: int) -> Optional[ScheduleAnalysis]:
        return self._get(self._analyses, analysis_id)

    async def add_slots(self, slots: Sequence[ScheduleSlot]) -> List[ScheduleSlot]:
        async with self._lock:
            return [self._insert(self._slots, s) for s in slots]

    async def save_slot(self, slot: ScheduleSlot) -> None:
        async with self._lock:
            self._replace(self._slots, slot)

    async def get_slot(self, slot_id: int) -> Optional[ScheduleSlot]:
        return self._get(self._slots, slot_id)

    async def list_slots(
        self,
        user_id: Optional[int] = None,
        on: Optional[date] = None,
        analysis_id: Optional[int] = None,
    ) -> List[ScheduleSlot]:
        out = [
            s for s in self._slots.values()
            if (user_id is None or s.user_id == user_id)
            and (on is None or s.date == on)
            and (analysis_id is None or s.analysis_id == analysis_id)
        ]
        out.sort(key=lambda s: (s.date, s.start_time, s.id))
        return [s.model_copy(deep=True) for s in out]

    # notifications

    async def create_notification(self, notification: Notification) -> Optional[Notification]:
        async with self._lock:
            if notification.dedup_key in self._dedup_keys:
                return None
            stored = self._insert(self._notifications, notification)
            self._dedup_keys[stored.dedup_key] = stored.id
            return stored

    async def list_due_notifications(self, now: datetime, limit: int = 100) -> List[Notification]:
        due = [
            n for n in self._notifications.values()
            if n.status == "pending" and n.trigger_datetime <= now
        ]
        due.sort(key=lambda n: (n.trigger_datetime, n.id))
        return [n.model_copy(deep=True) for n in due[:limit]]

    async def update_pending_notification(
        self, dedup_key: str, *, message: str, action_data: Dict[str, Any]
    ) -> bool:
        async with self._lock:
            notification_id = self._dedup_keys.get(dedup_key)
            stored = self._notifications.get(notification_id) if notification_id is not None else None
            if stored is None or stored.status != "pending":
                return False
            stored.message = message
            stored.action_data = dict(action_data)
            return True

    async def save_notification(self, notification: Notification) -> None:
        async with self._lock:
            self._replace(self._notifications, notification)

    async def list_notifications(self, user_id: Optional[int] = None) -> List[Notification]:
        out = [n for n in self._notifications.values() if user_id is None or n.user_id == user_id]
        return [n.model_copy(deep=True) for n in sorted(out, key=lambda n: n.id)]
