"""
Persistence port for the schedule pipeline.

Services depend only on this interface; `InMemoryRepository` backs tests and
single-process deployments, `PostgresRepository` backs everything else.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from smart_schedule.models import (
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

TaskKey = Tuple[TaskSource, int]

# only the claim protocol writes these
CLAIM_FIELDS = frozenset({
    "ai_analysis_status",
    "ai_analysis_locked",
    "ai_analysis_batch_id",
    "ai_analysis_claimed_at",
    "ai_analyzed_at",
    "ai_analysis_result",
})


class ScheduleRepository(ABC):
    # imports

    @abstractmethod
    async def create_import(self, imp: ScheduleImport) -> ScheduleImport: ...

    @abstractmethod
    async def save_import(self, imp: ScheduleImport) -> None: ...

    @abstractmethod
    async def get_import(self, import_id: int) -> Optional[ScheduleImport]: ...

    # entries

    @abstractmethod
    async def add_entries(self, entries: Sequence[ScheduleEntry]) -> List[ScheduleEntry]: ...

    @abstractmethod
    async def save_entry(self, entry: ScheduleEntry) -> None: ...

    @abstractmethod
    async def get_entry(self, entry_id: int) -> Optional[ScheduleEntry]: ...

    @abstractmethod
    async def list_entries(self, import_id: int) -> List[ScheduleEntry]: ...

    @abstractmethod
    async def find_conversion_candidates(
        self,
        user_id: int,
        min_confidence: float,
        import_id: Optional[int] = None,
        entry_ids: Optional[Sequence[int]] = None,
    ) -> List[ScheduleEntry]:
        """
        Entries that are parsed, not yet converted (conversion pending or
        failed) and at or above `min_confidence`. Entries flagged for manual
        review are included so the converter can count them.
        """

    # events

    @abstractmethod
    async def create_event(self, event: Event) -> Event: ...

    @abstractmethod
    async def get_event(self, event_id: int) -> Optional[Event]: ...

    @abstractmethod
    async def save_event(self, event: Event) -> None: ...

    # analyzable tasks (events and entries share the claim columns)

    @abstractmethod
    async def get_task(self, source: TaskSource, task_id: int) -> Optional[AnalyzableTask]: ...

    @abstractmethod
    async def list_tasks(self, user_id: int, include_locked: bool = False) -> List[AnalyzableTask]: ...

    @abstractmethod
    async def try_claim(
        self, source: TaskSource, task_id: int, batch_id: str, claimed_at: datetime
    ) -> bool:
        """
        Atomically lock an available task for `batch_id`.

        Returns False when the task is missing, locked, or not in a
        claimable status. Never a separate read followed by a write.
        """

    @abstractmethod
    async def finish_analysis(
        self,
        source: TaskSource,
        task_id: int,
        status: str,
        result: Optional[Dict[str, Any]],
        finished_at: datetime,
        batch_id: Optional[str] = None,
    ) -> bool:
        """Unlock an `in_progress` task into `status`; False if it was not in progress."""

    @abstractmethod
    async def reset_analysis(self, source: TaskSource, task_id: int) -> bool: ...

    @abstractmethod
    async def recover_stale_claims(self, claimed_before: datetime) -> List[TaskKey]: ...

    # rules and templates

    @abstractmethod
    async def list_rules(self, active_only: bool = True) -> List[ParsingRule]: ...

    @abstractmethod
    async def save_rule(self, rule: ParsingRule) -> ParsingRule: ...

    @abstractmethod
    async def get_template(self, template_id: int) -> Optional[ScheduleTemplate]: ...

    @abstractmethod
    async def save_template(self, template: ScheduleTemplate) -> ScheduleTemplate: ...

    # analyses and slots

    @abstractmethod
    async def create_analysis(self, analysis: ScheduleAnalysis) -> ScheduleAnalysis: ...

    @abstractmethod
    async def save_analysis(self, analysis: ScheduleAnalysis) -> None: ...

    @abstractmethod
    async def get_analysis(self, analysis_id: int) -> Optional[ScheduleAnalysis]: ...

    @abstractmethod
    async def add_slots(self, slots: Sequence[ScheduleSlot]) -> List[ScheduleSlot]: ...

    @abstractmethod
    async def save_slot(self, slot: ScheduleSlot) -> None: ...

    @abstractmethod
    async def get_slot(self, slot_id: int) -> Optional[ScheduleSlot]: ...

    @abstractmethod
    async def list_slots(
        self,
        user_id: Optional[int] = None,
        on: Optional[date] = None,
        analysis_id: Optional[int] = None,
    ) -> List[ScheduleSlot]: ...

    # notifications

    @abstractmethod
    async def create_notification(self, notification: Notification) -> Optional[Notification]:
        """Insert unless `dedup_key` already exists; returns None for duplicates."""

    @abstractmethod
    async def list_due_notifications(self, now: datetime, limit: int = 100) -> List[Notification]: ...

    @abstractmethod
    async def update_pending_notification(
        self, dedup_key: str, *, message: str, action_data: Dict[str, Any]
    ) -> bool:
        """Rewrite message/action_data of a still-pending notification; False once it went out."""

    @abstractmethod
    async def save_notification(self, notification: Notification) -> None: ...

    @abstractmethod
    async def list_notifications(self, user_id: Optional[int] = None) -> List[Notification]: ...
