from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from smart_schedule.errors import ConversionPreconditionError, NotFoundError
from smart_schedule.models import Event, ScheduleEntry, ScheduleSlot

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.7
DEFAULT_EVENT_DURATION = timedelta(hours=1)

SLOT_PRIORITY_TO_INT = {"critical": 1, "high": 2, "medium": 3, "low": 4}


@dataclass
class ConversionResult:
    total: int = 0
    success: int = 0
    failed: int = 0
    manual_review: int = 0
    event_ids: List[int] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "manual_review": self.manual_review,
            "event_ids": self.event_ids,
            "errors": self.errors,
        }


def event_from_entry(entry: ScheduleEntry) -> Event:
    if not entry.parsed_title or entry.parsed_start_datetime is None:
        missing = [
            name for name, value in (
                ("parsed_title", entry.parsed_title),
                ("parsed_start_datetime", entry.parsed_start_datetime),
            ) if not value
        ]
        raise ConversionPreconditionError(
            f"entry {entry.id} is missing {', '.join(missing)}",
            {"entry_id": entry.id, "missing": missing},
        )

    return Event(
        user_id=entry.user_id,
        title=entry.parsed_title,
        description=entry.parsed_description,
        location=entry.parsed_location,
        start_datetime=entry.parsed_start_datetime,
        end_datetime=entry.parsed_end_datetime or entry.parsed_start_datetime + DEFAULT_EVENT_DURATION,
        status="scheduled",
        priority=entry.parsed_priority or 3,
        category=entry.ai_detected_category,
        event_metadata={
            "imported": True,
            "import_id": entry.import_id,
            "entry_id": entry.id,
            "ai_confidence": entry.ai_confidence,
        },
    )


class EntryConverter:
    """
    Promote parsed, confident entries into events.

    Selection excludes anything already converted, so running a conversion
    twice over the same entries creates no duplicate events.
    """

    def __init__(self, repo, min_confidence: float = DEFAULT_MIN_CONFIDENCE):
        self.repo = repo
        self.min_confidence = min_confidence

    async def convert_import(
        self,
        user_id: int,
        import_id: Optional[int] = None,
        *,
        entry_ids: Optional[Sequence[int]] = None,
        min_confidence: Optional[float] = None,
    ) -> ConversionResult:
        threshold = self.min_confidence if min_confidence is None else min_confidence
        candidates = await self.repo.find_conversion_candidates(
            user_id, threshold, import_id=import_id, entry_ids=entry_ids
        )
        result = await self.convert(candidates)
        logger.info(
            f"Converted entries for user {user_id} (import {import_id}): "
            f"{result.success} ok, {result.failed} failed, {result.manual_review} for review"
        )
        return result

    async def convert(self, entries: Sequence[ScheduleEntry]) -> ConversionResult:
        result = ConversionResult(total=len(entries))

        for entry in entries:
            if entry.is_converted():
                continue
            if entry.manual_review_required:
                result.manual_review += 1
                continue

            try:
                event = await self.repo.create_event(event_from_entry(entry))
            except ConversionPreconditionError as e:
                logger.warning(f"Entry {entry.id} not converted: {e.message}")
                entry.mark_failed({"error": e.message, **e.detail})
                await self.repo.save_entry(entry)
                result.failed += 1
                result.errors.append({"entry_id": entry.id, "error": e.message})
                continue
            except Exception as e:
                logger.exception(f"Entry {entry.id} conversion failed: {e}")
                entry.conversion_status = "failed"
                entry.parsing_errors.append({"error": str(e)})
                await self.repo.save_entry(entry)
                result.failed += 1
                result.errors.append({"entry_id": entry.id, "error": str(e)})
                continue

            entry.mark_converted(event.id)
            await self.repo.save_entry(entry)
            result.success += 1
            result.event_ids.append(event.id)

        return result

    async def flag_for_manual_review(self, entry_id: int, reason: Optional[str] = None) -> ScheduleEntry:
        entry = await self.repo.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Entry {entry_id} not found", {"entry_id": entry_id})
        entry.mark_for_manual_review(reason)
        await self.repo.save_entry(entry)
        logger.info(f"Entry {entry_id} flagged for manual review")
        return entry

    async def create_event_from_slot(self, slot: ScheduleSlot) -> Event:
        """Promote an optimized slot to an event; returns the existing one if already linked."""
        if slot.event_id is not None:
            existing = await self.repo.get_event(slot.event_id)
            if existing is not None:
                return existing

        event = await self.repo.create_event(
            Event(
                user_id=slot.user_id,
                title=slot.task_title,
                description=slot.task_description or slot.ai_reasoning,
                location=slot.location,
                start_datetime=slot.start_datetime,
                end_datetime=slot.end_datetime,
                priority=SLOT_PRIORITY_TO_INT.get(slot.priority, 3),
                category=slot.category,
                reminder_minutes_before=slot.reminder_minutes_before,
                event_metadata={
                    "ai_generated": True,
                    "analysis_id": slot.analysis_id,
                    "slot_id": slot.id,
                    "entry_id": slot.original_entry_id,
                },
            )
        )
        slot.event_id = event.id
        await self.repo.save_slot(slot)
        return event
