import asyncio
from datetime import date, datetime, time, timedelta

import pytest

from scheduling.converter import EntryConverter
from smart_schedule.errors import NotFoundError
from smart_schedule.models import ScheduleEntry, ScheduleSlot


def _entry(**kwargs):
    defaults = dict(
        user_id=1,
        import_id=1,
        parsed_title="Math",
        parsed_start_datetime=datetime(2024, 1, 15, 9),
        processing_status="parsed",
        ai_confidence=0.9,
    )
    defaults.update(kwargs)
    return ScheduleEntry(**defaults)


def test_convert_twice_creates_no_duplicates(repo):
    async def scenario():
        await repo.add_entries([_entry(), _entry(parsed_title="Physics")])
        converter = EntryConverter(repo)
        first = await converter.convert_import(1, 1)
        second = await converter.convert_import(1, 1)
        return first, second

    first, second = asyncio.run(scenario())
    assert (first.total, first.success, first.failed) == (2, 2, 0)
    assert second.success == 0


def test_converted_event_defaults_and_metadata(repo):
    async def scenario():
        [entry] = await repo.add_entries([_entry(parsed_priority=None)])
        result = await EntryConverter(repo).convert_import(1, 1)
        return entry, await repo.get_event(result.event_ids[0]), await repo.get_entry(entry.id)

    entry, event, stored = asyncio.run(scenario())
    assert event.end_datetime == event.start_datetime + timedelta(hours=1)
    assert event.priority == 3
    assert event.status == "scheduled"
    assert event.event_metadata == {"imported": True, "import_id": 1, "entry_id": entry.id, "ai_confidence": 0.9}
    assert stored.conversion_status == "success"
    assert stored.processing_status == "converted"
    assert stored.converted_event_id == event.id


def test_entry_without_start_fails_but_batch_continues(repo):
    async def scenario():
        await repo.add_entries([_entry(parsed_start_datetime=None), _entry(parsed_title="Chemistry")])
        result = await EntryConverter(repo, min_confidence=0.5).convert_import(1, 1)
        return result, await repo.get_entry(1)

    result, failed_entry = asyncio.run(scenario())
    assert result.success == 1
    assert result.failed == 1
    assert result.errors[0]["entry_id"] == 1
    assert failed_entry.conversion_status == "failed"
    assert failed_entry.parsing_errors[-1]["missing"] == ["parsed_start_datetime"]


def test_low_confidence_and_other_users_are_not_candidates(repo):
    async def scenario():
        await repo.add_entries([_entry(ai_confidence=0.4), _entry(user_id=2)])
        return await EntryConverter(repo).convert_import(1, 1)

    result = asyncio.run(scenario())
    assert result.total == 0


def test_entry_without_title_fails(repo):
    async def scenario():
        [entry] = await repo.add_entries([_entry(parsed_title=None, ai_confidence=0.8)])
        result = await EntryConverter(repo).convert_import(1, 1)
        return result, await repo.get_entry(entry.id)

    result, entry = asyncio.run(scenario())
    assert (result.total, result.success, result.failed) == (1, 0, 1)
    assert entry.conversion_status == "failed"
    assert entry.converted_event_id is None
    assert entry.parsing_errors[-1]["missing"] == ["parsed_title"]


def test_manual_review_entries_are_not_candidates(repo):
    async def scenario():
        [flagged, cleared] = await repo.add_entries([_entry(), _entry(parsed_title="Physics")])
        converter = EntryConverter(repo)
        await converter.flag_for_manual_review(flagged.id, "date looks wrong")

        # status left at manual_review after the flag was lifted by hand
        cleared.manual_review_required = False
        cleared.conversion_status = "manual_review"
        await repo.save_entry(cleared)

        return await converter.convert_import(1, 1), await repo.get_entry(flagged.id)

    result, entry = asyncio.run(scenario())
    assert (result.total, result.success, result.manual_review) == (0, 0, 0)
    assert entry.manual_review_notes == "date looks wrong"
    assert entry.converted_event_id is None


def test_direct_conversion_counts_flagged_entries(repo):
    async def scenario():
        [entry] = await repo.add_entries([_entry()])
        entry.mark_for_manual_review("check room")
        return await EntryConverter(repo).convert([entry])

    result = asyncio.run(scenario())
    assert (result.total, result.success, result.manual_review) == (1, 0, 1)


def test_flag_missing_entry(repo):
    with pytest.raises(NotFoundError):
        asyncio.run(EntryConverter(repo).flag_for_manual_review(42))


def test_slot_promotion_is_idempotent(repo):
    async def scenario():
        [slot] = await repo.add_slots([ScheduleSlot(
            user_id=1, analysis_id=3, date=date(2024, 1, 15),
            start_time=time(9), end_time=time(10), task_title="Deep work", priority="high",
        )])
        converter = EntryConverter(repo)
        first = await converter.create_event_from_slot(slot)
        second = await converter.create_event_from_slot(slot)
        return first, second, await repo.get_slot(slot.id)

    first, second, slot = asyncio.run(scenario())
    assert first.id == second.id
    assert first.priority == 2
    assert slot.event_id == first.id
