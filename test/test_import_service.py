import asyncio

import pytest

from ingestion.import_service import ImportService
from smart_schedule.errors import NotFoundError
from smart_schedule.models import ParsingRule, ScheduleTemplate

CSV = (
    "Title,Description,Location,Start Date,End Date,Priority\n"
    "Math exam,Chapter 1-3,A101,15/01/2024 08:00,15/01/2024 09:30,high\n"
    "\n"
    "Team sync,,,16/01/2024 14:00,,\n"
)


def test_csv_import_end_to_end(repo):
    async def scenario():
        await repo.save_rule(ParsingRule(
            rule_name="exams", rule_type="pattern_matching", rule_pattern="(?i)exam",
            rule_action={"category": "study", "keywords": ["exam"]},
        ))
        imp = await ImportService(repo).ingest(user_id=1, raw_content=CSV, source_type="csv")
        return imp, await repo.list_entries(imp.id), await repo.list_rules()

    imp, entries, rules = asyncio.run(scenario())
    assert imp.status == "completed"
    assert (imp.total_records_found, imp.successfully_processed, imp.failed_records) == (2, 2, 0)
    assert imp.ai_confidence_score == 0.85
    assert [e.row_number for e in entries] == [2, 4]
    assert all(e.processing_status == "parsed" for e in entries)

    exam = entries[0]
    assert exam.ai_detected_category == "study"
    assert exam.detected_keywords == ["exam"]
    assert exam.ai_detected_importance == 0.8
    assert rules[0].usage_count == 1


def test_invalid_json_fails_the_import(repo):
    imp = asyncio.run(ImportService(repo).ingest(user_id=1, raw_content="[{oops", source_type="json"))
    assert imp.status == "failed"
    assert imp.error_log[0]["error"] == "Invalid JSON document"
    assert imp.processing_completed_at is not None


def test_row_errors_count_as_failed_records(repo):
    imp = asyncio.run(ImportService(repo).ingest(
        user_id=1, raw_content='[{"title": "A", "start_date": "2024-01-15"}, "junk"]', source_type="json",
    ))
    assert imp.status == "completed"
    assert imp.total_records_found == 2
    assert imp.failed_records == 1
    assert imp.error_log[0]["row_number"] == 2


def test_raw_content_is_stored_untouched(repo):
    async def scenario():
        imp = await ImportService(repo).ingest(user_id=1, raw_content="Gọi điện cho bác sĩ\n", source_type="txt")
        return await repo.get_import(imp.id)

    stored = asyncio.run(scenario())
    assert stored.raw_content == "Gọi điện cho bác sĩ\n"
    assert stored.raw_data == [{"text": "Gọi điện cho bác sĩ"}]


def test_template_mapping_and_profession_rules(repo):
    async def scenario():
        template = await repo.save_template(ScheduleTemplate(
            name="school", profession_id=7, field_mapping={"title": "Môn học", "start_date": "Ngày"},
        ))
        await repo.save_rule(ParsingRule(
            rule_name="lab", profession_id=7, rule_type="category_assignment", rule_pattern="Lab",
            rule_action={"category": "practical"},
        ))
        imp = await ImportService(repo).ingest(
            user_id=1, raw_content="Môn học,Ngày\nChem Lab,20/01/2024\n", source_type="csv", template_id=template.id,
        )
        return await repo.list_entries(imp.id)

    [entry] = asyncio.run(scenario())
    assert entry.parsed_title == "Chem Lab"
    assert entry.ai_detected_category == "practical"


def test_unknown_template(repo):
    with pytest.raises(NotFoundError):
        asyncio.run(ImportService(repo).ingest(user_id=1, raw_content="", source_type="csv", template_id=9))
