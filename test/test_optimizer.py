from datetime import date, datetime

import pytest

from llm.llm_client import LLMClient
from llm.providers.mock_provider import MockProvider
from scheduling.optimizer import (
    ScheduleOptimizer,
    build_system_prompt,
    calculate_api_cost,
    calculate_confidence,
    extract_duration,
    normalize_priority,
    normalize_task,
    parse_duration_string,
)
from smart_schedule.config import Settings
from smart_schedule.errors import ExternalServiceError

SCHEDULE = {
    "date": "2024-01-15",
    "total_tasks": 1,
    "schedule_slots": [{
        "task_id": 7,
        "task_title": "Write report",
        "start_time": "09:00",
        "end_time": "10:00",
        "duration_minutes": 60,
        "priority": "high",
        "reasoning": "Morning focus",
        "energy_level": "high",
    }],
    "optimization_summary": {"utilization_rate": 0.5, "high_priority_coverage": 1.0},
    "conflicts": [],
}


def test_cost_rounds_half_up():
    assert calculate_api_cost(1000, 1000) == 0.0008
    assert calculate_api_cost(0, 0) == 0.0


def test_confidence():
    assert calculate_confidence(None) == 0.5
    assert calculate_confidence({"utilization_rate": 0.5, "high_priority_coverage": 1.0}) == 0.85
    assert calculate_confidence({"utilization_rate": 2, "high_priority_coverage": 2}) == 1.0


@pytest.mark.parametrize("value,expected", [
    (1, "critical"), ("2", "high"), ("URGENT", "critical"), ("normal", "medium"), (None, "medium"), ("x", "medium"),
])
def test_normalize_priority(value, expected):
    assert normalize_priority(value) == expected


def test_duration_strings():
    assert parse_duration_string("1h30m") == 90
    assert parse_duration_string("45 min") == 45
    assert parse_duration_string("soon") == 30


def test_duration_from_parsed_times_then_priority_default():
    task = {"parsed_start_datetime": datetime(2024, 1, 15, 9), "parsed_end_datetime": datetime(2024, 1, 15, 11)}
    assert extract_duration(task, "low") == 120
    assert extract_duration({}, "critical") == 60
    assert extract_duration({}, "low") == 30


def test_normalize_task_detects_preferred_time():
    task = normalize_task({"id": "entry:1", "title": "Họp buổi sáng", "parsed_priority": 2})
    assert task["priority"] == "high"
    assert task["preferred_time"] == "morning"
    assert task["duration_minutes"] == 60


def test_system_prompt_carries_work_hours():
    prompt = build_system_prompt({"work_start": "07:30", "work_end": "17:00", "break_duration": 90})
    assert "07:30 to 17:00" in prompt


def test_optimize_with_fake_provider(fake_provider_factory):
    provider = fake_provider_factory(SCHEDULE)
    optimizer = ScheduleOptimizer(LLMClient(provider=provider, settings=Settings()))

    result = optimizer.optimize([{"id": 7, "title": "Write report", "priority": 2}], {"work_start": None}, date(2024, 1, 15))

    assert result.schedule.schedule_slots[0].task_id == "7"
    assert result.confidence == 0.85
    assert result.api_cost == 0.0008
    assert result.total_tokens == 2000
    assert result.preferences["work_start"] == "08:00"
    payload = provider.payloads[0]
    assert payload["function_call"] == {"name": "generate_optimized_schedule"}
    assert "optimized schedule for 2024-01-15" in payload["messages"][1]["content"]


def test_reply_not_matching_schema(fake_provider_factory):
    provider = fake_provider_factory({"date": "2024-01-15", "schedule_slots": [{"task_id": "1"}]})
    optimizer = ScheduleOptimizer(LLMClient(provider=provider, settings=Settings()))
    with pytest.raises(ExternalServiceError):
        optimizer.optimize([{"title": "A"}], target_date=date(2024, 1, 15))


def test_mock_provider_lays_tasks_out_in_order():
    optimizer = ScheduleOptimizer(LLMClient(provider=MockProvider(), settings=Settings()))
    tasks = [
        {"id": "entry:1", "title": "A", "duration": "1h"},
        {"id": "entry:2", "title": "B", "duration_minutes": 30, "priority": "low"},
    ]
    result = optimizer.optimize(tasks, {"work_start": "09:00", "work_end": "17:00"}, date(2024, 1, 15))

    slots = result.schedule.schedule_slots
    assert [s.task_id for s in slots] == ["entry:1", "entry:2"]
    assert slots[0].start_time.strftime("%H:%M") == "09:00"
    assert slots[1].start_time.strftime("%H:%M") == "10:10"
    assert result.schedule.date == date(2024, 1, 15)
