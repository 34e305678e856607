from datetime import datetime

import pytest

from ingestion.content_parser import ParsedRow
from ingestion.entry_normalizer import (
    EntryNormalizer,
    compute_confidence,
    detected_importance,
    parse_datetime,
    parse_priority,
)
from smart_schedule.errors import ParseError
from smart_schedule.models import ScheduleEntry, ScheduleTemplate, UserSchedulePreferences


def _normalize(data, source_type="csv", raw_text="", normalizer=None):
    normalizer = normalizer or EntryNormalizer()
    return normalizer.normalize(ParsedRow(2, raw_text, data), user_id=1, import_id=1, source_type=source_type)


def test_full_row_has_full_confidence():
    entry = _normalize({
        "Title": "Math",
        "Description": "Chapter 3",
        "Location": "A101",
        "Start Date": "15/01/2024 09:00",
        "End Date": "15/01/2024 10:30",
        "Priority": "high",
    })
    assert entry.parsed_title == "Math"
    assert entry.parsed_start_datetime == datetime(2024, 1, 15, 9, 0)
    assert entry.parsed_end_datetime == datetime(2024, 1, 15, 10, 30)
    assert entry.parsed_priority == 2
    assert entry.ai_confidence == 1.0


def test_empty_row_has_base_confidence():
    entry = _normalize({"foo": "bar"})
    assert entry.ai_confidence == 0.3
    assert entry.parsed_priority == 3


def test_vietnamese_columns_and_separate_time():
    entry = _normalize({"mon_hoc": "Toán", "ngay": "16/01/2024", "gio_bat_dau": "7h30", "gio_ket_thuc": "9:00", "phong": "B2"})
    assert entry.parsed_title == "Toán"
    assert entry.parsed_start_datetime == datetime(2024, 1, 16, 7, 30)
    assert entry.parsed_end_datetime == datetime(2024, 1, 16, 9, 0)
    assert entry.parsed_location == "B2"


def test_end_before_start_is_dropped_with_warning():
    entry = _normalize({"title": "A", "start_date": "2024-01-15T10:00", "end_date": "2024-01-15T09:00"})
    assert entry.parsed_end_datetime is None
    assert any(e["field"] == "end" for e in entry.parsing_errors)


def test_bad_date_is_a_warning_not_an_error():
    entry = _normalize({"title": "A", "start_date": "someday"})
    assert entry.parsed_start_datetime is None
    assert entry.parsing_errors[0]["field"] == "start"


def test_text_rows_fall_back_to_line_as_title():
    line = "Gặp khách hàng tại văn phòng để thảo luận hợp đồng mới và kế hoạch quý"
    entry = _normalize({"text": line}, source_type="txt", raw_text=line)
    assert entry.parsed_title == line[:50]


def test_csv_rows_do_not_use_title_fallback():
    entry = _normalize({"foo": "bar"}, raw_text="bar")
    assert entry.parsed_title is None


def test_template_default_priority():
    template = ScheduleTemplate(name="clinic", default_values={"priority": 1})
    entry = _normalize({"title": "A"}, normalizer=EntryNormalizer(template=template))
    assert entry.parsed_priority == 1


def test_aware_datetimes_are_converted_to_user_zone():
    dt = parse_datetime("2024-01-15T02:00:00+00:00", timezone="Asia/Ho_Chi_Minh")
    assert dt == datetime(2024, 1, 15, 9, 0)
    assert dt.tzinfo is None


def test_iso_dates_are_never_day_first():
    assert parse_datetime("2024-02-01", day_first=True) == datetime(2024, 2, 1)


def test_unparseable_date_raises():
    with pytest.raises(ParseError):
        parse_datetime("not a date")


@pytest.mark.parametrize("value,expected", [
    ("urgent", 1), ("Quan trọng", 2), ("7", 5), (0, 1), ("", None), ("whenever", None),
])
def test_parse_priority(value, expected):
    assert parse_priority(value) == expected


def test_importance_scales_with_priority():
    assert detected_importance(1) == 1.0
    assert detected_importance(5) == 0.2
    assert detected_importance(None) == 0.5


def test_confidence_components():
    entry = ScheduleEntry(user_id=1, parsed_title="A", parsed_location="B")
    assert compute_confidence(entry) == 0.65


def test_preferences_month_first():
    prefs = UserSchedulePreferences(date_format="mm/dd/yyyy")
    entry = _normalize({"title": "A", "date": "02/03/2024"}, normalizer=EntryNormalizer(prefs))
    assert entry.parsed_start_datetime == datetime(2024, 2, 3)
