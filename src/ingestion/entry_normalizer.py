"""
Best-effort extraction of typed fields from heterogeneous rows.

Rows come from spreadsheets exported by schools, clinics and offices, so the
same field shows up under many names (English and Vietnamese). Each target
field has an ordered candidate list and the first non-blank match wins.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from dateutil import parser as date_parser
from dateutil import tz

from ingestion.content_parser import ParsedRow
from smart_schedule.errors import ParseError
from smart_schedule.models import ScheduleEntry, ScheduleTemplate, UserSchedulePreferences

logger = logging.getLogger(__name__)

TITLE_KEYS = ("Title", "title", "event", "subject", "name", "mon_hoc", "ten", "tieu_de")
DESCRIPTION_KEYS = ("Description", "description", "notes", "details", "ghi_chu", "mo_ta")
LOCATION_KEYS = ("Location", "location", "venue", "place", "room", "phong", "dia_diem")
START_KEYS = (
    "Start Date", "start_date", "StartDate", "start", "date", "datetime",
    "ngay", "ngay_bat_dau",
)
START_TIME_KEYS = ("Start Time", "start_time", "gio_bat_dau")
END_KEYS = (
    "End Date", "end_date", "EndDate", "end", "end_time", "End Time",
    "gio_ket_thuc", "ngay_ket_thuc",
)
PRIORITY_KEYS = ("Priority", "priority", "importance", "muc_do_uu_tien", "uu_tien")

DEFAULT_PRIORITY = 3
TEXT_TITLE_LENGTH = 50

PRIORITY_WORDS = {
    "critical": 1,
    "urgent": 1,
    "asap": 1,
    "khẩn cấp": 1,
    "high": 2,
    "important": 2,
    "cao": 2,
    "quan trọng": 2,
    "medium": 3,
    "normal": 3,
    "trung bình": 3,
    "low": 4,
    "minor": 4,
    "thấp": 4,
}

_TIME_ONLY_RE = re.compile(r"^\d{1,2}[:h]\d{2}(:\d{2})?\s*([ap]\.?m\.?)?$", re.I)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def pick_field(data: Dict[str, Any], candidates: Iterable[str]) -> Optional[Any]:
    """First non-blank value among `candidates`, trying exact then lowercase keys."""
    lower = {str(k).lower(): v for k, v in data.items()}
    for key in candidates:
        value = data.get(key)
        if _blank(value):
            value = lower.get(key.lower())
        if not _blank(value):
            return value.strip() if isinstance(value, str) else value
    return None


def _as_text(value: Any) -> Optional[str]:
    if _blank(value):
        return None
    return str(value).strip()


def parse_datetime(
    value: Any,
    *,
    day_first: bool = True,
    default: Optional[datetime] = None,
    timezone: Optional[str] = None,
) -> datetime:
    """
    Parse a permissive date/time string into a naive datetime.

    ISO 8601 is tried first so "2024-01-02" is never read day-first.
    Offsets are converted to `timezone` (the user's zone) and dropped.
    Raises ParseError when nothing sensible can be read.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if not text:
            raise ParseError("empty date value")
        try:
            dt = date_parser.isoparse(text)
        except (ValueError, OverflowError):
            base = default or datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
            try:
                dt = date_parser.parse(text.replace("h", ":") if _TIME_ONLY_RE.match(text) else text,
                                       dayfirst=day_first, default=base)
            except (ValueError, OverflowError, TypeError) as e:
                raise ParseError(f"unrecognised date '{text}'", {"value": text}) from e

    if dt.tzinfo is not None:
        zone = tz.gettz(timezone) if timezone else None
        dt = dt.astimezone(zone or tz.UTC).replace(tzinfo=None)
    return dt


def parse_priority(value: Any) -> Optional[int]:
    """Map a numeric or worded priority onto 1 (critical) .. 5 (lowest)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = int(value)
    else:
        text = str(value).strip().lower()
        if not text:
            return None
        if text in PRIORITY_WORDS:
            return PRIORITY_WORDS[text]
        try:
            number = int(float(text))
        except ValueError:
            return None
    return min(max(number, 1), 5)


def compute_confidence(entry: ScheduleEntry) -> float:
    confidence = 0.3
    if entry.parsed_title:
        confidence += 0.2
    if entry.parsed_start_datetime:
        confidence += 0.2
    if entry.parsed_description:
        confidence += 0.15
    if entry.parsed_location:
        confidence += 0.15
    return round(min(confidence, 1.0), 2)


def detected_importance(priority: Optional[int]) -> float:
    if priority is None:
        return 0.5
    return round((6 - priority) / 5, 2)


def refresh_scores(entry: ScheduleEntry) -> None:
    entry.ai_confidence = compute_confidence(entry)
    entry.ai_detected_importance = detected_importance(entry.parsed_priority)


class EntryNormalizer:
    def __init__(
        self,
        preferences: Optional[UserSchedulePreferences] = None,
        template: Optional[ScheduleTemplate] = None,
    ):
        self.preferences = preferences or UserSchedulePreferences()
        self.template = template

    def _warn(self, entry: ScheduleEntry, field: str, message: str) -> None:
        logger.warning(f"Row {entry.row_number}: {field}: {message}")
        entry.parsing_errors.append({"field": field, "warning": message})

    def _datetime(self, entry: ScheduleEntry, field: str, value: Any,
                  default: Optional[datetime] = None) -> Optional[datetime]:
        if value is None:
            return None
        try:
            return parse_datetime(
                value,
                day_first=self.preferences.day_first,
                default=default,
                timezone=self.preferences.timezone,
            )
        except ParseError as e:
            self._warn(entry, field, e.message)
            return None

    def _default_priority(self) -> int:
        if self.template is not None:
            templated = parse_priority(self.template.field_default("priority"))
            if templated is not None:
                return templated
        return self.preferences.default_priority or DEFAULT_PRIORITY

    def normalize(
        self,
        row: ParsedRow,
        *,
        user_id: int,
        import_id: Optional[int] = None,
        source_type: str = "csv",
    ) -> ScheduleEntry:
        data = row.original_data
        entry = ScheduleEntry(
            user_id=user_id,
            import_id=import_id,
            row_number=row.row_number,
            raw_text=row.raw_text,
            original_data=data,
        )

        entry.parsed_title = _as_text(pick_field(data, TITLE_KEYS))
        entry.parsed_description = _as_text(pick_field(data, DESCRIPTION_KEYS))
        entry.parsed_location = _as_text(pick_field(data, LOCATION_KEYS))

        start = self._datetime(entry, "start", pick_field(data, START_KEYS))
        start_time = pick_field(data, START_TIME_KEYS)
        if start is not None and start_time is not None:
            day = start.replace(hour=0, minute=0, second=0, microsecond=0)
            start = self._datetime(entry, "start_time", start_time, default=day) or start
        entry.parsed_start_datetime = start

        # a bare "10:30" end inherits the start date
        end_default = start.replace(hour=0, minute=0, second=0, microsecond=0) if start else None
        end = self._datetime(entry, "end", pick_field(data, END_KEYS), default=end_default)
        if end is not None and start is not None and end < start:
            self._warn(entry, "end", "end is before start, ignored")
            end = None
        entry.parsed_end_datetime = end

        raw_priority = pick_field(data, PRIORITY_KEYS)
        priority = parse_priority(raw_priority)
        if raw_priority is not None and priority is None:
            self._warn(entry, "priority", f"unrecognised priority '{raw_priority}'")
        entry.parsed_priority = priority if priority is not None else self._default_priority()

        if entry.parsed_title is None and source_type in ("txt", "manual") and row.raw_text:
            entry.parsed_title = row.raw_text[:TEXT_TITLE_LENGTH]

        refresh_scores(entry)
        return entry
