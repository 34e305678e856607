"""
Decode uploaded schedule content into row-level records.

Every format yields `ParsedRow(row_number, raw_text, original_data)`. A bad
row is recorded in `ParseResult.errors` and skipped; only a document that
cannot be decoded at all (invalid JSON or iCalendar) raises ParseError.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from icalendar import Calendar

from smart_schedule.errors import ParseError
from smart_schedule.models import ScheduleTemplate

logger = logging.getLogger(__name__)


@dataclass
class ParsedRow:
    row_number: int
    raw_text: str
    original_data: Dict[str, Any]


@dataclass
class ParseResult:
    rows: List[ParsedRow] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, row_number: Optional[int], message: str) -> None:
        logger.warning(f"Row {row_number}: {message}")
        self.errors.append({"row_number": row_number, "error": message})


def apply_field_mapping(data: Mapping[str, Any], mapping: Mapping[str, str]) -> Dict[str, Any]:
    """
    Rename source keys to canonical names without losing anything.

    `mapping` is canonical name -> source key. Mapped values that are None
    are not copied; unmapped source keys are kept unless a canonical key of
    the same name was already produced.
    """
    mapped: Dict[str, Any] = {}
    for target, source in mapping.items():
        if data.get(source) is not None:
            mapped[target] = data[source]

    for key, value in data.items():
        if key not in mapped:
            mapped[key] = value
    return mapped


def _split_lines(content: str) -> List[str]:
    return [line.rstrip("\r") for line in content.split("\n")]


def parse_csv(content: str) -> ParseResult:
    result = ParseResult()
    lines = _split_lines(content)
    if not lines or not lines[0].strip():
        return result

    headers = [h.strip() for h in next(csv.reader([lines[0]]))]

    for index, line in enumerate(lines[1:]):
        if not line.strip():
            continue
        row_number = index + 2
        try:
            values = next(csv.reader([line], strict=True))
        except csv.Error as e:
            result.add_error(row_number, f"malformed CSV row: {e}")
            continue

        # short rows get None for the missing trailing fields, extra values are dropped
        original = {
            header: (values[i].strip() if i < len(values) else None)
            for i, header in enumerate(headers)
        }
        result.rows.append(ParsedRow(row_number, line, original))

    return result


def parse_json(content: str) -> ParseResult:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ParseError("Invalid JSON document", {"position": e.pos, "reason": e.msg}) from e

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ParseError("JSON document must be an object or an array of objects")

    result = ParseResult()
    for index, item in enumerate(data):
        row_number = index + 1
        if not isinstance(item, dict):
            result.add_error(row_number, f"expected an object, got {type(item).__name__}")
            continue
        result.rows.append(
            ParsedRow(row_number, json.dumps(item, ensure_ascii=False), dict(item))
        )
    return result


def parse_text(content: str) -> ParseResult:
    result = ParseResult()
    for index, line in enumerate(_split_lines(content)):
        text = line.strip()
        if not text:
            continue
        result.rows.append(ParsedRow(index + 1, text, {"text": text}))
    return result


def _ical_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    dt = getattr(value, "dt", value)
    if isinstance(dt, (datetime, date)):
        return dt.isoformat()
    return str(value)


def parse_ics(content: str) -> ParseResult:
    try:
        calendar = Calendar.from_ical(content)
    except ValueError as e:
        raise ParseError(f"Invalid iCalendar document: {e}") from e

    result = ParseResult()
    for index, component in enumerate(calendar.walk("VEVENT")):
        row_number = index + 1
        original = {
            "title": _ical_value(component.get("SUMMARY")),
            "description": _ical_value(component.get("DESCRIPTION")),
            "location": _ical_value(component.get("LOCATION")),
            "start_date": _ical_value(component.get("DTSTART")),
            "end_date": _ical_value(component.get("DTEND")),
        }
        raw = component.to_ical().decode("utf-8", errors="replace")
        result.rows.append(ParsedRow(row_number, raw, original))
    return result


_PARSERS = {
    "csv": parse_csv,
    "json": parse_json,
    "txt": parse_text,
    "manual": parse_text,
    "ics": parse_ics,
    # spreadsheets are accepted when exported as delimited text
    "excel": parse_csv,
}


def parse_content(
    content: str,
    source_type: str,
    template: Optional[ScheduleTemplate] = None,
) -> ParseResult:
    try:
        parser = _PARSERS[source_type]
    except KeyError:
        raise ParseError(f"Unsupported source type: {source_type}")

    result = parser(content)

    if template is not None and template.field_mapping:
        for row in result.rows:
            row.original_data = apply_field_mapping(row.original_data, template.field_mapping)

    logger.info(
        f"Parsed {len(result.rows)} {source_type} rows ({len(result.errors)} row errors)"
    )
    return result
