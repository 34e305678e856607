from __future__ import annotations

import json
import logging
from datetime import time
from pathlib import Path
from typing import Any, Dict

from smart_schedule.models import UserSchedulePreferences

logger = logging.getLogger(__name__)

_TIME_FIELDS = ("work_start", "work_end")


def _time_to_str(t: time) -> str:
    return t.strftime("%H:%M")


def _str_to_time(s: str) -> time:
    h, m = map(int, s.split(":")[:2])
    return time(h, m)


class PreferencesStore:
    """Per-user schedule preferences kept in one JSON document keyed by user id."""

    def __init__(self, path: str = "data/preferences.json"):
        self.path = Path(path)

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("preferences document must be a JSON object")
        return data

    def load(self, user_id: int) -> UserSchedulePreferences:
        try:
            data = self._read_all().get(str(user_id))
            if not data:
                return UserSchedulePreferences()

            # stored as "HH:MM" strings
            for name in _TIME_FIELDS:
                if isinstance(data.get(name), str):
                    data[name] = _str_to_time(data[name])

            return UserSchedulePreferences(**data)
        except Exception as e:
            logger.warning(f"Unreadable preferences for user {user_id}, using defaults: {e}")
            return UserSchedulePreferences()

    def save(self, user_id: int, prefs: UserSchedulePreferences) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            everything = self._read_all()
        except (ValueError, OSError):
            everything = {}

        data = prefs.model_dump()
        for name in _TIME_FIELDS:
            if isinstance(data.get(name), time):
                data[name] = _time_to_str(data[name])
        everything[str(user_id)] = data

        self.path.write_text(
            json.dumps(everything, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
