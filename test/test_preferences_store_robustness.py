from datetime import time

from smart_schedule.models import UserSchedulePreferences
from storage.preferences_store import PreferencesStore


def test_preferences_roundtrip(tmp_path):
    store = PreferencesStore(path=str(tmp_path / "prefs.json"))
    prefs = UserSchedulePreferences(work_start=time(7, 0), work_end=time(16, 30), constraints=["No meetings after 16:00"])
    store.save(1, prefs)
    loaded = store.load(1)
    assert loaded.work_start == time(7, 0)
    assert loaded.work_end == time(16, 30)
    assert loaded.constraints == ["No meetings after 16:00"]


def test_preferences_are_per_user(tmp_path):
    store = PreferencesStore(path=str(tmp_path / "prefs.json"))
    store.save(1, UserSchedulePreferences(default_priority=1))
    store.save(2, UserSchedulePreferences(default_priority=5))
    assert store.load(1).default_priority == 1
    assert store.load(2).default_priority == 5
    assert store.load(3).default_priority == 3


def test_preferences_corrupted_file(tmp_path):
    p = tmp_path / "prefs.json"
    p.write_text("{not valid json")
    store = PreferencesStore(path=str(p))
    prefs = store.load(1)
    assert isinstance(prefs, UserSchedulePreferences)


def test_preferences_invalid_values_fall_back(tmp_path):
    p = tmp_path / "prefs.json"
    p.write_text('{"1": {"break_duration": 500}}')
    assert PreferencesStore(path=str(p)).load(1).break_duration == 60


def test_save_over_corrupted_file(tmp_path):
    p = tmp_path / "prefs.json"
    p.write_text("[]")
    store = PreferencesStore(path=str(p))
    store.save(1, UserSchedulePreferences(timezone="Europe/Berlin"))
    assert store.load(1).timezone == "Europe/Berlin"
