import asyncio
from typing import List, Optional

from smart_schedule.config import Settings
from storage.preferences_store import PreferencesStore
from storage.repository import ScheduleRepository

settings: Settings = Settings.from_env()

# Global instances initialized at startup
repository: Optional[ScheduleRepository] = None
preferences_store: PreferencesStore = PreferencesStore(settings.preferences_path)

# Background worker tasks, cancelled on shutdown
worker_tasks: List[asyncio.Task] = []
