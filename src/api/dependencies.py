from typing import Optional

from api import state
from ingestion.import_service import ImportService
from llm.llm_client import LLMClient
from notifications.processor import NotificationProcessor
from notifications.scheduler import NotificationScheduler
from scheduling.analysis_service import AnalysisService
from scheduling.claim_manager import ClaimManager
from scheduling.converter import EntryConverter
from scheduling.optimizer import ScheduleOptimizer
from storage.memory_repository import InMemoryRepository
from storage.preferences_store import PreferencesStore
from storage.repository import ScheduleRepository

_llm_client: Optional[LLMClient] = None


def get_repository() -> ScheduleRepository:
    # startup normally sets this; fall back for callers that skip it (tests, scripts)
    if state.repository is None:
        state.repository = InMemoryRepository()
    return state.repository


def get_preferences_store() -> PreferencesStore:
    return state.preferences_store


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient(settings=state.settings)
    return _llm_client


def get_import_service() -> ImportService:
    return ImportService(get_repository())


def get_claim_manager() -> ClaimManager:
    return ClaimManager(get_repository())


def get_converter() -> EntryConverter:
    return EntryConverter(get_repository(), state.settings.conversion_min_confidence)


def get_notification_scheduler() -> NotificationScheduler:
    return NotificationScheduler(get_repository())


def get_notification_processor() -> NotificationProcessor:
    return NotificationProcessor(get_repository())


def get_analysis_service() -> AnalysisService:
    return AnalysisService(
        get_repository(),
        ScheduleOptimizer(get_llm_client()),
        timeout_s=state.settings.llm_timeout_s,
    )
