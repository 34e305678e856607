import logging
from collections import Counter
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_converter, get_import_service, get_preferences_store, get_repository
from api.metrics import CONVERSIONS_TOTAL, ENTRIES_CREATED_TOTAL, IMPORTS_TOTAL
from ingestion.import_service import ImportService
from scheduling.converter import EntryConverter
from smart_schedule.errors import NotFoundError
from smart_schedule.models import ScheduleImport, SourceType
from storage.preferences_store import PreferencesStore
from storage.repository import ScheduleRepository

router = APIRouter()
logger = logging.getLogger(__name__)


class ImportIn(BaseModel):
    user_id: int
    raw_content: str
    source_type: SourceType = "csv"
    import_type: str = "file_upload"
    original_filename: Optional[str] = None
    template_id: Optional[int] = None


class ConvertIn(BaseModel):
    entry_ids: Optional[List[int]] = None
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class ReviewIn(BaseModel):
    reason: Optional[str] = None


def _import_out(imp: ScheduleImport) -> dict:
    return {**imp.model_dump(exclude={"raw_content"}), "success_rate": imp.success_rate}


async def _load_import(repo: ScheduleRepository, import_id: int) -> ScheduleImport:
    imp = await repo.get_import(import_id)
    if imp is None:
        raise NotFoundError(f"Import {import_id} not found", {"import_id": import_id})
    return imp


@router.post("/imports", status_code=201)
async def create_import(
    payload: ImportIn,
    service: ImportService = Depends(get_import_service),
    repo: ScheduleRepository = Depends(get_repository),
    preferences_store: PreferencesStore = Depends(get_preferences_store),
) -> dict:
    """Parse and normalize an upload in one pass."""
    preferences = preferences_store.load(payload.user_id)
    imp = await service.ingest(
        user_id=payload.user_id,
        raw_content=payload.raw_content,
        source_type=payload.source_type,
        import_type=payload.import_type,
        original_filename=payload.original_filename,
        template_id=payload.template_id if payload.template_id is not None else preferences.default_template_id,
        preferences=preferences,
    )

    IMPORTS_TOTAL.labels(source_type=imp.source_type, status=imp.status).inc()
    entries = await repo.list_entries(imp.id)
    for status, count in Counter(e.processing_status for e in entries).items():
        ENTRIES_CREATED_TOTAL.labels(processing_status=status).inc(count)

    return _import_out(imp)


@router.get("/imports/{import_id}")
async def get_import(import_id: int, repo: ScheduleRepository = Depends(get_repository)) -> dict:
    return _import_out(await _load_import(repo, import_id))


@router.get("/imports/{import_id}/entries")
async def list_import_entries(import_id: int, repo: ScheduleRepository = Depends(get_repository)) -> dict:
    await _load_import(repo, import_id)
    entries = await repo.list_entries(import_id)
    return {
        "import_id": import_id,
        "entries": [e.model_dump() for e in entries],
        "total": len(entries),
    }


@router.post("/imports/{import_id}/convert")
async def convert_import(
    import_id: int,
    payload: Optional[ConvertIn] = None,
    repo: ScheduleRepository = Depends(get_repository),
    converter: EntryConverter = Depends(get_converter),
) -> dict:
    """Turn the import's confident, parsed entries into events."""
    payload = payload or ConvertIn()
    imp = await _load_import(repo, import_id)

    result = await converter.convert_import(
        imp.user_id,
        import_id,
        entry_ids=payload.entry_ids,
        min_confidence=payload.min_confidence,
    )

    CONVERSIONS_TOTAL.labels(outcome="success").inc(result.success)
    CONVERSIONS_TOTAL.labels(outcome="failed").inc(result.failed)
    CONVERSIONS_TOTAL.labels(outcome="manual_review").inc(result.manual_review)
    return result.to_dict()


@router.post("/entries/{entry_id}/review")
async def flag_entry_for_review(
    entry_id: int,
    payload: Optional[ReviewIn] = None,
    converter: EntryConverter = Depends(get_converter),
) -> dict:
    entry = await converter.flag_for_manual_review(entry_id, payload.reason if payload else None)
    return entry.model_dump()
