import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import (
    get_analysis_service,
    get_claim_manager,
    get_notification_scheduler,
    get_preferences_store,
)
from api.metrics import LLM_LATENCY_SECONDS, LLM_REQUESTS_TOTAL, NOTIFICATIONS_CREATED_TOTAL, record_claims
from notifications.scheduler import NotificationScheduler
from scheduling.analysis_service import AnalysisService
from scheduling.claim_manager import ClaimManager
from smart_schedule.errors import ExternalServiceError
from storage.preferences_store import PreferencesStore

router = APIRouter(prefix="/analysis")
logger = logging.getLogger(__name__)


class TaskRef(BaseModel):
    id: int
    source_type: str


class ClaimIn(BaseModel):
    tasks: List[TaskRef]
    batch_id: Optional[str] = None


class ResultItem(TaskRef):
    status: str = "completed"
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    batch_id: Optional[str] = None


class ResultsIn(BaseModel):
    results: List[ResultItem]


class ResetIn(BaseModel):
    tasks: List[TaskRef]


class OptimizeIn(BaseModel):
    user_id: int
    tasks: List[TaskRef] = Field(..., min_length=1)
    target_date: Optional[date] = None
    batch_id: Optional[str] = None
    auto_create_events: bool = False


class ApproveIn(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    feedback: Optional[str] = None


@router.get("/tasks")
async def list_tasks(
    user_id: int,
    include_locked: bool = False,
    claims: ClaimManager = Depends(get_claim_manager),
) -> dict:
    """Events and entries of a user that can be sent to the optimizer."""
    tasks = await claims.list_available(user_id, include_locked)
    return {"tasks": tasks, "total": len(tasks)}


@router.post("/claims")
async def claim_tasks(payload: ClaimIn, claims: ClaimManager = Depends(get_claim_manager)) -> dict:
    result = await claims.claim_batch([t.model_dump() for t in payload.tasks], payload.batch_id)
    record_claims(result)
    return result.to_dict()


@router.post("/results")
async def record_results(payload: ResultsIn, claims: ClaimManager = Depends(get_claim_manager)) -> dict:
    result = await claims.record_results([r.model_dump() for r in payload.results])
    return result.to_dict()


@router.post("/reset")
async def reset_tasks(payload: ResetIn, claims: ClaimManager = Depends(get_claim_manager)) -> dict:
    result = await claims.reset_batch([t.model_dump() for t in payload.tasks])
    return result.to_dict()


@router.post("/optimize")
async def optimize(
    payload: OptimizeIn,
    service: AnalysisService = Depends(get_analysis_service),
    preferences_store: PreferencesStore = Depends(get_preferences_store),
) -> dict:
    """Claim the tasks, ask the LLM for a schedule and store the slots."""
    started = time.perf_counter()
    try:
        outcome = await service.analyze(
            user_id=payload.user_id,
            task_refs=[t.model_dump() for t in payload.tasks],
            target_date=payload.target_date,
            preferences=preferences_store.load(payload.user_id),
            batch_id=payload.batch_id,
            auto_create_events=payload.auto_create_events,
        )
    except ExternalServiceError:
        LLM_REQUESTS_TOTAL.labels(outcome="failed").inc()
        raise
    finally:
        LLM_LATENCY_SECONDS.observe(time.perf_counter() - started)

    LLM_REQUESTS_TOTAL.labels(outcome="completed").inc()
    record_claims(outcome.claims)
    if outcome.reminders:
        NOTIFICATIONS_CREATED_TOTAL.labels(type="reminder").inc(len(outcome.reminders))

    return {
        "analysis": outcome.analysis.model_dump(),
        "claims": outcome.claims.to_dict(),
        "slots": [s.model_dump() for s in outcome.slots],
        "event_ids": outcome.event_ids,
    }


@router.post("/{analysis_id}/approve")
async def approve_analysis(
    analysis_id: int,
    payload: ApproveIn,
    service: AnalysisService = Depends(get_analysis_service),
) -> dict:
    analysis = await service.approve(analysis_id, payload.rating, payload.feedback)
    return analysis.model_dump()


@router.get("/conflicts")
async def slot_conflicts(
    user_id: int,
    on: date,
    scheduler: NotificationScheduler = Depends(get_notification_scheduler),
) -> dict:
    conflicts = await scheduler.detect_slot_conflicts(user_id, on)
    return {"date": on.isoformat(), "conflicts": conflicts}
