import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_notification_scheduler, get_repository
from api.metrics import NOTIFICATIONS_CREATED_TOTAL
from notifications.scheduler import NotificationScheduler
from smart_schedule.errors import NotFoundError, ValidationError
from smart_schedule.models import Event
from storage.repository import ScheduleRepository

router = APIRouter()
logger = logging.getLogger(__name__)


class EventIn(BaseModel):
    user_id: int
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    start_datetime: datetime
    end_datetime: Optional[datetime] = None
    priority: int = Field(3, ge=1, le=5)
    category: Optional[str] = None
    reminder_minutes_before: Optional[int] = Field(None, ge=0)
    event_metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post("/events", status_code=201)
async def create_event(
    payload: EventIn,
    repo: ScheduleRepository = Depends(get_repository),
    scheduler: NotificationScheduler = Depends(get_notification_scheduler),
) -> dict:
    """Create a manual event; it is immediately available for AI analysis."""
    if payload.end_datetime is not None and payload.end_datetime < payload.start_datetime:
        raise ValidationError("end_datetime is before start_datetime")

    event = await repo.create_event(Event(**payload.model_dump()))
    logger.info(f"Created event {event.id} for user {event.user_id}")

    if await scheduler.create_event_reminder(event) is not None:
        NOTIFICATIONS_CREATED_TOTAL.labels(type="reminder").inc()
    return event.model_dump()


@router.get("/events/{event_id}")
async def get_event(event_id: int, repo: ScheduleRepository = Depends(get_repository)) -> dict:
    event = await repo.get_event(event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found", {"event_id": event_id})
    return event.model_dump()
