"""
Reminder derivation for slots and events.

Every notification is keyed (`slot:{id}`, `event:{id}`,
`daily_summary:{user}:{date}`); the repository refuses a second insert for
the same key, so re-running any of these builders is a no-op, except that
a daily summary still waiting to go out is rewritten with fresh counts.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

from smart_schedule.models import Event, Notification, ScheduleSlot

logger = logging.getLogger(__name__)

MIN_BREAK_MINUTES = 5
DAILY_SUMMARY_TIME = time(20, 0)

PRIORITY_LEVELS = {"critical": 1, "high": 2, "medium": 3, "low": 4}
TITLE_PREFIXES = {"critical": "KHẨN CẤP", "high": "Quan trọng"}
EVENT_PRIORITY_NAMES = {1: "critical", 2: "high", 3: "medium", 4: "low", 5: "low"}


def delivery_method_for(priority: str) -> str:
    if priority == "critical":
        return "push"
    if priority == "high":
        return "email"
    return "in_app"


def priority_level(priority: str) -> int:
    return PRIORITY_LEVELS.get(priority, 3)


def reminder_title(priority: str, title: str) -> str:
    return f"{TITLE_PREFIXES.get(priority, 'Nhắc nhở')}: {title}"


def reminder_message(title: str, start: datetime, end: Optional[datetime], location: Optional[str]) -> str:
    message = f"Bạn có lịch '{title}' từ {start.strftime('%H:%M')}"
    if end is not None:
        message += f" đến {end.strftime('%H:%M')}"
    if location:
        message += f" tại {location}"
    return message


class NotificationScheduler:
    def __init__(self, repo):
        self.repo = repo

    async def _create(self, notification: Notification) -> Optional[Notification]:
        stored = await self.repo.create_notification(notification)
        if stored is None:
            logger.debug(f"Notification {notification.dedup_key} already exists")
        return stored

    async def create_slot_reminder(self, slot: ScheduleSlot) -> Optional[Notification]:
        if slot.reminder_minutes_before is None or slot.id is None:
            return None
        return await self._create(
            Notification(
                user_id=slot.user_id,
                slot_id=slot.id,
                event_id=slot.event_id,
                type="reminder",
                subtype="schedule_slot",
                trigger_datetime=slot.start_datetime - timedelta(minutes=slot.reminder_minutes_before),
                title=reminder_title(slot.priority, slot.task_title),
                message=reminder_message(slot.task_title, slot.start_datetime, slot.end_datetime, slot.location),
                action_data={"slot_id": slot.id, "analysis_id": slot.analysis_id, "action": "view_schedule"},
                priority_level=priority_level(slot.priority),
                delivery_method=delivery_method_for(slot.priority),
                dedup_key=f"slot:{slot.id}",
            )
        )

    async def create_slot_reminders(self, slots: Iterable[ScheduleSlot]) -> List[Notification]:
        created = []
        for slot in slots:
            notification = await self.create_slot_reminder(slot)
            if notification is not None:
                created.append(notification)
        if created:
            logger.info(f"Created {len(created)} slot reminders")
        return created

    async def create_event_reminder(self, event: Event) -> Optional[Notification]:
        if event.reminder_minutes_before is None or event.id is None:
            return None
        priority = EVENT_PRIORITY_NAMES.get(event.priority, "medium")
        return await self._create(
            Notification(
                user_id=event.user_id,
                event_id=event.id,
                type="reminder",
                subtype="event",
                trigger_datetime=event.start_datetime - timedelta(minutes=event.reminder_minutes_before),
                title=reminder_title(priority, event.title),
                message=reminder_message(event.title, event.start_datetime, event.end_datetime, event.location),
                action_data={"event_id": event.id, "action": "view_event"},
                priority_level=priority_level(priority),
                delivery_method=delivery_method_for(priority),
                dedup_key=f"event:{event.id}",
            )
        )

    async def create_daily_summary(self, user_id: int, for_date: date) -> Optional[Notification]:
        """
        Summary of `for_date`'s slots, delivered at 20:00 the evening before.

        Returns the notification only when it is newly created. An existing
        summary that has not gone out yet is rewritten with the current counts.
        """
        slots = [
            s for s in await self.repo.list_slots(user_id=user_id, on=for_date)
            if s.status == "scheduled"
        ]
        if not slots:
            return None

        critical = sum(1 for s in slots if s.priority == "critical")
        high = sum(1 for s in slots if s.priority == "high")
        message = f"Bạn có {len(slots)} lịch trình vào ngày mai"
        if critical:
            message += f", trong đó {critical} việc khẩn cấp"
        if high:
            message += f", {high} việc quan trọng"

        action_data = {
            "date": for_date.isoformat(),
            "total_slots": len(slots),
            "critical": critical,
            "high": high,
        }
        dedup_key = f"daily_summary:{user_id}:{for_date.isoformat()}"

        created = await self._create(
            Notification(
                user_id=user_id,
                type="daily_summary",
                subtype="schedule_overview",
                trigger_datetime=datetime.combine(for_date - timedelta(days=1), DAILY_SUMMARY_TIME),
                title="Lịch ngày mai của bạn",
                message=message,
                action_data=action_data,
                priority_level=3,
                delivery_method="email",
                dedup_key=dedup_key,
            )
        )
        if created is None:
            if await self.repo.update_pending_notification(dedup_key, message=message, action_data=action_data):
                logger.debug(f"Refreshed {dedup_key}: {len(slots)} slots")
        return created

    async def create_daily_summaries(self, for_date: date) -> List[Notification]:
        users = sorted({s.user_id for s in await self.repo.list_slots(on=for_date)})
        created = []
        for user_id in users:
            notification = await self.create_daily_summary(user_id, for_date)
            if notification is not None:
                created.append(notification)
        return created

    async def detect_slot_conflicts(self, user_id: int, on: date) -> List[Dict[str, Any]]:
        slots = [
            s for s in await self.repo.list_slots(user_id=user_id, on=on)
            if s.status not in ("cancelled", "completed")
        ]
        slots.sort(key=lambda s: s.start_datetime)

        conflicts = []
        for current, following in zip(slots, slots[1:]):
            gap = (following.start_datetime - current.end_datetime).total_seconds() / 60
            if gap < 0:
                conflicts.append({
                    "type": "overlap",
                    "slots": [current.id, following.id],
                    "message": f"'{current.task_title}' overlaps '{following.task_title}'",
                })
            elif gap < MIN_BREAK_MINUTES:
                conflicts.append({
                    "type": "insufficient_break",
                    "slots": [current.id, following.id],
                    "message": f"Only {int(gap)} minutes between '{current.task_title}' and '{following.task_title}'",
                })
        return conflicts
