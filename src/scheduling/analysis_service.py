"""
Claim -> optimize -> complete/fail orchestration.

The LLM call runs in a worker thread under a deadline. Whatever happens to
it (error, timeout, cancellation of the caller) every task claimed for the
batch is unlocked before control returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from notifications.scheduler import NotificationScheduler
from scheduling.claim_manager import BatchClaimResult, ClaimManager
from scheduling.converter import EntryConverter
from scheduling.optimizer import OptimizationResult, ScheduleOptimizer
from smart_schedule.errors import ExternalServiceError, NotFoundError, ValidationError
from smart_schedule.models import (
    AnalyzableTask,
    Notification,
    ScheduleAnalysis,
    ScheduleSlot,
    UserSchedulePreferences,
)
from storage.repository import ScheduleRepository, TaskKey

logger = logging.getLogger(__name__)


@dataclass
class AnalysisOutcome:
    analysis: ScheduleAnalysis
    claims: BatchClaimResult
    slots: List[ScheduleSlot] = field(default_factory=list)
    event_ids: List[int] = field(default_factory=list)
    reminders: List[Notification] = field(default_factory=list)


def _split_task_id(task_id: Optional[str]) -> Optional[TaskKey]:
    """Slot task ids are "entry:12" / "event:7" as sent to the model."""
    if not task_id or ":" not in task_id:
        return None
    source, _, raw = task_id.partition(":")
    if source not in ("event", "entry") or not raw.isdigit():
        return None
    return source, int(raw)


class AnalysisService:
    def __init__(
        self,
        repo: ScheduleRepository,
        optimizer: ScheduleOptimizer,
        timeout_s: float = 30.0,
    ):
        self.repo = repo
        self.optimizer = optimizer
        self.timeout_s = timeout_s
        self.claims = ClaimManager(repo)
        self.notifications = NotificationScheduler(repo)
        self.converter = EntryConverter(repo)

    async def _release(self, claimed: List[TaskKey], batch_id: str, reason: str) -> None:
        for source, task_id in claimed:
            try:
                await self.claims.fail(source, task_id, reason, batch_id)
            except Exception:
                logger.exception(f"Could not release {source} {task_id} from batch {batch_id}")

    def _slots_from(self, analysis: ScheduleAnalysis, result: OptimizationResult,
                    tasks: Dict[TaskKey, AnalyzableTask]) -> List[ScheduleSlot]:
        slots = []
        for out in result.schedule.schedule_slots:
            key = _split_task_id(out.task_id)
            task = tasks.get(key) if key else None
            slot = ScheduleSlot(
                analysis_id=analysis.id,
                user_id=analysis.user_id,
                original_entry_id=key[1] if key and key[0] == "entry" else None,
                event_id=key[1] if key and key[0] == "event" else None,
                date=result.schedule.date,
                start_time=out.start_time,
                end_time=out.end_time,
                task_id=out.task_id,
                task_title=out.task_title,
                task_description=task.to_task_payload()["description"] if task else None,
                location=out.location,
                priority=out.priority,
                category=out.category,
                ai_reasoning=out.reasoning,
                energy_level=out.energy_level,
                is_flexible=out.can_be_rescheduled,
                reminder_minutes_before=out.reminder_minutes_before if out.reminder_minutes_before is not None else 15,
            )
            slot.duration_minutes = out.duration_minutes or int(
                (slot.end_datetime - slot.start_datetime).total_seconds() // 60
            )
            slots.append(slot)
        return slots

    async def analyze(
        self,
        *,
        user_id: int,
        task_refs: Iterable[Any],
        target_date: Optional[date] = None,
        preferences: Optional[UserSchedulePreferences] = None,
        batch_id: Optional[str] = None,
        auto_create_events: bool = False,
    ) -> AnalysisOutcome:
        target_date = target_date or date.today()
        preferences = preferences or UserSchedulePreferences()

        # other users' tasks are rejected before anything is locked
        claims = await self.claims.claim_batch(task_refs, batch_id, user_id=user_id)
        claimed = claims.claimed_keys
        if not claimed:
            raise ValidationError("No task could be claimed for analysis", claims.to_dict())

        tasks: Dict[TaskKey, AnalyzableTask] = {}
        for key in claimed:
            task = await self.repo.get_task(*key)
            if task is not None:
                tasks[key] = task

        payloads = [t.to_task_payload() for t in tasks.values()]
        analysis = await self.repo.create_analysis(
            ScheduleAnalysis(
                user_id=user_id,
                target_date=target_date,
                status="processing",
                input_data=payloads,
                user_preferences=preferences.optimizer_preferences(),
                batch_id=claims.batch_id,
                ai_model=self.optimizer.llm.model,
            )
        )

        released: List[TaskKey] = []

        async def abort(reason: str, error_type: str) -> None:
            logger.error(f"Analysis {analysis.id} failed: {reason}")
            analysis.status = "failed"
            analysis.error_details = {"error": reason, "type": error_type}
            await self.repo.save_analysis(analysis)
            await self._release([k for k in claimed if k not in released], claims.batch_id, reason)

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self.optimizer.optimize, payloads, preferences.optimizer_preferences(), target_date
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as e:
            reason = f"AI analysis timed out after {self.timeout_s}s"
            await abort(reason, "timeout")
            raise ExternalServiceError(reason, {"analysis_id": analysis.id}) from e
        except asyncio.CancelledError:
            await asyncio.shield(abort("AI analysis cancelled", "cancelled"))
            raise
        except ExternalServiceError as e:
            e.detail.setdefault("analysis_id", analysis.id)
            await abort(e.message, type(e).__name__)
            raise
        except Exception as e:
            await abort(str(e) or type(e).__name__, type(e).__name__)
            raise ExternalServiceError(f"AI analysis failed: {e}", {"analysis_id": analysis.id}) from e

        try:
            analysis.status = "completed"
            analysis.ai_model = result.model
            analysis.optimized_schedule = result.schedule.model_dump(mode="json")
            analysis.optimization_metrics = result.metrics
            analysis.confidence_score = result.confidence
            analysis.processing_time_ms = result.processing_time_ms
            analysis.prompt_tokens = result.prompt_tokens
            analysis.completion_tokens = result.completion_tokens
            analysis.total_tokens = result.total_tokens
            analysis.api_cost = result.api_cost
            await self.repo.save_analysis(analysis)

            slots = await self.repo.add_slots(self._slots_from(analysis, result, tasks))

            by_task: Dict[TaskKey, List[Dict[str, Any]]] = {}
            for slot in slots:
                key = _split_task_id(slot.task_id)
                if key:
                    by_task.setdefault(key, []).append(
                        {"slot_id": slot.id, "start": slot.start_time.isoformat(), "end": slot.end_time.isoformat()}
                    )
            for key in claimed:
                await self.claims.complete(
                    *key,
                    {"analysis_id": analysis.id, "slots": by_task.get(key, [])},
                    claims.batch_id,
                )
                released.append(key)
        except Exception as e:
            await abort(f"storing analysis result failed: {e}", type(e).__name__)
            raise

        reminders = await self.notifications.create_slot_reminders(slots)

        outcome = AnalysisOutcome(analysis=analysis, claims=claims, slots=slots, reminders=reminders)
        if auto_create_events:
            for slot in slots:
                event = await self.converter.create_event_from_slot(slot)
                outcome.event_ids.append(event.id)

        logger.info(
            f"Analysis {analysis.id} completed: {len(slots)} slots, "
            f"confidence {result.confidence}, cost ${result.api_cost}"
        )
        return outcome

    async def approve(
        self, analysis_id: int, rating: Optional[int] = None, feedback: Optional[str] = None
    ) -> ScheduleAnalysis:
        analysis = await self.repo.get_analysis(analysis_id)
        if analysis is None:
            raise NotFoundError(f"Analysis {analysis_id} not found", {"analysis_id": analysis_id})
        analysis.approve(rating, feedback)
        await self.repo.save_analysis(analysis)
        return analysis
