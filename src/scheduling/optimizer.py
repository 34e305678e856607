"""
Schedule optimizer: turns a task list into an LLM function-calling request
and validates the structured reply.

Everything here is synchronous; callers that run on an event loop wrap
`ScheduleOptimizer.optimize` in `asyncio.to_thread`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from llm.llm_client import FunctionCallResult, LLMClient
from llm.schemas import SCHEDULE_FUNCTION_SCHEMA, OptimizedSchedule
from smart_schedule.errors import ExternalServiceError

logger = logging.getLogger(__name__)

PROMPT_COST_PER_1K = Decimal("0.00015")
COMPLETION_COST_PER_1K = Decimal("0.0006")

DEFAULT_PREFERENCES = {
    "work_start": "08:00",
    "work_end": "18:00",
    "break_duration": 60,
    "constraints": [],
}

PRIORITY_BY_NUMBER = {1: "critical", 2: "high", 3: "medium", 4: "low", 5: "low"}
PRIORITY_BY_WORD = {
    "critical": "critical",
    "urgent": "critical",
    "asap": "critical",
    "high": "high",
    "important": "high",
    "medium": "medium",
    "normal": "medium",
    "low": "low",
    "minor": "low",
}
DEFAULT_DURATION_BY_PRIORITY = {"critical": 60, "high": 60, "medium": 45, "low": 30}

PREFERRED_TIME_WORDS = (
    ("morning", ("morning", "sáng")),
    ("afternoon", ("afternoon", "chiều")),
    ("evening", ("evening", "tối")),
)

_HOURS_RE = re.compile(r"(\d+)\s*h")
_MINUTES_RE = re.compile(r"(\d+)\s*m")


def normalize_priority(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return "medium"
    if isinstance(value, (int, float)):
        return PRIORITY_BY_NUMBER.get(int(value), "medium")
    text = str(value).strip().lower()
    if text.lstrip("-").isdigit():
        return PRIORITY_BY_NUMBER.get(int(text), "medium")
    return PRIORITY_BY_WORD.get(text, "medium")


def parse_duration_string(text: str) -> int:
    """ "1h30m" -> 90, "45 min" -> 45, "90" -> 90; unreadable -> 30."""
    text = text.strip().lower()
    if text.isdigit():
        return int(text) or 30
    minutes = 0
    hours = _HOURS_RE.search(text)
    if hours:
        minutes += int(hours.group(1)) * 60
    mins = _MINUTES_RE.search(text)
    if mins:
        minutes += int(mins.group(1))
    return minutes or 30


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def extract_duration(task: Dict[str, Any], priority: str) -> int:
    explicit = task.get("duration_minutes")
    if explicit is not None:
        try:
            return int(explicit)
        except (TypeError, ValueError):
            pass

    duration = task.get("duration")
    if duration is not None:
        if isinstance(duration, (int, float)):
            return int(duration)
        return parse_duration_string(str(duration))

    start = _as_datetime(task.get("parsed_start_datetime"))
    end = _as_datetime(task.get("parsed_end_datetime"))
    if start and end and end > start:
        return int((end - start).total_seconds() // 60)

    return DEFAULT_DURATION_BY_PRIORITY.get(priority, 30)


def detect_preferred_time(task: Dict[str, Any]) -> Optional[str]:
    text = f"{task.get('title') or ''} {task.get('description') or ''}".lower()
    for label, words in PREFERRED_TIME_WORDS:
        if any(w in text for w in words):
            return label
    return None


def normalize_task(task: Dict[str, Any], index: int = 0) -> Dict[str, Any]:
    priority = normalize_priority(
        task.get("priority") if task.get("priority") is not None else task.get("parsed_priority")
    )
    normalized = {
        "id": str(task.get("id") or f"task-{index + 1}"),
        "title": task.get("title") or task.get("parsed_title") or task.get("task") or "Untitled Task",
        "description": task.get("description") or task.get("parsed_description") or "",
        "duration_minutes": extract_duration(task, priority),
        "priority": priority,
        "preferred_time": task.get("preferred_time") or detect_preferred_time(task),
        "deadline": task.get("deadline"),
        "category": task.get("category") or task.get("ai_detected_category") or "general",
        "location": task.get("location") or task.get("parsed_location"),
        "keywords": list(task.get("keywords") or task.get("detected_keywords") or []),
    }
    for extra in ("requires_focus", "can_be_interrupted"):
        if extra in task:
            normalized[extra] = task[extra]
    return normalized


def normalize_tasks(tasks: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [normalize_task(t, i) for i, t in enumerate(tasks)]


def calculate_confidence(summary: Optional[Dict[str, Any]]) -> float:
    if not summary:
        return 0.5
    utilization = float(summary.get("utilization_rate") or 0)
    coverage = float(summary.get("high_priority_coverage") or 0)
    confidence = 0.5 + min(utilization * 0.3, 0.3) + min(coverage * 0.2, 0.2)
    return round(min(confidence, 1.0), 2)


def calculate_api_cost(prompt_tokens: int, completion_tokens: int) -> float:
    cost = (
        Decimal(prompt_tokens) / 1000 * PROMPT_COST_PER_1K
        + Decimal(completion_tokens) / 1000 * COMPLETION_COST_PER_1K
    )
    return float(cost.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))


def build_system_prompt(preferences: Dict[str, Any]) -> str:
    return (
        "You are an expert AI schedule optimizer specializing in time management and productivity.\n"
        "Analyze task lists and create optimal daily schedules that maximize productivity "
        "while keeping a healthy work-life balance.\n\n"
        "Consider when optimizing:\n"
        "1. Task priority and urgency (critical > high > medium > low)\n"
        "2. Energy levels through the day (focus work in the morning, routine work in the afternoon)\n"
        "3. Task duration and complexity\n"
        "4. Location and travel time between tasks\n"
        f"5. User's work hours: {preferences['work_start']} to {preferences['work_end']}\n"
        f"6. Lunch break of {preferences['break_duration']} minutes around noon\n"
        "7. Buffer time of 5-10 minutes between tasks\n"
        "8. Group similar tasks when possible\n\n"
        "Task descriptions may be in Vietnamese; respect typical Vietnamese work culture "
        "(early start, long lunch break).\n"
        "Always give the reasoning for each scheduling decision."
    )


def build_user_prompt(tasks: List[Dict[str, Any]], preferences: Dict[str, Any], target_date: date) -> str:
    tasks_json = json.dumps(tasks, indent=2, ensure_ascii=False, default=str)
    prompt = f"Please analyze the following task list and create an optimized schedule for {target_date.isoformat()}:\n\n"
    prompt += f"Tasks to schedule:\n{tasks_json}\n\n"
    if preferences.get("constraints"):
        prompt += "Additional constraints:\n"
        for constraint in preferences["constraints"]:
            prompt += f"- {constraint}\n"
    prompt += "\nCreate an optimal schedule considering priorities, duration, energy levels and the preferences above."
    prompt += "\nProvide reasoning for each scheduling decision."
    return prompt


@dataclass
class OptimizationResult:
    schedule: OptimizedSchedule
    normalized_tasks: List[Dict[str, Any]]
    preferences: Dict[str, Any]
    model: str
    processing_time_ms: float
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    confidence: float
    api_cost: float

    @property
    def metrics(self) -> Dict[str, Any]:
        summary = self.schedule.optimization_summary
        return {
            "total_productive_time": summary.total_productive_time,
            "break_time": summary.break_time,
            "utilization_rate": summary.utilization_rate,
            "high_priority_coverage": summary.high_priority_coverage,
            "slots": len(self.schedule.schedule_slots),
            "conflicts": len(self.schedule.conflicts),
        }


class ScheduleOptimizer:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    def optimize(
        self,
        tasks: Sequence[Dict[str, Any]],
        preferences: Optional[Dict[str, Any]] = None,
        target_date: Optional[date] = None,
    ) -> OptimizationResult:
        target_date = target_date or date.today()
        prefs = {**DEFAULT_PREFERENCES, **{k: v for k, v in (preferences or {}).items() if v is not None}}
        normalized = normalize_tasks(tasks)

        call: FunctionCallResult = self.llm.call_function(
            system=build_system_prompt(prefs),
            user=build_user_prompt(normalized, prefs, target_date),
            function_schema=SCHEDULE_FUNCTION_SCHEMA,
        )

        try:
            schedule = OptimizedSchedule.model_validate(call.arguments)
        except PydanticValidationError as e:
            logger.error(f"LLM schedule failed validation: {e}")
            raise ExternalServiceError(
                "AI response does not match the schedule schema",
                {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

        return OptimizationResult(
            schedule=schedule,
            normalized_tasks=normalized,
            preferences=prefs,
            model=call.model,
            processing_time_ms=round(call.latency_ms, 2),
            prompt_tokens=call.prompt_tokens,
            completion_tokens=call.completion_tokens,
            total_tokens=call.total_tokens,
            confidence=calculate_confidence(call.arguments.get("optimization_summary")),
            api_cost=calculate_api_cost(call.prompt_tokens, call.completion_tokens),
        )
