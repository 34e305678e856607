from __future__ import annotations
from datetime import date, time
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator

class ScheduleSlotOut(BaseModel):
    task_id: str
    task_title: str = Field(..., min_length=1)
    start_time: time
    end_time: time
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    priority: Literal["critical", "high", "medium", "low"]
    location: Optional[str] = None
    category: Optional[str] = None
    reasoning: str
    energy_level: Optional[Literal["high", "medium", "low"]] = None
    can_be_rescheduled: bool = True
    reminder_minutes_before: Optional[int] = Field(default=None, ge=0)

    @field_validator("task_id", mode="before")
    @classmethod
    def task_id_as_str(cls, v: Any) -> Any:
        # models sometimes echo numeric ids back as integers
        if isinstance(v, int):
            return str(v)
        return v

class OptimizationSummary(BaseModel):
    total_productive_time: int = 0
    break_time: int = 0
    utilization_rate: float = 0.0
    high_priority_coverage: float = 0.0
    recommendations: List[str] = Field(default_factory=list)

class ScheduleConflict(BaseModel):
    task_ids: List[str] = Field(default_factory=list)
    reason: str = ""
    resolution: Optional[str] = None

class OptimizedSchedule(BaseModel):
    date: date
    total_tasks: Optional[int] = None
    schedule_slots: List[ScheduleSlotOut]
    optimization_summary: OptimizationSummary
    conflicts: List[ScheduleConflict] = Field(default_factory=list)


SCHEDULE_FUNCTION_NAME = "generate_optimized_schedule"

SCHEDULE_FUNCTION_SCHEMA: Dict[str, Any] = {
    "name": SCHEDULE_FUNCTION_NAME,
    "description": "Generate an optimized daily schedule from task list",
    "parameters": {
        "type": "object",
        "properties": {
            "date": {"type": "string", "description": "Schedule date in YYYY-MM-DD format"},
            "total_tasks": {"type": "integer", "description": "Total number of tasks scheduled"},
            "schedule_slots": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "task_id": {"type": "string"},
                        "task_title": {"type": "string"},
                        "start_time": {"type": "string", "description": "Start time in HH:MM format"},
                        "end_time": {"type": "string", "description": "End time in HH:MM format"},
                        "duration_minutes": {"type": "integer"},
                        "priority": {"type": "string", "enum": ["critical", "high", "medium", "low"]},
                        "location": {"type": "string", "nullable": True},
                        "category": {"type": "string"},
                        "reasoning": {"type": "string", "description": "Explanation for this time slot choice"},
                        "energy_level": {
                            "type": "string",
                            "enum": ["high", "medium", "low"],
                            "description": "Required energy/focus level",
                        },
                        "can_be_rescheduled": {"type": "boolean"},
                        "reminder_minutes_before": {"type": "integer"},
                    },
                    "required": ["task_id", "task_title", "start_time", "end_time", "priority", "reasoning"],
                },
            },
            "optimization_summary": {
                "type": "object",
                "properties": {
                    "total_productive_time": {"type": "integer"},
                    "break_time": {"type": "integer"},
                    "utilization_rate": {"type": "number"},
                    "high_priority_coverage": {"type": "number"},
                    "recommendations": {"type": "array", "items": {"type": "string"}},
                },
            },
            "conflicts": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "task_ids": {"type": "array", "items": {"type": "string"}},
                        "reason": {"type": "string"},
                        "resolution": {"type": "string"},
                    },
                },
            },
        },
        "required": ["date", "schedule_slots", "optimization_summary"],
    },
}
