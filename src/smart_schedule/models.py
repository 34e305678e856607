from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from typing import Any, ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


ImportStatus = Literal["pending", "processing", "completed", "failed"]
SourceType = Literal["csv", "json", "txt", "manual", "excel", "ics"]
ProcessingStatus = Literal["pending", "parsed", "converted", "failed"]
ConversionStatus = Literal["pending", "success", "failed", "manual_review"]
AiAnalysisStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
AnalysisStatus = Literal["pending", "processing", "completed", "failed", "partial"]
SlotStatus = Literal["scheduled", "in_progress", "completed", "cancelled", "rescheduled"]
RuleType = Literal[
    "keyword_detection",
    "pattern_matching",
    "priority_calculation",
    "category_assignment",
]
PriorityLevel = Literal["critical", "high", "medium", "low"]
DeliveryMethod = Literal["push", "email", "sms", "in_app"]
NotificationStatus = Literal["pending", "sent", "delivered", "failed"]
TaskSource = Literal["event", "entry"]

AVAILABLE_ANALYSIS_STATUSES = ("pending", "failed", "skipped")


class ScheduleImport(BaseModel):
    id: Optional[int] = None
    user_id: int
    import_type: str = "file_upload"
    source_type: SourceType = "csv"
    original_filename: Optional[str] = None

    # raw upload is never rewritten after the import is stored
    raw_content: str = Field("", frozen=True)
    raw_data: List[Dict[str, Any]] = Field(default_factory=list)

    status: ImportStatus = "pending"
    total_records_found: int = 0
    successfully_processed: int = 0
    failed_records: int = 0
    error_log: List[Dict[str, Any]] = Field(default_factory=list)
    ai_confidence_score: Optional[float] = None

    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.total_records_found == 0:
            return 0.0
        return round(self.successfully_processed / self.total_records_found * 100, 2)

    def mark_processing(self) -> None:
        if self.status != "pending":
            raise ValueError(f"import {self.id} cannot start processing from '{self.status}'")
        self.status = "processing"
        self.processing_started_at = datetime.now()

    def mark_completed(self) -> None:
        if self.status != "processing":
            raise ValueError(f"import {self.id} is not processing (status '{self.status}')")
        self.status = "completed"
        self.processing_completed_at = datetime.now()

    def mark_failed(self, error: Optional[Dict[str, Any]] = None) -> None:
        if self.status != "processing":
            raise ValueError(f"import {self.id} is not processing (status '{self.status}')")
        self.status = "failed"
        self.processing_completed_at = datetime.now()
        if error:
            self.error_log.append(error)


class AnalyzableTask(BaseModel, ABC):
    """
    Shared AI-analysis state for anything that can be sent to the optimizer.

    Manual events and imported entries both carry this pair of fields;
    `ai_analysis_locked` is only ever true while the status is `in_progress`.
    """

    source_type: ClassVar[TaskSource]

    id: Optional[int] = None
    user_id: int

    ai_analysis_status: AiAnalysisStatus = "pending"
    ai_analysis_locked: bool = False
    ai_analysis_batch_id: Optional[str] = None
    ai_analysis_claimed_at: Optional[datetime] = None
    ai_analyzed_at: Optional[datetime] = None
    ai_analysis_result: Optional[Dict[str, Any]] = None

    def is_available_for_analysis(self) -> bool:
        return (
            not self.ai_analysis_locked
            and self.ai_analysis_status in AVAILABLE_ANALYSIS_STATUSES
        )

    @abstractmethod
    def to_task_payload(self) -> Dict[str, Any]:
        """Task as sent to the optimizer; `id` is "<source>:<id>"."""


class ScheduleEntry(AnalyzableTask):
    source_type: ClassVar[TaskSource] = "entry"

    import_id: Optional[int] = None
    row_number: Optional[int] = None
    raw_text: Optional[str] = None
    original_data: Dict[str, Any] = Field(default_factory=dict)

    parsed_title: Optional[str] = None
    parsed_description: Optional[str] = None
    parsed_location: Optional[str] = None
    parsed_start_datetime: Optional[datetime] = None
    parsed_end_datetime: Optional[datetime] = None
    parsed_priority: Optional[int] = None

    detected_keywords: List[str] = Field(default_factory=list)
    ai_confidence: Optional[float] = None
    ai_detected_category: Optional[str] = None
    ai_detected_importance: Optional[float] = None

    processing_status: ProcessingStatus = "pending"
    conversion_status: ConversionStatus = "pending"
    converted_event_id: Optional[int] = None
    parsing_errors: List[Dict[str, Any]] = Field(default_factory=list)

    manual_review_required: bool = False
    manual_review_notes: Optional[str] = None

    @property
    def parsed_duration_minutes(self) -> Optional[int]:
        if not self.parsed_start_datetime or not self.parsed_end_datetime:
            return None
        return int((self.parsed_end_datetime - self.parsed_start_datetime).total_seconds() // 60)

    def is_converted(self) -> bool:
        return self.conversion_status == "success" and self.converted_event_id is not None

    def mark_parsed(self) -> None:
        self.processing_status = "parsed"

    def mark_converted(self, event_id: int) -> None:
        self.processing_status = "converted"
        self.conversion_status = "success"
        self.converted_event_id = event_id

    def mark_failed(self, error: Optional[Dict[str, Any]] = None) -> None:
        self.processing_status = "failed"
        self.conversion_status = "failed"
        if error:
            self.parsing_errors.append(error)

    def mark_for_manual_review(self, reason: Optional[str] = None) -> None:
        self.manual_review_required = True
        self.conversion_status = "manual_review"
        self.manual_review_notes = reason

    def to_task_payload(self) -> Dict[str, Any]:
        data = self.original_data or {}
        return {
            "id": f"entry:{self.id}",
            "title": self.parsed_title or data.get("mon_hoc") or "Untitled",
            "description": self.parsed_description or data.get("ghi_chu") or "",
            "parsed_priority": self.parsed_priority,
            "parsed_start_datetime": self.parsed_start_datetime,
            "parsed_end_datetime": self.parsed_end_datetime,
            "location": self.parsed_location or data.get("phong"),
            "category": self.ai_detected_category,
            "keywords": list(self.detected_keywords),
        }


class Event(AnalyzableTask):
    source_type: ClassVar[TaskSource] = "event"

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    start_datetime: datetime
    end_datetime: Optional[datetime] = None
    status: str = "scheduled"
    priority: int = Field(3, ge=1, le=5)
    category: Optional[str] = None
    completion_percentage: int = Field(0, ge=0, le=100)
    reminder_minutes_before: Optional[int] = Field(None, ge=0)
    event_metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v2 = v.strip()
        if not v2:
            raise ValueError("title must not be blank")
        return v2

    def to_task_payload(self) -> Dict[str, Any]:
        return {
            "id": f"event:{self.id}",
            "title": self.title,
            "description": self.description or "",
            "priority": self.priority,
            "parsed_start_datetime": self.start_datetime,
            "parsed_end_datetime": self.end_datetime,
            "location": self.location,
            "category": self.category,
            "keywords": [],
        }


class ScheduleAnalysis(BaseModel):
    id: Optional[int] = None
    user_id: int
    import_id: Optional[int] = None
    analysis_type: str = "daily"
    target_date: date
    status: AnalysisStatus = "pending"

    input_data: List[Dict[str, Any]] = Field(default_factory=list)
    user_preferences: Dict[str, Any] = Field(default_factory=dict)
    batch_id: Optional[str] = None

    ai_model: Optional[str] = None
    optimized_schedule: Optional[Dict[str, Any]] = None
    optimization_metrics: Optional[Dict[str, Any]] = None
    confidence_score: Optional[float] = None
    processing_time_ms: Optional[float] = None

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    api_cost: float = 0.0
    error_details: Optional[Dict[str, Any]] = None

    user_approved: bool = False
    user_rating: Optional[int] = Field(None, ge=1, le=5)
    user_feedback: Optional[str] = None

    @property
    def total_scheduled_minutes(self) -> int:
        if not self.optimized_schedule:
            return 0
        return sum(
            int(slot.get("duration_minutes") or 0)
            for slot in self.optimized_schedule.get("schedule_slots", [])
        )

    def approve(self, rating: Optional[int] = None, feedback: Optional[str] = None) -> None:
        self.user_approved = True
        self.user_rating = rating
        self.user_feedback = feedback


class ScheduleSlot(BaseModel):
    id: Optional[int] = None
    analysis_id: Optional[int] = None
    user_id: int
    original_entry_id: Optional[int] = None
    event_id: Optional[int] = None

    date: date
    start_time: time
    end_time: time
    duration_minutes: int = 0

    task_id: Optional[str] = None
    task_title: str
    task_description: Optional[str] = None
    location: Optional[str] = None
    priority: PriorityLevel = "medium"
    category: Optional[str] = None
    ai_reasoning: Optional[str] = None
    energy_level: Optional[str] = None
    is_flexible: bool = False

    reminder_minutes_before: Optional[int] = Field(15, ge=0)
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None

    status: SlotStatus = "scheduled"
    user_confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    @property
    def end_datetime(self) -> datetime:
        end = datetime.combine(self.date, self.end_time)
        # slots that run past midnight end on the next day
        if end < self.start_datetime:
            end += timedelta(days=1)
        return end

    def confirm(self) -> None:
        self.user_confirmed = True
        self.confirmed_at = datetime.now()

    def complete(self) -> None:
        self.status = "completed"
        self.completed_at = datetime.now()

    def cancel(self) -> None:
        self.status = "cancelled"

    def reschedule(self, start_time: time, end_time: time, on: Optional[date] = None) -> None:
        self.date = on or self.date
        self.start_time = start_time
        self.end_time = end_time
        self.duration_minutes = int((self.end_datetime - self.start_datetime).total_seconds() // 60)
        self.status = "rescheduled"
        # a moved slot needs a fresh reminder
        self.notification_sent = False
        self.notification_sent_at = None


class ParsingRule(BaseModel):
    id: Optional[int] = None
    rule_name: str
    profession_id: Optional[int] = None
    rule_type: RuleType
    rule_pattern: str
    rule_action: Dict[str, Any] = Field(default_factory=dict)
    priority_order: int = 0

    positive_examples: List[str] = Field(default_factory=list)
    negative_examples: List[str] = Field(default_factory=list)
    accuracy_rate: Optional[float] = None
    usage_count: int = 0
    success_count: int = 0
    is_active: bool = True

    def is_applicable_for(self, profession_id: Optional[int]) -> bool:
        return self.profession_id is None or self.profession_id == profession_id


class ScheduleTemplate(BaseModel):
    id: Optional[int] = None
    name: str
    profession_id: Optional[int] = None
    # canonical field name -> key as it appears in the uploaded rows
    field_mapping: Dict[str, str] = Field(default_factory=dict)
    default_values: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True

    def field_default(self, field: str) -> Any:
        return self.default_values.get(field)


class Notification(BaseModel):
    id: Optional[int] = None
    user_id: int
    event_id: Optional[int] = None
    slot_id: Optional[int] = None
    type: str = "reminder"
    subtype: str = "schedule_slot"

    trigger_datetime: datetime
    title: str
    message: str
    action_data: Dict[str, Any] = Field(default_factory=dict)
    priority_level: int = 3
    delivery_method: DeliveryMethod = "in_app"

    status: NotificationStatus = "pending"
    dedup_key: str
    sent_at: Optional[datetime] = None
    error_details: Optional[str] = None


class UserSchedulePreferences(BaseModel):
    timezone: str = "Asia/Ho_Chi_Minh"
    date_format: str = "dd/mm/yyyy"

    default_priority: int = Field(3, ge=1, le=5)
    default_event_duration_min: int = Field(60, gt=0)
    ai_confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    default_template_id: Optional[int] = None
    profession_id: Optional[int] = None

    work_start: time = Field(default_factory=lambda: time(8, 0))
    work_end: time = Field(default_factory=lambda: time(18, 0))
    break_duration: int = Field(60, ge=0, le=120)
    constraints: List[str] = Field(default_factory=list)

    @property
    def day_first(self) -> bool:
        return self.date_format.lower().startswith("dd")

    def optimizer_preferences(self) -> Dict[str, Any]:
        return {
            "work_start": self.work_start.strftime("%H:%M"),
            "work_end": self.work_end.strftime("%H:%M"),
            "break_duration": self.break_duration,
            "constraints": list(self.constraints),
        }
