from __future__ import annotations
import json
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List

from llm.providers.base import LLMProvider

_TASKS_RE = re.compile(r"Tasks to schedule:\n(.*?)\n\n", re.S)
_HOURS_RE = re.compile(r"work hours: (\d{2}:\d{2}) to (\d{2}:\d{2})")
_DATE_RE = re.compile(r"optimized schedule for (\d{4}-\d{2}-\d{2})")

class MockProvider(LLMProvider):
    """
    Offline provider: lays the prompt's tasks out back to back from the
    start of the working day with a 10 minute buffer between them.
    """

    def chat(self, payload: Dict[str, Any], *, timeout: float) -> Dict[str, Any]:
        system = payload["messages"][0]["content"]
        user = payload["messages"][-1]["content"]

        m = _TASKS_RE.search(user)
        tasks: List[Dict[str, Any]] = json.loads(m.group(1)) if m else []
        hours = _HOURS_RE.search(system)
        work_start = hours.group(1) if hours else "08:00"
        d = _DATE_RE.search(user)
        target = d.group(1) if d else datetime.now().strftime("%Y-%m-%d")

        cursor = datetime.strptime(f"{target} {work_start}", "%Y-%m-%d %H:%M")
        slots = []
        productive = 0
        for task in tasks:
            duration = int(task.get("duration_minutes") or 30)
            end = cursor + timedelta(minutes=duration)
            slots.append({
                "task_id": str(task["id"]),
                "task_title": task.get("title") or "Untitled Task",
                "start_time": cursor.strftime("%H:%M"),
                "end_time": end.strftime("%H:%M"),
                "duration_minutes": duration,
                "priority": task.get("priority", "medium"),
                "location": task.get("location"),
                "category": task.get("category") or "general",
                "reasoning": "Scheduled in input order",
                "energy_level": "high" if task.get("priority") in ("critical", "high") else "medium",
                "reminder_minutes_before": 15,
            })
            productive += duration
            cursor = end + timedelta(minutes=10)

        high = [t for t in tasks if t.get("priority") in ("critical", "high")]
        arguments = {
            "date": target,
            "total_tasks": len(slots),
            "schedule_slots": slots,
            "optimization_summary": {
                "total_productive_time": productive,
                "break_time": 10 * max(len(slots) - 1, 0),
                "utilization_rate": round(min(productive / 600, 1.0), 2),
                "high_priority_coverage": 1.0 if high else 0.0,
                "recommendations": [],
            },
            "conflicts": [],
        }

        prompt_tokens = len(system.split()) + len(user.split())
        completion_tokens = 20 * len(slots) + 20
        return {
            "model": payload.get("model", "mock"),
            "choices": [{
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": None,
                    "function_call": {
                        "name": "generate_optimized_schedule",
                        "arguments": json.dumps(arguments, ensure_ascii=False),
                    },
                },
                "finish_reason": "function_call",
            }],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }
