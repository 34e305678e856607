"""
Claim/lock protocol for AI analysis.

Events and imported entries share one state machine:

    pending -> in_progress -> {completed, failed}
    reset: any -> pending (unlocked)

A claim is a single atomic conditional update in the repository, so two
concurrent claimers of the same task can never both succeed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from smart_schedule.errors import ConflictError, NotEligibleError, NotFoundError, ValidationError
from smart_schedule.models import AnalyzableTask, TaskSource
from storage.repository import ScheduleRepository, TaskKey

logger = logging.getLogger(__name__)

TASK_SOURCES = ("event", "entry")


@dataclass
class BatchClaimResult:
    batch_id: str
    success: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    already_locked: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def claimed_keys(self) -> List[TaskKey]:
        return [(item["source_type"], item["id"]) for item in self.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "success": self.success,
            "failed": self.failed,
            "already_locked": self.already_locked,
        }


@dataclass
class BatchUpdateResult:
    success: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "failed": self.failed}


def parse_task_ref(ref: Any) -> TaskKey:
    """Accept {"id": 1, "source_type": "entry"} dicts or (source, id) tuples."""
    if isinstance(ref, dict):
        source, task_id = ref.get("source_type"), ref.get("id")
    else:
        try:
            source, task_id = ref
        except (TypeError, ValueError):
            raise ValidationError(f"invalid task reference: {ref!r}")
    if source not in TASK_SOURCES:
        raise ValidationError(f"invalid source_type: {source!r}", {"source_type": source})
    try:
        return source, int(task_id)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid task id: {task_id!r}", {"id": task_id})


def _ref(source: TaskSource, task_id: int) -> Dict[str, Any]:
    return {"id": task_id, "source_type": source}


class ClaimManager:
    def __init__(self, repo: ScheduleRepository):
        self.repo = repo

    @staticmethod
    def is_available(task: AnalyzableTask) -> bool:
        return task.is_available_for_analysis()

    async def _classify_rejection(self, source: TaskSource, task_id: int) -> Exception:
        task = await self.repo.get_task(source, task_id)
        if task is None:
            return NotFoundError(
                f"{source} {task_id} not found", _ref(source, task_id)
            )
        if task.ai_analysis_locked or task.ai_analysis_status == "in_progress":
            return ConflictError(
                f"{source} {task_id} is already being analyzed",
                {**_ref(source, task_id), "batch_id": task.ai_analysis_batch_id},
            )
        return NotEligibleError(
            f"{source} {task_id} is not available for analysis",
            {**_ref(source, task_id), "current_status": task.ai_analysis_status},
        )

    async def claim(self, source: TaskSource, task_id: int, batch_id: str) -> None:
        """Lock one task for `batch_id` or raise NotFound/Conflict/NotEligible."""
        if await self.repo.try_claim(source, task_id, batch_id, datetime.now()):
            logger.info(f"Claimed {source} {task_id} for batch {batch_id}")
            return
        raise await self._classify_rejection(source, task_id)

    async def claim_batch(
        self,
        refs: Iterable[Any],
        batch_id: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> BatchClaimResult:
        """
        Claim every referenced task for one batch.

        With `user_id`, tasks owned by someone else are reported as
        "forbidden" and left untouched.
        """
        result = BatchClaimResult(batch_id=batch_id or str(uuid.uuid4()))

        for ref in refs:
            try:
                source, task_id = parse_task_ref(ref)
            except ValidationError as e:
                result.failed.append({"ref": ref, "reason": "invalid", "error": e.message})
                continue
            if user_id is not None:
                owner = await self.repo.get_task(source, task_id)
                if owner is not None and owner.user_id != user_id:
                    result.failed.append({
                        **_ref(source, task_id),
                        "reason": "forbidden",
                        "error": f"{source} {task_id} does not belong to user {user_id}",
                    })
                    continue
            try:
                await self.claim(source, task_id, result.batch_id)
                result.success.append(_ref(source, task_id))
            except NotEligibleError as e:
                result.failed.append({**e.detail, "reason": "not_available", "error": e.message})
            except ConflictError as e:
                result.already_locked.append({**e.detail, "reason": "locked"})
            except NotFoundError as e:
                result.failed.append({**e.detail, "reason": "not_found", "error": e.message})

        logger.info(
            f"Batch {result.batch_id}: {len(result.success)} claimed, "
            f"{len(result.already_locked)} locked, {len(result.failed)} failed"
        )
        return result

    async def _finish(
        self,
        source: TaskSource,
        task_id: int,
        status: str,
        result: Optional[Dict[str, Any]],
        batch_id: Optional[str],
    ) -> None:
        if await self.repo.finish_analysis(source, task_id, status, result, datetime.now(), batch_id):
            logger.info(f"Analysis of {source} {task_id} {status}")
            return
        task = await self.repo.get_task(source, task_id)
        if task is None:
            raise NotFoundError(f"{source} {task_id} not found", _ref(source, task_id))
        raise ConflictError(
            f"{source} {task_id} is not in progress for this batch",
            {
                **_ref(source, task_id),
                "current_status": task.ai_analysis_status,
                "batch_id": task.ai_analysis_batch_id,
            },
        )

    async def complete(
        self,
        source: TaskSource,
        task_id: int,
        result: Dict[str, Any],
        batch_id: Optional[str] = None,
    ) -> None:
        await self._finish(source, task_id, "completed", result, batch_id)

    async def fail(
        self,
        source: TaskSource,
        task_id: int,
        reason: str,
        batch_id: Optional[str] = None,
    ) -> None:
        await self._finish(source, task_id, "failed", {"error": reason}, batch_id)

    async def reset(self, source: TaskSource, task_id: int) -> None:
        if not await self.repo.reset_analysis(source, task_id):
            raise NotFoundError(f"{source} {task_id} not found", _ref(source, task_id))
        logger.info(f"Reset analysis state of {source} {task_id}")

    async def record_results(self, items: Iterable[Dict[str, Any]]) -> BatchUpdateResult:
        """
        Apply externally produced results.

        Each item is {id, source_type, status: completed|failed, result?, batch_id?}.
        """
        out = BatchUpdateResult()
        for item in items:
            try:
                source, task_id = parse_task_ref(item)
                status = item.get("status", "completed")
                if status == "completed":
                    await self.complete(source, task_id, item.get("result") or {}, item.get("batch_id"))
                elif status == "failed":
                    await self.fail(source, task_id, str(item.get("error") or "analysis failed"), item.get("batch_id"))
                else:
                    raise ValidationError(f"invalid status {status!r}")
                out.success.append(_ref(source, task_id))
            except (ValidationError, NotFoundError, ConflictError) as e:
                out.failed.append({"ref": {k: item.get(k) for k in ("id", "source_type")}, "error": e.message, **e.detail})
        return out

    async def reset_batch(self, refs: Iterable[Any]) -> BatchUpdateResult:
        out = BatchUpdateResult()
        for ref in refs:
            try:
                source, task_id = parse_task_ref(ref)
                await self.reset(source, task_id)
                out.success.append(_ref(source, task_id))
            except (ValidationError, NotFoundError) as e:
                out.failed.append({"ref": ref, "error": e.message})
        return out

    async def list_available(self, user_id: int, include_locked: bool = False) -> List[Dict[str, Any]]:
        tasks = await self.repo.list_tasks(user_id, include_locked=include_locked)
        return [
            {
                **_ref(t.source_type, t.id),
                "title": t.to_task_payload()["title"],
                "ai_analysis_status": t.ai_analysis_status,
                "ai_analysis_locked": t.ai_analysis_locked,
                "ai_analysis_batch_id": t.ai_analysis_batch_id,
                "is_available": t.is_available_for_analysis(),
            }
            for t in tasks
        ]

    async def recover_stale(self, timeout_minutes: int) -> List[Tuple[str, int]]:
        cutoff = datetime.now() - timedelta(minutes=timeout_minutes)
        recovered = await self.repo.recover_stale_claims(cutoff)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stale analysis claims: {recovered}")
        return recovered
