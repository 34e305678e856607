from __future__ import annotations

import logging
from typing import List, Optional

from classification.rule_engine import RuleEngine
from ingestion.content_parser import ParsedRow, parse_content
from ingestion.entry_normalizer import EntryNormalizer, refresh_scores
from smart_schedule.errors import NotFoundError, ParseError, ValidationError
from smart_schedule.models import (
    ScheduleEntry,
    ScheduleImport,
    ScheduleTemplate,
    UserSchedulePreferences,
)
from storage.repository import ScheduleRepository

logger = logging.getLogger(__name__)


def import_statistics(imp: ScheduleImport, entries: List[ScheduleEntry], row_errors: int = 0) -> None:
    imp.total_records_found = len(entries) + row_errors
    imp.successfully_processed = sum(
        1 for e in entries if e.processing_status in ("parsed", "converted")
    )
    imp.failed_records = sum(1 for e in entries if e.processing_status == "failed") + row_errors
    scores = [e.ai_confidence for e in entries if e.ai_confidence is not None]
    imp.ai_confidence_score = round(sum(scores) / len(scores), 2) if scores else None


class ImportService:
    """Single-pass ingestion: parse, normalize, enrich with rules, persist."""

    def __init__(self, repo: ScheduleRepository):
        self.repo = repo

    async def _template(self, template_id: Optional[int]) -> Optional[ScheduleTemplate]:
        if template_id is None:
            return None
        template = await self.repo.get_template(template_id)
        if template is None or not template.is_active:
            raise NotFoundError(f"Template {template_id} not found", {"template_id": template_id})
        return template

    def _build_entry(
        self,
        row: ParsedRow,
        normalizer: EntryNormalizer,
        rules: RuleEngine,
        imp: ScheduleImport,
    ) -> ScheduleEntry:
        try:
            entry = normalizer.normalize(
                row, user_id=imp.user_id, import_id=imp.id, source_type=imp.source_type
            )
            matched = rules.apply(entry)
            if matched:
                logger.debug(f"Row {row.row_number} matched rules {matched}")
            refresh_scores(entry)
            entry.mark_parsed()
            return entry
        except Exception as e:
            logger.warning(f"Row {row.row_number} of import {imp.id} failed: {e}")
            entry = ScheduleEntry(
                user_id=imp.user_id,
                import_id=imp.id,
                row_number=row.row_number,
                raw_text=row.raw_text,
                original_data=row.original_data,
            )
            entry.mark_failed({"error": str(e)})
            return entry

    async def ingest(
        self,
        *,
        user_id: int,
        raw_content: str,
        source_type: str,
        import_type: str = "file_upload",
        original_filename: Optional[str] = None,
        template_id: Optional[int] = None,
        preferences: Optional[UserSchedulePreferences] = None,
    ) -> ScheduleImport:
        if raw_content is None:
            raise ValidationError("raw_content is required")

        template = await self._template(template_id)
        preferences = preferences or UserSchedulePreferences()

        imp = await self.repo.create_import(
            ScheduleImport(
                user_id=user_id,
                import_type=import_type,
                source_type=source_type,
                original_filename=original_filename,
                raw_content=raw_content,
            )
        )
        imp.mark_processing()
        await self.repo.save_import(imp)

        try:
            parsed = parse_content(raw_content, source_type, template)
        except ParseError as e:
            logger.warning(f"Import {imp.id} could not be decoded: {e.message}")
            imp.mark_failed({"error": e.message, **e.detail})
            await self.repo.save_import(imp)
            return imp

        try:
            imp.raw_data = [row.original_data for row in parsed.rows]
            imp.error_log.extend(parsed.errors)

            normalizer = EntryNormalizer(preferences, template)
            profession_id = template.profession_id if template and template.profession_id else preferences.profession_id
            rules = RuleEngine(await self.repo.list_rules(), profession_id)

            entries = [self._build_entry(row, normalizer, rules, imp) for row in parsed.rows]
            stored = await self.repo.add_entries(entries)

            for rule in rules.used_rules():
                await self.repo.save_rule(rule)

            import_statistics(imp, stored, row_errors=len(parsed.errors))
            imp.mark_completed()
        except Exception as e:
            logger.exception(f"Import {imp.id} failed: {e}")
            imp.mark_failed({"error": str(e)})

        await self.repo.save_import(imp)
        logger.info(
            f"Import {imp.id} {imp.status}: {imp.successfully_processed}/{imp.total_records_found} rows parsed"
        )
        return imp
