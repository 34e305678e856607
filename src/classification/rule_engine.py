"""
Ordered, profession-scoped pattern rules that enrich parsed entries.

Rule actions are decoded once into small typed variants. Rules are applied
in ascending `priority_order`; priority and category actions overwrite the
field, so among several matching rules the one evaluated last wins.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ingestion.entry_normalizer import parse_priority
from smart_schedule.models import ParsingRule, ScheduleEntry

logger = logging.getLogger(__name__)

_PCRE_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE, "u": 0}
_DELIMITERS = "/#~@%|!"


@dataclass(frozen=True)
class KeywordsAction:
    keywords: Tuple[str, ...]

    def apply(self, entry: ScheduleEntry) -> None:
        merged = list(entry.detected_keywords)
        for kw in self.keywords:
            if kw not in merged:
                merged.append(kw)
        entry.detected_keywords = merged


@dataclass(frozen=True)
class PriorityAction:
    level: int

    def apply(self, entry: ScheduleEntry) -> None:
        entry.parsed_priority = self.level


@dataclass(frozen=True)
class CategoryAction:
    name: str

    def apply(self, entry: ScheduleEntry) -> None:
        entry.ai_detected_category = self.name


RuleAction = Union[KeywordsAction, PriorityAction, CategoryAction]


def compile_pattern(pattern: str) -> re.Pattern:
    """Compile a plain regex or a PCRE-style "/body/flags" literal."""
    if len(pattern) >= 2 and pattern[0] in _DELIMITERS:
        delimiter = pattern[0]
        end = pattern.rfind(delimiter)
        if end > 0:
            body, modifiers = pattern[1:end], pattern[end + 1:]
            flags = 0
            for m in modifiers:
                if m not in _PCRE_FLAGS:
                    raise ValueError(f"unsupported pattern modifier '{m}'")
                flags |= _PCRE_FLAGS[m]
            return re.compile(body, flags)
    return re.compile(pattern)


def _keywords(action: Dict[str, Any]) -> KeywordsAction:
    raw = action["keywords"]
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ValueError("keywords must be a list of strings")
    return KeywordsAction(tuple(str(k) for k in raw))


def _priority(action: Dict[str, Any]) -> PriorityAction:
    level = parse_priority(action["priority"])
    if level is None:
        raise ValueError(f"invalid priority {action['priority']!r}")
    return PriorityAction(level)


def _category(action: Dict[str, Any]) -> CategoryAction:
    name = str(action["category"]).strip()
    if not name:
        raise ValueError("category must not be empty")
    return CategoryAction(name)


def decode_actions(rule: ParsingRule) -> List[RuleAction]:
    action = rule.rule_action or {}
    try:
        if rule.rule_type == "keyword_detection":
            return [_keywords(action)]
        if rule.rule_type == "priority_calculation":
            return [_priority(action)]
        if rule.rule_type == "category_assignment":
            return [_category(action)]
    except KeyError as e:
        raise ValueError(f"{rule.rule_type} rule needs '{e.args[0]}' in its action") from e

    # pattern_matching may carry any combination
    out: List[RuleAction] = []
    if "keywords" in action:
        out.append(_keywords(action))
    if "priority" in action:
        out.append(_priority(action))
    if "category" in action:
        out.append(_category(action))
    if not out:
        raise ValueError("pattern_matching rule has no keywords, priority or category action")
    return out


@dataclass(eq=False)
class CompiledRule:
    rule: ParsingRule
    regex: re.Pattern
    actions: List[RuleAction]

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None


def keyword_text(entry: ScheduleEntry) -> str:
    return f"{entry.raw_text or ''} {json.dumps(entry.original_data, ensure_ascii=False, default=str)}"


def field_text(entry: ScheduleEntry) -> str:
    return " ".join([entry.raw_text or "", entry.parsed_title or "", entry.parsed_description or ""])


class RuleEngine:
    def __init__(self, rules: Iterable[ParsingRule], profession_id: Optional[int] = None):
        selected = [r for r in rules if r.is_active and r.is_applicable_for(profession_id)]
        # stable: equal priority_order keeps storage order
        selected.sort(key=lambda r: r.priority_order)

        self.rules: List[CompiledRule] = []
        self._fired: List[CompiledRule] = []
        for rule in selected:
            try:
                self.rules.append(CompiledRule(rule, compile_pattern(rule.rule_pattern), decode_actions(rule)))
            except (re.error, ValueError) as e:
                logger.warning(f"Skipping parsing rule {rule.id} '{rule.rule_name}': {e}")

    def apply(self, entry: ScheduleEntry) -> List[str]:
        """Apply every rule in order; returns names of the rules that fired."""
        kw_text = keyword_text(entry)
        matched: List[str] = []

        for compiled in self.rules:
            fired = False
            for action in compiled.actions:
                text = kw_text if isinstance(action, KeywordsAction) else field_text(entry)
                if compiled.matches(text):
                    action.apply(entry)
                    fired = True
            if fired:
                compiled.rule.usage_count += 1
                if compiled not in self._fired:
                    self._fired.append(compiled)
                matched.append(compiled.rule.rule_name)

        return matched

    def used_rules(self) -> List[ParsingRule]:
        """Rules that fired at least once, with updated usage counts."""
        return [c.rule for c in self._fired]


def evaluate_examples(rule: ParsingRule) -> Dict[str, Any]:
    """
    Run a rule against its own positive and negative examples.

    Sets `rule.accuracy_rate` to the share of correctly classified examples.
    """
    regex = compile_pattern(rule.rule_pattern)
    positive = [{"example": ex, "matches": regex.search(ex) is not None} for ex in rule.positive_examples]
    negative = [{"example": ex, "matches": regex.search(ex) is not None} for ex in rule.negative_examples]

    total = len(positive) + len(negative)
    correct = sum(1 for p in positive if p["matches"]) + sum(1 for n in negative if not n["matches"])
    rule.accuracy_rate = round(correct / total * 100, 2) if total else None

    return {
        "positive": positive,
        "negative": negative,
        "accuracy_rate": rule.accuracy_rate,
        "passed": total > 0 and correct == total,
    }

