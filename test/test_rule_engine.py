import re

import pytest

from classification.rule_engine import RuleEngine, compile_pattern, decode_actions, evaluate_examples
from smart_schedule.models import ParsingRule, ScheduleEntry


def _entry(title, description=None, **original):
    return ScheduleEntry(
        user_id=1,
        raw_text=title,
        parsed_title=title,
        parsed_description=description,
        original_data=original or {"title": title},
    )


def _rule(name, rule_type, pattern, action, order=0, **kwargs):
    return ParsingRule(rule_name=name, rule_type=rule_type, rule_pattern=pattern, rule_action=action,
                       priority_order=order, **kwargs)


def test_last_matching_rule_wins_conflicting_field():
    rules = [
        _rule("late", "priority_calculation", "exam", {"priority": 4}, order=20),
        _rule("early", "priority_calculation", "exam", {"priority": 1}, order=10),
    ]
    entry = _entry("Final exam")
    matched = RuleEngine(rules).apply(entry)
    assert matched == ["early", "late"]
    assert entry.parsed_priority == 4


def test_keywords_are_unioned():
    rules = [
        _rule("a", "keyword_detection", "(?i)meeting", {"keywords": ["meeting", "work"]}),
        _rule("b", "keyword_detection", "(?i)client", {"keywords": ["work", "client"]}),
    ]
    entry = _entry("Client meeting")
    RuleEngine(rules).apply(entry)
    assert entry.detected_keywords == ["meeting", "work", "client"]


def test_keyword_rules_see_original_columns():
    rule = _rule("room", "keyword_detection", "Lab", {"keywords": ["lab"]})
    entry = _entry("Chemistry", room="Lab 3")
    RuleEngine([rule]).apply(entry)
    assert entry.detected_keywords == ["lab"]


def test_profession_scope_and_inactive_rules():
    rules = [
        _rule("lecturer", "category_assignment", "class", {"category": "teaching"}, profession_id=1),
        _rule("nurse", "category_assignment", "class", {"category": "clinic"}, profession_id=2),
        _rule("off", "category_assignment", "class", {"category": "off"}, order=99, is_active=False),
    ]
    entry = _entry("Morning class")
    RuleEngine(rules, profession_id=1).apply(entry)
    assert entry.ai_detected_category == "teaching"


def test_invalid_rules_are_skipped():
    rules = [
        _rule("broken", "pattern_matching", "([", {"category": "x"}),
        _rule("empty", "pattern_matching", "x", {}),
        _rule("ok", "category_assignment", "x", {"category": "fine"}),
    ]
    engine = RuleEngine(rules)
    assert [c.rule.rule_name for c in engine.rules] == ["ok"]


def test_used_rules_counts_usage():
    rules = [
        _rule("hit", "category_assignment", "exam", {"category": "study"}),
        _rule("miss", "category_assignment", "gym", {"category": "sport"}),
    ]
    engine = RuleEngine(rules)
    engine.apply(_entry("exam 1"))
    engine.apply(_entry("exam 2"))
    used = engine.used_rules()
    assert [r.rule_name for r in used] == ["hit"]
    assert used[0].usage_count == 2


def test_pcre_pattern_with_flags():
    regex = compile_pattern("/khẩn cấp/i")
    assert regex.flags & re.IGNORECASE
    assert regex.search("KHẨN CẤP: nộp bài")


def test_plain_pattern_starting_with_dot_is_not_delimited():
    assert compile_pattern(".*exam").search("final exam")


def test_unknown_modifier_rejected():
    with pytest.raises(ValueError):
        compile_pattern("/x/q")


def test_pattern_matching_rule_carries_several_actions():
    rule = _rule("combo", "pattern_matching", "deadline", {"priority": "urgent", "category": "work", "keywords": "deadline"})
    assert len(decode_actions(rule)) == 3


def test_evaluate_examples():
    rule = _rule("exam", "keyword_detection", "(?i)exam|thi", {"keywords": ["exam"]},
                 positive_examples=["Final Exam", "Thi cuối kỳ"], negative_examples=["Gym", "Example class"])
    report = evaluate_examples(rule)
    assert report["passed"] is False
    assert rule.accuracy_rate == 75.0
    assert report["negative"][1]["matches"] is True
