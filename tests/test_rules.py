from __future__ import annotations

import logging
import re

import pytest

from group_relay.errors import RuleCompileError
from group_relay.rules import (
    ForwardStrategy,
    RuleConfig,
    compile_rule,
    compile_rules,
    parse_flags,
    rule_from_mapping,
)


def test_wildcard_translation_matches_any_run_of_characters() -> None:
    (rule,) = compile_rules([{"origin": "A", "target": "B", "pattern": "foo*bar", "wildcard": True}])

    assert rule.evaluate("foo123bar") is not None
    assert rule.evaluate("foobar") is not None
    assert rule.evaluate("fobar") is None


def test_default_flags_are_case_insensitive() -> None:
    (rule,) = compile_rules([{"origin": "Sales", "target": "Archive", "pattern": "invoice"}])

    assert rule.matchers[0].flags & re.IGNORECASE
    assert rule.evaluate("New INVOICE #42") is not None


def test_empty_flags_fall_back_to_case_insensitive() -> None:
    assert parse_flags("") & re.IGNORECASE
    assert parse_flags(None) & re.IGNORECASE


def test_explicit_flags_replace_the_default() -> None:
    flags = parse_flags("ms")

    assert flags & re.MULTILINE
    assert flags & re.DOTALL
    assert not flags & re.IGNORECASE
    assert parse_flags("gu") == re.RegexFlag(0)


def test_unknown_flag_drops_only_that_rule(caplog: pytest.LogCaptureFixture) -> None:
    raw = [
        {"origin": "A", "target": "B", "pattern": "x", "flags": "q"},
        {"origin": "A", "target": "C", "pattern": "y"},
    ]

    with caplog.at_level(logging.WARNING, logger="relay"):
        compiled = compile_rules(raw)

    assert [rule.target for rule in compiled] == ["C"]
    assert "rule_compile_failed" in caplog.text


def test_unparsable_pattern_is_dropped_at_compile_time() -> None:
    raw = [
        {"origin": "A", "target": "B", "pattern": "(unclosed"},
        {"origin": "A", "target": "C", "pattern": "ok"},
        {"origin": "A", "target": "D", "pattern": "[a-"},
    ]

    compiled = compile_rules(raw)

    assert [rule.target for rule in compiled] == ["C"]


@pytest.mark.parametrize(
    "entry",
    [
        {"origin": "A", "target": "B"},
        {"origin": "A", "target": "B", "pattern": ""},
        {"origin": "A", "target": "B", "pattern": "   ", "patterns": [None, ""]},
        {"origin": "", "target": "B", "pattern": "x"},
        {"origin": "A", "target": " ", "pattern": "x"},
        {"origin": "A", "target": "B", "pattern": "x", "forward": "telepathy"},
        "not a mapping",
    ],
)
def test_invalid_rules_are_skipped(entry: object) -> None:
    assert compile_rules([entry]) == []  # type: ignore[list-item]


def test_compile_rule_raises_for_missing_patterns() -> None:
    with pytest.raises(RuleCompileError) as exc:
        compile_rule(RuleConfig(origin="A", target="B"))

    assert exc.value.rule_name == "A -> B"


def test_output_order_follows_input_order() -> None:
    raw = [
        {"origin": "A", "target": "first", "pattern": "x"},
        {"origin": "B", "target": "second", "pattern": "x"},
        {"origin": "A", "target": "third", "pattern": "x"},
    ]

    assert [rule.target for rule in compile_rules(raw)] == ["first", "second", "third"]


def test_multiple_patterns_are_combined() -> None:
    (rule,) = compile_rules(
        [{"origin": "A", "target": "B", "pattern": "alpha", "patterns": ["beta", "gamma"]}]
    )

    assert rule.source_patterns == ("alpha", "beta", "gamma")
    assert rule.evaluate("alpha beta gamma") is not None
    assert rule.evaluate("alpha beta") is None


def test_rule_from_mapping_accepts_camel_case_keys() -> None:
    config = rule_from_mapping(
        {
            "origin": " Sales ",
            "target": "Archive",
            "pattern": ["^CODE:(\\w+)$"],
            "includeMatchInForward": True,
            "stripFormatting": "yes",
        }
    )

    assert config.forward == ForwardStrategy.GROUPS.value
    assert config.strip_formatting is True
    rule = compile_rule(config)
    assert rule.origin == "Sales"
    assert rule.origin_key == "sales"
    assert rule.strategy is ForwardStrategy.GROUPS


def test_disabled_rules_are_not_compiled() -> None:
    raw = [{"origin": "A", "target": "B", "pattern": "x", "enabled": False}]

    assert compile_rules(raw) == []


def test_rule_config_instances_are_accepted() -> None:
    config = RuleConfig(origin="A", target="B", patterns=["x"], forward="annotated", name="alerts")

    (rule,) = compile_rules([config])

    assert rule.name == "alerts"
    assert rule.strategy is ForwardStrategy.ANNOTATED
