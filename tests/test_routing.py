from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from conftest import make_message

from group_relay.models import RoutingDecision
from group_relay.routing import FanOutPolicy, RoutingEngine, strip_formatting
from group_relay.rules import compile_rules
from group_relay.utils import resolve_timezone


def _engine(*rules: dict[str, Any], **kwargs: Any) -> RoutingEngine:
    return RoutingEngine(compile_rules(rules), **kwargs)


def test_sales_rule_forwards_full_text() -> None:
    engine = _engine({"origin": "Sales", "target": "Archive", "pattern": "invoice", "flags": "i"})

    decisions = engine.route(make_message(origin_id="Sales", text="New Invoice #42", message_id="m1"))

    assert decisions == [
        RoutingDecision(rule_name="Sales -> Archive", target="Archive", text="New Invoice #42")
    ]


def test_origin_mismatch_yields_nothing_regardless_of_text() -> None:
    engine = _engine({"origin": "Sales", "target": "Archive", "pattern": "invoice"})

    assert engine.route(make_message(origin_id="Support", text="invoice invoice")) == []
    assert engine.route(make_message(origin_id="Support", text="")) == []


def test_origin_comparison_ignores_case() -> None:
    engine = _engine({"origin": "SALES team", "target": "Archive", "pattern": "invoice"})

    decisions = engine.route(make_message(origin_id="sales TEAM", text="invoice"))

    assert [decision.target for decision in decisions] == ["Archive"]


def test_origin_matches_display_name_or_identifier() -> None:
    engine = _engine(
        {"origin": "Sales", "target": "by-name", "pattern": "x"},
        {"origin": "123@g.us", "target": "by-id", "pattern": "x"},
    )

    decisions = engine.route(make_message(origin_id="123@g.us", origin_name="sales", text="x"))

    assert [decision.target for decision in decisions] == ["by-name", "by-id"]


def test_every_matcher_must_match() -> None:
    engine = _engine(
        {"origin": "A", "target": "B", "patterns": ["urgent", "invoice", "paid"]},
    )

    assert engine.route(make_message(origin_id="A", text="urgent invoice")) == []
    assert len(engine.route(make_message(origin_id="A", text="urgent invoice paid"))) == 1


def test_captured_groups_replace_full_text() -> None:
    engine = _engine(
        {"origin": "A", "target": "B", "pattern": r"^CODE:(\w+)$", "forward": "groups"}
    )

    (decision,) = engine.route(make_message(origin_id="A", text="CODE:ABC123"))

    assert decision.text == "ABC123"


def test_multiple_groups_are_space_joined() -> None:
    engine = _engine(
        {
            "origin": "A",
            "target": "B",
            "pattern": r"order (\d+) for (\w+)(?: via (\w+))?",
            "includeMatchInForward": True,
        }
    )

    (decision,) = engine.route(make_message(origin_id="A", text="order 77 for Bob"))

    assert decision.text == "77 Bob"


def test_groups_strategy_falls_back_to_full_text_without_groups() -> None:
    engine = _engine({"origin": "A", "target": "B", "pattern": "promo", "forward": "groups"})

    (decision,) = engine.route(make_message(origin_id="A", text="big promo today"))

    assert decision.text == "big promo today"


def test_groups_come_from_the_first_matcher_only() -> None:
    engine = _engine(
        {
            "origin": "A",
            "target": "B",
            "patterns": ["total", r"id=(\d+)"],
            "forward": "groups",
        }
    )

    (decision,) = engine.route(make_message(origin_id="A", text="total id=9"))

    assert decision.text == "total id=9"


def test_annotated_text_includes_sender_time_and_origin() -> None:
    engine = _engine(
        {"origin": "Sales", "target": "B", "pattern": "deal", "forward": "annotated"},
        zone=resolve_timezone("UTC"),
    )
    message = make_message(
        origin_id="sales",
        origin_name="Sales",
        sender_name="Alice",
        timestamp=datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc),
        text="deal closed",
    )

    (decision,) = engine.route(message)

    assert decision.text == "[Sales] Alice · 2024-05-01 12:30:05\ndeal closed"


def test_annotated_text_without_timestamp() -> None:
    engine = _engine({"origin": "A", "target": "B", "pattern": "x", "forward": "annotated"})

    (decision,) = engine.route(make_message(origin_id="A", sender_id="42", timestamp=None, text="x"))

    assert decision.text.splitlines()[0] == "[A] 42 · unknown time"


def test_formatting_markers_are_stripped_only_when_requested() -> None:
    engine = _engine(
        {"origin": "A", "target": "plain", "pattern": "big sale"},
        {"origin": "A", "target": "stripped", "pattern": "big sale", "strip_formatting": True},
    )

    decisions = engine.route(make_message(origin_id="A", text="*big* _sale_"))

    assert [decision.target for decision in decisions] == ["stripped"]
    # The forwarded text stays untouched.
    assert decisions[0].text == "*big* _sale_"


def test_strip_formatting_removes_emphasis_markers() -> None:
    assert strip_formatting("*bold* _it_ ~gone~ `code`") == "bold it gone code"


def test_all_matching_rules_fire_by_default() -> None:
    engine = _engine(
        {"origin": "A", "target": "one", "pattern": "x"},
        {"origin": "A", "target": "two", "pattern": "x"},
        {"origin": "A", "target": "three", "pattern": "nomatch"},
    )

    decisions = engine.route(make_message(origin_id="A", text="x"))

    assert [decision.target for decision in decisions] == ["one", "two"]


def test_first_policy_stops_after_first_firing_rule() -> None:
    engine = _engine(
        {"origin": "A", "target": "skip", "pattern": "nomatch"},
        {"origin": "A", "target": "one", "pattern": "x"},
        {"origin": "A", "target": "two", "pattern": "x"},
        fan_out=FanOutPolicy.FIRST,
    )

    decisions = engine.route(make_message(origin_id="A", text="x"))

    assert [decision.target for decision in decisions] == ["one"]


def test_no_rules_means_no_work() -> None:
    engine = RoutingEngine([])

    assert engine.applicable(make_message(origin_id="A", text="x")) == ()
    assert engine.route(make_message(origin_id="A", text="x")) == []
