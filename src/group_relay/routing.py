"""Selection of forwarding rules and construction of outgoing text."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import timezone, tzinfo
from enum import Enum

from .models import Message, RoutingDecision
from .rules import CompiledRule, ForwardStrategy
from .utils import format_timestamp, normalize_name

__all__ = ["FanOutPolicy", "RoutingEngine", "render_annotated", "strip_formatting"]

_EMPHASIS_RE = re.compile(r"[*_~`]")


class FanOutPolicy(str, Enum):
    ALL = "all"
    FIRST = "first"


class RoutingEngine:
    """Evaluate compiled rules against incoming messages."""

    __slots__ = ("_rules", "_by_origin", "_fan_out", "_timezone")

    def __init__(
        self,
        rules: Iterable[CompiledRule],
        *,
        fan_out: FanOutPolicy = FanOutPolicy.ALL,
        zone: tzinfo = timezone.utc,
    ) -> None:
        self._rules = tuple(rules)
        self._fan_out = FanOutPolicy(fan_out)
        self._timezone = zone
        by_origin: dict[str, list[CompiledRule]] = {}
        for rule in self._rules:
            by_origin.setdefault(rule.origin_key, []).append(rule)
        self._by_origin = {key: tuple(value) for key, value in by_origin.items()}

    @property
    def rules(self) -> tuple[CompiledRule, ...]:
        return self._rules

    def applicable(self, message: Message) -> tuple[CompiledRule, ...]:
        """Rules listening on the message's origin, in configuration order."""

        keys = _origin_keys(message)
        if not keys:
            return ()
        if len(keys) == 1:
            return self._by_origin.get(keys[0], ())
        # Keep configuration order when both the name and the id have rules.
        return tuple(rule for rule in self._rules if rule.origin_key in keys)

    def route(self, message: Message) -> list[RoutingDecision]:
        rules = self.applicable(message)
        if not rules:
            return []
        return self.evaluate(message, rules)

    def evaluate(
        self, message: Message, rules: Sequence[CompiledRule]
    ) -> list[RoutingDecision]:
        decisions: list[RoutingDecision] = []
        stripped: str | None = None
        for rule in rules:
            if rule.strip_formatting:
                if stripped is None:
                    stripped = strip_formatting(message.text)
                candidate = stripped
            else:
                candidate = message.text

            matches = rule.evaluate(candidate)
            if matches is None:
                continue

            decisions.append(
                RoutingDecision(
                    rule_name=rule.name,
                    target=rule.target,
                    text=self._outgoing_text(rule, message, matches[0]),
                )
            )
            if self._fan_out is FanOutPolicy.FIRST:
                break
        return decisions

    def _outgoing_text(
        self, rule: CompiledRule, message: Message, first_match: re.Match[str]
    ) -> str:
        if rule.strategy is ForwardStrategy.GROUPS:
            groups = [group for group in first_match.groups() if group]
            if groups:
                return " ".join(groups)
            return message.text
        if rule.strategy is ForwardStrategy.ANNOTATED:
            return render_annotated(message, self._timezone)
        return message.text


def strip_formatting(text: str) -> str:
    """Remove chat emphasis markers (bold, italic, strike, monospace)."""

    return _EMPHASIS_RE.sub("", text)


def render_annotated(message: Message, zone: tzinfo) -> str:
    timestamp = format_timestamp(message.timestamp, zone)
    header = f"[{message.origin_label}] {message.sender_label or 'unknown sender'} · {timestamp}"
    return f"{header}\n{message.text}"


def _origin_keys(message: Message) -> tuple[str, ...]:
    keys: list[str] = []
    for candidate in (message.origin_name, message.origin_id):
        key = normalize_name(candidate)
        if key is not None and key not in keys:
            keys.append(key)
    return tuple(keys)
