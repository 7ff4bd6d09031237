"""Compilation of forwarding rules into executable matchers."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from .errors import RuleCompileError
from .structured_logging import log_event
from .utils import normalize_name

__all__ = [
    "CompiledRule",
    "ForwardStrategy",
    "RuleConfig",
    "compile_rule",
    "compile_rules",
    "parse_flags",
    "rule_from_mapping",
    "wildcard_to_regex",
]

DEFAULT_FLAGS: Final = "i"

_FLAG_MAP: Final[dict[str, re.RegexFlag]] = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}
# Accepted for compatibility with configs written for other regex engines;
# they change nothing about a single search.
_IGNORED_FLAGS: Final = frozenset({"g", "u", "y"})


class ForwardStrategy(str, Enum):
    FULL = "full"
    GROUPS = "groups"
    ANNOTATED = "annotated"


_STRATEGY_ALIASES: Final[dict[str, ForwardStrategy]] = {
    "full": ForwardStrategy.FULL,
    "body": ForwardStrategy.FULL,
    "groups": ForwardStrategy.GROUPS,
    "captured": ForwardStrategy.GROUPS,
    "match": ForwardStrategy.GROUPS,
    "annotated": ForwardStrategy.ANNOTATED,
}


@dataclass(frozen=True, slots=True)
class RuleConfig:
    """Raw forwarding rule as written in the configuration file."""

    origin: str
    target: str
    patterns: Sequence[str] = ()
    flags: str | None = None
    wildcard: bool = False
    forward: str = ForwardStrategy.FULL.value
    strip_formatting: bool = False
    name: str | None = None
    enabled: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "patterns", tuple(self.patterns))

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return f"{self.origin} -> {self.target}"


@dataclass(frozen=True, slots=True)
class CompiledRule:
    """Immutable, ready-to-evaluate forwarding rule."""

    name: str
    origin: str
    origin_key: str
    target: str
    matchers: tuple[re.Pattern[str], ...]
    strategy: ForwardStrategy = ForwardStrategy.FULL
    strip_formatting: bool = False
    source_patterns: tuple[str, ...] = field(default=())

    def evaluate(self, text: str) -> list[re.Match[str]] | None:
        """Return one match per matcher, or ``None`` unless every matcher hits."""

        matches: list[re.Match[str]] = []
        for matcher in self.matchers:
            match = matcher.search(text)
            if match is None:
                return None
            matches.append(match)
        return matches


def compile_rules(raw_rules: Iterable[RuleConfig | Mapping[str, Any]]) -> list[CompiledRule]:
    """Compile rules in order, dropping (and logging) the invalid ones."""

    compiled: list[CompiledRule] = []
    for index, raw in enumerate(raw_rules):
        try:
            config = raw if isinstance(raw, RuleConfig) else rule_from_mapping(raw)
            if not config.enabled:
                log_event(
                    "rule_disabled",
                    level=logging.DEBUG,
                    origin=config.origin,
                    message_key=None,
                    target=config.target,
                    outcome="skipped",
                    latency_ms=None,
                    extra={"rule": config.label, "index": index},
                )
                continue
            compiled.append(compile_rule(config))
        except RuleCompileError as exc:
            log_event(
                "rule_compile_failed",
                level=logging.WARNING,
                origin=None,
                message_key=None,
                target=None,
                outcome="dropped",
                latency_ms=None,
                extra={"rule": exc.rule_name, "index": index, "reason": exc.reason},
            )
    return compiled


def compile_rule(config: RuleConfig) -> CompiledRule:
    name = config.label
    origin_key = normalize_name(config.origin)
    if origin_key is None:
        raise RuleCompileError(name, "'origin' must not be empty")
    target = config.target.strip()
    if not target:
        raise RuleCompileError(name, "'target' must not be empty")

    patterns = tuple(pattern for pattern in config.patterns if pattern and pattern.strip())
    if not patterns:
        raise RuleCompileError(name, "no pattern declared")

    try:
        flags = parse_flags(config.flags)
    except ValueError as exc:
        raise RuleCompileError(name, str(exc)) from exc

    strategy = _STRATEGY_ALIASES.get(str(config.forward).strip().lower())
    if strategy is None:
        allowed = ", ".join(sorted(_STRATEGY_ALIASES))
        raise RuleCompileError(
            name, f"unknown forward mode {config.forward!r}; use one of: {allowed}"
        )

    matchers: list[re.Pattern[str]] = []
    for pattern in patterns:
        source = wildcard_to_regex(pattern) if config.wildcard else pattern
        try:
            matchers.append(re.compile(source, flags))
        except re.error as exc:
            raise RuleCompileError(name, f"pattern {pattern!r} does not compile: {exc}") from exc

    return CompiledRule(
        name=name,
        origin=config.origin.strip(),
        origin_key=origin_key,
        target=target,
        matchers=tuple(matchers),
        strategy=strategy,
        strip_formatting=config.strip_formatting,
        source_patterns=patterns,
    )


def wildcard_to_regex(pattern: str) -> str:
    return pattern.replace("*", ".*")


def parse_flags(flags: str | None) -> re.RegexFlag:
    text = (flags or DEFAULT_FLAGS).strip() or DEFAULT_FLAGS
    result = re.RegexFlag(0)
    for letter in text:
        if letter in _FLAG_MAP:
            result |= _FLAG_MAP[letter]
        elif letter in _IGNORED_FLAGS:
            continue
        else:
            raise ValueError(f"unsupported regex flag {letter!r}")
    return result


def rule_from_mapping(raw: Mapping[str, Any]) -> RuleConfig:
    """Read a rule entry, accepting camelCase and snake_case keys."""

    if not isinstance(raw, Mapping):
        raise RuleCompileError("<unnamed>", "rule entries must be mappings")

    name_raw = raw.get("name")
    name = str(name_raw).strip() if name_raw is not None else None
    origin = _text_field(raw, "origin", "from")
    target = _text_field(raw, "target", "to")
    label = name or f"{origin or '?'} -> {target or '?'}"

    try:
        patterns = _to_string_list(raw.get("pattern")) + _to_string_list(raw.get("patterns"))
    except ValueError as exc:
        raise RuleCompileError(label, str(exc)) from exc

    forward = _first_value(raw, "forward", "forward_mode", "forwardMode")
    include_match = _first_value(raw, "include_match_in_forward", "includeMatchInForward")
    if forward is None:
        grouped = _as_bool(include_match)
        forward = (ForwardStrategy.GROUPS if grouped else ForwardStrategy.FULL).value
    if _as_bool(_first_value(raw, "annotate")):
        forward = ForwardStrategy.ANNOTATED.value

    flags_raw = raw.get("flags")
    return RuleConfig(
        origin=origin or "",
        target=target or "",
        patterns=tuple(patterns),
        flags=None if flags_raw is None else str(flags_raw),
        wildcard=_as_bool(_first_value(raw, "wildcard", "wildcards")),
        forward=str(forward),
        strip_formatting=_as_bool(_first_value(raw, "strip_formatting", "stripFormatting")),
        name=name or None,
        enabled=_as_bool(raw.get("enabled", True)),
    )


def _text_field(raw: Mapping[str, Any], *keys: str) -> str | None:
    value = _first_value(raw, *keys)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first_value(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_string_list(raw: object) -> list[str]:
    if raw is None:
        return []

    if isinstance(raw, str):
        return [raw] if raw.strip() else []

    if isinstance(raw, list | tuple):
        items: list[str] = []
        for entry in raw:
            if entry is None:
                continue
            text = str(entry)
            if text.strip():
                items.append(text)
        return items

    raise ValueError("patterns must be strings or lists of strings")
