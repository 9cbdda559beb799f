from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from .coercion import DURATION_PATTERN, duration_from_match, parse_number
from .models import DURATION_MINUTES, NUMERIC, MetricMap
from .vocabulary import MetricVocabulary, default_vocabulary

TIER_DIRECT = "direct"
TIER_VALUE_ASSERTION = "value_assertion"
TIER_QUALITATIVE = "qualitative"
TIERS = (TIER_DIRECT, TIER_VALUE_ASSERTION, TIER_QUALITATIVE)

# Rule priorities: for a given metric the highest-priority proposal wins.
PRIORITY_QUALITATIVE = 0
PRIORITY_REMOVAL = 10
PRIORITY_DIRECT_NUMERIC = 20
PRIORITY_BARE_MAGNITUDE = 30
PRIORITY_DURATION = 40
PRIORITY_DISAMBIGUATION = 50

_B = r"(?<![a-z0-9])"
_E = r"(?![a-z0-9])"
# Accepts thousands separators ("12,345"); parse_number strips them.
_NUMBER = (
    r"(?P<value>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)(?![.,]?\d)"
    r"(?!\s*(?:hours?|hrs?|h|minutes?|mins?|m)(?![a-z]))"
)
_ASSERT_VERB = (
    r"(?:is|was|are|were|should\s+be|should\s+have\s+been)"
    r"(?:\s+(?:actually|clearly|obviously|really|definitely))?"
)
_QUOTES = str.maketrans({"’": "'", "‘": "'", "“": '"', "”": '"'})


def normalize_message(text: str) -> str:
    """Lower-cased, quote-normalized, whitespace-collapsed copy of a user message."""
    return " ".join((text or "").translate(_QUOTES).lower().split())


@dataclass(frozen=True)
class RuleContext:
    text: str
    original_map: MetricMap
    vocabulary: MetricVocabulary


Extractor = Callable[["CorrectionRule", "re.Match[str]", RuleContext], dict[str, Any]]


@dataclass(frozen=True)
class SignalPattern:
    tier: str
    name: str
    pattern: re.Pattern[str]

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


@dataclass(frozen=True)
class CorrectionRule:
    name: str
    kind: str
    tier: str
    priority: int
    pattern: re.Pattern[str]
    extractor: Extractor
    metric_keys: tuple[str, ...] = ()

    def proposals(self, ctx: RuleContext) -> Iterator[tuple[str, Any]]:
        for match in self.pattern.finditer(ctx.text):
            yield from self.extractor(self, match, ctx).items()

    def as_signal(self) -> SignalPattern:
        return SignalPattern(tier=self.tier, name=self.name, pattern=self.pattern)


@dataclass(frozen=True)
class RuleSet:
    vocabulary: MetricVocabulary
    rules: tuple[CorrectionRule, ...]
    extra_signals: tuple[SignalPattern, ...] = ()
    signals: tuple[SignalPattern, ...] = field(init=False)

    def __post_init__(self) -> None:
        for rule in self.rules:
            if rule.tier not in TIERS:
                raise ValueError(f"Rule {rule.name} has unknown tier {rule.tier}")
            for key in rule.metric_keys:
                if key not in self.vocabulary:
                    raise ValueError(f"Rule {rule.name} targets unknown metric {key}")
        ordered = tuple(sorted(self.rules, key=lambda rule: rule.priority))
        object.__setattr__(self, "rules", ordered)
        signals = self.extra_signals + tuple(rule.as_signal() for rule in ordered)
        object.__setattr__(self, "signals", tuple(sorted(signals, key=lambda s: TIERS.index(s.tier))))


# --- extractors -------------------------------------------------------------


def _null_named_metric(rule: CorrectionRule, match: re.Match[str], ctx: RuleContext) -> dict[str, Any]:
    if rule.metric_keys:
        return {key: None for key in rule.metric_keys}
    key = ctx.vocabulary.key_for_spoken(match.group("alias"))
    return {key: None} if key else {}


def _numeric_for_named_metric(rule: CorrectionRule, match: re.Match[str], ctx: RuleContext) -> dict[str, Any]:
    key = ctx.vocabulary.key_for_spoken(match.group("alias"))
    if not key or ctx.vocabulary.entry(key).value_type != NUMERIC:
        return {}
    value = parse_number(match.group("value"))
    return {key: value} if value is not None else {}


def _numeric_for_sole_mention(rule: CorrectionRule, match: re.Match[str], ctx: RuleContext) -> dict[str, Any]:
    mentioned = ctx.vocabulary.mentioned_keys(ctx.text, {NUMERIC})
    if len(mentioned) != 1:
        return {}
    value = parse_number(match.group("value"))
    return {mentioned[0]: value} if value is not None else {}


def _duration_for_named_metric(rule: CorrectionRule, match: re.Match[str], ctx: RuleContext) -> dict[str, Any]:
    key = ctx.vocabulary.key_for_spoken(match.group("alias"))
    if not key or ctx.vocabulary.entry(key).value_type != DURATION_MINUTES:
        return {}
    minutes = duration_from_match(match)
    return {key: minutes} if minutes is not None else {}


def _qualitative(level: str) -> Extractor:
    def extract(rule: CorrectionRule, match: re.Match[str], ctx: RuleContext) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in rule.metric_keys:
            bounds = ctx.vocabulary.entry(key).qualitative_bounds
            if bounds is None:
                continue
            low, high = bounds
            result[key] = parse_number(low if level == "low" else high)
        return result

    return extract


# --- default table ----------------------------------------------------------


_QUALITATIVE_PHRASES: dict[str, dict[str, str]] = {
    "sleep_score": {
        "low": (
            r"(?:didn'?t|did\s+not)\s+sleep\s+(?:very\s+|that\s+|too\s+)?well"
            r"|slept\s+(?:poorly|badly|terribly|awful(?:ly)?)"
            r"|sleep\s+was\s+(?:bad|poor|terrible|awful|rough)"
        ),
        "high": (
            r"(?<!n't\s)(?<!not\s)slept\s+(?:great|well|amazing(?:ly)?|really\s+well)"
            r"|sleep\s+was\s+(?:good|great|amazing|excellent)"
        ),
    },
    "readiness_score": {
        "low": r"readiness\s+(?:was|is)\s+(?:really\s+|very\s+)?low",
        "high": r"readiness\s+(?:was|is)\s+(?:really\s+|very\s+)?high",
    },
    "activity_score": {
        "low": r"activity\s+(?:was|is)\s+(?:really\s+|very\s+)?low",
        "high": r"activity\s+(?:was|is)\s+(?:really\s+|very\s+)?high",
    },
}


def build_rule_set(vocabulary: MetricVocabulary) -> RuleSet:
    names = vocabulary.alternation(vocabulary.spoken_names().keys())
    alias = rf"{_B}(?P<alias>{names}){_E}"

    def compile_(pattern: str) -> re.Pattern[str]:
        return re.compile(pattern)

    rules: list[CorrectionRule] = [
        CorrectionRule(
            name="removal_there_is_no",
            kind="removal",
            tier=TIER_VALUE_ASSERTION,
            priority=PRIORITY_REMOVAL,
            pattern=compile_(
                rf"{_B}(?:there\s+is\s+no|there'?s\s+no|there\s+(?:isn'?t|wasn'?t|is\s+not)\s+(?:a|an|any)|no)"
                rf"\s+(?:such\s+)?(?:a\s+|an\s+|any\s+|the\s+)?{alias}"
            ),
            extractor=_null_named_metric,
        ),
        CorrectionRule(
            name="removal_unknown_origin",
            kind="removal",
            tier=TIER_VALUE_ASSERTION,
            priority=PRIORITY_REMOVAL,
            pattern=compile_(
                rf"(?:(?:don'?t|do\s+not)\s+know\s+where\s+you\s+got|where\s+did\s+you\s+get)"
                rf"(?:\s|\b)[^.!?]{{0,40}}?{alias}"
            ),
            extractor=_null_named_metric,
        ),
        CorrectionRule(
            name="direct_numeric_assertion",
            kind="direct_numeric",
            tier=TIER_VALUE_ASSERTION,
            priority=PRIORITY_DIRECT_NUMERIC,
            pattern=compile_(rf"{alias}\s+{_ASSERT_VERB}\s+(?:about\s+|around\s+)?{_NUMBER}"),
            extractor=_numeric_for_named_metric,
        ),
        CorrectionRule(
            name="bare_magnitude_assertion",
            kind="bare_magnitude",
            tier=TIER_VALUE_ASSERTION,
            priority=PRIORITY_BARE_MAGNITUDE,
            pattern=compile_(
                rf"{_B}(?:clearly|obviously|actually|definitely)\s+(?:it'?s\s+|it\s+is\s+|was\s+|is\s+)?{_NUMBER}"
            ),
            extractor=_numeric_for_sole_mention,
        ),
        CorrectionRule(
            name="duration_assertion",
            kind="duration",
            tier=TIER_VALUE_ASSERTION,
            priority=PRIORITY_DURATION,
            pattern=compile_(rf"{alias}[^0-9.!?]{{0,30}}?(?<![a-z0-9])(?:{DURATION_PATTERN})"),
            extractor=_duration_for_named_metric,
        ),
        CorrectionRule(
            name="disambiguate_not_resting",
            kind="disambiguation",
            tier=TIER_DIRECT,
            priority=PRIORITY_DISAMBIGUATION,
            pattern=compile_(r"(?:not|isn'?t|wasn'?t)\s+(?:my\s+|the\s+|a\s+)?resting\s+(?:heart\s+rate|hr)\b"),
            extractor=_null_named_metric,
            metric_keys=("resting_heart_rate",),
        ),
        CorrectionRule(
            name="disambiguate_latest_vs_resting",
            kind="disambiguation",
            tier=TIER_DIRECT,
            priority=PRIORITY_DISAMBIGUATION,
            pattern=compile_(
                r"latest\s+heart\s+rate[^.!?]*\bnot\b[^.!?]*\bresting\b"
                r"|\bnot\b[^.!?]*\bresting\b[^.!?]*latest\s+heart\s+rate"
            ),
            extractor=_null_named_metric,
            metric_keys=("resting_heart_rate",),
        ),
    ]

    for key, phrases in _QUALITATIVE_PHRASES.items():
        if key not in vocabulary or vocabulary.entry(key).qualitative_bounds is None:
            continue
        for level, phrase in phrases.items():
            rules.append(
                CorrectionRule(
                    name=f"qualitative_{key}_{level}",
                    kind="qualitative",
                    tier=TIER_QUALITATIVE,
                    priority=PRIORITY_QUALITATIVE,
                    pattern=compile_(rf"{_B}(?:{phrase})"),
                    extractor=_qualitative(level),
                    metric_keys=(key,),
                )
            )

    signals = (
        SignalPattern(
            TIER_DIRECT,
            "thats_wrong",
            compile_(r"\bthat(?:'?s|\s+is)\s+(?:wrong|not\s+right|incorrect|off)\b"),
        ),
        SignalPattern(TIER_DIRECT, "incorrect", compile_(r"\b(?:incorrect|inaccurate|wrong)\b")),
        SignalPattern(
            TIER_DIRECT,
            "mistake",
            compile_(r"\b(?:mistake|misread|you\s+missed|you\s+got\s+(?:it\s+|that\s+|this\s+)?wrong)\b"),
        ),
        SignalPattern(
            TIER_DIRECT,
            "not_my_metric",
            compile_(rf"(?:not|isn'?t|wasn'?t)\s+(?:my|the)\s+{alias}"),
        ),
        SignalPattern(TIER_DIRECT, "it_says", compile_(r"\bit\s+(?:says|shows|reads)\b")),
    )
    return RuleSet(vocabulary=vocabulary, rules=tuple(rules), extra_signals=signals)


def default_rule_set() -> RuleSet:
    return build_rule_set(default_vocabulary())
