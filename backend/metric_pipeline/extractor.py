from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .models import CorrectionEvent, MetricMap
from .rules import RuleContext, RuleSet, normalize_message

logger = logging.getLogger(__name__)


@dataclass
class _Proposal:
    priority: int
    value: Any
    rule: str


class CorrectionValueExtractor:
    """Apply the correction rule table to a message against the map it corrects.

    Rules run in ascending priority. For each metric the proposal of the
    highest-priority rule wins; proposals of equal priority that disagree on
    the value leave the metric untouched and are reported as ambiguous.
    """

    def __init__(self, rule_set: RuleSet) -> None:
        self.rule_set = rule_set

    def propose(self, raw_text: str, original_map: MetricMap) -> tuple[dict[str, _Proposal], set[str]]:
        ctx = RuleContext(
            text=normalize_message(raw_text),
            original_map=dict(original_map),
            vocabulary=self.rule_set.vocabulary,
        )
        winners: dict[str, _Proposal] = {}
        conflicts: set[str] = set()
        for rule in self.rule_set.rules:
            for key, value in rule.proposals(ctx):
                current = winners.get(key)
                if current is None or rule.priority > current.priority:
                    winners[key] = _Proposal(rule.priority, value, rule.name)
                    conflicts.discard(key)
                elif rule.priority == current.priority and value != current.value:
                    conflicts.add(key)
        return winners, conflicts

    def extract(self, raw_text: str, original_map: MetricMap) -> CorrectionEvent:
        winners, conflicts = self.propose(raw_text, original_map)
        corrected: MetricMap = dict(original_map)
        applied: list[str] = []
        for key, proposal in winners.items():
            if key in conflicts:
                continue
            corrected[key] = proposal.value
            if proposal.rule not in applied:
                applied.append(proposal.rule)

        if conflicts:
            logger.info("Ambiguous correction left untouched for %s", ", ".join(sorted(conflicts)))
        event = CorrectionEvent(
            original_map=dict(original_map),
            raw_text=raw_text,
            corrected_map=corrected,
            ambiguous_keys=tuple(sorted(conflicts)),
            applied_rules=tuple(applied),
        )
        logger.debug("Correction %s changed %s", event.event_id, event.changed_keys)
        return event
