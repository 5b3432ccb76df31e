"""
Scoring Engine: ordered, independent rules -> risk score, flags, alert decision.

1. Every rule runs against the event (concurrently, each under a timeout)
2. Score = sum of contributions of fired rules, capped to 0..100
3. Flags follow configured rule order, without repeats; a rule that raised
   contributes zero and adds the rule_evaluation_error flag
4. alert_required = score >= alert threshold, or any critical rule fired
5. Compliance status and lineage are attached; the event is then recorded in
   the participant history used by the pattern rules
"""

import asyncio
import logging
from typing import Optional

from chainwatch.framework.base_rule import BaseRule, ScoringContext
from chainwatch.framework.config_loader import ScoringConfig
from chainwatch.framework.errors import RuleEvaluationError
from chainwatch.framework.interfaces import LookupService
from chainwatch.framework.lineage import LineageContext, get_pipeline_version, hash_config
from chainwatch.framework.models import (
    ComplianceEvent,
    ComplianceStatus,
    RuleOutcome,
    ScoredEvent,
    Severity,
    iso_z,
    utcnow,
)
from chainwatch.scoring.history import ActivityHistory

logger = logging.getLogger(__name__)

RULE_ERROR_FLAG = "rule_evaluation_error"
MAX_SCORE = 100


def compliance_status(outcomes: list[RuleOutcome], flags: tuple[str, ...], alert_required: bool) -> ComplianceStatus:
    if any(o.fired and o.severity is Severity.CRITICAL for o in outcomes):
        return ComplianceStatus.REJECTED
    if alert_required:
        return ComplianceStatus.ESCALATED
    if flags:
        return ComplianceStatus.FLAGGED
    return ComplianceStatus.APPROVED


class ScoringEngine:
    """
    Usage (ProcessingHandler):
        engine = ScoringEngine(config.scoring, RuleRegistry(config.scoring).load_active_rules(),
                               lookup, history)
        scored = await engine.score(event)
    """

    def __init__(
        self,
        config: ScoringConfig,
        rules: list[BaseRule],
        lookup: LookupService,
        history: Optional[ActivityHistory] = None,
        pep_lists: tuple[str, ...] = ("PEP",),
    ) -> None:
        self.config = config
        self.rules = list(rules)
        self.lookup = lookup
        self.history = history or ActivityHistory(
            config.history_window_seconds, config.history_max_per_participant, config.history_max_per_source
        )
        self.pep_lists = pep_lists
        self.rules_hash = hash_config(
            {"alert_threshold": config.alert_threshold, "rules": [r.config_dict() for r in self.rules]}
        )
        self.rule_errors = 0

    async def score(self, event: ComplianceEvent) -> ScoredEvent:
        ctx = ScoringContext(event, self.lookup, self.history, self.pep_lists)
        results = await asyncio.gather(*(self._evaluate(rule, event, ctx) for rule in self.rules))
        outcomes = [outcome for outcome, _ in results]
        errors = [error for _, error in results if error is not None]

        score = max(0, min(MAX_SCORE, sum(o.contribution for o in outcomes if o.fired)))
        flags = list(dict.fromkeys(o.flag for o in outcomes if o.fired and o.flag))
        if errors:
            flags.append(RULE_ERROR_FLAG)
        flag_tuple = tuple(dict.fromkeys(flags))

        alert_required = score >= self.config.alert_threshold or any(
            o.fired and o.severity is Severity.CRITICAL for o in outcomes
        )
        processed_at = utcnow()
        lineage = LineageContext(
            event_id=event.event_id,
            source_id=event.source_id,
            subscription_id=event.subscription_id,
            position=event.position,
            rules_hash=self.rules_hash,
            processed_at=iso_z(processed_at),
            pipeline_version=get_pipeline_version(),
        )

        self.history.record(event)
        return ScoredEvent(
            event=event,
            risk_score=score,
            flags=flag_tuple,
            alert_required=alert_required,
            status=compliance_status(outcomes, flag_tuple, alert_required),
            processed_at=processed_at,
            outcomes=tuple(outcomes),
            lineage=lineage.to_dict(),
        )

    async def _evaluate(
        self, rule: BaseRule, event: ComplianceEvent, ctx: ScoringContext
    ) -> tuple[RuleOutcome, Optional[RuleEvaluationError]]:
        try:
            outcome = await asyncio.wait_for(rule.check(event, ctx), timeout=self.config.rule_timeout_seconds)
        except Exception as exc:
            error = RuleEvaluationError(rule.rule_id, exc)
            self.rule_errors += 1
            logger.warning("%s | event_id=%s", error, event.event_id)
            return RuleOutcome(rule_id=rule.rule_id, fired=False, detail=str(error)), error
        return outcome, None
