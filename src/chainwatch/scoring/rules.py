"""
Built-in scoring rules.

Screening:
    sanctions_match              participant on a sanctions list (critical);
                                 flags sanctions_lookup_unavailable when the
                                 lookup cannot answer
    pep_match                    participant on a PEP list
Value:
    value_over_threshold         normalized value at or above a threshold
    value_anomaly                value far above the source's rolling average
Patterns (participant history):
    velocity_spike               activity per hour above 3x / 10x a baseline
                                 (flags velocity_spike / critical_velocity)
    rapid_succession             consecutive activity less than 5 minutes apart
    counterparty_concentration   sender's outflow concentrated on few destinations
Shape:
    unknown_counterpart          a participant could not be resolved
    cross_source_transfer        bridge / cross-source movement
"""

import logging
from collections import Counter
from decimal import Decimal

from chainwatch.dispatch.priority import has_unknown_counterpart
from chainwatch.framework.base_rule import BaseRule, ScoringContext
from chainwatch.framework.errors import LookupUnavailable
from chainwatch.framework.models import ComplianceEvent, EventKind, RuleOutcome, Severity

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Screening
# ------------------------------------------------------------------


class SanctionsMatchRule(BaseRule):
    rule_id = "sanctions_match"
    default_weight = 100
    default_severity = Severity.CRITICAL
    default_params = {"unavailable_weight": 20, "unavailable_flag": "sanctions_lookup_unavailable"}

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        matches: list[str] = []
        unavailable: list[str] = []
        for participant in event.participants:
            try:
                result = await ctx.lookup(participant)
            except LookupUnavailable:
                unavailable.append(participant)
                continue
            sanctions = [name for name in result.lists if name not in ctx.pep_lists]
            if result.listed and (sanctions or not result.lists):
                matches.append(f"{participant} ({', '.join(sanctions) or 'listed'})")

        if matches:
            return self.fired(detail="; ".join(matches))
        if unavailable:
            return self.fired(
                detail=f"lookup unavailable for {', '.join(unavailable)}",
                flag=self.params["unavailable_flag"],
                severity=Severity.MEDIUM,
                contribution=int(self.params["unavailable_weight"]),
            )
        return self.not_fired()


class PepMatchRule(BaseRule):
    rule_id = "pep_match"
    default_weight = 30
    default_severity = Severity.HIGH

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        matches: list[str] = []
        for participant in event.participants:
            try:
                result = await ctx.lookup(participant)
            except LookupUnavailable:
                continue  # surfaced by sanctions_match
            if any(name in ctx.pep_lists for name in result.lists):
                matches.append(participant)
        if matches:
            return self.fired(detail=f"PEP: {', '.join(matches)}")
        return self.not_fired()


# ------------------------------------------------------------------
# Value
# ------------------------------------------------------------------


class ValueOverThresholdRule(BaseRule):
    rule_id = "value_over_threshold"
    default_weight = 40
    default_severity = Severity.HIGH
    default_params = {"threshold": "10000"}

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        threshold = Decimal(str(self.params["threshold"]))
        if event.normalized_value is not None and event.normalized_value >= threshold:
            return self.fired(detail=f"value {event.normalized_value} >= {threshold}")
        return self.not_fired()


class ValueAnomalyRule(BaseRule):
    rule_id = "value_anomaly"
    default_weight = 20
    default_severity = Severity.MEDIUM
    default_params = {"multiplier": 10, "min_samples": 10}

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        if event.normalized_value is None:
            return self.not_fired()
        if ctx.history.source_samples(event.source_id) < int(self.params["min_samples"]):
            return self.not_fired()
        average = ctx.history.source_average(event.source_id)
        if not average:
            return self.not_fired()
        multiplier = Decimal(str(self.params["multiplier"]))
        if event.normalized_value > average * multiplier:
            return self.fired(detail=f"value {event.normalized_value} > {multiplier}x average {average:.2f}")
        return self.not_fired()


# ------------------------------------------------------------------
# Patterns
# ------------------------------------------------------------------


class VelocityRule(BaseRule):
    rule_id = "velocity_spike"
    default_weight = 25
    default_severity = Severity.HIGH
    default_params = {
        "baseline_per_hour": 5,
        "spike_multiplier": 3,
        "critical_multiplier": 10,
        "critical_weight": 50,
        "window_seconds": 3600,
    }

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        now = event.observed_at.timestamp()
        window = float(self.params["window_seconds"])
        baseline = float(self.params["baseline_per_hour"]) * window / 3600

        busiest, count = None, 0
        for participant in event.participants:
            recent = ctx.history.activity(participant, since=now - window, until=now)
            n = sum(1 for a in recent if a.event_id != event.event_id) + 1
            if n > count:
                busiest, count = participant, n

        if busiest is None:
            return self.not_fired()
        if count > baseline * float(self.params["critical_multiplier"]):
            return self.fired(
                detail=f"{busiest}: {count} in {window:.0f}s",
                flag="critical_velocity",
                severity=Severity.CRITICAL,
                contribution=int(self.params["critical_weight"]),
            )
        if count > baseline * float(self.params["spike_multiplier"]):
            return self.fired(detail=f"{busiest}: {count} in {window:.0f}s")
        return self.not_fired()


class RapidSuccessionRule(BaseRule):
    rule_id = "rapid_succession"
    default_weight = 15
    default_severity = Severity.MEDIUM
    default_params = {"max_gap_seconds": 300, "min_count": 3}

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        sender = event.from_address
        if not sender:
            return self.not_fired()
        now = event.observed_at.timestamp()
        max_gap = float(self.params["max_gap_seconds"])
        min_count = int(self.params["min_count"])

        timestamps = [a.timestamp for a in ctx.history.outgoing(sender) if a.event_id != event.event_id]
        timestamps = sorted(t for t in timestamps if t <= now) + [now]

        # Length of the run of short gaps ending at this event
        run = 1
        for earlier, later in zip(reversed(timestamps[:-1]), reversed(timestamps[1:])):
            if later - earlier >= max_gap:
                break
            run += 1
        if run >= min_count:
            return self.fired(detail=f"{sender}: {run} transfers under {max_gap:.0f}s apart")
        return self.not_fired()


class CounterpartyConcentrationRule(BaseRule):
    rule_id = "counterparty_concentration"
    default_weight = 15
    default_severity = Severity.MEDIUM
    default_params = {"min_transfers": 5, "concentration": 0.8, "max_unique": 3}

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        sender = event.from_address
        if not sender or not event.to_address:
            return self.not_fired()
        destinations = Counter(
            a.to_address for a in ctx.history.outgoing(sender) if a.event_id != event.event_id and a.to_address
        )
        destinations[event.to_address] += 1
        total = sum(destinations.values())
        if total < int(self.params["min_transfers"]):
            return self.not_fired()

        top, top_count = destinations.most_common(1)[0]
        share = top_count / total
        if share > float(self.params["concentration"]) and len(destinations) < int(self.params["max_unique"]):
            return self.fired(detail=f"{sender}: {share:.0%} of {total} transfers to {top}")
        return self.not_fired()


# ------------------------------------------------------------------
# Shape
# ------------------------------------------------------------------


class UnknownCounterpartRule(BaseRule):
    rule_id = "unknown_counterpart"
    default_weight = 10
    default_severity = Severity.LOW

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        if has_unknown_counterpart(event):
            return self.fired(detail="participant could not be resolved")
        return self.not_fired()


class CrossSourceTransferRule(BaseRule):
    rule_id = "cross_source_transfer"
    default_weight = 10
    default_severity = Severity.LOW

    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        if event.kind is EventKind.CROSS_SOURCE_TRANSFER:
            return self.fired(detail=f"bridge activity on {event.source_id}")
        return self.not_fired()
