"""
Queue priority as a pure function of the ComplianceEvent.

Amounts are compared on their normalized (fiat-equivalent) value so one
threshold works across sources with different native units.
"""

from chainwatch.framework.config_loader import PriorityConfig
from chainwatch.framework.models import ComplianceEvent, EventKind


def has_unknown_counterpart(event: ComplianceEvent) -> bool:
    """True when the event could not resolve one of its two participants."""
    return event.from_address is None or event.to_address is None


class PriorityPolicy:
    """Higher value is dequeued first."""

    def __init__(self, config: PriorityConfig) -> None:
        self.config = config

    def __call__(self, event: ComplianceEvent) -> int:
        return self.compute(event)

    def compute(self, event: ComplianceEvent) -> int:
        cfg = self.config
        priority = cfg.base

        value = event.normalized_value
        if value is not None:
            if value >= cfg.high_value_threshold:
                priority += cfg.high_value_weight
            elif value >= cfg.medium_value_threshold:
                priority += cfg.medium_value_weight

        if event.kind is EventKind.CROSS_SOURCE_TRANSFER:
            priority += cfg.cross_source_weight
        elif event.kind is EventKind.CONTRACT_INTERACTION:
            priority += cfg.contract_interaction_weight

        if has_unknown_counterpart(event):
            priority += cfg.unknown_counterpart_weight
        return priority
