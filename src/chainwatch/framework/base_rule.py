"""
Base rule abstraction for compliance scoring.

Every rule (sanctions lookup, value threshold, velocity, ...) inherits from
BaseRule and implements:
1. check(): evaluate one ComplianceEvent and return a RuleOutcome
2. A default weight (score contribution) and severity, both overridable
   from configuration
3. Its configuration for the rules hash carried in lineage

Rules are independent and additive: a rule never reads another rule's
outcome, so evaluation order only affects flag display order.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from chainwatch.framework.config_loader import RuleConfig
from chainwatch.framework.interfaces import LookupResult, LookupService
from chainwatch.framework.models import ComplianceEvent, RuleOutcome, Severity

if TYPE_CHECKING:
    from chainwatch.scoring.history import ActivityHistory


def _retrieve_failure(task: asyncio.Task) -> None:
    # A rule that timed out leaves the shared lookup with no awaiter
    if not task.cancelled():
        task.exception()


class ScoringContext:
    """
    Per-event state shared by the rules of one scoring pass.

    Lookups are de-duplicated: concurrent rules asking about the same
    participant share one call, and a LookupUnavailable is re-raised to each.
    """

    def __init__(
        self,
        event: ComplianceEvent,
        lookup_service: LookupService,
        history: "ActivityHistory",
        pep_lists: tuple[str, ...] = ("PEP",),
    ) -> None:
        self.event = event
        self.history = history
        self.pep_lists = frozenset(pep_lists)
        self._lookup_service = lookup_service
        self._lookups: dict[str, asyncio.Task] = {}

    async def lookup(self, identifier: str) -> LookupResult:
        """
        Raises:
            LookupUnavailable: If the lookup collaborator could not answer
        """
        task = self._lookups.get(identifier)
        if task is None:
            task = asyncio.ensure_future(self._lookup_service.check_participant(identifier))
            task.add_done_callback(_retrieve_failure)
            self._lookups[identifier] = task
        return await asyncio.shield(task)


class BaseRule(ABC):
    """
    Abstract base class for scoring rules.

    Subclasses implement specific rules (ValueOverThresholdRule, VelocityRule, etc.).
    """

    # Subclasses override these
    rule_id: str  # e.g., "value_over_threshold"
    default_weight: int = 10
    default_severity: Severity = Severity.MEDIUM
    default_params: dict[str, Any] = {}

    def __init__(self, config: Optional[RuleConfig] = None):
        """
        Initialize the rule.

        Args:
            config: Rule configuration; weight/severity/params fall back to the
                    class defaults when not set
        """
        self.config = config or RuleConfig(id=self.rule_id)
        self.weight = self.config.weight if self.config.weight is not None else self.default_weight
        self.severity = self.config.severity or self.default_severity
        self.params: dict[str, Any] = {**self.default_params, **self.config.params}

    @abstractmethod
    async def check(self, event: ComplianceEvent, ctx: ScoringContext) -> RuleOutcome:
        """
        Evaluate the rule against one event.

        Args:
            event: Canonical event being scored
            ctx: Shared per-event context (lookups, participant history)

        Returns:
            RuleOutcome; use fired() / not_fired() to build it

        Raises:
            Any exception: the engine isolates it, counts the rule as zero and
            flags the event rule_evaluation_error
        """

    def fired(
        self,
        detail: Optional[str] = None,
        flag: Optional[str] = None,
        severity: Optional[Severity] = None,
        contribution: Optional[int] = None,
    ) -> RuleOutcome:
        return RuleOutcome(
            rule_id=self.rule_id,
            fired=True,
            contribution=self.weight if contribution is None else contribution,
            flag=flag or self.rule_id,
            severity=severity or self.severity,
            detail=detail,
        )

    def not_fired(self) -> RuleOutcome:
        return RuleOutcome.not_fired(self.rule_id)

    def config_dict(self) -> dict[str, Any]:
        """Effective configuration, hashed into lineage."""
        return {
            "id": self.rule_id,
            "weight": self.weight,
            "severity": self.severity.value,
            "params": self.params,
        }
