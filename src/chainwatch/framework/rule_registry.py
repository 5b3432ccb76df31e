"""
Rule registry for config-driven rule discovery and instantiation.

Reads the ordered rule list from ScoringConfig and imports the corresponding
rule classes. This enables:
- Config-driven toggles and weights (no code changes to tune scoring)
- Plugin rules (a dotted class path in config is loaded like a built-in)
"""

import importlib
import logging

from chainwatch.framework.base_rule import BaseRule
from chainwatch.framework.config_loader import RuleConfig, ScoringConfig

logger = logging.getLogger(__name__)


class RuleRegistry:
    """
    Registry for dynamically loading and instantiating scoring rules.

    Maps rule IDs to rule classes; the configured order is the flag order.
    """

    # Mapping of rule ID to rule class path, in default evaluation order
    RULE_MAPPING = {
        "sanctions_match": "chainwatch.scoring.rules.SanctionsMatchRule",
        "pep_match": "chainwatch.scoring.rules.PepMatchRule",
        "value_over_threshold": "chainwatch.scoring.rules.ValueOverThresholdRule",
        "velocity_spike": "chainwatch.scoring.rules.VelocityRule",
        "rapid_succession": "chainwatch.scoring.rules.RapidSuccessionRule",
        "counterparty_concentration": "chainwatch.scoring.rules.CounterpartyConcentrationRule",
        "value_anomaly": "chainwatch.scoring.rules.ValueAnomalyRule",
        "unknown_counterpart": "chainwatch.scoring.rules.UnknownCounterpartRule",
        "cross_source_transfer": "chainwatch.scoring.rules.CrossSourceTransferRule",
    }

    def __init__(self, scoring: ScoringConfig):
        """
        Initialize the registry.

        Args:
            scoring: Parsed scoring section; an empty rule list enables every
                     built-in rule with its defaults
        """
        self.scoring = scoring
        self._rules: dict[str, BaseRule] = {}

    def load_active_rules(self) -> list[BaseRule]:
        """
        Load and instantiate all enabled rules in configured order.

        Returns:
            List of rule instances

        Raises:
            KeyError: If a rule id is neither built-in nor a dotted class path
            ImportError: If a rule class cannot be imported
            TypeError: If a rule class doesn't inherit from BaseRule
        """
        rules = [self.get_rule(cfg.id) for cfg in self._active_configs()]
        logger.info("RuleRegistry loaded | rules=%s", [r.rule_id for r in rules])
        return rules

    def get_rule(self, rule_id: str) -> BaseRule:
        """
        Get a rule by ID (lazily loaded on first access).

        Raises:
            KeyError: If rule_id is unknown
        """
        if rule_id not in self._rules:
            self._rules[rule_id] = self._load_single_rule(self._config_for(rule_id))
        return self._rules[rule_id]

    def list_active_rules(self) -> list[str]:
        return [cfg.id for cfg in self._active_configs()]

    def _active_configs(self) -> list[RuleConfig]:
        if not self.scoring.rules:
            return [RuleConfig(id=rule_id) for rule_id in self.RULE_MAPPING]
        return [cfg for cfg in self.scoring.rules if cfg.enabled]

    def _config_for(self, rule_id: str) -> RuleConfig:
        for cfg in self.scoring.rules:
            if cfg.id == rule_id:
                return cfg
        return RuleConfig(id=rule_id)

    def _load_single_rule(self, config: RuleConfig) -> BaseRule:
        class_path = self.RULE_MAPPING.get(config.id)
        if class_path is None:
            if "." not in config.id:
                raise KeyError(f"Unknown rule '{config.id}'")
            class_path = config.id

        module_name, _, class_name = class_path.rpartition(".")
        rule_cls = getattr(importlib.import_module(module_name), class_name)
        if not (isinstance(rule_cls, type) and issubclass(rule_cls, BaseRule)):
            raise TypeError(f"{class_path} does not inherit from BaseRule")
        return rule_cls(config)
