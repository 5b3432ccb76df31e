"""
Unit tests for RuleRegistry and BaseRule.

Tests cover:
- Empty rule configuration enables every built-in rule in default order
- Configured order and enabled flags are respected
- Weight / severity / params overrides reach the rule instance
- Dotted class paths load plugin rules; non-BaseRule classes are rejected
- Unknown rule ids raise KeyError
- config_dict() feeds the rules hash
"""

import pytest

from chainwatch.framework.base_rule import BaseRule
from chainwatch.framework.config_loader import RuleConfig, ScoringConfig
from chainwatch.framework.models import Severity
from chainwatch.framework.rule_registry import RuleRegistry
from chainwatch.scoring.rules import SanctionsMatchRule, ValueOverThresholdRule


class NotARule:
    def __init__(self, config) -> None:
        self.config = config


class TestRuleRegistry:
    def test_defaults_enable_all_builtins(self) -> None:
        rules = RuleRegistry(ScoringConfig()).load_active_rules()
        assert [r.rule_id for r in rules] == list(RuleRegistry.RULE_MAPPING)

    def test_configured_order_and_toggles(self) -> None:
        scoring = ScoringConfig(
            rules=(
                RuleConfig(id="value_over_threshold"),
                RuleConfig(id="sanctions_match"),
                RuleConfig(id="pep_match", enabled=False),
            )
        )
        registry = RuleRegistry(scoring)

        rules = registry.load_active_rules()

        assert [r.rule_id for r in rules] == ["value_over_threshold", "sanctions_match"]
        assert isinstance(rules[0], ValueOverThresholdRule)
        assert isinstance(rules[1], SanctionsMatchRule)
        assert registry.list_active_rules() == ["value_over_threshold", "sanctions_match"]

    def test_overrides_applied(self) -> None:
        scoring = ScoringConfig(
            rules=(
                RuleConfig(
                    id="value_over_threshold", weight=60, severity=Severity.CRITICAL, params={"threshold": "50000"}
                ),
            )
        )
        rule = RuleRegistry(scoring).get_rule("value_over_threshold")

        assert rule.weight == 60
        assert rule.severity is Severity.CRITICAL
        assert rule.params == {"threshold": "50000"}

    def test_get_rule_is_cached(self) -> None:
        registry = RuleRegistry(ScoringConfig())
        assert registry.get_rule("pep_match") is registry.get_rule("pep_match")

    def test_dotted_path_plugin(self) -> None:
        scoring = ScoringConfig(rules=(RuleConfig(id="chainwatch.scoring.rules.CrossSourceTransferRule"),))
        rules = RuleRegistry(scoring).load_active_rules()
        assert rules[0].rule_id == "cross_source_transfer"

    def test_non_rule_class_rejected(self) -> None:
        scoring = ScoringConfig(rules=(RuleConfig(id=f"{__name__}.NotARule"),))
        with pytest.raises(TypeError):
            RuleRegistry(scoring).load_active_rules()

    def test_unknown_rule(self) -> None:
        with pytest.raises(KeyError):
            RuleRegistry(ScoringConfig(rules=(RuleConfig(id="astrology"),))).load_active_rules()


class TestBaseRule:
    def test_defaults_without_config(self) -> None:
        rule = SanctionsMatchRule()
        assert rule.weight == 100
        assert rule.severity is Severity.CRITICAL
        assert rule.params["unavailable_flag"] == "sanctions_lookup_unavailable"

    def test_config_dict(self) -> None:
        rule = ValueOverThresholdRule(RuleConfig(id="value_over_threshold", params={"threshold": 1}))
        assert rule.config_dict() == {
            "id": "value_over_threshold",
            "weight": 40,
            "severity": "high",
            "params": {"threshold": 1},
        }

    def test_fired_defaults(self) -> None:
        outcome = ValueOverThresholdRule().fired(detail="big")
        assert outcome.fired
        assert outcome.flag == "value_over_threshold"
        assert outcome.contribution == 40
        assert outcome.severity is Severity.HIGH

    def test_abstract(self) -> None:
        with pytest.raises(TypeError):
            BaseRule()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
