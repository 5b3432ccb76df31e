"""
Framework for source adapters, scoring rules and result delivery.

chainwatch uses a plugin architecture where:
- SourceAdapter: Standardizes chain access (EVM JSON-RPC, Solana, subgraphs)
- BaseRule: Standardizes one compliance check (sanctions, value, velocity, ...)
- ResultSink: Persists scored events and routes alerts
- ConfigLoader: Reads pipeline configuration from YAML + environment
- RuleRegistry: Dynamically loads active rules

Every ScoredEvent carries a LineageContext to track:
- event_id: Deterministic ID derived from (source, position, sub-index)
- rules_hash: Reproducibility; same hash means identical rule logic
- pipeline_version: Git SHA for audit trail
"""

from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.base_rule import BaseRule, ScoringContext
from chainwatch.framework.config_loader import ConfigLoader, PipelineConfig, parse_config
from chainwatch.framework.lineage import LineageContext, generate_event_id, get_pipeline_version, hash_config
from chainwatch.framework.result_sink import ProcessingHandler, ResultSink
from chainwatch.framework.rule_registry import RuleRegistry

__all__ = [
    "BaseRule",
    "ConfigLoader",
    "LineageContext",
    "PipelineConfig",
    "ProcessingHandler",
    "ResultSink",
    "RuleRegistry",
    "ScoringContext",
    "SourceAdapter",
    "generate_event_id",
    "get_pipeline_version",
    "hash_config",
    "parse_config",
]
