"""
Configuration loading from YAML and environment overrides.

Reads:
1. config/pipeline.yaml: sources, endpoints, subscriptions, queue, scoring, sinks
2. Environment overrides: CHAINWATCH_SOURCES (partitioning), AWS_REGION,
   CHAINWATCH_LOOKUP_API_KEY

Exposes a ConfigLoader interface for the PipelineManager and RuleRegistry.
Everything is parsed into frozen dataclasses so components receive typed,
immutable settings instead of raw dicts.
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import yaml

from chainwatch.framework.errors import ConfigError
from chainwatch.framework.models import Severity

logger = logging.getLogger(__name__)

SOURCE_KINDS = frozenset({"evm", "solana", "subgraph"})
SUBSCRIPTION_TYPES = frozenset({"address", "contract", "program", "entity"})


@dataclass(frozen=True)
class EndpointConfig:
    url: str
    priority: int = 0  # lower is preferred
    weight: int = 1
    timeout: float = 10.0


@dataclass(frozen=True)
class SubscriptionConfig:
    id: str
    type: str
    target: str
    start_position: int = 0
    options: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class SourceConfig:
    id: str
    kind: str
    endpoints: tuple[EndpointConfig, ...]
    subscriptions: tuple[SubscriptionConfig, ...]
    chunk_size: int = 100
    poll_interval_seconds: float = 12.0
    probe_interval_seconds: float = 30.0
    failure_threshold: int = 3
    max_backoff_seconds: float = 60.0
    fetch_attempts: int = 2
    latency_alpha: float = 0.3
    native_decimals: int = 18
    native_asset: str = "ETH"
    reference_price: Decimal = Decimal("1")
    bridge_contracts: frozenset[str] = frozenset()


@dataclass(frozen=True)
class QueueConfig:
    workers: int = 4
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0


@dataclass(frozen=True)
class DedupConfig:
    ttl_seconds: float = 3600.0
    max_entries: int = 100_000


@dataclass(frozen=True)
class RuleConfig:
    id: str
    enabled: bool = True
    weight: Optional[int] = None
    severity: Optional[Severity] = None
    params: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ScoringConfig:
    alert_threshold: int = 70
    rule_timeout_seconds: float = 10.0
    history_window_seconds: float = 7 * 24 * 3600.0
    history_max_per_participant: int = 500
    history_max_per_source: int = 1000
    rules: tuple[RuleConfig, ...] = ()


@dataclass(frozen=True)
class PriorityConfig:
    base: int = 0
    high_value_threshold: Decimal = Decimal("100000")
    high_value_weight: int = 5
    medium_value_threshold: Decimal = Decimal("10000")
    medium_value_weight: int = 2
    cross_source_weight: int = 3
    unknown_counterpart_weight: int = 1
    contract_interaction_weight: int = 0


@dataclass(frozen=True)
class LookupConfig:
    lists: dict[str, tuple[str, ...]] = field(default_factory=dict, compare=False)
    lists_file: Optional[str] = None
    pep_lists: tuple[str, ...] = ("PEP",)
    http_base_url: Optional[str] = None
    http_timeout: float = 5.0
    api_key: Optional[str] = None


@dataclass(frozen=True)
class SinkConfig:
    storage: str = "memory"
    events_table: str = "chainwatch-scored-events"
    cursors_table: str = "chainwatch-cursors"
    dead_letters_table: str = "chainwatch-dead-letters"
    alert_sink: str = "log"
    sns_topic_arn: Optional[str] = None
    region: str = "us-west-2"
    persist_attempts: int = 3
    persist_base_delay_seconds: float = 0.5
    notify_max_attempts: int = 5
    notify_base_delay_seconds: float = 2.0
    metrics_enabled: bool = False
    metrics_namespace: str = "Chainwatch/Pipeline"
    metrics_interval_seconds: float = 60.0


@dataclass(frozen=True)
class PipelineConfig:
    sources: tuple[SourceConfig, ...]
    queue: QueueConfig = QueueConfig()
    dedup: DedupConfig = DedupConfig()
    scoring: ScoringConfig = ScoringConfig()
    priority: PriorityConfig = PriorityConfig()
    lookup: LookupConfig = LookupConfig()
    sinks: SinkConfig = SinkConfig()
    log_level: str = "INFO"
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    def source(self, source_id: str) -> SourceConfig:
        for src in self.sources:
            if src.id == source_id:
                return src
        raise KeyError(source_id)


class ConfigLoader:
    """
    Loads, validates and merges configuration.

    Configuration hierarchy (highest to lowest priority):
    1. Environment variables (runtime overrides)
    2. YAML file (config/pipeline.yaml)
    3. Dataclass defaults
    """

    DEFAULT_CONFIG_PATH = "config/pipeline.yaml"

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        """
        Initialize the config loader.

        Args:
            config_path: Path to pipeline.yaml (relative to project root)
        """
        self.config_path = config_path
        self._config: Optional[PipelineConfig] = None

    def load(self) -> PipelineConfig:
        """
        Read the YAML file, apply environment overrides and parse it.

        Returns:
            Parsed PipelineConfig (cached after the first call)

        Raises:
            ConfigError: If a key is missing or has an invalid value
        """
        if self._config is None:
            with open(self.config_path) as f:
                raw: dict[str, Any] = yaml.safe_load(f) or {}
            self._config = parse_config(raw)
        return self._config

    def get_sources(self) -> list[SourceConfig]:
        return list(self.load().sources)

    def get_active_rules(self) -> list[RuleConfig]:
        """Enabled rules in their configured evaluation order."""
        return [r for r in self.load().scoring.rules if r.enabled]

    def get_rule_config(self, rule_id: str) -> RuleConfig:
        for rule in self.load().scoring.rules:
            if rule.id == rule_id:
                return rule
        raise KeyError(rule_id)


def parse_config(raw: dict[str, Any]) -> PipelineConfig:
    """
    Parse a raw config mapping (as read from YAML) into a PipelineConfig.

    Environment overrides are applied here so tests and the loader share one
    code path.
    """
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a mapping")

    sources = tuple(_parse_source(s) for s in raw.get("sources") or [])
    ids = [s.id for s in sources]
    if len(ids) != len(set(ids)):
        raise ConfigError("sources: duplicate source id")

    env_sources = [s.strip() for s in os.getenv("CHAINWATCH_SOURCES", "").split(",") if s.strip()]
    if env_sources:
        unknown = set(env_sources) - set(ids)
        if unknown:
            logger.warning("CHAINWATCH_SOURCES names unknown sources, ignored | ids=%s", sorted(unknown))
        sources = tuple(s for s in sources if s.id in env_sources)

    queue = _parse_queue(raw.get("queue") or {})
    dedup = _parse_dedup(raw.get("dedup") or {})
    config = PipelineConfig(
        sources=sources,
        queue=queue,
        dedup=dedup,
        scoring=_parse_scoring(raw.get("scoring") or {}),
        priority=_parse_priority(raw.get("priority") or {}),
        lookup=_parse_lookup(raw.get("lookup") or {}),
        sinks=_parse_sinks(raw.get("sinks") or {}),
        log_level=os.getenv("LOG_LEVEL", str(raw.get("log_level", "INFO"))).upper(),
        raw=raw,
    )
    _warn_short_dedup_ttl(config)
    return config


# ------------------------------------------------------------------
# Section parsers
# ------------------------------------------------------------------


def _parse_source(raw: dict[str, Any]) -> SourceConfig:
    source_id = _require(raw, "id", "sources[]")
    kind = str(_require(raw, "kind", f"sources[{source_id}]")).lower()
    if kind not in SOURCE_KINDS:
        # Unknown kinds are kept so the manager can log and skip them
        logger.warning("Unknown source kind, source will be skipped | source=%s | kind=%s", source_id, kind)

    endpoints = tuple(_parse_endpoint(e, source_id) for e in raw.get("endpoints") or [])
    if not endpoints:
        raise ConfigError(f"sources[{source_id}].endpoints: at least one endpoint is required")

    subscriptions = tuple(_parse_subscription(s, source_id) for s in raw.get("subscriptions") or [])
    sub_ids = [s.id for s in subscriptions]
    if len(sub_ids) != len(set(sub_ids)):
        raise ConfigError(f"sources[{source_id}].subscriptions: duplicate subscription id")

    chunk_size = int(raw.get("chunk_size", 100))
    if chunk_size < 1:
        raise ConfigError(f"sources[{source_id}].chunk_size must be >= 1")
    failure_threshold = int(raw.get("failure_threshold", 3))
    if failure_threshold < 1:
        raise ConfigError(f"sources[{source_id}].failure_threshold must be >= 1")

    return SourceConfig(
        id=str(source_id),
        kind=kind,
        endpoints=endpoints,
        subscriptions=subscriptions,
        chunk_size=chunk_size,
        poll_interval_seconds=float(raw.get("poll_interval_seconds", 12.0)),
        probe_interval_seconds=float(raw.get("probe_interval_seconds", 30.0)),
        failure_threshold=failure_threshold,
        max_backoff_seconds=float(raw.get("max_backoff_seconds", 60.0)),
        fetch_attempts=max(1, int(raw.get("fetch_attempts", 2))),
        latency_alpha=float(raw.get("latency_alpha", 0.3)),
        native_decimals=int(raw.get("native_decimals", 9 if kind == "solana" else 18)),
        native_asset=str(raw.get("native_asset", "SOL" if kind == "solana" else "ETH")),
        reference_price=_decimal(raw.get("reference_price", "1"), f"sources[{source_id}].reference_price"),
        bridge_contracts=frozenset(str(a).lower() for a in raw.get("bridge_contracts") or []),
    )


def _parse_endpoint(raw: Any, source_id: str) -> EndpointConfig:
    if isinstance(raw, str):
        return EndpointConfig(url=raw)
    url = _require(raw, "url", f"sources[{source_id}].endpoints[]")
    return EndpointConfig(
        url=str(url),
        priority=int(raw.get("priority", 0)),
        weight=int(raw.get("weight", 1)),
        timeout=float(raw.get("timeout", 10.0)),
    )


def _parse_subscription(raw: dict[str, Any], source_id: str) -> SubscriptionConfig:
    where = f"sources[{source_id}].subscriptions[]"
    sub_id = str(_require(raw, "id", where))
    sub_type = str(_require(raw, "type", where)).lower()
    if sub_type not in SUBSCRIPTION_TYPES:
        raise ConfigError(f"{where}.type: unknown subscription type '{sub_type}'")
    start = int(raw.get("start_position", 0))
    if start < 0:
        raise ConfigError(f"{where}.start_position must be >= 0")
    return SubscriptionConfig(
        id=sub_id,
        type=sub_type,
        target=str(_require(raw, "target", where)),
        start_position=start,
        options=dict(raw.get("options") or {}),
    )


def _parse_queue(raw: dict[str, Any]) -> QueueConfig:
    cfg = QueueConfig(
        workers=int(raw.get("workers", 4)),
        max_attempts=int(raw.get("max_attempts", 5)),
        base_delay_seconds=float(raw.get("base_delay_seconds", 1.0)),
        max_delay_seconds=float(raw.get("max_delay_seconds", 60.0)),
        shutdown_grace_seconds=float(raw.get("shutdown_grace_seconds", 30.0)),
    )
    if cfg.workers < 1:
        raise ConfigError("queue.workers must be >= 1")
    if cfg.max_attempts < 1:
        raise ConfigError("queue.max_attempts must be >= 1")
    if cfg.max_delay_seconds < cfg.base_delay_seconds:
        raise ConfigError("queue.max_delay_seconds must be >= queue.base_delay_seconds")
    return cfg


def _parse_dedup(raw: dict[str, Any]) -> DedupConfig:
    cfg = DedupConfig(
        ttl_seconds=float(raw.get("ttl_seconds", 3600.0)),
        max_entries=int(raw.get("max_entries", 100_000)),
    )
    if cfg.ttl_seconds <= 0 or cfg.max_entries < 1:
        raise ConfigError("dedup.ttl_seconds and dedup.max_entries must be positive")
    return cfg


def _parse_scoring(raw: dict[str, Any]) -> ScoringConfig:
    threshold = int(raw.get("alert_threshold", 70))
    if not 0 <= threshold <= 100:
        raise ConfigError("scoring.alert_threshold must be within 0..100")
    rules = tuple(_parse_rule(r) for r in raw.get("rules") or [])
    return ScoringConfig(
        alert_threshold=threshold,
        rule_timeout_seconds=float(raw.get("rule_timeout_seconds", 10.0)),
        history_window_seconds=float(raw.get("history_window_seconds", 7 * 24 * 3600.0)),
        history_max_per_participant=int(raw.get("history_max_per_participant", 500)),
        history_max_per_source=int(raw.get("history_max_per_source", 1000)),
        rules=rules,
    )


def _parse_rule(raw: Any) -> RuleConfig:
    if isinstance(raw, str):
        return RuleConfig(id=raw)
    rule_id = str(_require(raw, "id", "scoring.rules[]"))
    severity = raw.get("severity")
    try:
        parsed_severity = Severity(str(severity).lower()) if severity is not None else None
    except ValueError:
        raise ConfigError(f"scoring.rules[{rule_id}].severity: unknown severity '{severity}'") from None
    weight = raw.get("weight")
    return RuleConfig(
        id=rule_id,
        enabled=bool(raw.get("enabled", True)),
        weight=int(weight) if weight is not None else None,
        severity=parsed_severity,
        params=dict(raw.get("params") or {}),
    )


def _parse_priority(raw: dict[str, Any]) -> PriorityConfig:
    defaults = PriorityConfig()
    return PriorityConfig(
        base=int(raw.get("base", defaults.base)),
        high_value_threshold=_decimal(
            raw.get("high_value_threshold", defaults.high_value_threshold), "priority.high_value_threshold"
        ),
        high_value_weight=int(raw.get("high_value_weight", defaults.high_value_weight)),
        medium_value_threshold=_decimal(
            raw.get("medium_value_threshold", defaults.medium_value_threshold), "priority.medium_value_threshold"
        ),
        medium_value_weight=int(raw.get("medium_value_weight", defaults.medium_value_weight)),
        cross_source_weight=int(raw.get("cross_source_weight", defaults.cross_source_weight)),
        unknown_counterpart_weight=int(
            raw.get("unknown_counterpart_weight", defaults.unknown_counterpart_weight)
        ),
        contract_interaction_weight=int(
            raw.get("contract_interaction_weight", defaults.contract_interaction_weight)
        ),
    )


def _parse_lookup(raw: dict[str, Any]) -> LookupConfig:
    lists = {
        str(name): tuple(str(a).lower() for a in (entries or []))
        for name, entries in (raw.get("lists") or {}).items()
    }
    return LookupConfig(
        lists=lists,
        lists_file=raw.get("lists_file"),
        pep_lists=tuple(raw.get("pep_lists") or ("PEP",)),
        http_base_url=raw.get("http_base_url"),
        http_timeout=float(raw.get("http_timeout", 5.0)),
        api_key=os.getenv("CHAINWATCH_LOOKUP_API_KEY") or raw.get("api_key"),
    )


def _parse_sinks(raw: dict[str, Any]) -> SinkConfig:
    storage = str(raw.get("storage", "memory")).lower()
    if storage not in ("memory", "dynamodb"):
        raise ConfigError(f"sinks.storage: unknown backend '{storage}'")
    alert_sink = str(raw.get("alert_sink", "log")).lower()
    if alert_sink not in ("log", "sns"):
        raise ConfigError(f"sinks.alert_sink: unknown sink '{alert_sink}'")
    if alert_sink == "sns" and not raw.get("sns_topic_arn"):
        raise ConfigError("sinks.sns_topic_arn is required when alert_sink is sns")
    defaults = SinkConfig()
    return SinkConfig(
        storage=storage,
        events_table=str(raw.get("events_table", defaults.events_table)),
        cursors_table=str(raw.get("cursors_table", defaults.cursors_table)),
        dead_letters_table=str(raw.get("dead_letters_table", defaults.dead_letters_table)),
        alert_sink=alert_sink,
        sns_topic_arn=raw.get("sns_topic_arn"),
        region=os.getenv("AWS_REGION", str(raw.get("region", defaults.region))),
        persist_attempts=int(raw.get("persist_attempts", defaults.persist_attempts)),
        persist_base_delay_seconds=float(
            raw.get("persist_base_delay_seconds", defaults.persist_base_delay_seconds)
        ),
        notify_max_attempts=int(raw.get("notify_max_attempts", defaults.notify_max_attempts)),
        notify_base_delay_seconds=float(
            raw.get("notify_base_delay_seconds", defaults.notify_base_delay_seconds)
        ),
        metrics_enabled=bool(raw.get("metrics_enabled", False)),
        metrics_namespace=str(raw.get("metrics_namespace", defaults.metrics_namespace)),
        metrics_interval_seconds=float(
            raw.get("metrics_interval_seconds", defaults.metrics_interval_seconds)
        ),
    )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _require(raw: Any, key: str, where: str) -> Any:
    if not isinstance(raw, dict) or raw.get(key) in (None, ""):
        raise ConfigError(f"{where}.{key} is required")
    return raw[key]


def _decimal(value: Any, where: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigError(f"{where}: not a number: {value!r}") from None


def _warn_short_dedup_ttl(config: PipelineConfig) -> None:
    """
    Warn when the dedup TTL cannot absorb legitimate redeliveries.

    The longest reprocessing window is a listener retrying after its maximum
    backoff plus a job walking through every queue retry.
    """
    q = config.queue
    queue_window = sum(
        min(q.base_delay_seconds * 2**attempt, q.max_delay_seconds) for attempt in range(q.max_attempts)
    )
    listener_window = max((s.max_backoff_seconds + s.poll_interval_seconds for s in config.sources), default=0.0)
    if config.dedup.ttl_seconds <= queue_window + listener_window:
        logger.warning(
            "dedup.ttl_seconds is shorter than the reprocessing window, duplicates may reach scoring "
            "| ttl=%.0fs | window=%.0fs",
            config.dedup.ttl_seconds,
            queue_window + listener_window,
        )
