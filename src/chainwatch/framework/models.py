"""
Pipeline data model.

Every stage hands the next one a fixed payload type:

    RawEvent  (Source Listener → Canonicalizer)
    ComplianceEvent  (Canonicalizer → Dedup gate → Dispatch Queue)
    ScoredEvent  (Scoring Engine → Result Sink)

EndpointHealth and ListenerCursor are owned by a single source / listener.
ComplianceEvent and ScoredEvent are frozen so ownership can move stage to
stage without copies.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_z(dt: datetime) -> str:
    """Render a timezone-aware datetime as ISO 8601 UTC with a Z suffix."""
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class EventKind(str, Enum):
    TRANSFER = "transfer"
    CONTRACT_INTERACTION = "contract_interaction"
    CROSS_SOURCE_TRANSFER = "cross_source_transfer"
    INDEX_ENTITY_CHANGE = "index_entity_change"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComplianceStatus(str, Enum):
    APPROVED = "approved"
    FLAGGED = "flagged"
    ESCALATED = "escalated"
    REJECTED = "rejected"


@dataclass(frozen=True)
class EndpointHealth:
    """
    Point-in-time health record for one endpoint.

    The registry never mutates a record in place; it swaps in a new one, so a
    reader always sees a consistent (possibly slightly stale) snapshot.
    """

    url: str
    priority: int
    weight: int
    timeout: float
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: Optional[float] = None  # None until the first successful probe
    consecutive_errors: int = 0
    last_probed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "priority": self.priority,
            "weight": self.weight,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "consecutive_errors": self.consecutive_errors,
            "last_probed_at": iso_z(self.last_probed_at) if self.last_probed_at else None,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class HealthTransition:
    """Emitted when an endpoint flips between healthy and unhealthy."""

    source_id: str
    url: str
    previous: HealthStatus
    current: HealthStatus
    consecutive_errors: int
    at: datetime


@dataclass(frozen=True)
class ListenerCursor:
    source_id: str
    subscription_id: str
    position: int
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RawEvent:
    """
    Source-shaped payload plus the position it was observed at.

    sub_index orders records that share a position (tx index, log index,
    row order within a block) so identity stays unique and stable.
    """

    source_id: str
    source_kind: str
    subscription_id: str
    position: int
    sub_index: int
    payload: dict[str, Any]
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ComplianceEvent:
    event_id: str
    source_id: str
    source_kind: str
    subscription_id: str
    position: int
    sub_index: int
    kind: EventKind
    from_address: Optional[str]
    to_address: Optional[str]
    amount: Optional[Decimal]
    asset: Optional[str]
    normalized_value: Optional[Decimal]
    observed_at: datetime
    reference: Optional[str] = None  # tx hash / signature / entity id
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def participants(self) -> tuple[str, ...]:
        return tuple(p for p in (self.from_address, self.to_address) if p)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "source_id": self.source_id,
            "source_kind": self.source_kind,
            "subscription_id": self.subscription_id,
            "position": self.position,
            "sub_index": self.sub_index,
            "kind": self.kind.value,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": str(self.amount) if self.amount is not None else None,
            "asset": self.asset,
            "normalized_value": (
                str(self.normalized_value) if self.normalized_value is not None else None
            ),
            "observed_at": iso_z(self.observed_at),
            "reference": self.reference,
            "raw": self.raw,
        }


@dataclass(frozen=True)
class RuleOutcome:
    """Result of one rule check: (fired, contribution, flag id) plus severity."""

    rule_id: str
    fired: bool
    contribution: int = 0
    flag: Optional[str] = None
    severity: Severity = Severity.LOW
    detail: Optional[str] = None

    @classmethod
    def not_fired(cls, rule_id: str) -> "RuleOutcome":
        return cls(rule_id=rule_id, fired=False)


@dataclass(frozen=True)
class ScoredEvent:
    event: ComplianceEvent
    risk_score: int
    flags: tuple[str, ...]
    alert_required: bool
    status: ComplianceStatus
    processed_at: datetime
    outcomes: tuple[RuleOutcome, ...] = ()
    lineage: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def event_id(self) -> str:
        return self.event.event_id

    def to_dict(self) -> dict[str, Any]:
        """Flat, JSON-safe representation used by storage and alert sinks."""
        return {
            **self.event.to_dict(),
            "risk_score": self.risk_score,
            "flags": list(self.flags),
            "alert_required": self.alert_required,
            "compliance_status": self.status.value,
            "processed_at": iso_z(self.processed_at),
            "fired_rules": [asdict(o) | {"severity": o.severity.value} for o in self.outcomes if o.fired],
            "_lineage": self.lineage,
        }


@dataclass
class QueueJob:
    """
    Mutable wrapper owned by the dispatch queue.

    result caches the ScoredEvent once scoring succeeded so a retry caused by
    a persistence failure does not score (and record activity) twice.
    """

    job_id: str
    event: ComplianceEvent
    priority: int
    attempts: int = 0
    next_eligible_at: float = 0.0
    enqueued_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None
    result: Optional[ScoredEvent] = None


@dataclass(frozen=True)
class DeadLetter:
    job_id: str
    event: ComplianceEvent
    attempts: int
    last_error: str
    dead_lettered_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "dead_lettered_at": iso_z(self.dead_lettered_at),
            "event": self.event.to_dict(),
        }
