"""
Event identity and lineage tracking.

Every persisted result carries a LineageContext:
- event_id: Deterministic identity derived from source + subscription + position + sub-index
- source details: Where and at which position the activity was observed
- rules_hash: Reproducibility, same hash means identical scoring configuration
- pipeline_version: Git SHA for audit trail
"""

import hashlib
import json
import os
from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class LineageContext:
    """
    Embedded in every persisted ScoredEvent under the _lineage key.
    """

    event_id: str  # sha256(source:subscription:position:sub_index)[:32]
    source_id: str
    subscription_id: str
    position: int
    rules_hash: str  # sha256(scoring config)
    processed_at: str  # ISO timestamp of scoring
    pipeline_version: str  # Git SHA or "dev", from env var PIPELINE_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return asdict(self)


def generate_event_id(source_id: str, subscription_id: str, position: int, sub_index: int) -> str:
    """
    Generate the canonical identity of an observed activity.

    Same source + subscription + position + sub-index always produces the same
    ID, so reprocessing a window after a failure yields identical identities and
    the dedup cache / upsert absorb the repeat.

    Args:
        source_id: Configured source id (e.g., "eth-mainnet")
        subscription_id: Subscription id within the source (e.g., "treasury-wallet")
        position: Block height / slot / indexed block number
        sub_index: Ordinal of the record within that position

    Returns:
        32-character hex string (sha256[:32])
    """
    combined = f"{source_id}:{subscription_id}:{int(position)}:{int(sub_index)}"
    hash_obj = hashlib.sha256(combined.encode("utf-8"))
    return hash_obj.hexdigest()[:32]


def hash_config(config: dict[str, Any]) -> str:
    """
    Hash a configuration dict for reproducibility tracking.

    Same config dict always produces same hash. Values that are not JSON
    serializable (Decimal, enums) are stringified.

    Args:
        config: Configuration dict (e.g., {"alert_threshold": 70, "rules": [...]})

    Returns:
        64-character hex string (full sha256)
    """
    # Sort keys for deterministic serialization
    json_str = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()


def get_pipeline_version() -> str:
    """
    Get the pipeline version from environment or default to 'dev'.

    In CI/CD, set PIPELINE_VERSION to git commit SHA.
    """
    return os.getenv("PIPELINE_VERSION", "dev")
