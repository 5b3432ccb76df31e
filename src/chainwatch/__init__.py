"""
chainwatch: multi-source blockchain compliance ingestion and scoring.

Source listeners pull bounded windows from EVM, Solana and subgraph
endpoints, canonicalize them into ComplianceEvents, and hand them to a
priority dispatch queue whose workers score each event against the
configured rules and persist the result.
"""

__version__ = "0.1.0"
