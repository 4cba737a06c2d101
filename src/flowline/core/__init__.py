# src/flowline/core/__init__.py
"""Core infrastructure: graph model, engagement clock, ledger, canonical JSON, configuration, logging."""

from flowline.core.canonical import (
    CANONICAL_VERSION,
    canonical_json,
    stable_hash,
)
from flowline.core.config import (
    FlowlineSettings,
    load_settings,
)
from flowline.core.definition import FlowDefinition, build_graph
from flowline.core.engagement import (
    StaticProfileProvider,
    next_optimal_time,
    profile_from_history,
)
from flowline.core.graph import FlowGraph, validate_graph
from flowline.core.logging import (
    configure_logging,
    get_logger,
)

__all__ = [
    "CANONICAL_VERSION",
    "FlowDefinition",
    "FlowGraph",
    "FlowlineSettings",
    "StaticProfileProvider",
    "build_graph",
    "canonical_json",
    "configure_logging",
    "get_logger",
    "load_settings",
    "next_optimal_time",
    "profile_from_history",
    "stable_hash",
    "validate_graph",
]
