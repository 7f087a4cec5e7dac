"""Core infrastructure: configuration, logging, flow graphs, storage, queue and channel gate."""

from cadence.core.canonical import canonical_json, stable_hash
from cadence.core.config import CadenceSettings, load_settings, resolve_config
from cadence.core.flow import (
    ConditionNode,
    EndNode,
    FlowDocument,
    FlowEdge,
    FlowGraph,
    SendNode,
    load_flow_document,
)
from cadence.core.logging import configure_logging, get_logger

__all__ = [
    "CadenceSettings",
    "ConditionNode",
    "EndNode",
    "FlowDocument",
    "FlowEdge",
    "FlowGraph",
    "SendNode",
    "canonical_json",
    "configure_logging",
    "get_logger",
    "load_flow_document",
    "load_settings",
    "resolve_config",
    "stable_hash",
]
