# src/cadence/core/flow.py
"""Flow graph: the immutable-per-execution description of a campaign.

Uses NetworkX for graph operations including:
- Acyclicity validation
- Entry node discovery
- Successor / branch lookup while advancing an execution

Nodes are a tagged union resolved once at load time: every node in the
graph is a ``SendNode``, ``ConditionNode`` or ``EndNode`` instance, so
callers dispatch on type instead of sniffing dict payloads.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, ClassVar, cast

import networkx as nx
from networkx import DiGraph

from cadence.contracts.enums import METRIC_ALIASES, Branch, Channel, Metric, NodeKind
from cadence.contracts.errors import GraphIntegrityError

END_NODE_PREFIX = "end"

COMPARISONS: dict[str, Callable[[int, int], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
}

_WAIT_UNITS = {"days", "hours", "minutes"}
_TRUTHY = {"true", "yes", "si", "1"}
_FALSY = {"false", "no", "0"}


@dataclass(frozen=True)
class SendNode:
    """Send one message per recipient on a channel, then wait before the next hop."""

    kind: ClassVar[NodeKind] = NodeKind.SEND

    node_id: str
    channel: Channel
    content_ref: str
    wait_time: float = 0
    wait_unit: str | None = None  # days, hours, minutes; None = scheduler default

    def wait_delta(self, default_unit: str) -> timedelta:
        """Delay between this stage completing and the next node becoming due."""
        unit = self.wait_unit or default_unit
        return timedelta(**{unit: self.wait_time})


@dataclass(frozen=True)
class ConditionNode:
    """Split recipients into yes/no by one engagement metric."""

    kind: ClassVar[NodeKind] = NodeKind.CONDITION

    node_id: str
    metric: Metric
    operator: str
    threshold: int
    observation_window_hours: float | None = None

    def matches(self, value: int) -> bool:
        """Compare a recipient's metric value against the threshold."""
        return COMPARISONS[self.operator](value, self.threshold)

    def observation_window(self, default_hours: float) -> timedelta:
        hours = (
            self.observation_window_hours
            if self.observation_window_hours is not None
            else default_hours
        )
        return timedelta(hours=hours)


@dataclass(frozen=True)
class EndNode:
    """Terminal marker; recipients routed here are finished."""

    kind: ClassVar[NodeKind] = NodeKind.END

    node_id: str


FlowNode = SendNode | ConditionNode | EndNode


@dataclass(frozen=True)
class FlowEdge:
    """An edge between two nodes, labelled when leaving a condition."""

    source: str
    target: str
    branch: Branch | None = None


def is_end_node_id(node_id: str) -> bool:
    """End nodes are identified by id prefix (``end``, ``end-1``, ...)."""
    return node_id == END_NODE_PREFIX or node_id.startswith(f"{END_NODE_PREFIX}-")


def coerce_threshold(value: Any) -> int:
    """Coerce a condition threshold to an integer (booleans become 1/0)."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUTHY:
            return 1
        if text in _FALSY:
            return 0
        try:
            return int(float(text))
        except ValueError:
            pass
    raise ValueError(f"Threshold must be an integer or boolean, got {value!r}")


def _coerce_branch(value: Any) -> Branch | None:
    """Parse an edge branch label.

    YAML 1.1 parses bare ``yes``/``no`` as booleans, so those map back too.
    """
    if value is None or value == "":
        return None
    if value is True:
        return Branch.YES
    if value is False:
        return Branch.NO
    text = str(value).strip().lower()
    # Editors emit handles like "cond-1-yes"
    for branch in Branch:
        if text == branch.value or text.endswith(f"-{branch.value}"):
            return branch
    raise ValueError(f"Unknown branch label: {value!r}")


class FlowGraph:
    """Flow graph for one campaign definition.

    Wraps NetworkX DiGraph with domain-specific operations.

    Example:
        graph = FlowGraph.from_definition(
            {
                "stages": [{"id": "a", "channel": "email", "content": "intro"}],
                "conditions": [],
                "edges": [{"source": "a", "target": "end"}],
                "contents": {"intro": {"subject": "Hi", "body": "Hello"}},
            }
        )
        graph.entry_node  # "a"
    """

    def __init__(self, flow_id: str | None = None) -> None:
        self._graph: DiGraph[str] = nx.DiGraph()
        self._flow_id = flow_id
        self._contents: dict[str, dict[str, Any]] = {}
        self._entry: str | None = None

    @property
    def flow_id(self) -> str | None:
        return self._flow_id

    @property
    def node_count(self) -> int:
        """Number of nodes in the graph."""
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        """Number of edges in the graph."""
        return self._graph.number_of_edges()

    def has_node(self, node_id: str) -> bool:
        """Check if node exists."""
        return self._graph.has_node(node_id)

    def add_node(self, node: FlowNode) -> None:
        """Add a node to the flow graph.

        Raises:
            GraphIntegrityError: If a node with the same id already exists
        """
        if self._graph.has_node(node.node_id):
            raise GraphIntegrityError(
                self._flow_id, f"Duplicate node id: {node.node_id}"
            )
        self._graph.add_node(node.node_id, node=node)

    def add_edge(
        self,
        source: str,
        target: str,
        *,
        branch: Branch | None = None,
    ) -> None:
        """Add an edge between nodes.

        Targets named like end nodes are created implicitly.

        Args:
            source: Source node ID (must already exist)
            target: Target node ID
            branch: Branch label, required when leaving a condition node
        """
        if not self._graph.has_node(source):
            raise GraphIntegrityError(
                self._flow_id, f"Edge references unknown source node: {source}"
            )
        if not self._graph.has_node(target):
            if not is_end_node_id(target):
                raise GraphIntegrityError(
                    self._flow_id, f"Edge references unknown target node: {target}"
                )
            self.add_node(EndNode(node_id=target))
        if self._graph.has_edge(source, target):
            raise GraphIntegrityError(
                self._flow_id, f"Duplicate edge: {source} -> {target}"
            )
        self._graph.add_edge(source, target, branch=branch)

    def set_content(self, ref: str, content: Mapping[str, Any]) -> None:
        self._contents[ref] = dict(content)

    def set_entry(self, node_id: str) -> None:
        self._entry = node_id

    def is_acyclic(self) -> bool:
        """Check if the graph is acyclic."""
        return nx.is_directed_acyclic_graph(self._graph)

    def validate(self) -> None:
        """Validate the flow graph.

        Validates:
        1. Graph is acyclic
        2. Send nodes have at most one outgoing edge, without a branch label
        3. Condition nodes have labelled outgoing edges, at most one per label
        4. End nodes have no outgoing edges
        5. Every send node's content reference resolves
        6. Exactly one entry node exists and it is a send node

        Raises:
            GraphIntegrityError: If validation fails
        """
        if not self.is_acyclic():
            try:
                cycle = nx.find_cycle(self._graph)
                cycle_str = " -> ".join(f"{u}" for u, v in cycle)
                raise GraphIntegrityError(
                    self._flow_id, f"Flow contains a cycle: {cycle_str}"
                )
            except nx.NetworkXNoCycle:
                raise GraphIntegrityError(self._flow_id, "Flow contains a cycle") from None

        for node_id in self._graph.nodes:
            node = self.node(node_id)
            out_edges = list(self._graph.out_edges(node_id, data=True))

            if isinstance(node, SendNode):
                if len(out_edges) > 1:
                    raise GraphIntegrityError(
                        self._flow_id,
                        f"Send node '{node_id}' has {len(out_edges)} outgoing edges, "
                        "expected at most one",
                    )
                if out_edges and out_edges[0][2].get("branch") is not None:
                    raise GraphIntegrityError(
                        self._flow_id,
                        f"Send node '{node_id}' has a branch-labelled edge",
                    )
                if node.content_ref not in self._contents:
                    raise GraphIntegrityError(
                        self._flow_id,
                        f"Send node '{node_id}' references unknown content "
                        f"'{node.content_ref}'",
                    )

            elif isinstance(node, ConditionNode):
                if not out_edges:
                    raise GraphIntegrityError(
                        self._flow_id, f"Condition node '{node_id}' has no outgoing edges"
                    )
                labels = [data.get("branch") for _, _, data in out_edges]
                if any(label is None for label in labels):
                    raise GraphIntegrityError(
                        self._flow_id,
                        f"Condition node '{node_id}' has an edge without a yes/no label",
                    )
                if len(set(labels)) != len(labels):
                    raise GraphIntegrityError(
                        self._flow_id,
                        f"Condition node '{node_id}' has more than one edge per branch",
                    )

            elif out_edges:
                raise GraphIntegrityError(
                    self._flow_id, f"End node '{node_id}' has outgoing edges"
                )

        entry = self.entry_node
        if not isinstance(self.node(entry), SendNode):
            raise GraphIntegrityError(
                self._flow_id, f"Entry node '{entry}' must be a send node"
            )

    @property
    def entry_node(self) -> str:
        """The node an execution starts at.

        Raises:
            GraphIntegrityError: If no single entry can be determined
        """
        if self._entry is not None:
            if not self._graph.has_node(self._entry):
                raise GraphIntegrityError(
                    self._flow_id, f"Entry node not found: {self._entry}"
                )
            return self._entry
        roots = [
            node_id
            for node_id in self._graph.nodes
            if self._graph.in_degree(node_id) == 0 and not is_end_node_id(node_id)
        ]
        if len(roots) != 1:
            raise GraphIntegrityError(
                self._flow_id,
                f"Flow must have exactly one entry node, found {len(roots)}",
            )
        return roots[0]

    def node(self, node_id: str) -> FlowNode:
        """Get the node for an id.

        Raises:
            GraphIntegrityError: If node doesn't exist
        """
        if not self._graph.has_node(node_id):
            raise GraphIntegrityError(self._flow_id, f"Node not found: {node_id}")
        return cast(FlowNode, self._graph.nodes[node_id]["node"])

    def is_end(self, node_id: str) -> bool:
        return isinstance(self.node(node_id), EndNode)

    def successor(self, node_id: str) -> str | None:
        """Target of a send node's single outgoing edge, or None."""
        targets = list(self._graph.successors(node_id))
        if len(targets) > 1:
            raise GraphIntegrityError(
                self._flow_id, f"Node '{node_id}' has more than one outgoing edge"
            )
        return targets[0] if targets else None

    def branch_target(self, node_id: str, branch: Branch) -> str | None:
        """Target of a condition node's edge for a branch label, or None."""
        for _, target, data in self._graph.out_edges(node_id, data=True):
            if data.get("branch") == branch:
                return cast(str, target)
        return None

    def content(self, ref: str) -> dict[str, Any]:
        """Raw content block for a send node's content reference."""
        if ref not in self._contents:
            raise GraphIntegrityError(self._flow_id, f"Content not found: {ref}")
        return dict(self._contents[ref])

    def get_edges(self) -> list[FlowEdge]:
        """All edges in insertion order."""
        return [
            FlowEdge(source=u, target=v, branch=data.get("branch"))
            for u, v, data in self._graph.edges(data=True)
        ]

    def to_definition(self) -> dict[str, Any]:
        """Serialize back to a plain definition dict (the execution snapshot)."""
        stages: list[dict[str, Any]] = []
        conditions: list[dict[str, Any]] = []
        for node_id in self._graph.nodes:
            node = self.node(node_id)
            if isinstance(node, SendNode):
                stage: dict[str, Any] = {
                    "id": node.node_id,
                    "channel": node.channel.value,
                    "content": node.content_ref,
                    "wait_time": node.wait_time,
                }
                if node.wait_unit is not None:
                    stage["wait_unit"] = node.wait_unit
                stages.append(stage)
            elif isinstance(node, ConditionNode):
                condition: dict[str, Any] = {
                    "id": node.node_id,
                    "metric": node.metric.value,
                    "operator": node.operator,
                    "threshold": node.threshold,
                }
                if node.observation_window_hours is not None:
                    condition["observation_window_hours"] = node.observation_window_hours
                conditions.append(condition)

        definition: dict[str, Any] = {
            "stages": stages,
            "conditions": conditions,
            "edges": [
                {
                    "source": edge.source,
                    "target": edge.target,
                    **({"branch": edge.branch.value} if edge.branch else {}),
                }
                for edge in self.get_edges()
            ],
            "contents": {ref: dict(block) for ref, block in self._contents.items()},
        }
        if self._entry is not None:
            definition["entry"] = self._entry
        return definition

    @classmethod
    def from_definition(
        cls, definition: Mapping[str, Any], *, flow_id: str | None = None
    ) -> FlowGraph:
        """Build and validate a flow graph from a definition document.

        Args:
            definition: Mapping with ``stages``, ``conditions``, ``edges``,
                ``contents`` and optional ``entry``
            flow_id: Flow identifier used in error messages

        Returns:
            Validated FlowGraph

        Raises:
            GraphIntegrityError: If the definition is malformed or invalid
        """
        flow_id = flow_id or definition.get("id")
        graph = cls(flow_id=flow_id)

        try:
            for ref, block in (definition.get("contents") or {}).items():
                if not isinstance(block, Mapping) or "body" not in block:
                    raise ValueError(f"Content '{ref}' must be a mapping with a body")
                graph.set_content(str(ref), block)

            for raw in definition.get("stages") or []:
                graph.add_node(_parse_send_node(raw))

            for raw in definition.get("conditions") or []:
                graph.add_node(_parse_condition_node(raw))

            for raw in definition.get("edges") or []:
                graph.add_edge(
                    str(raw["source"]),
                    str(raw["target"]),
                    branch=_coerce_branch(raw.get("branch")),
                )
        except (KeyError, TypeError, ValueError) as e:
            raise GraphIntegrityError(flow_id, f"Invalid flow definition: {e}") from e

        if definition.get("entry"):
            graph.set_entry(str(definition["entry"]))

        graph.validate()
        return graph


def _parse_send_node(raw: Mapping[str, Any]) -> SendNode:
    wait_unit = raw.get("wait_unit")
    if wait_unit is not None and wait_unit not in _WAIT_UNITS:
        raise ValueError(f"Stage '{raw['id']}' has unknown wait_unit '{wait_unit}'")
    wait_time = float(raw.get("wait_time") or 0)
    if wait_time < 0:
        raise ValueError(f"Stage '{raw['id']}' has negative wait_time")
    return SendNode(
        node_id=str(raw["id"]),
        channel=Channel(raw["channel"]),
        content_ref=str(raw["content"]),
        wait_time=wait_time,
        wait_unit=wait_unit,
    )


def _parse_condition_node(raw: Mapping[str, Any]) -> ConditionNode:
    metric_name = str(raw["metric"]).strip().lower()
    if metric_name not in METRIC_ALIASES:
        raise ValueError(f"Condition '{raw['id']}' has unknown metric '{raw['metric']}'")
    op = str(raw["operator"]).strip()
    if op not in COMPARISONS:
        raise ValueError(f"Condition '{raw['id']}' has unknown operator '{op}'")
    window = raw.get("observation_window_hours")
    return ConditionNode(
        node_id=str(raw["id"]),
        metric=METRIC_ALIASES[metric_name],
        operator=op,
        threshold=coerce_threshold(raw.get("threshold", 0)),
        observation_window_hours=float(window) if window is not None else None,
    )


@dataclass
class FlowDocument:
    """A flow definition as loaded from disk, before persistence."""

    flow_id: str
    name: str
    definition: dict[str, Any] = field(default_factory=dict)


def load_flow_document(path: Any) -> FlowDocument:
    """Load a flow definition from a YAML or JSON file and validate it.

    Raises:
        FileNotFoundError: If the file doesn't exist
        GraphIntegrityError: If the definition is invalid
    """
    from pathlib import Path

    import yaml

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Flow file not found: {path}")
    # JSON is a YAML subset
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise GraphIntegrityError(None, f"Flow file {path} must contain a mapping")

    flow_id = str(raw.get("id") or path.stem)
    graph = FlowGraph.from_definition(raw, flow_id=flow_id)
    return FlowDocument(
        flow_id=flow_id,
        name=str(raw.get("name") or flow_id),
        definition=graph.to_definition(),
    )
