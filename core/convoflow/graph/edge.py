"""
Edge Protocol - How conversation steps connect.

Edges are directed and typed:
- standard: the default transition, used when nothing more specific matches
- goal_achieved / goal_not_achieved: milestone verdict branches
- conditional: tied to one named outcome/condition label declared on the
  source node (a milestone outcome, a condition branch such as ``true``,
  ``false``, a custom label or ``default``, or ``booked`` on an appointment)

The editor sends edges as ``source``/``target`` (canvas handles) or
``source_node_id``/``target_node_id`` (stored rows). Both are accepted.
A ``sourceHandle`` naming a connection type sets the type; any other handle
becomes the label of a conditional edge.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, PrivateAttr, model_validator

from convoflow.errors import GraphStateError
from convoflow.graph.node import NodeSpec, NodeType


class ConnectionType(StrEnum):
    """How an edge is selected when leaving its source node."""

    STANDARD = "standard"
    GOAL_ACHIEVED = "goal_achieved"
    GOAL_NOT_ACHIEVED = "goal_not_achieved"
    CONDITIONAL = "conditional"


DEFAULT_BRANCH = "default"


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        EdgeSpec(id="e1", source_node_id="start", target_node_id="greet")

        EdgeSpec(
            id="e2",
            source_node_id="qualify",
            target_node_id="book",
            connection_type=ConnectionType.CONDITIONAL,
            condition="yes",
        )
    """

    id: str
    source_node_id: str = Field(validation_alias=AliasChoices("source_node_id", "source"))
    target_node_id: str = Field(validation_alias=AliasChoices("target_node_id", "target"))
    connection_type: ConnectionType = ConnectionType.STANDARD
    condition: str | None = None
    label: str = ""

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _normalise_editor_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        source = data.get("source_node_id") or data.get("source")
        target = data.get("target_node_id") or data.get("target")
        if not data.get("id"):
            data["id"] = f"{source}->{target}"

        handle = data.pop("sourceHandle", None) or data.pop("source_handle", None)
        if handle and not data.get("connection_type"):
            if handle in ConnectionType._value2member_map_:
                data["connection_type"] = handle
            else:
                data["connection_type"] = ConnectionType.CONDITIONAL
                data.setdefault("condition", handle)

        # Stored rows sometimes keep the condition as {"label": ...} / {"value": ...}
        condition = data.get("condition")
        if isinstance(condition, dict):
            data["condition"] = (
                condition.get("label") or condition.get("name") or condition.get("value")
            )
        if data.get("label") is None:
            data["label"] = ""
        return data

    @property
    def source(self) -> str:
        return self.source_node_id

    @property
    def target(self) -> str:
        return self.target_node_id


@dataclass(frozen=True)
class GraphValidationError:
    """One structural problem found by WorkflowGraph.validate()."""

    code: str
    message: str
    node_id: str | None = None
    edge_id: str | None = None

    # Problems that make traversal unsafe; everything else is advisory
    FATAL_CODES = frozenset({"missing_start", "multiple_start", "duplicate_node", "dangling_edge"})

    @property
    def fatal(self) -> bool:
        return self.code in self.FATAL_CODES


class WorkflowGraph(BaseModel):
    """
    A complete conversation workflow: nodes, edges and lookup indices.

    Queries (get_node, outgoing_edges, validate) are pure. The editor-facing
    mutators (add/update/remove) keep the indices in sync and never leave
    dangling edges behind when a node is removed.
    """

    id: str = Field(default="", validation_alias=AliasChoices("id", "workflow_id"))
    name: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(
        default_factory=list, validation_alias=AliasChoices("edges", "connections")
    )
    version: int = 1

    model_config = {"extra": "allow", "populate_by_name": True}

    _node_index: dict[str, NodeSpec] = PrivateAttr(default_factory=dict)
    _outgoing_index: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._reindex()

    def _reindex(self) -> None:
        self._node_index = {}
        for node in self.nodes:
            # First definition wins; duplicates are reported by validate()
            self._node_index.setdefault(node.id, node)
        self._outgoing_index = {}
        for edge in self.edges:
            self._outgoing_index.setdefault(edge.source_node_id, []).append(edge)

    # === QUERIES ===

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        return self._node_index.get(node_id)

    def require_node(self, node_id: str | None) -> NodeSpec:
        """Get a node by ID or raise GraphStateError."""
        node = self.get_node(node_id) if node_id else None
        if node is None:
            raise GraphStateError(f"Node not found: {node_id}", node_id=node_id)
        return node

    def get_start_node(self) -> NodeSpec | None:
        """Return the unique start node, or None if there is not exactly one."""
        starts = [n for n in self.nodes if n.type == NodeType.START]
        return starts[0] if len(starts) == 1 else None

    def outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Edges leaving a node, in declaration order."""
        return list(self._outgoing_index.get(node_id, []))

    def incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.target_node_id == node_id]

    def get_standard_edge(self, node_id: str) -> EdgeSpec | None:
        for edge in self.outgoing_edges(node_id):
            if edge.connection_type == ConnectionType.STANDARD:
                return edge
        return None

    def get_typed_edge(self, node_id: str, connection_type: ConnectionType) -> EdgeSpec | None:
        for edge in self.outgoing_edges(node_id):
            if edge.connection_type == connection_type:
                return edge
        return None

    def get_conditional_edge(self, node_id: str, label: str) -> EdgeSpec | None:
        """Conditional edge whose label matches exactly (case-sensitive)."""
        for edge in self.outgoing_edges(node_id):
            if edge.connection_type == ConnectionType.CONDITIONAL and edge.condition == label:
                return edge
        return None

    # === EDITOR MUTATIONS ===

    def add_node(self, node: NodeSpec) -> None:
        if node.id in self._node_index:
            raise ValueError(f"Node '{node.id}' already exists")
        self.nodes.append(node)
        self._reindex()

    def update_node(self, node_id: str, updates: dict[str, Any]) -> NodeSpec:
        """Partial update: unspecified fields are retained."""
        for i, node in enumerate(self.nodes):
            if node.id == node_id:
                updated = node.merged(updates)
                self.nodes[i] = updated
                self._reindex()
                return updated
        raise GraphStateError(f"Node not found: {node_id}", node_id=node_id)

    def remove_node(self, node_id: str) -> list[EdgeSpec]:
        """Remove a node and every edge touching it. Returns the removed edges."""
        if node_id not in self._node_index:
            raise GraphStateError(f"Node not found: {node_id}", node_id=node_id)
        self.nodes = [n for n in self.nodes if n.id != node_id]
        removed = [
            e for e in self.edges if node_id in (e.source_node_id, e.target_node_id)
        ]
        self.edges = [e for e in self.edges if e not in removed]
        self._reindex()
        return removed

    def add_edge(self, edge: EdgeSpec) -> None:
        for endpoint in (edge.source_node_id, edge.target_node_id):
            if endpoint not in self._node_index:
                raise GraphStateError(
                    f"Edge '{edge.id}' references missing node '{endpoint}'", node_id=endpoint
                )
        self.edges.append(edge)
        self._reindex()

    def remove_edge(self, edge_id: str) -> bool:
        before = len(self.edges)
        self.edges = [e for e in self.edges if e.id != edge_id]
        self._reindex()
        return len(self.edges) != before

    # === VALIDATION ===

    def validate(self) -> list[GraphValidationError]:  # type: ignore[override]
        """
        Validate the graph structure.

        Checks:
        - exactly one start node, unique node ids
        - every edge references existing nodes
        - at most one standard edge per node
        - milestone outcomes and condition branches have a resolvable edge
          or a fallback (goal edge / default / standard)
        """
        errors: list[GraphValidationError] = []

        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(
                    GraphValidationError("duplicate_node", f"Duplicate node id '{node.id}'", node.id)
                )
            seen.add(node.id)

        starts = [n.id for n in self.nodes if n.type == NodeType.START]
        if not starts:
            errors.append(GraphValidationError("missing_start", "Graph has no start node"))
        elif len(starts) > 1:
            errors.append(
                GraphValidationError("multiple_start", f"Graph has multiple start nodes: {starts}")
            )

        for edge in self.edges:
            if edge.source_node_id not in seen:
                errors.append(
                    GraphValidationError(
                        "dangling_edge",
                        f"Edge '{edge.id}' references missing source '{edge.source_node_id}'",
                        edge_id=edge.id,
                    )
                )
            if edge.target_node_id not in seen:
                errors.append(
                    GraphValidationError(
                        "dangling_edge",
                        f"Edge '{edge.id}' references missing target '{edge.target_node_id}'",
                        edge_id=edge.id,
                    )
                )
            if edge.connection_type == ConnectionType.CONDITIONAL and not edge.condition:
                errors.append(
                    GraphValidationError(
                        "missing_condition",
                        f"Conditional edge '{edge.id}' has no condition label",
                        edge_id=edge.id,
                    )
                )

        for node in self.nodes:
            outgoing = self.outgoing_edges(node.id)
            errors.extend(self._check_duplicate_edges(node, outgoing))
            if node.type == NodeType.MILESTONE:
                errors.extend(self._check_milestone(node, outgoing))
            elif node.type == NodeType.CONDITION:
                errors.extend(self._check_condition(node, outgoing))

        return errors

    def _check_duplicate_edges(
        self, node: NodeSpec, outgoing: list[EdgeSpec]
    ) -> list[GraphValidationError]:
        errors = []
        counts: dict[tuple[str, str | None], int] = {}
        for edge in outgoing:
            key = (
                edge.connection_type.value,
                edge.condition if edge.connection_type == ConnectionType.CONDITIONAL else None,
            )
            counts[key] = counts.get(key, 0) + 1
        for (ctype, label), count in counts.items():
            if count > 1:
                what = f"'{label}' conditional" if label else ctype
                errors.append(
                    GraphValidationError(
                        "duplicate_edge",
                        f"Node '{node.id}' has {count} {what} edges; only the first is used",
                        node_id=node.id,
                    )
                )
        return errors

    def _check_milestone(
        self, node: NodeSpec, outgoing: list[EdgeSpec]
    ) -> list[GraphValidationError]:
        errors = []
        labels = {e.condition for e in outgoing if e.connection_type == ConnectionType.CONDITIONAL}
        has_fallback = any(
            e.connection_type
            in (ConnectionType.GOAL_ACHIEVED, ConnectionType.GOAL_NOT_ACHIEVED, ConnectionType.STANDARD)
            for e in outgoing
        )
        for outcome in node.possible_outcomes:
            if outcome not in labels and not has_fallback:
                errors.append(
                    GraphValidationError(
                        "unresolved_outcome",
                        f"Milestone '{node.id}' outcome '{outcome}' has no edge; "
                        "the session will stay on the node",
                        node_id=node.id,
                    )
                )
        return errors

    def _check_condition(
        self, node: NodeSpec, outgoing: list[EdgeSpec]
    ) -> list[GraphValidationError]:
        errors = []
        labels = {e.condition for e in outgoing if e.connection_type == ConnectionType.CONDITIONAL}
        has_default = DEFAULT_BRANCH in labels or any(
            e.connection_type == ConnectionType.STANDARD for e in outgoing
        )
        branches = ["true", "false"] + [
            c.get("label") for c in node.custom_conditions if c.get("label")
        ]
        for branch in branches:
            if branch not in labels and not has_default:
                errors.append(
                    GraphValidationError(
                        "unresolved_branch",
                        f"Condition '{node.id}' branch '{branch}' has no edge and no default",
                        node_id=node.id,
                    )
                )
        return errors
