"""
Flow graph: the stored node/edge JSON parsed into a closed set of node
types, validated once at load time.

Stored shape (editor format)::

    nodes: [{"id": "n1", "type": "message", "data": {"content": "Hi", "buttons": [...]}}]
    edges: [{"id": "e1", "source": "n1", "target": "n2", "sourceHandle": "true"}]
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

from inboxflow.conversation.domain.exceptions import FlowDefinitionError
from inboxflow.conversation.domain.value_objects import ConditionOperator, NodeType

MAX_BUTTONS = 3
BUTTON_TITLE_MAX = 20
DEFAULT_DELAY_MS = 1_000
DEFAULT_INTERACTIVE_BODY = "Please select an option:"


@dataclass(frozen=True)
class FlowButton:
    id: str
    label: str


@dataclass(frozen=True)
class StartNode:
    id: str


@dataclass(frozen=True)
class MessageNode:
    id: str
    content: str = ""
    buttons: tuple[FlowButton, ...] = ()
    media_url: Optional[str] = None


@dataclass(frozen=True)
class ConditionNode:
    id: str
    field: str
    operator: ConditionOperator
    value: Any


@dataclass(frozen=True)
class DelayNode:
    id: str
    millis: int = DEFAULT_DELAY_MS


@dataclass(frozen=True)
class ActionNode:
    id: str
    kind: str = ""
    params: Mapping[str, Any] = field(default_factory=dict)


FlowNode = Union[StartNode, MessageNode, ConditionNode, DelayNode, ActionNode]


@dataclass(frozen=True)
class FlowEdge:
    source: str
    target: str
    source_handle: Optional[str] = None


def _parse_buttons(node_id: str, raw: Any) -> tuple[FlowButton, ...]:
    if raw in (None, ""):
        return ()
    if not isinstance(raw, list):
        raise FlowDefinitionError(f"Node '{node_id}': buttons must be a list")
    if len(raw) > MAX_BUTTONS:
        raise FlowDefinitionError(f"Node '{node_id}': at most {MAX_BUTTONS} buttons are allowed, got {len(raw)}")
    buttons = []
    for item in raw:
        if not isinstance(item, Mapping) or not item.get("id"):
            raise FlowDefinitionError(f"Node '{node_id}': every button needs an id")
        buttons.append(FlowButton(id=str(item["id"]), label=str(item.get("label") or item.get("title") or "")))
    if len({b.id for b in buttons}) != len(buttons):
        raise FlowDefinitionError(f"Node '{node_id}': duplicate button ids")
    return tuple(buttons)


def parse_node(raw: Mapping[str, Any]) -> FlowNode:
    node_id = raw.get("id")
    if not node_id:
        raise FlowDefinitionError("Node without id")
    node_id = str(node_id)
    data = raw.get("data") or {}
    if not isinstance(data, Mapping):
        raise FlowDefinitionError(f"Node '{node_id}': data must be an object")

    try:
        node_type = NodeType(str(raw.get("type", "")).lower())
    except ValueError:
        raise FlowDefinitionError(f"Node '{node_id}': unknown node type {raw.get('type')!r}")

    if node_type == NodeType.START:
        return StartNode(id=node_id)

    if node_type == NodeType.MESSAGE:
        return MessageNode(
            id=node_id,
            content=str(data.get("content") or ""),
            buttons=_parse_buttons(node_id, data.get("buttons")),
            media_url=data.get("mediaUrl"),
        )

    if node_type == NodeType.CONDITION:
        if not data.get("field"):
            raise FlowDefinitionError(f"Node '{node_id}': condition needs a field")
        try:
            operator = ConditionOperator(str(data.get("operator", "")).lower())
        except ValueError:
            raise FlowDefinitionError(f"Node '{node_id}': unsupported operator {data.get('operator')!r}")
        if data.get("value") is None:
            raise FlowDefinitionError(f"Node '{node_id}': condition needs a value")
        return ConditionNode(id=node_id, field=str(data["field"]), operator=operator, value=data["value"])

    if node_type == NodeType.DELAY:
        raw_ms = data.get("delayMs", DEFAULT_DELAY_MS)
        try:
            millis = int(raw_ms) if raw_ms not in (None, "") else DEFAULT_DELAY_MS
        except (TypeError, ValueError):
            raise FlowDefinitionError(f"Node '{node_id}': delayMs must be an integer")
        return DelayNode(id=node_id, millis=millis)

    return ActionNode(
        id=node_id,
        kind=str(data.get("actionType") or data.get("kind") or ""),
        params=dict(data.get("params") or {}),
    )


@dataclass(frozen=True)
class FlowGraph:
    """Validated, immutable view over one flow definition."""

    nodes: Mapping[str, FlowNode]
    edges: tuple[FlowEdge, ...]
    start_id: str

    @classmethod
    def parse(cls, raw_nodes: Iterable[Mapping[str, Any]] | None, raw_edges: Iterable[Mapping[str, Any]] | None) -> "FlowGraph":
        nodes: dict[str, FlowNode] = {}
        for raw in raw_nodes or []:
            if not isinstance(raw, Mapping):
                raise FlowDefinitionError("Node entries must be objects")
            node = parse_node(raw)
            if node.id in nodes:
                raise FlowDefinitionError(f"Duplicate node id '{node.id}'")
            nodes[node.id] = node

        starts = [n.id for n in nodes.values() if isinstance(n, StartNode)]
        if not starts:
            raise FlowDefinitionError("Flow has no start node")
        if len(starts) > 1:
            raise FlowDefinitionError(f"Flow has {len(starts)} start nodes")

        edges: list[FlowEdge] = []
        for raw in raw_edges or []:
            if not isinstance(raw, Mapping):
                raise FlowDefinitionError("Edge entries must be objects")
            source, target = str(raw.get("source") or ""), str(raw.get("target") or "")
            if source not in nodes or target not in nodes:
                raise FlowDefinitionError(f"Edge {source!r} -> {target!r} references a missing node")
            handle = raw.get("sourceHandle")
            if isinstance(nodes[source], ConditionNode) and handle not in ("true", "false"):
                raise FlowDefinitionError(f"Edge from condition '{source}' needs sourceHandle 'true' or 'false'")
            edges.append(FlowEdge(source=source, target=target, source_handle=handle))

        return cls(nodes=nodes, edges=tuple(edges), start_id=starts[0])

    def node(self, node_id: str) -> FlowNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise FlowDefinitionError(f"Node '{node_id}' missing")

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def branch(self, node_id: str, result: bool) -> list[FlowEdge]:
        handle = "true" if result else "false"
        return [e for e in self.outgoing(node_id) if e.source_handle == handle]


# ──────────────────────────────────────────────────────────────────────────────
# Button payload codec
# ──────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ButtonRef:
    flow_id: str
    node_id: str
    button_id: str


_BUTTON_PREFIX = "flow-"


def encode_button_id(flow_id: Any, node_id: str, button_id: str) -> str:
    return f"flow-{flow_id}-node-{node_id}-btn-{button_id}"


def decode_button_id(payload: Optional[str]) -> Optional[ButtonRef]:
    """
    Inverse of ``encode_button_id``; None for ids this system did not issue.

    Flow ids are UUIDs and never contain ``-node-``, node ids never contain
    ``-btn-``; the last ``-btn-`` separates the button id.
    """
    if not payload or not payload.startswith(_BUTTON_PREFIX):
        return None
    rest = payload[len(_BUTTON_PREFIX):]
    flow_id, sep, rest = rest.partition("-node-")
    if not sep:
        return None
    node_id, sep, button_id = rest.rpartition("-btn-")
    if not sep or not flow_id or not node_id or not button_id:
        return None
    return ButtonRef(flow_id=flow_id, node_id=node_id, button_id=button_id)
