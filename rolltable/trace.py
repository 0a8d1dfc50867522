"""Roll trace - a tree explaining how a pattern was evaluated

Each node is one evaluated step (directive, table roll, entry selection,
dice roll, ...) with its input, resolved output and kind-specific metadata.
The root's direct children are the pattern's top-level directives, in
document order.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional


@dataclass
class TraceNode:
    type: str
    label: str
    raw: str = ""
    parsed: Dict[str, Any] = field(default_factory=dict)
    value: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    children: List["TraceNode"] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0
    _started: float = field(default=0.0, repr=False)

    def walk(self) -> Iterator["TraceNode"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def depth(self) -> int:
        if not self.children:
            return 1
        return 1 + max(child.depth() for child in self.children)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "type": self.type,
            "label": self.label,
            "input": {"raw": self.raw},
            "output": {"value": self.value},
            "durationMs": round(self.duration_ms, 3),
        }
        if self.parsed:
            data["input"]["parsed"] = self.parsed
        if self.metadata:
            data["metadata"] = self.metadata
        if self.error:
            data["output"]["error"] = self.error
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        return data


@dataclass
class TraceStats:
    node_count: int = 0
    max_depth: int = 0
    table_rolls: int = 0
    dice_rolls: int = 0
    variable_accesses: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "nodeCount": self.node_count,
            "maxDepth": self.max_depth,
            "tableRolls": self.table_rolls,
            "diceRolls": self.dice_rolls,
            "variableAccesses": self.variable_accesses,
            "durationMs": round(self.duration_ms, 3),
        }


@dataclass
class RollTrace:
    root: TraceNode
    stats: TraceStats
    # nodes of document conditionals applied after the pattern
    conditionals: List[TraceNode] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {"root": self.root.to_dict(), "stats": self.stats.to_dict()}
        if self.conditionals:
            data["conditionals"] = [node.to_dict() for node in self.conditionals]
        return data


class TraceBuilder:
    """Builds a trace tree with a stack of open nodes

    When disabled, nodes are still handed out so callers never branch on
    tracing, but they are not attached to the tree.
    """

    def __init__(self, enabled: bool = True, label: str = "pattern"):
        self.enabled = enabled
        self.root = TraceNode("root", label, _started=time.perf_counter())
        self._stack: List[TraceNode] = [self.root]
        self.detached: List[TraceNode] = []

    @property
    def current(self) -> TraceNode:
        return self._stack[-1]

    def begin(self, node_type: str, label: str, raw: str = "",
              parsed: Optional[Dict[str, Any]] = None) -> TraceNode:
        node = TraceNode(node_type, label, raw, parsed or {}, _started=time.perf_counter())
        if self.enabled:
            self.current.children.append(node)
            self._stack.append(node)
        return node

    def end(self, node: TraceNode, value: Any = None,
            metadata: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        node.value = value
        if metadata:
            node.metadata.update(metadata)
        if error:
            node.error = error
        node.duration_ms = (time.perf_counter() - node._started) * 1000.0
        if self.enabled and len(self._stack) > 1 and self._stack[-1] is node:
            self._stack.pop()

    @contextmanager
    def node(self, node_type: str, label: str, raw: str = "",
             parsed: Optional[Dict[str, Any]] = None):
        """Open a node for the duration of the block

        The block sets node.value / node.metadata; on an exception the node is
        closed with the error message and the exception propagates.
        """
        node = self.begin(node_type, label, raw, parsed)
        try:
            yield node
        except Exception as e:
            self.end(node, node.value, error=str(e))
            raise
        self.end(node, node.value)

    @contextmanager
    def detached_node(self, node_type: str, label: str, raw: str = "",
                      parsed: Optional[Dict[str, Any]] = None):
        """Like node(), but kept outside the root so root children stay 1:1 with directives"""
        node = TraceNode(node_type, label, raw, parsed or {}, _started=time.perf_counter())
        if self.enabled:
            self.detached.append(node)
            self._stack.append(node)
        try:
            yield node
        except Exception as e:
            self.end(node, node.value, error=str(e))
            raise
        self.end(node, node.value)

    def leaf(self, node_type: str, label: str, raw: str = "", value: Any = None,
             metadata: Optional[Dict[str, Any]] = None) -> TraceNode:
        node = TraceNode(node_type, label, raw, value=value, metadata=dict(metadata or {}))
        if self.enabled:
            self.current.children.append(node)
        return node

    def finish(self, value: Any = None, error: Optional[str] = None) -> Optional[RollTrace]:
        """Close any nodes left open (on error) and compute stats"""
        while len(self._stack) > 1:
            self._stack.pop()
        self.root.value = value
        self.root.error = error
        self.root.duration_ms = (time.perf_counter() - self.root._started) * 1000.0
        if not self.enabled:
            return None

        stats = TraceStats(duration_ms=self.root.duration_ms, max_depth=self.root.depth())
        nodes = list(self.root.walk())
        for detached in self.detached:
            nodes.extend(detached.walk())
        for node in nodes:
            stats.node_count += 1
            if node.type == "table_roll":
                stats.table_rolls += 1
            elif node.type == "dice_roll":
                stats.dice_rolls += 1
            elif node.type == "variable_access":
                stats.variable_accesses += 1
        return RollTrace(self.root, stats, list(self.detached))
