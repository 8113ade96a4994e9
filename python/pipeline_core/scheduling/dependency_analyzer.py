"""Dependency graph analyzer for work item scheduling.

Pure Python, no I/O outside ``load_graph``.

Provides:
- Graph loading and structural validation (every problem collected)
- Cycle detection (DFS with recursion stack) reported as data
- Blocking propagation to dependents of cycle members
- Priority scoring (lower score = more urgent)
- Execution order via Kahn's algorithm with score tie-breaking
- Parallel groups (wavefronts) and the effort-weighted critical path
"""

from __future__ import annotations

import heapq
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from pipeline_core.enhanced_logging import track_performance
from pipeline_core.exceptions_unified import (
    GraphNotFoundError,
    GraphParseError,
    GraphValidationError,
    WorkItemNotFoundError,
)

logger = logging.getLogger(__name__)


# ── Enums / value objects ────────────────────────────────────────────


class Priority(str, Enum):
    """Priority classes, most urgent first."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        return int(self.value[1])


class WorkItemStatus(str, Enum):
    """Status of a work item as reported by its producer."""

    PENDING = "pending"
    READY = "ready"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(frozen=True)
class WorkItem:
    """Atomic unit of schedulable work."""

    id: str
    title: str
    priority: Priority = Priority.P2
    effort: float = 1.0
    status: WorkItemStatus = WorkItemStatus.PENDING
    url: Optional[str] = None
    component_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "priority": self.priority.value,
            "effort": self.effort,
            "status": self.status.value,
        }
        if self.url is not None:
            data["url"] = self.url
        if self.component_id is not None:
            data["componentId"] = self.component_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        return cls(
            id=data["id"],
            title=data["title"],
            priority=Priority(data["priority"]),
            effort=data["effort"],
            status=WorkItemStatus(data["status"]),
            url=data.get("url"),
            component_id=data.get("componentId", data.get("component_id")),
        )


@dataclass(frozen=True)
class DependencyEdge:
    """``source`` depends on ``target``."""

    source: str
    target: str

    def to_dict(self) -> Dict[str, str]:
        return {"from": self.source, "to": self.target}


@dataclass
class DependencyGraph:
    """Validated node and edge lists, as loaded from a graph file."""

    nodes: List[WorkItem] = field(default_factory=list)
    edges: List[DependencyEdge] = field(default_factory=list)


@dataclass(frozen=True)
class AnalyzedItem:
    """A work item enriched with its position in the graph.

    ``depth`` is ``None`` for items blocked by a cycle.
    """

    item: WorkItem
    dependencies: Tuple[str, ...]
    dependents: Tuple[str, ...]
    transitive_dependencies: Tuple[str, ...]
    depth: Optional[int]
    priority_score: float
    on_critical_path: bool
    dependencies_resolved: bool
    blocked_by_cycle: bool = False

    @property
    def id(self) -> str:
        return self.item.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item": self.item.to_dict(),
            "dependencies": list(self.dependencies),
            "dependents": list(self.dependents),
            "transitive_dependencies": list(self.transitive_dependencies),
            "depth": self.depth,
            "priority_score": self.priority_score,
            "on_critical_path": self.on_critical_path,
            "dependencies_resolved": self.dependencies_resolved,
            "blocked_by_cycle": self.blocked_by_cycle,
        }


@dataclass(frozen=True)
class ParallelGroup:
    """Items eligible to run at the same logical time step."""

    index: int
    item_ids: Tuple[str, ...]
    total_effort: float


@dataclass(frozen=True)
class CycleInfo:
    """One detected cycle; ``nodes`` starts and ends with the same id."""

    nodes: Tuple[str, ...]
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def members(self) -> Set[str]:
        return set(self.nodes)


@dataclass(frozen=True)
class CriticalPath:
    """Longest effort-weighted dependency chain, root first."""

    path: Tuple[str, ...] = ()
    total_effort: float = 0.0
    bottleneck: Optional[str] = None


@dataclass(frozen=True)
class GraphStatistics:
    total_items: int = 0
    total_dependencies: int = 0
    max_depth: int = 0
    root_items: int = 0
    leaf_items: int = 0
    critical_path_length: int = 0
    blocked_by_cycle: int = 0
    by_priority: Dict[str, int] = field(default_factory=dict)
    by_status: Dict[str, int] = field(default_factory=dict)


@dataclass
class AnalysisResult:
    """Everything ``DependencyAnalyzer.analyze`` computes for one graph."""

    items: Dict[str, AnalyzedItem] = field(default_factory=dict)
    execution_order: List[str] = field(default_factory=list)
    parallel_groups: List[ParallelGroup] = field(default_factory=list)
    cycles: List[CycleInfo] = field(default_factory=list)
    blocked_by_cycle: List[str] = field(default_factory=list)
    critical_path: CriticalPath = field(default_factory=CriticalPath)
    queue: List[str] = field(default_factory=list)
    ready_for_execution: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    statistics: GraphStatistics = field(default_factory=GraphStatistics)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": {k: v.to_dict() for k, v in self.items.items()},
            "execution_order": list(self.execution_order),
            "parallel_groups": [
                {"index": g.index, "item_ids": list(g.item_ids), "total_effort": g.total_effort}
                for g in self.parallel_groups
            ],
            "cycles": [list(c.nodes) for c in self.cycles],
            "blocked_by_cycle": list(self.blocked_by_cycle),
            "critical_path": {
                "path": list(self.critical_path.path),
                "total_effort": self.critical_path.total_effort,
                "bottleneck": self.critical_path.bottleneck,
            },
            "queue": list(self.queue),
            "ready_for_execution": list(self.ready_for_execution),
            "blocked": list(self.blocked),
            "statistics": {
                "total_items": self.statistics.total_items,
                "total_dependencies": self.statistics.total_dependencies,
                "max_depth": self.statistics.max_depth,
                "root_items": self.statistics.root_items,
                "leaf_items": self.statistics.leaf_items,
                "critical_path_length": self.statistics.critical_path_length,
                "blocked_by_cycle": self.statistics.blocked_by_cycle,
                "by_priority": dict(self.statistics.by_priority),
                "by_status": dict(self.statistics.by_status),
            },
        }


@dataclass(frozen=True)
class AnalyzerConfig:
    """Priority score weights.

    ``score = rank(priority) * priority_weight
              - dependent_weight * len(dependents)
              - critical_path_weight * on_critical_path``
    """

    priority_weight: float = 10.0
    dependent_weight: float = 5.0
    critical_path_weight: float = 20.0

    @classmethod
    def from_settings(cls, settings: Any) -> "AnalyzerConfig":
        return cls(
            priority_weight=settings.priority_weight,
            dependent_weight=settings.dependent_weight,
            critical_path_weight=settings.critical_path_weight,
        )


_VALID_PRIORITIES = [p.value for p in Priority]
_VALID_STATUSES = [s.value for s in WorkItemStatus]


# ── Analyzer ─────────────────────────────────────────────────────────


class DependencyAnalyzer:
    """Analyzes a dependency graph and keeps the last result for queries.

    Not thread-safe; one analyzer per graph owner.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None) -> None:
        self.config = config or AnalyzerConfig()
        self._reset()

    def _reset(self) -> None:
        # Insertion-ordered node table
        self._items: Dict[str, WorkItem] = {}
        self._index: Dict[str, int] = {}
        # Forward edges: item_id → ids it depends ON (edge order kept)
        self._dependencies: Dict[str, List[str]] = {}
        # Reverse edges: item_id → ids that depend on IT
        self._dependents: Dict[str, List[str]] = {}
        self._blocked: Set[str] = set()
        self._scores: Dict[str, float] = {}
        self._result: Optional[AnalysisResult] = None

    # ── Loading ──────────────────────────────────────────────────────

    def load_graph(self, path: Union[str, Path]) -> DependencyGraph:
        """Read and validate a ``{"nodes": [...], "edges": [...]}`` JSON file.

        Raises:
            GraphNotFoundError: the file does not exist.
            GraphParseError: the file is not valid JSON.
            GraphValidationError: the structure is invalid.
        """
        path = Path(path)
        if not path.is_file():
            raise GraphNotFoundError(str(path))
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise GraphParseError(str(path), str(exc)) from exc
        return self.parse_graph(data)

    def parse_graph(self, data: Any) -> DependencyGraph:
        """Validate an already-decoded graph document.

        All problems are collected and raised together.
        """
        if not isinstance(data, dict):
            raise GraphValidationError(["Graph must be an object"])

        errors: List[str] = []
        raw_nodes = data.get("nodes")
        raw_edges = data.get("edges")
        if not isinstance(raw_nodes, list):
            errors.append('Missing or invalid "nodes" array')
        if not isinstance(raw_edges, list):
            errors.append('Missing or invalid "edges" array')
        if errors:
            raise GraphValidationError(errors)

        graph = DependencyGraph()
        node_ids: Set[str] = set()
        for i, raw in enumerate(raw_nodes):
            if not isinstance(raw, dict):
                errors.append(f"Node at index {i} must be an object")
                continue
            node_errors = self._validate_node(raw, i)
            if node_errors:
                errors.extend(node_errors)
                continue
            if raw["id"] in node_ids:
                errors.append(f"Duplicate node ID: {raw['id']}")
                continue
            node_ids.add(raw["id"])
            graph.nodes.append(WorkItem.from_dict(raw))

        for i, raw in enumerate(raw_edges):
            if not isinstance(raw, dict):
                errors.append(f"Edge at index {i} must be an object")
                continue
            edge_errors = self._validate_edge(raw, i, node_ids)
            if edge_errors:
                errors.extend(edge_errors)
                continue
            graph.edges.append(DependencyEdge(raw["from"], raw["to"]))

        if errors:
            raise GraphValidationError(errors)
        return graph

    @staticmethod
    def _validate_node(node: Dict[str, Any], index: int) -> List[str]:
        errors = []
        prefix = f"Node at index {index}"
        if not isinstance(node.get("id"), str) or not node["id"]:
            errors.append(f'{prefix}: missing or invalid "id"')
        if not isinstance(node.get("title"), str) or not node["title"]:
            errors.append(f'{prefix}: missing or invalid "title"')
        if node.get("priority") not in _VALID_PRIORITIES:
            errors.append(f'{prefix}: invalid "priority" (must be P0, P1, P2, or P3)')
        effort = node.get("effort")
        if isinstance(effort, bool) or not isinstance(effort, (int, float)) or effort < 0:
            errors.append(f'{prefix}: missing or invalid "effort" (must be non-negative number)')
        if node.get("status") not in _VALID_STATUSES:
            errors.append(f'{prefix}: invalid "status"')
        return errors

    @staticmethod
    def _validate_edge(edge: Dict[str, Any], index: int, node_ids: Set[str]) -> List[str]:
        errors = []
        prefix = f"Edge at index {index}"
        for key in ("from", "to"):
            value = edge.get(key)
            if not isinstance(value, str) or not value:
                errors.append(f'{prefix}: missing or invalid "{key}"')
            elif value not in node_ids:
                errors.append(f'{prefix}: "{key}" references unknown node "{value}"')
        return errors

    # ── Analysis ─────────────────────────────────────────────────────

    @track_performance
    def analyze(
        self,
        items: Sequence[WorkItem],
        edges: Iterable[DependencyEdge] = (),
    ) -> AnalysisResult:
        """Analyze *items* connected by *edges*.

        Cycles never raise; they are reported in ``cycles`` and their
        members (plus everything depending on them) in ``blocked_by_cycle``.

        Raises:
            GraphValidationError: duplicate item ids or an edge that
                references an unknown item.
        """
        self._reset()
        self._build(items, edges)

        if not self._items:
            self._result = AnalysisResult()
            return self._result

        cycles = self._detect_cycles()
        self._propagate_blocking(cycles)
        waves = self._waves()
        depths = {item_id: i for i, wave in enumerate(waves) for item_id in wave}
        critical = self._critical_path([item_id for wave in waves for item_id in wave])
        on_path = set(critical.path)
        self._scores = {item_id: self._score(item_id, item_id in on_path) for item_id in self._items}

        result = AnalysisResult(
            cycles=cycles,
            blocked_by_cycle=[i for i in self._items if i in self._blocked],
            critical_path=critical,
        )
        result.execution_order = self._execution_order()
        result.parallel_groups = [
            ParallelGroup(
                index=i,
                item_ids=tuple(sorted(wave, key=self._sort_key)),
                total_effort=sum(self._items[item_id].effort for item_id in wave),
            )
            for i, wave in enumerate(waves)
        ]
        for item_id, item in self._items.items():
            result.items[item_id] = AnalyzedItem(
                item=item,
                dependencies=tuple(self._dependencies[item_id]),
                dependents=tuple(self._dependents[item_id]),
                transitive_dependencies=tuple(self._transitive(item_id)),
                depth=depths.get(item_id),
                priority_score=self._scores[item_id],
                on_critical_path=item_id in on_path,
                dependencies_resolved=self.are_dependencies_resolved(item_id),
                blocked_by_cycle=item_id in self._blocked,
            )

        result.queue = sorted(self._items, key=self._sort_key)
        result.ready_for_execution = [i for i in result.queue if self._is_ready(i)]
        result.blocked = [
            i for i in self._items
            if self._items[i].status not in (WorkItemStatus.COMPLETED, WorkItemStatus.IN_PROGRESS)
            and not self.are_dependencies_resolved(i)
        ]
        result.statistics = self._statistics(waves, critical)
        self._result = result

        if cycles:
            logger.warning(
                "Detected %d dependency cycle(s); %d item(s) blocked: %s",
                len(cycles), len(self._blocked), ", ".join(result.blocked_by_cycle),
            )
        logger.debug(
            "Analyzed %d items, %d groups, critical path %s",
            len(self._items), len(waves), " -> ".join(critical.path),
        )
        return result

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def result(self) -> Optional[AnalysisResult]:
        """The last analysis, or ``None`` before ``analyze`` ran."""
        return self._result

    def are_dependencies_resolved(self, item_id: str) -> bool:
        """True iff every direct dependency's status is ``completed``."""
        if item_id not in self._items:
            return False
        return all(
            self._items[dep].status == WorkItemStatus.COMPLETED
            for dep in self._dependencies[item_id]
        )

    def get_next_executable(self) -> Optional[str]:
        """Most urgent item whose dependencies are resolved, or ``None``."""
        ready = sorted((i for i in self._items if self._is_ready(i)), key=self._sort_key)
        return ready[0] if ready else None

    def get_dependencies(self, item_id: str) -> List[str]:
        self._require(item_id, "get_dependencies")
        return list(self._dependencies[item_id])

    def get_dependents(self, item_id: str) -> List[str]:
        self._require(item_id, "get_dependents")
        return list(self._dependents[item_id])

    def get_transitive_dependencies(self, item_id: str) -> List[str]:
        """Sorted ids of everything *item_id* depends on, directly or not."""
        self._require(item_id, "get_transitive_dependencies")
        return self._transitive(item_id)

    def depends_on(self, item_a: str, item_b: str) -> bool:
        """Whether *item_a* depends on *item_b* directly or transitively."""
        return item_b in self.get_transitive_dependencies(item_a)

    def is_blocked_by_cycle(self, item_id: str) -> bool:
        return item_id in self._blocked

    def get_executable_items(self) -> List[str]:
        """Items not blocked by a cycle, most urgent first."""
        return sorted((i for i in self._items if i not in self._blocked), key=self._sort_key)

    # ── Internal helpers ─────────────────────────────────────────────

    def _require(self, item_id: str, operation: str) -> None:
        if item_id not in self._items:
            raise WorkItemNotFoundError(item_id, operation)

    def _sort_key(self, item_id: str) -> Tuple[float, int]:
        return (self._scores.get(item_id, 0.0), self._index[item_id])

    def _is_ready(self, item_id: str) -> bool:
        status = self._items[item_id].status
        return (
            status not in (WorkItemStatus.COMPLETED, WorkItemStatus.IN_PROGRESS)
            and item_id not in self._blocked
            and self.are_dependencies_resolved(item_id)
        )

    def _build(self, items: Sequence[WorkItem], edges: Iterable[DependencyEdge]) -> None:
        errors: List[str] = []
        for item in items:
            if item.id in self._items:
                errors.append(f"Duplicate node ID: {item.id}")
                continue
            self._index[item.id] = len(self._items)
            self._items[item.id] = item
            self._dependencies[item.id] = []
            self._dependents[item.id] = []

        for i, edge in enumerate(edges):
            missing = [n for n in (edge.source, edge.target) if n not in self._items]
            if missing:
                errors.extend(f"Edge at index {i} references unknown node {n!r}" for n in missing)
                continue
            if edge.target not in self._dependencies[edge.source]:
                self._dependencies[edge.source].append(edge.target)
                self._dependents[edge.target].append(edge.source)

        if errors:
            raise GraphValidationError(errors)

    def _detect_cycles(self) -> List[CycleInfo]:
        """Iterative DFS over dependency edges; each back-edge is a cycle."""
        cycles: List[CycleInfo] = []
        visited: Set[str] = set()
        on_stack: Set[str] = set()

        for root in self._items:
            if root in visited:
                continue
            visited.add(root)
            on_stack.add(root)
            path = [root]
            stack = [iter(self._dependencies[root])]
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    on_stack.discard(path.pop())
                elif dep not in visited:
                    visited.add(dep)
                    on_stack.add(dep)
                    path.append(dep)
                    stack.append(iter(self._dependencies[dep]))
                elif dep in on_stack:
                    start = path.index(dep)
                    cycles.append(CycleInfo(nodes=tuple(path[start:] + [dep])))
        return cycles

    def _propagate_blocking(self, cycles: List[CycleInfo]) -> None:
        queue: deque[str] = deque()
        for cycle in cycles:
            queue.extend(cycle.nodes)
        while queue:
            item_id = queue.popleft()
            if item_id in self._blocked:
                continue
            self._blocked.add(item_id)
            queue.extend(self._dependents[item_id])

    def _waves(self) -> List[List[str]]:
        """Kahn wavefronts over non-blocked items, in input order."""
        in_degree = {
            i: len(self._dependencies[i]) for i in self._items if i not in self._blocked
        }
        current = [i for i, deg in in_degree.items() if deg == 0]
        waves: List[List[str]] = []
        while current:
            waves.append(current)
            nxt: List[str] = []
            for item_id in current:
                for dependent in self._dependents[item_id]:
                    if dependent in self._blocked:
                        continue
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        nxt.append(dependent)
            current = sorted(nxt, key=self._index.__getitem__)
        return waves

    def _critical_path(self, topo_order: List[str]) -> CriticalPath:
        """Longest chain by (total effort, length), walking dependents.

        Only chains of two or more items qualify; a graph without
        dependencies has no critical path.
        """
        best: Dict[str, Tuple[float, int]] = {}
        nxt: Dict[str, Optional[str]] = {}
        for item_id in reversed(topo_order):
            length: Tuple[float, int] = (0.0, 0)
            follow = None
            for dependent in self._dependents[item_id]:
                if dependent in best and best[dependent] > length:
                    length = best[dependent]
                    follow = dependent
            best[item_id] = (self._items[item_id].effort + length[0], length[1] + 1)
            nxt[item_id] = follow

        start = None
        for item_id in topo_order:
            if self._dependencies[item_id] or best[item_id][1] < 2:
                continue
            if start is None or best[item_id] > best[start]:
                start = item_id
        if start is None:
            return CriticalPath()

        path: List[str] = []
        current: Optional[str] = start
        while current is not None:
            path.append(current)
            current = nxt[current]
        bottleneck = max(path, key=lambda i: (self._items[i].effort, -path.index(i)))
        return CriticalPath(
            path=tuple(path),
            total_effort=best[start][0],
            bottleneck=bottleneck,
        )

    def _score(self, item_id: str, on_critical_path: bool) -> float:
        cfg = self.config
        return (
            self._items[item_id].priority.rank * cfg.priority_weight
            - cfg.dependent_weight * len(self._dependents[item_id])
            - cfg.critical_path_weight * (1 if on_critical_path else 0)
        )

    def _execution_order(self) -> List[str]:
        """Kahn's algorithm with a min-heap on (score, input index)."""
        in_degree = {
            i: len(self._dependencies[i]) for i in self._items if i not in self._blocked
        }
        heap = [self._sort_key(i) + (i,) for i, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)
        order: List[str] = []
        while heap:
            item_id = heapq.heappop(heap)[2]
            order.append(item_id)
            for dependent in self._dependents[item_id]:
                if dependent in self._blocked:
                    continue
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, self._sort_key(dependent) + (dependent,))
        return order

    def _transitive(self, item_id: str) -> List[str]:
        seen: Set[str] = set()
        queue: deque[str] = deque(self._dependencies.get(item_id, ()))
        while queue:
            dep = queue.popleft()
            if dep in seen:
                continue
            seen.add(dep)
            queue.extend(self._dependencies[dep])
        return sorted(seen)

    def _statistics(self, waves: List[List[str]], critical: CriticalPath) -> GraphStatistics:
        by_priority = {p: 0 for p in _VALID_PRIORITIES}
        by_status = {s: 0 for s in _VALID_STATUSES}
        for item in self._items.values():
            by_priority[item.priority.value] += 1
            by_status[item.status.value] += 1
        return GraphStatistics(
            total_items=len(self._items),
            total_dependencies=sum(len(d) for d in self._dependencies.values()),
            max_depth=max(len(waves) - 1, 0),
            root_items=sum(1 for d in self._dependencies.values() if not d),
            leaf_items=sum(1 for d in self._dependents.values() if not d),
            critical_path_length=len(critical.path),
            blocked_by_cycle=len(self._blocked),
            by_priority=by_priority,
            by_status=by_status,
        )
