"""Deterministic story dependency graph with level peeling and cycle isolation.

Edges point from a dependency to the story that needs it. Level 0 holds
stories with no unresolved in-batch dependency; level ``k`` holds stories
whose dependencies all sit in levels ``< k``.

A cycle never truncates the plan silently. Stories on a cycle are named in a
:class:`CycleError`, stories that merely sit downstream of one are reported as
blocked, and every other story keeps the level it would have had anyway.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence, Set
from dataclasses import dataclass, field
from enum import StrEnum
from heapq import heapify, heappop, heappush
from types import MappingProxyType

from story_scheduler.domain.models import Story


class ExternalDependencyPolicy(StrEnum):
    """How dependencies on ids outside the current batch are resolved."""

    ASSUME_SATISFIED = "assume_satisfied"
    BLOCK = "block"
    ERROR = "error"


class CycleError(ValueError):
    """Raised (or reported) when part of a batch cannot be ordered."""

    cycles: tuple[tuple[str, ...], ...]
    story_ids: frozenset[str]

    def __init__(
        self,
        cycles: Iterable[Sequence[str]],
        story_ids: Iterable[str] | None = None,
    ) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized
        if story_ids is None:
            self.story_ids = frozenset(node for path in normalized for node in path)
        else:
            self.story_ids = frozenset(story_ids)

        if not normalized:
            message = "Dependency graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Dependency graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class UnknownDependencyError(ValueError):
    """Raised when a story depends on an id outside the batch under the ``error`` policy."""

    missing: tuple[tuple[str, str], ...]

    def __init__(self, missing: Iterable[tuple[str, str]]) -> None:
        self.missing = tuple(sorted(missing))
        rendered = ", ".join(f"{story} -> {dependency}" for story, dependency in self.missing)
        super().__init__(f"unknown dependencies outside the batch: {rendered}")


@dataclass(frozen=True, slots=True)
class DependencyNode:
    story_id: str
    depends_on: frozenset[str]
    level: int

    def __post_init__(self) -> None:
        if self.level < 0:
            raise ValueError("level must be >= 0")


@dataclass(frozen=True, slots=True)
class GraphStats:
    node_count: int
    edge_count: int
    root_nodes: tuple[str, ...]
    leaf_nodes: tuple[str, ...]
    max_depth: int
    average_dependencies: float

    def to_dict(self) -> dict[str, object]:
        return {
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "root_nodes": list(self.root_nodes),
            "leaf_nodes": list(self.leaf_nodes),
            "max_depth": self.max_depth,
            "average_dependencies": self.average_dependencies,
        }


@dataclass(frozen=True, slots=True)
class LevelPlan:
    """Result of :meth:`DependencyGraph.build_levels`.

    ``blocked`` maps each unschedulable non-cycle story to the prerequisites
    that can never be satisfied (cycle members, other blocked stories, or
    unsatisfied external ids).
    """

    levels: tuple[tuple[Story, ...], ...]
    nodes: Mapping[str, DependencyNode]
    cycle: CycleError | None = None
    blocked: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def rejected(self) -> frozenset[str]:
        if self.cycle is None:
            return frozenset()
        return self.cycle.story_ids

    @property
    def orderable_ids(self) -> frozenset[str]:
        return frozenset(self.nodes)

    def level_of(self, story_id: str) -> int:
        return self.nodes[story_id].level

    def level_ids(self) -> tuple[tuple[str, ...], ...]:
        return tuple(tuple(story.id for story in level) for level in self.levels)


class DependencyGraph:
    """Story dependency graph with deterministic traversal."""

    __slots__ = ("_stories", "_depends_on", "_dependents", "_external")

    def __init__(self, stories: Iterable[Story]) -> None:
        self._stories: dict[str, Story] = {}
        for story in stories:
            if story.id in self._stories:
                raise ValueError(f"duplicate story id {story.id!r} in batch")
            self._stories[story.id] = story

        self._depends_on: dict[str, set[str]] = {story_id: set() for story_id in self._stories}
        self._dependents: dict[str, set[str]] = {story_id: set() for story_id in self._stories}
        self._external: dict[str, frozenset[str]] = {}

        for story_id, story in self._stories.items():
            external: set[str] = set()
            for dependency in story.dependencies:
                if dependency in self._stories:
                    self._depends_on[story_id].add(dependency)
                    self._dependents[dependency].add(story_id)
                else:
                    external.add(dependency)
            if external:
                self._external[story_id] = frozenset(external)

    @property
    def nodes(self) -> tuple[str, ...]:
        """All story IDs in deterministic order."""
        return tuple(sorted(self._stories))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(dependency, dependent)`` pairs in deterministic order."""
        ordered: list[tuple[str, str]] = []
        for parent in sorted(self._stories):
            for child in sorted(self._dependents[parent]):
                ordered.append((parent, child))
        return tuple(ordered)

    @property
    def external_dependencies(self) -> Mapping[str, frozenset[str]]:
        return MappingProxyType(self._external)

    def story(self, story_id: str) -> Story:
        self._assert_node_exists(story_id)
        return self._stories[story_id]

    def build_levels(
        self,
        *,
        external_policy: ExternalDependencyPolicy = ExternalDependencyPolicy.ASSUME_SATISFIED,
        satisfied_external: Set[str] = frozenset(),
    ) -> LevelPlan:
        """Peel the graph into dependency levels.

        Raises :class:`UnknownDependencyError` under the ``error`` policy. A
        cycle is returned in ``LevelPlan.cycle`` instead of raised so callers
        can decide whether to proceed with the orderable remainder.
        """
        policy = ExternalDependencyPolicy(external_policy)
        unsatisfied = self._unsatisfied_external(policy, satisfied_external)

        indegree: dict[str, int] = {
            story_id: len(parents) for story_id, parents in self._depends_on.items()
        }
        current = sorted(
            story_id
            for story_id, degree in indegree.items()
            if degree == 0 and story_id not in unsatisfied
        )

        levels: list[tuple[Story, ...]] = []
        nodes: dict[str, DependencyNode] = {}
        while current:
            level_index = len(levels)
            for story_id in current:
                nodes[story_id] = DependencyNode(
                    story_id=story_id,
                    depends_on=frozenset(self._depends_on[story_id]),
                    level=level_index,
                )
            levels.append(tuple(self._stories[story_id] for story_id in current))

            following: list[str] = []
            for story_id in current:
                for child in self._dependents[story_id]:
                    indegree[child] -= 1
                    if indegree[child] == 0 and child not in unsatisfied:
                        following.append(child)
            current = sorted(following)

        remaining = [story_id for story_id in sorted(self._stories) if story_id not in nodes]
        if not remaining:
            return LevelPlan(levels=tuple(levels), nodes=MappingProxyType(nodes))

        members = self._cyclic_members(remaining)
        cycle: CycleError | None = None
        if members:
            cycle = CycleError(self._detect_cycles(members), members)

        remaining_set = set(remaining)
        blocked: dict[str, tuple[str, ...]] = {}
        for story_id in remaining:
            if story_id in members:
                continue
            prerequisites = {
                parent for parent in self._depends_on[story_id] if parent in remaining_set
            }
            prerequisites.update(unsatisfied.get(story_id, ()))
            blocked[story_id] = tuple(sorted(prerequisites))

        return LevelPlan(
            levels=tuple(levels),
            nodes=MappingProxyType(nodes),
            cycle=cycle,
            blocked=MappingProxyType(blocked),
        )

    def topological_order(self) -> tuple[str, ...]:
        """Return a deterministic topological ordering or raise ``CycleError``."""
        indegree: dict[str, int] = {
            story_id: len(parents) for story_id, parents in self._depends_on.items()
        }
        ready: list[str] = [story_id for story_id, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            story_id = heappop(ready)
            order.append(story_id)
            for child in sorted(self._dependents[story_id]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, child)

        if len(order) != len(self._stories):
            placed = set(order)
            remaining = [story_id for story_id in self._stories if story_id not in placed]
            members = self._cyclic_members(remaining)
            raise CycleError(self._detect_cycles(members), members)

        return tuple(order)

    def dependencies_of(self, story_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive in-batch dependencies for ``story_id``."""
        self._assert_node_exists(story_id)
        if not transitive:
            return tuple(sorted(self._depends_on[story_id]))
        return self._transitive_closure(story_id, self._depends_on)

    def dependents_of(self, story_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive in-batch dependents for ``story_id``."""
        self._assert_node_exists(story_id)
        if not transitive:
            return tuple(sorted(self._dependents[story_id]))
        return self._transitive_closure(story_id, self._dependents)

    def ready(self, completed: Set[str]) -> tuple[str, ...]:
        """
        Return stories ready to run.

        A story is ready when it is not already completed and every in-batch
        dependency is present in ``completed``.
        """
        completed_ids = set(completed)
        runnable: list[str] = []
        for story_id in sorted(self._stories):
            if story_id in completed_ids:
                continue
            if self._depends_on[story_id].issubset(completed_ids):
                runnable.append(story_id)
        return tuple(runnable)

    def stats(self) -> GraphStats:
        plan = self.build_levels()
        node_count = len(self._stories)
        edge_count = sum(len(parents) for parents in self._depends_on.values())
        return GraphStats(
            node_count=node_count,
            edge_count=edge_count,
            root_nodes=tuple(
                story_id for story_id in sorted(self._stories) if not self._depends_on[story_id]
            ),
            leaf_nodes=tuple(
                story_id for story_id in sorted(self._stories) if not self._dependents[story_id]
            ),
            max_depth=len(plan.levels),
            average_dependencies=round(edge_count / node_count, 4) if node_count else 0.0,
        )

    def to_dot(self, *, name: str = "stories") -> str:
        """Render the graph in Graphviz DOT format."""
        lines = [f"digraph {_dot_quote(name)} {{", "  rankdir=LR;"]
        for story_id in sorted(self._stories):
            label = self._stories[story_id].title or story_id
            lines.append(f"  {_dot_quote(story_id)} [label={_dot_quote(label)}];")
        for parent, child in self.edges:
            lines.append(f"  {_dot_quote(parent)} -> {_dot_quote(child)};")
        for story_id in sorted(self._external):
            for dependency in sorted(self._external[story_id]):
                lines.append(
                    f"  {_dot_quote(dependency)} -> {_dot_quote(story_id)} [style=dashed];"
                )
        lines.append("}")
        return "\n".join(lines) + "\n"

    def _unsatisfied_external(
        self,
        policy: ExternalDependencyPolicy,
        satisfied_external: Set[str],
    ) -> dict[str, tuple[str, ...]]:
        if policy is ExternalDependencyPolicy.ASSUME_SATISFIED:
            return {}
        if policy is ExternalDependencyPolicy.ERROR:
            missing = [
                (story_id, dependency)
                for story_id, dependencies in self._external.items()
                for dependency in dependencies
            ]
            if missing:
                raise UnknownDependencyError(missing)
            return {}

        unsatisfied: dict[str, tuple[str, ...]] = {}
        for story_id, dependencies in self._external.items():
            pending = tuple(
                sorted(
                    dependency
                    for dependency in dependencies
                    if dependency not in satisfied_external
                )
            )
            if pending:
                unsatisfied[story_id] = pending
        return unsatisfied

    def _cyclic_members(self, candidates: Sequence[str]) -> frozenset[str]:
        allowed = set(candidates)
        members: set[str] = set()
        for component in _strongly_connected_components(sorted(allowed), self._depends_on):
            if len(component) > 1:
                members.update(component)
            elif component[0] in self._depends_on[component[0]]:
                members.add(component[0])
        return frozenset(members)

    def _detect_cycles(self, members: Set[str]) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles among ``members``.

        Paths follow the "depends on" direction and are closed, e.g.
        ``("A", "B", "C", "A")`` when A depends on B, B on C and C on A.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        def neighbours(node: str) -> Iterator[str]:
            return iter(sorted(dep for dep in self._depends_on[node] if dep in members))

        for start in sorted(members):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = len(stack) - 1
            frames: list[tuple[str, Iterator[str]]] = [(start, neighbours(start))]

            while frames:
                node, child_iter = frames[-1]

                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, neighbours(child)))
                    continue

                if child_state == 1:
                    start_index = stack_index[child]
                    cycle = tuple(stack[start_index:] + [child])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def _transitive_closure(
        self, story_id: str, adjacency: Mapping[str, set[str]]
    ) -> tuple[str, ...]:
        visited: set[str] = set()
        pending: list[str] = list(adjacency[story_id])

        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            for neighbour in adjacency[node]:
                if neighbour not in visited:
                    pending.append(neighbour)

        return tuple(sorted(visited))

    def _assert_node_exists(self, story_id: str) -> None:
        if story_id not in self._stories:
            raise KeyError(f"Unknown story: {story_id}")


def build_levels(
    stories: Iterable[Story],
    *,
    external_policy: ExternalDependencyPolicy = ExternalDependencyPolicy.ASSUME_SATISFIED,
    satisfied_external: Set[str] = frozenset(),
) -> LevelPlan:
    """Build dependency levels for a batch of stories."""
    return DependencyGraph(stories).build_levels(
        external_policy=external_policy, satisfied_external=satisfied_external
    )


def _strongly_connected_components(
    nodes: Sequence[str],
    adjacency: Mapping[str, set[str]],
) -> list[tuple[str, ...]]:
    # Iterative Tarjan restricted to ``nodes``.
    allowed = set(nodes)
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[tuple[str, ...]] = []
    counter = 0

    def successors(node: str) -> Iterator[str]:
        return iter(sorted(item for item in adjacency[node] if item in allowed))

    for root in nodes:
        if root in index_of:
            continue
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        frames: list[tuple[str, Iterator[str]]] = [(root, successors(root))]

        while frames:
            node, child_iter = frames[-1]
            descended = False
            for child in child_iter:
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    frames.append((child, successors(child)))
                    descended = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if descended:
                continue

            frames.pop()
            if frames:
                parent = frames[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(tuple(sorted(component)))

    return components


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    if len(cycle) < 2:
        raise ValueError("Cycle path must contain at least two nodes.")

    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated

    return best + (best[0],)


def _dot_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


__all__ = [
    "CycleError",
    "DependencyGraph",
    "DependencyNode",
    "ExternalDependencyPolicy",
    "GraphStats",
    "LevelPlan",
    "UnknownDependencyError",
    "build_levels",
]
