"""
Workflow Graph Snapshot

Immutable, fully materialised view of a workflow's stages and transitions.
The transition engine only ever reads graphs, never ORM relationships, so
there are no lazy loads in the middle of a state change.

Frozen workflows never change, so their graphs are cached per process.
"""
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from ...models.db_models import WorkflowDB
from .conditions import AllOf, parse_conditions


@dataclass(frozen=True)
class StageNode:
    id: str
    name: str
    sequence: int
    required_documents: Tuple[str, ...]
    required_actions: Tuple[str, ...]
    assigned_role: Optional[str]
    status_label: Optional[str]
    notification_template: Optional[str]

    @property
    def label(self) -> str:
        return self.status_label or self.name


@dataclass(frozen=True)
class TransitionEdge:
    id: str
    name: str
    source_stage_id: str
    target_stage_id: str
    conditions: AllOf
    required_permissions: Tuple[str, ...]
    is_automatic: bool
    is_retry_loop: bool
    creation_order: int

    @property
    def is_self_loop(self) -> bool:
        return self.source_stage_id == self.target_stage_id


@dataclass(frozen=True)
class WorkflowGraph:
    workflow_id: str
    application_type: str
    is_frozen: bool
    stages: Dict[str, StageNode]
    # Ordered by creation_order, earliest first
    transitions: Tuple[TransitionEdge, ...]
    _outgoing: Dict[str, Tuple[TransitionEdge, ...]] = field(default_factory=dict, repr=False)

    def stage(self, stage_id: str) -> Optional[StageNode]:
        return self.stages.get(stage_id)

    def transition(self, transition_id: str) -> Optional[TransitionEdge]:
        for edge in self.transitions:
            if edge.id == transition_id:
                return edge
        return None

    def outgoing(self, stage_id: str) -> Tuple[TransitionEdge, ...]:
        return self._outgoing.get(stage_id, ())

    def automatic_outgoing(self, stage_id: str) -> List[TransitionEdge]:
        return [edge for edge in self.outgoing(stage_id) if edge.is_automatic]

    def is_terminal(self, stage_id: str) -> bool:
        return not self.outgoing(stage_id)

    @property
    def initial_stage_ids(self) -> List[str]:
        """Stages with no incoming transitions (self-loops do not count)."""
        with_incoming = {e.target_stage_id for e in self.transitions if not e.is_self_loop}
        return sorted(
            (sid for sid in self.stages if sid not in with_incoming),
            key=lambda sid: (self.stages[sid].sequence, sid),
        )

    @property
    def initial_stage_id(self) -> Optional[str]:
        initial = self.initial_stage_ids
        return initial[0] if len(initial) == 1 else None

    @property
    def terminal_stage_ids(self) -> List[str]:
        return [sid for sid in self.stages if self.is_terminal(sid)]

    def reachable_from(self, stage_id: str) -> Set[str]:
        """Breadth-first closure over outgoing transitions."""
        seen = {stage_id}
        queue = deque([stage_id])
        while queue:
            current = queue.popleft()
            for edge in self.outgoing(current):
                if edge.target_stage_id not in seen:
                    seen.add(edge.target_stage_id)
                    queue.append(edge.target_stage_id)
        return seen

    def can_reach_terminal(self) -> FrozenSet[str]:
        """Stages from which some terminal stage is reachable (reverse BFS)."""
        incoming: Dict[str, List[str]] = {sid: [] for sid in self.stages}
        for edge in self.transitions:
            incoming.setdefault(edge.target_stage_id, []).append(edge.source_stage_id)
        seen = set(self.terminal_stage_ids)
        queue = deque(seen)
        while queue:
            current = queue.popleft()
            for source in incoming.get(current, []):
                if source not in seen:
                    seen.add(source)
                    queue.append(source)
        return frozenset(seen)


def build_graph(workflow: WorkflowDB) -> WorkflowGraph:
    """Materialise a graph from a loaded WorkflowDB row."""
    stages = {
        stage.id: StageNode(
            id=stage.id,
            name=stage.name,
            sequence=stage.sequence or 0,
            required_documents=tuple(stage.required_documents or ()),
            required_actions=tuple(stage.required_actions or ()),
            assigned_role=stage.assigned_role,
            status_label=stage.status_label,
            notification_template=stage.notification_template,
        )
        for stage in workflow.stages
    }
    transitions = tuple(
        TransitionEdge(
            id=t.id,
            name=t.name,
            source_stage_id=t.source_stage_id,
            target_stage_id=t.target_stage_id,
            conditions=parse_conditions(t.transition_conditions),
            required_permissions=tuple(t.required_permissions or ()),
            is_automatic=bool(t.is_automatic),
            is_retry_loop=bool(t.is_retry_loop),
            creation_order=t.creation_order or 0,
        )
        for t in sorted(workflow.transitions, key=lambda t: (t.creation_order or 0, t.id))
    )
    outgoing: Dict[str, List[TransitionEdge]] = {}
    for edge in transitions:
        outgoing.setdefault(edge.source_stage_id, []).append(edge)

    return WorkflowGraph(
        workflow_id=workflow.id,
        application_type=workflow.application_type,
        is_frozen=workflow.is_frozen,
        stages=stages,
        transitions=transitions,
        _outgoing={sid: tuple(edges) for sid, edges in outgoing.items()},
    )


class WorkflowGraphCache:
    """
    Process-wide cache of frozen workflow graphs and the active workflow per
    application type. Graph reads are lock-free dict lookups; everything
    else takes the lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._graphs: Dict[str, WorkflowGraph] = {}
        self._active: Dict[str, Optional[str]] = {}
        # Bumped on every invalidation; a put based on an older read is dropped
        self._active_version = 0

    def get_graph(self, workflow_id: str) -> Optional[WorkflowGraph]:
        return self._graphs.get(workflow_id)

    def put_graph(self, graph: WorkflowGraph) -> None:
        if not graph.is_frozen:
            return
        with self._lock:
            self._graphs[graph.workflow_id] = graph

    def get_active(self, application_type: str) -> Tuple[bool, Optional[str], int]:
        """
        Returns (hit, workflow_id, version). On a miss, pass `version` back to
        put_active() so a result read before a concurrent invalidation is
        not cached.
        """
        with self._lock:
            if application_type in self._active:
                return True, self._active[application_type], self._active_version
            return False, None, self._active_version

    def put_active(self, application_type: str, workflow_id: Optional[str], version: int) -> bool:
        with self._lock:
            if version != self._active_version:
                return False
            self._active[application_type] = workflow_id
            return True

    def invalidate_active(self, application_type: str) -> None:
        with self._lock:
            self._active.pop(application_type, None)
            self._active_version += 1

    def clear(self) -> None:
        with self._lock:
            self._graphs.clear()
            self._active.clear()
            self._active_version += 1


# Shared by every store instance in this process
graph_cache = WorkflowGraphCache()
