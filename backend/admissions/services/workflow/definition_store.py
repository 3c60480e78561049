"""
Workflow Definition Store

CRUD over workflow graphs. Guarantees structural validity before a
workflow is activated, and freezes it from then on.

Lifecycle:
    draft (editable) -> activate() -> active + frozen
    active -> deactivate() -> inactive, still frozen
A frozen workflow is changed by duplicating it into a new draft.
"""
import logging
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import WorkflowDB, WorkflowStageDB, WorkflowTransitionDB, utcnow
from ...models.workflow_objects import StageSpec, TransitionSpec, ValidationFinding
from .conditions import parse_conditions
from ..errors import CrossWorkflowReference, InvalidWorkflowState, NotFound, ValidationFailed
from .graph import WorkflowGraph, WorkflowGraphCache, build_graph, graph_cache

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION FINDING CODES
# =============================================================================

NO_STAGES = "NO_STAGES"
NO_INITIAL_STAGE = "NO_INITIAL_STAGE"
MULTIPLE_INITIAL_STAGES = "MULTIPLE_INITIAL_STAGES"
NO_TERMINAL_STAGE = "NO_TERMINAL_STAGE"
ORPHAN_STAGE = "ORPHAN_STAGE"
UNFLAGGED_SELF_LOOP = "UNFLAGGED_SELF_LOOP"
NON_TERMINATING_CYCLE = "NON_TERMINATING_CYCLE"


def validate_graph(graph: WorkflowGraph) -> List[ValidationFinding]:
    """
    Structural checks. Empty list means the graph may be activated.

    - exactly one stage without incoming transitions (initial, self-loops ignored)
    - at least one stage without outgoing transitions (terminal)
    - every stage reachable from the initial stage
    - self-loops only when flagged as retry loops
    - every reachable stage can still reach a terminal stage
    """
    findings: List[ValidationFinding] = []

    if not graph.stages:
        return [ValidationFinding(NO_STAGES, "Workflow must have at least one stage.")]

    initial_ids = graph.initial_stage_ids
    if not initial_ids:
        findings.append(ValidationFinding(
            NO_INITIAL_STAGE,
            "Workflow must have exactly one initial stage (a stage with no incoming transitions).",
        ))
    elif len(initial_ids) > 1:
        names = ", ".join(graph.stages[sid].name for sid in initial_ids)
        findings.append(ValidationFinding(
            MULTIPLE_INITIAL_STAGES,
            f"Workflow has more than one stage with no incoming transitions: {names}",
        ))

    if not graph.terminal_stage_ids:
        findings.append(ValidationFinding(
            NO_TERMINAL_STAGE,
            "Workflow must have at least one terminal stage (a stage with no outgoing transitions).",
        ))

    for edge in graph.transitions:
        if edge.is_self_loop and not edge.is_retry_loop:
            stage = graph.stages[edge.source_stage_id]
            findings.append(ValidationFinding(
                UNFLAGGED_SELF_LOOP,
                f"Transition '{edge.name}' loops on stage '{stage.name}' without being flagged as a retry loop.",
                stage_id=stage.id,
            ))

    # With several candidates the lowest-sequence one is treated as the
    # designated initial stage; the others then show up as orphans.
    if initial_ids:
        reachable = graph.reachable_from(initial_ids[0])
        for stage_id, stage in sorted(graph.stages.items(), key=lambda item: (item[1].sequence, item[0])):
            if stage_id not in reachable:
                findings.append(ValidationFinding(
                    ORPHAN_STAGE,
                    f"Stage '{stage.name}' ({stage_id}) is unreachable from the initial stage.",
                    stage_id=stage_id,
                ))

        if graph.terminal_stage_ids:
            can_finish = graph.can_reach_terminal()
            for stage_id in sorted(reachable, key=lambda sid: (graph.stages[sid].sequence, sid)):
                if stage_id not in can_finish:
                    stage = graph.stages[stage_id]
                    findings.append(ValidationFinding(
                        NON_TERMINATING_CYCLE,
                        f"Stage '{stage.name}' ({stage_id}) is caught in a cycle with no path to a terminal stage.",
                        stage_id=stage_id,
                    ))

    return findings


# =============================================================================
# STORE
# =============================================================================

class WorkflowDefinitionStore:
    """
    Admin-facing operations over workflow definitions.

    Graphs of frozen workflows are served from the process-wide cache;
    drafts are always rebuilt from the database.
    """

    def __init__(self, db: Session, cache: Optional[WorkflowGraphCache] = None):
        self.db = db
        self.cache = cache if cache is not None else graph_cache

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_workflow(self, workflow_id: str) -> WorkflowDB:
        workflow = self.db.query(WorkflowDB).filter(WorkflowDB.id == workflow_id).first()
        if workflow is None:
            raise NotFound(f"Workflow {workflow_id} not found")
        return workflow

    def list_workflows(
        self,
        application_type: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> List[WorkflowDB]:
        query = self.db.query(WorkflowDB)
        if application_type is not None:
            query = query.filter(WorkflowDB.application_type == application_type)
        if active is not None:
            query = query.filter(WorkflowDB.is_active == active)
        return query.order_by(WorkflowDB.created_at, WorkflowDB.id).all()

    def get_active_workflow_id(self, application_type: str) -> Optional[str]:
        hit, workflow_id, version = self.cache.get_active(application_type)
        if hit:
            return workflow_id

        workflow = self.db.query(WorkflowDB).filter(
            WorkflowDB.application_type == application_type,
            WorkflowDB.is_active.is_(True),
        ).first()
        workflow_id = workflow.id if workflow else None
        if not self.cache.put_active(application_type, workflow_id, version):
            logger.debug(f"Active workflow for {application_type} changed while reading; not cached")
        return workflow_id

    def get_active_workflow(self, application_type: str) -> Optional[WorkflowDB]:
        workflow_id = self.get_active_workflow_id(application_type)
        return self.get_workflow(workflow_id) if workflow_id else None

    def get_graph(self, workflow_id: str) -> WorkflowGraph:
        graph = self.cache.get_graph(workflow_id)
        if graph is not None:
            return graph
        graph = build_graph(self.get_workflow(workflow_id))
        self.cache.put_graph(graph)
        return graph

    def _get_stage(self, stage_id: str) -> WorkflowStageDB:
        stage = self.db.query(WorkflowStageDB).filter(WorkflowStageDB.id == stage_id).first()
        if stage is None:
            raise NotFound(f"Stage {stage_id} not found")
        return stage

    def _require_editable(self, workflow: WorkflowDB) -> None:
        if workflow.is_active:
            raise InvalidWorkflowState(f"Workflow {workflow.id} is active and cannot be modified")
        if workflow.is_frozen:
            raise InvalidWorkflowState(
                f"Workflow {workflow.id} has been activated before and is frozen; duplicate it to make changes"
            )

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def create_workflow(
        self,
        name: str,
        application_type: str,
        created_by: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """Create an inactive, empty workflow."""
        workflow = WorkflowDB(
            id=str(uuid4()),
            name=name,
            description=description,
            application_type=application_type,
            is_active=False,
            created_by=created_by,
        )
        self.db.add(workflow)
        self.db.commit()
        logger.info(f"Created workflow {workflow.id} '{name}' for {application_type}")
        return workflow.id

    def add_stage(self, workflow_id: str, stage_spec: StageSpec) -> str:
        workflow = self.get_workflow(workflow_id)
        self._require_editable(workflow)

        stage = WorkflowStageDB(
            id=str(uuid4()),
            workflow_id=workflow.id,
            name=stage_spec.name,
            description=stage_spec.description,
            sequence=stage_spec.sequence,
            required_documents=list(stage_spec.required_documents),
            required_actions=list(stage_spec.required_actions),
            assigned_role=stage_spec.assigned_role,
            status_label=stage_spec.status_label,
            notification_template=stage_spec.notification_template,
        )
        self.db.add(stage)
        self.db.commit()
        return stage.id

    def add_transition(
        self,
        workflow_id: str,
        source_stage_id: str,
        target_stage_id: str,
        spec: TransitionSpec,
    ) -> str:
        workflow = self.get_workflow(workflow_id)
        source = self._get_stage(source_stage_id)
        target = self._get_stage(target_stage_id)

        if source.workflow_id != target.workflow_id:
            raise CrossWorkflowReference(
                f"Stages {source_stage_id} and {target_stage_id} belong to different workflows"
            )
        if source.workflow_id != workflow.id:
            raise CrossWorkflowReference(
                f"Stages {source_stage_id} and {target_stage_id} do not belong to workflow {workflow_id}"
            )
        self._require_editable(workflow)

        # Round-trip through the parser so malformed trees never reach storage
        conditions = parse_conditions(spec.conditions)

        last_order = self.db.query(func.max(WorkflowTransitionDB.creation_order)).filter(
            WorkflowTransitionDB.workflow_id == workflow.id
        ).scalar()

        transition = WorkflowTransitionDB(
            id=str(uuid4()),
            workflow_id=workflow.id,
            source_stage_id=source.id,
            target_stage_id=target.id,
            name=spec.name,
            description=spec.description,
            transition_conditions=[c.to_dict() for c in conditions.conditions],
            required_permissions=list(spec.required_permissions),
            is_automatic=spec.is_automatic,
            is_retry_loop=spec.is_retry_loop,
            creation_order=(last_order or 0) + 1,
        )
        self.db.add(transition)
        self.db.commit()
        return transition.id

    def validate(self, workflow_id: str) -> List[ValidationFinding]:
        return validate_graph(self.get_graph(workflow_id))

    def activate(self, workflow_id: str, actor_id: Optional[str] = None) -> None:
        """
        Activate a workflow after validation.

        Any other active workflow of the same application type is
        deactivated in the same commit.
        """
        workflow = self.get_workflow(workflow_id)
        findings = self.validate(workflow_id)
        if findings:
            logger.warning(f"Activation of workflow {workflow_id} rejected: {len(findings)} finding(s)")
            raise ValidationFailed(findings)

        replaced = self.db.query(WorkflowDB).filter(
            WorkflowDB.application_type == workflow.application_type,
            WorkflowDB.is_active.is_(True),
            WorkflowDB.id != workflow.id,
        ).all()
        for other in replaced:
            other.is_active = False
            logger.info(f"Deactivated workflow {other.id} '{other.name}' (replaced by {workflow.id})")

        workflow.is_active = True
        if workflow.activated_at is None:
            workflow.activated_at = utcnow()
        self.db.commit()

        self.cache.invalidate_active(workflow.application_type)
        logger.info(
            f"Activated workflow {workflow.id} '{workflow.name}' for {workflow.application_type}"
            + (f" by {actor_id}" if actor_id else "")
        )

    def deactivate(self, workflow_id: str, actor_id: Optional[str] = None) -> None:
        """Administrative deactivation. Bound applications keep their workflow."""
        workflow = self.get_workflow(workflow_id)
        workflow.is_active = False
        self.db.commit()
        self.cache.invalidate_active(workflow.application_type)
        logger.info(
            f"Deactivated workflow {workflow.id} '{workflow.name}'"
            + (f" by {actor_id}" if actor_id else "")
        )

    def duplicate(self, workflow_id: str, new_name: str, created_by: Optional[str] = None) -> str:
        """Copy stages and transitions into a new editable draft."""
        original = self.get_workflow(workflow_id)

        duplicate = WorkflowDB(
            id=str(uuid4()),
            name=new_name,
            description=original.description,
            application_type=original.application_type,
            is_active=False,
            created_by=created_by or original.created_by,
        )
        self.db.add(duplicate)

        stage_map = {}
        for stage in original.stages:
            copy = WorkflowStageDB(
                id=str(uuid4()),
                workflow_id=duplicate.id,
                name=stage.name,
                description=stage.description,
                sequence=stage.sequence,
                required_documents=list(stage.required_documents or []),
                required_actions=list(stage.required_actions or []),
                assigned_role=stage.assigned_role,
                status_label=stage.status_label,
                notification_template=stage.notification_template,
            )
            stage_map[stage.id] = copy.id
            self.db.add(copy)

        for transition in original.transitions:
            self.db.add(WorkflowTransitionDB(
                id=str(uuid4()),
                workflow_id=duplicate.id,
                source_stage_id=stage_map[transition.source_stage_id],
                target_stage_id=stage_map[transition.target_stage_id],
                name=transition.name,
                description=transition.description,
                transition_conditions=list(transition.transition_conditions or []),
                required_permissions=list(transition.required_permissions or []),
                is_automatic=transition.is_automatic,
                is_retry_loop=transition.is_retry_loop,
                creation_order=transition.creation_order,
            ))

        self.db.commit()
        logger.info(f"Duplicated workflow {original.id} into {duplicate.id} '{new_name}'")
        return duplicate.id
