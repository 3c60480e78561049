"""
Stage Transition Engine

The state machine proper. Each WorkflowStage is a state and
Application.current_stage_id is the pointer.

Core Principles:
- A failed attempt mutates nothing, so callers may retry it safely
- Every move appends an immutable status history entry
- Automatic transitions fire earliest-created first, bounded by the number
  of stages in the workflow
- All mutations of one application are serialised through its lock

AUTHORITY MODEL:
- USER: attempt_transition, record_action, update_application_data,
  bind_application (submission)
- SYSTEM: automatic transitions after any state-affecting event
"""
import logging
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...config import (
    PROTECTED_APPLICATION_FIELDS, RECORD_ACTION_PERMISSION, UPDATE_APPLICATION_DATA_PERMISSION,
)
from ...models.db_models import (
    ActorType, ApplicationDB, ApplicationStatusDB, ApplicationActionDB,
    DocumentDB, WorkflowTransitionDB, utcnow,
)
from ...models.workflow_objects import Actor, SYSTEM_ACTOR, StageRequirements, TransitionResult
from ..collaborators import PermissionChecker
from .conditions import ConditionContext
from .definition_store import WorkflowDefinitionStore
from ..errors import (
    AutomaticTransitionLoop, ConditionsNotMet, InvalidApplicationState,
    NotFound, NotInSourceStage, PermissionDenied,
)
from .graph import StageNode, TransitionEdge, WorkflowGraph
from .locks import ApplicationLockRegistry, application_locks
from .status_projector import ApplicationStatusProjector

logger = logging.getLogger(__name__)


class StageTransitionEngine:
    """
    Validates and executes moves of applications between stages.

    Graph data comes from WorkflowDefinitionStore snapshots; per-application
    state (stage pointer, documents, recorded actions) is read fresh under
    the application's lock.
    """

    def __init__(
        self,
        db: Session,
        store: WorkflowDefinitionStore,
        permission_checker: PermissionChecker,
        projector: ApplicationStatusProjector,
        locks: Optional[ApplicationLockRegistry] = None,
    ):
        self.db = db
        self.store = store
        self.permission_checker = permission_checker
        self.projector = projector
        self.locks = locks if locks is not None else application_locks

    # =========================================================================
    # APPLICATION LIFECYCLE
    # =========================================================================

    def create_application(
        self,
        applicant_id: str,
        application_type: str,
        application_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create an unbound draft application."""
        application = ApplicationDB(
            id=str(uuid4()),
            applicant_id=applicant_id,
            application_type=application_type,
            application_data=dict(application_data or {}),
        )
        self.db.add(application)
        self.db.commit()
        return application.id

    def get_application(self, application_id: str) -> ApplicationDB:
        application = self.db.query(ApplicationDB).filter(ApplicationDB.id == application_id).first()
        if application is None:
            raise NotFound(f"Application {application_id} not found")
        return application

    def _load_for_update(self, application_id: str) -> ApplicationDB:
        application = (
            self.db.query(ApplicationDB)
            .filter(ApplicationDB.id == application_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if application is None:
            raise NotFound(f"Application {application_id} not found")
        return application

    def bind_application(self, application_id: str, actor: Actor) -> str:
        """
        Submit the application: bind it to the active workflow of its type
        and place it in that workflow's initial stage.

        Returns the stage the application ends up in after any automatic moves.
        """
        with self.locks.hold(application_id):
            application = self._load_for_update(application_id)
            if application.workflow_id is not None:
                raise InvalidApplicationState(f"Application {application_id} is already submitted")

            workflow_id = self.store.get_active_workflow_id(application.application_type)
            if workflow_id is None:
                raise NotFound(f"No active workflow for application type '{application.application_type}'")

            graph = self.store.get_graph(workflow_id)
            initial_stage_id = graph.initial_stage_id
            if initial_stage_id is None:
                raise InvalidApplicationState(f"Workflow {workflow_id} has no unique initial stage")

            now = utcnow()
            application.workflow_id = workflow_id
            application.current_stage_id = initial_stage_id
            application.is_submitted = True
            application.submitted_at = now
            self._append_history(application, graph, initial_stage_id, None, actor, notes="Application submitted")
            self.db.commit()

            logger.info(f"Application {application_id} bound to workflow {workflow_id} at stage {initial_stage_id}")
            self.projector.on_stage_changed(application, None, initial_stage_id)
            self._sweep_after_event(application_id)
            return self.get_application(application_id).current_stage_id

    # =========================================================================
    # CONDITION CONTEXT
    # =========================================================================

    def build_context(self, application: ApplicationDB, stage: Optional[StageNode]) -> ConditionContext:
        """Materialise everything conditions may read for one application."""
        documents = self.db.query(DocumentDB).filter(
            DocumentDB.application_id == application.id,
            DocumentDB.is_superseded.is_(False),
        ).all()
        actions = self.db.query(ApplicationActionDB.action_id).filter(
            ApplicationActionDB.application_id == application.id
        ).all()

        attributes = dict(application.application_data or {})
        attributes["is_submitted"] = bool(application.is_submitted)
        attributes["is_complete"] = bool(application.is_complete)

        return ConditionContext(
            stage_required_documents=stage.required_documents if stage else (),
            stage_required_actions=stage.required_actions if stage else (),
            uploaded_document_types=frozenset(d.document_type for d in documents),
            verified_document_types=frozenset(d.document_type for d in documents if d.is_verified),
            recorded_actions=frozenset(row[0] for row in actions),
            attributes=attributes,
        )

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _resolve_transition(self, application: ApplicationDB, transition_id: str):
        if application.workflow_id is None:
            raise NotInSourceStage(f"Application {application.id} has not been submitted to a workflow")

        graph = self.store.get_graph(application.workflow_id)
        edge = graph.transition(transition_id)
        if edge is None:
            exists = self.db.query(WorkflowTransitionDB.id).filter(
                WorkflowTransitionDB.id == transition_id
            ).first()
            if exists is None:
                raise NotFound(f"Transition {transition_id} not found")
            # Transition of some other workflow: its source can never be our stage
            raise NotInSourceStage(
                f"Transition {transition_id} does not belong to the workflow of application {application.id}"
            )
        return graph, edge

    def _check_permissions(self, application: ApplicationDB, edge: TransitionEdge, actor: Actor) -> None:
        context = {"application_id": application.id, "transition_id": edge.id}
        missing = [
            perm for perm in edge.required_permissions
            if not self.permission_checker.has_permission(actor, perm, context)
        ]
        if missing:
            raise PermissionDenied(
                f"Actor {actor.id} lacks permission(s) {', '.join(missing)} for transition '{edge.name}'"
            )

    def _append_history(
        self,
        application: ApplicationDB,
        graph: WorkflowGraph,
        stage_id: str,
        transition_id: Optional[str],
        actor: Actor,
        notes: Optional[str] = None,
    ) -> ApplicationStatusDB:
        last_position = self.db.query(func.max(ApplicationStatusDB.position)).filter(
            ApplicationStatusDB.application_id == application.id
        ).scalar()
        entry = ApplicationStatusDB(
            id=str(uuid4()),
            application_id=application.id,
            workflow_stage_id=stage_id,
            transition_id=transition_id,
            status_label=graph.stages[stage_id].label,
            actor_id=actor.id,
            actor_type=ActorType.SYSTEM if actor.is_system else ActorType.USER,
            notes=notes,
            position=(last_position or 0) + 1,
        )
        self.db.add(entry)
        return entry

    def _fire(
        self,
        application: ApplicationDB,
        graph: WorkflowGraph,
        edge: TransitionEdge,
        actor: Actor,
        automatic: bool,
    ) -> TransitionResult:
        """Check every gate, then move. Nothing is written unless all gates pass."""
        if application.current_stage_id != edge.source_stage_id:
            raise NotInSourceStage(
                f"Application {application.id} is not in the source stage of transition '{edge.name}'"
            )

        if not automatic:
            self._check_permissions(application, edge, actor)

        source = graph.stage(edge.source_stage_id)
        unmet = edge.conditions.evaluate(self.build_context(application, source))
        if unmet:
            raise ConditionsNotMet(unmet)

        old_stage_id = application.current_stage_id
        application.current_stage_id = edge.target_stage_id
        is_terminal = graph.is_terminal(edge.target_stage_id)
        if is_terminal:
            application.is_complete = True
            application.completed_at = utcnow()

        entry = self._append_history(application, graph, edge.target_stage_id, edge.id, actor)
        self.db.commit()

        logger.info(
            f"Application {application.id}: {graph.stages[old_stage_id].name} -> "
            f"{graph.stages[edge.target_stage_id].name} via '{edge.name}'"
            + (" (automatic)" if automatic else f" by {actor.id}")
        )
        self.projector.on_stage_changed(application, old_stage_id, edge.target_stage_id)

        return TransitionResult(
            application_id=application.id,
            transition_id=edge.id,
            from_stage_id=old_stage_id,
            to_stage_id=edge.target_stage_id,
            status_entry_id=entry.id,
            automatic=automatic,
            is_terminal=is_terminal,
            final_stage_id=edge.target_stage_id,
        )

    def attempt_transition(self, application_id: str, transition_id: str, actor: Actor) -> TransitionResult:
        """
        Move an application along a transition on behalf of an actor.

        Raises NotInSourceStage, PermissionDenied or ConditionsNotMet without
        touching any state. On success, automatic transitions are evaluated
        from the new stage before returning.
        """
        with self.locks.hold(application_id):
            application = self._load_for_update(application_id)
            graph, edge = self._resolve_transition(application, transition_id)
            try:
                result = self._fire(application, graph, edge, actor, automatic=False)
            except (NotInSourceStage, PermissionDenied, ConditionsNotMet) as e:
                logger.warning(f"Transition {transition_id} denied for application {application_id}: {e}")
                raise

            self._sweep_after_event(application_id)
            result.final_stage_id = self.get_application(application_id).current_stage_id
            return result

    def _first_eligible_automatic(self, application: ApplicationDB, graph: WorkflowGraph) -> Optional[TransitionEdge]:
        candidates = graph.automatic_outgoing(application.current_stage_id)
        if not candidates:
            return None
        context = self.build_context(application, graph.stage(application.current_stage_id))
        for edge in candidates:  # already in creation order
            if edge.conditions.is_met(context):
                return edge
        return None

    def evaluate_automatic_transitions(self, application_id: str) -> Optional[str]:
        """
        Fire eligible automatic transitions until none applies or a terminal
        stage is reached.

        Returns the stage reached, or None when nothing fired. Raises
        AutomaticTransitionLoop once the hop bound (number of stages) is
        exceeded; moves made before that point stay committed.
        """
        with self.locks.hold(application_id):
            application = self._load_for_update(application_id)
            if application.workflow_id is None:
                return None

            graph = self.store.get_graph(application.workflow_id)
            max_hops = len(graph.stages)
            hops = 0
            reached: Optional[str] = None

            while not graph.is_terminal(application.current_stage_id):
                edge = self._first_eligible_automatic(application, graph)
                if edge is None:
                    break
                if hops >= max_hops:
                    logger.error(
                        f"Automatic transition loop in workflow {graph.workflow_id}: application "
                        f"{application_id} exceeded {max_hops} hops at stage {application.current_stage_id}"
                    )
                    raise AutomaticTransitionLoop(
                        f"Automatic transitions for application {application_id} exceeded {max_hops} hops; "
                        f"workflow {graph.workflow_id} is misconfigured"
                    )
                self._fire(application, graph, edge, SYSTEM_ACTOR, automatic=True)
                hops += 1
                reached = application.current_stage_id

            return reached

    def _sweep_after_event(self, application_id: str) -> Optional[str]:
        """
        Automatic sweep following a committed event. A loop here is a workflow
        configuration bug; it is logged for administrators and does not undo
        the event that triggered the sweep.
        """
        try:
            return self.evaluate_automatic_transitions(application_id)
        except AutomaticTransitionLoop as e:
            logger.error(f"Configuration error surfaced after event on application {application_id}: {e}")
            return None

    def on_verification_recorded(self, application_id: str) -> Optional[str]:
        """Hook for the verification pipeline after a terminal verification record."""
        return self._sweep_after_event(application_id)

    # =========================================================================
    # ACTIONS AND DATA
    # =========================================================================

    def check_stage_role(
        self,
        actor: Actor,
        application: ApplicationDB,
        fallback_permission: Optional[str] = None,
    ) -> None:
        """
        Require the role assigned to the application's current stage, or the
        fallback permission when the stage has no role (or is unbound).
        """
        role = None
        if application.workflow_id and application.current_stage_id:
            stage = self.store.get_graph(application.workflow_id).stage(application.current_stage_id)
            role = stage.assigned_role if stage else None

        context = {"application_id": application.id, "stage_id": application.current_stage_id}
        if role:
            if not self.permission_checker.has_permission(actor, f"role:{role}", context):
                raise PermissionDenied(f"Actor {actor.id} lacks the '{role}' role required in the current stage")
        elif fallback_permission:
            if not self.permission_checker.has_permission(actor, fallback_permission, context):
                raise PermissionDenied(f"Actor {actor.id} lacks permission {fallback_permission}")

    def check_data_update(self, actor: Actor, application: ApplicationDB, updates: Mapping[str, Any]) -> None:
        protected = sorted(key for key in updates if key in PROTECTED_APPLICATION_FIELDS)
        if actor.id == application.applicant_id and not protected:
            return

        context = {"application_id": application.id, "fields": sorted(updates)}
        if not self.permission_checker.has_permission(actor, UPDATE_APPLICATION_DATA_PERMISSION, context):
            detail = f" (protected: {', '.join(protected)})" if protected else ""
            raise PermissionDenied(
                f"Actor {actor.id} lacks permission {UPDATE_APPLICATION_DATA_PERMISSION}"
                f" for application {application.id}{detail}"
            )

    def record_action(
        self,
        application_id: str,
        action_id: str,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> str:
        """Record a reviewer action, then let automatic transitions react to it."""
        with self.locks.hold(application_id):
            application = self._load_for_update(application_id)
            self.check_stage_role(actor, application, fallback_permission=RECORD_ACTION_PERMISSION)

            action = ApplicationActionDB(
                id=str(uuid4()),
                application_id=application.id,
                action_id=action_id,
                actor_id=actor.id,
                notes=notes,
            )
            self.db.add(action)
            self.db.commit()
            logger.info(f"Action '{action_id}' recorded on application {application_id} by {actor.id}")

            self._sweep_after_event(application_id)
            return action.id

    def update_application_data(
        self,
        application_id: str,
        updates: Mapping[str, Any],
        actor: Actor,
    ) -> Dict[str, Any]:
        """
        Merge attributes read by field conditions (fee paid, deposit paid, ...).

        Applicants may update their own application except for protected
        fields. Anything else needs the update_application_data permission.
        """
        with self.locks.hold(application_id):
            application = self._load_for_update(application_id)
            self.check_data_update(actor, application, updates)

            data = dict(application.application_data or {})
            data.update(updates)
            application.application_data = data
            self.db.commit()
            logger.info(f"Application {application_id} data updated by {actor.id}: {sorted(updates)}")

            self._sweep_after_event(application_id)
            return dict(self.get_application(application_id).application_data or {})

    # =========================================================================
    # READ-ONLY VIEWS
    # =========================================================================

    def get_available_transitions(self, application_id: str, actor: Actor) -> List[TransitionEdge]:
        """Manual transitions from the current stage this actor could fire right now."""
        application = self.get_application(application_id)
        if application.workflow_id is None:
            return []

        graph = self.store.get_graph(application.workflow_id)
        context = self.build_context(application, graph.stage(application.current_stage_id))
        perm_context = {"application_id": application.id}
        return [
            edge for edge in graph.outgoing(application.current_stage_id)
            if not edge.is_automatic
            and edge.conditions.is_met(context)
            and all(
                self.permission_checker.has_permission(actor, perm, dict(perm_context, transition_id=edge.id))
                for perm in edge.required_permissions
            )
        ]

    def evaluate_stage_requirements(self, application_id: str) -> StageRequirements:
        application = self.get_application(application_id)
        if application.workflow_id is None:
            return StageRequirements(stage_id=None)

        stage = self.store.get_graph(application.workflow_id).stage(application.current_stage_id)
        context = self.build_context(application, stage)
        return StageRequirements(
            stage_id=stage.id,
            missing_documents=[t for t in stage.required_documents if t not in context.uploaded_document_types],
            unverified_documents=[
                t for t in stage.required_documents
                if t in context.uploaded_document_types and t not in context.verified_document_types
            ],
            missing_actions=[a for a in stage.required_actions if a not in context.recorded_actions],
        )

    def get_status_history(self, application_id: str) -> List[ApplicationStatusDB]:
        self.get_application(application_id)
        return self.db.query(ApplicationStatusDB).filter(
            ApplicationStatusDB.application_id == application_id
        ).order_by(ApplicationStatusDB.position).all()
