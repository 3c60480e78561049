"""
Application API Routes

Submission, stage transitions, reviewer actions and status views.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..auth import get_current_actor
from ..dependencies import get_engine, get_projector
from ..models.workflow_objects import Actor
from ..services.workflow import ApplicationStatusProjector, StageTransitionEngine

router = APIRouter(prefix="/applications", tags=["applications"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateApplicationRequest(BaseModel):
    application_type: str = Field(..., description="Selects the active workflow at submission")
    application_data: Dict[str, Any] = Field(default_factory=dict)


class RecordActionRequest(BaseModel):
    action_id: str = Field(..., description="Stage action identifier, e.g. complete_interview")
    notes: Optional[str] = None


class UpdateApplicationDataRequest(BaseModel):
    updates: Dict[str, Any] = Field(..., description="Attributes merged into application_data")


# =============================================================================
# HELPERS
# =============================================================================

def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
def create_application(
    request: CreateApplicationRequest,
    engine: StageTransitionEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    """Create a draft application owned by the caller."""
    application_id = engine.create_application(
        applicant_id=actor.id,
        application_type=request.application_type,
        application_data=request.application_data,
    )
    return {"application_id": application_id}


@router.post("/{application_id}/submit", response_model=dict)
def submit_application(
    application_id: str,
    engine: StageTransitionEngine = Depends(get_engine),
    projector: ApplicationStatusProjector = Depends(get_projector),
    actor: Actor = Depends(get_current_actor),
):
    """Bind the application to the active workflow of its type."""
    stage_id = engine.bind_application(application_id, actor)
    return {
        "application_id": application_id,
        "current_stage_id": stage_id,
        "status": projector.project_status(application_id),
    }


@router.get("/{application_id}", response_model=dict)
def get_application(
    application_id: str,
    engine: StageTransitionEngine = Depends(get_engine),
    projector: ApplicationStatusProjector = Depends(get_projector),
    actor: Actor = Depends(get_current_actor),
):
    application = engine.get_application(application_id)
    return {
        "id": application.id,
        "applicant_id": application.applicant_id,
        "application_type": application.application_type,
        "workflow_id": application.workflow_id,
        "current_stage_id": application.current_stage_id,
        "status": projector.project_status(application_id),
        "is_submitted": application.is_submitted,
        "submitted_at": _format_datetime(application.submitted_at),
        "is_complete": application.is_complete,
        "completed_at": _format_datetime(application.completed_at),
        "application_data": application.application_data or {},
    }


@router.get("/{application_id}/status", response_model=dict)
def get_status(
    application_id: str,
    projector: ApplicationStatusProjector = Depends(get_projector),
    actor: Actor = Depends(get_current_actor),
):
    return {"application_id": application_id, "status": projector.project_status(application_id)}


@router.get("/{application_id}/history", response_model=dict)
def get_history(
    application_id: str,
    engine: StageTransitionEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    entries = engine.get_status_history(application_id)
    return {
        "application_id": application_id,
        "history": [
            {
                "id": e.id,
                "stage_id": e.workflow_stage_id,
                "transition_id": e.transition_id,
                "status": e.status_label,
                "actor_id": e.actor_id,
                "actor_type": e.actor_type.value,
                "notes": e.notes,
                "created_at": _format_datetime(e.created_at),
            }
            for e in entries
        ],
    }


@router.get("/{application_id}/transitions", response_model=dict)
def get_available_transitions(
    application_id: str,
    engine: StageTransitionEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    edges = engine.get_available_transitions(application_id, actor)
    return {
        "transitions": [
            {"id": e.id, "name": e.name, "target_stage_id": e.target_stage_id}
            for e in edges
        ]
    }


@router.get("/{application_id}/requirements", response_model=dict)
def get_requirements(
    application_id: str,
    engine: StageTransitionEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    return engine.evaluate_stage_requirements(application_id).to_dict()


@router.post("/{application_id}/transitions/{transition_id}", response_model=dict)
def attempt_transition(
    application_id: str,
    transition_id: str,
    engine: StageTransitionEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    """
    Move the application along a transition.

    Rejections come back as 409 (wrong stage), 403 (permission) or
    422 with the unmet conditions listed.
    """
    return engine.attempt_transition(application_id, transition_id, actor).to_dict()


@router.post("/{application_id}/actions", response_model=dict)
def record_action(
    application_id: str,
    request: RecordActionRequest,
    engine: StageTransitionEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    action_id = engine.record_action(application_id, request.action_id, actor, notes=request.notes)
    application = engine.get_application(application_id)
    return {"id": action_id, "current_stage_id": application.current_stage_id}


@router.patch("/{application_id}/data", response_model=dict)
def update_application_data(
    application_id: str,
    request: UpdateApplicationDataRequest,
    engine: StageTransitionEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    data = engine.update_application_data(application_id, request.updates, actor)
    application = engine.get_application(application_id)
    return {"application_data": data, "current_stage_id": application.current_stage_id}
