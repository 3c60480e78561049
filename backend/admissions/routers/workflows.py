"""
Workflow Editor API Routes

Admin endpoints for building, validating and activating workflow graphs.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import get_workflow_store, require_permission
from ..models.db_models import WorkflowDB
from ..models.workflow_objects import Actor, StageSpec, TransitionSpec
from ..services.workflow import WorkflowDefinitionStore

router = APIRouter(prefix="/workflows", tags=["workflows"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateWorkflowRequest(BaseModel):
    name: str = Field(..., description="Display name of the workflow")
    application_type: str = Field(..., description="Application type this workflow serves (undergraduate, graduate, ...)")
    description: Optional[str] = None


class AddStageRequest(BaseModel):
    name: str
    sequence: int = Field(default=0, description="Ordering hint for editors")
    description: Optional[str] = None
    required_documents: List[str] = Field(default_factory=list)
    required_actions: List[str] = Field(default_factory=list)
    assigned_role: Optional[str] = None
    status_label: Optional[str] = Field(None, description="Applicant-facing status while in this stage")
    notification_template: Optional[str] = Field(None, description="Template sent on stage entry")


class AddTransitionRequest(BaseModel):
    source_stage_id: str
    target_stage_id: str
    name: str
    description: Optional[str] = None
    conditions: List[Dict[str, Any]] = Field(default_factory=list, description="Condition tree, implicit 'all'")
    required_permissions: List[str] = Field(default_factory=list)
    is_automatic: bool = False
    is_retry_loop: bool = Field(default=False, description="Required for self-loops")


class DuplicateWorkflowRequest(BaseModel):
    name: str


# =============================================================================
# HELPERS
# =============================================================================

def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _workflow_summary(workflow: WorkflowDB) -> dict:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "application_type": workflow.application_type,
        "is_active": workflow.is_active,
        "is_frozen": workflow.is_frozen,
        "activated_at": _format_datetime(workflow.activated_at),
        "created_at": _format_datetime(workflow.created_at),
    }


def _workflow_detail(workflow: WorkflowDB) -> dict:
    data = _workflow_summary(workflow)
    data["stages"] = [
        {
            "id": s.id,
            "name": s.name,
            "description": s.description,
            "sequence": s.sequence,
            "required_documents": s.required_documents or [],
            "required_actions": s.required_actions or [],
            "assigned_role": s.assigned_role,
            "status_label": s.status_label,
            "notification_template": s.notification_template,
        }
        for s in workflow.stages
    ]
    data["transitions"] = [
        {
            "id": t.id,
            "name": t.name,
            "description": t.description,
            "source_stage_id": t.source_stage_id,
            "target_stage_id": t.target_stage_id,
            "conditions": t.transition_conditions or [],
            "required_permissions": t.required_permissions or [],
            "is_automatic": t.is_automatic,
            "is_retry_loop": t.is_retry_loop,
        }
        for t in workflow.transitions
    ]
    return data


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
def create_workflow(
    request: CreateWorkflowRequest,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("edit_workflow")),
):
    workflow_id = store.create_workflow(
        name=request.name,
        application_type=request.application_type,
        created_by=actor.id,
        description=request.description,
    )
    return {"workflow_id": workflow_id}


@router.get("", response_model=dict)
def list_workflows(
    application_type: Optional[str] = None,
    active: Optional[bool] = None,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("view_workflow_editor")),
):
    workflows = store.list_workflows(application_type=application_type, active=active)
    return {"workflows": [_workflow_summary(w) for w in workflows]}


@router.get("/{workflow_id}", response_model=dict)
def get_workflow(
    workflow_id: str,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("view_workflow_editor")),
):
    return _workflow_detail(store.get_workflow(workflow_id))


@router.post("/{workflow_id}/stages", response_model=dict)
def add_stage(
    workflow_id: str,
    request: AddStageRequest,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("edit_workflow")),
):
    stage_id = store.add_stage(workflow_id, StageSpec(**request.model_dump()))
    return {"stage_id": stage_id}


@router.post("/{workflow_id}/transitions", response_model=dict)
def add_transition(
    workflow_id: str,
    request: AddTransitionRequest,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("edit_workflow")),
):
    spec = TransitionSpec(**request.model_dump(exclude={"source_stage_id", "target_stage_id"}))
    transition_id = store.add_transition(workflow_id, request.source_stage_id, request.target_stage_id, spec)
    return {"transition_id": transition_id}


@router.get("/{workflow_id}/validate", response_model=dict)
def validate_workflow(
    workflow_id: str,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("view_workflow_editor")),
):
    findings = store.validate(workflow_id)
    return {"valid": not findings, "findings": [f.to_dict() for f in findings]}


@router.post("/{workflow_id}/activate", response_model=dict)
def activate_workflow(
    workflow_id: str,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("activate_workflow")),
):
    store.activate(workflow_id, actor_id=actor.id)
    return _workflow_summary(store.get_workflow(workflow_id))


@router.post("/{workflow_id}/deactivate", response_model=dict)
def deactivate_workflow(
    workflow_id: str,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("activate_workflow")),
):
    store.deactivate(workflow_id, actor_id=actor.id)
    return _workflow_summary(store.get_workflow(workflow_id))


@router.post("/{workflow_id}/duplicate", response_model=dict)
def duplicate_workflow(
    workflow_id: str,
    request: DuplicateWorkflowRequest,
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    actor: Actor = Depends(require_permission("edit_workflow")),
):
    return {"workflow_id": store.duplicate(workflow_id, request.name, created_by=actor.id)}
