"""
Admissions Workflow - Service Wiring
FastAPI dependencies that assemble services around a request's session.

Collaborators are process-wide singletons; tests swap them through
app.dependency_overrides.
"""
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from .auth import get_current_actor
from .config import ROLE_PERMISSIONS, STORAGE_ROOT
from .database import SessionLocal, get_db
from .models.workflow_objects import Actor
from .services.collaborators import (
    Classifier, ExternalVerifier, LocalFileStorage, LoggingNotifier, Notifier,
    PermissionChecker, RolePermissionChecker, Storage, UnavailableClassifier,
)
from .services.documents import VerificationQueue, DocumentVerificationPipeline
from .services.workflow import (
    ApplicationStatusProjector, PermissionDenied, StageTransitionEngine, WorkflowDefinitionStore,
)


# =============================================================================
# COLLABORATORS
# =============================================================================

@lru_cache()
def get_storage() -> Storage:
    return LocalFileStorage(STORAGE_ROOT)


@lru_cache()
def get_classifier() -> Classifier:
    return UnavailableClassifier()


def get_external_verifier() -> Optional[ExternalVerifier]:
    return None


@lru_cache()
def get_notifier() -> Notifier:
    return LoggingNotifier()


@lru_cache()
def get_permission_checker() -> PermissionChecker:
    return RolePermissionChecker(ROLE_PERMISSIONS)


# =============================================================================
# SERVICES
# =============================================================================

def build_engine(
    db: Session,
    permission_checker: PermissionChecker,
    notifier: Notifier,
) -> StageTransitionEngine:
    store = WorkflowDefinitionStore(db)
    projector = ApplicationStatusProjector(db, store, notifier)
    return StageTransitionEngine(db, store, permission_checker, projector)


def build_pipeline(db: Session) -> DocumentVerificationPipeline:
    """Pipeline for background jobs, which run outside any request."""
    engine = build_engine(db, get_permission_checker(), get_notifier())
    return DocumentVerificationPipeline(
        db, get_storage(), get_classifier(), engine,
        external_verifier=get_external_verifier(),
    )


@lru_cache()
def get_verification_queue() -> Optional[VerificationQueue]:
    return VerificationQueue(SessionLocal, build_pipeline)


def get_workflow_store(db: Session = Depends(get_db)) -> WorkflowDefinitionStore:
    return WorkflowDefinitionStore(db)


def get_projector(
    db: Session = Depends(get_db),
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    notifier: Notifier = Depends(get_notifier),
) -> ApplicationStatusProjector:
    return ApplicationStatusProjector(db, store, notifier)


def get_engine(
    db: Session = Depends(get_db),
    store: WorkflowDefinitionStore = Depends(get_workflow_store),
    permission_checker: PermissionChecker = Depends(get_permission_checker),
    projector: ApplicationStatusProjector = Depends(get_projector),
) -> StageTransitionEngine:
    return StageTransitionEngine(db, store, permission_checker, projector)


def get_pipeline(
    db: Session = Depends(get_db),
    engine: StageTransitionEngine = Depends(get_engine),
    storage: Storage = Depends(get_storage),
    classifier: Classifier = Depends(get_classifier),
    external_verifier: Optional[ExternalVerifier] = Depends(get_external_verifier),
    queue: Optional[VerificationQueue] = Depends(get_verification_queue),
) -> DocumentVerificationPipeline:
    return DocumentVerificationPipeline(
        db, storage, classifier, engine,
        external_verifier=external_verifier,
        queue=queue,
    )


# =============================================================================
# AUTHORIZATION
# =============================================================================

def require_permission(permission: str):
    """Dependency factory: the current actor must hold `permission`."""

    def dependency(
        actor: Actor = Depends(get_current_actor),
        permission_checker: PermissionChecker = Depends(get_permission_checker),
    ) -> Actor:
        if not permission_checker.has_permission(actor, permission, {}):
            raise PermissionDenied(f"Actor {actor.id} lacks permission {permission}")
        return actor

    return dependency
