"""
Shared fixtures: in-memory SQLite sessions, fake collaborators and a small
builder for workflow graphs.
"""
import os

# Must be set before admissions.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from admissions.database import Base
from admissions.models import db_models  # noqa: F401  registers tables
from admissions.models.workflow_objects import Actor, ClassificationResult, StageSpec, TransitionSpec
from admissions.services.collaborators import LoggingNotifier, RolePermissionChecker
from admissions.services.documents import DocumentVerificationPipeline, UploadPolicy
from admissions.services.workflow import (
    ApplicationLockRegistry, ApplicationStatusProjector, StageTransitionEngine,
    WorkflowDefinitionStore, graph_cache,
)


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakeStorage:
    """In-memory blob store."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        reference = uuid4().hex
        self.blobs[reference] = data
        return reference

    def get(self, reference: str) -> bytes:
        return self.blobs[reference]

    def delete(self, reference: str) -> None:
        self.blobs.pop(reference, None)


class FakeClassifier:
    """Returns a fixed confidence; records what it was asked to classify."""

    def __init__(self, confidence: float = 0.95, extracted_fields: Optional[dict] = None, rejected: bool = False):
        self.confidence = confidence
        self.extracted_fields = extracted_fields or {}
        self.rejected = rejected
        self.calls: List[str] = []

    def classify(self, data: bytes, declared_type: str) -> ClassificationResult:
        self.calls.append(declared_type)
        return ClassificationResult(
            confidence=self.confidence,
            extracted_fields=dict(self.extracted_fields),
            rejected=self.rejected,
        )

    # The external registrar shares the same contract
    verify = classify


TEST_ROLE_PERMISSIONS = {
    "verify_documents": ["admin", "verification_team"],
    "update_application_data": ["admin", "bursar"],
    "record_application_action": ["admin", "staff"],
    "make_admission_decision": ["admissions_director"],
    "complete_review": ["admissions_committee"],
    "request_additional_info": ["admissions_committee"],
    "edit_workflow": ["admin"],
    "view_workflow_editor": ["admin"],
    "activate_workflow": ["admin"],
}


def make_actor(actor_id: str = "reviewer-1", roles=(), permissions=()) -> Actor:
    return Actor(id=actor_id, roles=frozenset(roles), permissions=frozenset(permissions))


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture(autouse=True)
def clear_graph_cache():
    graph_cache.clear()
    yield
    graph_cache.clear()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def store(db):
    return WorkflowDefinitionStore(db)


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def permission_checker():
    return RolePermissionChecker(TEST_ROLE_PERMISSIONS)


@pytest.fixture
def projector(db, store, notifier):
    return ApplicationStatusProjector(db, store, notifier, notify_timeout=2)


@pytest.fixture
def engine(db, store, permission_checker, projector):
    return StageTransitionEngine(db, store, permission_checker, projector, locks=ApplicationLockRegistry())


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def pipeline(db, storage, classifier, engine):
    return DocumentVerificationPipeline(
        db, storage, classifier, engine,
        external_verifier=FakeClassifier(confidence=0.99),
        policy=UploadPolicy(),
        confidence_thresholds={"transcript": 0.8},
        default_threshold=0.85,
    )


# =============================================================================
# WORKFLOW BUILDER
# =============================================================================

@pytest.fixture
def make_workflow(store):
    """
    Build a workflow from compact stage/transition descriptions.

    stages: list of dicts with StageSpec fields (sequence defaults to position)
    transitions: list of (source_name, target_name, dict of TransitionSpec fields)
    Returns (workflow_id, {stage_name: stage_id}, {transition_name: transition_id}).
    """

    def _make(stages, transitions, application_type="undergraduate", activate=True, name="Test Workflow"):
        workflow_id = store.create_workflow(name, application_type, created_by="admin-1")
        stage_ids = {}
        for index, stage in enumerate(stages, start=1):
            fields = dict(stage)
            fields.setdefault("sequence", index)
            stage_ids[fields["name"]] = store.add_stage(workflow_id, StageSpec(**fields))
        transition_ids = {}
        for source, target, fields in transitions:
            spec = TransitionSpec(**fields)
            transition_ids[spec.name] = store.add_transition(
                workflow_id, stage_ids[source], stage_ids[target], spec
            )
        if activate:
            store.activate(workflow_id, actor_id="admin-1")
        return workflow_id, stage_ids, transition_ids

    return _make


@pytest.fixture
def review_workflow(make_workflow):
    """
    Submitted --(auto: transcript verified)--> Review --(decision)--> Accepted
                                                      --(decision)--> Rejected
    Submitted is owned by the staff role.
    """
    return make_workflow(
        stages=[
            {"name": "Submitted", "required_documents": ["transcript"], "assigned_role": "staff",
             "notification_template": "application_received"},
            {"name": "Review", "assigned_role": "admissions_committee", "status_label": "Under Review"},
            {"name": "Accepted", "notification_template": "acceptance_notification"},
            {"name": "Rejected", "status_label": "Not Admitted"},
        ],
        transitions=[
            ("Submitted", "Review", {"name": "Documents Verified", "is_automatic": True,
                                     "conditions": [{"type": "all_documents_verified"}]}),
            ("Review", "Accepted", {"name": "Accept", "required_permissions": ["make_admission_decision"]}),
            ("Review", "Rejected", {"name": "Reject", "required_permissions": ["make_admission_decision"]}),
        ],
    )


@pytest.fixture
def submitted_application(engine, review_workflow):
    """An application bound to review_workflow, sitting in Submitted."""
    application_id = engine.create_application("applicant-1", "undergraduate", {"gpa": 3.7})
    engine.bind_application(application_id, make_actor("applicant-1"))
    return application_id
