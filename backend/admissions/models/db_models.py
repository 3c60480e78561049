"""
Admissions Workflow - SQLAlchemy ORM Models
Persistent storage for workflow graphs, applications and documents
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum, Boolean
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Timezone-aware UTC now, used for every timestamp column."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class ActorType(str, Enum):
    """Who moved an application or recorded an event."""
    USER = "USER"
    SYSTEM = "SYSTEM"


class VerificationMethod(str, Enum):
    """How a document's authenticity/content was checked."""
    AUTOMATED = "automated"
    MANUAL = "manual"
    EXTERNAL = "external"


class VerificationStatus(str, Enum):
    """Outcome of a single verification attempt."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


TERMINAL_VERIFICATION_STATUSES = (VerificationStatus.VERIFIED, VerificationStatus.REJECTED)


# =============================================================================
# WORKFLOW DEFINITION MODELS
# =============================================================================

class WorkflowDB(Base):
    """
    Application-type-specific admissions process.

    Draft until activated. Once activated_at is set the graph is frozen for
    good; deactivation only clears is_active.
    """
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    application_type = Column(String(100), nullable=False, index=True)

    is_active = Column(Boolean, default=False, nullable=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)  # Set on first activation, never cleared
    created_by = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    stages = relationship(
        "WorkflowStageDB", back_populates="workflow",
        cascade="all, delete-orphan", order_by="WorkflowStageDB.sequence",
    )
    transitions = relationship(
        "WorkflowTransitionDB", back_populates="workflow",
        cascade="all, delete-orphan", order_by="WorkflowTransitionDB.creation_order",
    )

    @property
    def is_frozen(self) -> bool:
        return self.activated_at is not None


class WorkflowStageDB(Base):
    """A node in the workflow graph."""
    __tablename__ = "workflow_stages"

    id = Column(String(36), primary_key=True)  # UUID
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    sequence = Column(Integer, default=0)  # Ordering hint only, the graph may branch

    required_documents = Column(JSON, default=list)  # ["transcript", "personal_statement"]
    required_actions = Column(JSON, default=list)    # ["complete_interview"]
    assigned_role = Column(String(100), nullable=True)

    # Applicant-facing label shown while an application sits in this stage
    status_label = Column(String(100), nullable=True)
    # Template sent to the applicant on stage entry
    notification_template = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    workflow = relationship("WorkflowDB", back_populates="stages")


class WorkflowTransitionDB(Base):
    """Directed, conditionally-gated edge between two stages of one workflow."""
    __tablename__ = "workflow_transitions"

    id = Column(String(36), primary_key=True)  # UUID
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    source_stage_id = Column(String(36), ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False, index=True)
    target_stage_id = Column(String(36), ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Serialised condition tree, see services/workflow/conditions.py
    transition_conditions = Column(JSON, default=list)
    required_permissions = Column(JSON, default=list)
    is_automatic = Column(Boolean, default=False, nullable=False)
    is_retry_loop = Column(Boolean, default=False, nullable=False)  # Legitimises a self-loop

    # Monotonic per workflow; earliest-created automatic transition wins
    creation_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    workflow = relationship("WorkflowDB", back_populates="transitions")
    source_stage = relationship("WorkflowStageDB", foreign_keys=[source_stage_id])
    target_stage = relationship("WorkflowStageDB", foreign_keys=[target_stage_id])


# =============================================================================
# APPLICATION MODELS
# =============================================================================

class ApplicationDB(Base):
    """
    The subject moving through the workflow graph.
    workflow_id and current_stage_id stay NULL until submission binds it.
    """
    __tablename__ = "applications"

    id = Column(String(36), primary_key=True)  # UUID
    applicant_id = Column(String(36), nullable=False, index=True)
    application_type = Column(String(100), nullable=False, index=True)

    # State pointer
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=True, index=True)
    current_stage_id = Column(String(36), ForeignKey("workflow_stages.id"), nullable=True)

    is_submitted = Column(Boolean, default=False, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    is_complete = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Free-form attributes read by field conditions (application_fee_paid, interview_completed, ...)
    application_data = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    status_history = relationship(
        "ApplicationStatusDB", back_populates="application",
        cascade="all, delete-orphan", order_by="ApplicationStatusDB.position",
    )
    actions = relationship("ApplicationActionDB", back_populates="application", cascade="all, delete-orphan")
    documents = relationship("DocumentDB", back_populates="application", cascade="all, delete-orphan")


class ApplicationStatusDB(Base):
    """
    Immutable status history entry.
    Append-only - one row per stage entry.
    """
    __tablename__ = "application_statuses"

    id = Column(String(36), primary_key=True)  # UUID
    application_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    workflow_stage_id = Column(String(36), ForeignKey("workflow_stages.id"), nullable=False)
    transition_id = Column(String(36), ForeignKey("workflow_transitions.id"), nullable=True)  # NULL for the initial entry

    status_label = Column(String(100), nullable=True)
    actor_id = Column(String(36), nullable=True)
    actor_type = Column(SQLEnum(ActorType), nullable=False)
    notes = Column(Text, nullable=True)

    # Disambiguates entries written within the same clock tick
    position = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    application = relationship("ApplicationDB", back_populates="status_history")


class ApplicationActionDB(Base):
    """Reviewer action recorded against an application (interview done, fee checked, ...)."""
    __tablename__ = "application_actions"

    id = Column(String(36), primary_key=True)  # UUID
    application_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    action_id = Column(String(100), nullable=False)
    actor_id = Column(String(36), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    application = relationship("ApplicationDB", back_populates="actions")


# =============================================================================
# DOCUMENT MODELS
# =============================================================================

class DocumentDB(Base):
    """
    Uploaded file attached to an application.
    Never hard-deleted. A resubmission creates a new row pointing at the
    previous one and marks the previous one superseded.
    """
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True)  # UUID
    application_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    document_type = Column(String(100), nullable=False, index=True)

    file_name = Column(String(255), nullable=True)
    mime_type = Column(String(100), nullable=False)
    file_size = Column(Integer, nullable=False)
    storage_reference = Column(String(500), nullable=False)

    # Mirrors the most recent terminal verification record only
    is_verified = Column(Boolean, default=False, nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(String(36), nullable=True)  # NULL for automated verification

    previous_document_id = Column(String(36), ForeignKey("documents.id"), nullable=True)
    is_superseded = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    application = relationship("ApplicationDB", back_populates="documents")
    verifications = relationship(
        "DocumentVerificationDB", back_populates="document",
        cascade="all, delete-orphan", order_by="DocumentVerificationDB.position",
    )


class DocumentVerificationDB(Base):
    """
    Immutable audit record of one verification attempt.
    Append-only - re-review writes a new record.
    """
    __tablename__ = "document_verifications"

    id = Column(String(36), primary_key=True)  # UUID
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)

    method = Column(SQLEnum(VerificationMethod), nullable=False)
    status = Column(SQLEnum(VerificationStatus), nullable=False)
    confidence_score = Column(Float, nullable=True)  # 0..1, automated/external only
    extracted_fields = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    verifier = Column(String(36), nullable=True)  # NULL for automated verification

    position = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    document = relationship("DocumentDB", back_populates="verifications")
