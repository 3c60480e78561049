"""
Admissions Workflow - Value Objects

Plain dataclasses passed between services and the HTTP layer.
None of these touch the database.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional


# =============================================================================
# ACTORS
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller as forwarded by the gateway.

    roles and permissions come straight from the token claims; the
    PermissionChecker decides what they grant.
    """
    id: Optional[str]
    roles: FrozenSet[str] = frozenset()
    permissions: FrozenSet[str] = frozenset()
    is_system: bool = False

    def has_role(self, role: str) -> bool:
        return role in self.roles


# Actor used for automatic transitions and automated verification
SYSTEM_ACTOR = Actor(id=None, is_system=True)


# =============================================================================
# DEFINITION INPUTS
# =============================================================================

@dataclass
class StageSpec:
    """Input for WorkflowDefinitionStore.add_stage."""
    name: str
    sequence: int = 0
    description: Optional[str] = None
    required_documents: List[str] = field(default_factory=list)
    required_actions: List[str] = field(default_factory=list)
    assigned_role: Optional[str] = None
    status_label: Optional[str] = None
    notification_template: Optional[str] = None


@dataclass
class TransitionSpec:
    """Input for WorkflowDefinitionStore.add_transition."""
    name: str
    description: Optional[str] = None
    conditions: List[Dict[str, Any]] = field(default_factory=list)
    required_permissions: List[str] = field(default_factory=list)
    is_automatic: bool = False
    is_retry_loop: bool = False


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class ValidationFinding:
    """One structural problem found by WorkflowDefinitionStore.validate."""
    code: str
    message: str
    stage_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UnmetCondition:
    """A condition leaf that did not hold, with a reviewer-readable description."""
    code: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TransitionResult:
    """Outcome of a successful stage move."""
    application_id: str
    transition_id: str
    from_stage_id: str
    to_stage_id: str
    status_entry_id: str
    automatic: bool = False
    is_terminal: bool = False
    # Where the application ended up after any automatic follow-up moves
    final_stage_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StatusChangedEvent:
    """Emitted by the status projector when the applicant-facing label changes."""
    application_id: str
    old_status: Optional[str]
    new_status: str
    timestamp: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "application_id": self.application_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ClassificationResult:
    """What the classifier (or external registrar) says about a document."""
    confidence: float
    extracted_fields: Dict[str, Any] = field(default_factory=dict)
    # Only the external registrar may reject outright
    rejected: bool = False
    notes: Optional[str] = None


@dataclass
class StageRequirements:
    """What is still outstanding in the application's current stage."""
    stage_id: Optional[str]
    missing_documents: List[str] = field(default_factory=list)
    unverified_documents: List[str] = field(default_factory=list)
    missing_actions: List[str] = field(default_factory=list)

    @property
    def met(self) -> bool:
        return not (self.missing_documents or self.unverified_documents or self.missing_actions)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["met"] = self.met
        return data
