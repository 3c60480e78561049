"""
Workflow Errors

Business-rule violations are final: retrying with the same input cannot
succeed, and a failed call has mutated nothing. Collaborator errors
(storage, classifier, registrar) are retryable by the caller with backoff.
"""
from typing import List, Optional, Sequence


class WorkflowError(Exception):
    """Base exception for the admissions workflow core."""
    code = "WORKFLOW_ERROR"
    retryable = False

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFound(WorkflowError):
    """Raised when a referenced workflow, stage, application or document does not exist."""
    code = "NOT_FOUND"


class AutomaticTransitionLoop(WorkflowError):
    """Automatic transitions kept firing past the hop bound - a configuration bug."""
    code = "AUTOMATIC_TRANSITION_LOOP"


# =============================================================================
# BUSINESS RULE VIOLATIONS
# =============================================================================

class BusinessRuleViolation(WorkflowError):
    """Rejected by a rule. Never retried automatically."""
    code = "BUSINESS_RULE_VIOLATION"


class InvalidWorkflowState(BusinessRuleViolation):
    """Mutation attempted on an active or frozen workflow."""
    code = "INVALID_WORKFLOW_STATE"


class CrossWorkflowReference(BusinessRuleViolation):
    """Transition endpoints belong to different workflows."""
    code = "CROSS_WORKFLOW_REFERENCE"


class InvalidCondition(BusinessRuleViolation):
    """Malformed transition condition tree."""
    code = "INVALID_CONDITION"


class ValidationFailed(BusinessRuleViolation):
    """Workflow failed structural validation; carries the findings."""
    code = "VALIDATION_FAILED"

    def __init__(self, findings: Sequence):
        self.findings = list(findings)
        summary = "; ".join(f.message for f in self.findings)
        super().__init__(f"Workflow validation failed: {summary}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["findings"] = [f.to_dict() for f in self.findings]
        return data


class InvalidApplicationState(BusinessRuleViolation):
    """Application is not in a state that allows the requested operation."""
    code = "INVALID_APPLICATION_STATE"


class NotInSourceStage(BusinessRuleViolation):
    """Application's current stage is not the transition's source stage."""
    code = "NOT_IN_SOURCE_STAGE"


class PermissionDenied(BusinessRuleViolation):
    """Actor lacks a required permission or role."""
    code = "PERMISSION_DENIED"


class ConditionsNotMet(BusinessRuleViolation):
    """One or more transition conditions do not hold; carries the unmet list."""
    code = "CONDITIONS_NOT_MET"

    def __init__(self, unmet: Sequence):
        self.unmet = list(unmet)
        super().__init__(self.reason)

    @property
    def reasons(self) -> List[str]:
        return [u.description for u in self.unmet]

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons) or "Transition conditions not met"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["unmet_conditions"] = [u.to_dict() for u in self.unmet]
        return data


class UnsupportedMimeType(BusinessRuleViolation):
    code = "UNSUPPORTED_MIME_TYPE"


class FileTooLarge(BusinessRuleViolation):
    code = "FILE_TOO_LARGE"


class ResubmissionNotAllowed(BusinessRuleViolation):
    """Only a document whose latest verification was rejected can be resubmitted."""
    code = "RESUBMISSION_NOT_ALLOWED"


# =============================================================================
# COLLABORATOR FAILURES
# =============================================================================

class CollaboratorError(WorkflowError):
    """External collaborator failed. Safe for the caller to retry with backoff."""
    code = "COLLABORATOR_ERROR"
    retryable = True

    def __init__(self, collaborator: str, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, original_error)
        self.collaborator = collaborator

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["collaborator"] = self.collaborator
        data["retryable"] = True
        return data


class CollaboratorTimeout(CollaboratorError):
    code = "COLLABORATOR_TIMEOUT"


class CollaboratorUnavailable(CollaboratorError):
    code = "COLLABORATOR_UNAVAILABLE"
