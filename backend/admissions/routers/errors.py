"""
HTTP mapping for workflow errors.

Every WorkflowError reaching the API becomes a JSON body of the form
{"detail": {"code": ..., "message": ..., ...}}. Order matters: the first
matching class wins, so subclasses come before their bases.
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from ..services.errors import (
    WorkflowError, BusinessRuleViolation, NotFound, AutomaticTransitionLoop,
    PermissionDenied, FileTooLarge, UnsupportedMimeType,
    ValidationFailed, ConditionsNotMet, InvalidCondition, CrossWorkflowReference,
    NotInSourceStage, InvalidWorkflowState, InvalidApplicationState, ResubmissionNotAllowed,
    CollaboratorTimeout, CollaboratorError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = [
    (NotFound, 404),
    (PermissionDenied, 403),
    (FileTooLarge, 413),
    (UnsupportedMimeType, 415),
    (ValidationFailed, 422),
    (ConditionsNotMet, 422),
    (InvalidCondition, 422),
    (CrossWorkflowReference, 422),
    (NotInSourceStage, 409),
    (InvalidWorkflowState, 409),
    (InvalidApplicationState, 409),
    (ResubmissionNotAllowed, 409),
    (BusinessRuleViolation, 400),
    (AutomaticTransitionLoop, 500),
    (CollaboratorTimeout, 504),
    (CollaboratorError, 503),
]


def status_for(exc: WorkflowError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            return status_code
    return 500


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})
