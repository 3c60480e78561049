"""
Admissions Workflow Core

Workflow definitions, the stage transition engine and status projection.
"""

from .conditions import ConditionContext, parse_condition, parse_conditions
from .definition_store import WorkflowDefinitionStore, validate_graph
from ..errors import (
    WorkflowError, BusinessRuleViolation, NotFound, AutomaticTransitionLoop,
    InvalidWorkflowState, CrossWorkflowReference, InvalidCondition, ValidationFailed,
    InvalidApplicationState, NotInSourceStage, PermissionDenied, ConditionsNotMet,
    UnsupportedMimeType, FileTooLarge, ResubmissionNotAllowed,
    CollaboratorError, CollaboratorTimeout, CollaboratorUnavailable,
)
from .graph import WorkflowGraph, WorkflowGraphCache, graph_cache
from .locks import ApplicationLockRegistry, application_locks
from .status_projector import ApplicationStatusProjector, DRAFT_STATUS
from .transition_engine import StageTransitionEngine
from .templates import DEFAULT_TEMPLATES, GRADUATE_TEMPLATE, UNDERGRADUATE_TEMPLATE, install_template

__all__ = [
    "ConditionContext",
    "parse_condition",
    "parse_conditions",
    "WorkflowDefinitionStore",
    "validate_graph",
    "WorkflowError",
    "BusinessRuleViolation",
    "NotFound",
    "AutomaticTransitionLoop",
    "InvalidWorkflowState",
    "CrossWorkflowReference",
    "InvalidCondition",
    "ValidationFailed",
    "InvalidApplicationState",
    "NotInSourceStage",
    "PermissionDenied",
    "ConditionsNotMet",
    "UnsupportedMimeType",
    "FileTooLarge",
    "ResubmissionNotAllowed",
    "CollaboratorError",
    "CollaboratorTimeout",
    "CollaboratorUnavailable",
    "WorkflowGraph",
    "WorkflowGraphCache",
    "graph_cache",
    "ApplicationLockRegistry",
    "application_locks",
    "ApplicationStatusProjector",
    "DRAFT_STATUS",
    "StageTransitionEngine",
    "DEFAULT_TEMPLATES",
    "UNDERGRADUATE_TEMPLATE",
    "GRADUATE_TEMPLATE",
    "install_template",
]
