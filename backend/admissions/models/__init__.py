"""Admissions Workflow - Data Models"""
from .workflow_objects import (
    Actor, SYSTEM_ACTOR,
    StageSpec, TransitionSpec,
    ValidationFinding, UnmetCondition, TransitionResult,
    StatusChangedEvent, ClassificationResult, StageRequirements,
)

__all__ = [
    "Actor", "SYSTEM_ACTOR",
    "StageSpec", "TransitionSpec",
    "ValidationFinding", "UnmetCondition", "TransitionResult",
    "StatusChangedEvent", "ClassificationResult", "StageRequirements",
]
