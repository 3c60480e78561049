"""Admissions Workflow - API Routers"""
from .workflows import router as workflows_router
from .applications import router as applications_router
from .documents import router as documents_router
from .errors import workflow_error_handler

__all__ = [
    "workflows_router",
    "applications_router",
    "documents_router",
    "workflow_error_handler",
]
