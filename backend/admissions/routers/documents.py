"""
Document API Routes

Upload, resubmission and verification of application documents.
Verification is queued right after upload by the method routed for the
document type; the response does not wait for it.
"""
from datetime import datetime
from typing import BinaryIO, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, Field

from ..auth import get_current_actor
from ..config import VERIFY_DOCUMENTS_PERMISSION
from ..dependencies import get_pipeline, require_permission
from ..models.db_models import DocumentDB, DocumentVerificationDB, VerificationMethod
from ..models.workflow_objects import Actor
from ..services.documents import DocumentVerificationPipeline, confidence_percentage

router = APIRouter(prefix="/documents", tags=["documents"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ManualVerificationRequest(BaseModel):
    decision: Literal["verified", "rejected"] = Field(..., description="Reviewer outcome")
    notes: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def read_upload(file: BinaryIO, max_bytes: Optional[int]) -> bytes:
    """
    Read at most one byte past the size limit, so an oversized upload is
    rejected by the pipeline without being held in memory whole.
    """
    if max_bytes is None:
        return file.read()
    return file.read(max_bytes + 1)


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _document_response(document: DocumentDB) -> dict:
    return {
        "id": document.id,
        "application_id": document.application_id,
        "document_type": document.document_type,
        "file_name": document.file_name,
        "mime_type": document.mime_type,
        "file_size": document.file_size,
        "is_verified": document.is_verified,
        "verified_at": _format_datetime(document.verified_at),
        "previous_document_id": document.previous_document_id,
        "is_superseded": document.is_superseded,
        "created_at": _format_datetime(document.created_at),
    }


def _verification_response(record: DocumentVerificationDB) -> dict:
    return {
        "id": record.id,
        "document_id": record.document_id,
        "method": record.method.value,
        "status": record.status.value,
        "confidence_score": record.confidence_score,
        "confidence_pct": confidence_percentage(record.confidence_score),
        "extracted_fields": record.extracted_fields,
        "notes": record.notes,
        "verifier": record.verifier,
        "created_at": _format_datetime(record.created_at),
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
def upload_document(
    application_id: str = Form(...),
    document_type: str = Form(...),
    file: UploadFile = File(...),
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(get_current_actor),
):
    """Upload a document and queue verification by the method routed for its type."""
    document_id = pipeline.submit(
        application_id=application_id,
        document_type=document_type,
        file_bytes=read_upload(file.file, pipeline.policy.max_bytes_for(document_type)),
        declared_mime_type=file.content_type,
        file_name=file.filename,
    )
    pipeline.schedule_verification(document_id)
    return _document_response(pipeline.get_document(document_id))


@router.post("/{document_id}/resubmit", response_model=dict)
def resubmit_document(
    document_id: str,
    file: UploadFile = File(...),
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(get_current_actor),
):
    """Replace a rejected document; the old one is kept and marked superseded."""
    previous = pipeline.get_document(document_id)
    new_id = pipeline.resubmit(
        document_id,
        read_upload(file.file, pipeline.policy.max_bytes_for(previous.document_type)),
        declared_mime_type=file.content_type,
        file_name=file.filename,
    )
    pipeline.schedule_verification(new_id)
    return _document_response(pipeline.get_document(new_id))


@router.post("/{document_id}/verify", response_model=dict)
def verify_manual(
    document_id: str,
    request: ManualVerificationRequest,
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(get_current_actor),
):
    record = pipeline.verify_manual(document_id, actor, request.decision, notes=request.notes)
    return _verification_response(record)


@router.post("/{document_id}/verify/automated", response_model=dict)
def trigger_automated_verification(
    document_id: str,
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(require_permission(VERIFY_DOCUMENTS_PERMISSION)),
):
    pipeline.get_document(document_id)
    pipeline.schedule_verification(document_id, VerificationMethod.AUTOMATED)
    return {"document_id": document_id, "queued": True}


@router.post("/{document_id}/verify/external", response_model=dict)
def verify_external(
    document_id: str,
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(require_permission(VERIFY_DOCUMENTS_PERMISSION)),
):
    return _verification_response(pipeline.verify_external(document_id))


@router.get("/pending", response_model=dict)
def list_pending(
    document_type: Optional[str] = None,
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(require_permission(VERIFY_DOCUMENTS_PERMISSION)),
):
    documents = pipeline.list_pending_verifications(document_type=document_type)
    return {"documents": [_document_response(d) for d in documents]}


@router.get("/statistics", response_model=dict)
def get_statistics(
    application_id: Optional[str] = None,
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(require_permission(VERIFY_DOCUMENTS_PERMISSION)),
):
    return pipeline.get_verification_statistics(application_id=application_id)


@router.get("/{document_id}", response_model=dict)
def get_document(
    document_id: str,
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(get_current_actor),
):
    return _document_response(pipeline.get_document(document_id))


@router.get("/{document_id}/history", response_model=dict)
def get_history(
    document_id: str,
    pipeline: DocumentVerificationPipeline = Depends(get_pipeline),
    actor: Actor = Depends(get_current_actor),
):
    """Verification records across the resubmission chain, oldest first."""
    records = pipeline.get_verification_history(document_id)
    return {"document_id": document_id, "history": [_verification_response(r) for r in records]}
