"""Document upload and verification."""
from .upload_policy import UploadPolicy, normalize_mime_type
from .verification_pipeline import (
    DocumentVerificationPipeline,
    VerificationQueue,
    confidence_percentage,
)

__all__ = [
    "UploadPolicy",
    "normalize_mime_type",
    "DocumentVerificationPipeline",
    "VerificationQueue",
    "confidence_percentage",
]
