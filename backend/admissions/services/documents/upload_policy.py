"""
Upload policy: which files are accepted for which document types.

Document types map to an upload category (documents, attachments,
financial_aid); each category carries its own MIME whitelist and size cap.
"""
from typing import Dict, Iterable, Mapping, Optional

from ...config import ALLOWED_MIME_TYPES, MAX_FILE_SIZES_KB, DOCUMENT_CATEGORIES, DEFAULT_DOCUMENT_CATEGORY
from ..errors import FileTooLarge, UnsupportedMimeType


def normalize_mime_type(mime_type: Optional[str]) -> str:
    """'Application/PDF; charset=binary' -> 'application/pdf'"""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


class UploadPolicy:

    def __init__(
        self,
        allowed_mime_types: Mapping[str, Iterable[str]] = ALLOWED_MIME_TYPES,
        max_file_sizes_kb: Mapping[str, int] = MAX_FILE_SIZES_KB,
        document_categories: Mapping[str, str] = DOCUMENT_CATEGORIES,
        default_category: str = DEFAULT_DOCUMENT_CATEGORY,
    ):
        self.allowed_mime_types: Dict[str, frozenset] = {
            category: frozenset(normalize_mime_type(m) for m in mimes)
            for category, mimes in allowed_mime_types.items()
        }
        self.max_file_sizes_kb = dict(max_file_sizes_kb)
        self.document_categories = dict(document_categories)
        self.default_category = default_category

    def category_for(self, document_type: str) -> str:
        return self.document_categories.get(document_type, self.default_category)

    def max_bytes_for(self, document_type: str) -> Optional[int]:
        limit_kb = self.max_file_sizes_kb.get(self.category_for(document_type))
        return limit_kb * 1024 if limit_kb is not None else None

    def check(self, document_type: str, mime_type: Optional[str], size_bytes: int) -> str:
        """
        Raise UnsupportedMimeType or FileTooLarge if the upload is not
        acceptable for this document type. Returns the normalised MIME type.
        """
        category = self.category_for(document_type)
        normalized = normalize_mime_type(mime_type)

        allowed = self.allowed_mime_types.get(category, frozenset())
        if normalized not in allowed:
            raise UnsupportedMimeType(
                f"MIME type '{mime_type}' is not accepted for {document_type} "
                f"(allowed: {', '.join(sorted(allowed)) or 'none'})"
            )

        max_bytes = self.max_bytes_for(document_type)
        if max_bytes is not None and size_bytes > max_bytes:
            raise FileTooLarge(
                f"{document_type} upload is {size_bytes} bytes; the limit for {category} is {max_bytes} bytes"
            )
        return normalized
