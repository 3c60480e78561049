"""
Document Verification Pipeline

Moves uploaded documents from pending to verified or rejected through
automated classification, the external registrar, or manual review.

Core Principles:
1. Verification records are append-only. Re-review writes a new record.
2. Automated checks never reject; low confidence escalates to manual review.
3. Documents are never hard-deleted. Resubmission links a new document to
   the rejected one and marks the old one superseded.
4. Every terminal record (verified/rejected) gives the transition engine a
   chance to fire automatic transitions for the owning application.
5. Each document type routes to one method on upload. Types routed to
   manual review stay pending until a reviewer decides.
"""
import concurrent.futures
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...config import (
    AUTOMATED_VERIFICATION_TYPES, CLASSIFIER_TIMEOUT_SECONDS, CONFIDENCE_THRESHOLDS,
    DEFAULT_CONFIDENCE_THRESHOLD, EXTERNAL_VERIFICATION_TYPES, EXTERNAL_VERIFIER_TIMEOUT_SECONDS,
    STORAGE_TIMEOUT_SECONDS, VERIFICATION_METHODS_BY_DOCUMENT_TYPE, VERIFICATION_WORKERS,
    VERIFY_DOCUMENTS_PERMISSION,
)
from ...models.db_models import (
    DocumentDB, DocumentVerificationDB, TERMINAL_VERIFICATION_STATUSES,
    VerificationMethod, VerificationStatus, utcnow,
)
from ...models.workflow_objects import Actor, ClassificationResult
from ..collaborators import Classifier, ExternalVerifier, Storage, call_with_timeout
from ..errors import (
    CollaboratorError, CollaboratorUnavailable, InvalidApplicationState,
    NotFound, ResubmissionNotAllowed, WorkflowError,
)
from ..workflow.transition_engine import StageTransitionEngine
from .upload_policy import UploadPolicy

logger = logging.getLogger(__name__)


def confidence_percentage(score: Optional[float]) -> Optional[int]:
    """0.873 -> 87, for reviewer-facing displays."""
    if score is None:
        return None
    return int(round(score * 100))


class DocumentVerificationPipeline:
    """
    Upload, verification and resubmission of application documents.

    Writes that affect an application's documents run under the same
    per-application lock as the transition engine.
    """

    def __init__(
        self,
        db: Session,
        storage: Storage,
        classifier: Classifier,
        engine: StageTransitionEngine,
        external_verifier: Optional[ExternalVerifier] = None,
        policy: Optional[UploadPolicy] = None,
        confidence_thresholds: Optional[Mapping[str, float]] = None,
        default_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        queue: Optional["VerificationQueue"] = None,
        verification_methods: Optional[Mapping[str, str]] = None,
        automated_types: Optional[Iterable[str]] = None,
        external_types: Optional[Iterable[str]] = None,
    ):
        self.db = db
        self.storage = storage
        self.classifier = classifier
        self.engine = engine
        self.external_verifier = external_verifier
        self.policy = policy or UploadPolicy()
        self.confidence_thresholds = dict(
            CONFIDENCE_THRESHOLDS if confidence_thresholds is None else confidence_thresholds
        )
        self.default_threshold = default_threshold
        self.queue = queue
        self.verification_methods = {
            document_type: VerificationMethod(method)
            for document_type, method in (
                VERIFICATION_METHODS_BY_DOCUMENT_TYPE if verification_methods is None else verification_methods
            ).items()
        }
        self.automated_types = frozenset(AUTOMATED_VERIFICATION_TYPES if automated_types is None else automated_types)
        self.external_types = frozenset(EXTERNAL_VERIFICATION_TYPES if external_types is None else external_types)

    def threshold_for(self, document_type: str) -> float:
        return self.confidence_thresholds.get(document_type, self.default_threshold)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_document(self, document_id: str) -> DocumentDB:
        document = self.db.query(DocumentDB).filter(DocumentDB.id == document_id).first()
        if document is None:
            raise NotFound(f"Document {document_id} not found")
        return document

    def _require_current(self, document: DocumentDB) -> None:
        if document.is_superseded:
            raise InvalidApplicationState(
                f"Document {document.id} has been superseded by a resubmission"
            )

    def _read_bytes(self, document: DocumentDB) -> bytes:
        return call_with_timeout(
            self.storage.get, document.storage_reference,
            timeout=STORAGE_TIMEOUT_SECONDS, collaborator="storage",
        )

    def _store_bytes(self, data: bytes) -> str:
        return call_with_timeout(
            self.storage.put, data,
            timeout=STORAGE_TIMEOUT_SECONDS, collaborator="storage",
        )

    # =========================================================================
    # UPLOAD
    # =========================================================================

    def submit(
        self,
        application_id: str,
        document_type: str,
        file_bytes: bytes,
        declared_mime_type: str,
        file_name: Optional[str] = None,
    ) -> str:
        """Validate and store an upload. The new document starts pending."""
        self.engine.get_application(application_id)
        mime_type = self.policy.check(document_type, declared_mime_type, len(file_bytes))
        reference = self._store_bytes(file_bytes)

        document = DocumentDB(
            id=str(uuid4()),
            application_id=application_id,
            document_type=document_type,
            file_name=file_name,
            mime_type=mime_type,
            file_size=len(file_bytes),
            storage_reference=reference,
        )
        self.db.add(document)
        self.db.commit()

        logger.info(f"Document {document.id} ({document_type}, {len(file_bytes)} bytes) uploaded for application {application_id}")
        return document.id

    def resubmit(
        self,
        document_id: str,
        new_file_bytes: bytes,
        declared_mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> str:
        """
        Replace a rejected document. Only allowed while the document's latest
        verification record is a rejection.
        """
        previous = self.get_document(document_id)
        if previous.is_superseded:
            raise ResubmissionNotAllowed(f"Document {document_id} has already been resubmitted")

        latest = self.get_latest_verification(document_id)
        if latest is None or latest.status != VerificationStatus.REJECTED:
            status = latest.status.value if latest is not None else "pending"
            raise ResubmissionNotAllowed(
                f"Document {document_id} is {status}; only rejected documents can be resubmitted"
            )

        mime_type = self.policy.check(
            previous.document_type, declared_mime_type or previous.mime_type, len(new_file_bytes)
        )
        reference = self._store_bytes(new_file_bytes)

        with self.engine.locks.hold(previous.application_id):
            document = DocumentDB(
                id=str(uuid4()),
                application_id=previous.application_id,
                document_type=previous.document_type,
                file_name=file_name or previous.file_name,
                mime_type=mime_type,
                file_size=len(new_file_bytes),
                storage_reference=reference,
                previous_document_id=previous.id,
            )
            previous.is_superseded = True
            self.db.add(document)
            self.db.commit()

        logger.info(f"Document {previous.id} resubmitted as {document.id}")
        return document.id

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def _record(
        self,
        document: DocumentDB,
        method: VerificationMethod,
        status: VerificationStatus,
        confidence: Optional[float] = None,
        extracted_fields: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        verifier: Optional[str] = None,
    ) -> DocumentVerificationDB:
        """Append a verification record and mirror terminal outcomes onto the document."""
        application_id = document.application_id
        with self.engine.locks.hold(application_id):
            last_position = self.db.query(func.max(DocumentVerificationDB.position)).filter(
                DocumentVerificationDB.document_id == document.id
            ).scalar()

            record = DocumentVerificationDB(
                id=str(uuid4()),
                document_id=document.id,
                method=method,
                status=status,
                confidence_score=confidence,
                extracted_fields=extracted_fields,
                notes=notes,
                verifier=verifier,
                position=(last_position or 0) + 1,
            )
            self.db.add(record)

            if status in TERMINAL_VERIFICATION_STATUSES:
                verified = status == VerificationStatus.VERIFIED
                document.is_verified = verified
                document.verified_at = utcnow() if verified else None
                document.verified_by = verifier if verified else None

            self.db.commit()
            logger.info(
                f"Document {document.id} ({document.document_type}): {method.value} -> {status.value}"
                + (f" at {confidence_percentage(confidence)}%" if confidence is not None else "")
            )

            if status in TERMINAL_VERIFICATION_STATUSES:
                self.engine.on_verification_recorded(application_id)

        return record

    def verify_automated(self, document_id: str) -> DocumentVerificationDB:
        """
        Classify a document. Verified when confidence reaches the threshold
        for its type, otherwise left pending for manual review.

        Raises CollaboratorTimeout / CollaboratorUnavailable when storage or
        the classifier fails; nothing is recorded in that case.
        """
        document = self.get_document(document_id)
        self._require_current(document)

        data = self._read_bytes(document)
        result: ClassificationResult = call_with_timeout(
            self.classifier.classify, data, document.document_type,
            timeout=CLASSIFIER_TIMEOUT_SECONDS, collaborator="classifier",
        )

        threshold = self.threshold_for(document.document_type)
        if result.confidence >= threshold:
            status = VerificationStatus.VERIFIED
            notes = result.notes
        else:
            status = VerificationStatus.PENDING
            notes = result.notes or (
                f"Confidence {confidence_percentage(result.confidence)}% below "
                f"{confidence_percentage(threshold)}%; manual review required"
            )

        return self._record(
            document, VerificationMethod.AUTOMATED, status,
            confidence=result.confidence,
            extracted_fields=dict(result.extracted_fields or {}),
            notes=notes,
        )

    def verify_external(self, document_id: str) -> DocumentVerificationDB:
        """
        Confirm a document with the external registrar. Registrar
        rejections are authoritative; low-confidence confirmations stay pending.
        """
        if self.external_verifier is None:
            raise CollaboratorUnavailable("external_verifier", "No external verifier is configured")

        document = self.get_document(document_id)
        self._require_current(document)

        data = self._read_bytes(document)
        result: ClassificationResult = call_with_timeout(
            self.external_verifier.verify, data, document.document_type,
            timeout=EXTERNAL_VERIFIER_TIMEOUT_SECONDS, collaborator="external_verifier",
        )

        if result.rejected:
            status = VerificationStatus.REJECTED
        elif result.confidence >= self.threshold_for(document.document_type):
            status = VerificationStatus.VERIFIED
        else:
            status = VerificationStatus.PENDING

        return self._record(
            document, VerificationMethod.EXTERNAL, status,
            confidence=result.confidence,
            extracted_fields=dict(result.extracted_fields or {}),
            notes=result.notes,
        )

    def verify_manual(
        self,
        document_id: str,
        reviewer: Actor,
        decision: Union[VerificationStatus, str],
        notes: Optional[str] = None,
    ) -> DocumentVerificationDB:
        """
        Reviewer decision. The reviewer needs the role assigned to the
        application's current stage, or the verify_documents permission
        when the stage has none.
        """
        status = VerificationStatus(decision)
        if status not in TERMINAL_VERIFICATION_STATUSES:
            raise ValueError("Manual verification decision must be 'verified' or 'rejected'")

        document = self.get_document(document_id)
        self._require_current(document)

        application = self.engine.get_application(document.application_id)
        self.engine.check_stage_role(reviewer, application, fallback_permission=VERIFY_DOCUMENTS_PERMISSION)

        return self._record(
            document, VerificationMethod.MANUAL, status,
            notes=notes,
            verifier=reviewer.id,
        )

    # =========================================================================
    # ROUTING
    # =========================================================================

    def method_for(self, document_type: str) -> VerificationMethod:
        """
        Configured preference first, then the classifier for types it
        handles, then the external registrar, otherwise manual review.
        """
        preferred = self.verification_methods.get(document_type)
        if preferred is not None:
            return preferred
        if document_type in self.automated_types:
            return VerificationMethod.AUTOMATED
        if self.external_verifier is not None and document_type in self.external_types:
            return VerificationMethod.EXTERNAL
        return VerificationMethod.MANUAL

    def verify(
        self,
        document_id: str,
        method: Optional[Union[VerificationMethod, str]] = None,
    ) -> Optional[DocumentVerificationDB]:
        """
        Run the verification method routed for the document's type. Documents
        routed to manual review are left pending and None is returned.
        """
        document = self.get_document(document_id)
        self._require_current(document)
        method = VerificationMethod(method) if method else self.method_for(document.document_type)

        if method == VerificationMethod.AUTOMATED:
            return self.verify_automated(document_id)
        if method == VerificationMethod.EXTERNAL:
            return self.verify_external(document_id)

        logger.info(f"Document {document_id} ({document.document_type}) awaits manual review")
        return None

    # =========================================================================
    # ASYNCHRONOUS VERIFICATION
    # =========================================================================

    def schedule_verification(
        self,
        document_id: str,
        method: Optional[Union[VerificationMethod, str]] = None,
    ) -> concurrent.futures.Future:
        """
        Queue verify() on the worker pool. Without a queue the check runs
        inline and the returned future is already resolved.
        """
        if self.queue is not None:
            return self.queue.schedule(document_id, method)

        future: concurrent.futures.Future = concurrent.futures.Future()
        try:
            future.set_result(self.verify(document_id, method))
        except WorkflowError as e:
            logger.warning(f"Verification of document {document_id} failed: {e}")
            future.set_exception(e)
        return future

    # =========================================================================
    # READ HELPERS
    # =========================================================================

    def _chain(self, document: DocumentDB) -> List[DocumentDB]:
        """All documents linked by resubmission, oldest first."""
        chain = [document]
        current = document
        while current.previous_document_id:
            current = self.get_document(current.previous_document_id)
            chain.insert(0, current)

        current = document
        while True:
            successor = self.db.query(DocumentDB).filter(
                DocumentDB.previous_document_id == current.id
            ).first()
            if successor is None:
                break
            chain.append(successor)
            current = successor
        return chain

    def get_verification_history(self, document_id: str) -> List[DocumentVerificationDB]:
        """Every verification record across the resubmission chain, oldest first."""
        history: List[DocumentVerificationDB] = []
        for document in self._chain(self.get_document(document_id)):
            history.extend(
                self.db.query(DocumentVerificationDB)
                .filter(DocumentVerificationDB.document_id == document.id)
                .order_by(DocumentVerificationDB.position)
                .all()
            )
        return history

    def get_latest_verification(self, document_id: str) -> Optional[DocumentVerificationDB]:
        self.get_document(document_id)
        return (
            self.db.query(DocumentVerificationDB)
            .filter(DocumentVerificationDB.document_id == document_id)
            .order_by(DocumentVerificationDB.position.desc())
            .first()
        )

    def list_pending_verifications(self, document_type: Optional[str] = None) -> List[DocumentDB]:
        """Current documents still waiting on a verified/rejected outcome."""
        query = self.db.query(DocumentDB).filter(
            DocumentDB.is_superseded.is_(False),
            DocumentDB.is_verified.is_(False),
        )
        if document_type:
            query = query.filter(DocumentDB.document_type == document_type)

        pending = []
        for document in query.order_by(DocumentDB.created_at, DocumentDB.id).all():
            latest = self.get_latest_verification(document.id)
            if latest is None or latest.status == VerificationStatus.PENDING:
                pending.append(document)
        return pending

    def get_verification_statistics(self, application_id: Optional[str] = None) -> Dict[str, Any]:
        """Record counts by status and method, plus average automated confidence."""
        query = self.db.query(DocumentVerificationDB)
        if application_id:
            query = query.join(DocumentDB, DocumentDB.id == DocumentVerificationDB.document_id).filter(
                DocumentDB.application_id == application_id
            )
        records = query.all()

        by_status = {s.value: 0 for s in VerificationStatus}
        by_method = {m.value: 0 for m in VerificationMethod}
        automated_scores = []
        for record in records:
            by_status[record.status.value] += 1
            by_method[record.method.value] += 1
            if record.method == VerificationMethod.AUTOMATED and record.confidence_score is not None:
                automated_scores.append(record.confidence_score)

        average = sum(automated_scores) / len(automated_scores) if automated_scores else None
        return {
            "total": len(records),
            "by_status": by_status,
            "by_method": by_method,
            "average_automated_confidence": average,
            "average_automated_confidence_pct": confidence_percentage(average),
        }


# =============================================================================
# WORKER POOL
# =============================================================================

class VerificationQueue:
    """
    Runs routed verification off the request path. Each job gets its own
    session and pipeline; a collaborator failure leaves the document pending
    for manual review.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        pipeline_factory: Callable[[Session], DocumentVerificationPipeline],
        max_workers: int = VERIFICATION_WORKERS,
    ):
        self.session_factory = session_factory
        self.pipeline_factory = pipeline_factory
        self.executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="verification"
        )

    def schedule(
        self,
        document_id: str,
        method: Optional[Union[VerificationMethod, str]] = None,
    ) -> concurrent.futures.Future:
        logger.info(f"Queued verification for document {document_id}")
        return self.executor.submit(self._run, document_id, method)

    def _run(self, document_id: str, method: Optional[Union[VerificationMethod, str]]) -> Optional[str]:
        """Returns the recorded status, or None when the document stays pending without a record."""
        db = self.session_factory()
        try:
            record = self.pipeline_factory(db).verify(document_id, method)
            return record.status.value if record is not None else None
        except CollaboratorError as e:
            logger.warning(f"Verification of document {document_id} deferred to manual review: {e}")
            return None
        except WorkflowError as e:
            logger.error(f"Verification of document {document_id} failed: {e}")
            return None
        finally:
            db.close()

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
