"""
Tests for the Document Verification Pipeline.

Tests the document lifecycle:
1. Upload policy (MIME whitelist, size caps)
2. Automated verification against per-type confidence thresholds
3. Manual review gated by the current stage's role
4. Rejection -> resubmission chains with append-only history
5. Verification outcomes driving automatic stage transitions
6. Collaborator failures surfacing as retryable errors
7. Routing each document type to a verification method
"""
import time

import pytest

from admissions.models.db_models import DocumentDB, DocumentVerificationDB, VerificationMethod, VerificationStatus
from admissions.services.documents import (
    DocumentVerificationPipeline, UploadPolicy, VerificationQueue, confidence_percentage,
)
from admissions.services.documents import verification_pipeline as pipeline_module
from admissions.services.workflow import (
    ApplicationStatusProjector, StageTransitionEngine, WorkflowDefinitionStore,
)
from admissions.services.collaborators import LoggingNotifier
from admissions.services.errors import (
    CollaboratorTimeout, CollaboratorUnavailable, FileTooLarge, InvalidApplicationState,
    NotFound, PermissionDenied, ResubmissionNotAllowed, UnsupportedMimeType,
)
from conftest import FakeClassifier, make_actor

PDF = b"%PDF-1.4 transcript"
STAFF = make_actor("staff-1", roles={"staff"})
OUTSIDER = make_actor("reviewer-9", roles={"verification_team"})


def _upload(pipeline, application_id, document_type="transcript", data=PDF, mime="application/pdf"):
    return pipeline.submit(application_id, document_type, data, mime, file_name=f"{document_type}.pdf")


def _stage_of(engine, application_id):
    return engine.get_application(application_id).current_stage_id


# =============================================================================
# TEST: UPLOAD
# =============================================================================

class TestSubmit:
    """Tests for submit()."""

    def test_upload_creates_pending_document(self, pipeline, storage, submitted_application):
        document_id = _upload(pipeline, submitted_application)

        document = pipeline.get_document(document_id)
        assert document.is_verified is False
        assert document.mime_type == "application/pdf"
        assert document.file_size == len(PDF)
        assert storage.blobs[document.storage_reference] == PDF
        assert pipeline.get_verification_history(document_id) == []

    def test_mime_type_is_normalised(self, pipeline, submitted_application):
        document_id = _upload(pipeline, submitted_application, mime="Application/PDF; charset=binary")
        assert pipeline.get_document(document_id).mime_type == "application/pdf"

    def test_unsupported_mime_type(self, pipeline, db, storage, submitted_application):
        with pytest.raises(UnsupportedMimeType):
            _upload(pipeline, submitted_application, data=b"hello", mime="text/plain")
        assert db.query(DocumentDB).count() == 0
        assert storage.blobs == {}

    def test_category_specific_mime_types(self, pipeline, submitted_application):
        """Word documents are accepted as attachments (resume) but not as transcripts."""
        docx = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
        _upload(pipeline, submitted_application, document_type="resume", data=b"doc", mime=docx)
        with pytest.raises(UnsupportedMimeType):
            _upload(pipeline, submitted_application, document_type="transcript", data=b"doc", mime=docx)

    def test_file_too_large(self, db, storage, classifier, engine, submitted_application):
        pipeline = DocumentVerificationPipeline(
            db, storage, classifier, engine, policy=UploadPolicy(max_file_sizes_kb={"documents": 1}),
        )
        _upload(pipeline, submitted_application, data=b"x" * 1024)
        with pytest.raises(FileTooLarge):
            _upload(pipeline, submitted_application, data=b"x" * 1025)
        assert db.query(DocumentDB).count() == 1

    def test_unknown_application(self, pipeline, review_workflow):
        with pytest.raises(NotFound):
            _upload(pipeline, "missing")


# =============================================================================
# TEST: AUTOMATED VERIFICATION
# =============================================================================

class TestAutomatedVerification:
    """Tests for verify_automated() and the confidence thresholds."""

    def test_high_confidence_verifies_and_advances(self, pipeline, engine, review_workflow, submitted_application):
        """Confidence 0.95 against a 0.8 transcript threshold: verified, Submitted -> Review."""
        _, stages, _ = review_workflow
        document_id = _upload(pipeline, submitted_application)

        record = pipeline.verify_automated(document_id)

        assert record.method == VerificationMethod.AUTOMATED
        assert record.status == VerificationStatus.VERIFIED
        assert record.confidence_score == pytest.approx(0.95)
        assert record.verifier is None

        document = pipeline.get_document(document_id)
        assert document.is_verified is True
        assert document.verified_at is not None
        assert _stage_of(engine, submitted_application) == stages["Review"]

    def test_low_confidence_stays_pending_until_manual_review(
        self, pipeline, classifier, engine, review_workflow, submitted_application,
    ):
        """Confidence 0.4: pending, no stage change; a staff verification then advances."""
        _, stages, _ = review_workflow
        classifier.confidence = 0.4
        document_id = _upload(pipeline, submitted_application)

        record = pipeline.verify_automated(document_id)

        assert record.status == VerificationStatus.PENDING
        assert "manual review" in record.notes
        assert pipeline.get_document(document_id).is_verified is False
        assert _stage_of(engine, submitted_application) == stages["Submitted"]

        manual = pipeline.verify_manual(document_id, STAFF, "verified", notes="Checked against registrar copy")

        assert manual.method == VerificationMethod.MANUAL
        assert manual.verifier == "staff-1"
        assert pipeline.get_document(document_id).verified_by == "staff-1"
        assert _stage_of(engine, submitted_application) == stages["Review"]

    def test_automated_check_never_rejects(self, pipeline, classifier, submitted_application):
        classifier.confidence = 0.1
        classifier.rejected = True
        document_id = _upload(pipeline, submitted_application)
        assert pipeline.verify_automated(document_id).status == VerificationStatus.PENDING

    def test_default_threshold_for_unlisted_types(self, pipeline, classifier, submitted_application):
        """personal_statement falls back to the 0.85 default."""
        classifier.confidence = 0.82
        document_id = _upload(pipeline, submitted_application, document_type="personal_statement")
        assert pipeline.verify_automated(document_id).status == VerificationStatus.PENDING

    def test_extracted_fields_recorded(self, pipeline, classifier, submitted_application):
        classifier.extracted_fields = {"gpa": "3.8", "institution": "Central High"}
        document_id = _upload(pipeline, submitted_application)
        assert pipeline.verify_automated(document_id).extracted_fields == {"gpa": "3.8", "institution": "Central High"}

    def test_classifier_timeout(self, pipeline, db, submitted_application, monkeypatch):
        """A hung classifier surfaces as CollaboratorTimeout; the document stays pending."""

        class SlowClassifier:
            def classify(self, data, declared_type):
                time.sleep(0.5)
                return FakeClassifier().classify(data, declared_type)

        monkeypatch.setattr(pipeline_module, "CLASSIFIER_TIMEOUT_SECONDS", 0.05)
        pipeline.classifier = SlowClassifier()
        document_id = _upload(pipeline, submitted_application)

        with pytest.raises(CollaboratorTimeout) as exc_info:
            pipeline.verify_automated(document_id)

        assert exc_info.value.retryable is True
        assert db.query(DocumentVerificationDB).count() == 0
        assert [d.id for d in pipeline.list_pending_verifications()] == [document_id]

    def test_classifier_failure(self, pipeline, submitted_application):
        class BrokenClassifier:
            def classify(self, data, declared_type):
                raise RuntimeError("model server down")

        pipeline.classifier = BrokenClassifier()
        document_id = _upload(pipeline, submitted_application)
        with pytest.raises(CollaboratorUnavailable):
            pipeline.verify_automated(document_id)


# =============================================================================
# TEST: EXTERNAL AND MANUAL VERIFICATION
# =============================================================================

class TestExternalAndManual:
    """Tests for verify_external() and verify_manual()."""

    def test_external_confirmation(self, pipeline, submitted_application):
        document_id = _upload(pipeline, submitted_application)
        record = pipeline.verify_external(document_id)
        assert record.method == VerificationMethod.EXTERNAL
        assert record.status == VerificationStatus.VERIFIED

    def test_external_rejection_is_authoritative(self, pipeline, submitted_application):
        pipeline.external_verifier = FakeClassifier(confidence=0.99, rejected=True)
        document_id = _upload(pipeline, submitted_application)
        assert pipeline.verify_external(document_id).status == VerificationStatus.REJECTED
        assert pipeline.get_document(document_id).is_verified is False

    def test_external_low_confidence_pending(self, pipeline, submitted_application):
        pipeline.external_verifier = FakeClassifier(confidence=0.3)
        document_id = _upload(pipeline, submitted_application)
        assert pipeline.verify_external(document_id).status == VerificationStatus.PENDING

    def test_no_external_verifier_configured(self, pipeline, submitted_application):
        pipeline.external_verifier = None
        document_id = _upload(pipeline, submitted_application)
        with pytest.raises(CollaboratorUnavailable):
            pipeline.verify_external(document_id)

    def test_reviewer_without_stage_role_denied(self, pipeline, db, engine, review_workflow, submitted_application):
        """Submitted is owned by staff: a verification_team member is refused and nothing is written."""
        _, stages, _ = review_workflow
        document_id = _upload(pipeline, submitted_application)

        with pytest.raises(PermissionDenied):
            pipeline.verify_manual(document_id, OUTSIDER, "verified")

        assert db.query(DocumentVerificationDB).count() == 0
        assert pipeline.get_document(document_id).is_verified is False
        assert _stage_of(engine, submitted_application) == stages["Submitted"]

    def test_verify_documents_permission_when_stage_has_no_role(self, pipeline, engine, make_workflow):
        make_workflow(
            stages=[{"name": "Open", "required_documents": ["transcript"]}, {"name": "Closed"}],
            transitions=[("Open", "Closed", {"name": "Close"})],
            application_type="transfer",
        )
        application_id = engine.create_application("applicant-2", "transfer")
        engine.bind_application(application_id, make_actor("applicant-2"))
        document_id = _upload(pipeline, application_id)

        with pytest.raises(PermissionDenied):
            pipeline.verify_manual(document_id, STAFF, "verified")
        assert pipeline.verify_manual(document_id, OUTSIDER, "verified").status == VerificationStatus.VERIFIED

    def test_manual_decision_must_be_terminal(self, pipeline, submitted_application):
        document_id = _upload(pipeline, submitted_application)
        with pytest.raises(ValueError):
            pipeline.verify_manual(document_id, STAFF, "pending")

    def test_later_rejection_clears_verified_flag(self, pipeline, submitted_application):
        """is_verified mirrors the latest terminal record."""
        # Verification moves the application to Review, owned by the committee
        reviewer = make_actor("staff-2", roles={"staff", "admissions_committee"})
        document_id = _upload(pipeline, submitted_application)
        pipeline.verify_manual(document_id, reviewer, "verified")
        pipeline.verify_manual(document_id, reviewer, "rejected", notes="Wrong applicant name")
        document = pipeline.get_document(document_id)
        assert document.is_verified is False
        assert document.verified_at is None


# =============================================================================
# TEST: RESUBMISSION
# =============================================================================

class TestResubmission:
    """Tests for resubmit() and chain-wide history."""

    def test_reject_resubmit_verify_round_trip(self, pipeline, classifier, engine, review_workflow, submitted_application):
        """pending -> rejected -> resubmit -> verified: three records across the chain."""
        _, stages, _ = review_workflow
        classifier.confidence = 0.4
        original_id = _upload(pipeline, submitted_application)

        pipeline.verify_automated(original_id)
        pipeline.verify_manual(original_id, STAFF, "rejected", notes="Illegible scan")
        new_id = pipeline.resubmit(original_id, b"%PDF-1.4 clearer scan")

        original = pipeline.get_document(original_id)
        replacement = pipeline.get_document(new_id)
        assert original.is_superseded is True
        assert replacement.previous_document_id == original_id
        assert replacement.is_verified is False
        assert replacement.file_name == "transcript.pdf"

        pipeline.verify_manual(new_id, STAFF, "verified")

        for document_id in (original_id, new_id):
            history = pipeline.get_verification_history(document_id)
            assert [r.status for r in history] == [
                VerificationStatus.PENDING, VerificationStatus.REJECTED, VerificationStatus.VERIFIED,
            ]
        assert pipeline.get_document(new_id).is_verified is True
        assert _stage_of(engine, submitted_application) == stages["Review"]

    def test_resubmit_requires_latest_rejection(self, pipeline, classifier, submitted_application):
        document_id = _upload(pipeline, submitted_application)
        with pytest.raises(ResubmissionNotAllowed):
            pipeline.resubmit(document_id, PDF)

        classifier.confidence = 0.4
        pipeline.verify_automated(document_id)
        with pytest.raises(ResubmissionNotAllowed):
            pipeline.resubmit(document_id, PDF)

        pipeline.verify_manual(document_id, STAFF, "verified")
        with pytest.raises(ResubmissionNotAllowed):
            pipeline.resubmit(document_id, PDF)

    def test_superseded_document_is_closed(self, pipeline, submitted_application):
        document_id = _upload(pipeline, submitted_application)
        pipeline.verify_manual(document_id, STAFF, "rejected")
        pipeline.resubmit(document_id, PDF)

        with pytest.raises(ResubmissionNotAllowed):
            pipeline.resubmit(document_id, PDF)
        with pytest.raises(InvalidApplicationState):
            pipeline.verify_manual(document_id, STAFF, "verified")

    def test_resubmission_checks_upload_policy(self, pipeline, submitted_application):
        document_id = _upload(pipeline, submitted_application)
        pipeline.verify_manual(document_id, STAFF, "rejected")
        with pytest.raises(UnsupportedMimeType):
            pipeline.resubmit(document_id, b"text", declared_mime_type="text/plain")
        assert pipeline.get_document(document_id).is_superseded is False


# =============================================================================
# TEST: READ HELPERS AND BACKGROUND JOBS
# =============================================================================

class TestReadHelpers:
    """Tests for pending lists, statistics and scheduling."""

    def test_pending_list_and_statistics(self, pipeline, classifier, make_workflow, engine, submitted_application):
        classifier.confidence = 0.9
        verified_id = _upload(pipeline, submitted_application)
        pipeline.verify_automated(verified_id)

        untouched_id = _upload(pipeline, submitted_application, document_type="personal_statement")
        classifier.confidence = 0.5
        low_id = _upload(pipeline, submitted_application, document_type="test_scores")
        pipeline.verify_automated(low_id)

        assert {d.id for d in pipeline.list_pending_verifications()} == {untouched_id, low_id}
        assert [d.id for d in pipeline.list_pending_verifications("test_scores")] == [low_id]

        stats = pipeline.get_verification_statistics(application_id=submitted_application)
        assert stats["total"] == 2
        assert stats["by_status"] == {"pending": 1, "verified": 1, "rejected": 0}
        assert stats["by_method"]["automated"] == 2
        assert stats["average_automated_confidence"] == pytest.approx(0.7)
        assert stats["average_automated_confidence_pct"] == 70

        assert pipeline.get_verification_statistics(application_id="someone-else")["total"] == 0

    def test_rejected_documents_are_not_pending(self, pipeline, submitted_application):
        document_id = _upload(pipeline, submitted_application)
        pipeline.verify_manual(document_id, STAFF, "rejected")
        assert pipeline.list_pending_verifications() == []

    def test_confidence_percentage(self):
        assert confidence_percentage(0.873) == 87
        assert confidence_percentage(1.0) == 100
        assert confidence_percentage(None) is None

    def test_schedule_without_queue_runs_inline(self, pipeline, submitted_application):
        document_id = _upload(pipeline, submitted_application)
        future = pipeline.schedule_verification(document_id)
        assert future.done()
        assert future.result().status == VerificationStatus.VERIFIED

    def test_worker_pool_uses_its_own_session(
        self, db, session_factory, storage, classifier, permission_checker,
        engine, review_workflow, submitted_application,
    ):
        """Background verification commits through a separate session and advances the stage."""
        _, stages, _ = review_workflow

        def pipeline_factory(session):
            store = WorkflowDefinitionStore(session)
            projector = ApplicationStatusProjector(session, store, LoggingNotifier())
            worker_engine = StageTransitionEngine(session, store, permission_checker, projector)
            return DocumentVerificationPipeline(
                session, storage, classifier, worker_engine, confidence_thresholds={"transcript": 0.8},
            )

        queue = VerificationQueue(session_factory, pipeline_factory, max_workers=1)
        request_pipeline = pipeline_factory(db)
        request_pipeline.queue = queue
        document_id = _upload(request_pipeline, submitted_application)
        db.commit()

        try:
            assert request_pipeline.schedule_verification(document_id).result(timeout=10) == "verified"
        finally:
            queue.shutdown()

        db.expire_all()
        assert pipeline_factory(db).get_document(document_id).is_verified is True
        assert _stage_of(engine, submitted_application) == stages["Review"]

    def test_worker_pool_defers_on_collaborator_failure(self, db, session_factory, storage, engine, submitted_application):
        """A classifier outage in the background leaves the document pending for manual review."""

        class BrokenClassifier:
            def classify(self, data, declared_type):
                raise RuntimeError("model server down")

        def pipeline_factory(session):
            store = WorkflowDefinitionStore(session)
            projector = ApplicationStatusProjector(session, store, LoggingNotifier())
            worker_engine = StageTransitionEngine(session, store, engine.permission_checker, projector)
            return DocumentVerificationPipeline(session, storage, BrokenClassifier(), worker_engine)

        queue = VerificationQueue(session_factory, pipeline_factory, max_workers=1)
        document_id = _upload(pipeline_factory(db), submitted_application)
        db.commit()

        try:
            assert queue.schedule(document_id).result(timeout=10) is None
        finally:
            queue.shutdown()

        db.expire_all()
        assert db.query(DocumentVerificationDB).count() == 0
        assert [d.id for d in pipeline_factory(db).list_pending_verifications()] == [document_id]


# =============================================================================
# TEST: ROUTING
# =============================================================================

class TestRouting:
    """Tests for method_for(), verify() and schedule_verification()."""

    @pytest.fixture
    def build(self, db, storage, engine):
        def _build(verification_methods=None, external=True):
            classifier = FakeClassifier(confidence=0.95)
            registrar = FakeClassifier(confidence=0.99) if external else None
            routed = DocumentVerificationPipeline(
                db, storage, classifier, engine,
                external_verifier=registrar,
                verification_methods=verification_methods or {},
                automated_types={"transcript", "personal_statement"},
                external_types={"transcript", "identification"},
            )
            return routed, classifier, registrar

        return _build

    def test_classifier_takes_types_it_supports(self, build, submitted_application):
        routed, classifier, registrar = build()
        document_id = _upload(routed, submitted_application, "transcript")

        assert routed.method_for("transcript") == VerificationMethod.AUTOMATED
        record = routed.verify(document_id)

        assert record.method == VerificationMethod.AUTOMATED
        assert record.status == VerificationStatus.VERIFIED
        assert classifier.calls == ["transcript"]
        assert registrar.calls == []

    def test_registrar_takes_what_the_classifier_cannot(self, build, submitted_application):
        routed, classifier, registrar = build()
        document_id = _upload(routed, submitted_application, "identification")

        assert routed.method_for("identification") == VerificationMethod.EXTERNAL
        record = routed.verify(document_id)

        assert record.method == VerificationMethod.EXTERNAL
        assert record.status == VerificationStatus.VERIFIED
        assert registrar.calls == ["identification"]
        assert classifier.calls == []

    def test_unrouted_type_waits_for_manual_review(self, build, submitted_application):
        routed, classifier, registrar = build()
        document_id = _upload(routed, submitted_application, "resume")

        assert routed.method_for("resume") == VerificationMethod.MANUAL
        assert routed.verify(document_id) is None

        assert routed.get_verification_history(document_id) == []
        assert routed.get_document(document_id).is_verified is False
        assert [d.id for d in routed.list_pending_verifications(document_type="resume")] == [document_id]
        assert classifier.calls == [] and registrar.calls == []

        record = routed.verify_manual(document_id, STAFF, "verified")
        assert record.method == VerificationMethod.MANUAL

    def test_registrar_types_fall_to_manual_without_a_registrar(self, build, submitted_application):
        routed, _, _ = build(external=False)
        document_id = _upload(routed, submitted_application, "identification")
        assert routed.method_for("identification") == VerificationMethod.MANUAL
        assert routed.verify(document_id) is None

    def test_configured_preference_wins(self, build, submitted_application):
        routed, classifier, registrar = build({"transcript": "external", "personal_statement": "manual"})
        transcript_id = _upload(routed, submitted_application, "transcript")
        statement_id = _upload(routed, submitted_application, "personal_statement")

        assert routed.verify(transcript_id).method == VerificationMethod.EXTERNAL
        assert routed.verify(statement_id) is None
        assert registrar.calls == ["transcript"]
        assert classifier.calls == []

    def test_explicit_method_overrides_routing(self, build, submitted_application):
        routed, classifier, _ = build()
        document_id = _upload(routed, submitted_application, "resume")
        assert routed.verify(document_id, VerificationMethod.AUTOMATED).method == VerificationMethod.AUTOMATED
        assert classifier.calls == ["resume"]

    def test_unknown_configured_method(self, build):
        with pytest.raises(ValueError):
            build({"transcript": "telepathy"})

    def test_scheduling_follows_routing(self, build, engine, review_workflow, submitted_application):
        _, stages, _ = review_workflow
        routed, _, registrar = build({"transcript": "external"})
        resume_id = _upload(routed, submitted_application, "resume")
        transcript_id = _upload(routed, submitted_application, "transcript")

        assert routed.schedule_verification(resume_id).result() is None
        assert routed.schedule_verification(transcript_id).result().method == VerificationMethod.EXTERNAL
        assert registrar.calls == ["transcript"]
        assert _stage_of(engine, submitted_application) == stages["Review"]
