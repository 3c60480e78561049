"""
Tests for the collaborator seams: timeouts, bundled implementations, the
per-application lock registry and the upload policy.
"""
import os
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from admissions.config import COLLABORATOR_WORKERS
from admissions.models.workflow_objects import SYSTEM_ACTOR
from admissions.services.collaborators import (
    LocalFileStorage, LoggingNotifier, RolePermissionChecker, UnavailableClassifier, call_with_timeout,
)
from admissions.services.documents import UploadPolicy, normalize_mime_type
from admissions.services.workflow import ApplicationLockRegistry
from admissions.services.errors import (
    CollaboratorTimeout, CollaboratorUnavailable, FileTooLarge, NotFound, UnsupportedMimeType,
)
from conftest import TEST_ROLE_PERMISSIONS, make_actor


# =============================================================================
# TEST: TIMEOUTS
# =============================================================================

class TestCallWithTimeout:

    def test_returns_result(self):
        assert call_with_timeout(lambda a, b: a + b, 2, 3, timeout=1, collaborator="adder") == 5

    def test_timeout(self):
        with pytest.raises(CollaboratorTimeout) as exc_info:
            call_with_timeout(time.sleep, 0.5, timeout=0.05, collaborator="storage")
        assert exc_info.value.to_dict()["retryable"] is True

    def test_failure_becomes_unavailable(self):
        def explode():
            raise OSError("disk full")

        with pytest.raises(CollaboratorUnavailable) as exc_info:
            call_with_timeout(explode, timeout=1, collaborator="storage")
        assert isinstance(exc_info.value.original_error, OSError)

    def test_workflow_errors_pass_through(self):
        def missing():
            raise NotFound("gone")

        with pytest.raises(NotFound):
            call_with_timeout(missing, timeout=1, collaborator="storage")

    def test_hung_notifier_does_not_starve_storage(self):
        gate = threading.Event()
        try:
            # Occupy every notifier worker with a call that outlives its timeout
            for _ in range(COLLABORATOR_WORKERS + 2):
                with pytest.raises(CollaboratorTimeout):
                    call_with_timeout(gate.wait, 10, timeout=0.02, collaborator="notifier")

            started = time.monotonic()
            assert call_with_timeout(lambda: "stored", timeout=1, collaborator="storage") == "stored"
            assert call_with_timeout(lambda: "classified", timeout=1, collaborator="classifier") == "classified"
            assert time.monotonic() - started < 1
        finally:
            gate.set()


# =============================================================================
# TEST: BUNDLED IMPLEMENTATIONS
# =============================================================================

class TestBundled:

    def test_local_file_storage(self, tmp_path):
        storage = LocalFileStorage(str(tmp_path / "blobs"))
        reference = storage.put(b"scan")
        assert storage.get(reference) == b"scan"
        storage.delete(reference)
        with pytest.raises(FileNotFoundError):
            storage.get(reference)

    def test_local_file_storage_rejects_path_references(self, tmp_path):
        storage = LocalFileStorage(str(tmp_path))
        with pytest.raises(ValueError):
            storage.get("../etc/passwd")

    def test_unavailable_classifier(self):
        with pytest.raises(CollaboratorUnavailable):
            UnavailableClassifier().classify(b"", "transcript")

    def test_logging_notifier_records(self):
        notifier = LoggingNotifier()
        notifier.send("application_received", "applicant-1", {"stage_name": "Submitted"})
        assert list(notifier.sent) == [{
            "template_id": "application_received",
            "recipient": "applicant-1",
            "payload": {"stage_name": "Submitted"},
        }]

    def test_logging_notifier_history_is_bounded(self):
        notifier = LoggingNotifier(history_size=5)
        for index in range(50):
            notifier.send("application_status_changed", f"applicant-{index}", {"index": index})
        assert len(notifier.sent) == 5
        assert [n["payload"]["index"] for n in notifier.sent] == [45, 46, 47, 48, 49]

    def test_role_permission_checker(self):
        checker = RolePermissionChecker(TEST_ROLE_PERMISSIONS)
        director = make_actor("d", roles={"admissions_director"})
        assert checker.has_permission(director, "make_admission_decision", {})
        assert not checker.has_permission(director, "verify_documents", {})
        assert checker.has_permission(director, "role:admissions_director", {})
        assert not checker.has_permission(director, "role:staff", {})

    def test_direct_permission_and_system_actor(self):
        checker = RolePermissionChecker({})
        assert checker.has_permission(make_actor("x", permissions={"edit_workflow"}), "edit_workflow", {})
        assert checker.has_permission(SYSTEM_ACTOR, "anything", {})


# =============================================================================
# TEST: LOCKS
# =============================================================================

class TestApplicationLocks:

    def test_reentrant(self):
        locks = ApplicationLockRegistry()
        with locks.hold("app-1"):
            with locks.hold("app-1"):
                assert len(locks) == 1
        assert len(locks) == 0

    def test_same_application_is_exclusive(self):
        locks = ApplicationLockRegistry()
        order = []

        def worker():
            with locks.hold("app-1"):
                order.append("worker")

        with locks.hold("app-1"):
            thread = threading.Thread(target=worker)
            thread.start()
            time.sleep(0.05)
            order.append("main")
        thread.join(timeout=5)

        assert order == ["main", "worker"]
        assert len(locks) == 0

    def test_different_applications_do_not_contend(self):
        locks = ApplicationLockRegistry()
        done = threading.Event()

        def worker():
            with locks.hold("app-2"):
                done.set()

        with locks.hold("app-1"):
            thread = threading.Thread(target=worker)
            thread.start()
            assert done.wait(timeout=5)
        thread.join(timeout=5)


# =============================================================================
# TEST: UPLOAD POLICY
# =============================================================================

class TestUploadPolicy:

    def test_normalize_mime_type(self):
        assert normalize_mime_type(" IMAGE/PNG ") == "image/png"
        assert normalize_mime_type(None) == ""

    def test_categories(self):
        policy = UploadPolicy()
        assert policy.category_for("transcript") == "documents"
        assert policy.category_for("tax_return") == "financial_aid"
        assert policy.category_for("essay_supplement") == "documents"

    def test_size_limit_per_category(self):
        policy = UploadPolicy()
        assert policy.max_bytes_for("resume") == 5120 * 1024
        policy.check("resume", "application/pdf", 5120 * 1024)
        with pytest.raises(FileTooLarge):
            policy.check("resume", "application/pdf", 5120 * 1024 + 1)

    def test_mime_whitelist(self):
        policy = UploadPolicy()
        assert policy.check("tax_return", "image/jpeg", 10) == "image/jpeg"
        with pytest.raises(UnsupportedMimeType):
            policy.check("tax_return", "application/msword", 10)
        with pytest.raises(UnsupportedMimeType):
            policy.check("transcript", None, 10)


# =============================================================================
# TEST: IMPORT ORDER
# =============================================================================

@pytest.mark.parametrize("modules", [
    ["admissions.services.collaborators"],
    ["admissions.services.documents"],
    ["admissions.services.workflow.status_projector"],
    ["admissions.services.collaborators", "admissions.main"],
], ids=lambda modules: modules[0])
def test_modules_import_in_a_fresh_interpreter(modules):
    """Each service module must be importable first, before anything else has loaded."""
    backend = Path(__file__).resolve().parent.parent
    env = dict(os.environ, DATABASE_URL="sqlite://")
    script = "; ".join(f"import {module}" for module in modules)

    result = subprocess.run(
        [sys.executable, "-c", script], cwd=str(backend), env=env, capture_output=True, text=True, timeout=60,
    )
    assert result.returncode == 0, result.stderr
