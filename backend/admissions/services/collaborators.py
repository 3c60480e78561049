"""
External Collaborators

Narrow contracts for everything the workflow core does not own: file
storage, document classification, the external registrar, notification
delivery and permission checks. Every outbound call goes through
call_with_timeout() so nothing blocks indefinitely and timeouts are
distinguishable from business-rule rejections.
"""
import concurrent.futures
import logging
import os
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, Mapping, Protocol
from uuid import uuid4

from ..config import COLLABORATOR_WORKERS, NOTIFIER_HISTORY_SIZE
from ..models.workflow_objects import Actor, ClassificationResult
from .errors import CollaboratorTimeout, CollaboratorUnavailable, WorkflowError

logger = logging.getLogger(__name__)


# =============================================================================
# CONTRACTS
# =============================================================================

class Storage(Protocol):
    def put(self, data: bytes) -> str: ...

    def get(self, reference: str) -> bytes: ...

    def delete(self, reference: str) -> None: ...


class Classifier(Protocol):
    def classify(self, data: bytes, declared_type: str) -> ClassificationResult: ...


class ExternalVerifier(Protocol):
    """Registrar or clearing house that can confirm a document's authenticity."""

    def verify(self, data: bytes, declared_type: str) -> ClassificationResult: ...


class Notifier(Protocol):
    """Best-effort delivery; the notifier retries on its own."""

    def send(self, template_id: str, recipient: str, payload: Dict[str, Any]) -> None: ...


class PermissionChecker(Protocol):
    def has_permission(self, actor: Actor, permission: str, resource_context: Mapping[str, Any]) -> bool: ...


# =============================================================================
# TIMEOUT BOUNDARY
# =============================================================================

_executor_lock = threading.Lock()
_executors: Dict[str, concurrent.futures.ThreadPoolExecutor] = {}


def _get_executor(collaborator: str) -> concurrent.futures.ThreadPoolExecutor:
    """One pool per collaborator, so a hung notifier cannot hold up storage or classification."""
    with _executor_lock:
        executor = _executors.get(collaborator)
        if executor is None:
            executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=COLLABORATOR_WORKERS, thread_name_prefix=f"collaborator-{collaborator}"
            )
            _executors[collaborator] = executor
        return executor


def call_with_timeout(fn: Callable[..., Any], *args: Any, timeout: float, collaborator: str) -> Any:
    """
    Run a collaborator call bounded by `timeout` seconds.

    Raises CollaboratorTimeout when the bound expires and
    CollaboratorUnavailable for any other failure of the collaborator.
    Workflow errors raised by the collaborator propagate unchanged.
    """
    future = _get_executor(collaborator).submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as e:
        future.cancel()
        logger.warning(f"{collaborator} call timed out after {timeout}s")
        raise CollaboratorTimeout(collaborator, f"{collaborator} did not respond within {timeout}s", e)
    except WorkflowError:
        raise
    except Exception as e:
        logger.warning(f"{collaborator} call failed: {e}")
        raise CollaboratorUnavailable(collaborator, f"{collaborator} failed: {e}", e)


# =============================================================================
# BUNDLED IMPLEMENTATIONS
# =============================================================================

class LocalFileStorage:
    """Stores each blob as a file named by a random reference under `root`."""

    def __init__(self, root: str):
        self.root = root
        os.makedirs(self.root, exist_ok=True)

    def _path(self, reference: str) -> str:
        if not reference or os.path.basename(reference) != reference:
            raise ValueError(f"Invalid storage reference: {reference!r}")
        return os.path.join(self.root, reference)

    def put(self, data: bytes) -> str:
        reference = uuid4().hex
        with open(self._path(reference), "wb") as fh:
            fh.write(data)
        return reference

    def get(self, reference: str) -> bytes:
        with open(self._path(reference), "rb") as fh:
            return fh.read()

    def delete(self, reference: str) -> None:
        path = self._path(reference)
        if os.path.exists(path):
            os.remove(path)


class UnavailableClassifier:
    """Placeholder when no classifier is configured: every document escalates to manual review."""

    def classify(self, data: bytes, declared_type: str) -> ClassificationResult:
        raise CollaboratorUnavailable("classifier", "No document classifier is configured")


class LoggingNotifier:
    """
    Writes notifications to the log instead of delivering them. The most
    recent `history_size` are kept in `sent` for inspection.
    """

    def __init__(self, history_size: int = NOTIFIER_HISTORY_SIZE):
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def send(self, template_id: str, recipient: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notification '{template_id}' -> {recipient}: {payload}")
        self.sent.append({"template_id": template_id, "recipient": recipient, "payload": payload})


class RolePermissionChecker:
    """
    Grants a permission when the actor carries it directly, or holds one of
    the roles mapped to it. "role:<name>" checks role membership directly.
    """

    ROLE_PREFIX = "role:"

    def __init__(self, role_permissions: Mapping[str, Iterable[str]]):
        self.role_permissions = {perm: frozenset(roles) for perm, roles in role_permissions.items()}

    def has_permission(self, actor: Actor, permission: str, resource_context: Mapping[str, Any]) -> bool:
        if actor.is_system:
            return True
        if permission in actor.permissions:
            return True
        if permission.startswith(self.ROLE_PREFIX):
            return permission[len(self.ROLE_PREFIX):] in actor.roles
        granted_roles = self.role_permissions.get(permission, frozenset())
        return bool(granted_roles & actor.roles)
