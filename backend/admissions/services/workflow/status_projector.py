"""
Application Status Projector

Maps an application's current stage to the applicant-facing status label
and drives outbound notifications when that label changes.

Labels are configured on the stages themselves (status_label, falling back
to the stage name), so a decision stage's outcome shows up through the
terminal stage the decision transition led to.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...config import NOTIFIER_TIMEOUT_SECONDS
from ...models.db_models import ApplicationDB, utcnow
from ...models.workflow_objects import StatusChangedEvent
from ..collaborators import Notifier, call_with_timeout
from .definition_store import WorkflowDefinitionStore
from ..errors import CollaboratorError, NotFound

logger = logging.getLogger(__name__)

DRAFT_STATUS = "Draft"
STATUS_CHANGED_TEMPLATE = "application_status_changed"


class ApplicationStatusProjector:
    """Derives status labels and emits StatusChangedEvent notifications."""

    def __init__(
        self,
        db: Session,
        store: WorkflowDefinitionStore,
        notifier: Notifier,
        notify_timeout: float = NOTIFIER_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.store = store
        self.notifier = notifier
        self.notify_timeout = notify_timeout

    def label_for(self, workflow_id: Optional[str], stage_id: Optional[str]) -> str:
        if not workflow_id or not stage_id:
            return DRAFT_STATUS
        stage = self.store.get_graph(workflow_id).stage(stage_id)
        if stage is None:
            raise NotFound(f"Stage {stage_id} not found in workflow {workflow_id}")
        return stage.label

    def project_status(self, application_id: str) -> str:
        application = self.db.query(ApplicationDB).filter(ApplicationDB.id == application_id).first()
        if application is None:
            raise NotFound(f"Application {application_id} not found")
        return self.label_for(application.workflow_id, application.current_stage_id)

    def on_stage_changed(
        self,
        application: ApplicationDB,
        old_stage_id: Optional[str],
        new_stage_id: str,
    ) -> Optional[StatusChangedEvent]:
        """
        Called by the transition engine after every successful move.

        Returns the emitted event, or None when the label did not change.
        Notification failures are logged, never raised: the move is durable.
        """
        old_status = self.label_for(application.workflow_id, old_stage_id) if old_stage_id else DRAFT_STATUS
        new_status = self.label_for(application.workflow_id, new_stage_id)

        stage = self.store.get_graph(application.workflow_id).stage(new_stage_id)
        if stage is not None and stage.notification_template:
            self._notify(stage.notification_template, application.applicant_id, {
                "application_id": application.id,
                "stage_id": stage.id,
                "stage_name": stage.name,
            })

        if old_status == new_status:
            return None

        event = StatusChangedEvent(
            application_id=application.id,
            old_status=old_status,
            new_status=new_status,
            timestamp=utcnow(),
        )
        logger.info(f"Application {application.id} status: {old_status} -> {new_status}")
        self._notify(STATUS_CHANGED_TEMPLATE, application.applicant_id, event.to_payload())
        return event

    def _notify(self, template_id: str, recipient: str, payload: dict) -> None:
        try:
            call_with_timeout(
                self.notifier.send, template_id, recipient, payload,
                timeout=self.notify_timeout, collaborator="notifier",
            )
        except CollaboratorError as e:
            logger.warning(f"Notification '{template_id}' to {recipient} failed: {e}")
