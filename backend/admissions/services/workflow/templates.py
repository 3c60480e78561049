"""
Default Workflow Templates

Stock admissions processes installed by scripts/seed_workflows.py.
Stages reference each other by name; install_template() resolves names to
ids as it builds the workflow through the definition store.
"""
import logging
from typing import Any, Dict, List, Optional

from ...models.workflow_objects import StageSpec, TransitionSpec
from .definition_store import WorkflowDefinitionStore

logger = logging.getLogger(__name__)


# =============================================================================
# SHARED PIECES
# =============================================================================

_FEE_PAID = [{"type": "field", "field": "application_fee_paid", "operator": "=", "value": True}]
_SUBMITTED = [{"type": "field", "field": "is_submitted", "operator": "=", "value": True}]
_DEPOSIT_PAID = [{"type": "field", "field": "enrollment_deposit_paid", "operator": "=", "value": True}]
_DOCUMENTS_VERIFIED = [{"type": "all_documents_verified"}]

_DECISION_STAGES = [
    {"name": "Accepted", "description": "Applicant has been accepted",
     "notification_template": "acceptance_notification"},
    {"name": "Waitlisted", "description": "Applicant has been placed on the waitlist",
     "notification_template": "waitlist_notification"},
    {"name": "Rejected", "description": "Application has been rejected",
     "status_label": "Not Admitted", "notification_template": "rejection_notification"},
    {"name": "Enrollment", "description": "Accepted applicant has confirmed enrollment",
     "status_label": "Enrolled", "required_actions": ["pay_enrollment_deposit"],
     "notification_template": "enrollment_confirmation"},
]


def _decision_transitions() -> List[Dict[str, Any]]:
    decide = ["make_admission_decision"]
    return [
        {"source": "Decision", "target": "Accepted", "name": "Accept",
         "description": "Accept the applicant", "required_permissions": decide},
        {"source": "Decision", "target": "Waitlisted", "name": "Waitlist",
         "description": "Place the applicant on the waitlist", "required_permissions": decide},
        {"source": "Decision", "target": "Rejected", "name": "Reject",
         "description": "Reject the application", "required_permissions": decide},
        {"source": "Waitlisted", "target": "Accepted", "name": "Accept from Waitlist",
         "description": "Accept an applicant from the waitlist", "required_permissions": decide},
        {"source": "Waitlisted", "target": "Rejected", "name": "Reject from Waitlist",
         "description": "Reject an applicant from the waitlist", "required_permissions": decide},
        {"source": "Accepted", "target": "Enrollment", "name": "Confirm Enrollment",
         "description": "Applicant confirms enrollment by paying deposit",
         "is_automatic": True, "conditions": _DEPOSIT_PAID},
    ]


# =============================================================================
# TEMPLATES
# =============================================================================

UNDERGRADUATE_TEMPLATE: Dict[str, Any] = {
    "name": "Undergraduate Admissions",
    "description": "Standard workflow for undergraduate applications",
    "application_type": "undergraduate",
    "stages": [
        {"name": "Draft", "description": "Application is being prepared by the applicant",
         "notification_template": "welcome_to_application"},
        {"name": "Submitted", "description": "Application has been submitted and is awaiting initial screening",
         "notification_template": "application_received"},
        {"name": "Document Verification", "description": "Required documents are being verified",
         "required_documents": ["transcript", "personal_statement", "recommendation_letters"],
         "assigned_role": "verification_team", "status_label": "Verifying Documents",
         "notification_template": "documents_required"},
        {"name": "Under Review", "description": "Application is being reviewed by the admissions committee",
         "assigned_role": "admissions_committee", "notification_template": "application_under_review"},
        {"name": "Additional Information", "description": "Additional information is required from the applicant",
         "required_actions": ["provide_additional_info"], "status_label": "Action Required",
         "notification_template": "additional_information_required"},
        {"name": "Decision", "description": "Final decision on the application",
         "assigned_role": "admissions_director", "status_label": "Under Review"},
    ] + _DECISION_STAGES,
    "transitions": [
        {"source": "Draft", "target": "Submitted", "name": "Submit Application",
         "description": "Applicant submits their application",
         "is_automatic": True, "conditions": _SUBMITTED},
        {"source": "Submitted", "target": "Document Verification", "name": "Initial Screening Passed",
         "description": "Application passes initial screening",
         "is_automatic": True, "conditions": _FEE_PAID},
        {"source": "Document Verification", "target": "Under Review", "name": "Documents Verified",
         "description": "All required documents have been verified",
         "is_automatic": True, "conditions": _DOCUMENTS_VERIFIED},
        {"source": "Under Review", "target": "Additional Information", "name": "Request Information",
         "description": "Request additional information from applicant",
         "required_permissions": ["request_additional_info"]},
        {"source": "Additional Information", "target": "Under Review", "name": "Information Provided",
         "description": "Applicant has provided the requested information",
         "is_automatic": True,
         "conditions": [{"type": "field", "field": "additional_info_provided", "operator": "=", "value": True}]},
        {"source": "Under Review", "target": "Decision", "name": "Review Complete",
         "description": "Application review is complete", "required_permissions": ["complete_review"]},
    ] + _decision_transitions(),
}

GRADUATE_TEMPLATE: Dict[str, Any] = {
    "name": "Graduate Admissions",
    "description": "Standard workflow for graduate applications",
    "application_type": "graduate",
    "stages": [
        {"name": "Draft", "description": "Application is being prepared by the applicant",
         "notification_template": "welcome_to_application"},
        {"name": "Submitted", "description": "Application has been submitted and is awaiting initial screening",
         "notification_template": "application_received"},
        {"name": "Document Verification", "description": "Required documents are being verified",
         "required_documents": [
             "transcript", "personal_statement", "recommendation_letters", "resume", "test_scores",
         ],
         "assigned_role": "verification_team", "status_label": "Verifying Documents",
         "notification_template": "documents_required"},
        {"name": "Department Review", "description": "Application is being reviewed by the academic department",
         "assigned_role": "department_reviewer", "status_label": "Under Review",
         "notification_template": "department_review"},
        {"name": "Interview", "description": "Applicant is scheduled for an interview",
         "required_actions": ["complete_interview"], "assigned_role": "interview_committee",
         "status_label": "Interview Scheduled", "notification_template": "interview_scheduled"},
        {"name": "Graduate Committee Review", "description": "Application is being reviewed by the graduate committee",
         "assigned_role": "graduate_committee", "status_label": "Under Review",
         "notification_template": "committee_review"},
        {"name": "Decision", "description": "Final decision on the application",
         "assigned_role": "graduate_director", "status_label": "Under Review"},
    ] + _DECISION_STAGES,
    "transitions": [
        {"source": "Draft", "target": "Submitted", "name": "Submit Application",
         "description": "Applicant submits their application",
         "is_automatic": True, "conditions": _SUBMITTED},
        {"source": "Submitted", "target": "Document Verification", "name": "Initial Screening Passed",
         "description": "Application passes initial screening",
         "is_automatic": True, "conditions": _FEE_PAID},
        {"source": "Document Verification", "target": "Department Review", "name": "Documents Verified",
         "description": "All required documents have been verified",
         "is_automatic": True, "conditions": _DOCUMENTS_VERIFIED},
        {"source": "Department Review", "target": "Interview", "name": "Schedule Interview",
         "description": "Schedule an interview with the applicant",
         "required_permissions": ["schedule_interview"]},
        {"source": "Department Review", "target": "Graduate Committee Review", "name": "Forward to Committee",
         "description": "Forward application to graduate committee",
         "required_permissions": ["forward_to_committee"]},
        {"source": "Interview", "target": "Graduate Committee Review", "name": "Interview Completed",
         "description": "Interview has been completed",
         "is_automatic": True, "conditions": [{"type": "all_actions_recorded"}]},
        {"source": "Graduate Committee Review", "target": "Decision", "name": "Review Complete",
         "description": "Graduate committee review is complete",
         "required_permissions": ["complete_committee_review"]},
    ] + _decision_transitions(),
}

DEFAULT_TEMPLATES: List[Dict[str, Any]] = [UNDERGRADUATE_TEMPLATE, GRADUATE_TEMPLATE]


def install_template(
    store: WorkflowDefinitionStore,
    template: Dict[str, Any],
    created_by: Optional[str] = None,
    activate: bool = False,
) -> str:
    """
    Build a draft workflow from a template, optionally activating it.

    Stage sequence follows list order when a stage does not set one.
    """
    workflow_id = store.create_workflow(
        name=template["name"],
        application_type=template["application_type"],
        created_by=created_by,
        description=template.get("description"),
    )

    stage_ids: Dict[str, str] = {}
    for index, stage in enumerate(template["stages"], start=1):
        spec = StageSpec(
            name=stage["name"],
            sequence=stage.get("sequence", index),
            description=stage.get("description"),
            required_documents=list(stage.get("required_documents", [])),
            required_actions=list(stage.get("required_actions", [])),
            assigned_role=stage.get("assigned_role"),
            status_label=stage.get("status_label"),
            notification_template=stage.get("notification_template"),
        )
        stage_ids[stage["name"]] = store.add_stage(workflow_id, spec)

    for transition in template["transitions"]:
        spec = TransitionSpec(
            name=transition["name"],
            description=transition.get("description"),
            conditions=list(transition.get("conditions", [])),
            required_permissions=list(transition.get("required_permissions", [])),
            is_automatic=transition.get("is_automatic", False),
            is_retry_loop=transition.get("is_retry_loop", False),
        )
        store.add_transition(workflow_id, stage_ids[transition["source"]], stage_ids[transition["target"]], spec)

    logger.info(
        f"Installed template '{template['name']}' as workflow {workflow_id} "
        f"({len(stage_ids)} stages, {len(template['transitions'])} transitions)"
    )

    if activate:
        store.activate(workflow_id, actor_id=created_by)
    return workflow_id
