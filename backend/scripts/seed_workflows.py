#!/usr/bin/env python3
"""
Default Workflow Seed Script
Installs and activates the stock admissions workflows.

Usage:
    python -m scripts.seed_workflows [application_type ...]

Example:
    python -m scripts.seed_workflows undergraduate graduate

With no arguments every default template is installed. An application type
that already has an active workflow is skipped.
"""
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from admissions.database import SessionLocal, init_db
from admissions.services.workflow import (
    DEFAULT_TEMPLATES, WorkflowDefinitionStore, WorkflowError, install_template,
)


def seed_workflows(application_types=None) -> bool:
    """Install default templates for the given types (all when None)."""
    # Ensure tables exist
    init_db()

    templates = [
        t for t in DEFAULT_TEMPLATES
        if not application_types or t["application_type"] in application_types
    ]
    if not templates:
        print(f"Error: No default template for {', '.join(application_types)}.")
        return False

    db: Session = SessionLocal()
    try:
        store = WorkflowDefinitionStore(db)
        for template in templates:
            application_type = template["application_type"]
            if store.get_active_workflow_id(application_type):
                print(f"Skipping '{template['name']}': {application_type} already has an active workflow.")
                continue

            workflow_id = install_template(store, template, activate=True)
            print(f"Installed '{template['name']}'")
            print(f"  Workflow: {workflow_id}")
            print(f"  Type: {application_type}")
        return True

    except WorkflowError as e:
        print(f"Error installing workflows: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    success = seed_workflows(sys.argv[1:] or None)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
