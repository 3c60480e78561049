"""
Admissions Workflow - FastAPI Application

Main entry point for the admissions workflow backend.

Architecture:
- WorkflowDefinitionStore: admin-built stage graphs, frozen on activation
- StageTransitionEngine: moves applications between stages
- DocumentVerificationPipeline: pending -> verified | rejected, feeds the engine
- ApplicationStatusProjector: applicant-facing status and notifications
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import LOG_LEVEL
from .database import init_db
from .routers import applications_router, documents_router, workflows_router, workflow_error_handler
from .services.errors import WorkflowError


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize logging and database on startup."""
    configure_logging()
    init_db()
    yield


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Admissions Workflow",
    description="""
    Admissions Workflow - Stage Engine and Document Verification

    ## Components
    1. **Workflows**: stages and transitions per application type
    2. **Applications**: submission, transitions, reviewer actions, status
    3. **Documents**: upload, automated/manual verification, resubmission

    ## Key Principles
    - Activated workflows are frozen; duplicate to change them
    - Failed transitions change nothing
    - Verification records are append-only
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(WorkflowError, workflow_error_handler)

# Include routers
app.include_router(workflows_router)
app.include_router(applications_router)
app.include_router(documents_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Admissions Workflow",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
