"""
ApprovalFlow Main Application

HTTP entry point for the approval workflow engine:
- Workflow synthesis from parsed document sections
- Workflow template management
- Document lifecycle (submit, review, approve, publish)
- Metrics and alerts

Run with: uvicorn approvalflow.main:app --reload --port 8000
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from approvalflow.actors import ActorRef, ActorRole
from approvalflow.audit import AuditTrail
from approvalflow.config import EngineConfig
from approvalflow.database import (
    DatabaseConfig,
    PostgresDocumentRepository,
    PostgresTemplateRepository,
    close_db_pool,
    get_db_pool,
    init_database,
)
from approvalflow.department_classifier import Department, FieldRef, Section
from approvalflow.document_lifecycle import DocumentLifecycle, ReportStatus, ReviewVerdict
from approvalflow.errors import InvalidTransitionError, NotFoundError, ValidationError, WorkflowError
from approvalflow.escalation import EscalationScheduler
from approvalflow.monitoring import (
    AlertManager,
    MetricsExporter,
    MetricsRegistry,
    WorkflowMetrics,
    log_alert_handler,
)
from approvalflow.repository import DocumentRepository, InMemoryDocumentRepository, InMemoryTemplateRepository
from approvalflow.review_sequencer import ReviewPriority
from approvalflow.workflow_synthesizer import WorkflowSynthesizer
from approvalflow.workflow_templates import (
    StageType,
    WorkflowStage,
    WorkflowTemplate,
    WorkflowTemplateStore,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# =============================================================================
# ENGINE WIRING
# =============================================================================

@dataclass
class ApprovalEngine:
    """Everything one running application needs."""
    config: EngineConfig
    templates: WorkflowTemplateStore
    lifecycle: DocumentLifecycle
    synthesizer: WorkflowSynthesizer
    metrics: WorkflowMetrics
    alert_manager: AlertManager
    exporter: MetricsExporter
    audit: AuditTrail


async def build_engine(
    config: EngineConfig,
    pool=None,
    document_repository: Optional[DocumentRepository] = None,
) -> ApprovalEngine:
    """
    Assemble the engine on PostgreSQL when a pool is given, in memory otherwise.

    Documents already in storage seed the status gauge and get their
    escalation timers re-armed.
    """
    if pool is not None:
        template_repository = PostgresTemplateRepository(pool)
        if document_repository is None:
            document_repository = PostgresDocumentRepository(pool)
    else:
        template_repository = InMemoryTemplateRepository()
        if document_repository is None:
            document_repository = InMemoryDocumentRepository()

    registry = MetricsRegistry()
    metrics = WorkflowMetrics(registry)
    alert_manager = AlertManager()
    alert_manager.register_handler(log_alert_handler)
    synthesizer = WorkflowSynthesizer()

    templates = WorkflowTemplateStore(template_repository)
    if config.seed_templates:
        seeded = await templates.seed_defaults()
        logger.info(f"Seeded {len(seeded)} default workflow template(s)")

    lifecycle = DocumentLifecycle(
        document_repository,
        template_store=templates,
        scheduler=EscalationScheduler(config.seconds_per_hour),
        alert_manager=alert_manager,
        metrics=metrics,
        config=config,
        synthesizer=synthesizer,
    )
    audit = AuditTrail(config.audit_dir)
    lifecycle.subscribe(audit)
    metrics.seed_document_counts(await lifecycle.count_by_status())
    lifecycle.subscribe(metrics.record_transition)
    await lifecycle.resume_escalations()

    return ApprovalEngine(
        config=config,
        templates=templates,
        lifecycle=lifecycle,
        synthesizer=synthesizer,
        metrics=metrics,
        alert_manager=alert_manager,
        exporter=MetricsExporter(registry),
        audit=audit,
    )


def get_engine(request: Request) -> ApprovalEngine:
    return request.app.state.engine


# =============================================================================
# API REQUEST MODELS
# =============================================================================

class ActorModel(BaseModel):
    """A participant acting through the API."""
    actor_id: str = Field(min_length=1)
    role: ActorRole = ActorRole.REVIEWER
    display_name: Optional[str] = None

    def to_ref(self) -> ActorRef:
        return ActorRef(self.actor_id, self.role, self.display_name)


class FieldModel(BaseModel):
    label: str = ""


class SectionModel(BaseModel):
    title: str
    fields: List[FieldModel] = []


class SynthesizeRequest(BaseModel):
    """Parsed upload to build an approval plan for."""
    file_name: str
    file_kind: str = ""
    sections: List[SectionModel] = []
    create_document: bool = False
    created_by: Optional[str] = None


class StageModel(BaseModel):
    id: str
    name: str
    type: StageType = StageType.SEQUENTIAL
    approvers: List[ActorModel] = []
    required_approvals: int = 1
    auto_advance: bool = True
    escalation_time_hours: Optional[int] = None
    require_comments: bool = True
    require_signature: bool = True
    allow_delegation: bool = True

    def to_stage(self) -> WorkflowStage:
        return WorkflowStage(
            id=self.id,
            name=self.name,
            type=self.type,
            approvers=[a.to_ref() for a in self.approvers],
            required_approvals=self.required_approvals,
            auto_advance=self.auto_advance,
            escalation_time_hours=self.escalation_time_hours,
            require_comments=self.require_comments,
            require_signature=self.require_signature,
            allow_delegation=self.allow_delegation,
        )


class TemplateCreateRequest(BaseModel):
    id: Optional[str] = None
    name: str
    description: str = ""
    department: Optional[Department] = None
    document_types: List[str] = []
    stages: List[StageModel] = []
    active: bool = True
    created_by: str = "system"


class TemplateUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    department: Optional[Department] = None
    document_types: Optional[List[str]] = None
    stages: Optional[List[StageModel]] = None


class DuplicateRequest(BaseModel):
    created_by: Optional[str] = None


class ActivateRequest(BaseModel):
    active: bool = True


class DocumentCreateRequest(BaseModel):
    file_name: str
    department: Optional[Department] = None
    created_by: Optional[str] = None


class SubmitRequest(BaseModel):
    actor: ActorModel
    reviewers: Optional[List[ActorModel]] = None
    template_id: Optional[str] = None
    priority: ReviewPriority = ReviewPriority.NORMAL
    comments: str = ""


class ActorRequest(BaseModel):
    actor: ActorModel


class ReviewRequest(BaseModel):
    actor: ActorModel
    verdict: ReviewVerdict
    comments: str = ""


class RemarksRequest(BaseModel):
    actor: Optional[ActorModel] = None
    remarks: str = ""


class DelegateRequest(BaseModel):
    from_actor: ActorModel
    to_actor: ActorModel


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting ApprovalFlow...")

    config = EngineConfig.from_env()
    pool = await get_db_pool(DatabaseConfig.from_env())
    await init_database(pool)

    app.state.engine = await build_engine(config, pool)
    logger.info("ApprovalFlow ready!")

    yield

    await app.state.engine.lifecycle.shutdown()
    await close_db_pool()
    logger.info("Shutting down ApprovalFlow...")


app = FastAPI(
    title="ApprovalFlow",
    description="Document Approval Workflow Engine",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.to_dict()})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": exc.to_dict()})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.to_dict()})


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    logger.error(f"Unhandled workflow error on {request.url.path}: {exc}")
    return JSONResponse(status_code=400, content={"detail": {"message": str(exc)}})


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION
    }


# =============================================================================
# WORKFLOW SYNTHESIS
# =============================================================================

@app.post("/api/v1/workflows/synthesize")
async def synthesize_workflow(body: SynthesizeRequest, engine: ApprovalEngine = Depends(get_engine)):
    """Build an approval plan from parsed sections, optionally registering the document."""
    sections = [
        Section.from_dict({"title": s.title, "fields": [FieldRef(label=f.label) for f in s.fields]})
        for s in body.sections
    ]

    if body.create_document:
        document, workflow = await engine.lifecycle.create_from_upload(
            body.file_name, sections, body.file_kind, created_by=body.created_by
        )
        return {"workflow": workflow.to_dict(), "document": document.to_dict()}

    workflow = engine.synthesizer.synthesize(body.file_name, sections, body.file_kind)
    engine.metrics.record_synthesis(workflow.primary_department.value, len(workflow.steps))
    return {"workflow": workflow.to_dict()}


# =============================================================================
# TEMPLATE ENDPOINTS
# =============================================================================

@app.get("/api/v1/templates")
async def list_templates(
    department: Optional[Department] = None,
    document_type: Optional[str] = None,
    active_only: bool = False,
    engine: ApprovalEngine = Depends(get_engine),
):
    templates = await engine.templates.list(department, document_type, active_only)
    return {"templates": [t.to_dict() for t in templates], "total": len(templates)}


@app.post("/api/v1/templates", status_code=201)
async def create_template(body: TemplateCreateRequest, engine: ApprovalEngine = Depends(get_engine)):
    template = WorkflowTemplate(
        id=body.id or f"wf-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S%f')}",
        name=body.name,
        description=body.description,
        department=body.department,
        document_types=list(body.document_types),
        stages=[s.to_stage() for s in body.stages],
        active=body.active,
        created_by=body.created_by,
    )
    created = await engine.templates.create(template)
    return created.to_dict()


@app.get("/api/v1/templates/{template_id}")
async def get_template(template_id: str, engine: ApprovalEngine = Depends(get_engine)):
    return (await engine.templates.get(template_id)).to_dict()


@app.put("/api/v1/templates/{template_id}")
async def update_template(
    template_id: str, body: TemplateUpdateRequest, engine: ApprovalEngine = Depends(get_engine)
):
    changes = {}
    for name in ("name", "description", "department", "document_types"):
        value = getattr(body, name)
        if value is not None:
            changes[name] = value
    if body.stages is not None:
        changes["stages"] = [s.to_stage() for s in body.stages]

    updated = await engine.templates.update(template_id, **changes)
    return updated.to_dict()


@app.delete("/api/v1/templates/{template_id}")
async def delete_template(template_id: str, engine: ApprovalEngine = Depends(get_engine)):
    await engine.templates.delete(template_id)
    return {"deleted": template_id}


@app.post("/api/v1/templates/{template_id}/duplicate", status_code=201)
async def duplicate_template(
    template_id: str, body: DuplicateRequest, engine: ApprovalEngine = Depends(get_engine)
):
    return (await engine.templates.duplicate(template_id, body.created_by)).to_dict()


@app.post("/api/v1/templates/{template_id}/activate")
async def activate_template(
    template_id: str, body: ActivateRequest, engine: ApprovalEngine = Depends(get_engine)
):
    return (await engine.templates.set_active(template_id, body.active)).to_dict()


# =============================================================================
# DOCUMENT ENDPOINTS
# =============================================================================

@app.get("/api/v1/documents")
async def list_documents(status: Optional[ReportStatus] = None, engine: ApprovalEngine = Depends(get_engine)):
    """Documents, most recently acted on first."""
    documents = await engine.lifecycle.list_documents(status)
    return {"documents": [d.to_dict() for d in documents], "total": len(documents)}


@app.post("/api/v1/documents", status_code=201)
async def create_document(body: DocumentCreateRequest, engine: ApprovalEngine = Depends(get_engine)):
    document = await engine.lifecycle.create_document(
        body.file_name, department=body.department, created_by=body.created_by
    )
    return document.to_dict()


@app.get("/api/v1/documents/{document_id}")
async def get_document(document_id: str, engine: ApprovalEngine = Depends(get_engine)):
    return (await engine.lifecycle.get_document(document_id)).to_dict()


@app.get("/api/v1/documents/{document_id}/history")
async def get_document_history(document_id: str, engine: ApprovalEngine = Depends(get_engine)):
    history = await engine.lifecycle.get_history(document_id)
    return {"document_id": document_id, "history": [e.to_dict() for e in history]}


@app.post("/api/v1/documents/{document_id}/submit")
async def submit_document(document_id: str, body: SubmitRequest, engine: ApprovalEngine = Depends(get_engine)):
    document = await engine.lifecycle.submit(
        document_id,
        body.actor.to_ref(),
        reviewers=[r.to_ref() for r in body.reviewers] if body.reviewers is not None else None,
        template_id=body.template_id,
        priority=body.priority,
        comments=body.comments,
    )
    return document.to_dict()


@app.post("/api/v1/documents/{document_id}/open-review")
async def open_review(document_id: str, body: ActorRequest, engine: ApprovalEngine = Depends(get_engine)):
    return (await engine.lifecycle.open_review(document_id, body.actor.to_ref())).to_dict()


@app.post("/api/v1/documents/{document_id}/review")
async def review_document(document_id: str, body: ReviewRequest, engine: ApprovalEngine = Depends(get_engine)):
    document = await engine.lifecycle.act_on_review(
        document_id, body.actor.to_ref(), body.verdict, body.comments
    )
    return document.to_dict()


@app.post("/api/v1/documents/{document_id}/approve")
async def approve_document(document_id: str, body: ActorRequest, engine: ApprovalEngine = Depends(get_engine)):
    return (await engine.lifecycle.approve(document_id, body.actor.to_ref())).to_dict()


@app.post("/api/v1/documents/{document_id}/reject")
async def reject_document(document_id: str, body: RemarksRequest, engine: ApprovalEngine = Depends(get_engine)):
    actor = body.actor.to_ref() if body.actor else None
    return (await engine.lifecycle.reject(document_id, actor, body.remarks)).to_dict()


@app.post("/api/v1/documents/{document_id}/request-revision")
async def request_revision(document_id: str, body: RemarksRequest, engine: ApprovalEngine = Depends(get_engine)):
    actor = body.actor.to_ref() if body.actor else None
    return (await engine.lifecycle.request_revision(document_id, actor, body.remarks)).to_dict()


@app.post("/api/v1/documents/{document_id}/publish")
async def publish_document(document_id: str, body: ActorRequest, engine: ApprovalEngine = Depends(get_engine)):
    return (await engine.lifecycle.publish(document_id, body.actor.to_ref())).to_dict()


@app.post("/api/v1/documents/{document_id}/delegate")
async def delegate_review(document_id: str, body: DelegateRequest, engine: ApprovalEngine = Depends(get_engine)):
    document = await engine.lifecycle.delegate(
        document_id, body.from_actor.to_ref(), body.to_actor.to_ref()
    )
    return document.to_dict()


# =============================================================================
# METRICS ENDPOINTS
# =============================================================================

@app.get("/api/v1/metrics")
async def get_metrics(engine: ApprovalEngine = Depends(get_engine)):
    """Current metrics and active alerts as JSON."""
    by_status = await engine.lifecycle.count_by_status()

    return {
        "documents_total": sum(by_status.values()),
        "documents_by_status": by_status,
        "active_alerts": [a.to_dict() for a in engine.alert_manager.get_active_alerts()],
        "metrics": engine.exporter.to_json(),
    }


@app.get("/metrics")
async def prometheus_metrics(engine: ApprovalEngine = Depends(get_engine)):
    """Get metrics in Prometheus format."""
    return PlainTextResponse(content=engine.exporter.to_prometheus(), media_type="text/plain")
