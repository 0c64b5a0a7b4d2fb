"""
Document Lifecycle State Machine

Owns the status of each document and its progression through review.
Every status change goes through a single ``(status, event) -> status``
table; pairs missing from the table raise ``InvalidTransitionError``.

Operations run under a per-document lock on a copy of the stored
aggregate. The copy is saved only when the operation succeeds, and the
resulting transition events are then published to subscribers (audit
trail, metrics, downstream publishing).
"""

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from approvalflow.actors import SYSTEM_ACTOR, ActorRef, ActorRole
from approvalflow.config import EngineConfig
from approvalflow.department_classifier import Department
from approvalflow.errors import (
    InvalidTransitionError,
    NotAssignedError,
    NotFoundError,
    ValidationError,
)
from approvalflow.escalation import EscalationScheduler
from approvalflow.monitoring import AlertManager, AlertSeverity, WorkflowMetrics
from approvalflow.repository import DocumentRepository
from approvalflow.review_sequencer import ReviewAssignment, ReviewPriority, ReviewSequencer
from approvalflow.workflow_synthesizer import SynthesizedWorkflow, WorkflowStep, WorkflowSynthesizer
from approvalflow.workflow_templates import WorkflowTemplateStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# WORKFLOW STATUS & EVENTS
# =============================================================================

class ReportStatus(str, Enum):
    """Document status values."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    INITIAL_REVIEW = "initial-review"
    REVIEW_PROCESS = "review-process"
    REVIEWED = "reviewed"
    NEEDS_REVISION = "needs-revision"
    REJECTED = "rejected"
    APPROVED = "approved"
    PUBLISHED = "published"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class LifecycleEvent(str, Enum):
    """Events that drive status transitions."""
    CREATE = "create"
    SUBMIT = "submit"
    OPEN_REVIEW = "open_review"
    STEP_REVIEWED = "step_reviewed"
    FINAL_APPROVAL = "final_approval"
    REQUEST_REVISION = "request_revision"
    REJECT = "reject"
    APPROVE_PAGE = "approve_page"
    APPROVE = "approve"
    PUBLISH = "publish"
    DELEGATE = "delegate"
    ESCALATE = "escalate"


class ReviewVerdict(str, Enum):
    """Verdicts a participant can give on their review turn."""
    REVIEWED = "reviewed"
    REVISION = "revision"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({ReportStatus.REJECTED, ReportStatus.PUBLISHED})

# Statuses in which a review assignment is being worked
REVIEW_STATUSES = (
    ReportStatus.SUBMITTED,
    ReportStatus.INITIAL_REVIEW,
    ReportStatus.REVIEW_PROCESS,
    ReportStatus.REVIEWED,
)


def _build_transitions() -> Dict[Tuple[ReportStatus, LifecycleEvent], ReportStatus]:
    table = {
        (ReportStatus.PENDING, LifecycleEvent.SUBMIT): ReportStatus.SUBMITTED,
        (ReportStatus.NEEDS_REVISION, LifecycleEvent.SUBMIT): ReportStatus.SUBMITTED,

        (ReportStatus.SUBMITTED, LifecycleEvent.OPEN_REVIEW): ReportStatus.INITIAL_REVIEW,
        (ReportStatus.REVIEWED, LifecycleEvent.OPEN_REVIEW): ReportStatus.REVIEW_PROCESS,

        (ReportStatus.APPROVED, LifecycleEvent.REQUEST_REVISION): ReportStatus.NEEDS_REVISION,
        (ReportStatus.APPROVED, LifecycleEvent.PUBLISH): ReportStatus.PUBLISHED,

        # Paged registration approval
        (ReportStatus.PENDING, LifecycleEvent.APPROVE_PAGE): ReportStatus.PENDING,
        (ReportStatus.REVIEWED, LifecycleEvent.APPROVE_PAGE): ReportStatus.REVIEWED,
        (ReportStatus.PENDING, LifecycleEvent.APPROVE): ReportStatus.APPROVED,
        (ReportStatus.REVIEWED, LifecycleEvent.APPROVE): ReportStatus.APPROVED,
    }

    for status in REVIEW_STATUSES:
        table[(status, LifecycleEvent.STEP_REVIEWED)] = ReportStatus.REVIEWED
        table[(status, LifecycleEvent.FINAL_APPROVAL)] = ReportStatus.APPROVED
        table[(status, LifecycleEvent.REQUEST_REVISION)] = ReportStatus.NEEDS_REVISION
        table[(status, LifecycleEvent.ESCALATE)] = ReportStatus.REVIEWED
        table[(status, LifecycleEvent.DELEGATE)] = status

    for status in ReportStatus:
        if not status.is_terminal:
            table[(status, LifecycleEvent.REJECT)] = ReportStatus.REJECTED

    return table


LIFECYCLE_TRANSITIONS: Dict[Tuple[ReportStatus, LifecycleEvent], ReportStatus] = _build_transitions()


def can_transition(status: ReportStatus, event: LifecycleEvent) -> bool:
    return (status, event) in LIFECYCLE_TRANSITIONS


def next_status(status: ReportStatus, event: LifecycleEvent) -> ReportStatus:
    """Resolve a transition or raise InvalidTransitionError."""
    try:
        return LIFECYCLE_TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot {event.value} a document in status '{status.value}'",
            from_status=status.value,
            event=event.value,
        ) from None


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class TransitionEvent:
    """One applied transition, as delivered to subscribers."""
    document_id: str
    event: str
    from_status: Optional[str]
    to_status: str
    actor: Optional[ActorRef] = None
    timestamp: datetime = field(default_factory=utc_now)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "event": self.event,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor.to_dict() if self.actor else None,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionEvent":
        return cls(
            document_id=data["document_id"],
            event=data["event"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            actor=ActorRef.from_dict(data["actor"]) if data.get("actor") else None,
            timestamp=datetime.fromisoformat(data["timestamp"]),
            details=dict(data.get("details") or {}),
        )


@dataclass
class DocumentRecord:
    """A document moving through approval."""
    document_id: str
    request_id: str
    file_name: str
    department: Optional[Department] = None
    status: ReportStatus = ReportStatus.PENDING
    assignment: Optional[ReviewAssignment] = None
    approval_page: int = 0
    submission_count: int = 0
    steps: List[WorkflowStep] = field(default_factory=list)
    returned_by: Optional[ActorRef] = None
    remarks: str = ""
    created_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    published_by: Optional[ActorRef] = None
    created_at: datetime = field(default_factory=utc_now)
    last_modified: datetime = field(default_factory=utc_now)
    history: List[TransitionEvent] = field(default_factory=list)

    @property
    def review_in_progress(self) -> bool:
        return self.assignment is not None and self.assignment.is_active

    def to_dict(self) -> Dict[str, Any]:
        def _ts(value: Optional[datetime]):
            return value.isoformat() if value else None

        return {
            "document_id": self.document_id,
            "request_id": self.request_id,
            "file_name": self.file_name,
            "department": self.department.value if self.department else None,
            "status": self.status.value,
            "assignment": self.assignment.to_dict() if self.assignment else None,
            "approval_page": self.approval_page,
            "submission_count": self.submission_count,
            "steps": [s.to_dict() for s in self.steps],
            "returned_by": self.returned_by.to_dict() if self.returned_by else None,
            "remarks": self.remarks,
            "created_by": self.created_by,
            "submitted_at": _ts(self.submitted_at),
            "approved_at": _ts(self.approved_at),
            "published_at": _ts(self.published_at),
            "published_by": self.published_by.to_dict() if self.published_by else None,
            "created_at": _ts(self.created_at),
            "last_modified": _ts(self.last_modified),
            "history": [e.to_dict() for e in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentRecord":
        def _ts(value):
            return datetime.fromisoformat(value) if value else None

        def _actor(value):
            return ActorRef.from_dict(value) if value else None

        return cls(
            document_id=data["document_id"],
            request_id=data["request_id"],
            file_name=data["file_name"],
            department=Department(data["department"]) if data.get("department") else None,
            status=ReportStatus(data.get("status", ReportStatus.PENDING.value)),
            assignment=ReviewAssignment.from_dict(data["assignment"]) if data.get("assignment") else None,
            approval_page=data.get("approval_page", 0),
            submission_count=data.get("submission_count", 0),
            steps=[WorkflowStep.from_dict(s) for s in data.get("steps", [])],
            returned_by=_actor(data.get("returned_by")),
            remarks=data.get("remarks", ""),
            created_by=data.get("created_by"),
            submitted_at=_ts(data.get("submitted_at")),
            approved_at=_ts(data.get("approved_at")),
            published_at=_ts(data.get("published_at")),
            published_by=_actor(data.get("published_by")),
            created_at=_ts(data.get("created_at")) or utc_now(),
            last_modified=_ts(data.get("last_modified")) or utc_now(),
            history=[TransitionEvent.from_dict(e) for e in data.get("history", [])],
        )


Subscriber = Callable[[TransitionEvent], Union[Awaitable[Any], Any]]


# =============================================================================
# LIFECYCLE
# =============================================================================

class DocumentLifecycle:
    """
    Drives documents through review and approval.

    Dependencies are injected; the lifecycle holds no global state.
    """

    def __init__(
        self,
        repository: DocumentRepository,
        template_store: Optional[WorkflowTemplateStore] = None,
        scheduler: Optional[EscalationScheduler] = None,
        alert_manager: Optional[AlertManager] = None,
        metrics: Optional[WorkflowMetrics] = None,
        config: Optional[EngineConfig] = None,
        sequencer: Optional[ReviewSequencer] = None,
        synthesizer: Optional[WorkflowSynthesizer] = None,
    ):
        self.config = config or EngineConfig()
        self._repository = repository
        self._templates = template_store
        self._scheduler = scheduler or EscalationScheduler(self.config.seconds_per_hour)
        self._alerts = alert_manager or AlertManager()
        self._metrics = metrics
        self._sequencer = sequencer or ReviewSequencer()
        self._synthesizer = synthesizer or WorkflowSynthesizer()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        self._create_lock = asyncio.Lock()
        self._request_counter: Optional[int] = None
        self._subscribers: List[Subscriber] = []

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, callback: Subscriber):
        """Register a sync or async callable receiving every TransitionEvent."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def _emit(self, event: TransitionEvent):
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Transition subscriber failed for {event.document_id} ({event.event}): {e}")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _apply(
        self,
        document: DocumentRecord,
        event: LifecycleEvent,
        actor: Optional[ActorRef],
        **details,
    ) -> TransitionEvent:
        """Move the document along the table and record the transition."""
        from_status = document.status
        document.status = next_status(from_status, event)

        transition = TransitionEvent(
            document_id=document.document_id,
            event=event.value,
            from_status=from_status.value,
            to_status=document.status.value,
            actor=actor,
            details=details,
        )
        document.history.append(transition)
        logger.info(
            f"Document {document.document_id}: {from_status.value} -> {document.status.value} "
            f"({event.value} by {actor.actor_id if actor else 'unknown'})"
        )
        return transition

    def _escalation_key(self, document: DocumentRecord) -> Optional[str]:
        assignment = document.assignment
        if assignment is None or not assignment.is_active:
            return None
        return f"{document.document_id}:{document.submission_count}:{assignment.escalation_key}"

    @asynccontextmanager
    async def _document_lock(self, document_id: str):
        """Hold the document's lock; the entry is dropped once nobody waits on it."""
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if not self._lock_users[document_id]:
                del self._lock_users[document_id]
                del self._locks[document_id]

    @asynccontextmanager
    async def _editing(self, document_id: str):
        """
        Yield a working copy of the document under its lock.

        The copy is saved only if the block completes and recorded at least
        one transition; its events are published after the lock is released.
        """
        async with self._document_lock(document_id):
            document = await self.get_document(document_id)
            previous_key = self._escalation_key(document)
            recorded = len(document.history)

            yield document

            new_events = document.history[recorded:]
            if new_events:
                document.last_modified = utc_now()
                await self._repository.save(document)
                self._sync_escalation(document, previous_key)

        for event in new_events:
            await self._emit(event)

    def _sync_escalation(self, document: DocumentRecord, previous_key: Optional[str]):
        """Keep exactly one timer for the active stage instance."""
        key = self._escalation_key(document)
        if key == previous_key:
            return

        if previous_key is not None:
            self._scheduler.cancel(previous_key)
            self._alerts.resolve_document(document.document_id)
        if key is None:
            return
        self._arm_escalation(document, key)

    def _arm_escalation(self, document: DocumentRecord, key: str) -> bool:
        """Start the timer for the current stage, counted from stage entry."""
        assignment = document.assignment
        stage = assignment.current_stage
        if not stage.escalation_time_hours:
            return False

        document_id = document.document_id
        stage_key = assignment.escalation_key
        self._scheduler.schedule(
            key,
            stage.escalation_time_hours,
            lambda: self.escalate(document_id, stage_key),
            started_at=assignment.stage_entered_at,
        )
        return True

    def _require_active_assignment(self, document: DocumentRecord, event: LifecycleEvent) -> ReviewAssignment:
        if not document.review_in_progress:
            raise InvalidTransitionError(
                f"Document {document.document_id} has no review in progress",
                from_status=document.status.value,
                event=event.value,
            )
        return document.assignment

    def _close_assignment(self, document: DocumentRecord, resolution: str):
        if document.assignment is not None and not document.assignment.closed:
            document.assignment = self._sequencer.close(document.assignment, resolution)

    def _mark_approved(self, document: DocumentRecord):
        document.approved_at = utc_now()
        if self._metrics and document.submitted_at:
            hours = (document.approved_at - document.submitted_at).total_seconds() / 3600
            self._metrics.record_approval_duration(hours)

    async def _next_request_id(self) -> str:
        if self._request_counter is None:
            numbers = [
                int(d.request_id[3:]) for d in await self._repository.list_all()
                if d.request_id.startswith("REQ") and d.request_id[3:].isdigit()
            ]
            self._request_counter = max(numbers, default=0)
        self._request_counter += 1
        return f"REQ{self._request_counter:03d}"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_document(self, document_id: str) -> DocumentRecord:
        document = await self._repository.get(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    async def list_documents(self, status: Optional[ReportStatus] = None) -> List[DocumentRecord]:
        """Documents, most recently acted on first."""
        documents = await self._repository.list_all()
        if status is not None:
            documents = [d for d in documents if d.status == status]
        documents.sort(key=lambda d: d.last_modified, reverse=True)
        return documents

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for document in await self._repository.list_all():
            counts[document.status.value] += 1
        return dict(counts)

    async def get_history(self, document_id: str) -> List[TransitionEvent]:
        return (await self.get_document(document_id)).history

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_document(
        self,
        file_name: str,
        department: Optional[Department] = None,
        steps: Optional[Sequence[WorkflowStep]] = None,
        created_by: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> DocumentRecord:
        """Register a new document in ``pending``."""
        if not (file_name or "").strip():
            raise ValidationError("Document requires a file name", code="MISSING_FILE_NAME")

        async with self._create_lock:
            document_id = document_id or str(uuid.uuid4())
            if await self._repository.get(document_id) is not None:
                raise ValidationError(f"Document '{document_id}' already exists", code="DUPLICATE_ID")

            document = DocumentRecord(
                document_id=document_id,
                request_id=await self._next_request_id(),
                file_name=file_name,
                department=department,
                steps=list(steps or []),
                created_by=created_by,
            )
            creation = TransitionEvent(
                document_id=document_id,
                event=LifecycleEvent.CREATE.value,
                from_status=None,
                to_status=document.status.value,
                actor=ActorRef(created_by, ActorRole.REQUESTOR) if created_by else None,
                details={"request_id": document.request_id, "file_name": file_name},
            )
            document.history.append(creation)
            await self._repository.save(document)

        logger.info(f"Created document {document_id} ({document.request_id}) for '{file_name}'")
        await self._emit(creation)
        return document

    async def create_from_upload(
        self,
        file_name: str,
        sections: Sequence[Any],
        file_kind: str,
        created_by: Optional[str] = None,
    ) -> Tuple[DocumentRecord, SynthesizedWorkflow]:
        """Synthesize a plan from parsed sections and register the document with it."""
        workflow = self._synthesizer.synthesize(file_name, sections, file_kind)
        if self._metrics:
            self._metrics.record_synthesis(workflow.primary_department.value, len(workflow.steps))
        document = await self.create_document(
            file_name,
            department=workflow.primary_department,
            steps=workflow.steps,
            created_by=created_by,
        )
        return document, workflow

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    async def submit(
        self,
        document_id: str,
        actor: ActorRef,
        reviewers: Optional[Sequence[ActorRef]] = None,
        template_id: Optional[str] = None,
        priority: ReviewPriority = ReviewPriority.NORMAL,
        comments: str = "",
    ) -> DocumentRecord:
        """
        Submit for review with an ad hoc reviewer sequence or a template.

        Valid from ``pending`` and ``needs-revision``; starts a fresh
        assignment at the first reviewer.
        """
        if (reviewers is None) == (template_id is None):
            raise ValidationError("Submit requires either a reviewer sequence or a template id", code="NO_REVIEWERS")

        async with self._editing(document_id) as document:
            next_status(document.status, LifecycleEvent.SUBMIT)

            if template_id is not None:
                if self._templates is None:
                    raise ValidationError("No template store configured", code="NO_TEMPLATE_STORE")
                template = await self._templates.get(template_id)
                if not template.active:
                    raise ValidationError(f"Workflow template '{template_id}' is not active", code="TEMPLATE_INACTIVE")
                assignment = self._sequencer.from_stages(
                    template.stages, priority=priority, comments=comments, template_id=template_id
                )
            else:
                assignment = self._sequencer.from_reviewers(reviewers, priority=priority, comments=comments)

            document.assignment = assignment
            document.approval_page = 0
            document.submission_count += 1
            document.submitted_at = utc_now()
            document.returned_by = None
            self._apply(
                document, LifecycleEvent.SUBMIT, actor,
                priority=priority.value,
                template_id=template_id,
                assigned_to=assignment.assigned_to.actor_id,
            )
        return document

    async def open_review(self, document_id: str, actor: ActorRef) -> DocumentRecord:
        """Mark that the current assignee has started working the review."""
        async with self._editing(document_id) as document:
            next_status(document.status, LifecycleEvent.OPEN_REVIEW)
            assignment = self._require_active_assignment(document, LifecycleEvent.OPEN_REVIEW)
            if not self._sequencer.is_eligible(assignment, actor):
                raise NotAssignedError(
                    f"{actor.actor_id} is not assigned to document {document_id}",
                    from_status=document.status.value,
                    event=LifecycleEvent.OPEN_REVIEW.value,
                )
            self._apply(document, LifecycleEvent.OPEN_REVIEW, actor)
        return document

    async def act_on_review(
        self,
        document_id: str,
        actor: ActorRef,
        verdict: ReviewVerdict,
        comments: str = "",
    ) -> DocumentRecord:
        """Apply the acting participant's verdict on their review turn."""
        verdict = ReviewVerdict(verdict)
        event = {
            ReviewVerdict.REVIEWED: LifecycleEvent.STEP_REVIEWED,
            ReviewVerdict.REVISION: LifecycleEvent.REQUEST_REVISION,
            ReviewVerdict.REJECTED: LifecycleEvent.REJECT,
        }[verdict]

        async with self._editing(document_id) as document:
            next_status(document.status, event)
            assignment = self._require_active_assignment(document, event)

            if not self._sequencer.is_eligible(assignment, actor):
                raise NotAssignedError(
                    f"{actor.actor_id} is not assigned to the current review stage of {document_id}",
                    from_status=document.status.value,
                    event=event.value,
                )

            stage = assignment.current_stage
            if stage.require_comments and not (comments or "").strip():
                raise ValidationError(
                    f"Stage '{stage.id}' requires comments with every verdict",
                    stage_id=stage.id,
                    code="COMMENTS_REQUIRED",
                )

            if verdict == ReviewVerdict.REVISION:
                self._close_assignment(document, ReportStatus.NEEDS_REVISION.value)
                document.returned_by = actor
                document.remarks = comments
                self._apply(document, event, actor, stage_id=stage.id, comments=comments)

            elif verdict == ReviewVerdict.REJECTED:
                self._close_assignment(document, ReportStatus.REJECTED.value)
                document.remarks = comments
                self._apply(document, event, actor, stage_id=stage.id, comments=comments)

            else:
                updated, cleared = self._sequencer.record_approval(assignment, actor)
                document.assignment = updated

                if cleared and updated.exhausted and actor.is_approver:
                    self._close_assignment(document, ReportStatus.APPROVED.value)
                    self._mark_approved(document)
                    self._apply(
                        document, LifecycleEvent.FINAL_APPROVAL, actor,
                        stage_id=stage.id, comments=comments,
                    )
                else:
                    next_actor = updated.assigned_to
                    self._apply(
                        document, LifecycleEvent.STEP_REVIEWED, actor,
                        stage_id=stage.id,
                        stage_cleared=cleared,
                        comments=comments,
                        assigned_to=next_actor.actor_id if next_actor else None,
                    )
        return document

    async def delegate(self, document_id: str, from_actor: ActorRef, to_actor: ActorRef) -> DocumentRecord:
        """Hand the current turn of ``from_actor`` to ``to_actor``."""
        async with self._editing(document_id) as document:
            next_status(document.status, LifecycleEvent.DELEGATE)
            assignment = self._require_active_assignment(document, LifecycleEvent.DELEGATE)
            document.assignment = self._sequencer.delegate(assignment, from_actor, to_actor)
            self._apply(
                document, LifecycleEvent.DELEGATE, from_actor,
                stage_id=assignment.current_stage.id,
                delegate=to_actor.actor_id,
            )
        return document

    # -------------------------------------------------------------------------
    # Approval, rejection, publishing
    # -------------------------------------------------------------------------

    async def approve(self, document_id: str, actor: ActorRef) -> DocumentRecord:
        """
        Paged registration approval.

        Each call approves one page; the last page approves the document.
        Not available while a review assignment still has someone to act.
        """
        async with self._editing(document_id) as document:
            next_status(document.status, LifecycleEvent.APPROVE_PAGE)
            if document.review_in_progress:
                raise InvalidTransitionError(
                    f"Document {document_id} still has a review in progress",
                    from_status=document.status.value,
                    event=LifecycleEvent.APPROVE.value,
                )

            document.approval_page += 1
            pages = self.config.registration_pages
            if document.approval_page >= pages:
                self._close_assignment(document, ReportStatus.APPROVED.value)
                self._mark_approved(document)
                self._apply(document, LifecycleEvent.APPROVE, actor, page=document.approval_page, pages=pages)
            else:
                self._apply(document, LifecycleEvent.APPROVE_PAGE, actor, page=document.approval_page, pages=pages)
        return document

    async def reject(self, document_id: str, actor: Optional[ActorRef] = None, remarks: str = "") -> DocumentRecord:
        """Reject from any non-terminal status."""
        async with self._editing(document_id) as document:
            next_status(document.status, LifecycleEvent.REJECT)
            self._close_assignment(document, ReportStatus.REJECTED.value)
            document.remarks = remarks
            self._apply(document, LifecycleEvent.REJECT, actor, remarks=remarks)
        return document

    async def request_revision(
        self, document_id: str, actor: Optional[ActorRef] = None, remarks: str = ""
    ) -> DocumentRecord:
        """Send a document under review, or already approved, back to its author."""
        async with self._editing(document_id) as document:
            next_status(document.status, LifecycleEvent.REQUEST_REVISION)
            self._close_assignment(document, ReportStatus.NEEDS_REVISION.value)
            document.returned_by = actor
            document.remarks = remarks
            document.approved_at = None
            self._apply(document, LifecycleEvent.REQUEST_REVISION, actor, remarks=remarks)
        return document

    async def publish(self, document_id: str, actor: ActorRef) -> DocumentRecord:
        """Publish an approved document."""
        async with self._editing(document_id) as document:
            next_status(document.status, LifecycleEvent.PUBLISH)
            document.published_at = utc_now()
            document.published_by = actor
            self._apply(document, LifecycleEvent.PUBLISH, actor)
        return document

    # -------------------------------------------------------------------------
    # Escalation
    # -------------------------------------------------------------------------

    async def escalate(self, document_id: str, stage_key: str) -> Optional[DocumentRecord]:
        """
        Timer callback for an overdue stage.

        Auto-advancing stages are cleared by the system actor; other stages
        raise an alert. A timer whose stage has already resolved does nothing.
        """
        async with self._editing(document_id) as document:
            assignment = document.assignment
            if assignment is None or not assignment.is_active or assignment.escalation_key != stage_key:
                logger.info(f"Ignoring stale escalation {stage_key} for document {document_id}")
                return None

            stage = assignment.current_stage
            if not stage.auto_advance:
                self._alerts.fire(
                    name=f"escalation:{document_id}:{stage.id}",
                    message=(
                        f"Document {document.request_id} has been waiting on stage "
                        f"'{stage.name}' for over {stage.escalation_time_hours}h"
                    ),
                    severity=AlertSeverity.WARNING,
                    document_id=document_id,
                    stage_id=stage.id,
                )
                if self._metrics:
                    self._metrics.record_escalation("alerted")
                return document

            next_status(document.status, LifecycleEvent.ESCALATE)
            document.assignment = self._sequencer.skip_stage(assignment)
            self._apply(
                document, LifecycleEvent.ESCALATE, SYSTEM_ACTOR,
                stage_id=stage.id,
                hours=stage.escalation_time_hours,
                auto_advance=True,
            )
            if self._metrics:
                self._metrics.record_escalation("auto_advanced")
        return document

    async def resume_escalations(self) -> int:
        """
        Re-arm stage timers for every document still under review.

        Called once at startup; deadlines are measured from the stored stage
        entry time, so overdue stages escalate right away.
        """
        resumed = 0
        for document in await self._repository.list_all():
            key = self._escalation_key(document)
            if key is None or self._scheduler.is_pending(key):
                continue
            if self._arm_escalation(document, key):
                resumed += 1
        if resumed:
            logger.info(f"Resumed {resumed} escalation timer(s)")
        return resumed

    async def shutdown(self):
        await self._scheduler.shutdown()
