"""
Workflow Template Module

Named, reusable approval workflow definitions made of ordered stages. Each
stage is sequential or parallel, has its own approver set and quorum, an
optional escalation timer and review controls.

Templates are validated when written. A running review keeps its own frozen
copy of the stage list, so editing or deleting a template never changes an
assignment that was already made from it.
"""

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from approvalflow.actors import ActorRef, ActorRole
from approvalflow.department_classifier import Department
from approvalflow.errors import NotFoundError, ValidationError
from approvalflow.repository import TemplateRepository
from approvalflow.workflow_synthesizer import SynthesizedWorkflow

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# DATA CLASSES
# =============================================================================

class StageType(str, Enum):
    """How approvers within a stage act."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


@dataclass
class WorkflowStage:
    """One unit of a workflow template."""
    id: str
    name: str
    type: StageType = StageType.SEQUENTIAL
    approvers: List[ActorRef] = field(default_factory=list)
    required_approvals: int = 1
    auto_advance: bool = True
    escalation_time_hours: Optional[int] = None
    require_comments: bool = True
    require_signature: bool = True
    allow_delegation: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "approvers": [a.to_dict() for a in self.approvers],
            "required_approvals": self.required_approvals,
            "auto_advance": self.auto_advance,
            "escalation_time_hours": self.escalation_time_hours,
            "require_comments": self.require_comments,
            "require_signature": self.require_signature,
            "allow_delegation": self.allow_delegation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowStage":
        return cls(
            id=data["id"],
            name=data["name"],
            type=StageType(data.get("type", StageType.SEQUENTIAL.value)),
            approvers=[ActorRef.from_dict(a) for a in data.get("approvers", [])],
            required_approvals=data.get("required_approvals", 1),
            auto_advance=data.get("auto_advance", True),
            escalation_time_hours=data.get("escalation_time_hours"),
            require_comments=data.get("require_comments", True),
            require_signature=data.get("require_signature", True),
            allow_delegation=data.get("allow_delegation", True),
        )


@dataclass
class WorkflowTemplate:
    """A reusable, ordered set of approval stages."""
    id: str
    name: str
    description: str = ""
    department: Optional[Department] = None
    document_types: List[str] = field(default_factory=list)
    stages: List[WorkflowStage] = field(default_factory=list)
    active: bool = True
    created_by: str = "system"
    created_at: datetime = field(default_factory=utc_now)
    last_modified: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "department": self.department.value if self.department else None,
            "document_types": list(self.document_types),
            "stages": [s.to_dict() for s in self.stages],
            "active": self.active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "last_modified": self.last_modified.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowTemplate":
        def _ts(value):
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value) if value else utc_now()

        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            department=Department(data["department"]) if data.get("department") else None,
            document_types=list(data.get("document_types", [])),
            stages=[WorkflowStage.from_dict(s) for s in data.get("stages", [])],
            active=data.get("active", True),
            created_by=data.get("created_by", "system"),
            created_at=_ts(data.get("created_at")),
            last_modified=_ts(data.get("last_modified")),
        )


@dataclass
class ValidationIssue:
    """A single template validation failure."""
    code: str
    message: str
    stage_id: Optional[str] = None


# =============================================================================
# VALIDATION
# =============================================================================

def validate_stage(stage: WorkflowStage) -> List[ValidationIssue]:
    """Check a single stage's approver set, quorum and timer."""
    issues = []

    if not stage.approvers:
        issues.append(ValidationIssue(
            "NO_APPROVERS",
            f"Stage '{stage.id}' requires at least one approver",
            stage_id=stage.id
        ))

    ids = [a.actor_id for a in stage.approvers]
    if len(set(ids)) != len(ids):
        issues.append(ValidationIssue(
            "DUPLICATE_APPROVER",
            f"Stage '{stage.id}' lists the same approver more than once",
            stage_id=stage.id
        ))

    if stage.required_approvals < 1 or stage.required_approvals > len(stage.approvers):
        issues.append(ValidationIssue(
            "INVALID_QUORUM",
            f"Stage '{stage.id}' requires {stage.required_approvals} approval(s) "
            f"but must be between 1 and {len(stage.approvers)} (number of approvers)",
            stage_id=stage.id
        ))

    if stage.escalation_time_hours is not None and stage.escalation_time_hours <= 0:
        issues.append(ValidationIssue(
            "INVALID_ESCALATION",
            f"Stage '{stage.id}' has invalid escalation time: {stage.escalation_time_hours}h",
            stage_id=stage.id
        ))

    return issues


class TemplateValidator:
    """Validates template structure and stage configuration."""

    def validate(self, template: WorkflowTemplate) -> List[ValidationIssue]:
        """Run all validation checks on the template."""
        issues = []

        if not (template.name or "").strip():
            issues.append(ValidationIssue("MISSING_NAME", "Workflow template requires a name"))

        if not template.stages:
            issues.append(ValidationIssue(
                "NO_STAGES",
                f"Workflow template '{template.name}' must have at least one stage"
            ))
            return issues

        seen = set()
        for stage in template.stages:
            if stage.id in seen:
                issues.append(ValidationIssue(
                    "DUPLICATE_STAGE",
                    f"Stage id '{stage.id}' is used more than once",
                    stage_id=stage.id
                ))
            seen.add(stage.id)
            issues.extend(validate_stage(stage))

        return issues

    def ensure_valid(self, template: WorkflowTemplate):
        """Raise ValidationError on the first issue found."""
        issues = self.validate(template)
        if issues:
            for issue in issues[1:]:
                logger.debug(f"Additional template issue: {issue.code}: {issue.message}")
            first = issues[0]
            raise ValidationError(first.message, stage_id=first.stage_id, code=first.code)


def freeze_stages(stages: Iterable[WorkflowStage]) -> Tuple[WorkflowStage, ...]:
    """Independent copy of a stage list for an in-flight review."""
    return tuple(copy.deepcopy(list(stages)))


# =============================================================================
# TEMPLATE STORE
# =============================================================================

UPDATABLE_FIELDS = {"name", "description", "department", "document_types", "stages", "active"}


class WorkflowTemplateStore:
    """CRUD over workflow templates with write-time validation."""

    def __init__(self, repository: TemplateRepository, validator: Optional[TemplateValidator] = None):
        self._repository = repository
        self._validator = validator or TemplateValidator()

    async def create(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Validate and store a new template."""
        self._validator.ensure_valid(template)
        if await self._repository.get(template.id) is not None:
            raise ValidationError(f"Workflow template '{template.id}' already exists", code="DUPLICATE_ID")

        now = utc_now()
        template.created_at = now
        template.last_modified = now
        await self._repository.save(template)
        logger.info(f"Created workflow template {template.id} ({len(template.stages)} stages)")
        return template

    async def get(self, template_id: str) -> WorkflowTemplate:
        template = await self._repository.get(template_id)
        if template is None:
            raise NotFoundError("Workflow template", template_id)
        return template

    async def list(
        self,
        department: Optional[Department] = None,
        document_type: Optional[str] = None,
        active_only: bool = False,
    ) -> List[WorkflowTemplate]:
        """List templates, optionally filtered."""
        templates = await self._repository.list_all()

        if department:
            templates = [t for t in templates if t.department == department]
        if document_type:
            templates = [t for t in templates if document_type in t.document_types]
        if active_only:
            templates = [t for t in templates if t.active]

        templates.sort(key=lambda t: t.created_at)
        return templates

    async def update(self, template_id: str, **changes) -> WorkflowTemplate:
        """Apply field changes, re-validating before anything is stored."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {sorted(unknown)}", code="UNKNOWN_FIELD")

        template = await self.get(template_id)
        for name, value in changes.items():
            setattr(template, name, value)

        self._validator.ensure_valid(template)
        template.last_modified = utc_now()
        await self._repository.save(template)
        logger.info(f"Updated workflow template {template_id}: {sorted(changes)}")
        return template

    async def set_active(self, template_id: str, active: bool) -> WorkflowTemplate:
        template = await self.get(template_id)
        if active and not template.stages:
            raise ValidationError(
                f"Workflow template '{template_id}' must have at least one stage before activation",
                code="NO_STAGES"
            )
        template.active = active
        template.last_modified = utc_now()
        await self._repository.save(template)
        logger.info(f"Workflow template {template_id} {'activated' if active else 'deactivated'}")
        return template

    async def duplicate(self, template_id: str, created_by: Optional[str] = None) -> WorkflowTemplate:
        """Deep copy under a new id with fresh audit timestamps."""
        source = await self.get(template_id)
        duplicated = copy.deepcopy(source)
        now = utc_now()
        duplicated.id = f"wf-{uuid.uuid4().hex[:12]}"
        duplicated.name = f"{source.name} (Copy)"
        duplicated.active = True
        duplicated.created_by = created_by or source.created_by
        duplicated.created_at = now
        duplicated.last_modified = now

        await self._repository.save(duplicated)
        logger.info(f"Duplicated workflow template {template_id} as {duplicated.id}")
        return duplicated

    async def delete(self, template_id: str) -> None:
        """Delete a template; running reviews keep their frozen stages."""
        if not await self._repository.delete(template_id):
            raise NotFoundError("Workflow template", template_id)
        logger.info(f"Deleted workflow template {template_id}")

    async def seed_defaults(self) -> List[WorkflowTemplate]:
        """Install the built-in templates that are not stored yet."""
        created = []
        for template in default_templates():
            if await self._repository.get(template.id) is None:
                created.append(await self.create(template))
        return created


# =============================================================================
# DERIVED AND BUILT-IN TEMPLATES
# =============================================================================

def template_from_workflow(
    workflow: SynthesizedWorkflow,
    approvers_by_department: Dict[Department, Sequence[ActorRef]],
    name: str,
    created_by: str = "system",
    document_types: Optional[List[str]] = None,
    hours_per_day: int = 24,
) -> WorkflowTemplate:
    """
    Derive a template from a synthesized plan.

    Each step becomes a sequential stage staffed from the step's department;
    the step's estimated days become the stage's escalation budget.
    """
    stages = []
    for step in workflow.steps:
        approvers = list(approvers_by_department.get(step.department, []))
        stages.append(WorkflowStage(
            id=f"stage-{step.id}",
            name=step.name,
            type=StageType.SEQUENTIAL,
            approvers=approvers,
            required_approvals=1,
            auto_advance=False,
            escalation_time_hours=step.estimated_days * hours_per_day,
            require_comments=False,
            require_signature=True,
            allow_delegation=True,
        ))

    return WorkflowTemplate(
        id=f"wf-{uuid.uuid4().hex[:12]}",
        name=name,
        description=f"Derived from synthesized workflow ({len(stages)} stages)",
        department=workflow.primary_department,
        document_types=document_types or [],
        stages=stages,
        created_by=created_by,
    )


def default_templates() -> List[WorkflowTemplate]:
    """Built-in templates available on a fresh install."""
    return [
        WorkflowTemplate(
            id="wf-1",
            name="Standard Document Approval",
            description="Standard 3-stage sequential approval for general documents",
            department=Department.QUALITY_ASSURANCE,
            document_types=["Template", "Report", "Specification"],
            created_by="admin@company.com",
            stages=[
                WorkflowStage(
                    id="stage-1",
                    name="Initial Review",
                    approvers=[ActorRef("reviewer1@company.com", ActorRole.REVIEWER)],
                    escalation_time_hours=24,
                    allow_delegation=True,
                ),
                WorkflowStage(
                    id="stage-2",
                    name="Manager Approval",
                    approvers=[ActorRef("manager1@company.com", ActorRole.MANAGER_REVIEWER)],
                    escalation_time_hours=48,
                    allow_delegation=False,
                ),
                WorkflowStage(
                    id="stage-3",
                    name="Final Approval",
                    approvers=[ActorRef("director@company.com", ActorRole.APPROVER)],
                    escalation_time_hours=72,
                    require_comments=False,
                    allow_delegation=False,
                ),
            ],
        ),
        WorkflowTemplate(
            id="wf-2",
            name="Parallel Multi-Department Review",
            description="Parallel approval requiring sign-off from multiple departments",
            department=Department.ENGINEERING,
            document_types=["Design Document", "Specification"],
            created_by="admin@company.com",
            stages=[
                WorkflowStage(
                    id="stage-1",
                    name="Multi-Department Review",
                    type=StageType.PARALLEL,
                    approvers=[
                        ActorRef("qa@company.com", ActorRole.REVIEWER),
                        ActorRef("engineering@company.com", ActorRole.REVIEWER),
                        ActorRef("regulatory@company.com", ActorRole.REVIEWER),
                    ],
                    required_approvals=3,
                    escalation_time_hours=48,
                    allow_delegation=True,
                ),
                WorkflowStage(
                    id="stage-2",
                    name="Executive Approval",
                    approvers=[ActorRef("executive@company.com", ActorRole.APPROVER)],
                    escalation_time_hours=72,
                    require_comments=False,
                    allow_delegation=False,
                ),
            ],
        ),
    ]
