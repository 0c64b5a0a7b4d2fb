"""
Workflow Synthesizer Module

Builds a document-specific approval plan from the structure of an uploaded
document: one review step per section, in section order, followed by a
final management approval step. Timelines are estimated per step and
adjusted for urgent and PDF uploads.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Set

from approvalflow.department_classifier import (
    DEFAULT_DEPARTMENT,
    Department,
    DepartmentClassifier,
    Section,
    coerce_sections,
    role_for_department,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

BASE_ESTIMATED_DAYS = 2
LONG_SECTION_FIELDS = 10
VERY_LONG_SECTION_FIELDS = 20
SLOW_DEPARTMENTS = frozenset({Department.QUALITY_ASSURANCE, Department.REGULATORY_AFFAIRS})

FINAL_STEP_NAME = "Final Management Approval"
FINAL_STEP_DESCRIPTION = "Final management review and approval for implementation"
EXECUTIVE_ROLE = "Executive Director"
DEPARTMENT_HEAD_ROLE = "Department Head"
EXECUTIVE_DEPARTMENT_THRESHOLD = 4

URGENT_MARKERS = ("urgent", "priority")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class WorkflowStep:
    """A synthesized approval step."""
    id: str
    name: str
    department: Department
    role: str
    estimated_days: int
    required: bool = True
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "department": self.department.value,
            "role": self.role,
            "estimated_days": self.estimated_days,
            "required": self.required,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowStep":
        return cls(
            id=data["id"],
            name=data["name"],
            department=Department(data["department"]),
            role=data["role"],
            estimated_days=int(data["estimated_days"]),
            required=data.get("required", True),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class SectionMapping:
    """Which departments a section was routed to."""
    section: str
    departments: List[Department]
    field_count: int


@dataclass
class SynthesizedWorkflow:
    """Result of synthesizing a workflow from a document."""
    steps: List[WorkflowStep]
    primary_department: Department
    involved_departments: Set[Department]
    section_mapping: List[SectionMapping] = field(default_factory=list)

    @property
    def total_estimated_days(self) -> int:
        return total_estimated_days(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "primary_department": self.primary_department.value,
            "primary_department_key": self.primary_department.slug,
            "involved_departments": sorted(d.value for d in self.involved_departments),
            "section_mapping": [
                {
                    "section": m.section,
                    "departments": [d.value for d in m.departments],
                    "field_count": m.field_count,
                }
                for m in self.section_mapping
            ],
            "total_estimated_days": self.total_estimated_days,
            "summary": summarize_workflow(self.steps),
        }


# =============================================================================
# ESTIMATION
# =============================================================================

def estimate_days(field_count: int, department: Department) -> int:
    """Base review time for one section."""
    days = BASE_ESTIMATED_DAYS
    if field_count > VERY_LONG_SECTION_FIELDS:
        days += 2
    elif field_count > LONG_SECTION_FIELDS:
        days += 1

    if department in SLOW_DEPARTMENTS:
        days += 1
    return days


def is_urgent(file_name: str) -> bool:
    lowered = (file_name or "").lower()
    return any(marker in lowered for marker in URGENT_MARKERS)


def adjust_days(days: int, urgent: bool, pdf: bool) -> int:
    """Apply urgency halving, then the PDF surcharge."""
    if urgent:
        days = max(1, days // 2)
    if pdf:
        days += 1
    return days


def total_estimated_days(steps: Sequence[WorkflowStep]) -> int:
    return sum(s.estimated_days for s in steps)


# =============================================================================
# SYNTHESIZER
# =============================================================================

class WorkflowSynthesizer:
    """Turns document sections into an ordered approval plan."""

    def __init__(self, classifier: Optional[DepartmentClassifier] = None):
        self.classifier = classifier or DepartmentClassifier()

    def synthesize(
        self,
        file_name: str,
        sections: Sequence[Any],
        file_kind: str,
    ) -> SynthesizedWorkflow:
        """
        Build the approval plan for an uploaded document.

        Args:
            file_name: Original upload name; "urgent"/"priority" shortens timelines
            sections: Parsed sections (Section objects or parser dicts), in document order
            file_kind: Upload type, e.g. "pdf", "xlsx", "docx"

        Returns:
            SynthesizedWorkflow with one step per section plus the final approval
        """
        sections = coerce_sections(sections)

        steps: List[WorkflowStep] = []
        mapping: List[SectionMapping] = []
        involved: Set[Department] = set()

        for index, section in enumerate(sections, start=1):
            department = self.classifier.classify(section)
            involved.add(department)

            count = section.field_count
            steps.append(WorkflowStep(
                id=f"step_{index}",
                name=section.title,
                department=department,
                role=role_for_department(department),
                estimated_days=estimate_days(count, department),
                required=True,
                description=f"Review and approve {section.title} ({count} field{'' if count == 1 else 's'})",
            ))
            mapping.append(SectionMapping(
                section=section.title,
                departments=[department],
                field_count=count,
            ))
            logger.debug(f"Section {index} '{section.title}': {count} fields -> {department.value}")

        involved.add(Department.MANAGEMENT)
        steps.append(WorkflowStep(
            id=f"step_{len(steps) + 1}",
            name=FINAL_STEP_NAME,
            department=Department.MANAGEMENT,
            role=EXECUTIVE_ROLE if len(involved) > EXECUTIVE_DEPARTMENT_THRESHOLD else DEPARTMENT_HEAD_ROLE,
            estimated_days=1,
            required=True,
            description=FINAL_STEP_DESCRIPTION,
        ))

        primary = steps[0].department if sections else DEFAULT_DEPARTMENT

        urgent = is_urgent(file_name)
        pdf = (file_kind or "").lower() == "pdf"
        if urgent:
            logger.info(f"Urgent document '{file_name}' - reducing approval timelines")
        if urgent or pdf:
            steps = [replace(s, estimated_days=adjust_days(s.estimated_days, urgent, pdf)) for s in steps]

        logger.info(
            f"Synthesized workflow for '{file_name}': {len(sections)} sections, "
            f"{len(steps)} steps, departments={sorted(d.value for d in involved)}, "
            f"primary={primary.value}, total_days={total_estimated_days(steps)}"
        )

        return SynthesizedWorkflow(
            steps=steps,
            primary_department=primary,
            involved_departments=involved,
            section_mapping=mapping,
        )


def synthesize(file_name: str, sections: Sequence[Any], file_kind: str) -> SynthesizedWorkflow:
    """Synthesize with the default classifier."""
    return WorkflowSynthesizer().synthesize(file_name, sections, file_kind)


def summarize_workflow(steps: Sequence[WorkflowStep]) -> str:
    """Human-readable one-line summary of a plan."""
    departments = {s.department for s in steps}
    required = sum(1 for s in steps if s.required)
    return (
        f"This workflow involves {len(departments)} department(s) with {len(steps)} "
        f"approval step(s) ({required} required). Estimated completion time: "
        f"{total_estimated_days(steps)} business days."
    )
