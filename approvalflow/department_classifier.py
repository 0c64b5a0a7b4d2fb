"""
Department Classifier Module

Maps a parsed document section to the organizational department that owns
its review, using ordered keyword rules over the section title and, as a
fallback, the labels of its fields.

The first matching rule wins. Rule order matters because keyword sets
overlap; ambiguous words ("process", "health") only count when paired with
a more specific word.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from approvalflow.errors import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS AND CONSTANTS
# =============================================================================

class Department(str, Enum):
    """Organizational departments a review step can belong to."""
    ENGINEERING = "Engineering"
    QUALITY_ASSURANCE = "Quality Assurance"
    MANUFACTURING = "Manufacturing"
    PROCUREMENT = "Procurement"
    OPERATIONS = "Operations"
    RESEARCH_AND_DEVELOPMENT = "Research & Development"
    FINANCE = "Finance"
    SAFETY = "Safety"
    REGULATORY_AFFAIRS = "Regulatory Affairs"
    MANAGEMENT = "Management"

    @property
    def slug(self) -> str:
        """Lower-case key, e.g. ``research_and_development``."""
        return "_".join(self.value.lower().replace("&", "and").split())


DEPARTMENT_ROLES: Dict[Department, str] = {
    Department.ENGINEERING: "Engineering Manager",
    Department.QUALITY_ASSURANCE: "QA Manager",
    Department.MANUFACTURING: "Manufacturing Manager",
    Department.PROCUREMENT: "Procurement Manager",
    Department.OPERATIONS: "Operations Manager",
    Department.RESEARCH_AND_DEVELOPMENT: "R&D Lead",
    Department.FINANCE: "Finance Manager",
    Department.SAFETY: "Safety Officer",
    Department.REGULATORY_AFFAIRS: "Compliance Officer",
}

DEFAULT_ROLE = "Department Manager"
DEFAULT_DEPARTMENT = Department.ENGINEERING


def role_for_department(department: Department) -> str:
    """Reviewer role title responsible for a department's step."""
    return DEPARTMENT_ROLES.get(department, DEFAULT_ROLE)


# =============================================================================
# SECTION INPUT
# =============================================================================

@dataclass(frozen=True)
class FieldRef:
    """A form field inside a section; only the label matters here."""
    label: str = ""


@dataclass(frozen=True)
class Section:
    """A parsed document section."""
    title: str
    fields: Tuple[FieldRef, ...] = field(default_factory=tuple)

    @property
    def field_count(self) -> int:
        return len(self.fields)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Section":
        """Build a section from parser output, rejecting a missing title."""
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Section is missing a title", code="MISSING_TITLE")

        fields = []
        for raw in data.get("fields") or []:
            if isinstance(raw, FieldRef):
                fields.append(raw)
            elif isinstance(raw, dict):
                fields.append(FieldRef(label=raw.get("label") or ""))
            else:
                fields.append(FieldRef(label=str(raw)))
        return cls(title=title, fields=tuple(fields))


def coerce_sections(sections: Sequence[Any]) -> List[Section]:
    """Accept Section objects or parser dicts."""
    return [s if isinstance(s, Section) else Section.from_dict(s) for s in sections]


# =============================================================================
# KEYWORD RULES
# =============================================================================

def _any(*keywords: str) -> Callable[[str], bool]:
    return lambda text: any(k in text for k in keywords)


def _manufacturing_title(text: str) -> bool:
    if _any("manufactur", "production", "assembly", "fabrication")(text):
        return True
    return "process" in text and ("production" in text or "manufacturing" in text)


def _safety_title(text: str) -> bool:
    if _any("safety", "ehs", "hazard")(text):
        return True
    return "health" in text and "safety" in text


TITLE_RULES: List[Tuple[Department, Callable[[str], bool]]] = [
    (Department.ENGINEERING, _any(
        "engineer", "technical", "design", "specification", "drawing", "cad", "architecture"
    )),
    (Department.QUALITY_ASSURANCE, _any(
        "quality", "inspection", "test", "standard", "compliance", "certification",
        "qa", "qc", "audit", "validation"
    )),
    (Department.MANUFACTURING, _manufacturing_title),
    (Department.PROCUREMENT, _any(
        "procure", "purchas", "vendor", "supplier", "material", "sourcing", "acquisition"
    )),
    (Department.OPERATIONS, _any(
        "operation", "logistics", "planning", "scheduling", "inventory", "warehouse"
    )),
    (Department.RESEARCH_AND_DEVELOPMENT, _any(
        "research", "development", "innovation", "prototype", "r&d", "r & d"
    )),
    (Department.FINANCE, _any(
        "finance", "budget", "cost", "payment", "pricing", "financial"
    )),
    (Department.SAFETY, _safety_title),
    (Department.REGULATORY_AFFAIRS, _any("regulat", "legal", "regulatory")),
]

# Reduced rule set applied to field labels when the title is inconclusive
LABEL_RULES: List[Tuple[Department, Callable[[str], bool]]] = [
    (Department.QUALITY_ASSURANCE, _any("quality", "inspection")),
    (Department.ENGINEERING, _any("engineer", "technical")),
    (Department.PROCUREMENT, _any("supplier", "vendor")),
    (Department.MANUFACTURING, _any("manufact", "production")),
]


def _first_match(text: str, rules) -> Optional[Department]:
    for department, matches in rules:
        if matches(text):
            return department
    return None


# =============================================================================
# CLASSIFIER
# =============================================================================

class DepartmentClassifier:
    """Deterministic section-to-department classifier."""

    def __init__(
        self,
        title_rules=None,
        label_rules=None,
        default: Department = DEFAULT_DEPARTMENT,
    ):
        self.title_rules = title_rules or TITLE_RULES
        self.label_rules = label_rules or LABEL_RULES
        self.default = default

    def classify(self, section: Section) -> Department:
        """Return the owning department; never fails."""
        department = _first_match((section.title or "").lower(), self.title_rules)
        if department is not None:
            return department

        for field_ref in section.fields:
            department = _first_match((field_ref.label or "").lower(), self.label_rules)
            if department is not None:
                return department

        return self.default


_default_classifier = DepartmentClassifier()


def classify(section: Section) -> Department:
    """Classify a section with the default rule set."""
    return _default_classifier.classify(section)
