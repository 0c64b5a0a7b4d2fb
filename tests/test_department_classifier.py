"""
Tests for the Department Classifier

Covers title keyword rules, rule ordering, compound keywords, the field
label fallback and the default department.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from approvalflow.department_classifier import (
    DEFAULT_ROLE,
    Department,
    DepartmentClassifier,
    FieldRef,
    Section,
    classify,
    coerce_sections,
    role_for_department,
)
from approvalflow.errors import ValidationError


def section(title, *labels):
    return Section(title=title, fields=tuple(FieldRef(label) for label in labels))


# =============================================================================
# TITLE RULES
# =============================================================================

class TestTitleRules:
    """Title keywords map to departments, first rule wins."""

    @pytest.mark.parametrize("title,expected", [
        ("Technical Specification", Department.ENGINEERING),
        ("CAD Drawing Register", Department.ENGINEERING),
        ("Quality Inspection Checklist", Department.QUALITY_ASSURANCE),
        ("Internal Audit Findings", Department.QUALITY_ASSURANCE),
        ("Assembly Line Setup", Department.MANUFACTURING),
        ("Supplier Qualification", Department.PROCUREMENT),
        ("Warehouse Logistics", Department.OPERATIONS),
        ("Prototype Results", Department.RESEARCH_AND_DEVELOPMENT),
        ("Budget Forecast", Department.FINANCE),
        ("Hazard Assessment", Department.SAFETY),
        ("Legal Review", Department.REGULATORY_AFFAIRS),
    ])
    def test_title_keywords(self, title, expected):
        assert classify(section(title)) == expected

    def test_matching_is_case_insensitive(self):
        assert classify(section("QUALITY CHECKS")) == Department.QUALITY_ASSURANCE

    def test_engineering_beats_quality_when_both_match(self):
        """'Design Validation' hits Engineering before Quality Assurance."""
        assert classify(section("Design Validation")) == Department.ENGINEERING

    def test_material_routes_to_procurement(self):
        assert classify(section("Raw Material List")) == Department.PROCUREMENT

    def test_research_and_development_abbreviation(self):
        assert classify(section("R&D Notes")) == Department.RESEARCH_AND_DEVELOPMENT
        assert classify(section("R & D Notes")) == Department.RESEARCH_AND_DEVELOPMENT


class TestCompoundKeywords:
    """Ambiguous words only count together with a specific one."""

    def test_process_alone_does_not_mean_manufacturing(self):
        assert classify(section("Approval Process")) == Department.ENGINEERING

    def test_process_with_manufacturing_is_manufacturing(self):
        assert classify(section("Manufacturing Process")) == Department.MANUFACTURING

    def test_health_alone_is_not_safety(self):
        assert classify(section("Health Records")) == Department.ENGINEERING

    def test_health_and_safety_is_safety(self):
        assert classify(section("Health and Safety Plan")) == Department.SAFETY


# =============================================================================
# LABEL FALLBACK AND DEFAULT
# =============================================================================

class TestLabelFallback:
    """Field labels decide when the title is inconclusive."""

    def test_first_matching_label_wins(self):
        result = classify(section("General", "Notes", "Vendor name", "Inspection date"))
        assert result == Department.PROCUREMENT

    def test_label_rule_order_within_one_label(self):
        """Quality is checked before Engineering inside a single label."""
        assert classify(section("Misc", "Technical quality score")) == Department.QUALITY_ASSURANCE

    def test_production_label(self):
        assert classify(section("Sheet 2", "Production lot")) == Department.MANUFACTURING

    def test_title_rule_takes_precedence_over_labels(self):
        assert classify(section("Budget", "Inspection result")) == Department.FINANCE

    def test_default_is_engineering(self):
        assert classify(section("Miscellaneous", "Notes", "")) == Department.ENGINEERING

    def test_custom_default(self):
        classifier = DepartmentClassifier(default=Department.OPERATIONS)
        assert classifier.classify(section("Miscellaneous")) == Department.OPERATIONS


class TestClassifierProperties:
    """Classification is deterministic."""

    def test_idempotent(self):
        s = section("Supplier Audit", "Vendor")
        assert classify(s) == classify(s) == classify(Section(s.title, s.fields))


# =============================================================================
# SECTION INPUT AND ROLES
# =============================================================================

class TestSectionInput:
    """Parser dicts are accepted at the boundary."""

    def test_from_dict(self):
        s = Section.from_dict({"title": "Budget", "fields": [{"label": "Cost"}, {"label": None}, "Total"]})
        assert s.field_count == 3
        assert [f.label for f in s.fields] == ["Cost", "", "Total"]

    def test_missing_title_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Section.from_dict({"fields": []})
        assert exc_info.value.code == "MISSING_TITLE"

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError):
            Section.from_dict({"title": "   "})

    def test_coerce_mixed(self):
        sections = coerce_sections([section("A"), {"title": "B"}])
        assert [s.title for s in sections] == ["A", "B"]


class TestRoles:
    """Department to reviewer role table."""

    def test_known_roles(self):
        assert role_for_department(Department.QUALITY_ASSURANCE) == "QA Manager"
        assert role_for_department(Department.RESEARCH_AND_DEVELOPMENT) == "R&D Lead"
        assert role_for_department(Department.REGULATORY_AFFAIRS) == "Compliance Officer"

    def test_management_falls_back(self):
        assert role_for_department(Department.MANAGEMENT) == DEFAULT_ROLE

    def test_slug(self):
        assert Department.RESEARCH_AND_DEVELOPMENT.slug == "research_and_development"
        assert Department.QUALITY_ASSURANCE.slug == "quality_assurance"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
