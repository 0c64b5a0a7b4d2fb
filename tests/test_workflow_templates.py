"""
Tests for the Workflow Template Store

Covers write-time validation, CRUD, duplication, activation, the
built-in templates and deriving a template from a synthesized plan.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from approvalflow.actors import ActorRef, ActorRole
from approvalflow.department_classifier import Department, FieldRef, Section
from approvalflow.errors import NotFoundError, ValidationError
from approvalflow.repository import InMemoryTemplateRepository
from approvalflow.workflow_synthesizer import synthesize
from approvalflow.workflow_templates import (
    StageType,
    TemplateValidator,
    WorkflowStage,
    WorkflowTemplate,
    WorkflowTemplateStore,
    default_templates,
    freeze_stages,
    template_from_workflow,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return WorkflowTemplateStore(InMemoryTemplateRepository())


@pytest.fixture
def reviewers():
    return [
        ActorRef("alice", ActorRole.REVIEWER),
        ActorRef("bob", ActorRole.REVIEWER),
        ActorRef("carol", ActorRole.APPROVER),
    ]


@pytest.fixture
def template(reviewers):
    return WorkflowTemplate(
        id="wf-test",
        name="Test Workflow",
        department=Department.QUALITY_ASSURANCE,
        document_types=["Report"],
        stages=[
            WorkflowStage(
                id="stage-1",
                name="Peer Review",
                type=StageType.PARALLEL,
                approvers=reviewers[:2],
                required_approvals=2,
                escalation_time_hours=24,
            ),
            WorkflowStage(id="stage-2", name="Sign-off", approvers=[reviewers[2]]),
        ],
    )


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidation:
    """Invariants checked before anything is stored."""

    def test_valid_template_has_no_issues(self, template):
        assert TemplateValidator().validate(template) == []

    def test_quorum_above_approver_count_fails(self, template):
        template.stages[0].required_approvals = 3
        issues = TemplateValidator().validate(template)
        assert [i.code for i in issues] == ["INVALID_QUORUM"]
        assert issues[0].stage_id == "stage-1"

    def test_zero_quorum_fails(self, template):
        template.stages[1].required_approvals = 0
        assert "INVALID_QUORUM" in [i.code for i in TemplateValidator().validate(template)]

    def test_empty_approvers_message_names_stage(self, template):
        template.stages[1].approvers = []
        with pytest.raises(ValidationError) as exc_info:
            TemplateValidator().ensure_valid(template)
        assert exc_info.value.stage_id == "stage-2"
        assert "stage-2" in exc_info.value.message
        assert "at least one approver" in exc_info.value.message

    def test_duplicate_approvers_fail(self, template, reviewers):
        template.stages[0].approvers = [reviewers[0], ActorRef("alice", ActorRole.APPROVER)]
        assert "DUPLICATE_APPROVER" in [i.code for i in TemplateValidator().validate(template)]

    def test_non_positive_escalation_fails(self, template):
        template.stages[0].escalation_time_hours = 0
        assert "INVALID_ESCALATION" in [i.code for i in TemplateValidator().validate(template)]

    def test_duplicate_stage_ids_fail(self, template):
        template.stages[1].id = "stage-1"
        assert "DUPLICATE_STAGE" in [i.code for i in TemplateValidator().validate(template)]

    def test_no_stages_fails(self, template):
        template.stages = []
        assert [i.code for i in TemplateValidator().validate(template)] == ["NO_STAGES"]

    def test_blank_name_fails(self, template):
        template.name = "  "
        assert "MISSING_NAME" in [i.code for i in TemplateValidator().validate(template)]


# =============================================================================
# STORE
# =============================================================================

class TestTemplateStore:
    """CRUD through the repository."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store, template):
        await store.create(template)
        loaded = await store.get("wf-test")
        assert loaded.name == "Test Workflow"
        assert loaded.stages[0].required_approvals == 2

    @pytest.mark.asyncio
    async def test_invalid_template_is_not_saved(self, store, template):
        template.stages[0].required_approvals = 5
        with pytest.raises(ValidationError):
            await store.create(template)
        with pytest.raises(NotFoundError):
            await store.get("wf-test")

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store, template):
        await store.create(template)
        with pytest.raises(ValidationError) as exc_info:
            await store.create(template)
        assert exc_info.value.code == "DUPLICATE_ID"

    @pytest.mark.asyncio
    async def test_stored_copy_is_isolated(self, store, template):
        await store.create(template)
        template.stages[0].approvers.clear()
        loaded = await store.get("wf-test")
        assert len(loaded.stages[0].approvers) == 2

    @pytest.mark.asyncio
    async def test_update_revalidates(self, store, template):
        await store.create(template)
        with pytest.raises(ValidationError):
            await store.update("wf-test", stages=[])
        assert len((await store.get("wf-test")).stages) == 2

    @pytest.mark.asyncio
    async def test_update_bumps_last_modified(self, store, template):
        created = await store.create(template)
        updated = await store.update("wf-test", description="New description")
        assert updated.description == "New description"
        assert updated.last_modified >= created.last_modified

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, store, template):
        await store.create(template)
        with pytest.raises(ValidationError):
            await store.update("wf-test", created_by="mallory")

    @pytest.mark.asyncio
    async def test_list_filters(self, store, template):
        await store.seed_defaults()
        await store.create(template)
        await store.set_active("wf-2", False)

        assert len(await store.list()) == 3
        assert [t.id for t in await store.list(department=Department.QUALITY_ASSURANCE)] == ["wf-1", "wf-test"]
        assert {t.id for t in await store.list(document_type="Specification")} == {"wf-1", "wf-2"}
        assert "wf-2" not in [t.id for t in await store.list(active_only=True)]

    @pytest.mark.asyncio
    async def test_duplicate(self, store, template):
        await store.create(template)
        await store.set_active("wf-test", False)
        copy = await store.duplicate("wf-test", created_by="dana")

        assert copy.id != "wf-test"
        assert copy.name == "Test Workflow (Copy)"
        assert copy.active is True
        assert copy.created_by == "dana"
        assert copy.stages[0].approvers == template.stages[0].approvers
        assert (await store.get("wf-test")).active is False

    @pytest.mark.asyncio
    async def test_delete(self, store, template):
        await store.create(template)
        await store.delete("wf-test")
        with pytest.raises(NotFoundError):
            await store.get("wf-test")
        with pytest.raises(NotFoundError):
            await store.delete("wf-test")

    @pytest.mark.asyncio
    async def test_seed_defaults_is_idempotent(self, store):
        assert len(await store.seed_defaults()) == 2
        assert await store.seed_defaults() == []


# =============================================================================
# FROZEN STAGES, DEFAULTS, DERIVATION
# =============================================================================

class TestFreezeStages:
    """Running reviews keep their own copy."""

    def test_freeze_is_independent(self, template):
        frozen = freeze_stages(template.stages)
        template.stages[0].approvers.clear()
        template.stages[0].required_approvals = 9
        assert len(frozen[0].approvers) == 2
        assert frozen[0].required_approvals == 2
        assert isinstance(frozen, tuple)


class TestDefaultTemplates:
    """Built-in templates."""

    def test_defaults_are_valid(self):
        validator = TemplateValidator()
        for template in default_templates():
            assert validator.validate(template) == []

    def test_default_names(self):
        names = [t.name for t in default_templates()]
        assert names == ["Standard Document Approval", "Parallel Multi-Department Review"]

    def test_parallel_default_requires_all_three(self):
        parallel = default_templates()[1].stages[0]
        assert parallel.type == StageType.PARALLEL
        assert parallel.required_approvals == len(parallel.approvers) == 3


class TestTemplateFromWorkflow:
    """Deriving a template from a synthesized plan."""

    def test_one_stage_per_step(self):
        workflow = synthesize("plan.xlsx", [Section("Budget", (FieldRef("Cost"),))], "xlsx")
        approvers = {
            Department.FINANCE: [ActorRef("fin", ActorRole.REVIEWER)],
            Department.MANAGEMENT: [ActorRef("boss", ActorRole.MANAGER_APPROVER)],
        }
        template = template_from_workflow(workflow, approvers, name="Budget plan")

        assert [s.name for s in template.stages] == ["Budget", "Final Management Approval"]
        assert template.stages[0].escalation_time_hours == 2 * 24
        assert template.stages[1].approvers[0].actor_id == "boss"
        assert template.department == Department.FINANCE
        assert TemplateValidator().validate(template) == []

    def test_missing_department_staff_fails_validation(self):
        workflow = synthesize("plan.xlsx", [Section("Budget")], "xlsx")
        template = template_from_workflow(workflow, {}, name="Unstaffed")
        codes = [i.code for i in TemplateValidator().validate(template)]
        assert "NO_APPROVERS" in codes


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
