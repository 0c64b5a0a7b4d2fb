"""
Tests for Stage Escalation

Covers the keyed timer scheduler and the lifecycle's handling of overdue
stages: auto-advance by the system actor, alerting for stages that must
not advance on their own, and cancellation when a stage resolves first.
Hours are scaled down so timers fire within milliseconds.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from approvalflow.actors import SYSTEM_ACTOR, ActorRef, ActorRole
from approvalflow.config import EngineConfig
from approvalflow.document_lifecycle import DocumentLifecycle, ReportStatus, ReviewVerdict
from approvalflow.escalation import EscalationScheduler
from approvalflow.monitoring import AlertManager, MetricsRegistry, WorkflowMetrics
from approvalflow.repository import InMemoryDocumentRepository, InMemoryTemplateRepository
from approvalflow.workflow_templates import WorkflowStage, WorkflowTemplate, WorkflowTemplateStore

SECONDS_PER_HOUR = 0.01


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def scheduler():
    return EscalationScheduler(seconds_per_hour=SECONDS_PER_HOUR)


@pytest.fixture
def alerts():
    return AlertManager()


@pytest.fixture
def metrics():
    return WorkflowMetrics(MetricsRegistry())


@pytest.fixture
def templates():
    return WorkflowTemplateStore(InMemoryTemplateRepository())


@pytest.fixture
def repository():
    return InMemoryDocumentRepository()


@pytest.fixture
def lifecycle(repository, templates, scheduler, alerts, metrics):
    return DocumentLifecycle(
        repository,
        template_store=templates,
        scheduler=scheduler,
        alert_manager=alerts,
        metrics=metrics,
        config=EngineConfig(seconds_per_hour=SECONDS_PER_HOUR, registration_pages=1),
    )


@pytest.fixture
def requestor():
    return ActorRef("rita", ActorRole.REQUESTOR)


@pytest.fixture
def reviewer():
    return ActorRef("alice", ActorRole.REVIEWER)


@pytest.fixture
def approver():
    return ActorRef("carol", ActorRole.APPROVER)


def escalating_template(reviewer, approver, auto_advance=True, hours=1):
    """First stage escalates after ``hours``; the sign-off stage never does."""
    return WorkflowTemplate(
        id="wf-escalating",
        name="Escalating Review",
        stages=[
            WorkflowStage(
                id="stage-1",
                name="Peer Review",
                approvers=[reviewer],
                auto_advance=auto_advance,
                escalation_time_hours=hours,
                require_comments=False,
            ),
            WorkflowStage(
                id="stage-2",
                name="Sign-off",
                approvers=[approver],
                require_comments=False,
            ),
        ],
    )


async def submit_with(lifecycle, templates, requestor, template):
    await templates.create(template)
    document = await lifecycle.create_document("overdue.xlsx")
    return await lifecycle.submit(document.document_id, requestor, template_id=template.id)


def restarted(repository, alert_manager):
    """A new lifecycle over the same storage, with fresh timers."""
    return DocumentLifecycle(
        repository,
        scheduler=EscalationScheduler(seconds_per_hour=SECONDS_PER_HOUR),
        alert_manager=alert_manager,
        config=EngineConfig(seconds_per_hour=SECONDS_PER_HOUR, registration_pages=1),
    )


# =============================================================================
# SCHEDULER
# =============================================================================

class TestEscalationScheduler:
    """Keyed one-shot timers."""

    @pytest.mark.asyncio
    async def test_fires_once(self, scheduler):
        fired = []
        scheduler.schedule("doc:1", 1, lambda: fired.append("doc:1"))
        assert scheduler.is_pending("doc:1")

        await asyncio.sleep(0.05)
        assert fired == ["doc:1"]
        assert not scheduler.is_pending("doc:1")
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_async_callback(self, scheduler):
        fired = []

        async def callback():
            fired.append(True)

        scheduler.schedule("doc:1", 1, callback)
        await asyncio.sleep(0.05)
        assert fired == [True]

    @pytest.mark.asyncio
    async def test_cancel_before_firing(self, scheduler):
        fired = []
        scheduler.schedule("doc:1", 2, lambda: fired.append(True))
        assert scheduler.cancel("doc:1")
        assert not scheduler.cancel("doc:1")

        await asyncio.sleep(0.05)
        assert fired == []

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(self, scheduler):
        fired = []
        scheduler.schedule("doc:1", 1, lambda: fired.append("first"))
        scheduler.schedule("doc:1", 2, lambda: fired.append("second"))
        assert scheduler.pending() == ["doc:1"]

        await asyncio.sleep(0.06)
        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_cancel_prefix(self, scheduler):
        fired = []
        scheduler.schedule("doc-a:1:stage-1#1", 5, lambda: fired.append("a1"))
        scheduler.schedule("doc-a:2:stage-1#1", 5, lambda: fired.append("a2"))
        scheduler.schedule("doc-b:1:stage-1#1", 1, lambda: fired.append("b"))

        assert scheduler.cancel_prefix("doc-a:") == 2
        await asyncio.sleep(0.1)
        assert fired == ["b"]

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self, scheduler):
        def boom():
            raise RuntimeError("callback failed")

        scheduler.schedule("doc:1", 1, boom)
        await asyncio.sleep(0.05)
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_non_positive_hours_rejected(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.schedule("doc:1", 0, lambda: None)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self, scheduler):
        fired = []
        scheduler.schedule("doc:1", 1, lambda: fired.append(1))
        scheduler.schedule("doc:2", 1, lambda: fired.append(2))
        await scheduler.shutdown()

        await asyncio.sleep(0.05)
        assert fired == []
        assert scheduler.pending() == []

    def test_negative_scale_rejected(self):
        with pytest.raises(ValueError):
            EscalationScheduler(seconds_per_hour=-1)

    def test_delay_scaling(self):
        assert EscalationScheduler(seconds_per_hour=60).delay_for(24) == 1440

    def test_remaining_counts_from_start(self):
        scheduler = EscalationScheduler(seconds_per_hour=60)
        started_at = datetime.now(timezone.utc) - timedelta(seconds=600)
        assert 830 <= scheduler.remaining(24, started_at) <= 840
        assert scheduler.remaining(1, started_at) == 0.0
        assert scheduler.remaining(24) == 1440

    @pytest.mark.asyncio
    async def test_overdue_start_fires_immediately(self):
        scheduler = EscalationScheduler(seconds_per_hour=3600)
        fired = []
        started_at = datetime.now(timezone.utc) - timedelta(hours=3)
        scheduler.schedule("doc:1", 2, lambda: fired.append(True), started_at=started_at)

        await asyncio.sleep(0.01)
        assert fired == [True]
        assert scheduler.pending() == []


# =============================================================================
# LIFECYCLE ESCALATION
# =============================================================================

class TestLifecycleEscalation:
    """Overdue stages during review."""

    @pytest.mark.asyncio
    async def test_submit_schedules_first_stage(self, lifecycle, templates, scheduler, requestor, reviewer, approver):
        document = await submit_with(lifecycle, templates, requestor, escalating_template(reviewer, approver))
        assert scheduler.pending() == [f"{document.document_id}:1:stage-1#1"]
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_auto_advance_skips_stage(
        self, lifecycle, templates, metrics, requestor, reviewer, approver
    ):
        document = await submit_with(lifecycle, templates, requestor, escalating_template(reviewer, approver))
        await asyncio.sleep(0.1)

        document = await lifecycle.get_document(document.document_id)
        assert document.status == ReportStatus.REVIEWED
        assert document.assignment.current_stage.id == "stage-2"
        assert document.assignment.escalated_stages == ["stage-1"]
        assert document.assignment.assigned_to == approver

        escalation = document.history[-1]
        assert escalation.event == "escalate"
        assert escalation.actor == SYSTEM_ACTOR
        assert escalation.details["stage_id"] == "stage-1"
        assert metrics.escalations.get(outcome="auto_advanced") == 1

        document = await lifecycle.act_on_review(document.document_id, approver, ReviewVerdict.REVIEWED)
        assert document.status == ReportStatus.APPROVED

    @pytest.mark.asyncio
    async def test_stage_without_auto_advance_raises_alert(
        self, lifecycle, templates, alerts, metrics, requestor, reviewer, approver
    ):
        template = escalating_template(reviewer, approver, auto_advance=False)
        document = await submit_with(lifecycle, templates, requestor, template)
        await asyncio.sleep(0.1)

        stored = await lifecycle.get_document(document.document_id)
        assert stored.status == ReportStatus.SUBMITTED
        assert stored.assignment.current_stage.id == "stage-1"
        assert len(stored.history) == len(document.history)

        active = alerts.get_active_alerts()
        assert len(active) == 1
        assert active[0].document_id == document.document_id
        assert active[0].stage_id == "stage-1"
        assert metrics.escalations.get(outcome="alerted") == 1

    @pytest.mark.asyncio
    async def test_acting_resolves_alert(
        self, lifecycle, templates, alerts, requestor, reviewer, approver
    ):
        template = escalating_template(reviewer, approver, auto_advance=False)
        document = await submit_with(lifecycle, templates, requestor, template)
        await asyncio.sleep(0.1)
        assert alerts.get_active_alerts()

        await lifecycle.act_on_review(document.document_id, reviewer, ReviewVerdict.REVIEWED)
        assert alerts.get_active_alerts() == []

    @pytest.mark.asyncio
    async def test_review_before_deadline_cancels_timer(
        self, lifecycle, templates, scheduler, requestor, reviewer, approver
    ):
        template = escalating_template(reviewer, approver, hours=5)
        document = await submit_with(lifecycle, templates, requestor, template)
        document = await lifecycle.act_on_review(document.document_id, reviewer, ReviewVerdict.REVIEWED)

        assert scheduler.pending() == []
        await asyncio.sleep(0.1)
        stored = await lifecycle.get_document(document.document_id)
        assert [e.event for e in stored.history][-1] == "step_reviewed"
        assert stored.assignment.escalated_stages == []

    @pytest.mark.asyncio
    async def test_reject_cancels_timer(
        self, lifecycle, templates, scheduler, requestor, reviewer, approver
    ):
        template = escalating_template(reviewer, approver, hours=5)
        document = await submit_with(lifecycle, templates, requestor, template)
        await lifecycle.reject(document.document_id, requestor, "Withdrawn")

        assert scheduler.pending() == []
        await asyncio.sleep(0.1)
        stored = await lifecycle.get_document(document.document_id)
        assert stored.status == ReportStatus.REJECTED
        assert stored.history[-1].event == "reject"

    @pytest.mark.asyncio
    async def test_stale_timer_is_ignored(self, lifecycle, templates, requestor, reviewer, approver):
        template = escalating_template(reviewer, approver, hours=5)
        document = await submit_with(lifecycle, templates, requestor, template)

        assert await lifecycle.escalate(document.document_id, "stage-1#7") is None
        stored = await lifecycle.get_document(document.document_id)
        assert stored.assignment.current_stage.id == "stage-1"
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_escalating_last_stage_leaves_document_for_approve(
        self, lifecycle, templates, requestor, reviewer
    ):
        template = WorkflowTemplate(
            id="wf-single",
            name="Single Stage",
            stages=[
                WorkflowStage(
                    id="only",
                    name="Only",
                    approvers=[reviewer],
                    escalation_time_hours=1,
                    require_comments=False,
                ),
            ],
        )
        document = await submit_with(lifecycle, templates, requestor, template)
        await asyncio.sleep(0.1)

        stored = await lifecycle.get_document(document.document_id)
        assert stored.status == ReportStatus.REVIEWED
        assert stored.assignment.exhausted

        approved = await lifecycle.approve(document.document_id, requestor)
        assert approved.status == ReportStatus.APPROVED


# =============================================================================
# RESTART
# =============================================================================

class TestResumeAfterRestart:
    """Timers re-armed from stored stage entry times."""

    @pytest.mark.asyncio
    async def test_pending_deadline_survives_restart(
        self, lifecycle, repository, templates, requestor, reviewer, approver
    ):
        template = escalating_template(reviewer, approver, auto_advance=False, hours=5)
        document = await submit_with(lifecycle, templates, requestor, template)
        await lifecycle.shutdown()

        alerts = AlertManager()
        engine = restarted(repository, alerts)
        assert await engine.resume_escalations() == 1
        assert engine._scheduler.pending() == [f"{document.document_id}:1:stage-1#1"]
        assert alerts.get_active_alerts() == []

        await asyncio.sleep(0.15)
        active = alerts.get_active_alerts()
        assert len(active) == 1
        assert active[0].stage_id == "stage-1"
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_overdue_stage_escalates_on_resume(
        self, lifecycle, repository, templates, requestor, reviewer, approver
    ):
        document = await submit_with(lifecycle, templates, requestor, escalating_template(reviewer, approver))
        await lifecycle.shutdown()
        await asyncio.sleep(0.05)

        stored = await lifecycle.get_document(document.document_id)
        assert stored.assignment.current_stage.id == "stage-1"

        engine = restarted(repository, AlertManager())
        assert await engine.resume_escalations() == 1
        await asyncio.sleep(0.05)

        stored = await engine.get_document(document.document_id)
        assert stored.status == ReportStatus.REVIEWED
        assert stored.assignment.current_stage.id == "stage-2"
        assert stored.assignment.escalated_stages == ["stage-1"]
        assert stored.history[-1].actor == SYSTEM_ACTOR

    @pytest.mark.asyncio
    async def test_only_active_stages_with_deadlines_resume(
        self, lifecycle, repository, templates, requestor, reviewer, approver
    ):
        await lifecycle.create_document("draft.xlsx")
        withdrawn = await submit_with(lifecycle, templates, requestor, escalating_template(reviewer, approver, hours=5))
        await lifecycle.reject(withdrawn.document_id, requestor, "Withdrawn")
        no_deadline = await lifecycle.create_document("plain.xlsx")
        await lifecycle.submit(no_deadline.document_id, requestor, reviewers=[reviewer])
        await lifecycle.shutdown()

        engine = restarted(repository, AlertManager())
        assert await engine.resume_escalations() == 0
        assert engine._scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_resume_keeps_running_timers(self, lifecycle, templates, scheduler, requestor, reviewer, approver):
        template = escalating_template(reviewer, approver, hours=5)
        document = await submit_with(lifecycle, templates, requestor, template)

        assert await lifecycle.resume_escalations() == 0
        assert scheduler.pending() == [f"{document.document_id}:1:stage-1#1"]
        await lifecycle.shutdown()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
