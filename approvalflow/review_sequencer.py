"""
Review Sequencer Module

Tracks, for one in-flight document, the ordered list of reviewers and whose
turn it is. The plan is a frozen list of stages; reviewers are the stage
approvers flattened in stage order, and ``current_reviewer_index`` points
into that flat sequence.

A stage clears once its quorum is met. Sequential stages take their
approvers one at a time, in order; parallel stages accept any approver
that has not yet approved. An ad hoc reviewer list becomes one
single-approver sequential stage per reviewer, which reduces to a plain
"next reviewer" walk.

All operations are pure: they return a new assignment and never mutate
their input.
"""

import copy
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from approvalflow.actors import ActorRef
from approvalflow.errors import InvalidTransitionError, NotAssignedError, ValidationError
from approvalflow.workflow_templates import (
    StageType,
    WorkflowStage,
    freeze_stages,
    validate_stage,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ReviewPriority(str, Enum):
    """Submission priority chosen by the requestor."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# =============================================================================
# ASSIGNMENT
# =============================================================================

@dataclass
class ReviewAssignment:
    """Reviewer plan and progress for one submitted document."""
    review_sequence: Tuple[ActorRef, ...]
    stages: Tuple[WorkflowStage, ...]
    current_reviewer_index: Optional[int] = 0
    current_stage_index: int = 0
    priority: ReviewPriority = ReviewPriority.NORMAL
    submission_comments: str = ""
    template_id: Optional[str] = None

    # stage id -> actor ids that approved
    approvals: Dict[str, List[str]] = field(default_factory=dict)
    # stage id -> {original actor id -> delegate}
    delegations: Dict[str, Dict[str, ActorRef]] = field(default_factory=dict)
    escalated_stages: List[str] = field(default_factory=list)

    stage_instance: int = 1
    stage_entered_at: datetime = field(default_factory=utc_now)
    exhausted: bool = False
    closed: bool = False
    resolution: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """True while someone still has to act."""
        return not self.closed and not self.exhausted

    @property
    def current_stage(self) -> Optional[WorkflowStage]:
        if not self.is_active:
            return None
        return self.stages[self.current_stage_index]

    @property
    def stage_offsets(self) -> List[int]:
        """Index in ``review_sequence`` where each stage starts."""
        offsets, position = [], 0
        for stage in self.stages:
            offsets.append(position)
            position += len(stage.approvers)
        return offsets

    @property
    def assigned_to(self) -> Optional[ActorRef]:
        """Whoever holds the current turn, honoring delegation."""
        if not self.is_active or self.current_reviewer_index is None:
            return None
        actor = self.review_sequence[self.current_reviewer_index]
        stage = self.stages[self.current_stage_index]
        return self.delegations.get(stage.id, {}).get(actor.actor_id, actor)

    @property
    def escalation_key(self) -> str:
        """Identifies the current stage instance for timers."""
        stage = self.stages[self.current_stage_index]
        return f"{stage.id}#{self.stage_instance}"

    def approvals_for(self, stage_id: str) -> List[str]:
        return list(self.approvals.get(stage_id, []))

    def to_dict(self) -> Dict[str, Any]:
        assigned = self.assigned_to
        return {
            "review_sequence": [a.to_dict() for a in self.review_sequence],
            "stages": [s.to_dict() for s in self.stages],
            "current_reviewer_index": self.current_reviewer_index,
            "current_stage_index": self.current_stage_index,
            "assigned_to": assigned.to_dict() if assigned else None,
            "priority": self.priority.value,
            "submission_comments": self.submission_comments,
            "template_id": self.template_id,
            "approvals": {k: list(v) for k, v in self.approvals.items()},
            "delegations": {
                stage_id: {actor_id: d.to_dict() for actor_id, d in mapping.items()}
                for stage_id, mapping in self.delegations.items()
            },
            "escalated_stages": list(self.escalated_stages),
            "stage_instance": self.stage_instance,
            "stage_entered_at": self.stage_entered_at.isoformat(),
            "exhausted": self.exhausted,
            "closed": self.closed,
            "resolution": self.resolution,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewAssignment":
        entered = data.get("stage_entered_at")
        return cls(
            review_sequence=tuple(ActorRef.from_dict(a) for a in data["review_sequence"]),
            stages=tuple(WorkflowStage.from_dict(s) for s in data["stages"]),
            current_reviewer_index=data.get("current_reviewer_index"),
            current_stage_index=data.get("current_stage_index", 0),
            priority=ReviewPriority(data.get("priority", ReviewPriority.NORMAL.value)),
            submission_comments=data.get("submission_comments", ""),
            template_id=data.get("template_id"),
            approvals={k: list(v) for k, v in data.get("approvals", {}).items()},
            delegations={
                stage_id: {actor_id: ActorRef.from_dict(d) for actor_id, d in mapping.items()}
                for stage_id, mapping in data.get("delegations", {}).items()
            },
            escalated_stages=list(data.get("escalated_stages", [])),
            stage_instance=data.get("stage_instance", 1),
            stage_entered_at=datetime.fromisoformat(entered) if entered else utc_now(),
            exhausted=data.get("exhausted", False),
            closed=data.get("closed", False),
            resolution=data.get("resolution"),
        )


# =============================================================================
# SEQUENCER
# =============================================================================

class ReviewSequencer:
    """Resolves who acts now and what happens on their verdict."""

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def from_reviewers(
        self,
        reviewers: Sequence[ActorRef],
        priority: ReviewPriority = ReviewPriority.NORMAL,
        comments: str = "",
        allow_delegation: bool = True,
    ) -> ReviewAssignment:
        """Flat plan: one single-approver sequential stage per reviewer."""
        if not reviewers:
            raise ValidationError("Review sequence requires at least one reviewer", code="NO_REVIEWERS")

        stages = [
            WorkflowStage(
                id=f"review-{index}",
                name=f"Review {index}",
                type=StageType.SEQUENTIAL,
                approvers=[reviewer],
                required_approvals=1,
                auto_advance=False,
                require_comments=False,
                require_signature=False,
                allow_delegation=allow_delegation,
            )
            for index, reviewer in enumerate(reviewers, start=1)
        ]
        return self.from_stages(stages, priority=priority, comments=comments)

    def from_stages(
        self,
        stages: Sequence[WorkflowStage],
        priority: ReviewPriority = ReviewPriority.NORMAL,
        comments: str = "",
        template_id: Optional[str] = None,
    ) -> ReviewAssignment:
        """Plan from template stages; the stages are copied, not shared."""
        if not stages:
            raise ValidationError("Review plan requires at least one stage", code="NO_STAGES")
        for stage in stages:
            issues = validate_stage(stage)
            if issues:
                raise ValidationError(issues[0].message, stage_id=stage.id, code=issues[0].code)

        frozen = freeze_stages(stages)
        sequence = tuple(a for stage in frozen for a in stage.approvers)
        return ReviewAssignment(
            review_sequence=sequence,
            stages=frozen,
            current_reviewer_index=0,
            current_stage_index=0,
            priority=priority,
            submission_comments=comments,
            template_id=template_id,
        )

    # -------------------------------------------------------------------------
    # Turn resolution
    # -------------------------------------------------------------------------

    def _principal(self, assignment: ReviewAssignment, actor: ActorRef) -> Optional[ActorRef]:
        """The stage approver the actor is acting as, if any."""
        stage = assignment.stages[assignment.current_stage_index]
        delegated = assignment.delegations.get(stage.id, {})

        for original_id, delegate in delegated.items():
            if delegate.actor_id == actor.actor_id:
                return next(a for a in stage.approvers if a.actor_id == original_id)

        if actor.actor_id in delegated:
            # Handed off their turn
            return None

        return next((a for a in stage.approvers if a.actor_id == actor.actor_id), None)

    def current_actors(self, assignment: ReviewAssignment) -> List[ActorRef]:
        """Everyone who may act right now."""
        if not assignment.is_active:
            return []

        stage = assignment.stages[assignment.current_stage_index]
        delegated = assignment.delegations.get(stage.id, {})

        if stage.type == StageType.SEQUENTIAL:
            return [assignment.assigned_to]

        approved = set(assignment.approvals.get(stage.id, []))
        return [
            delegated.get(a.actor_id, a)
            for a in stage.approvers
            if a.actor_id not in approved
        ]

    def is_eligible(self, assignment: ReviewAssignment, actor: ActorRef) -> bool:
        return any(a.actor_id == actor.actor_id for a in self.current_actors(assignment))

    def _ensure_active(self, assignment: ReviewAssignment):
        if assignment.closed:
            raise InvalidTransitionError(
                f"Review assignment is closed ({assignment.resolution})", event="advance"
            )
        if assignment.exhausted or assignment.current_reviewer_index is None:
            raise InvalidTransitionError("Review sequence is exhausted", event="advance")

    # -------------------------------------------------------------------------
    # Progression
    # -------------------------------------------------------------------------

    def _stage_of(self, assignment: ReviewAssignment, index: int) -> int:
        offsets = assignment.stage_offsets
        stage_index = 0
        for position, start in enumerate(offsets):
            if index >= start:
                stage_index = position
        return stage_index

    def _move_to(self, assignment: ReviewAssignment, index: int) -> ReviewAssignment:
        """Point the assignment at a flat index, entering a new stage if needed."""
        stage_index = self._stage_of(assignment, index)
        if stage_index != assignment.current_stage_index:
            return replace(
                assignment,
                current_reviewer_index=index,
                current_stage_index=stage_index,
                stage_instance=assignment.stage_instance + 1,
                stage_entered_at=utc_now(),
            )
        return replace(assignment, current_reviewer_index=index)

    def advance(self, assignment: ReviewAssignment) -> ReviewAssignment:
        """Hand the turn to the next reviewer in submission order."""
        self._ensure_active(assignment)
        assignment = copy.deepcopy(assignment)

        next_index = assignment.current_reviewer_index + 1
        if next_index < len(assignment.review_sequence):
            return self._move_to(assignment, next_index)

        return replace(assignment, exhausted=True)

    def _clear_stage(self, assignment: ReviewAssignment) -> ReviewAssignment:
        next_stage = assignment.current_stage_index + 1
        if next_stage < len(assignment.stages):
            return self._move_to(assignment, assignment.stage_offsets[next_stage])
        return replace(assignment, exhausted=True)

    def record_approval(
        self, assignment: ReviewAssignment, actor: ActorRef
    ) -> Tuple[ReviewAssignment, bool]:
        """
        Record an approval from the acting participant.

        Returns:
            (new assignment, whether the current stage cleared)
        """
        self._ensure_active(assignment)

        principal = self._principal(assignment, actor)
        if principal is None or not self.is_eligible(assignment, actor):
            raise NotAssignedError(
                f"{actor.actor_id} is not assigned to the current review stage",
                event="step_reviewed",
            )

        stage = assignment.stages[assignment.current_stage_index]
        if principal.actor_id in assignment.approvals.get(stage.id, []):
            raise NotAssignedError(
                f"{principal.actor_id} has already approved stage '{stage.id}'",
                event="step_reviewed",
            )

        assignment = copy.deepcopy(assignment)
        approved = assignment.approvals.setdefault(stage.id, [])
        approved.append(principal.actor_id)

        distinct = len(set(approved))
        if distinct >= stage.required_approvals:
            logger.info(f"Stage {stage.id} cleared ({distinct}/{stage.required_approvals})")
            return self._clear_stage(assignment), True

        offset = assignment.stage_offsets[assignment.current_stage_index]
        if stage.type == StageType.SEQUENTIAL:
            return self._move_to(assignment, assignment.current_reviewer_index + 1), False

        pending = [
            offset + position
            for position, a in enumerate(stage.approvers)
            if a.actor_id not in approved
        ]
        return self._move_to(assignment, pending[0]), False

    def skip_stage(self, assignment: ReviewAssignment) -> ReviewAssignment:
        """Clear the current stage without quorum (escalation auto-advance)."""
        self._ensure_active(assignment)
        assignment = copy.deepcopy(assignment)
        stage = assignment.stages[assignment.current_stage_index]
        assignment.escalated_stages.append(stage.id)
        return self._clear_stage(assignment)

    def delegate(
        self, assignment: ReviewAssignment, from_actor: ActorRef, to_actor: ActorRef
    ) -> ReviewAssignment:
        """Hand a pending turn to another actor without moving the index."""
        self._ensure_active(assignment)
        stage = assignment.stages[assignment.current_stage_index]

        if not stage.allow_delegation:
            raise InvalidTransitionError(
                f"Stage '{stage.id}' does not allow delegation", event="delegate"
            )
        if from_actor.actor_id == to_actor.actor_id:
            raise ValidationError("Cannot delegate to the same actor", stage_id=stage.id, code="SELF_DELEGATION")
        # A delegate answers for exactly one approver slot in the stage
        if any(a.actor_id == to_actor.actor_id for a in stage.approvers):
            raise ValidationError(
                f"{to_actor.actor_id} is already an approver of stage '{stage.id}'",
                stage_id=stage.id,
                code="DELEGATE_IS_APPROVER",
            )
        delegated = assignment.delegations.get(stage.id, {})
        if any(d.actor_id == to_actor.actor_id for d in delegated.values()):
            raise ValidationError(
                f"{to_actor.actor_id} already holds a delegated turn in stage '{stage.id}'",
                stage_id=stage.id,
                code="DELEGATE_BUSY",
            )

        principal = self._principal(assignment, from_actor)
        if principal is None or not self.is_eligible(assignment, from_actor):
            raise NotAssignedError(
                f"{from_actor.actor_id} has no pending turn in stage '{stage.id}'", event="delegate"
            )

        assignment = copy.deepcopy(assignment)
        assignment.delegations.setdefault(stage.id, {})[principal.actor_id] = to_actor
        logger.info(f"Stage {stage.id}: {principal.actor_id} delegated to {to_actor.actor_id}")
        return assignment

    def close(self, assignment: ReviewAssignment, resolution: str) -> ReviewAssignment:
        """Freeze the assignment after a terminal verdict."""
        if assignment.closed:
            raise InvalidTransitionError(
                f"Review assignment is already closed ({assignment.resolution})", event="close"
            )
        return replace(copy.deepcopy(assignment), closed=True, resolution=resolution)


_default_sequencer = ReviewSequencer()


def advance(assignment: ReviewAssignment) -> ReviewAssignment:
    """Advance with the default sequencer."""
    return _default_sequencer.advance(assignment)
