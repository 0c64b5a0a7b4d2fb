"""
Actors taking part in a review.

Roles form a closed enumeration; whether a participant can give final
approval is an explicit capability of the role, never inferred from a
user or display name.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ActorRole(str, Enum):
    """Participant roles."""
    REQUESTOR = "requestor"
    PREPARATOR = "preparator"
    REVIEWER = "reviewer"
    MANAGER_REVIEWER = "manager_reviewer"
    APPROVER = "approver"
    MANAGER_APPROVER = "manager_approver"
    ADMIN = "admin"
    SYSTEM = "system"

    @property
    def is_approver(self) -> bool:
        return self in (ActorRole.APPROVER, ActorRole.MANAGER_APPROVER)

    @property
    def can_review(self) -> bool:
        return self in (
            ActorRole.REVIEWER,
            ActorRole.MANAGER_REVIEWER,
            ActorRole.APPROVER,
            ActorRole.MANAGER_APPROVER,
        )


@dataclass(frozen=True)
class ActorRef:
    """Reference to a user acting on a document."""
    actor_id: str
    role: ActorRole = field(default=ActorRole.REVIEWER, compare=False)
    display_name: Optional[str] = field(default=None, compare=False)

    @property
    def is_approver(self) -> bool:
        return self.role.is_approver

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "role": self.role.value,
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActorRef":
        return cls(
            actor_id=data["actor_id"],
            role=ActorRole(data.get("role", ActorRole.REVIEWER.value)),
            display_name=data.get("display_name"),
        )


SYSTEM_ACTOR = ActorRef("system", ActorRole.SYSTEM, "System")
