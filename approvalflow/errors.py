"""
Error taxonomy for the approval workflow engine.

Classification and synthesis never raise (apart from malformed section
input at the boundary). Template and lifecycle operations fail fast with
one of these errors and leave the aggregate untouched.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""


class ValidationError(WorkflowError):
    """Malformed template, stage or section input."""

    def __init__(self, message: str, stage_id: Optional[str] = None, code: str = "INVALID"):
        super().__init__(message)
        self.message = message
        self.stage_id = stage_id
        self.code = code

    def to_dict(self):
        return {"code": self.code, "message": self.message, "stage_id": self.stage_id}


class InvalidTransitionError(WorkflowError):
    """A status transition that is not defined for the current state."""

    def __init__(self, message: str, from_status: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.from_status = from_status
        self.event = event

    def to_dict(self):
        return {"message": self.message, "from_status": self.from_status, "event": self.event}


class NotAssignedError(InvalidTransitionError):
    """The acting participant is not the one whose turn it is."""


class NotFoundError(WorkflowError):
    """Unknown document or template id."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self):
        return {"message": str(self), "entity": self.entity, "id": self.entity_id}
