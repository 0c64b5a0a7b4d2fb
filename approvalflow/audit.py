"""
Audit trail for lifecycle transitions.

Subscribes to the lifecycle and appends every transition to a per-document
JSONL file, keeping an in-memory copy for quick lookups.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from approvalflow.document_lifecycle import TransitionEvent

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """Audit record of one transition."""
    entry_id: str
    timestamp: datetime
    document_id: str
    event: str
    actor: Optional[str]
    from_status: Optional[str]
    to_status: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "document_id": self.document_id,
            "event": self.event,
            "actor": self.actor,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "details": self.details,
        }


class AuditTrail:
    """Lifecycle subscriber writing one JSONL file per document."""

    def __init__(self, log_dir: str = "./audit"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._entries: List[AuditEntry] = []

    async def __call__(self, event: "TransitionEvent"):
        await self.log(event)

    async def log(self, event: "TransitionEvent") -> AuditEntry:
        """Record a transition."""
        entry = AuditEntry(
            entry_id=str(uuid.uuid4()),
            timestamp=event.timestamp,
            document_id=event.document_id,
            event=event.event,
            actor=event.actor.actor_id if event.actor else None,
            from_status=event.from_status,
            to_status=event.to_status,
            details=dict(event.details),
        )
        self._entries.append(entry)

        log_file = self.log_dir / f"{entry.document_id}_audit.jsonl"
        with open(log_file, "a") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")

        return entry

    def get_entries(self, document_id: str) -> List[AuditEntry]:
        """In-memory entries for a document, oldest first."""
        return [e for e in self._entries if e.document_id == document_id]

    def read_file(self, document_id: str) -> List[Dict[str, Any]]:
        """Entries persisted for a document, oldest first."""
        log_file = self.log_dir / f"{document_id}_audit.jsonl"
        if not log_file.exists():
            return []
        with open(log_file) as f:
            return [json.loads(line) for line in f if line.strip()]
