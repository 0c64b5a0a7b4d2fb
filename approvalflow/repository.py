"""
Repository interfaces for templates and documents.

The engine never holds module-level state: stores and state machines are
handed a repository at construction. The in-memory implementation keeps
deep copies so callers cannot mutate stored aggregates behind its back;
the PostgreSQL implementation lives in ``approvalflow.database``.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from approvalflow.document_lifecycle import DocumentRecord
    from approvalflow.workflow_templates import WorkflowTemplate

logger = logging.getLogger(__name__)


class TemplateRepository(ABC):
    """Storage contract for workflow templates."""

    @abstractmethod
    async def get(self, template_id: str) -> Optional["WorkflowTemplate"]:
        ...

    @abstractmethod
    async def save(self, template: "WorkflowTemplate") -> None:
        ...

    @abstractmethod
    async def delete(self, template_id: str) -> bool:
        ...

    @abstractmethod
    async def list_all(self) -> List["WorkflowTemplate"]:
        ...


class DocumentRepository(ABC):
    """Storage contract for document aggregates."""

    @abstractmethod
    async def get(self, document_id: str) -> Optional["DocumentRecord"]:
        ...

    @abstractmethod
    async def save(self, document: "DocumentRecord") -> None:
        ...

    @abstractmethod
    async def delete(self, document_id: str) -> bool:
        ...

    @abstractmethod
    async def list_all(self) -> List["DocumentRecord"]:
        ...


class InMemoryTemplateRepository(TemplateRepository):
    """Dictionary-backed template storage."""

    def __init__(self):
        self._templates: Dict[str, "WorkflowTemplate"] = {}
        self._lock = asyncio.Lock()

    async def get(self, template_id: str) -> Optional["WorkflowTemplate"]:
        template = self._templates.get(template_id)
        return copy.deepcopy(template) if template else None

    async def save(self, template: "WorkflowTemplate") -> None:
        async with self._lock:
            self._templates[template.id] = copy.deepcopy(template)

    async def delete(self, template_id: str) -> bool:
        async with self._lock:
            return self._templates.pop(template_id, None) is not None

    async def list_all(self) -> List["WorkflowTemplate"]:
        return [copy.deepcopy(t) for t in self._templates.values()]


class InMemoryDocumentRepository(DocumentRepository):
    """Dictionary-backed document storage."""

    def __init__(self):
        self._documents: Dict[str, "DocumentRecord"] = {}
        self._lock = asyncio.Lock()

    async def get(self, document_id: str) -> Optional["DocumentRecord"]:
        document = self._documents.get(document_id)
        return copy.deepcopy(document) if document else None

    async def save(self, document: "DocumentRecord") -> None:
        async with self._lock:
            self._documents[document.document_id] = copy.deepcopy(document)

    async def delete(self, document_id: str) -> bool:
        async with self._lock:
            return self._documents.pop(document_id, None) is not None

    async def list_all(self) -> List["DocumentRecord"]:
        return [copy.deepcopy(d) for d in self._documents.values()]
