"""
Database Configuration for ApprovalFlow

Direct PostgreSQL connection using asyncpg. Templates and documents are
stored as JSONB payloads next to a few indexed columns used for filtering.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    DB_MIN_CONNECTIONS / DB_MAX_CONNECTIONS: pool bounds

Usage:
    from approvalflow.database import get_db_pool, PostgresDocumentRepository

    pool = await get_db_pool()
    documents = PostgresDocumentRepository(pool)
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import asyncpg

from approvalflow.document_lifecycle import DocumentRecord
from approvalflow.repository import DocumentRepository, TemplateRepository
from approvalflow.workflow_templates import WorkflowTemplate

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class DatabaseConfig:
    """Database configuration."""
    database_url: str = ""
    min_connections: int = 2
    max_connections: int = 10

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Load configuration from environment variables."""
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            min_connections=int(os.getenv("DB_MIN_CONNECTIONS", "2")),
            max_connections=int(os.getenv("DB_MAX_CONNECTIONS", "10")),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.database_url)


# Global pool
_pool: Optional[asyncpg.Pool] = None


async def get_db_pool(config: Optional[DatabaseConfig] = None) -> Optional[asyncpg.Pool]:
    """Get the connection pool, or None when no database is configured."""
    global _pool

    if _pool is not None:
        return _pool

    config = config or DatabaseConfig.from_env()
    if not config.is_configured:
        logger.warning("Database not configured, using in-memory storage")
        return None

    # Transaction poolers (port 6543) do not support prepared statements
    is_pooler = ":6543" in config.database_url

    _pool = await asyncpg.create_pool(
        config.database_url,
        min_size=config.min_connections,
        max_size=config.max_connections,
        statement_cache_size=0 if is_pooler else 100
    )
    logger.info(f"Connected to PostgreSQL database (Pooler: {is_pooler})")
    return _pool


async def close_db_pool():
    """Close the database connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


# =============================================================================
# DATABASE SCHEMA
# =============================================================================

SCHEMA_SQL = """
-- ApprovalFlow Database Schema

CREATE TABLE IF NOT EXISTS workflow_templates (
    template_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    department TEXT,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_workflow_templates_active ON workflow_templates(active);

CREATE TABLE IF NOT EXISTS approval_documents (
    document_id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payload JSONB NOT NULL,
    last_modified TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_approval_documents_status ON approval_documents(status);
CREATE INDEX IF NOT EXISTS idx_approval_documents_last_modified ON approval_documents(last_modified DESC);
"""


async def init_database(pool: Optional[asyncpg.Pool]) -> bool:
    """Create tables if needed."""
    if pool is None:
        logger.info("No database configured, skipping initialization")
        return False

    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Database schema initialized")
    return True


def _payload(row) -> dict:
    payload = row["payload"]
    # asyncpg returns JSONB as text unless a codec is registered
    return json.loads(payload) if isinstance(payload, str) else payload


# =============================================================================
# REPOSITORIES
# =============================================================================

class PostgresTemplateRepository(TemplateRepository):
    """Workflow templates stored in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self, template_id: str) -> Optional[WorkflowTemplate]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT payload FROM workflow_templates WHERE template_id = $1",
                template_id
            )
        return WorkflowTemplate.from_dict(_payload(row)) if row else None

    async def save(self, template: WorkflowTemplate) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO workflow_templates (template_id, name, department, active, payload, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                ON CONFLICT (template_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    department = EXCLUDED.department,
                    active = EXCLUDED.active,
                    payload = EXCLUDED.payload,
                    updated_at = NOW()
            """,
                template.id,
                template.name,
                template.department.value if template.department else None,
                template.active,
                json.dumps(template.to_dict()),
                template.created_at,
            )

    async def delete(self, template_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM workflow_templates WHERE template_id = $1",
                template_id
            )
        return result == "DELETE 1"

    async def list_all(self) -> List[WorkflowTemplate]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT payload FROM workflow_templates ORDER BY created_at")
        return [WorkflowTemplate.from_dict(_payload(row)) for row in rows]


class PostgresDocumentRepository(DocumentRepository):
    """Document aggregates stored in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self, document_id: str) -> Optional[DocumentRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT payload FROM approval_documents WHERE document_id = $1",
                document_id
            )
        return DocumentRecord.from_dict(_payload(row)) if row else None

    async def save(self, document: DocumentRecord) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO approval_documents (document_id, request_id, status, payload, last_modified, created_at)
                VALUES ($1, $2, $3, $4::jsonb, $5, $6)
                ON CONFLICT (document_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    payload = EXCLUDED.payload,
                    last_modified = EXCLUDED.last_modified
            """,
                document.document_id,
                document.request_id,
                document.status.value,
                json.dumps(document.to_dict()),
                document.last_modified,
                document.created_at,
            )

    async def delete(self, document_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM approval_documents WHERE document_id = $1",
                document_id
            )
        return result == "DELETE 1"

    async def list_all(self) -> List[DocumentRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT payload FROM approval_documents ORDER BY last_modified DESC")
        return [DocumentRecord.from_dict(_payload(row)) for row in rows]
