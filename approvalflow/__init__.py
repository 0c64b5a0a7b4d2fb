# ApprovalFlow Source Package
"""
ApprovalFlow - Document Approval Workflow Engine

Modules:
- errors: engine error taxonomy
- actors: participant roles and references
- department_classifier: keyword-based section to department mapping
- workflow_synthesizer: approval plan generation from document sections
- workflow_templates: reusable multi-stage workflow definitions
- review_sequencer: reviewer turn tracking with per-stage quorum
- document_lifecycle: status state machine for submitted documents
- escalation: stage timers with auto-advance and alerting
- repository: storage interfaces and in-memory implementations
- database: PostgreSQL connection and repositories
- monitoring: metrics collection and alerting
- audit: JSONL audit trail of lifecycle transitions
- config: engine settings from the environment
- main: Unified FastAPI application
"""
