"""
Governance Kernel

Lifecycle state and approval workflow persistence for a multi-tenant
business-process platform:
- Tenant-scoped lifecycle instances with an append-only transition history
- Approval instances, stages, and tasks with at most one open instance per entity
- Immutable assignment snapshots and approval event log
- Structured JSON logging and a typed exception hierarchy
"""

__version__ = "0.1.0"
