"""
Core business logic components.

This package contains the audit pipeline components:
- Request classification, masking and deduplication
- Audit capture and the Starlette middleware
- Event dispatch and the priority-laned queue with its journal
- Worker stages (compression, signing, persistence)
- Dead-letter handling, notifications, metrics and health checks
"""
