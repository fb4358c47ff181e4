"""
auditpipe - compliance audit pipeline

Captures operation events at the HTTP boundary, queues them on
priority lanes and turns them into masked, compressed and signed audit
records, with dead-letter handling for failures.
"""

__version__ = "0.1.0"

from .main import create_app

__all__ = ["create_app"]
