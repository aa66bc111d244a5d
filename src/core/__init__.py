"""
Core library: Reusable, infrastructure-agnostic components.

Modules:
    resilience  - Retry with linear or exponential backoff
    logging     - Structured JSON logging with explicit correlation fields
    errors      - Error classification and exception hierarchy
    utils       - Worker ids and JSON serialization

Design Principles:
    - No dependencies on the database, broker or storage backends
    - All modules are independently testable
"""

from .types import ErrorCategory, ErrorClassifier

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
]
