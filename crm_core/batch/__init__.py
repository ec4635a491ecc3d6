"""
Multi-entity batch execution.
"""
from .executor import (
    BatchExecutor,
    BatchItemFailure,
    BatchOperation,
    BatchResult,
    OperationKind,
)

__all__ = [
    "BatchExecutor",
    "BatchItemFailure",
    "BatchOperation",
    "BatchResult",
    "OperationKind",
]
