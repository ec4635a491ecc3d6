"""
Background refresh scheduling.
"""
from .scheduler import RefreshConfig, RefreshScheduler

__all__ = ["RefreshConfig", "RefreshScheduler"]
