"""
Collaborator call wrapper shared by the coordinators.
"""

import asyncio
from typing import Awaitable, TypeVar

from crm_core.errors import CollaboratorUnavailable, CoordinatorError

T = TypeVar("T")


async def call_collaborator(awaitable: Awaitable[T], timeout: float, source: str) -> T:
    """Await a collaborator call under ``timeout``.

    Timeouts and unexpected collaborator exceptions are reported as
    CollaboratorUnavailable so every failure is handled the same way.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise CollaboratorUnavailable(f"Timed out after {timeout}s", source=source, code="timeout")
    except CoordinatorError:
        raise
    except Exception as e:
        raise CollaboratorUnavailable(str(e) or e.__class__.__name__, source=source, code="unexpected") from e
