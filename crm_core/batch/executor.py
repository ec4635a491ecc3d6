"""
Batch operations across many entities with per-item failure isolation.

One failing target never aborts the rest of the batch. Errors are recorded in
the order they are encountered: input order when sequential, completion
order when running with bounded parallelism.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from crm_core.utils.logging import get_logger

logger = get_logger(__name__)

EntityId = str
ApplyOne = Callable[[EntityId, Any], Awaitable[Any]]


class OperationKind(str, Enum):
    """Supported multi-entity operations."""
    UPDATE = "update"
    DELETE = "delete"
    ARCHIVE = "archive"
    ASSIGN = "assign"
    CREATE_FOR_PRINCIPAL = "create_for_principal"


@dataclass(frozen=True)
class BatchOperation:
    """A batch request. Consumed once; never retried automatically."""
    operation_kind: OperationKind
    target_ids: tuple[EntityId, ...]
    parameters: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "operation_kind", OperationKind(self.operation_kind))
        object.__setattr__(self, "target_ids", tuple(self.target_ids))


@dataclass(frozen=True)
class BatchItemFailure:
    """One target that failed."""
    target_id: EntityId
    error_message: str


@dataclass
class BatchResult:
    """Outcome of a batch; ``succeeded + failed == total`` always holds."""
    total: int
    succeeded: int = 0
    failed: int = 0
    errors: list[BatchItemFailure] = field(default_factory=list)
    # target id -> value returned by the operation for successful targets
    results: dict[EntityId, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": [
                {"target_id": e.target_id, "error_message": e.error_message}
                for e in self.errors
            ],
        }


def _error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class BatchExecutor:
    """
    Applies an operation to every target of a BatchOperation.

    ``concurrency == 1`` runs targets one after another; larger values bound
    the number of targets processed at once.
    """

    def __init__(
        self,
        concurrency: int = 1,
        on_complete: Optional[Callable[[BatchResult], None]] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self._on_complete = on_complete

    async def execute(
        self,
        operation: BatchOperation,
        apply_one: ApplyOne,
        concurrency: Optional[int] = None,
    ) -> BatchResult:
        """
        Run ``apply_one(target_id, parameters)`` for each target.

        Args:
            operation: The batch to run
            apply_one: Coroutine function; raising marks the target failed
            concurrency: Override of the executor's concurrency for this call

        Returns:
            BatchResult with per-target failures collected
        """
        limit = self.concurrency if concurrency is None else concurrency
        if limit < 1:
            raise ValueError("concurrency must be >= 1")

        result = BatchResult(total=len(operation.target_ids))
        logger.info(
            "Batch started",
            operation=operation.operation_kind.value,
            targets=result.total,
            concurrency=limit,
        )

        if limit == 1:
            for target_id in operation.target_ids:
                await self._apply(operation, apply_one, target_id, result)
        else:
            semaphore = asyncio.Semaphore(limit)

            async def bounded(target_id: EntityId) -> None:
                async with semaphore:
                    await self._apply(operation, apply_one, target_id, result)

            await asyncio.gather(*(bounded(t) for t in operation.target_ids))

        logger.info(
            "Batch finished",
            operation=operation.operation_kind.value,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        if self._on_complete is not None:
            self._on_complete(result)
        return result

    async def _apply(
        self,
        operation: BatchOperation,
        apply_one: ApplyOne,
        target_id: EntityId,
        result: BatchResult,
    ) -> None:
        try:
            value = await apply_one(target_id, operation.parameters)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.failed += 1
            result.errors.append(BatchItemFailure(target_id=target_id, error_message=_error_message(e)))
            logger.warning(
                "Batch item failed",
                operation=operation.operation_kind.value,
                target_id=target_id,
                error=str(e),
            )
            return

        result.succeeded += 1
        result.results[target_id] = value
