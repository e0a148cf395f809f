from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any

import structlog

from claimrecon.allocation import ReconciliationAllocator
from claimrecon.collaborators import CallContext
from claimrecon.errors import DeadlineExceededError, ReconciliationError, ValidationError
from claimrecon.models import ClaimAllocation, ReconciliationResult

logger = structlog.get_logger(__name__)

DEFAULT_CONCURRENCY = 5


@dataclass
class BatchItem:
    payment_id: str
    allocations: list[ClaimAllocation]
    notes: str | None = None
    expected_version: int | None = None


@dataclass
class BatchResult:
    successful: list[str] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    # One entry per processed item, in input order; None marks a failed item.
    results: list[ReconciliationResult | None] = field(default_factory=list)


def _error_body(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, ReconciliationError):
        return exc.to_dict()
    return {"error": "internal_error", "message": str(exc), "retryable": False}


class BatchReconciler:
    """Runs independent allocations in bounded chunks on a thread pool.

    Each item is its own atomic ``allocate``; one item failing never rolls back
    another. With ``stop_on_error`` the run halts after the first chunk that
    contains a failure, so every item of that chunk still completes.
    """

    def __init__(self, allocator: ReconciliationAllocator, default_concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self.allocator = allocator
        self.default_concurrency = default_concurrency

    def reconcile_many(
        self,
        items: list[BatchItem],
        concurrency: int | None = None,
        stop_on_error: bool = False,
        timeout: float | None = None,
        actor: str = "system",
    ) -> BatchResult:
        concurrency = self.default_concurrency if concurrency is None else concurrency
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1", concurrency=concurrency)
        if timeout is not None and timeout <= 0:
            raise ValidationError("timeout must be positive", timeout=timeout)

        result = BatchResult()
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="reconcile") as pool:
            for start in range(0, len(items), concurrency):
                chunk = items[start:start + concurrency]
                submitted = []
                for item in chunk:
                    ctx = CallContext.with_timeout(timeout)
                    future = pool.submit(
                        self.allocator.allocate,
                        item.payment_id,
                        item.allocations,
                        item.notes,
                        item.expected_version,
                        ctx,
                        actor,
                    )
                    submitted.append((item, ctx, future))

                chunk_failed = False
                for item, ctx, future in submitted:
                    try:
                        outcome = future.result(timeout=ctx.remaining())
                    except FutureTimeout:
                        exc: Exception = DeadlineExceededError(
                            f"reconciliation of {item.payment_id} timed out after {timeout}s",
                            payment_id=item.payment_id,
                            timeout=timeout,
                        )
                        outcome = None
                    except ReconciliationError as err:
                        exc = err
                        outcome = None
                    except Exception as err:
                        logger.exception("batch_item_crashed", payment_id=item.payment_id)
                        exc = err
                        outcome = None

                    if outcome is None:
                        chunk_failed = True
                        result.failed.append({"payment_id": item.payment_id, "error": _error_body(exc)})
                        logger.warning(
                            "batch_item_failed",
                            payment_id=item.payment_id,
                            error=exc.__class__.__name__,
                            message=str(exc),
                        )
                    else:
                        result.successful.append(item.payment_id)
                    result.results.append(outcome)

                if stop_on_error and chunk_failed:
                    logger.info(
                        "batch_stopped_on_error",
                        processed=len(result.results),
                        skipped=len(items) - len(result.results),
                    )
                    break

        logger.info(
            "batch_reconciled",
            items=len(items),
            successful=len(result.successful),
            failed=len(result.failed),
        )
        return result
