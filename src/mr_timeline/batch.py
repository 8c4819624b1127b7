"""Bounded concurrent batch processing of merge request analyses."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar, Union

from .config import DEFAULT_BATCH_SIZE
from .errors import BatchItemError, InputValidationError
from .models import BatchResult, BatchSuccess

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_HANDLING_MODES = ("skip", "throw")

ProgressCallback = Callable[[int, int], None]
_Outcome = Union[BatchSuccess[T], BatchItemError]


async def _drain(
    queue: "asyncio.Queue[Tuple[int, object]]",
    analyze_one: Callable[[object], Awaitable[T]],
    outcomes: List[_Outcome],
) -> None:
    while True:
        try:
            index, item_id = queue.get_nowait()
        except asyncio.QueueEmpty:
            return
        try:
            value = await analyze_one(item_id)
        except Exception as exc:
            logger.warning(
                "Batch item failed",
                extra={"index": index, "item_id": item_id, "error": str(exc)},
            )
            outcomes.append(BatchItemError(index, item_id, exc))
        else:
            outcomes.append(BatchSuccess(index=index, item_id=item_id, value=value))
        finally:
            queue.task_done()


async def _run_chunk(
    chunk: Sequence[Tuple[int, object]],
    analyze_one: Callable[[object], Awaitable[T]],
    batch_size: int,
) -> List[_Outcome]:
    queue: "asyncio.Queue[Tuple[int, object]]" = asyncio.Queue()
    for entry in chunk:
        queue.put_nowait(entry)

    outcomes: List[_Outcome] = []
    workers = [
        asyncio.create_task(_drain(queue, analyze_one, outcomes))
        for _ in range(min(batch_size, len(chunk)))
    ]
    results = await asyncio.gather(*workers, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result

    return sorted(outcomes, key=lambda outcome: outcome.index)


async def run_batch(
    ids: Sequence[object],
    analyze_one: Callable[[object], Awaitable[T]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    error_handling: str = "skip",
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    max_items: Optional[int] = None,
) -> BatchResult[T]:
    """Analyze ``ids`` in consecutive batches of at most ``batch_size`` concurrent calls.

    Args:
        ids: Item identifiers, processed in input order.
        analyze_one: Coroutine function producing the result for one id.
        batch_size: Maximum number of concurrent ``analyze_one`` calls.
        error_handling: ``"skip"`` records failures and continues; ``"throw"``
            raises the lowest-index failure of a batch once that batch settles.
        on_progress: Called with ``(processed, total)`` after every batch.
        cancel_event: When set, no further batches are dispatched.
        max_items: Upper bound on ``len(ids)``.

    Returns:
        Successes and failures ordered by input index.

    Raises:
        InputValidationError: If the arguments are invalid or ``ids`` exceeds ``max_items``.
        BatchItemError: In ``"throw"`` mode, for the first failing item.
    """
    if batch_size <= 0:
        raise InputValidationError("Batch size must be greater than 0.")
    if error_handling not in ERROR_HANDLING_MODES:
        raise InputValidationError(
            f"Unknown error handling mode '{error_handling}': expected one of "
            f"{', '.join(ERROR_HANDLING_MODES)}."
        )
    total = len(ids)
    if max_items is not None and total > max_items:
        raise InputValidationError(
            f"Batch of {total} items exceeds the limit of {max_items}. "
            "Split the request into smaller batches or raise the item limit."
        )

    indexed = list(enumerate(ids))
    successes: List[BatchSuccess[T]] = []
    failures: List[BatchItemError] = []
    processed = 0
    cancelled = False

    for offset in range(0, total, batch_size):
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            logger.info(
                "Batch run cancelled",
                extra={"processed": processed, "total": total},
            )
            break

        chunk = indexed[offset:offset + batch_size]
        outcomes = await _run_chunk(chunk, analyze_one, batch_size)
        processed += len(chunk)

        chunk_failures = [outcome for outcome in outcomes if isinstance(outcome, BatchItemError)]
        successes.extend(outcome for outcome in outcomes if isinstance(outcome, BatchSuccess))
        failures.extend(chunk_failures)

        if on_progress is not None:
            on_progress(processed, total)

        if chunk_failures and error_handling == "throw":
            raise chunk_failures[0]

    logger.info(
        "Batch run finished",
        extra={
            "total": total,
            "processed": processed,
            "succeeded": len(successes),
            "failed": len(failures),
        },
    )
    return BatchResult(
        successes=successes,
        failures=failures,
        total=total,
        processed=processed,
        cancelled=cancelled,
    )
