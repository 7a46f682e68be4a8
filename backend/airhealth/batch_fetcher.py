"""Bounded-concurrency fetching with inter-batch pacing.

Targets are processed in consecutive batches; every fetch inside a batch runs
concurrently and the next batch starts only after the pacing delay. Providers
throttle bursts per IP, so full fan-out is avoided while total latency stays
bounded for tens to low hundreds of targets.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from .quota_manager import QuotaExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BatchFetchResult(Generic[T]):
    results: List[Tuple[T, Any]] = field(default_factory=list)
    failed: int = 0
    quota_denied: int = 0
    skipped: int = 0
    duration_ms: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.results) + self.failed + self.quota_denied

    def summary(self) -> dict:
        return {
            "succeeded": len(self.results),
            "failed": self.failed,
            "quota_denied": self.quota_denied,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
        }


async def batch_fetch(
    targets: Sequence[T],
    fetch_one: Callable[[T], Awaitable[Optional[Any]]],
    *,
    batch_size: int = 5,
    delay_seconds: float = 0.2,
    deadline: Optional[float] = None,
    label: str = "batch",
) -> BatchFetchResult[T]:
    """Fetch every target, isolating per-target failures.

    ``fetch_one`` returns the payload or ``None`` for "no data"; exceptions
    count as failures, :class:`QuotaExhaustedError` as a quota denial.
    ``deadline`` is a ``time.monotonic()`` value after which no new batch is
    started; targets left over are reported as skipped.
    """
    started = time.monotonic()
    outcome: BatchFetchResult[T] = BatchFetchResult()
    width = max(1, int(batch_size))
    total_batches = (len(targets) + width - 1) // width

    async def run_one(target: T) -> Tuple[T, Optional[Any], Optional[BaseException]]:
        try:
            return (target, await fetch_one(target), None)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return (target, None, e)

    for batch_index, offset in enumerate(range(0, len(targets), width)):
        if deadline is not None and time.monotonic() >= deadline:
            outcome.skipped = len(targets) - offset
            logger.warning(
                "[%s] deadline reached, skipping %d remaining targets", label, outcome.skipped
            )
            break

        batch = targets[offset:offset + width]
        results = await asyncio.gather(*(run_one(t) for t in batch))

        batch_ok = 0
        for target, payload, error in results:
            if isinstance(error, QuotaExhaustedError):
                outcome.quota_denied += 1
            elif error is not None:
                outcome.failed += 1
                outcome.errors.append(f"{target}: {error}")
                logger.warning("[%s] target %s failed: %s", label, target, error)
            elif payload is None:
                outcome.failed += 1
            else:
                outcome.results.append((target, payload))
                batch_ok += 1

        logger.debug(
            "[%s] batch %d/%d: %d/%d succeeded",
            label, batch_index + 1, total_batches, batch_ok, len(batch),
        )

        if offset + width < len(targets) and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

    outcome.duration_ms = int((time.monotonic() - started) * 1000)
    return outcome
