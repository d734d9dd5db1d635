"""
Bounded worker pool with adaptive early termination.

Work items come from an iterator (possibly unbounded). At most
``concurrency`` items are in flight. After every completion, in
*completion* order, the outcome is appended to a sliding window of the last
``window`` completed outcomes; once ``should_stop(window)`` returns true no
further item is dispatched, and items already in flight are allowed to drain.

Judging on completion order rather than dispatch order means a slow hit that
was dispatched early cannot be outrun by faster misses dispatched after it
and be mistaken for the end of the id space.

Usage::

    pool = BoundedWorkerPool(concurrency=10, window=10)
    report = pool.run(range(1, 1001), lambda i: client.fetch("jockey", i))
    found = [o.value for o in report.outcomes if not o.miss]
"""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkOutcome:
    """Result of one work item.

    Attributes:
        item: The dispatched work item.
        value: Return value of the work function (``None`` on error).
        miss: ``True`` for a not-found result or a failed call.
        error: Exception raised by the work function, if any.
    """

    item: Any
    value: Any
    miss: bool
    error: Optional[BaseException] = None


@dataclass
class PoolReport:
    """Everything a pool run produced, outcomes in completion order."""

    outcomes: list[WorkOutcome] = field(default_factory=list)
    dispatched: int = 0
    stopped_early: bool = False

    @property
    def hits(self) -> list[WorkOutcome]:
        return [o for o in self.outcomes if not o.miss]

    @property
    def misses(self) -> int:
        return sum(1 for o in self.outcomes if o.miss)


def consecutive_misses(window: Sequence[WorkOutcome], size: int) -> bool:
    """Default stop rule: the window is full and every outcome in it is a miss."""
    return len(window) >= size and all(o.miss for o in window)


class BoundedWorkerPool:
    """Dispatch work with a concurrency ceiling and a completion-order stop rule.

    Attributes:
        concurrency: Maximum items in flight.
        window: Number of most recent completed outcomes the stop rule sees.
        should_stop: Predicate over the window; defaults to
            ``consecutive_misses``.
        is_miss: Classifies a work function return value as a miss
            (default: ``value is None``).
    """

    def __init__(
        self,
        concurrency: int,
        window: int,
        should_stop: Optional[Callable[[Sequence[WorkOutcome]], bool]] = None,
        is_miss: Callable[[Any], bool] = lambda value: value is None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}.")
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}.")
        self.concurrency = concurrency
        self.window = window
        self.should_stop = should_stop or (lambda w: consecutive_misses(w, self.window))
        self.is_miss = is_miss

    def run(self, items: Iterable[Any], work: Callable[[Any], Any]) -> PoolReport:
        """Process ``items`` with ``work`` until exhausted or stopped."""
        report = PoolReport()
        recent: deque[WorkOutcome] = deque(maxlen=self.window)
        pending = iter(items)
        in_flight: dict[Future, Any] = {}
        exhausted = False

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:

            def fill() -> None:
                nonlocal exhausted
                while not (exhausted or report.stopped_early) and len(in_flight) < self.concurrency:
                    try:
                        item = next(pending)
                    except StopIteration:
                        exhausted = True
                        return
                    in_flight[executor.submit(work, item)] = item
                    report.dispatched += 1

            fill()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    outcome = self._outcome(in_flight.pop(future), future)
                    report.outcomes.append(outcome)
                    recent.append(outcome)
                    if not report.stopped_early and self.should_stop(list(recent)):
                        report.stopped_early = True
                        logger.warning(
                            "Stopping dispatch after item %r: stop rule met over last %d completions",
                            outcome.item, len(recent),
                        )
                fill()

        return report

    def _outcome(self, item: Any, future: Future) -> WorkOutcome:
        error = future.exception()
        if error is not None:
            logger.error("Work item %r failed: %s", item, error)
            return WorkOutcome(item=item, value=None, miss=True, error=error)
        value = future.result()
        return WorkOutcome(item=item, value=value, miss=self.is_miss(value))
