"""
Best-effort execution of feedback bookkeeping.

Ranking recomputes, performance aggregates and churn-score write-backs
must never fail the request that triggered them. The dispatcher runs
each task inline, or on an executor the caller owns, and logs failures.
"""

import logging
from concurrent.futures import Executor, Future
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class FeedbackDispatcher:
    """Runs fire-and-forget tasks and logs whatever they raise."""

    def __init__(self, executor: Optional[Executor] = None):
        self.executor = executor

    def submit(self, description: str, fn: Callable[..., Any], *args, **kwargs) -> Optional[Future]:
        """
        Run a task without letting its failure reach the caller.

        Returns the Future when an executor is configured, else None.
        """
        if self.executor is None:
            self._run(description, fn, *args, **kwargs)
            return None
        return self.executor.submit(self._run, description, fn, *args, **kwargs)

    @staticmethod
    def _run(description: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("Feedback task failed: %s", description)
