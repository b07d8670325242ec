"""Ways of getting a leased task in front of an analyzer.

The scheduler only ever calls ``submit(task_id)``. Whatever happens after
that is reported back through the task store, never through a return value.
"""

import logging
import multiprocessing
from concurrent.futures import ThreadPoolExecutor
from multiprocessing.process import BaseProcess
from typing import List, Optional

from .analysis import Analyzer
from .worker import run_safely, run_task

logger = logging.getLogger(__name__)


class Dispatcher:
    # fixed budget for drives chained off finished tasks; None means compute from load
    budget: Optional[int] = None

    def submit(self, task_id: str) -> None:
        raise NotImplementedError

    def close(self, wait: bool = True) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class InlineDispatcher(Dispatcher):
    """Runs the task in the caller's thread. Used by tests and one-shot CLI runs."""

    def __init__(self, analyzer: Analyzer, aggregator=None):
        self.analyzer = analyzer
        self.aggregator = aggregator

    def submit(self, task_id: str) -> None:
        run_safely(task_id, self.analyzer, aggregator=self.aggregator)


class ThreadDispatcher(Dispatcher):
    """
    Fire-and-forget onto a thread pool. With `chain` on, every finished task
    drives the scheduler again so a job keeps moving between monitor passes.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        aggregator=None,
        max_workers: int = 6,
        chain: bool = True,
        budget: Optional[int] = None,
    ):
        self.analyzer = analyzer
        self.aggregator = aggregator
        self.chain = chain
        self.budget = budget
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reviewpipe")

    def submit(self, task_id: str) -> None:
        # raises RuntimeError once closed; the scheduler then releases the lease
        self._pool.submit(
            run_safely, task_id, self.analyzer,
            aggregator=self.aggregator,
            dispatcher=self if self.chain else None,
        )

    def close(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


class ProcessDispatcher(Dispatcher):
    """One child process per task. Analyzer and aggregator travel as import paths."""

    def __init__(self, analyzer_path: str, aggregator_path: Optional[str] = None):
        self.analyzer_path = analyzer_path
        self.aggregator_path = aggregator_path
        self._procs: List[BaseProcess] = []
        # spawn: a forked child would inherit the parent's sqlite connection
        self._ctx = multiprocessing.get_context("spawn")

    def submit(self, task_id: str) -> None:
        p = self._ctx.Process(target=run_task, args=(task_id, self.analyzer_path, self.aggregator_path), daemon=False)
        p.start()
        logger.debug("task %s handed to pid %s", task_id, p.pid)
        self._procs.append(p)
        self._procs = [proc for proc in self._procs if proc.is_alive() or proc is p]

    def close(self, wait: bool = True) -> None:
        if not wait:
            return
        for p in self._procs:
            p.join()
        self._procs = []
