import threading
import time

from helpers import make_job, make_tasks
from reviewpipe import storage
from reviewpipe.analysis import KeywordAnalyzer
from reviewpipe.dispatch import InlineDispatcher, ThreadDispatcher
from reviewpipe.models import COMPLETED
from reviewpipe.scheduler import drive


def _wait_for(job_id, status, timeout=15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if storage.get_job(job_id)["status"] == status:
            return True
        time.sleep(0.05)
    return False


def test_thread_dispatcher_chains_until_job_is_done():
    job = make_job()
    make_tasks(job, 8)

    with ThreadDispatcher(KeywordAnalyzer(), max_workers=3) as dispatcher:
        first = drive(dispatcher, budget=3)
        assert len(first.dispatched) == 3
        assert _wait_for(job, COMPLETED)

    assert storage.counts_by_state(job) == {COMPLETED: 8}


def test_closed_pool_refuses_work_and_scheduler_releases_lease():
    job = make_job()
    (task_id,) = make_tasks(job, 1)
    dispatcher = ThreadDispatcher(KeywordAnalyzer())
    dispatcher.close()

    result = drive(dispatcher, budget=2)

    assert result.dispatch_failed == [task_id]
    assert storage.get_task(task_id)["dispatched_at"] is None


def test_inline_dispatcher_runs_in_caller_thread():
    job = make_job()
    (task_id,) = make_tasks(job, 1)
    drive(InlineDispatcher(KeywordAnalyzer()), budget=1)
    assert storage.get_task(task_id)["state"] == COMPLETED


class PeakAnalyzer(KeywordAnalyzer):
    """Records the most tasks ever in flight while it runs."""

    def __init__(self):
        super().__init__()
        self.peak = 0
        self._lock = threading.Lock()

    def analyze(self, app_name, reviews):
        with self._lock:
            self.peak = max(self.peak, storage.count_in_flight())
        time.sleep(0.02)
        return super().analyze(app_name, reviews)


def test_chained_drives_keep_the_dispatcher_budget():
    job = make_job()
    make_tasks(job, 8)
    analyzer = PeakAnalyzer()

    with ThreadDispatcher(analyzer, max_workers=6, budget=2) as dispatcher:
        drive(dispatcher, budget=dispatcher.budget)
        assert _wait_for(job, COMPLETED)

    assert storage.counts_by_state(job) == {COMPLETED: 8}
    assert 1 <= analyzer.peak <= 2
