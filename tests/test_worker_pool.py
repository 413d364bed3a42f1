"""
Test suite for the partition scheduler (utils/worker_pool.py).

Validates:
1. Round-robin partitioning into disjoint worker sets
2. Each subcolumn is driven by exactly one worker
3. Fail-together error collection
4. Pool is joined before the call returns
"""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from utils.errors import NullColumn
from utils.worker_pool import partition, run_partitioned


class RecordingSubcolumn:
    """Stand-in for Subcolumn that records how it was driven."""

    def __init__(self, fail=False, delay=0.0):
        self.fail = fail
        self.delay = delay
        self.runs = []
        self.threads = []
        self.finished = False

    def run(self, loops, cancel_event=None):
        self.threads.append(threading.current_thread().name)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise NullColumn()
        self.runs.append(loops)
        self.finished = True


class TestPartition:

    def test_round_robin(self):
        assert partition(5, 2) == [[0, 2, 4], [1, 3]]
        assert partition(4, 4) == [[0], [1], [2], [3]]

    def test_more_workers_than_items(self):
        assert partition(2, 4) == [[0], [1]]

    def test_no_items(self):
        assert partition(0, 3) == []

    def test_partitions_are_disjoint_and_complete(self):
        parts = partition(17, 5)
        flat = [index for part in parts for index in part]
        assert sorted(flat) == list(range(17))
        assert len(flat) == len(set(flat))

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            partition(3, 0)


class TestRunPartitioned:

    def test_every_subcolumn_runs_once_with_full_loops(self):
        subs = [RecordingSubcolumn() for _ in range(7)]
        failures = run_partitioned(subs, loops=12, threads=3)
        assert failures == []
        assert all(sub.runs == [12] for sub in subs)
        assert all(len(sub.threads) == 1 for sub in subs)

    def test_worker_count_bounded_by_threads(self):
        subs = [RecordingSubcolumn(delay=0.01) for _ in range(8)]
        run_partitioned(subs, loops=1, threads=2)
        assert len({sub.threads[0] for sub in subs}) <= 2

    def test_failures_collected_after_siblings_finish(self):
        subs = [RecordingSubcolumn(), RecordingSubcolumn(fail=True),
                RecordingSubcolumn(delay=0.05), RecordingSubcolumn(fail=True)]
        failures = run_partitioned(subs, loops=3, threads=2)

        assert [index for index, _ in failures] == [1, 3]
        assert all(isinstance(exc, NullColumn) for _, exc in failures)
        assert subs[0].finished and subs[2].finished

    def test_worker_continues_after_failure(self):
        """A single worker moves on to its next subcolumn after a failure."""
        subs = [RecordingSubcolumn(fail=True), RecordingSubcolumn()]
        failures = run_partitioned(subs, loops=2, threads=1)
        assert [index for index, _ in failures] == [0]
        assert subs[1].runs == [2]

    def test_pool_joined_before_return(self):
        subs = [RecordingSubcolumn(delay=0.05) for _ in range(4)]
        run_partitioned(subs, loops=1, threads=4)
        assert all(sub.finished for sub in subs)

    def test_done_callback_only_for_successes(self):
        subs = [RecordingSubcolumn(), RecordingSubcolumn(fail=True), RecordingSubcolumn()]
        done = []
        lock = threading.Lock()

        def record(index):
            with lock:
                done.append(index)

        run_partitioned(subs, loops=1, threads=2, on_subcolumn_done=record)
        assert sorted(done) == [0, 2]

    def test_failing_done_callback_is_collected(self):
        """A raising callback is a failure for that subcolumn, not for the worker."""
        subs = [RecordingSubcolumn() for _ in range(3)]

        def explode(index):
            if index == 0:
                raise RuntimeError("callback broke")

        failures = run_partitioned(subs, loops=5, threads=1, on_subcolumn_done=explode)

        assert [sub.runs for sub in subs] == [[5], [5], [5]]
        assert [index for index, _ in failures] == [0]
        assert isinstance(failures[0][1], RuntimeError)

    def test_empty_input(self):
        assert run_partitioned([], loops=10, threads=4) == []

    @pytest.mark.parametrize("loops,threads", [(1, 0), (-1, 1)])
    def test_invalid_arguments(self, loops, threads):
        with pytest.raises(ValueError):
            run_partitioned([RecordingSubcolumn()], loops=loops, threads=threads)
