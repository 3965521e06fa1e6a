# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Tests for the TaskPool and related classes."""
import contextlib
import copy
import importlib
import math
import operator
import pickle
import sys
import threading
import time
import typing
import unittest
from unittest import mock

from . import impl
from .impl import (
    BrokenHandle,
    ConstructionFailed,
    FinishMode,
    Handle,
    HandleConsumed,
    Status,
    SubmitAfterShutdown,
    TaskPool,
    default_workers,
)

T = typing.TypeVar("T")

# Generous bound so that heavy OS load never causes spurious failures
TIMEOUT = 60.0


class TaskPoolTest(unittest.TestCase):
    """Unit tests (doubling as examples) for TaskPool/Handle."""

    @contextlib.contextmanager
    def assert_elapsed(self, minimum: float, maximum: float = TIMEOUT):
        """Asserts a 'with' block required between minimum/maximum seconds."""
        start = time.monotonic()
        yield
        elapsed = time.monotonic() - start
        self.assertGreaterEqual(elapsed, minimum, "Not enough seconds elapsed")
        self.assertLessEqual(elapsed, maximum, "Too many seconds elapsed")

    @contextlib.contextmanager
    def occupied(self, pool: TaskPool):
        """Keep every worker of pool busy for the duration of a 'with'."""
        started = threading.Semaphore(0)
        release = threading.Event()

        def blocker() -> None:
            started.release()
            release.wait(TIMEOUT)

        handles = [pool.submit(blocker) for _ in range(pool.workers)]
        for _ in handles:
            self.assertTrue(started.acquire(timeout=TIMEOUT))
        try:
            yield
        finally:
            release.set()
        for handle in handles:
            self.assertIsNone(handle.get())

    def test_defaults(self) -> None:
        """Default construction and __call__ shorthand ok?"""
        with TaskPool() as pool:
            self.assertEqual(default_workers(), pool.workers)
            self.assertIs(FinishMode.DRAIN_ALL, pool.mode)
            f = pool(len, (1, 2, 3))
            g = pool(str, object=2)
            h = pool(lambda x: len(x), (1, 2, 3, 4))
            self.assertEqual(4, h.get())
            self.assertEqual("2", g.get())
            self.assertEqual(3, f.get())

    def test_default_workers(self) -> None:
        """Unknown CPU counts fall back to a single worker."""
        self.assertGreaterEqual(default_workers(), 1)
        with mock.patch.object(
            impl.os, "sched_getaffinity", side_effect=AttributeError,
            create=True,
        ), mock.patch.object(impl.os, "cpu_count", return_value=None):
            self.assertEqual(1, default_workers())
        with mock.patch.object(
            impl.os, "sched_getaffinity", side_effect=AttributeError,
            create=True,
        ), mock.patch.object(impl.os, "cpu_count", return_value=3):
            self.assertEqual(3, default_workers())

    def test_invalid_arguments(self) -> None:
        """Nonsensical construction or submission is rejected."""
        with self.assertRaises(AssertionError):
            TaskPool(workers=0)
        with self.assertRaises(AssertionError):
            TaskPool(workers=2, mode="drain_all")  # type: ignore
        with TaskPool(workers=1) as pool:
            with self.assertRaises(AssertionError):
                pool.submit(5)  # type: ignore
            self.assertTrue(pool.empty(), "Nothing enqueued")

    def test_arithmetic(self) -> None:
        """Values of assorted types flow back through Handles."""
        with TaskPool(2) as pool:
            f = pool.submit(lambda a, b: math.sqrt(a * a + b * b), 4, 3)
            g = pool.submit(lambda a, b: int(math.log2(a * a - b)), 9, 17)
            h = pool.submit(lambda: 5)
            pool.poll_one()
            self.assertEqual(6, g.get())
            self.assertEqual(5, h.get())
        # Handle f is read only after the pool is gone
        self.assertEqual(5.0, f.get())

    def test_void_task(self) -> None:
        """A task returning nothing yields a Handle producing None."""
        with TaskPool(2) as pool:
            h = pool.submit(lambda: None)
            h.wait()
            self.assertTrue(h.done())
            self.assertIs(Status.VALUE, h.wait_for(0))
            self.assertIsNone(h.get())

    @staticmethod
    def helper_lis(a: typing.Sequence[int]) -> int:
        """Length of the longest strictly increasing subsequence of a."""
        d = [1] * len(a)
        for i in range(len(a)):
            for j in range(i):
                if a[j] < a[i]:
                    d[i] = max(d[i], d[j] + 1)
        return max(d)

    def test_repeated_work(self) -> None:
        """Identical work submitted repeatedly produces identical results."""
        v = [13, 22, 88, 323, 324, 1, 42, -4, 3, 89, 123, 3333, 8943, 999]
        with TaskPool(2) as pool:
            handles = [pool.submit(self.helper_lis, v) for _ in range(4)]
            pool.poll_one()
            pool.poll_one()
        for h in handles:
            self.assertTrue(h.done(), "Ready once pool closed")
        for h in handles:
            # For example, 13, 22, 88, 323, 324, 3333, 8943
            self.assertEqual(7, h.get())

    @classmethod
    def helper_help_until_ready(cls, pool: TaskPool, handle: Handle[T]) -> T:
        """Run queued work on this thread until handle is ready."""
        while not handle.done(timeout=0.001):
            pool.poll_one()
        return handle.get()

    @classmethod
    def helper_nested(cls, pool: TaskPool, depth: int) -> int:
        """Submit work depth levels deep, helping while awaiting each."""
        if depth <= 0:
            return 5
        child = pool.submit(cls.helper_nested, pool, depth - 1)
        return cls.helper_help_until_ready(pool, child)

    def test_nested_self_help(self) -> None:
        """Nesting deeper than the worker count completes via poll_one()."""
        for workers, depth in ((2, 2), (2, 10), (1, 10)):
            with self.subTest(workers=workers, depth=depth):
                with TaskPool(workers) as pool:
                    h = pool.submit(self.helper_nested, pool, depth)
                    self.assertIs(Status.VALUE, h.wait_for(TIMEOUT))
                    self.assertEqual(5, h.get())

    def test_nested_pure_wait_stalls(self) -> None:
        """Without poll_one() a lone worker cannot await its own child."""
        with TaskPool(1) as pool:

            def outer() -> typing.Tuple[Status, int]:
                inner = pool.submit(lambda: 5)
                # Sole worker is this thread so inner cannot possibly run
                status = inner.wait_for(0.1)
                pool.poll_one()
                return status, inner.get()

            h = pool.submit(outer)
            self.assertEqual((Status.TIMEOUT, 5), h.get())

    def test_nested_self_help_during_shutdown(self) -> None:
        """Helping via poll_one() still completes children once closing."""
        for mode in FinishMode:
            with self.subTest(mode=mode):
                pool = TaskPool(1, mode)
                started = threading.Event()

                def parent() -> typing.Optional[int]:
                    started.set()
                    child = pool.submit(lambda: 5)
                    self.helper_refuse_after_close(pool)
                    # Bounded so that a regression fails rather than hangs
                    deadline = time.monotonic() + TIMEOUT
                    while not child.done(timeout=0.001):
                        if time.monotonic() > deadline:
                            return None
                        pool.poll_one()
                    return child.get()

                h = pool.submit(parent)
                self.assertTrue(started.wait(TIMEOUT))
                closer = threading.Thread(target=pool.close)
                closer.start()
                closer.join(TIMEOUT)
                self.assertFalse(closer.is_alive(), "close() returned")
                self.assertTrue(h.done())
                self.assertEqual(5, h.get(), "Child ran on parent's stack")

    def test_poll_one_runs_on_caller(self) -> None:
        """poll_one() runs exactly one queued task on the calling thread."""
        with TaskPool(1) as pool:
            with self.occupied(pool):
                f = pool.submit(threading.current_thread)
                g = pool.submit(threading.current_thread)
                self.assertFalse(f.done())
                pool.poll_one()
                self.assertTrue(f.done())
                self.assertFalse(g.done(), "At most one task per call")
                self.assertIs(threading.current_thread(), f.get())
                pool.poll_one()
                self.assertIs(threading.current_thread(), g.get())

    def test_poll_one_never_waits(self) -> None:
        """poll_one() on an empty queue returns promptly."""
        with TaskPool(1) as pool:
            with self.occupied(pool):
                with self.assert_elapsed(0, 1.0):
                    for _ in range(100):
                        pool.poll_one()
            with self.assert_elapsed(0, 1.0):
                pool.poll_one()

    def test_empty(self) -> None:
        """empty() reports on queued, not running, work."""
        with TaskPool(1) as pool:
            self.assertTrue(pool.empty())
            with self.occupied(pool):
                self.assertTrue(pool.empty(), "Running work not queued")
                h = pool.submit(len, "abc")
                self.assertFalse(pool.empty())
                pool.poll_one()
                self.assertTrue(pool.empty())
                self.assertEqual(3, h.get())

    def test_fifo_single_worker(self) -> None:
        """A single worker executes tasks in submission order."""
        order = []  # type: typing.List[int]
        with TaskPool(1) as pool:
            for i in range(50):
                pool.submit(order.append, i)
        self.assertEqual(list(range(50)), order)

    def test_concurrency_bounded(self) -> None:
        """At most the configured number of tasks execute concurrently."""
        workers = 3
        lock = threading.Lock()
        counts = {"active": 0, "peak": 0}

        def tracked() -> None:
            with lock:
                counts["active"] += 1
                counts["peak"] = max(counts["peak"], counts["active"])
            time.sleep(0.01)
            with lock:
                counts["active"] -= 1

        with TaskPool(workers) as pool:
            handles = [pool.submit(tracked) for _ in range(10 * workers)]
        for h in handles:
            self.assertIsNone(h.get())
        self.assertGreaterEqual(counts["peak"], 1)
        self.assertLessEqual(counts["peak"], workers)

    def test_heavyusage(self) -> None:
        """Many submitters saturating the pool does not deadlock?"""
        with TaskPool(4) as pool:
            results = {}  # type: typing.Dict[int, typing.List[Handle[int]]]

            def submitter(offset: int) -> None:
                results[offset] = [
                    pool.submit(operator.add, offset, i) for i in range(200)
                ]

            threads = [
                threading.Thread(target=submitter, args=(1000 * k,))
                for k in range(4)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        for offset, handles in results.items():
            self.assertEqual(
                [offset + i for i in range(200)], [h.get() for h in handles]
            )

    def test_shutdown_drain_all(self) -> None:
        """DRAIN_ALL runs every queued task before close() returns."""
        pool = TaskPool(2, FinishMode.DRAIN_ALL)
        handles = [pool.submit(operator.mul, i, i) for i in range(100)]
        pool.close()
        self.assertTrue(pool.empty())
        for i, h in enumerate(handles):
            self.assertTrue(h.done())
            self.assertEqual(i * i, h.get())

    @staticmethod
    def helper_refuse_after_close(pool: TaskPool) -> int:
        """Submit no-ops until pool refuses, returning how many succeeded."""
        accepted = 0
        while True:
            try:
                pool.submit(len, ())
            except SubmitAfterShutdown:
                return accepted
            accepted += 1
            time.sleep(0.001)

    def test_shutdown_current_only(self) -> None:
        """CURRENT_ONLY finishes running tasks but abandons queued ones."""
        pool = TaskPool(2, FinishMode.CURRENT_ONLY)
        started = threading.Semaphore(0)
        release = threading.Event()

        def slow(i: int) -> int:
            started.release()
            release.wait(TIMEOUT)
            return i

        handles = [pool.submit(slow, i) for i in range(100)]
        for _ in range(pool.workers):
            self.assertTrue(started.acquire(timeout=TIMEOUT))

        # Begin closing and confirm shutdown began before releasing work
        closer = threading.Thread(target=pool.close)
        closer.start()
        self.helper_refuse_after_close(pool)
        release.set()
        closer.join(TIMEOUT)
        self.assertFalse(closer.is_alive())

        # Running tasks 0 and 1 finished normally, the rest never ran
        self.assertEqual(0, handles[0].get())
        self.assertEqual(1, handles[1].get())
        for h in handles[2:]:
            self.assertTrue(h.done())
            self.assertIs(Status.FAILURE, h.wait_for(0))
            with self.assertRaises(BrokenHandle):
                h.get()
        self.assertTrue(pool.empty())

    def test_shutdown_empty_is_prompt(self) -> None:
        """Closing an idle pool returns promptly and is idempotent."""
        pool = TaskPool(4)
        with self.assert_elapsed(0, 5.0):
            pool.close()
        pool.close()
        with TaskPool(4, FinishMode.CURRENT_ONLY) as pool:
            pass
        pool.close()

    def test_submit_after_shutdown(self) -> None:
        """Submission after close() raises and does not enqueue."""
        for mode in FinishMode:
            with self.subTest(mode=mode):
                pool = TaskPool(2, mode)
                pool.close()
                with self.assertRaises(SubmitAfterShutdown):
                    pool.submit(len, (1, 2))
                with self.assertRaises(SubmitAfterShutdown):
                    pool(len, (1, 2))
                self.assertTrue(pool.empty())

    def test_submit_during_shutdown(self) -> None:
        """A running task observes SubmitAfterShutdown once close() begins."""
        pool = TaskPool(1, FinishMode.DRAIN_ALL)
        h = pool.submit(self.helper_refuse_after_close, pool)
        pool.close()
        self.assertTrue(h.done())
        self.assertGreaterEqual(h.get(), 0)
        self.assertTrue(pool.empty(), "Accepted work was drained")

    @staticmethod
    def helper_raise(klass: type, *args) -> typing.NoReturn:
        """Helper raising the requested Exception class."""
        raise klass(*args)

    def test_raises(self) -> None:
        """Raised exceptions reach get() and workers survive them?"""
        with TaskPool(1) as pool:
            f = pool.submit(self.helper_raise, ArithmeticError, "boom")
            g = pool.submit(sys.exit, 3)
            h = pool.submit(len, "abc")
            self.assertIs(Status.FAILURE, f.wait_for(TIMEOUT))
            with self.assertRaises(ArithmeticError) as context:
                f.get()
            self.assertEqual(("boom",), context.exception.args)
            with self.assertRaises(SystemExit):
                g.get()
            self.assertEqual(3, h.get(), "Worker survived both failures")

    def test_returns_not_raises_exception(self) -> None:
        """An Exception can be returned, not raised, through a Handle?"""
        with TaskPool(1) as pool:
            e = Exception("Returned")
            h = pool.submit(lambda: e)
            self.assertIs(Status.VALUE, h.wait_for(TIMEOUT))
            self.assertIs(e, h.get())

    def test_get_consumes(self) -> None:
        """A Handle hands over its outcome exactly once."""
        with TaskPool(1) as pool:
            h = pool.submit(len, (1, 2))
            self.assertEqual(2, h.get())
            with self.assertRaises(HandleConsumed):
                h.get()
            with self.assertRaises(HandleConsumed):
                h.wait_for(0)
            self.assertTrue(h.done(), "Still reports readiness")

    def test_wait_for_timeout(self) -> None:
        """Timeouts are honored and never cancel the underlying task."""
        delay = 0.1  # Impacts test runtime on the success path
        with TaskPool(1) as pool:
            with self.occupied(pool):
                h = pool.submit(len, "abcd")
                with self.assert_elapsed(0):
                    self.assertIs(Status.TIMEOUT, h.wait_for(0))
                    self.assertFalse(h.done())
                with self.assert_elapsed(delay):
                    self.assertIs(Status.TIMEOUT, h.wait_for(delay))
                with self.assert_elapsed(delay):
                    self.assertFalse(h.done(timeout=delay))
            self.assertIs(Status.VALUE, h.wait_for(TIMEOUT))
            self.assertEqual(4, h.get())

    def test_handle_outlives_pool(self) -> None:
        """Handles remain usable after their pool is closed and dropped."""
        pool = TaskPool(2)
        h = pool.submit(str, 99)
        pool.close()
        del pool
        self.assertEqual("99", h.get())

    def test_worker_names(self) -> None:
        """Workers are named after the pool."""
        with TaskPool(2, name="custom") as pool:
            h = pool.submit(lambda: threading.current_thread().name)
            self.assertIn(h.get(), ("custom-0", "custom-1"))

    def test_outcome_status(self) -> None:
        """Stored outcomes report only VALUE or FAILURE, never TIMEOUT."""
        with self.assertRaises(TypeError):
            impl.Outcome()  # type: ignore
        self.assertIs(Status.VALUE, impl.Returned(1).status)
        self.assertIs(Status.FAILURE, impl.Raised(ValueError()).status)

    def test_demos_importable(self) -> None:
        """Demo modules are part of the package and import cleanly."""
        for name in ("basic", "errors", "nested", "shutdown"):
            with self.subTest(name=name):
                module = importlib.import_module("taskpool.demo." + name)
                self.assertTrue(hasattr(module, "log"))

    def test_duplication(self) -> None:
        """Copying and pickling of TaskPools and Handles is disallowed."""
        with TaskPool(1) as pool:
            h = pool.submit(len, (1, 2, 3))
            for thing in (pool, h):
                with self.subTest(thing=type(thing).__name__):
                    with self.assertRaises(NotImplementedError):
                        copy.copy(thing)
                    with self.assertRaises(NotImplementedError):
                        copy.deepcopy(thing)
                    with self.assertRaises(NotImplementedError):
                        pickle.dumps(thing)
            self.assertEqual(3, h.get())

    def test_construction_failed(self) -> None:
        """Failing to start a worker joins those started then reports."""
        original = threading.Thread.start
        attempted = []  # type: typing.List[threading.Thread]

        def flaky_start(thread: threading.Thread) -> None:
            attempted.append(thread)
            if len(attempted) > 2:
                raise RuntimeError("can't start new thread")
            original(thread)

        with mock.patch.object(threading.Thread, "start", flaky_start):
            with self.assertLogs("taskpool.impl", level="ERROR") as logs:
                with self.assertRaises(ConstructionFailed) as context:
                    TaskPool(4)
        self.assertIsInstance(context.exception.__cause__, RuntimeError)
        self.assertIn("2 / 4 started", logs.output[0])
        self.assertEqual(3, len(attempted), "Stopped at first failure")
        for thread in attempted[:2]:
            self.assertFalse(thread.is_alive(), "Started workers joined")


if __name__ == "__main__":
    unittest.main()
