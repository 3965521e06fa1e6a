# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Implementation of the TaskPool and related classes."""
import abc
import collections
import enum
import logging
import os
import threading
import typing

T = typing.TypeVar("T")

_LOGGER = logging.getLogger(__name__)


class ConstructionFailed(Exception):
    """
    Reports that TaskPool(...) could not start its worker threads.

    Instances have non-None __cause__ members holding the underlying error.
    Any workers started before the failure have been joined.
    """

    pass


class SubmitAfterShutdown(Exception):
    """Reports TaskPool.submit(...) was called after close() began."""

    pass


class BrokenHandle(Exception):
    """
    Reports that the task behind a Handle will never run.

    Raised by Handle.get() when FinishMode.CURRENT_ONLY shutdown
    discarded the task while it was still queued.
    """

    pass


class HandleConsumed(Exception):
    """Reports Handle.get() was called on an already-consumed Handle."""

    pass


class FinishMode(enum.Enum):
    """What TaskPool.close() does with tasks still waiting in the queue."""

    DRAIN_ALL = "drain_all"  # Run every queued task before workers exit
    CURRENT_ONLY = "current_only"  # Finish running tasks, discard the rest


class Status(enum.Enum):
    """Outcome of Handle.wait_for(...)."""

    VALUE = "value"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class Outcome(abc.ABC, typing.Generic[T]):
    """Allows Handles to track whether a value was raised or returned."""

    __slots__ = ()

    @property
    @abc.abstractmethod
    def status(self) -> Status:
        """Either Status.VALUE or Status.FAILURE."""
        raise NotImplementedError()

    @abc.abstractmethod
    def unwrap(self) -> T:
        """Raise any captured exception otherwise return some result."""
        raise NotImplementedError()


class Returned(Outcome[T]):
    """Specialization of Outcome for when a value is available."""

    __slots__ = ("_value",)

    status = Status.VALUE

    def __init__(self, value: T) -> None:
        self._value = value

    def unwrap(self) -> T:
        return self._value


class Raised(Outcome[T]):
    """Specialization of Outcome for when an exception has been raised."""

    __slots__ = ("_raised",)

    status = Status.FAILURE

    def __init__(self, raised: BaseException) -> None:
        assert isinstance(raised, BaseException), type(raised)
        self._raised = raised

    def unwrap(self) -> typing.NoReturn:
        raise self._raised


class Handle(typing.Generic[T]):
    """
    Handle instances are obtained by submitting work to a TaskPool.

    A Handle is a one-shot, single-consumer channel for one task's outcome.
    Waiting never touches the pool's lock so Handles may outlive the pool.
    Handles can be neither copied nor pickled.
    """

    __slots__ = ("_ready", "_outcome", "_consumed")

    def __init__(self) -> None:
        self._ready = threading.Event()
        self._outcome = None  # type: typing.Optional[Outcome[T]]
        self._consumed = False

    def __copy__(self) -> typing.NoReturn:
        """Disallow copying as a Handle has exactly one consumer."""
        raise NotImplementedError("Handles cannot be copied.")

    def __reduce__(self) -> typing.NoReturn:
        """Disallow pickling as a Handle has exactly one consumer."""
        raise NotImplementedError("Handles cannot be pickled.")

    def _fulfil(self, outcome: Outcome[T]) -> None:
        """Store outcome then publish readiness.  Called at most once."""
        assert not self._ready.is_set(), "Handle fulfilled twice"
        self._outcome = outcome
        self._ready.set()

    def done(self, timeout: typing.Optional[float] = 0) -> bool:
        """
        Is the outcome ready?

        Timeout is given in seconds with None meaning to block indefinitely.
        """
        return self._ready.wait(timeout)

    def wait(self) -> None:
        """Block until the outcome is ready."""
        self._ready.wait()

    def wait_for(self, timeout: float) -> Status:
        """
        Wait at most timeout seconds reporting VALUE, FAILURE, or TIMEOUT.

        A TIMEOUT never cancels the underlying task.
        Raises HandleConsumed once get() has been called.
        """
        if not self._ready.wait(timeout):
            return Status.TIMEOUT
        if self._consumed:
            raise HandleConsumed()
        assert self._outcome is not None
        return self._outcome.status

    def get(self) -> T:
        """
        Block until ready then return the value or raise the failure.

        Consuming, so a second call raises HandleConsumed.
        """
        self._ready.wait()
        if self._consumed:
            raise HandleConsumed()
        outcome, self._outcome = self._outcome, None
        self._consumed = True
        assert outcome is not None
        return outcome.unwrap()


class Task(typing.Generic[T]):
    """A nullary unit of work bound to the Handle receiving its outcome."""

    __slots__ = ("_fn", "_args", "_kwargs", "handle")

    def __init__(
        self,
        fn: typing.Callable[..., T],
        args: typing.Tuple,
        kwargs: typing.Dict[str, typing.Any],
    ) -> None:
        assert callable(fn), type(fn)
        self._fn = fn
        self._args = args
        self._kwargs = kwargs
        self.handle = Handle()  # type: Handle[T]

    def run(self) -> None:
        """Invoke fn(*args, **kwargs) once routing any outcome to handle."""
        fn, self._fn = self._fn, None
        assert fn is not None, "Task run twice"
        try:
            outcome = Returned(
                fn(*self._args, **self._kwargs)
            )  # type: Outcome[T]
        except BaseException as raised:
            outcome = Raised(raised)
        finally:
            # Drop references so arguments are reclaimed promptly
            self._args, self._kwargs = (), {}
        self.handle._fulfil(outcome)

    def abandon(self) -> None:
        """Report BrokenHandle without ever invoking fn."""
        self._fn, self._args, self._kwargs = None, (), {}
        self.handle._fulfil(Raised(BrokenHandle()))


def default_workers() -> int:
    """
    Number of CPUs usable by the current process, at least one.

    Prefers os.sched_getaffinity(0) over os.cpu_count() where available.
    """
    try:
        count = len(os.sched_getaffinity(0))  # type: typing.Optional[int]
    except AttributeError:  # Not every platform provides it
        count = os.cpu_count()
    return count if count else 1


class TaskPool:
    """
    A fixed number of worker threads executing submitted tasks in FIFO order.

    Work may be submitted from any thread, including from tasks running
    within this pool.  A task needing the outcome of work it submitted
    should call poll_one() until that Handle is ready rather than block,
    as otherwise every worker might wait on tasks nobody can run.
    """

    __slots__ = (
        "_mode",
        "_condition",
        "_tasks",
        "_shutdown",
        "_threads",
    )

    def __init__(
        self,
        workers: typing.Optional[int] = None,
        mode: FinishMode = FinishMode.DRAIN_ALL,
        name: str = "taskpool",
    ) -> None:
        """
        Start some number of workers obeying the given FinishMode.

        When not provided, workers defaults to default_workers().
        Raises ConstructionFailed when not every worker can be started.
        """
        if workers is None:
            workers = default_workers()
        assert isinstance(workers, int) and workers >= 1, workers
        assert isinstance(mode, FinishMode), type(mode)

        # One lock guards the queue, the shutdown flag, and the predicate
        self._mode = mode
        self._condition = threading.Condition(threading.Lock())
        self._tasks = collections.deque()  # type: typing.Deque[Task]
        self._shutdown = False

        self._threads = [
            threading.Thread(
                target=self._run_worker,
                name="{}-{}".format(name, index),
                daemon=True,
            )
            for index in range(workers)
        ]  # type: typing.List[threading.Thread]

        started = 0
        try:
            for thread in self._threads:
                thread.start()
                started += 1
        except Exception as e:
            _LOGGER.error(
                "Error starting workers (%d / %d started): %s",
                started,
                workers,
                e,
            )
            # Threads never started cannot be joined
            del self._threads[started:]
            self.close()
            raise ConstructionFailed() from e

        _LOGGER.debug(
            "Started %s with %d workers in %s mode", name, workers, mode.name
        )

    def __copy__(self) -> typing.NoReturn:
        """Disallow copying as workers are bound to exactly one pool."""
        raise NotImplementedError("TaskPools cannot be copied.")

    def __deepcopy__(self, _: typing.Any) -> typing.NoReturn:
        """Disallow copying as workers are bound to exactly one pool."""
        raise NotImplementedError("TaskPools cannot be copied.")

    def __reduce__(self) -> typing.NoReturn:
        """Disallow pickling as threads cannot cross process boundaries."""
        raise NotImplementedError("TaskPools cannot be pickled.")

    def __enter__(self) -> "TaskPool":
        return self

    def __exit__(self, *exc_info: typing.Any) -> None:
        self.close()

    @property
    def workers(self) -> int:
        """Number of worker threads fixed at construction."""
        return len(self._threads)

    @property
    def mode(self) -> FinishMode:
        return self._mode

    def __call__(
        self, fn: typing.Callable[..., T], /, *args, **kwargs
    ) -> Handle[T]:
        """Submit running fn(*args, **kwargs) to this TaskPool.

        Shorthand for calling submit(fn, *args, **kwargs).
        """
        return self.submit(fn, *args, **kwargs)

    def submit(
        self, fn: typing.Callable[..., T], /, *args, **kwargs
    ) -> Handle[T]:
        """Submit running fn(*args, **kwargs) returning a Handle.

        Raises SubmitAfterShutdown, enqueuing nothing, once close() began.
        """
        task = Task(fn, args, kwargs)  # type: Task[T]
        with self._condition:
            if self._shutdown:
                raise SubmitAfterShutdown()
            self._tasks.append(task)
            self._condition.notify()
        return task.handle

    def poll_one(self) -> None:
        """
        Run at most one queued task on the calling thread.

        Never waits for work to arrive, so this may be called from tasks
        inside this pool to make progress while awaiting nested work.
        Runs queued work in every FinishMode, even once close() has begun,
        so that a helping task can always finish its own children.
        """
        with self._condition:
            if not self._tasks:
                return
            task = self._tasks.popleft()
        task.run()

    def empty(self) -> bool:
        """Is the queue empty?  Advisory, as the answer may be stale."""
        with self._condition:
            return not self._tasks

    def close(self) -> None:
        """
        Stop accepting work, let workers finish per FinishMode, and join them.

        In CURRENT_ONLY mode any still-queued tasks are then abandoned so
        that their Handles report BrokenHandle.  Idempotent.
        """
        with self._condition:
            self._shutdown = True
            self._condition.notify_all()
        for thread in self._threads:
            thread.join()
        _LOGGER.debug("Joined %d workers", len(self._threads))

        # Workers are gone so the queue is no longer contended
        if self._mode is FinishMode.CURRENT_ONLY:
            with self._condition:
                abandoned, self._tasks = self._tasks, collections.deque()
            if abandoned:
                _LOGGER.debug("Abandoning %d queued tasks", len(abandoned))
            while abandoned:
                abandoned.popleft().abandon()

    def _should_exit(self) -> bool:
        """Per FinishMode, must a worker exit?  Caller must hold the lock."""
        if self._mode is FinishMode.CURRENT_ONLY:
            return self._shutdown
        return self._shutdown and not self._tasks

    def _run_worker(self) -> None:
        """Entry point for each worker thread."""
        name = threading.current_thread().name
        _LOGGER.debug("Worker %s started", name)
        try:
            while True:
                with self._condition:
                    self._condition.wait_for(
                        lambda: self._tasks or self._shutdown
                    )
                    if self._should_exit():
                        break
                    task = self._tasks.popleft()
                # Task.run() captures everything raised by client code
                task.run()
        except BaseException:
            # Only a bug within this module can arrive here.  A silently
            # dead worker would leave Handles pending forever, so abort.
            _LOGGER.critical("Worker %s failed", name, exc_info=True)
            os.abort()
        _LOGGER.debug("Worker %s exiting", name)
