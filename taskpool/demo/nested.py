# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Nested submissions make progress by helping via poll_one()."""
import logging
import typing

from ..impl import Handle, Status, TaskPool

log = logging.getLogger(__name__)

T = typing.TypeVar("T")


def help_until_ready(pool: TaskPool, handle: Handle[T]) -> T:
    """Run queued work on this thread until handle becomes ready."""
    while not handle.done(timeout=0.001):
        pool.poll_one()
    return handle.get()


def nested_work(pool: TaskPool, depth: int) -> int:
    """Recursively submit work until depth reached."""
    if depth <= 0:
        return 5
    child = pool.submit(nested_work, pool, depth - 1)
    return help_until_ready(pool, child)


def waiting_work(pool: TaskPool) -> Status:
    """Submit a child then wait on it without helping."""
    child = pool.submit(lambda: 5)
    status = child.wait_for(0.5)
    pool.poll_one()  # Give up waiting and run the child ourselves
    assert child.get() == 5
    return status


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)

    log.debug("Outer submits middle submits inner, each helping")
    with TaskPool(2) as pool:
        assert pool.submit(nested_work, pool, 2).get() == 5

    log.debug("Nesting deeper than the worker count still completes")
    with TaskPool(1) as pool:
        assert pool.submit(nested_work, pool, 10).get() == 5

    log.debug("Waiting without helping on a lone worker cannot progress")
    with TaskPool(1) as pool:
        assert pool.submit(waiting_work, pool).get() is Status.TIMEOUT

    log.info("nested: OK")
