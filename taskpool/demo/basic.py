# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Basic TaskPool usage."""
import logging
import math
import typing

from ..impl import TaskPool

log = logging.getLogger(__name__)


def hypotenuse(a: int, b: int) -> float:
    return math.sqrt(a * a + b * b)


def lis(a: typing.Sequence[int]) -> int:
    """Length of the longest strictly increasing subsequence."""
    d = [1] * len(a)
    for i in range(len(a)):
        for j in range(i):
            if a[j] < a[i]:
                d[i] = max(d[i], d[j] + 1)
    return max(d)


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)

    # Create a pool with 2 workers closed on leaving the with-block
    with TaskPool(2) as pool:
        # Submit work using the explicit submit() method
        future_a = pool.submit(hypotenuse, 4, 3)
        future_b = pool.submit(lambda a, b: int(math.log2(a * a - b)), 9, 17)

        # Submit work using the __call__ shorthand
        future_c = pool(lambda: 5)
        future_d = pool(log.info, "Void function is being processed!")

        # The submitting thread may also lend a hand
        pool.poll_one()

        assert future_b.get() == 6
        assert future_c.get() == 5

    # Results remain available after the pool is closed
    assert future_a.get() == 5.0
    future_d.wait()

    v = [13, 22, 88, 323, 324, 1, 42, -4, 3, 89, 123, 3333, 8943, 999]
    with TaskPool(2) as pool:
        log.debug("Is task queue empty? %s", pool.empty())
        futures = [pool.submit(lis, v) for _ in range(4)]
        pool.poll_one()
        log.debug("Is task queue empty? %s", pool.empty())
        pool.poll_one()
    assert all(f.done() for f in futures)
    assert [f.get() for f in futures] == [7, 7, 7, 7]

    log.info("basic: OK")
