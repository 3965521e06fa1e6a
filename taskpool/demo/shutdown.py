# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Draining versus discarding queued work at shutdown."""
import logging
import time

from ..impl import BrokenHandle, FinishMode, TaskPool

log = logging.getLogger(__name__)


def slow_square(x: int) -> int:
    time.sleep(0.01)
    return x * x


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)

    # DRAIN_ALL runs everything queued before close() returns
    pool = TaskPool(2, FinishMode.DRAIN_ALL)
    futures = [pool.submit(slow_square, i) for i in range(100)]
    pool.close()
    assert [f.get() for f in futures] == [i * i for i in range(100)]

    # CURRENT_ONLY finishes running work and abandons the remainder
    pool = TaskPool(2, FinishMode.CURRENT_ONLY)
    futures = [pool.submit(slow_square, i) for i in range(100)]
    pool.close()
    ran = broken = 0
    for i, f in enumerate(futures):
        try:
            assert f.get() == i * i
            ran += 1
        except BrokenHandle:
            broken += 1
    log.debug("Of %d tasks %d ran and %d were abandoned", 100, ran, broken)
    assert ran + broken == 100 and broken > 0

    log.info("shutdown: OK")
