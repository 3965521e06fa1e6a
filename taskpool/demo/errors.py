# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Exception handling from tasks and from the pool."""
import logging
import time

from ..impl import (
    BrokenHandle,
    FinishMode,
    HandleConsumed,
    Status,
    SubmitAfterShutdown,
    TaskPool,
)

log = logging.getLogger(__name__)


def raise_error(message: str) -> None:
    raise ValueError(message)


def length(s: str) -> int:
    return len(s)


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)

    with TaskPool(2, FinishMode.CURRENT_ONLY) as pool:
        # Exceptions in tasks propagate to the caller of get()
        future_err = pool(raise_error, "oops")
        assert future_err.wait_for(60) is Status.FAILURE
        try:
            future_err.get()
            assert False, "Should have raised ValueError"
        except ValueError as e:
            assert "oops" in str(e)

        # Handles are consumed by get()
        future_ok = pool(length, "hello")
        assert future_ok.get() == 5
        try:
            future_ok.get()
            assert False, "Should have raised HandleConsumed"
        except HandleConsumed:
            pass

        # Work still queued at shutdown may be abandoned
        stalled = [pool.submit(time.sleep, 0.2) for _ in range(4)]

    try:
        stalled[-1].get()
        log.debug("Final task happened to run before shutdown")
    except BrokenHandle:
        log.debug("Final task was abandoned at shutdown")

    # Closed pools refuse new work
    try:
        pool.submit(length, "too late")
        assert False, "Should have raised SubmitAfterShutdown"
    except SubmitAfterShutdown:
        pass

    log.info("errors: OK")
