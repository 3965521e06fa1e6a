# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""
A fixed-size thread pool with one-shot result Handles and help-mode polling.

This TaskPool is similar in spirit to concurrent.futures.ThreadPoolExecutor
with a few differences:

 * First, the number of worker threads is fixed at construction and all
   workers are started eagerly.  Failing to start any is reported at once.
 * Second, work is "nestable" in that tasks may submit further tasks and
   then call TaskPool.poll_one() to run queued work on their own stack
   rather than deadlock with every worker awaiting every other.
 * Third, poll_one() never waits for work, so it is safe from any thread.
 * Fourth, shutdown either drains all queued work or finishes only work
   already running, in which case abandoned Handles raise BrokenHandle.
 * Lastly, Handles are single-consumer: get() hands over the outcome once.

Implementation passes both PEP 8 (per flake8) and type-hinting (per mypy).
"""
from .impl import (
    BrokenHandle,
    ConstructionFailed,
    FinishMode,
    Handle,
    HandleConsumed,
    Status,
    SubmitAfterShutdown,
    TaskPool,
)

__all__ = [
    "BrokenHandle",
    "ConstructionFailed",
    "FinishMode",
    "Handle",
    "HandleConsumed",
    "Status",
    "SubmitAfterShutdown",
    "TaskPool",
]
