# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Blocking until a started container is ready.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from ..exceptions import PreconditionFailedError, WaitTimeoutError

logger = logging.getLogger(__name__)

# How long to wait at most if no (positive) maximum is given, in ms
DEFAULT_MAX_WAIT = 10 * 1000

# How long to wait between two polls, in ms
WAIT_RETRY_WAIT = 500


class WaitChecker(ABC):
    """
    A readiness probe polled until it succeeds.
    """

    @abstractmethod
    def check(self) -> bool:
        """Return True once the condition is met."""

    def clean_up(self):
        """Release resources held by the checker. Called exactly once per wait."""

    @property
    def log_label(self) -> str:
        return self.__class__.__name__


class Precondition(ABC):
    """
    Condition which must hold during the whole wait, e.g. the container still running.
    """

    @abstractmethod
    def is_ok(self) -> bool:
        """False aborts the wait."""

    def clean_up(self):
        """Called once after the wait ended."""


def sleep(millis: int):
    """
    Sleep for the given number of milliseconds.
    """
    time.sleep(millis / 1000.0)


def wait(max_wait: int, checkers: List[WaitChecker],
         precondition: Optional[Precondition] = None) -> int:
    """
    Poll the checkers until one succeeds.

    With no checkers this only sleeps for max_wait ms (DEFAULT_MAX_WAIT if not positive).

    :param max_wait: Maximum time to wait in ms. DEFAULT_MAX_WAIT if not positive.
    :param checkers: Probes, polled in order every WAIT_RETRY_WAIT ms.
    :param precondition: Checked before every poll.
    :return: Milliseconds waited.
    :raises WaitTimeoutError: If no checker succeeded in time.
    :raises PreconditionFailedError: If the precondition stopped holding.
    """
    limit = max_wait if max_wait > 0 else DEFAULT_MAX_WAIT
    start = time.monotonic()

    if not checkers:
        sleep(limit)
        return _delta(start)

    try:
        while True:
            if precondition is not None and not precondition.is_ok():
                raise PreconditionFailedError("Precondition failed", _delta(start))
            if _check(checkers):
                return _delta(start)
            sleep(WAIT_RETRY_WAIT)
            if _delta(start) >= limit:
                break
        raise WaitTimeoutError("No checker finished successfully", _delta(start))
    finally:
        _clean_up(checkers)
        if precondition is not None:
            precondition.clean_up()


def _check(checkers: List[WaitChecker]) -> bool:
    for checker in checkers:
        if checker.check():
            return True
    return False


def _clean_up(checkers: List[WaitChecker]):
    for checker in checkers:
        try:
            checker.clean_up()
        except Exception as e:
            logger.warning("Cleanup of %s failed: %s", checker.log_label, e)


def _delta(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
