#
# omnicc: an omnibus configuration reconciliation tool
# Copyright (C) 2026  The omnicc Authors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>
#

import logging
import time
import typing

_logger = logging.getLogger(__name__)

DEFAULT_MAX_INTERVAL = 60


def generate_sleeps(
    max_interval: int = DEFAULT_MAX_INTERVAL,
) -> typing.Iterator[int]:
    """Generate sleep times starting with short sleeps and then getting
    longer, up to max_interval. Settings tend to change in bursts while an
    operator is editing them and rarely otherwise.
    """
    total = 0
    while True:
        if total > 120:
            val = max_interval
        elif total > 10:
            val = min(5, max_interval)
        else:
            val = 1
        yield val
        total += val


class Sleeper:
    """It waits only by sleeping. Nothing fancy."""

    def __init__(
        self,
        times: typing.Optional[typing.Iterator[int]] = None,
        max_interval: int = DEFAULT_MAX_INTERVAL,
    ) -> None:
        self._max_interval = max_interval
        if times is None:
            times = generate_sleeps(max_interval)
        self._times = times
        self._sleep = time.sleep

    def wait(self) -> None:
        self._sleep(next(self._times))

    def acted(self) -> None:
        """Inform the sleeper the caller reacted to a change and
        the sleeps should be reset.
        """
        self._times = generate_sleeps(self._max_interval)


class Waiter(typing.Protocol):
    """Waiter protocol - interfaces common to all waiters."""

    def wait(self) -> None:
        """Pause execution for a time."""
        ...  # pragma: no cover

    def acted(self) -> None:
        """Inform that waiter that changes were made."""
        ...  # pragma: no cover


def watch(
    waiter: Waiter,
    func: typing.Callable[[], bool],
    should_stop: typing.Optional[typing.Callable[[], bool]] = None,
) -> None:
    """A very simple "event loop" that calls `func` and then waits. `func`
    returns true when it changed something, which resets the waiter to its
    short sleeps. The loop ends on KeyboardInterrupt or once `should_stop`
    returns true.
    """
    while True:
        try:
            updated = func()
        except FileNotFoundError as err:
            _logger.warning("settings not available: %s", err)
            updated = False
        if should_stop and should_stop():
            return
        try:
            if updated:
                waiter.acted()
            waiter.wait()
        except KeyboardInterrupt:
            return
