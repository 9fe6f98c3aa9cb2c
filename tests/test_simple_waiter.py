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

import omnicc.simple_waiter


def test_generate_sleeps():
    g = omnicc.simple_waiter.generate_sleeps()
    times = [next(g) for _ in range(130)]
    assert times[0] == 1
    assert times[0:11] == [1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1]
    assert times[12] == 5
    assert all(times[x] == 5 for x in range(12, 33))
    assert times[34] == 60
    assert all(times[x] == 60 for x in range(34, 130))


def test_generate_sleeps_max_interval():
    g = omnicc.simple_waiter.generate_sleeps(3)
    times = [next(g) for _ in range(100)]
    assert times[0] == 1
    assert max(times) == 3
    assert times[-1] == 3


def test_sleeper():
    def gen():
        while True:
            yield 8

    cc = 0

    def fake_sleep(v):
        nonlocal cc
        cc += 1
        assert v == 8

    sleeper = omnicc.simple_waiter.Sleeper(times=gen())
    sleeper._sleep = fake_sleep
    sleeper.wait()
    assert cc == 1
    for _ in range(3):
        sleeper.wait()
    assert cc == 4


def test_sleeper_acted_resets():
    slept = []
    sleeper = omnicc.simple_waiter.Sleeper()
    sleeper._sleep = slept.append
    for _ in range(20):
        sleeper.wait()
    assert slept[-1] == 5
    sleeper.acted()
    sleeper.wait()
    assert slept[-1] == 1


class FakeWaiter:
    def __init__(self):
        self.waits = 0
        self.acts = 0

    def wait(self):
        self.waits += 1
        if self.waits >= 3:
            raise KeyboardInterrupt()

    def acted(self):
        self.acts += 1


def test_watch_until_interrupted():
    results = iter([True, False, True])
    waiter = FakeWaiter()
    omnicc.simple_waiter.watch(waiter, lambda: next(results))
    assert waiter.waits == 3
    assert waiter.acts == 2


def test_watch_should_stop():
    calls = []
    waiter = FakeWaiter()
    omnicc.simple_waiter.watch(
        waiter, lambda: calls.append(1) or False, lambda: len(calls) >= 2
    )
    assert len(calls) == 2
    assert waiter.waits == 1


def test_watch_missing_file():
    def _func():
        raise FileNotFoundError("gone")

    waiter = FakeWaiter()
    omnicc.simple_waiter.watch(waiter, _func)
    assert waiter.waits == 3
    assert waiter.acts == 0
