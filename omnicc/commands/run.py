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

import argparse
import functools
import logging
import typing

from omnicc import reconcile
from omnicc.errors import InvalidSettings
from omnicc.simple_waiter import watch

from .cli import Context, Fail, best_waiter, commands, reconciler
from .cli import sync_scheduler

_logger = logging.getLogger(__name__)


def _interval_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--interval",
        type=int,
        help="Maximum number of seconds between reconciliation passes.",
    )


def _reconcile_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--watch",
        action="store_true",
        help="If set, keep reconciling the settings on an interval.",
    )
    _interval_arg(parser)


def report(result: reconcile.PassResult) -> None:
    print(f"status: {result.status.value}")
    for key in sorted(result.services):
        line = f"  {key}: {result.services[key]}"
        if key in result.errors:
            line += f" ({result.errors[key]})"
        print(line)
    for warning in result.warnings:
        print(f"warning: {warning}")


def _pass(ctx: Context, rec: reconcile.Reconciler) -> bool:
    """Run one pass as part of a watch loop. Unreadable or invalid settings
    are logged and the previously applied configuration stays in place.
    """
    try:
        data = ctx.read_settings()
    except (OSError, ValueError) as err:
        _logger.error("unable to read settings: %s", err)
        return False
    try:
        result = rec.reconcile(data)
    except InvalidSettings as err:
        _logger.error("%s", err)
        for ferr in err.errors:
            _logger.error("  %s", ferr)
        return False
    report(result)
    return result.status is reconcile.PassStatus.APPLIED


def _step(
    ctx: Context, rec: reconcile.Reconciler
) -> typing.Callable[[], bool]:
    return functools.partial(_pass, ctx, rec)


@commands.command(name="reconcile", arg_func=_reconcile_args)
def reconcile_settings(ctx: Context) -> None:
    """Render the settings and apply every changed artifact."""
    rec = reconciler(ctx)
    if ctx.cli.watch:
        _logger.info("will watch settings sources")
        watch(best_waiter(ctx.cli.interval), _step(ctx, rec))
        return
    result = rec.reconcile(ctx.settings_data)
    report(result)
    if result.status is reconcile.PassStatus.FAILED:
        failed = ", ".join(sorted(result.errors))
        raise Fail(f"reconciliation failed for: {failed}")


@commands.command(name="serve", arg_func=_interval_arg)
def serve(ctx: Context) -> None:
    """Reconcile the settings, run the directory sync schedule and keep
    reconciling until interrupted.
    """
    sched = sync_scheduler(ctx)
    rec = reconciler(ctx, sched)
    report(rec.reconcile(ctx.settings_data))
    sched.start()
    try:
        watch(best_waiter(ctx.cli.interval), _step(ctx, rec))
    finally:
        sched.shutdown()
