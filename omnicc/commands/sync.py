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
import logging

from omnicc import render
from omnicc import settings
from omnicc.ldapsync import JobKind, Outcome, SyncJobRecord

from .cli import Context, Fail, commands, sync_scheduler

_logger = logging.getLogger(__name__)


def _sync_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "server",
        help="Name of the directory server to synchronise.",
    )
    parser.add_argument(
        "--kind",
        choices=[k.value for k in JobKind],
        default=JobKind.FULL.value,
        help="Kind of sync job to run (default: full).",
    )


def print_record(record: SyncJobRecord) -> None:
    assert record.outcome is not None
    print(
        f"{record.kind.value} sync of {record.directory_server_name}:"
        f" {record.outcome.value}"
        f" (users={record.users_synced} groups={record.groups_synced})"
    )
    if record.error_detail:
        print(f"  {record.error_detail}")
    for eerr in record.entry_errors:
        print(f"  {eerr.dn}: {eerr.message}")


@commands.command(name="sync", arg_func=_sync_args)
def sync(ctx: Context) -> None:
    """Run one directory sync job now."""
    doc = settings.parse_settings(ctx.settings_data, strict=ctx.cli.strict)
    if ctx.cli.server not in doc.active_directory_servers():
        raise Fail(f"no active directory server named {ctx.cli.server}")
    rendered = render.Renderer().render(doc, None)
    sched = sync_scheduler(ctx)
    sched.configure(rendered.descriptors, doc.sync_schedule)
    record = sched.run_job(ctx.cli.server, JobKind(ctx.cli.kind))
    assert isinstance(record, SyncJobRecord)
    print_record(record)
    if record.outcome is Outcome.FAILED:
        raise Fail(f"sync of {ctx.cli.server} failed")
