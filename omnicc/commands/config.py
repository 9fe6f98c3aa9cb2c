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
import sys

from omnicc import render
from omnicc import settings
from omnicc.errors import InvalidSettings

from .cli import Context, Fail, commands

_logger = logging.getLogger(__name__)


def _parse(ctx: Context) -> settings.SettingsDocument:
    return settings.parse_settings(ctx.settings_data, strict=ctx.cli.strict)


@commands.command(name="check")
def check(ctx: Context) -> None:
    """Validate the settings sources and report every problem found."""
    try:
        doc = _parse(ctx)
    except InvalidSettings as err:
        for ferr in err.errors:
            print(f"error: {ferr}")
        raise Fail(f"{len(err.errors)} invalid settings")
    for warning in doc.warnings:
        print(f"warning: {warning}")
    servers = doc.active_directory_servers()
    print(f"settings ok ({len(servers)} directory servers)")


@commands.command(name="print-config")
def print_config(ctx: Context) -> None:
    """Display the configuration artifacts rendered from the settings.
    Secret references are not resolved.
    """
    result = render.Renderer().render(_parse(ctx), None)
    for key in sorted(result.artifacts):
        sys.stdout.write(f"# {key}\n")
        sys.stdout.write(result.artifacts[key].content.decode("utf8"))
        sys.stdout.write("\n")
