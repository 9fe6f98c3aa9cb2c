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
import typing

from omnicc.errors import InvalidSettings

from . import config  # noqa: F401
from . import run  # noqa: F401
from . import sync  # noqa: F401
from .cli import Fail, commands
from .common import (
    CommandContext,
    enable_logging,
    env_to_cli,
    global_args,
    pre_action,
)

_logger = logging.getLogger(__name__)

default_cfunc = config.check


def main(args: typing.Optional[typing.Sequence[str]] = None) -> None:
    cli = commands.assemble(arg_func=global_args).parse_args(args)
    env_to_cli(cli)
    enable_logging(cli)
    pre_action(cli)
    ctx = CommandContext(cli)
    cfunc = getattr(cli, "cfunc", default_cfunc)
    try:
        cfunc(ctx)
    except InvalidSettings as err:
        for ferr in err.errors:
            _logger.error("invalid setting: %s", ferr)
        raise Fail(f"{len(err.errors)} invalid settings") from err
    return


if __name__ == "__main__":
    main()
