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
import json
import logging
import os
import typing

from omnicc import identity
from omnicc import opener
from omnicc import scheduler
from omnicc import service_cmds
from omnicc import sources

from .cli import Parser

DEFAULT_CONFIG = "/etc/omnicc/gitlab.json"
DEFAULT_ARTIFACT_ROOT = "/etc/omnicc/rendered"
DEFAULT_IDENTITY_STORE = "/var/lib/omnicc/identities.json"

_TRUE_VALUES = ("1", "yes", "true", "on")


class CommandContext:
    """CLI Context for standard omnicc commands."""

    def __init__(self, cli_args: argparse.Namespace):
        self._cli = cli_args
        self._data: typing.Optional[dict[str, typing.Any]] = None
        self._opener: typing.Optional[opener.Opener] = None
        self._store: typing.Optional[identity.IdentityStore] = None

    @property
    def cli(self) -> argparse.Namespace:
        return self._cli

    @property
    def settings_data(self) -> dict[str, typing.Any]:
        if self._data is None:
            self._data = self.read_settings()
        return self._data

    def read_settings(self) -> dict[str, typing.Any]:
        """Read the settings sources again, bypassing the cached copy."""
        cfgs = self.cli.config or [DEFAULT_CONFIG]
        return sources.read_settings_files(cfgs, opener=self.opener)

    @property
    def opener(self) -> opener.Opener:
        if self._opener is None:
            self._opener = opener.default_opener()
        return self._opener

    @property
    def identity_store(self) -> identity.IdentityStore:
        if self._store is None:
            path = self.cli.identity_store or DEFAULT_IDENTITY_STORE
            self._store = identity.JSONIdentityStore(path)
        return self._store


def split_entries(value: str) -> list[str]:
    """Split a env var up into separate strings. The string can be
    an "old school" colon seperated list of values (like PATH).
    Or, it can be JSON-formatted if it starts and ends with square
    brackets ('[...]'). Strings are the only permitted type within
    this JSON-formatted list.
    """
    out: list[str] = []
    if not isinstance(value, str):
        raise ValueError(value)
    if not value:
        return out
    v = value.rstrip(None)  # permit trailing whitespace (trailing only!)
    if v[0] == "[" and v[-1] == "]":
        for item in json.loads(v):
            if not isinstance(item, str):
                raise ValueError("Variable JSON must be a list of strings")
            out.append(item)
    else:
        for part in value.split(":"):
            out.append(part)
    return out


def env_flag(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def from_env(
    ns: argparse.Namespace,
    var: str,
    ename: str,
    default: typing.Any = None,
    convert_env: typing.Optional[typing.Callable] = None,
    convert_value: typing.Optional[typing.Callable] = str,
) -> None:
    """Bind an environment variable to a command line option. This allows
    certain cli options to be set from env vars if the cli option is
    not directly provided.
    """
    value = getattr(ns, var, None)
    if not value:
        value = os.environ.get(ename, "")
        if convert_env is not None:
            value = convert_env(value)
    if convert_value is not None:
        value = convert_value(value)
    if not value:
        value = default
    if value:
        setattr(ns, var, value)


def env_to_cli(cli: argparse.Namespace) -> None:
    """Configure the omnicc default command line option to environment
    variable mappings.
    """
    from_env(
        cli,
        "config",
        "OMNICC_CONFIG",
        convert_env=split_entries,
        convert_value=None,
        default=[DEFAULT_CONFIG],
    )
    from_env(
        cli,
        "strict",
        "OMNICC_STRICT",
        convert_env=env_flag,
        convert_value=None,
    )
    from_env(
        cli,
        "artifact_root",
        "OMNICC_ARTIFACT_ROOT",
        default=DEFAULT_ARTIFACT_ROOT,
    )
    from_env(
        cli,
        "identity_store",
        "OMNICC_IDENTITY_STORE",
        default=DEFAULT_IDENTITY_STORE,
    )


def pre_action(cli: argparse.Namespace) -> None:
    """Handle options that change global behavior before the target
    action of the command is performed.
    """
    if cli.command_prefix:
        service_cmds.set_global_prefix([cli.command_prefix])


def enable_logging(cli: argparse.Namespace) -> None:
    """Configure omnicc command line logging."""
    level = logging.DEBUG if cli.debug else logging.INFO
    logger = logging.getLogger()
    logger.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("{asctime}: {levelname}: {message}", style="{")
    )
    handler.setLevel(level)
    logger.addHandler(handler)


def global_args(parser: Parser) -> None:
    """Configure omnicc default global command line arguments."""
    parser.add_argument(
        "--config",
        action="append",
        help=(
            "Specify a settings source; later sources override earlier ones"
            " (can also be set in the environment by OMNICC_CONFIG)."
        ),
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help=(
            "Reject unknown settings instead of passing them through"
            " (can also be set in the environment by OMNICC_STRICT)."
        ),
    )
    parser.add_argument(
        "--artifact-root",
        help=(
            "Directory that receives rendered service configuration"
            " (can also be set in the environment by OMNICC_ARTIFACT_ROOT)."
        ),
    )
    parser.add_argument(
        "--identity-store",
        help=(
            "Path to the JSON file holding local identity records"
            " (can also be set in the environment by OMNICC_IDENTITY_STORE)."
        ),
    )
    parser.add_argument(
        "--command-prefix",
        help="Wrap service reload commands within a supplied command prefix",
    )
    parser.add_argument(
        "--sync-job-timeout",
        type=float,
        default=scheduler.DEFAULT_JOB_TIMEOUT,
        help="Maximum run time of one directory sync job, in seconds.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug level logging of omnicc.",
    )
