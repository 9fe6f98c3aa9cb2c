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

from collections import namedtuple
import argparse
import importlib
import inspect
import logging
import typing

from omnicc import apply
from omnicc import credentials
from omnicc import identity
from omnicc import opener
from omnicc import reconcile
from omnicc import scheduler
from omnicc import simple_waiter

_logger = logging.getLogger(__name__)


class Fail(ValueError):
    pass


class Parser(typing.Protocol):
    """Minimal protocol for wrapping argument parser or similar."""

    def set_defaults(self, **kwargs: typing.Any) -> None:
        """Set a default value for an argument parser."""

    def add_argument(
        self, *args: typing.Any, **kwargs: typing.Any
    ) -> typing.Any:
        """Add an argument to be parsed."""


Command = namedtuple("Command", "name cmd_func arg_func cmd_help")


def get_help(cmd: Command) -> str:
    if cmd.cmd_help is not None:
        return cmd.cmd_help
    if cmd.cmd_func.__doc__:
        return cmd.cmd_func.__doc__
    return ""


def add_command(subparsers: typing.Any, cmd: Command) -> None:
    subparser = subparsers.add_parser(cmd.name, help=get_help(cmd))
    subparser.set_defaults(cfunc=cmd.cmd_func)
    if cmd.arg_func is not None:
        cmd.arg_func(subparser)


class CommandBuilder:
    def __init__(self):
        self._commands = []
        self._names = set()

    def command(self, name, arg_func=None, cmd_help=None):
        if name in self._names:
            raise ValueError(f"{name} already in use")
        self._names.add(name)

        def _wrapper(f):
            self._commands.append(
                Command(
                    name=name, cmd_func=f, arg_func=arg_func, cmd_help=cmd_help
                )
            )
            return f

        return _wrapper

    def assemble(
        self, arg_func: typing.Optional[typing.Callable] = None
    ) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(prog="omnicc")
        if arg_func is not None:
            arg_func(parser)
        subparsers = parser.add_subparsers()
        for cmd in self._commands:
            add_command(subparsers, cmd)
        return parser

    def dict(self) -> dict[str, Command]:
        """Return a dict mapping command names to Command object."""
        return {c.name: c for c in self._commands}

    def include(
        self, modname: str, *, package: str = "", check: bool = True
    ) -> None:
        """Import a python module to add commands to this command builder.
        If check is true and no new commands are added by the import, raise an
        error.
        """
        if modname.startswith(".") and not package:
            package = "omnicc.commands"
        mod = importlib.import_module(modname, package=package)
        if not check:
            return
        loaded_fns = {c.cmd_func for c in self._commands}
        mod_fns = {fn for _, fn in inspect.getmembers(mod, inspect.isfunction)}
        if not mod_fns.intersection(loaded_fns):
            raise Fail(f"import from {modname} did not add any new commands")


class Context(typing.Protocol):
    """Protocol type for CLI Context.
    Used to share simple, common state, derived from the CLI, across individual
    command functions.
    """

    @property
    def cli(self) -> argparse.Namespace:
        """Return a parsed command line namespace object."""

    @property
    def settings_data(self) -> dict[str, typing.Any]:
        """Return the merged flat settings read from the config sources."""

    def read_settings(self) -> dict[str, typing.Any]:
        """Read the settings sources again, bypassing any cached copy."""

    @property
    def opener(self) -> opener.Opener:
        """Return an appropriate opener object for this instance."""

    @property
    def identity_store(self) -> identity.IdentityStore:
        """Return the store holding local identity records."""


def best_waiter(
    max_interval: typing.Optional[int] = None,
) -> simple_waiter.Waiter:
    """Fetch the best waiter type for the watching commands."""
    if max_interval:
        return simple_waiter.Sleeper(max_interval=max_interval)
    return simple_waiter.Sleeper()


def sync_scheduler(ctx: Context) -> scheduler.SyncScheduler:
    return scheduler.SyncScheduler(
        ctx.identity_store,
        resolver=credentials.SecretResolver(ctx.opener),
        job_timeout=ctx.cli.sync_job_timeout,
    )


def reconciler(
    ctx: Context, sched: typing.Optional[scheduler.SyncScheduler] = None
) -> reconcile.Reconciler:
    applier = apply.Applier(apply.ArtifactWriter(ctx.cli.artifact_root))
    return reconcile.Reconciler(
        applier,
        resolver=credentials.SecretResolver(ctx.opener),
        scheduler=sched,
        strict=ctx.cli.strict,
    )


commands = CommandBuilder()
