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

from __future__ import annotations

import errno
import logging
import os
import subprocess
import typing

from . import service_cmds
from .errors import ApplyError
from .render import Artifact

_logger = logging.getLogger(__name__)

Runner = typing.Callable[[list[str]], typing.Any]
CommandFinder = typing.Callable[
    [str], typing.Optional[service_cmds.CommandArgs]
]


class ArtifactWriter:
    """Store rendered artifacts as files below a root directory."""

    def __init__(self, root: str) -> None:
        self.root = root

    def path(self, service: str, name: str = "") -> str:
        if name:
            return os.path.join(self.root, service, f"{name}.conf")
        return os.path.join(self.root, f"{service}.conf")

    def write(self, artifact: Artifact) -> str:
        path = self.path(artifact.service, artifact.name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tpath = f"{path}.tmp"
        with open(tpath, "wb") as fh:
            fh.write(artifact.content)
            fh.flush()
            os.fsync(fh)
        os.rename(tpath, path)
        return path

    def read(self, service: str, name: str = "") -> typing.Optional[bytes]:
        try:
            with open(self.path(service, name), "rb") as fh:
                return fh.read()
        except OSError as err:
            if getattr(err, "errno", 0) != errno.ENOENT:
                raise
        return None

    def remove(self, service: str, name: str = "") -> bool:
        try:
            os.unlink(self.path(service, name))
        except OSError as err:
            if getattr(err, "errno", 0) != errno.ENOENT:
                raise
            return False
        return True


class Reloader:
    """Tell services to pick up new artifacts by running a command."""

    def __init__(
        self,
        commands: CommandFinder = service_cmds.reload_command,
        runner: typing.Optional[Runner] = None,
    ) -> None:
        self._commands = commands
        self._runner = runner or subprocess.check_call

    def reload(self, service: str) -> bool:
        cmd = self._commands(service)
        if cmd is None:
            return False
        _logger.info("reloading %s: %s", service, " ".join(cmd))
        self._runner(list(cmd))
        return True


class Applier:
    """Write artifacts and reload the services that consume them. Every
    failure is raised as an ApplyError naming the service.
    """

    def __init__(
        self,
        writer: ArtifactWriter,
        reloader: typing.Optional[Reloader] = None,
    ) -> None:
        self.writer = writer
        self.reloader = reloader or Reloader()

    def apply(self, artifact: Artifact) -> None:
        try:
            path = self.writer.write(artifact)
        except OSError as err:
            raise ApplyError(artifact.key, err) from err
        _logger.debug("wrote %s", path)
        self._reload(artifact.service, artifact.key)

    def remove(self, service: str, name: str = "") -> None:
        key = f"{service}/{name}" if name else service
        try:
            removed = self.writer.remove(service, name)
        except OSError as err:
            raise ApplyError(key, err) from err
        if removed:
            _logger.info("removed artifact %s", key)
            self._reload(service, key)

    def _reload(self, service: str, key: str) -> None:
        try:
            self.reloader.reload(service)
        except (OSError, subprocess.CalledProcessError) as err:
            raise ApplyError(key, f"reload failed: {err}") from err
