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

import io
import os
import typing


class SchemeNotSupported(Exception):
    pass


class Opener(typing.Protocol):
    """Protocol for a basic opener type that takes a path-ish or uri-ish
    string and tries to open it.
    """

    def open(self, path_or_uri: str) -> typing.IO:
        """Open a specified resource by path or (pseudo) URI."""
        ...  # pragma: no cover


class FileOpener:
    """Minimal opener that only supports opening local files."""

    @staticmethod
    def open(path: str) -> typing.IO:
        if path.startswith("file:"):
            path = path[len("file:") :]
        return open(path, "rb")


class EnvOpener:
    """Opener that exposes the value of an environment variable, named in
    the form `env:NAME`, as a file-like object.
    """

    def __init__(
        self, environ: typing.Optional[typing.Mapping[str, str]] = None
    ) -> None:
        self._environ = os.environ if environ is None else environ

    def open(self, uri: str) -> typing.IO:
        if not uri.startswith("env:"):
            raise SchemeNotSupported(uri)
        name = uri[len("env:") :]
        try:
            value = self._environ[name]
        except KeyError:
            raise FileNotFoundError(f"environment variable not set: {name}")
        return io.BytesIO(value.encode("utf8"))


class FallbackOpener:
    """FallbackOpener tries each opener in turn and opens the string as a
    local path if none of them claim the scheme.
    """

    def __init__(
        self,
        openers: list[Opener],
        open_fn: typing.Optional[typing.Callable[..., typing.IO]] = None,
    ) -> None:
        self._openers = openers
        self._open_fn = open_fn or FileOpener.open

    def open(self, path_or_uri: str) -> typing.IO:
        for opener in self._openers:
            try:
                return opener.open(path_or_uri)
            except SchemeNotSupported:
                pass
        return self._open_fn(path_or_uri)


def default_opener() -> Opener:
    """Return the opener used for settings files and secret references."""
    return FallbackOpener([EnvOpener()])
