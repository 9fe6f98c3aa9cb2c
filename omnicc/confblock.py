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
import typing

Section = list[tuple[str, str]]


def _escape(text: str) -> str:
    # one key per line, a value may not start a new line or section
    return text.replace("\r", "\\r").replace("\n", "\\n")


def format_value(value: typing.Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    return _escape(str(value))


class ConfigBlock:
    """An ordered set of named sections holding key/value pairs.
    Sections and keys keep insertion order so output is deterministic
    for the same sequence of calls.
    """

    def __init__(self) -> None:
        self._data: dict[str, Section] = {}

    def __getitem__(self, name: str) -> Section:
        return self._data[name]

    def __setitem__(self, name: str, value: Section) -> None:
        self._data[name] = value

    def __iter__(self) -> typing.Iterator[str]:
        return iter(self._data.keys())

    def __len__(self) -> int:
        return len(self._data)

    def section(self, name: str) -> Section:
        return self._data.setdefault(name, [])

    def set(self, section: str, key: str, value: typing.Any) -> None:
        """Set a value, skipping unset (None) values entirely."""
        if value is None:
            return
        self.section(section).append((_escape(key), format_value(value)))

    def dumps(self) -> bytes:
        out = io.StringIO()
        write_block(out, self)
        return out.getvalue().encode("utf8")


def write_block(out: typing.IO, conf: ConfigBlock) -> None:
    """Write the config block in an ini-like format to `out`."""
    for sname in conf:
        out.write(str("[{}]\n".format(sname)))
        for skey, sval in conf[sname]:
            out.write(str(f"\t{skey} = {sval}\n"))
