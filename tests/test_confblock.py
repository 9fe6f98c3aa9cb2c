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

from omnicc import confblock


def test_format_value():
    assert confblock.format_value(True) == "true"
    assert confblock.format_value(False) == "false"
    assert confblock.format_value(None) == ""
    assert confblock.format_value(22) == "22"
    assert confblock.format_value(["uid", "mail"]) == "uid, mail"
    assert confblock.format_value(("cn",)) == "cn"


def test_config_block_order():
    block = confblock.ConfigBlock()
    block.set("server", "host", "example.com")
    block.set("tls", "enabled", True)
    block.set("server", "port", 636)
    block.set("server", "ca_file", None)
    assert list(block) == ["server", "tls"]
    assert len(block) == 2
    assert block["server"] == [("host", "example.com"), ("port", "636")]


def test_write_block():
    block = confblock.ConfigBlock()
    block.set("smtp", "enabled", True)
    block.set("smtp", "port", 25)
    block["extra"] = [("a", "b")]
    out = io.StringIO()
    confblock.write_block(out, block)
    assert out.getvalue() == (
        "[smtp]\n\tenabled = true\n\tport = 25\n[extra]\n\ta = b\n"
    )
    assert block.dumps() == out.getvalue().encode("utf8")


def test_newlines_are_escaped():
    block = confblock.ConfigBlock()
    block.set("app", "note", "x\n[ldap]\n\tenabled = true")
    block.set("app", "bad\nkey", "y\r\n")
    assert confblock.format_value(["a\nb"]) == "a\\nb"
    assert block.dumps() == (
        b"[app]\n"
        b"\tnote = x\\n[ldap]\\n\tenabled = true\n"
        b"\tbad\\nkey = y\\r\\n\n"
    )
