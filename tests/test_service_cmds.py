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

import omnicc.service_cmds


def test_create_command():
    cmd = omnicc.service_cmds.CommandArgs("hello")
    assert cmd.name == "hello"
    cmd2 = cmd["world"]
    assert cmd.name == "hello"
    assert list(cmd) == ["hello"]
    assert list(cmd2) == ["hello", "world"]
    assert repr(cmd2) == "CommandArgs('hello', ['world'])"


def test_global_prefix():
    # enabled
    omnicc.service_cmds.set_global_prefix(["bob"])
    try:
        cmd = omnicc.service_cmds.CommandArgs("deep")
        assert list(cmd) == ["bob", "deep"]
        assert cmd.name == "bob"
    finally:
        omnicc.service_cmds.set_global_prefix([])

    # disabled
    cmd = omnicc.service_cmds.CommandArgs("deep")
    assert list(cmd) == ["deep"]
    assert cmd.name == "deep"


def test_reload_commands():
    rc = omnicc.service_cmds.reload_command
    assert list(rc("nginx")) == ["gitlab-ctl", "hup", "nginx"]
    assert list(rc("application")) == ["gitlab-ctl", "hup", "puma"]
    assert list(rc("smtp")) == ["gitlab-ctl", "hup", "puma"]
    assert list(rc("registry")) == ["gitlab-ctl", "restart", "registry"]
    assert rc("ldap") is None
