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

import ssl

import ldap3
import pytest
from ldap3.core.exceptions import LDAPBindError

from omnicc import directory
from omnicc.credentials import ResolvedSecret
from omnicc.errors import DirectoryConnectionError, DirectorySyncError
from omnicc.settings import DirectoryServerConfig, Encryption

BASE = "ou=users,dc=example,dc=com"
GROUPS = "ou=groups,dc=example,dc=com"
BIND_DN = "uid=gitlab,ou=services,dc=example,dc=com"


def _server(**kwargs):
    kwargs.setdefault("name", "main")
    kwargs.setdefault("host", "ldap.example.com")
    kwargs.setdefault("base_dn", BASE)
    return DirectoryServerConfig(**kwargs)


class MockClient(directory.LDAPDirectoryClient):
    client_strategy = ldap3.MOCK_SYNC
    page_size = 2

    def _connection(self, server):
        conn = super()._connection(server)
        conn.strategy.add_entry(BIND_DN, {"userPassword": "pw"})
        for i in range(5):
            conn.strategy.add_entry(
                f"uid=user{i},{BASE}",
                {
                    "objectClass": ["inetOrgPerson"],
                    "uid": f"user{i}",
                    "mail": f"user{i}@example.com",
                    "cn": f"User {i}",
                },
            )
        conn.strategy.add_entry(
            f"cn=devs,{GROUPS}",
            {
                "objectClass": ["groupOfNames"],
                "cn": "devs",
                "member": [f"uid=user0,{BASE}", f"uid=user1,{BASE}"],
            },
        )
        return conn


def test_entry_load():
    entry = directory.DirectoryEntry.load(
        "uid=a,dc=x",
        {"UID": "a", "mail": [b"a@x.com", ""], "cn": None, "sn": []},
    )
    assert entry.values("uid") == ["a"]
    assert entry.values("Mail") == ["a@x.com"]
    assert entry.values("cn") == []
    assert entry.first(["sn", "mail", "uid"]) == "a@x.com"
    assert entry.first(["givenName"]) is None


def test_user_filter():
    assert directory.user_filter(_server()) == "(uid=*)"
    srv = _server(user_filter="memberOf=cn=staff,dc=example,dc=com")
    assert directory.user_filter(srv) == (
        "(&(uid=*)(memberOf=cn=staff,dc=example,dc=com))"
    )
    srv = _server(uid_attribute="sAMAccountName", active_directory=True)
    assert directory.user_filter(srv) == (
        "(&(sAMAccountName=*)(!{}))".format(directory.AD_DISABLED_FILTER)
    )


def test_user_filter_keeps_disabled_without_ad():
    srv = _server(uid_attribute="sAMAccountName", active_directory=False)
    assert directory.user_filter(srv) == "(sAMAccountName=*)"
    assert directory.AD_DISABLED_FILTER not in directory.user_filter(srv)


def test_tls_config_plain():
    assert directory._tls_config(_server()) is None


def test_tls_config_no_verify():
    srv = _server(encryption=Encryption.SIMPLE_TLS, verify_certificates=False)
    tls = directory._tls_config(srv)
    assert tls.validate == ssl.CERT_NONE


def test_tls_config_ca_file(tmp_path):
    ca = tmp_path / "ca.pem"
    ca.write_text("-----BEGIN CERTIFICATE-----\n")
    srv = _server(encryption=Encryption.START_TLS, ca_file=str(ca))
    tls = directory._tls_config(srv)
    assert tls.validate == ssl.CERT_REQUIRED
    assert tls.ca_certs_file == str(ca)


def test_unreadable_ca_file_fails_before_connecting(tmp_path):
    ca = str(tmp_path / "missing-ca.pem")
    srv = _server(
        encryption=Encryption.SIMPLE_TLS,
        port=636,
        verify_certificates=True,
        ca_file=ca,
    )
    client = directory.LDAPDirectoryClient(srv, ResolvedSecret("pw"))
    with pytest.raises(DirectoryConnectionError) as e:
        client.connect()
    assert ca in str(e.value)


def test_search_requires_connection():
    client = directory.LDAPDirectoryClient(_server())
    with pytest.raises(DirectorySyncError):
        list(client.users())


def test_mock_directory_users_and_groups():
    srv = _server(bind_dn=BIND_DN, group_base_dn=GROUPS)
    with MockClient(srv, ResolvedSecret("pw")) as client:
        users = sorted(client.users(), key=lambda e: e.dn)
        assert [u.first(["uid"]) for u in users] == [
            f"user{i}" for i in range(5)
        ]
        assert users[0].first(["mail"]) == "user0@example.com"
        groups = list(client.groups())
        assert len(groups) == 1
        assert groups[0].first(["cn"]) == "devs"
        assert len(groups[0].values("member")) == 2


def test_mock_directory_bad_password():
    srv = _server(bind_dn=BIND_DN)
    client = MockClient(srv, ResolvedSecret("wrong"))
    with pytest.raises(DirectoryConnectionError):
        client.connect()


def test_no_group_base():
    srv = _server(bind_dn=BIND_DN)
    with MockClient(srv, ResolvedSecret("pw")) as client:
        assert list(client.groups()) == []


class FakeConnection:
    def __init__(self, bind_error=None):
        self.bind_error = bind_error
        self.result = {"description": "invalidCredentials"}
        self.unbound = False

    def open(self):
        pass

    def start_tls(self):
        pass

    def bind(self):
        if self.bind_error:
            raise self.bind_error
        return False

    def unbind(self):
        self.unbound = True


class FakeConnectionClient(directory.LDAPDirectoryClient):
    def __init__(self, srv, conn):
        super().__init__(srv, ResolvedSecret("pw"))
        self.fake = conn

    def _connection(self, server):
        return self.fake


@pytest.mark.parametrize(
    "bind_error",
    [LDAPBindError("bad creds"), None],
)
def test_failed_bind_unbinds(bind_error):
    conn = FakeConnection(bind_error)
    srv = _server(bind_dn=BIND_DN, encryption=Encryption.START_TLS)
    client = FakeConnectionClient(srv, conn)
    with pytest.raises(DirectoryConnectionError):
        client.connect()
    assert conn.unbound
    with pytest.raises(DirectorySyncError):
        list(client.users())
