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
"""Directory (LDAP) access, built on the ldap3 client library."""

from __future__ import annotations

import dataclasses
import logging
import ssl
import typing

import ldap3  # type: ignore[import]
from ldap3.core.exceptions import LDAPException  # type: ignore[import]

from .credentials import ResolvedSecret
from .errors import DirectoryConnectionError, DirectorySyncError
from .settings import DirectoryServerConfig, Encryption

_logger = logging.getLogger(__name__)

# matches accounts with the ACCOUNTDISABLE bit set in userAccountControl
AD_DISABLED_FILTER = "(userAccountControl:1.2.840.113556.1.4.803:=2)"

GROUP_FILTER = (
    "(|(objectClass=groupOfNames)(objectClass=groupOfUniqueNames)"
    "(objectClass=posixGroup)(objectClass=group))"
)
GROUP_ATTRIBUTES = ["cn", "member", "uniqueMember", "memberUid"]


@dataclasses.dataclass(frozen=True)
class DirectoryEntry:
    """A search result entry. Attribute names are stored lower-cased and
    every value is a list of strings.
    """

    dn: str
    attributes: typing.Mapping[str, list[str]]

    @classmethod
    def load(
        cls, dn: str, attrs: typing.Mapping[str, typing.Any]
    ) -> DirectoryEntry:
        out: dict[str, list[str]] = {}
        for key, value in attrs.items():
            if value is None:
                continue
            if not isinstance(value, (list, tuple)):
                value = [value]
            out[key.lower()] = [_text(v) for v in value if v not in ("", None)]
        return cls(dn=dn, attributes=out)

    def values(self, name: str) -> list[str]:
        return list(self.attributes.get(name.lower(), []))

    def first(self, names: typing.Iterable[str]) -> typing.Optional[str]:
        """Return the first value of the first attribute present."""
        for name in names:
            vals = self.values(name)
            if vals:
                return vals[0]
        return None


def _text(value: typing.Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf8", errors="replace")
    return str(value)


class DirectoryClient(typing.Protocol):
    """Protocol for a connected, bound directory client."""

    def users(self) -> typing.Iterator[DirectoryEntry]:
        """Iterate over user entries."""
        ...  # pragma: no cover

    def groups(self) -> typing.Iterator[DirectoryEntry]:
        """Iterate over group entries."""
        ...  # pragma: no cover

    def close(self) -> None:
        """Release the connection."""
        ...  # pragma: no cover


ClientFactory = typing.Callable[
    [DirectoryServerConfig, typing.Optional[ResolvedSecret]], DirectoryClient
]


def user_filter(server: DirectoryServerConfig) -> str:
    parts = [f"({server.uid_attribute}=*)"]
    if server.user_filter:
        flt = server.user_filter.strip()
        if not flt.startswith("("):
            flt = f"({flt})"
        parts.append(flt)
    if server.active_directory:
        parts.append(f"(!{AD_DISABLED_FILTER})")
    if len(parts) == 1:
        return parts[0]
    return "(&{})".format("".join(parts))


def _tls_config(server: DirectoryServerConfig) -> typing.Optional[ldap3.Tls]:
    if not server.uses_tls:
        return None
    if not server.verify_certificates:
        return ldap3.Tls(validate=ssl.CERT_NONE)
    if server.ca_file:
        try:
            with open(server.ca_file, "rb") as fh:
                fh.read(1)
        except OSError as err:
            raise DirectoryConnectionError(
                f"CA certificate {server.ca_file} is not readable:"
                f" {err.strerror or err}"
            )
    # without a ca_file the system trust store is used
    return ldap3.Tls(validate=ssl.CERT_REQUIRED, ca_certs_file=server.ca_file)


class LDAPDirectoryClient:
    """Directory client for a single server. Connecting binds with the
    resolved credential. Use as a context manager to unbind on exit.
    """

    page_size = 500
    client_strategy = ldap3.SYNC

    def __init__(
        self,
        server: DirectoryServerConfig,
        secret: typing.Optional[ResolvedSecret] = None,
    ) -> None:
        self.server = server
        self._secret = secret
        self._conn: typing.Optional[ldap3.Connection] = None

    def connect(self) -> None:
        srv = self.server
        _logger.info(
            "connecting to directory %s at %s:%s (%s)",
            srv.name,
            srv.host,
            srv.port,
            srv.encryption.value,
        )
        try:
            tls = _tls_config(srv)
            server = ldap3.Server(
                srv.host,
                port=srv.port,
                use_ssl=srv.encryption is Encryption.SIMPLE_TLS,
                tls=tls,
                get_info=ldap3.NONE,
                connect_timeout=srv.timeout_seconds,
            )
            conn = self._connection(server)
            conn.open()
        except LDAPException as err:
            raise DirectoryConnectionError(
                f"connection to {srv.name} failed: {err}"
            ) from err
        self._conn = conn
        try:
            self._bind(conn)
        except DirectoryConnectionError:
            self.close()
            raise

    def _bind(self, conn: ldap3.Connection) -> None:
        srv = self.server
        try:
            if srv.encryption is Encryption.START_TLS:
                conn.start_tls()
            if not conn.bind():
                raise DirectoryConnectionError(
                    f"bind to {srv.name} rejected: {conn.result}"
                )
        except LDAPException as err:
            raise DirectoryConnectionError(
                f"connection to {srv.name} failed: {err}"
            ) from err

    def _connection(self, server: ldap3.Server) -> ldap3.Connection:
        srv = self.server
        return ldap3.Connection(
            server,
            user=srv.bind_dn or None,
            password=self._secret.reveal() if self._secret else None,
            client_strategy=self.client_strategy,
            receive_timeout=srv.timeout_seconds,
            read_only=True,
            raise_exceptions=True,
        )

    def _search(
        self, base: str, search_filter: str, attributes: list[str]
    ) -> typing.Iterator[DirectoryEntry]:
        if self._conn is None:
            raise DirectorySyncError("not connected")
        try:
            results = self._conn.extend.standard.paged_search(
                search_base=base,
                search_filter=search_filter,
                search_scope=ldap3.SUBTREE,
                attributes=attributes,
                paged_size=self.page_size,
                generator=True,
            )
            for entry in results:
                if entry.get("type") != "searchResEntry":
                    continue
                yield DirectoryEntry.load(
                    entry["dn"], entry.get("attributes") or {}
                )
        except LDAPException as err:
            raise DirectorySyncError(
                f"search of {base} on {self.server.name} failed: {err}"
            ) from err

    def users(self) -> typing.Iterator[DirectoryEntry]:
        attrs = [self.server.uid_attribute]
        for attr in self.server.attributes.all_attributes():
            if attr not in attrs:
                attrs.append(attr)
        base, query = self.server.base_dn, user_filter(self.server)
        return self._search(base, query, attrs)

    def groups(self) -> typing.Iterator[DirectoryEntry]:
        if not self.server.group_base_dn:
            _logger.info("no group base for %s: no groups", self.server.name)
            return iter(())
        return self._search(
            self.server.group_base_dn, GROUP_FILTER, GROUP_ATTRIBUTES
        )

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.unbind()
        except LDAPException as err:
            _logger.warning("unbind from %s failed: %s", self.server.name, err)
        self._conn = None

    def __enter__(self) -> LDAPDirectoryClient:
        self.connect()
        return self

    def __exit__(self, *args: typing.Any) -> None:
        self.close()


def connect(
    server: DirectoryServerConfig, secret: typing.Optional[ResolvedSecret]
) -> DirectoryClient:
    """Return a connected and bound client for the server."""
    client = LDAPDirectoryClient(server, secret)
    client.connect()
    return client
