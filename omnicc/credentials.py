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
"""Secret references and their in-memory resolution.

A bind password in a settings document is stored as a SecretRef. The
actual secret only exists as a ResolvedSecret for as long as one
reconciliation pass, or one sync job, needs it.
"""

from __future__ import annotations

import enum
import errno
import hashlib
import hmac
import logging
import secrets
import typing
from types import TracebackType

from .errors import SecretUnavailable
from .opener import Opener, SchemeNotSupported, default_opener

_logger = logging.getLogger(__name__)

# keys the digests used for change detection. digests are only comparable
# within one process and never leave it.
_DIGEST_KEY = secrets.token_bytes(32)


class SecretKind(str, enum.Enum):
    FILE = "file"
    ENV = "env"
    LITERAL = "literal"


class ResolvedSecret:
    """An in-memory secret value. The value is never shown by repr or str
    and the buffer is zeroed by wipe() or when used as a context manager.
    """

    def __init__(self, value: typing.Union[str, bytes, bytearray]) -> None:
        if isinstance(value, str):
            value = value.encode("utf8")
        self._buf = bytearray(value)
        self._wiped = False

    def reveal(self) -> str:
        if self._wiped:
            raise ValueError("secret has been wiped")
        return self._buf.decode("utf8")

    def digest(self, key: typing.Optional[bytes] = None) -> str:
        """Return a keyed digest of the value, suitable for detecting
        changes without retaining the value itself.
        """
        if self._wiped:
            raise ValueError("secret has been wiped")
        return hmac.new(
            key or _DIGEST_KEY, bytes(self._buf), hashlib.sha256
        ).hexdigest()

    def copy(self) -> ResolvedSecret:
        return ResolvedSecret(bytes(self._buf))

    def wipe(self) -> None:
        for idx in range(len(self._buf)):
            self._buf[idx] = 0
        self._wiped = True

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __enter__(self) -> ResolvedSecret:
        return self

    def __exit__(
        self,
        exc_type: typing.Optional[typing.Type[BaseException]],
        exc_val: typing.Optional[BaseException],
        exc_tb: typing.Optional[TracebackType],
    ) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "ResolvedSecret(***)"

    __str__ = __repr__


class SecretRef:
    """A reference to a secret value. File and env references carry only
    the location of the secret. Literal references are the compatibility
    form for secrets written directly into a settings source and hold the
    value wrapped as a ResolvedSecret.
    """

    def __init__(
        self,
        kind: SecretKind,
        target: str = "",
        *,
        literal: typing.Optional[ResolvedSecret] = None,
    ) -> None:
        self.kind = kind
        self.target = target
        self._literal = literal
        if kind is SecretKind.LITERAL and literal is None:
            raise ValueError("literal secret reference requires a value")

    @classmethod
    def parse(cls, value: str) -> SecretRef:
        """Parse a `file:<path>` or `env:<NAME>` reference string."""
        if not isinstance(value, str) or ":" not in value:
            raise ValueError("reference must take the form <kind>:<target>")
        kind, target = value.split(":", 1)
        if kind not in (SecretKind.FILE.value, SecretKind.ENV.value):
            raise ValueError(f"unknown secret reference kind: {kind!r}")
        if not target:
            raise ValueError("secret reference target is empty")
        return cls(SecretKind(kind), target)

    @classmethod
    def literal(cls, value: str) -> SecretRef:
        return cls(SecretKind.LITERAL, literal=ResolvedSecret(value))

    def uri(self) -> str:
        """Return a description of where the secret lives. Never contains
        the secret itself.
        """
        if self.kind is SecretKind.LITERAL:
            return "inline"
        return f"{self.kind.value}:{self.target}"

    def __eq__(self, other: typing.Any) -> bool:
        if not isinstance(other, SecretRef):
            return NotImplemented
        if self.kind is not other.kind or self.target != other.target:
            return False
        if self.kind is SecretKind.LITERAL:
            assert self._literal and other._literal
            return hmac.compare_digest(
                self._literal.digest(), other._literal.digest()
            )
        return True

    def __hash__(self) -> int:
        return hash((self.kind, self.target))

    def __repr__(self) -> str:
        return f"SecretRef({self.uri()!r})"


class SecretResolver:
    """Resolve SecretRefs into ResolvedSecrets."""

    def __init__(self, opener: typing.Optional[Opener] = None) -> None:
        self._opener = opener or default_opener()

    def resolve(self, server: str, ref: SecretRef) -> ResolvedSecret:
        """Resolve a single reference. The caller owns the returned value
        and must wipe it.
        """
        if ref.kind is SecretKind.LITERAL:
            assert ref._literal is not None
            return ref._literal.copy()
        uri = ref.uri()
        try:
            with self._opener.open(uri) as fh:
                raw = fh.read()
        except SchemeNotSupported:
            raise SecretUnavailable(server, f"unsupported source {uri}")
        except OSError as err:
            if getattr(err, "errno", 0) == errno.ENOENT or isinstance(
                err, FileNotFoundError
            ):
                raise SecretUnavailable(server, f"{uri} not found")
            raise SecretUnavailable(
                server, f"{uri} unreadable: {err.strerror or err}"
            )
        if isinstance(raw, str):
            raw = raw.encode("utf8")
        secret = ResolvedSecret(raw.strip())
        if not len(secret._buf):
            secret.wipe()
            raise SecretUnavailable(server, f"{uri} is empty")
        return secret

    def session(self) -> ResolutionSession:
        return ResolutionSession(self)


class ResolutionSession:
    """Resolve secrets for one reconciliation pass. Each server is resolved
    at most once and all resolved values are wiped when the session ends.
    """

    def __init__(self, resolver: SecretResolver) -> None:
        self._resolver = resolver
        self._resolved: dict[str, typing.Optional[ResolvedSecret]] = {}
        self._failed: dict[str, SecretUnavailable] = {}

    def resolve(
        self, server: str, ref: typing.Optional[SecretRef]
    ) -> typing.Optional[ResolvedSecret]:
        """Return the secret for the named server, None for a server that
        binds anonymously. Raises SecretUnavailable on failure, and keeps
        raising it for the same server for the rest of the session.
        """
        if server in self._failed:
            raise self._failed[server]
        if server in self._resolved:
            return self._resolved[server]
        if ref is None:
            self._resolved[server] = None
            return None
        try:
            secret = self._resolver.resolve(server, ref)
        except SecretUnavailable as err:
            _logger.warning(
                "secret unavailable for %s: %s", server, err.reason
            )
            self._failed[server] = err
            raise
        self._resolved[server] = secret
        return secret

    def resolve_all(
        self, refs: typing.Mapping[str, typing.Optional[SecretRef]]
    ) -> tuple[
        dict[str, typing.Optional[ResolvedSecret]],
        dict[str, SecretUnavailable],
    ]:
        """Resolve every reference, collecting failures per server rather
        than stopping at the first one.
        """
        resolved: dict[str, typing.Optional[ResolvedSecret]] = {}
        failed: dict[str, SecretUnavailable] = {}
        for server in sorted(refs):
            try:
                resolved[server] = self.resolve(server, refs[server])
            except SecretUnavailable as err:
                failed[server] = err
        return resolved, failed

    def close(self) -> None:
        for secret in self._resolved.values():
            if secret is not None:
                secret.wipe()
        self._resolved.clear()

    def __enter__(self) -> ResolutionSession:
        return self

    def __exit__(
        self,
        exc_type: typing.Optional[typing.Type[BaseException]],
        exc_val: typing.Optional[BaseException],
        exc_tb: typing.Optional[TracebackType],
    ) -> None:
        self.close()
