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
"""Exception types shared across the reconciliation components."""

from __future__ import annotations

import typing


class ReconcileError(Exception):
    pass


class FieldError(typing.NamedTuple):
    """A single problem found with one settings field."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class InvalidSettings(ReconcileError):
    """The settings document failed validation. All of the problems found
    are available in the errors attribute.
    """

    def __init__(self, errors: typing.Iterable[FieldError]) -> None:
        self.errors: list[FieldError] = list(errors)
        super().__init__(
            "invalid settings: " + "; ".join(str(e) for e in self.errors)
        )


class SecretUnavailable(ReconcileError):
    def __init__(self, server: str, reason: str) -> None:
        super().__init__(f"secret for {server} unavailable: {reason}")
        self.server = server
        self.reason = reason


class RenderError(ReconcileError):
    """Raised when rendering hits a broken internal invariant. This
    indicates a bug rather than a bad settings document.
    """

    pass


class ApplyError(ReconcileError):
    def __init__(self, service: str, reason: typing.Any) -> None:
        super().__init__(f"failed to apply {service}: {reason}")
        self.service = service
        self.reason = reason


class DirectoryConnectionError(ReconcileError):
    pass


class DirectorySyncError(ReconcileError):
    pass
