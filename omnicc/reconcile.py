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
"""The reconciliation pass.

A pass validates the settings, resolves directory secrets, renders every
artifact, applies only the artifacts whose digest differs from the last
successfully applied one and finally brings the sync scheduler in line
with the current directory servers. Applying is isolated per artifact:
one failure is reported without stopping the others.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import enum
import logging
import threading
import typing

from . import render as render_mod
from . import sources
from .apply import Applier
from .credentials import SecretResolver
from .errors import ApplyError
from .opener import Opener
from .render import Artifact, Renderer
from .scheduler import SyncScheduler
from .settings import parse_settings

_logger = logging.getLogger(__name__)

# per artifact and per directory server outcomes
APPLIED = "applied"
UNCHANGED = "no_change"
REMOVED = "removed"
FAILED = "failed"
SECRET_UNAVAILABLE = "secret_unavailable"

DEFAULT_MAX_WORKERS = 4


class PassStatus(str, enum.Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class PassResult:
    """Outcome of one reconciliation pass. `services` maps every artifact
    key to its outcome and `directory_servers` does the same per directory
    server. `errors` holds the reason for every failed entry.
    """

    status: PassStatus
    changed: tuple[str, ...] = ()
    services: typing.Mapping[str, str] = dataclasses.field(
        default_factory=dict
    )
    directory_servers: typing.Mapping[str, str] = dataclasses.field(
        default_factory=dict
    )
    errors: typing.Mapping[str, str] = dataclasses.field(
        default_factory=dict
    )
    warnings: tuple[str, ...] = ()


def _ldap_key(name: str) -> str:
    return f"{render_mod.LDAP}/{name}"


class Reconciler:
    def __init__(
        self,
        applier: Applier,
        *,
        resolver: typing.Optional[SecretResolver] = None,
        renderer: typing.Optional[Renderer] = None,
        scheduler: typing.Optional[SyncScheduler] = None,
        strict: bool = False,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.applier = applier
        self.resolver = resolver or SecretResolver()
        self.renderer = renderer or Renderer()
        self.scheduler = scheduler
        self.strict = strict
        self.max_workers = max_workers
        self._lock = threading.Lock()
        # artifact key -> digest of the last successful apply
        self._applied: dict[str, str] = {}

    def applied(self) -> dict[str, str]:
        with self._lock:
            return dict(self._applied)

    def reconcile_files(
        self,
        paths: typing.Sequence[str],
        *,
        opener: typing.Optional[Opener] = None,
    ) -> PassResult:
        data = sources.read_settings_files(paths, opener=opener)
        return self.reconcile(data)

    def reconcile(self, data: typing.Mapping[str, typing.Any]) -> PassResult:
        """Run one reconciliation pass over a merged flat settings mapping.
        Raises InvalidSettings, without applying anything, if the settings
        are not valid.
        """
        with self._lock:
            return self._reconcile(data)

    def _reconcile(self, data: typing.Mapping[str, typing.Any]) -> PassResult:
        doc = parse_settings(data, strict=self.strict)
        servers = doc.active_directory_servers()
        refs = {name: srv.bind_password_ref for name, srv in servers.items()}
        with self.resolver.session() as session:
            resolved, failed = session.resolve_all(refs)
            rendered = self.renderer.render(doc, resolved)

        held = {_ldap_key(name) for name in failed}
        pending = [
            art
            for key, art in sorted(rendered.artifacts.items())
            if self._applied.get(key) != art.digest
        ]
        stale = [
            key
            for key in sorted(self._applied)
            if key not in rendered.artifacts and key not in held
        ]
        services = {key: UNCHANGED for key in rendered.artifacts}
        services.update({key: SECRET_UNAVAILABLE for key in held})
        errors = {
            _ldap_key(name): str(err) for name, err in sorted(failed.items())
        }
        changed = self._apply(pending, stale, services, errors)

        if self.scheduler is not None:
            self.scheduler.configure(rendered.descriptors, doc.sync_schedule)

        directory_servers = {}
        for name in sorted(servers):
            directory_servers[name] = services[_ldap_key(name)]
        for key in stale:
            if key.startswith(_ldap_key("")):
                directory_servers[key.split("/", 1)[1]] = services[key]

        if errors:
            status = PassStatus.FAILED
        elif changed:
            status = PassStatus.APPLIED
        else:
            status = PassStatus.NO_CHANGE
        _logger.info(
            "reconciliation pass %s: %d changed, %d failed",
            status.value,
            len(changed),
            len(errors),
        )
        return PassResult(
            status=status,
            changed=tuple(changed),
            services=services,
            directory_servers=directory_servers,
            errors=errors,
            warnings=doc.warnings,
        )

    def _apply(
        self,
        pending: list[Artifact],
        stale: list[str],
        services: dict[str, str],
        errors: dict[str, str],
    ) -> list[str]:
        if not pending and not stale:
            return []
        futures: dict[concurrent.futures.Future, tuple[str, str]] = {}
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers
        ) as executor:
            for art in pending:
                fut = executor.submit(self.applier.apply, art)
                futures[fut] = (art.key, art.digest)
            for key in stale:
                service, _, name = key.partition("/")
                fut = executor.submit(self.applier.remove, service, name)
                futures[fut] = (key, "")
        changed = []
        for fut, (key, digest) in futures.items():
            try:
                fut.result()
            except ApplyError as err:
                _logger.error("%s", err)
                services[key] = FAILED
                errors[key] = str(err.reason)
                continue
            changed.append(key)
            if digest:
                services[key] = APPLIED
                self._applied[key] = digest
            else:
                services[key] = REMOVED
                self._applied.pop(key, None)
        return sorted(changed)
