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
"""Directory synchronisation jobs.

A full sync reconciles user records and group memberships. A group sync
only reconciles memberships of users that already exist locally and never
creates or removes a user. Reconciliation is entry by entry: an entry that
can not be mapped is recorded as an error while the others still apply.
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import logging
import threading
import time
import typing

from . import directory
from .credentials import SecretResolver
from .directory import ClientFactory, DirectoryClient, DirectoryEntry
from .errors import (
    DirectoryConnectionError,
    DirectorySyncError,
    SecretUnavailable,
)
from .identity import IdentityConflict, IdentityStore, UserRecord
from .settings import DirectoryServerConfig

_logger = logging.getLogger(__name__)

CANCELLED = "Cancelled"
TIMED_OUT = "Timed out"


class JobKind(str, enum.Enum):
    FULL = "full"
    GROUP = "group"


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class EntryError:
    dn: str
    message: str


@dataclasses.dataclass(frozen=True)
class SyncJobRecord:
    """One execution of a sync job. A record is started when the job
    starts and finished exactly once; finish returns a new record.
    """

    directory_server_name: str
    kind: JobKind
    started_at: datetime.datetime
    finished_at: typing.Optional[datetime.datetime] = None
    outcome: typing.Optional[Outcome] = None
    users_synced: int = 0
    groups_synced: int = 0
    error_detail: str = ""
    entry_errors: tuple[EntryError, ...] = ()

    @classmethod
    def start(
        cls,
        server_name: str,
        kind: JobKind,
        now: typing.Optional[datetime.datetime] = None,
    ) -> SyncJobRecord:
        return cls(server_name, kind, now or _utcnow())

    def finish(
        self,
        outcome: Outcome,
        *,
        users_synced: int = 0,
        groups_synced: int = 0,
        error_detail: str = "",
        entry_errors: typing.Iterable[EntryError] = (),
        now: typing.Optional[datetime.datetime] = None,
    ) -> SyncJobRecord:
        if self.outcome is not None:
            raise ValueError("sync job record is already finished")
        return dataclasses.replace(
            self,
            finished_at=now or _utcnow(),
            outcome=outcome,
            users_synced=users_synced,
            groups_synced=groups_synced,
            error_detail=error_detail,
            entry_errors=tuple(entry_errors),
        )


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class JobInterrupted(Exception):
    pass


class JobControl:
    """Cancellation token and overall deadline for one job run."""

    def __init__(
        self,
        timeout: typing.Optional[float] = None,
        clock: typing.Callable[[], float] = time.monotonic,
    ) -> None:
        self._cancel = threading.Event()
        self._clock = clock
        self._deadline = None if not timeout else clock() + timeout

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def check(self) -> None:
        """Raise JobInterrupted if the job should stop now."""
        if self._cancel.is_set():
            raise JobInterrupted(CANCELLED)
        if self._deadline is not None and self._clock() >= self._deadline:
            raise JobInterrupted(TIMED_OUT)


@dataclasses.dataclass
class SyncStats:
    users: int = 0
    groups: int = 0
    user_changes: int = 0
    membership_changes: int = 0
    errors: list[EntryError] = dataclasses.field(default_factory=list)


class DirectorySync:
    """Reconcile the local identity store against one directory server."""

    def __init__(
        self,
        server: DirectoryServerConfig,
        store: IdentityStore,
        control: typing.Optional[JobControl] = None,
    ) -> None:
        self.server = server
        self.store = store
        self.control = control or JobControl()

    def _username(self, value: str) -> str:
        if self.server.lowercase_usernames:
            return value.lower()
        return value

    def user_from_entry(self, entry: DirectoryEntry) -> UserRecord:
        attrs = self.server.attributes
        username = entry.first(attrs.username) or entry.first(
            [self.server.uid_attribute]
        )
        if not username:
            raise ValueError("entry has no username attribute")
        name = entry.first(attrs.name)
        if not name:
            parts = (
                entry.first(attrs.first_name),
                entry.first(attrs.last_name),
            )
            name = " ".join(p for p in parts if p)
        return UserRecord(
            username=self._username(username),
            provider=self.server.provider,
            dn=entry.dn,
            email=entry.first(attrs.email) or "",
            name=name or username,
            blocked=self.server.block_auto_created_users,
        )

    def full(
        self, client: DirectoryClient, stats: typing.Optional[SyncStats] = None
    ) -> SyncStats:
        stats = SyncStats() if stats is None else stats
        seen_dns: set[str] = set()
        dn_map: dict[str, str] = {}
        for entry in client.users():
            self.control.check()
            seen_dns.add(entry.dn.lower())
            try:
                user = self.user_from_entry(entry)
                if self.store.upsert_user(user):
                    stats.user_changes += 1
                if self.store.unblock_returning(user.username):
                    _logger.info(
                        "unblocking %s: back in directory %s",
                        user.username,
                        self.server.name,
                    )
                    stats.user_changes += 1
            except (ValueError, IdentityConflict) as err:
                _logger.warning("skipping user entry %s: %s", entry.dn, err)
                stats.errors.append(EntryError(entry.dn, str(err)))
                continue
            dn_map[entry.dn.lower()] = user.username
            stats.users += 1

        for local in self.store.users(self.server.provider):
            self.control.check()
            if local.dn.lower() in seen_dns or local.blocked:
                continue
            _logger.info(
                "blocking %s: no longer in directory %s",
                local.username,
                self.server.name,
            )
            if self.store.block_missing(local.username):
                stats.user_changes += 1

        memberships = self._sync_groups(client, stats, dn_map)
        if self.server.admin_group:
            admins = memberships.get(self.server.admin_group, set())
            for local in self.store.users(self.server.provider):
                self.control.check()
                is_admin = local.username in admins
                if self.store.set_admin(local.username, is_admin):
                    stats.user_changes += 1
        return stats

    def group(
        self, client: DirectoryClient, stats: typing.Optional[SyncStats] = None
    ) -> SyncStats:
        stats = SyncStats() if stats is None else stats
        dn_map = {
            u.dn.lower(): u.username
            for u in self.store.users(self.server.provider)
            if u.dn
        }
        self._sync_groups(client, stats, dn_map)
        return stats

    def _sync_groups(
        self,
        client: DirectoryClient,
        stats: SyncStats,
        dn_map: dict[str, str],
    ) -> dict[str, set[str]]:
        known = set(dn_map.values())
        memberships: dict[str, set[str]] = {}
        for entry in client.groups():
            self.control.check()
            name = entry.first(["cn"])
            if not name:
                stats.errors.append(EntryError(entry.dn, "group has no cn"))
                continue
            members = set()
            for dn in entry.values("member") + entry.values("uniqueMember"):
                username = dn_map.get(dn.lower())
                if username:
                    members.add(username)
            for uid in entry.values("memberUid"):
                username = self._username(uid)
                if username in known:
                    members.add(username)
            try:
                stats.membership_changes += self.store.set_group_members(
                    self.server.provider, name, members
                )
            except KeyError as err:
                stats.errors.append(EntryError(entry.dn, f"{err}"))
                continue
            memberships[name] = members
            stats.groups += 1
        return memberships


class SyncJob:
    """Run one sync job of a given kind against a directory server and
    produce its finished SyncJobRecord.
    """

    def __init__(
        self,
        server: DirectoryServerConfig,
        kind: JobKind,
        store: IdentityStore,
        *,
        resolver: typing.Optional[SecretResolver] = None,
        client_factory: typing.Optional[ClientFactory] = None,
        control: typing.Optional[JobControl] = None,
    ) -> None:
        self.server = server
        self.kind = kind
        self.store = store
        self.resolver = resolver or SecretResolver()
        self.client_factory = client_factory or directory.connect
        self.control = control or JobControl()
        self.stats = SyncStats()

    def _sync(self) -> SyncStats:
        ref = self.server.bind_password_ref
        secret = self.resolver.resolve(self.server.name, ref) if ref else None
        try:
            client = self.client_factory(self.server, secret)
            try:
                syncer = DirectorySync(self.server, self.store, self.control)
                if self.kind is JobKind.FULL:
                    return syncer.full(client, self.stats)
                return syncer.group(client, self.stats)
            finally:
                client.close()
        finally:
            if secret is not None:
                secret.wipe()

    def run(
        self, record: typing.Optional[SyncJobRecord] = None
    ) -> SyncJobRecord:
        record = record or SyncJobRecord.start(self.server.name, self.kind)
        kind, name = self.kind.value, self.server.name
        _logger.info("starting %s sync of %s", kind, name)
        try:
            stats = self._sync()
        except (
            SecretUnavailable,
            DirectoryConnectionError,
            DirectorySyncError,
        ) as err:
            _logger.error("%s sync of %s failed: %s", kind, name, err)
            return record.finish(Outcome.FAILED, error_detail=str(err))
        except JobInterrupted as err:
            _logger.warning("%s sync of %s stopped: %s", kind, name, err)
            return record.finish(
                Outcome.FAILED,
                users_synced=self.stats.users,
                groups_synced=self.stats.groups,
                error_detail=str(err),
                entry_errors=self.stats.errors,
            )
        outcome = Outcome.PARTIAL if stats.errors else Outcome.SUCCESS
        detail = ""
        if stats.errors:
            detail = f"{len(stats.errors)} entries could not be synced"
        _logger.info(
            "%s sync of %s finished: %s (users=%d groups=%d)",
            kind,
            name,
            outcome.value,
            stats.users,
            stats.groups,
        )
        return record.finish(
            outcome,
            users_synced=stats.users,
            groups_synced=stats.groups,
            error_detail=detail,
            entry_errors=stats.errors,
        )
