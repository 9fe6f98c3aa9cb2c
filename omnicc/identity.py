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
"""Local identity records that directory synchronisation reconciles
against: users and group memberships.
"""

from __future__ import annotations

import contextlib
import dataclasses
import fcntl
import json
import os
import threading
import typing

OPEN_RW = os.O_CREAT | os.O_RDWR

StoreData = dict[str, typing.Any]


@dataclasses.dataclass
class UserRecord:
    username: str
    provider: str
    dn: str = ""
    email: str = ""
    name: str = ""
    blocked: bool = False
    admin: bool = False
    # blocked only because the directory stopped listing the user
    missing_blocked: bool = False

    @classmethod
    def load(cls, json_object: dict[str, typing.Any]) -> UserRecord:
        return cls(
            username=json_object["username"],
            provider=json_object.get("provider", ""),
            dn=json_object.get("dn", ""),
            email=json_object.get("email", ""),
            name=json_object.get("name", ""),
            blocked=bool(json_object.get("blocked", False)),
            admin=bool(json_object.get("admin", False)),
            missing_blocked=bool(json_object.get("missing_blocked", False)),
        )


class IdentityConflict(ValueError):
    pass


def _group_key(provider: str, name: str) -> str:
    return f"{provider}:{name}"


class IdentityStore:
    """Base identity store. Subclasses supply _view and _edit, context
    managers yielding the raw store data for reading and for changing.
    Every public method is a self-contained change so that each
    reconciled entry takes effect on its own.
    """

    def _view(self) -> typing.ContextManager[StoreData]:
        raise NotImplementedError()

    def _edit(self) -> typing.ContextManager[StoreData]:
        raise NotImplementedError()

    def get_user(self, username: str) -> typing.Optional[UserRecord]:
        with self._view() as data:
            rec = data["users"].get(username)
        return UserRecord.load(rec) if rec else None

    def users(
        self, provider: typing.Optional[str] = None
    ) -> list[UserRecord]:
        with self._view() as data:
            recs = [UserRecord.load(u) for u in data["users"].values()]
        if provider is not None:
            recs = [u for u in recs if u.provider == provider]
        return sorted(recs, key=lambda u: u.username)

    def upsert_user(self, user: UserRecord) -> bool:
        """Create or update a user. Returns true if anything changed. The
        blocked and admin flags of an existing user are left alone, use
        set_blocked and set_admin for those.
        """
        with self._edit() as data:
            current = data["users"].get(user.username)
            if current is None:
                data["users"][user.username] = dataclasses.asdict(user)
                return True
            if current.get("provider") != user.provider:
                raise IdentityConflict(
                    f"user {user.username} belongs to"
                    f" {current.get('provider')!r}"
                )
            updated = dict(current)
            updated.update(dn=user.dn, email=user.email, name=user.name)
            if updated == current:
                return False
            data["users"][user.username] = updated
            return True

    def _user(self, data: StoreData, username: str) -> dict[str, typing.Any]:
        current = data["users"].get(username)
        if current is None:
            raise KeyError(username)
        return current

    def _set_flag(self, username: str, flag: str, value: bool) -> bool:
        with self._edit() as data:
            current = self._user(data, username)
            if bool(current.get(flag, False)) == value:
                return False
            current[flag] = value
            return True

    def set_blocked(self, username: str, blocked: bool) -> bool:
        """Block or unblock a user by hand. This replaces a block left by
        a sync for a user missing from the directory.
        """
        with self._edit() as data:
            current = self._user(data, username)
            changed = bool(current.get("blocked", False)) != blocked or bool(
                current.get("missing_blocked", False)
            )
            current.update(blocked=blocked, missing_blocked=False)
            return changed

    def block_missing(self, username: str) -> bool:
        """Block a user the directory no longer lists. A user that is
        already blocked keeps its block as it is.
        """
        with self._edit() as data:
            current = self._user(data, username)
            if current.get("blocked"):
                return False
            current.update(blocked=True, missing_blocked=True)
            return True

    def unblock_returning(self, username: str) -> bool:
        """Lift a block set by block_missing once the directory lists the
        user again. Other blocks are left alone.
        """
        with self._edit() as data:
            current = self._user(data, username)
            if not current.get("missing_blocked"):
                return False
            current.update(blocked=False, missing_blocked=False)
            return True

    def set_admin(self, username: str, admin: bool) -> bool:
        return self._set_flag(username, "admin", admin)

    def group_members(self, provider: str, group: str) -> set[str]:
        with self._view() as data:
            rec = data["groups"].get(_group_key(provider, group), {})
        return set(rec.get("members", []))

    def groups(self, provider: str) -> dict[str, set[str]]:
        with self._view() as data:
            out = {
                g["name"]: set(g.get("members", []))
                for g in data["groups"].values()
                if g.get("provider") == provider
            }
        return out

    def set_group_members(
        self, provider: str, group: str, members: typing.Iterable[str]
    ) -> int:
        """Replace the membership of a group. Only users that already exist
        locally can be members. Returns the number of membership changes.
        Nothing is written when the membership is unchanged.
        """
        wanted = set(members)
        with self._edit() as data:
            missing = wanted - set(data["users"])
            if missing:
                raise KeyError(f"unknown users: {sorted(missing)}")
            key = _group_key(provider, group)
            current = set(data["groups"].get(key, {}).get("members", []))
            changes = len(wanted ^ current)
            if changes:
                data["groups"][key] = {
                    "name": group,
                    "provider": provider,
                    "members": sorted(wanted),
                }
            return changes


def _empty() -> StoreData:
    return {"users": {}, "groups": {}}


class MemoryIdentityStore(IdentityStore):
    def __init__(self) -> None:
        self._data = _empty()
        self._lock = threading.RLock()

    @contextlib.contextmanager
    def _view(self) -> typing.Iterator[StoreData]:
        with self._lock:
            yield self._data

    _edit = _view


class JSONIdentityStore(IdentityStore):
    """Identity store kept in a JSON file. Every access takes an exclusive
    flock on the file, so separate processes and threads can share it.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    @contextlib.contextmanager
    def _locked(self) -> typing.Iterator[typing.IO]:
        fh = os.fdopen(os.open(self.path, OPEN_RW, 0o600), "r+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            yield fh
        finally:
            fh.close()

    def _load(self, fh: typing.IO) -> StoreData:
        if fh.read(4) == "":
            # probe it to see if its an empty file
            return _empty()
        fh.seek(0)
        data = json.load(fh)
        data.setdefault("users", {})
        data.setdefault("groups", {})
        return data

    @contextlib.contextmanager
    def _view(self) -> typing.Iterator[StoreData]:
        with self._locked() as fh:
            yield self._load(fh)

    @contextlib.contextmanager
    def _edit(self) -> typing.Iterator[StoreData]:
        with self._locked() as fh:
            data = self._load(fh)
            before = json.dumps(data, sort_keys=True)
            yield data
            if json.dumps(data, sort_keys=True) != before:
                fh.seek(0)
                fh.truncate(0)
                json.dump(data, fh, sort_keys=True, indent=1)
                fh.flush()
                os.fsync(fh.fileno())
