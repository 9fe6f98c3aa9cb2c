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
"""Periodic directory sync scheduling.

Each (directory server, job kind) pair runs on its own cron schedule. At
most one run per pair exists at any time: a fire that finds the previous
run still going is skipped and logged as a SkippedOverlap, never queued.
A failed run is retried only by the next regular fire.
"""

from __future__ import annotations

import collections
import dataclasses
import datetime
import enum
import logging
import threading
import typing

from apscheduler.events import EVENT_JOB_MAX_INSTANCES  # type: ignore
from apscheduler.executors.pool import (  # type: ignore[import]
    ThreadPoolExecutor,
)
from apscheduler.jobstores.memory import MemoryJobStore  # type: ignore
from apscheduler.schedulers.background import (  # type: ignore[import]
    BackgroundScheduler,
)
from apscheduler.schedulers.base import BaseScheduler  # type: ignore[import]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import]

from .credentials import SecretResolver
from .directory import ClientFactory
from .identity import IdentityStore
from .ldapsync import JobControl, JobKind, Outcome, SyncJob, SyncJobRecord
from .render import DirectoryDescriptor
from .settings import SyncSchedule

_logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT = 3600
# number of job records and skipped overlaps kept for inspection
DEFAULT_HISTORY = 1000

# fires beyond the first reach run_job so overlaps can be recorded; any
# fire past this limit is still recorded through the scheduler event
_MAX_INSTANCES = 3
_POOL_SIZE = 10


class JobState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"


_TERMINAL = {
    Outcome.SUCCESS: JobState.SUCCEEDED,
    Outcome.PARTIAL: JobState.PARTIALLY_FAILED,
    Outcome.FAILED: JobState.FAILED,
}


@dataclasses.dataclass(frozen=True)
class SkippedOverlap:
    directory_server_name: str
    kind: JobKind
    at: datetime.datetime


class _Slot:
    def __init__(self) -> None:
        self.token = threading.Lock()
        self.state = JobState.IDLE
        self.last_state: typing.Optional[JobState] = None
        self.control: typing.Optional[JobControl] = None


def job_id(server_name: str, kind: JobKind) -> str:
    return f"ldap-{kind.value}-sync:{server_name}"


class SyncScheduler:
    def __init__(
        self,
        store: IdentityStore,
        *,
        resolver: typing.Optional[SecretResolver] = None,
        client_factory: typing.Optional[ClientFactory] = None,
        job_timeout: typing.Optional[float] = DEFAULT_JOB_TIMEOUT,
        scheduler: typing.Optional[BaseScheduler] = None,
        timezone: typing.Any = None,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self._store = store
        self._resolver = resolver or SecretResolver()
        self._client_factory = client_factory
        self._job_timeout = job_timeout
        self._timezone = timezone or datetime.timezone.utc
        self._scheduler = scheduler or BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(_POOL_SIZE)},
            timezone=self._timezone,
        )
        self._mutex = threading.Lock()
        self._descriptors: dict[str, DirectoryDescriptor] = {}
        self._slots: dict[tuple[str, JobKind], _Slot] = {}
        self._jobs: dict[str, tuple[str, JobKind]] = {}
        self._records: typing.Deque[SyncJobRecord] = collections.deque(
            maxlen=history
        )
        self._events: typing.Deque[SkippedOverlap] = collections.deque(
            maxlen=history
        )
        self._scheduler.add_listener(
            self._on_max_instances, EVENT_JOB_MAX_INSTANCES
        )

    def _slot(self, server_name: str, kind: JobKind) -> _Slot:
        with self._mutex:
            return self._slots.setdefault((server_name, kind), _Slot())

    def configure(
        self,
        descriptors: typing.Mapping[str, DirectoryDescriptor],
        schedule: SyncSchedule,
    ) -> None:
        """Make the scheduled jobs match the given directory servers and
        schedule. Running jobs of servers that changed or were removed are
        cancelled.
        """
        with self._mutex:
            previous = self._descriptors
            self._descriptors = dict(descriptors)
            stale = [
                name
                for name, desc in previous.items()
                if name not in descriptors
                or descriptors[name].artifact.digest != desc.artifact.digest
            ]
        for name in stale:
            for kind in JobKind:
                self.cancel(name, kind)

        crons = {
            JobKind.FULL: schedule.full_sync_cron,
            JobKind.GROUP: schedule.group_sync_cron,
        }
        wanted = set()
        for name in sorted(descriptors):
            for kind, cron in crons.items():
                jid = job_id(name, kind)
                wanted.add(jid)
                with self._mutex:
                    self._jobs[jid] = (name, kind)
                if self._scheduler.get_job(jid) is not None:
                    self._scheduler.remove_job(jid)
                self._scheduler.add_job(
                    self._fire,
                    CronTrigger.from_crontab(cron, timezone=self._timezone),
                    args=[name, kind],
                    id=jid,
                    name=f"{kind.value} sync of {name}",
                    max_instances=_MAX_INSTANCES,
                    coalesce=True,
                )
        for job in self._scheduler.get_jobs():
            if job.id not in wanted:
                _logger.info("removing sync job %s", job.id)
                self._scheduler.remove_job(job.id)
                with self._mutex:
                    self._jobs.pop(job.id, None)
        _logger.info("scheduled sync jobs: %s", ", ".join(sorted(wanted)))

    def job_ids(self) -> list[str]:
        return sorted(job.id for job in self._scheduler.get_jobs())

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            _logger.info("sync scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        """Stop scheduling and cancel any running jobs."""
        with self._mutex:
            keys = list(self._slots)
        for name, kind in keys:
            self.cancel(name, kind)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            _logger.info("sync scheduler stopped")

    def cancel(self, server_name: str, kind: JobKind) -> bool:
        """Cancel a running job. Returns true if a job was running."""
        with self._mutex:
            slot = self._slots.get((server_name, kind))
            control = slot.control if slot else None
        if control is None:
            return False
        _logger.info("cancelling %s sync of %s", kind.value, server_name)
        control.cancel()
        return True

    def state(self, server_name: str, kind: JobKind) -> JobState:
        return self._slot(server_name, kind).state

    def last_state(
        self, server_name: str, kind: JobKind
    ) -> typing.Optional[JobState]:
        """Return the terminal state of the most recent finished run."""
        return self._slot(server_name, kind).last_state

    def records(self) -> list[SyncJobRecord]:
        with self._mutex:
            return list(self._records)

    def events(self) -> list[SkippedOverlap]:
        with self._mutex:
            return list(self._events)

    def _fire(self, server_name: str, kind: JobKind) -> None:
        try:
            self.run_job(server_name, kind)
        except KeyError:
            _logger.warning("no directory server named %s", server_name)

    def _on_max_instances(self, event: typing.Any) -> None:
        with self._mutex:
            key = self._jobs.get(event.job_id)
        if key is not None:
            self._skipped(*key)

    def _skipped(self, server_name: str, kind: JobKind) -> SkippedOverlap:
        event = SkippedOverlap(
            server_name, kind, datetime.datetime.now(datetime.timezone.utc)
        )
        _logger.warning(
            "skipping %s sync of %s: previous run still in progress",
            kind.value,
            server_name,
        )
        with self._mutex:
            self._events.append(event)
        return event

    def run_job(
        self, server_name: str, kind: JobKind
    ) -> typing.Union[SyncJobRecord, SkippedOverlap]:
        """Run one sync job now, in the calling thread. If a run of the
        same server and kind is in progress nothing is run and a
        SkippedOverlap is returned.
        """
        # the descriptor, the token and the control are taken together so
        # that configure and cancel always see a started run
        with self._mutex:
            descriptor = self._descriptors[server_name]
            slot = self._slots.setdefault((server_name, kind), _Slot())
            acquired = slot.token.acquire(blocking=False)
            if acquired:
                control = JobControl(timeout=self._job_timeout)
                slot.control = control
                slot.state = JobState.RUNNING
        if not acquired:
            return self._skipped(server_name, kind)
        try:
            record = SyncJobRecord.start(server_name, kind)
            job = SyncJob(
                descriptor.server,
                kind,
                self._store,
                resolver=self._resolver,
                client_factory=self._client_factory,
                control=control,
            )
            try:
                final = job.run(record)
            except Exception as err:
                _logger.exception(
                    "%s sync of %s crashed", kind.value, server_name
                )
                final = record.finish(
                    Outcome.FAILED, error_detail=f"internal error: {err}"
                )
            assert final.outcome is not None
            with self._mutex:
                self._records.append(final)
            slot.last_state = _TERMINAL[final.outcome]
            return final
        finally:
            with self._mutex:
                slot.control = None
                slot.state = JobState.IDLE
                slot.token.release()
