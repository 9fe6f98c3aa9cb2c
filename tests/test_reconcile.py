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

import pytest

from omnicc import identity
from omnicc import reconcile
from omnicc import scheduler
from omnicc.credentials import SecretResolver
from omnicc.errors import ApplyError, InvalidSettings
from omnicc.opener import EnvOpener, FallbackOpener
from .test_settings import base_settings, ldap_server


class FakeApplier:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.applied = []
        self.removed = []

    def apply(self, artifact):
        if artifact.key in self.fail:
            raise ApplyError(artifact.key, "disk full")
        self.applied.append(artifact.key)

    def remove(self, service, name=""):
        self.removed.append(f"{service}/{name}" if name else service)


def _settings(**servers):
    data = base_settings()
    if servers:
        data["gitlab_rails.ldap_servers"] = servers
    return data


def _bound(var):
    return ldap_server(bind_dn="uid=gitlab", password_ref=f"env:{var}")


def _reconciler(applier, env, **kwargs):
    resolver = SecretResolver(FallbackOpener([EnvOpener(env)]))
    return reconcile.Reconciler(applier, resolver=resolver, **kwargs)


ALL = ["application", "ldap/main", "nginx", "registry", "smtp"]


def test_first_pass_applies_everything():
    applier = FakeApplier()
    rec = _reconciler(applier, {"LDAP_MAIN_PASSWORD": "pw"})
    result = rec.reconcile(base_settings())
    assert result.status == reconcile.PassStatus.APPLIED
    assert list(result.changed) == ALL
    assert sorted(applier.applied) == ALL
    assert all(v == reconcile.APPLIED for v in result.services.values())
    assert result.directory_servers == {"main": reconcile.APPLIED}
    assert result.errors == {}
    assert sorted(rec.applied()) == ALL


def test_second_pass_no_change():
    applier = FakeApplier()
    rec = _reconciler(applier, {"LDAP_MAIN_PASSWORD": "pw"})
    rec.reconcile(base_settings())
    applier.applied.clear()
    result = rec.reconcile(base_settings())
    assert result.status == reconcile.PassStatus.NO_CHANGE
    assert result.changed == ()
    assert applier.applied == []
    assert set(result.services.values()) == {reconcile.UNCHANGED}


def test_only_changed_artifacts_applied():
    applier = FakeApplier()
    rec = _reconciler(applier, {"LDAP_MAIN_PASSWORD": "pw"})
    rec.reconcile(base_settings())
    applier.applied.clear()
    result = rec.reconcile(
        base_settings(**{"gitlab_rails.smtp_address": "relay.example.com"})
    )
    assert result.status == reconcile.PassStatus.APPLIED
    assert applier.applied == ["smtp"]
    assert result.services["smtp"] == reconcile.APPLIED
    assert result.services["nginx"] == reconcile.UNCHANGED


def test_secret_change_reapplies_directory_artifact():
    env = {"LDAP_MAIN_PASSWORD": "pw"}
    applier = FakeApplier()
    rec = _reconciler(applier, env)
    rec.reconcile(base_settings())
    applier.applied.clear()
    env["LDAP_MAIN_PASSWORD"] = "rotated"
    result = rec.reconcile(base_settings())
    assert applier.applied == ["ldap/main"]
    assert result.directory_servers["main"] == reconcile.APPLIED


def test_secret_failure_is_isolated():
    applier = FakeApplier()
    rec = _reconciler(applier, {"LDAP_B_PASSWORD": "pw"})
    result = rec.reconcile(
        _settings(a=_bound("LDAP_A_PASSWORD"), b=_bound("LDAP_B_PASSWORD"))
    )
    assert result.status == reconcile.PassStatus.FAILED
    assert result.directory_servers == {
        "a": reconcile.SECRET_UNAVAILABLE,
        "b": reconcile.APPLIED,
    }
    assert "ldap/a" in result.errors
    assert "ldap/a" not in applier.applied
    for key in ("application", "nginx", "smtp", "registry", "ldap/b"):
        assert result.services[key] == reconcile.APPLIED
        assert key in applier.applied


def test_failed_secret_holds_previous_artifact():
    env = {"LDAP_MAIN_PASSWORD": "pw"}
    applier = FakeApplier()
    rec = _reconciler(applier, env)
    rec.reconcile(base_settings())
    del env["LDAP_MAIN_PASSWORD"]
    result = rec.reconcile(base_settings())
    assert result.status == reconcile.PassStatus.FAILED
    assert result.services["ldap/main"] == reconcile.SECRET_UNAVAILABLE
    assert applier.removed == []
    assert "ldap/main" in rec.applied()
    # the secret is available again but nothing changed
    env["LDAP_MAIN_PASSWORD"] = "pw"
    applier.applied.clear()
    result = rec.reconcile(base_settings())
    assert result.status == reconcile.PassStatus.NO_CHANGE
    assert applier.applied == []


def test_error_text_does_not_leak_secret():
    applier = FakeApplier(fail=["ldap/main"])
    rec = _reconciler(applier, {"LDAP_MAIN_PASSWORD": "hunter2"})
    result = rec.reconcile(base_settings())
    assert "hunter2" not in repr(result)


def test_apply_failure_is_isolated():
    applier = FakeApplier(fail=["nginx"])
    rec = _reconciler(applier, {"LDAP_MAIN_PASSWORD": "pw"})
    result = rec.reconcile(base_settings())
    assert result.status == reconcile.PassStatus.FAILED
    assert result.services["nginx"] == reconcile.FAILED
    assert result.errors == {"nginx": "disk full"}
    assert "nginx" not in result.changed
    assert "nginx" not in rec.applied()
    assert result.services["smtp"] == reconcile.APPLIED
    # retried on the next pass
    applier.fail.clear()
    applier.applied.clear()
    result = rec.reconcile(base_settings())
    assert applier.applied == ["nginx"]
    assert result.status == reconcile.PassStatus.APPLIED


def test_removed_server():
    env = {"LDAP_A_PASSWORD": "pw", "LDAP_B_PASSWORD": "pw"}
    applier = FakeApplier()
    rec = _reconciler(applier, env)
    rec.reconcile(
        _settings(a=_bound("LDAP_A_PASSWORD"), b=_bound("LDAP_B_PASSWORD"))
    )
    result = rec.reconcile(_settings(a=_bound("LDAP_A_PASSWORD")))
    assert applier.removed == ["ldap/b"]
    assert result.directory_servers == {
        "a": reconcile.UNCHANGED,
        "b": reconcile.REMOVED,
    }
    assert "ldap/b" not in rec.applied()
    assert "ldap/b" in result.changed


def test_invalid_settings_apply_nothing():
    applier = FakeApplier()
    rec = _reconciler(applier, {"LDAP_MAIN_PASSWORD": "pw"})
    data = base_settings()
    del data["nginx.ssl_certificate_key"]
    with pytest.raises(InvalidSettings):
        rec.reconcile(data)
    assert applier.applied == []
    assert rec.applied() == {}


def test_scheduler_follows_servers():
    env = {"LDAP_A_PASSWORD": "pw"}
    sched = scheduler.SyncScheduler(identity.MemoryIdentityStore())
    rec = _reconciler(FakeApplier(), env, scheduler=sched)
    rec.reconcile(
        _settings(a=_bound("LDAP_A_PASSWORD"), b=_bound("LDAP_B_PASSWORD"))
    )
    assert sched.job_ids() == [
        "ldap-full-sync:a",
        "ldap-group-sync:a",
    ]
    env["LDAP_B_PASSWORD"] = "pw"
    rec.reconcile(
        _settings(a=_bound("LDAP_A_PASSWORD"), b=_bound("LDAP_B_PASSWORD"))
    )
    assert sched.job_ids() == [
        "ldap-full-sync:a",
        "ldap-full-sync:b",
        "ldap-group-sync:a",
        "ldap-group-sync:b",
    ]
    rec.reconcile(_settings(b=_bound("LDAP_B_PASSWORD")))
    assert sched.job_ids() == [
        "ldap-full-sync:b",
        "ldap-group-sync:b",
    ]


def test_reconcile_files(tmp_path):
    path = tmp_path / "gitlab.yaml"
    path.write_text(
        "omnicc-config: v0\n"
        "external_url: http://gitlab.local\n"
        "gitlab_rails.ldap_enabled: false\n"
    )
    applier = FakeApplier()
    rec = _reconciler(applier, {})
    result = rec.reconcile_files([str(path)])
    assert result.status == reconcile.PassStatus.APPLIED
    assert sorted(applier.applied) == [
        "application",
        "nginx",
        "registry",
        "smtp",
    ]
    assert result.directory_servers == {}
