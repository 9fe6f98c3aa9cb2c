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

import io
import json

import pytest

from omnicc import opener
from omnicc import sources
from omnicc.settings import Encryption

base_json = """
{
  "omnicc-config": "v0",
  "external_url": "https://gitlab.example.com",
  "nginx": {
    "ssl_certificate": "/etc/gitlab/ssl/cert.pem",
    "ssl_certificate_key": "/etc/gitlab/ssl/key.pem"
  },
  "gitlab_rails": {
    "smtp_port": 25,
    "ldap_enabled": true,
    "ldap_servers": {
      "main": {
        "host": "openldap",
        "base": "ou=users,dc=example,dc=com",
        "bind_dn": "uid=gitlab,ou=services,dc=example,dc=com",
        "password": "gitlab",
        "encryption": "simple_tls",
        "tls_options": {"ca_file": "/etc/gitlab/ssl/ca.pem"}
      },
      "backup": {
        "host": "backup-ldap",
        "base": "ou=users,dc=example,dc=com"
      }
    }
  }
}
"""

override_yaml = """
omnicc-config: v0
external_url: https://gitlab.staging.example.com
gitlab_rails:
  smtp_port: 587
  ldap_servers:
    main:
      host: openldap.staging
      password_ref: env:LDAP_MAIN_PASSWORD
"""

override_toml = """
"omnicc-config" = "v0"
"gitlab_rails.smtp_port" = 2525

[nginx]
redirect_http_to_https = true
"""


def _write(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content)
    return str(path)


def test_flatten():
    data = {
        "omnicc-config": "v0",
        "external_url": "https://x.example.com",
        "nginx": {"ssl_certificate": "a", "ssl_certificate_key": "b"},
        "gitlab_rails.lfs_enabled": True,
    }
    assert sources.flatten(data) == {
        "external_url": "https://x.example.com",
        "nginx.ssl_certificate": "a",
        "nginx.ssl_certificate_key": "b",
        "gitlab_rails.lfs_enabled": True,
    }


def test_flatten_keeps_server_mappings():
    data = {
        "gitlab_rails": {"ldap_servers": {"main": {"host": "h", "base": "b"}}}
    }
    flat = sources.flatten(data)
    assert flat["gitlab_rails.ldap_servers"] == {
        "main": {"host": "h", "base": "b"}
    }


def test_merge_later_wins():
    merged = sources.merge(
        [
            {"external_url": "https://a.example.com", "x.y": 1},
            {"external_url": "https://b.example.com"},
        ]
    )
    assert merged == {"external_url": "https://b.example.com", "x.y": 1}


def test_merge_directory_servers_per_attribute():
    key = "gitlab_rails.ldap_servers"
    merged = sources.merge(
        [
            {key: {"main": {"host": "a", "base": "b", "port": 1636}}},
            {key: {"main": {"host": "c"}, "extra": {"host": "e"}}},
        ]
    )
    assert merged[key] == {
        "main": {"host": "c", "base": "b", "port": 1636},
        "extra": {"host": "e"},
    }


def test_merge_password_sources_exclusive():
    key = "gitlab_rails.ldap_servers"
    merged = sources.merge(
        [
            {key: {"main": {"host": "a", "password": "x"}}},
            {key: {"main": {"password_ref": "file:/run/secrets/x"}}},
        ]
    )
    assert merged[key]["main"] == {
        "host": "a",
        "password_ref": "file:/run/secrets/x",
    }


def test_load_source_requires_version():
    with pytest.raises(ValueError):
        sources.load_source(io.StringIO(json.dumps({"external_url": "x"})))
    with pytest.raises(ValueError):
        sources.load_source(
            io.StringIO(json.dumps({"omnicc-config": "v9"})),
        )


def test_load_source_must_be_mapping():
    with pytest.raises(ValueError):
        sources.load_source(io.StringIO("[1, 2]"))


def test_read_settings_files_merges_formats(tmp_path):
    fnames = [
        _write(tmp_path, "gitlab.json", base_json),
        _write(tmp_path, "missing.json", base_json) + ".nope",
        _write(tmp_path, "staging.yaml", override_yaml),
        _write(tmp_path, "extra.toml", override_toml),
    ]
    data = sources.read_settings_files(fnames)
    assert data["external_url"] == "https://gitlab.staging.example.com"
    assert data["gitlab_rails.smtp_port"] == 2525
    assert data["nginx.redirect_http_to_https"] is True
    assert data["nginx.ssl_certificate"] == "/etc/gitlab/ssl/cert.pem"
    main = data["gitlab_rails.ldap_servers"]["main"]
    assert main["host"] == "openldap.staging"
    assert main["password_ref"] == "env:LDAP_MAIN_PASSWORD"
    assert "password" not in main
    assert main["encryption"] == "simple_tls"
    assert "backup" in data["gitlab_rails.ldap_servers"]


def test_read_settings_files_none_exist(tmp_path):
    with pytest.raises(ValueError):
        sources.read_settings_files([str(tmp_path / "nothing.json")])


def test_read_settings_files_truncated(tmp_path):
    half = base_json[: len(base_json) // 2]
    half_json = _write(tmp_path, "gitlab.json", half)
    with pytest.raises(ValueError):
        sources.read_settings_files([half_json])
    half_yaml = _write(
        tmp_path, "staging.yaml", "omnicc-config: v0\nnginx: [\n"
    )
    with pytest.raises(ValueError):
        sources.read_settings_files([half_yaml])


def test_load_settings(tmp_path):
    fnames = [
        _write(tmp_path, "gitlab.json", base_json),
        _write(tmp_path, "staging.yml", override_yaml),
    ]
    doc = sources.load_settings(fnames)
    assert doc.hostname == "gitlab.staging.example.com"
    assert doc.smtp.port == 587
    main = doc.directory_servers["main"]
    assert main.encryption == Encryption.SIMPLE_TLS
    assert main.port == 636
    assert main.ca_file == "/etc/gitlab/ssl/ca.pem"
    assert main.bind_password_ref.uri() == "env:LDAP_MAIN_PASSWORD"
    assert doc.directory_servers["backup"].bind_password_ref is None


def test_read_settings_with_env_opener(tmp_path):
    env = {"OMNICC_DOC": base_json}
    op = opener.FallbackOpener([opener.EnvOpener(env)])
    data = sources.read_settings_files(["env:OMNICC_DOC"], opener=op)
    assert data["external_url"] == "https://gitlab.example.com"
