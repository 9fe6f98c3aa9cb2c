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
"""Read settings sources and merge them into one flat settings mapping.

Several near-identical documents, for example a base file plus an
environment specific override, are merged in order: the later source wins
per field.
"""

from __future__ import annotations

import enum
import errno
import json
import logging
import sys
import typing

from .opener import Opener, FileOpener
from .settings import (
    LDAP_SERVERS,
    VERSION_KEY,
    SettingsDocument,
    parse_settings,
)

_logger = logging.getLogger(__name__)

_VALID_VERSIONS = ["v0"]

FlatSettings = dict[str, typing.Any]

_PASSWORD_KEYS = [("password", "password_ref"), ("password_ref", "password")]


class ConfigFormat(enum.Enum):
    JSON = "json"
    TOML = "toml"
    YAML = "yaml"


if sys.version_info >= (3, 11):

    def _load_toml(source: typing.IO) -> dict[str, typing.Any]:
        import tomllib

        return tomllib.load(source)

else:

    def _load_toml(source: typing.IO) -> dict[str, typing.Any]:
        import tomli

        return tomli.load(source)


def _load_yaml(source: typing.IO) -> dict[str, typing.Any]:
    import yaml

    try:
        return yaml.safe_load(source) or {}
    except yaml.YAMLError as err:
        raise ValueError(f"Invalid settings: {err}") from err


def _detect_format(fname: str) -> ConfigFormat:
    if fname.endswith(".toml"):
        return ConfigFormat.TOML
    if fname.endswith((".yaml", ".yml")):
        return ConfigFormat.YAML
    return ConfigFormat.JSON


def _check_version(data: typing.Mapping[str, typing.Any]) -> str:
    version = data.get(VERSION_KEY)
    if version is None:
        raise ValueError(f"Invalid settings: no {VERSION_KEY} key")
    elif version not in _VALID_VERSIONS:
        raise ValueError(f"Invalid settings: unknown version {version}")
    return version


def flatten(data: typing.Mapping[str, typing.Any]) -> FlatSettings:
    """Flatten one level of nested sections into dotted keys. A nested
    form like `{"nginx": {"ssl_certificate": "x"}}` becomes
    `{"nginx.ssl_certificate": "x"}`. Deeper values, such as the
    directory server definitions, are left as they are.
    """
    out: FlatSettings = {}
    for key, value in data.items():
        if key == VERSION_KEY:
            continue
        if isinstance(value, dict) and "." not in key:
            for subkey, subvalue in value.items():
                out[f"{key}.{subkey}"] = subvalue
        else:
            out[key] = value
    return out


def merge(
    sources: typing.Iterable[typing.Mapping[str, typing.Any]]
) -> FlatSettings:
    """Merge flat settings mappings. Later sources win per key. Directory
    servers are merged per server and per server attribute so that an
    override can change a single attribute of one server. The password
    sources of a server are exclusive: a later source setting one of them
    replaces the other.
    """
    merged: FlatSettings = {}
    for source in sources:
        for key, value in source.items():
            if key == LDAP_SERVERS and isinstance(value, dict):
                servers = merged.setdefault(LDAP_SERVERS, {})
                if not isinstance(servers, dict):
                    servers = merged[LDAP_SERVERS] = {}
                for name, srv in value.items():
                    current = servers.get(name)
                    if isinstance(current, dict) and isinstance(srv, dict):
                        current = dict(current)
                        for a, b in _PASSWORD_KEYS:
                            if a in srv:
                                current.pop(b, None)
                        servers[name] = {**current, **srv}
                    else:
                        servers[name] = srv
            else:
                merged[key] = value
    return merged


def load_source(
    source: typing.IO, config_format: typing.Optional[ConfigFormat] = None
) -> FlatSettings:
    """Load a single settings source and return it in flat form."""
    config_format = config_format or ConfigFormat.JSON
    if config_format == ConfigFormat.TOML:
        data = _load_toml(source)
    elif config_format == ConfigFormat.YAML:
        data = _load_yaml(source)
    else:
        data = json.load(source)
    if not isinstance(data, dict):
        raise ValueError("Invalid settings: top level must be a mapping")
    _check_version(data)
    return flatten(data)


def read_settings_files(
    fnames: typing.Sequence[str],
    *,
    opener: typing.Optional[Opener] = None,
) -> FlatSettings:
    """Read and merge the settings files named by fnames, in order.
    Missing files are skipped, but at least one must exist.
    """
    opener = opener or FileOpener()
    sources = []
    for fname in fnames:
        config_format = _detect_format(str(fname))
        try:
            with opener.open(fname) as fh:
                sources.append(load_source(fh, config_format))
        except OSError as err:
            if getattr(err, "errno", 0) != errno.ENOENT:
                raise
            _logger.debug("skipping missing settings source: %s", fname)
            continue
        _logger.debug("read settings source: %s", fname)
    if not sources:
        raise ValueError(f"None of the settings file paths exist: {fnames}")
    return merge(sources)


def load_settings(
    fnames: typing.Sequence[str],
    *,
    strict: bool = False,
    opener: typing.Optional[Opener] = None,
) -> SettingsDocument:
    """Read, merge and validate settings files."""
    return parse_settings(
        read_settings_files(fnames, opener=opener), strict=strict
    )
