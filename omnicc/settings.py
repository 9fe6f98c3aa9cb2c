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
"""Typed settings model.

A settings document arrives as a flat mapping of dotted keys, for example
`nginx.ssl_certificate`, mirroring the `nginx['ssl_certificate']` style
of the settings sources. parse_settings validates the mapping and returns
an immutable SettingsDocument. Validation is pure: it never touches the
file system or the network.
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import logging
import typing
import urllib.parse

import jsonschema  # type: ignore[import]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import]

from .credentials import SecretRef
from .errors import FieldError, InvalidSettings
from .schema.settings_v0_schema import SCHEMA

_logger = logging.getLogger(__name__)

VERSION_KEY = "omnicc-config"

DEFAULT_FULL_SYNC_CRON = "30 1 * * *"
DEFAULT_GROUP_SYNC_CRON = "0 * * * *"

LDAP_SERVERS = "gitlab_rails.ldap_servers"

_DEFAULT_ATTRIBUTES: dict[str, tuple[str, ...]] = {
    "username": ("uid", "userid", "sAMAccountName"),
    "email": ("mail", "email", "userPrincipalName"),
    "name": ("cn",),
    "first_name": ("givenName",),
    "last_name": ("sn",),
}


class Encryption(str, enum.Enum):
    PLAIN = "plain"
    SIMPLE_TLS = "simple_tls"
    START_TLS = "start_tls"

    @property
    def default_port(self) -> int:
        return 636 if self is Encryption.SIMPLE_TLS else 389


class VerifyMode(str, enum.Enum):
    NONE = "none"
    PEER = "peer"
    CLIENT_ONCE = "client_once"
    FAIL_IF_NO_PEER_CERT = "fail_if_no_peer_cert"


@dataclasses.dataclass(frozen=True)
class TLSSettings:
    cert_path: typing.Optional[str] = None
    key_path: typing.Optional[str] = None
    ca_path: typing.Optional[str] = None
    redirect_http_to_https: bool = False
    letsencrypt_enabled: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.cert_path and self.key_path)


@dataclasses.dataclass(frozen=True)
class SMTPSettings:
    enabled: bool = False
    address: typing.Optional[str] = None
    port: int = 25
    ssl: bool = False
    start_tls: bool = False
    openssl_verify_mode: VerifyMode = VerifyMode.PEER


@dataclasses.dataclass(frozen=True)
class RegistrySettings:
    enabled: bool = False
    external_url: typing.Optional[str] = None
    storage_path: typing.Optional[str] = None
    nginx_enabled: bool = False
    nginx_cert: typing.Optional[str] = None
    nginx_key: typing.Optional[str] = None


@dataclasses.dataclass(frozen=True)
class AttributeMap:
    """Directory attribute names to read for each local user field. Each
    field lists candidates, the first one present on an entry wins.
    """

    username: tuple[str, ...] = _DEFAULT_ATTRIBUTES["username"]
    email: tuple[str, ...] = _DEFAULT_ATTRIBUTES["email"]
    name: tuple[str, ...] = _DEFAULT_ATTRIBUTES["name"]
    first_name: tuple[str, ...] = _DEFAULT_ATTRIBUTES["first_name"]
    last_name: tuple[str, ...] = _DEFAULT_ATTRIBUTES["last_name"]

    def all_attributes(self) -> list[str]:
        out: list[str] = []
        for field in dataclasses.fields(self):
            for attr in getattr(self, field.name):
                if attr not in out:
                    out.append(attr)
        return out


@dataclasses.dataclass(frozen=True)
class DirectoryServerConfig:
    name: str
    host: str
    base_dn: str
    label: str = ""
    port: int = 389
    uid_attribute: str = "uid"
    bind_dn: str = ""
    bind_password_ref: typing.Optional[SecretRef] = None
    group_base_dn: str = ""
    admin_group: str = ""
    encryption: Encryption = Encryption.PLAIN
    verify_certificates: bool = True
    ca_file: typing.Optional[str] = None
    timeout_seconds: float = 10
    active_directory: bool = False
    user_filter: str = ""
    lowercase_usernames: bool = False
    allow_username_or_email_login: bool = False
    block_auto_created_users: bool = False
    attributes: AttributeMap = AttributeMap()

    @property
    def provider(self) -> str:
        """Name identifying users owned by this server locally."""
        return f"ldap{self.name}"

    @property
    def uses_tls(self) -> bool:
        return self.encryption is not Encryption.PLAIN


@dataclasses.dataclass(frozen=True)
class SyncSchedule:
    full_sync_cron: str = DEFAULT_FULL_SYNC_CRON
    group_sync_cron: str = DEFAULT_GROUP_SYNC_CRON


@dataclasses.dataclass(frozen=True)
class SettingsDocument:
    external_url: str
    ssh_port: int = 22
    tls: TLSSettings = TLSSettings()
    smtp: SMTPSettings = SMTPSettings()
    registry: RegistrySettings = RegistrySettings()
    lfs_enabled: bool = False
    ldap_enabled: bool = False
    directory_servers: typing.Mapping[str, DirectoryServerConfig] = (
        dataclasses.field(default_factory=dict)
    )
    sync_schedule: SyncSchedule = SyncSchedule()
    passthrough: typing.Mapping[str, typing.Any] = dataclasses.field(
        default_factory=dict, repr=False
    )
    warnings: tuple[str, ...] = ()

    @property
    def hostname(self) -> str:
        return _hostname(self.external_url) or ""

    def active_directory_servers(self) -> dict[str, DirectoryServerConfig]:
        """Return the directory servers that should be synchronised."""
        if not self.ldap_enabled:
            return {}
        return dict(self.directory_servers)


def _hostname(url: typing.Any) -> typing.Optional[str]:
    if not isinstance(url, str):
        return None
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return None
    return (parsed.hostname or "").lower() or None


def _schema_errors(data: typing.Mapping[str, typing.Any]) -> list[FieldError]:
    validator = jsonschema.Draft7Validator(SCHEMA)
    errors = []
    for err in validator.iter_errors(dict(data)):
        path = ".".join(str(p) for p in err.absolute_path)
        if err.validator == "required":
            missing = [
                p for p in err.validator_value if p not in (err.instance or {})
            ]
            for prop in missing:
                field = f"{path}.{prop}" if path else prop
                errors.append(FieldError(field, "required value is missing"))
            continue
        message = err.message
        if err.absolute_path and err.absolute_path[-1] == "password":
            # never echo a literal secret back
            message = f"invalid value ({err.validator})"
        errors.append(FieldError(path or "<document>", message))
    return sorted(errors)


def _check_pair(
    data: typing.Mapping[str, typing.Any], first: str, second: str
) -> list[FieldError]:
    a, b = data.get(first), data.get(second)
    if a and not b:
        return [FieldError(second, f"required when {first} is set")]
    if b and not a:
        return [FieldError(first, f"required when {second} is set")]
    return []


def _check_cron(field: str, value: typing.Any) -> list[FieldError]:
    if not isinstance(value, str):
        return []
    try:
        CronTrigger.from_crontab(value, timezone=datetime.timezone.utc)
    except ValueError as err:
        return [FieldError(field, f"invalid cron expression: {err}")]
    return []


def _check_server(name: str, srv: typing.Any) -> list[FieldError]:
    if not isinstance(srv, dict):
        return []
    prefix = f"{LDAP_SERVERS}.{name}"
    errors = []
    if "password" in srv and "password_ref" in srv:
        errors.append(
            FieldError(
                f"{prefix}.password", "may not be combined with password_ref"
            )
        )
    has_password = "password" in srv or "password_ref" in srv
    if srv.get("bind_dn") and not has_password:
        errors.append(
            FieldError(
                f"{prefix}.password_ref", "required when bind_dn is set"
            )
        )
    if has_password and not srv.get("bind_dn"):
        errors.append(
            FieldError(f"{prefix}.bind_dn", "required when a password is set")
        )
    if isinstance(srv.get("password_ref"), str):
        try:
            SecretRef.parse(srv["password_ref"])
        except ValueError as err:
            errors.append(FieldError(f"{prefix}.password_ref", str(err)))
    return errors


def _cross_field_errors(
    data: typing.Mapping[str, typing.Any]
) -> list[FieldError]:
    errors: list[FieldError] = []
    errors += _check_pair(
        data, "nginx.ssl_certificate", "nginx.ssl_certificate_key"
    )
    errors += _check_pair(
        data,
        "registry_nginx.ssl_certificate",
        "registry_nginx.ssl_certificate_key",
    )

    ext_url = data.get("external_url")
    if isinstance(ext_url, str) and ext_url and not _hostname(ext_url):
        errors.append(
            FieldError("external_url", "must be an http(s) URL with a host")
        )
    reg_url = data.get("registry_external_url")
    if isinstance(reg_url, str) and reg_url:
        if not _hostname(reg_url):
            errors.append(
                FieldError(
                    "registry_external_url",
                    "must be an http(s) URL with a host",
                )
            )
        elif _hostname(reg_url) == _hostname(ext_url):
            errors.append(
                FieldError(
                    "registry_external_url",
                    "must use a different hostname than external_url",
                )
            )
    if data.get("registry.enable") is True and not reg_url:
        errors.append(
            FieldError(
                "registry_external_url", "required when registry.enable is set"
            )
        )
    if data.get("gitlab_rails.smtp_enable") is True and not data.get(
        "gitlab_rails.smtp_address"
    ):
        errors.append(
            FieldError(
                "gitlab_rails.smtp_address",
                "required when gitlab_rails.smtp_enable is set",
            )
        )
    errors += _check_cron(
        "gitlab_rails.ldap_sync_worker_cron",
        data.get("gitlab_rails.ldap_sync_worker_cron"),
    )
    errors += _check_cron(
        "gitlab_rails.ldap_group_sync_worker_cron",
        data.get("gitlab_rails.ldap_group_sync_worker_cron"),
    )
    servers = data.get(LDAP_SERVERS)
    if isinstance(servers, dict):
        for name in sorted(servers):
            errors += _check_server(name, servers[name])
    return errors


def _attributes(attrs: typing.Mapping[str, typing.Any]) -> AttributeMap:
    values = {}
    for key, default in _DEFAULT_ATTRIBUTES.items():
        value = attrs.get(key, default)
        values[key] = (value,) if isinstance(value, str) else tuple(value)
    return AttributeMap(**values)


def _directory_server(
    name: str, srv: typing.Mapping[str, typing.Any]
) -> DirectoryServerConfig:
    encryption = Encryption(srv.get("encryption", Encryption.PLAIN.value))
    ref: typing.Optional[SecretRef] = None
    if "password_ref" in srv:
        ref = SecretRef.parse(srv["password_ref"])
    elif "password" in srv:
        ref = SecretRef.literal(srv["password"])
    ca_file = srv.get("tls_options", {}).get("ca_file") or srv.get("ca_file")
    if encryption is Encryption.PLAIN:
        # no TLS, so no certificate to verify against
        ca_file = None
    return DirectoryServerConfig(
        name=name,
        host=srv["host"],
        base_dn=srv["base"],
        label=srv.get("label", name),
        port=int(srv.get("port", encryption.default_port)),
        uid_attribute=srv.get("uid", "uid"),
        bind_dn=srv.get("bind_dn", ""),
        bind_password_ref=ref,
        group_base_dn=srv.get("group_base", ""),
        admin_group=srv.get("admin_group", ""),
        encryption=encryption,
        verify_certificates=bool(srv.get("verify_certificates", True)),
        ca_file=ca_file or None,
        timeout_seconds=srv.get("timeout", 10),
        active_directory=bool(srv.get("active_directory", False)),
        user_filter=srv.get("user_filter", ""),
        lowercase_usernames=bool(srv.get("lowercase_usernames", False)),
        allow_username_or_email_login=bool(
            srv.get("allow_username_or_email_login", False)
        ),
        block_auto_created_users=bool(
            srv.get("block_auto_created_users", False)
        ),
        attributes=_attributes(srv.get("attributes", {})),
    )


def parse_settings(
    data: typing.Mapping[str, typing.Any], *, strict: bool = False
) -> SettingsDocument:
    """Validate a flat settings mapping and return a SettingsDocument.

    Every problem found is reported in a single InvalidSettings exception.
    Unknown keys are kept in the passthrough mapping and produce a warning,
    unless strict is true, in which case they are errors.
    """
    known = set(SCHEMA["properties"]) | {VERSION_KEY}
    unknown = sorted(k for k in data if k not in known)
    errors = _schema_errors(data) + _cross_field_errors(data)
    warnings = []
    if strict:
        errors += [FieldError(k, "unknown setting") for k in unknown]
    else:
        for key in unknown:
            warnings.append(f"unknown setting {key} passed through")
    if errors:
        raise InvalidSettings(errors)

    smtp_ssl = bool(data.get("gitlab_rails.smtp_ssl", False))
    smtp_starttls = bool(
        data.get("gitlab_rails.smtp_enable_starttls_auto", False)
    )
    if smtp_ssl and smtp_starttls:
        warnings.append(
            "gitlab_rails.smtp_ssl and gitlab_rails.smtp_enable_starttls_auto"
            " are both enabled; these modes are usually mutually exclusive"
        )
    for warning in warnings:
        _logger.warning("%s", warning)

    servers = data.get(LDAP_SERVERS) or {}
    return SettingsDocument(
        external_url=data["external_url"],
        ssh_port=data.get("gitlab_rails.gitlab_shell_ssh_port", 22),
        tls=TLSSettings(
            cert_path=data.get("nginx.ssl_certificate") or None,
            key_path=data.get("nginx.ssl_certificate_key") or None,
            ca_path=data.get("nginx.ssl_client_certificate") or None,
            redirect_http_to_https=data.get(
                "nginx.redirect_http_to_https", False
            ),
            letsencrypt_enabled=data.get("letsencrypt.enable", False),
        ),
        smtp=SMTPSettings(
            enabled=data.get("gitlab_rails.smtp_enable", False),
            address=data.get("gitlab_rails.smtp_address") or None,
            port=data.get("gitlab_rails.smtp_port", 25),
            ssl=smtp_ssl,
            start_tls=smtp_starttls,
            openssl_verify_mode=VerifyMode(
                data.get("gitlab_rails.smtp_openssl_verify_mode", "peer")
            ),
        ),
        registry=RegistrySettings(
            enabled=data.get("registry.enable", False),
            external_url=data.get("registry_external_url") or None,
            storage_path=data.get("gitlab_rails.registry_path") or None,
            nginx_enabled=data.get("registry_nginx.enable", False),
            nginx_cert=data.get("registry_nginx.ssl_certificate") or None,
            nginx_key=data.get("registry_nginx.ssl_certificate_key") or None,
        ),
        lfs_enabled=data.get("gitlab_rails.lfs_enabled", False),
        ldap_enabled=data.get("gitlab_rails.ldap_enabled", False),
        directory_servers={
            name: _directory_server(name, servers[name])
            for name in sorted(servers)
        },
        sync_schedule=SyncSchedule(
            full_sync_cron=data.get(
                "gitlab_rails.ldap_sync_worker_cron", DEFAULT_FULL_SYNC_CRON
            ),
            group_sync_cron=data.get(
                "gitlab_rails.ldap_group_sync_worker_cron",
                DEFAULT_GROUP_SYNC_CRON,
            ),
        ),
        passthrough={k: data[k] for k in unknown},
        warnings=tuple(warnings),
    )
