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
"""Project a SettingsDocument into per-service configuration artifacts.

Rendering is a pure function of its inputs: the same document and the same
resolved secrets always produce byte-identical artifacts. Writing the
artifacts and reloading services is left to the caller.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import typing
import urllib.parse

from .confblock import ConfigBlock
from .credentials import ResolvedSecret
from .errors import RenderError
from .settings import DirectoryServerConfig, SettingsDocument

APPLICATION = "application"
NGINX = "nginx"
SMTP = "smtp"
REGISTRY = "registry"
LDAP = "ldap"

SERVICES = (APPLICATION, NGINX, SMTP, REGISTRY)

Secrets = typing.Mapping[str, typing.Optional[ResolvedSecret]]


@dataclasses.dataclass(frozen=True)
class Artifact:
    service: str
    name: str
    content: bytes
    digest: str

    @property
    def key(self) -> str:
        if not self.name:
            return self.service
        return f"{self.service}/{self.name}"


@dataclasses.dataclass(frozen=True)
class DirectoryDescriptor:
    """The rendered form of one directory server: its connection settings
    for the sync scheduler plus the artifact describing it. Holds only the
    secret reference, never the secret.
    """

    server: DirectoryServerConfig
    artifact: Artifact

    @property
    def name(self) -> str:
        return self.server.name


@dataclasses.dataclass
class RenderResult:
    artifacts: dict[str, Artifact] = dataclasses.field(default_factory=dict)
    descriptors: dict[str, DirectoryDescriptor] = dataclasses.field(
        default_factory=dict
    )

    def add(self, artifact: Artifact) -> None:
        if artifact.key in self.artifacts:
            raise RenderError(f"duplicate artifact: {artifact.key}")
        self.artifacts[artifact.key] = artifact


def _is_https(url: str) -> bool:
    return urllib.parse.urlparse(url).scheme == "https"


def _host(url: typing.Optional[str]) -> typing.Optional[str]:
    if not url:
        return None
    return urllib.parse.urlparse(url).hostname


class Renderer:
    def __init__(self, digest_key: typing.Optional[bytes] = None) -> None:
        self._digest_key = digest_key

    def render(
        self, doc: SettingsDocument, secrets: typing.Optional[Secrets]
    ) -> RenderResult:
        """Render all artifacts. Directory servers are rendered only when
        named in `secrets`; the value is None for servers that bind
        anonymously. If `secrets` is None every active directory server is
        rendered and no secret contributes to the digests.
        """
        if secrets is None:
            secrets = dict.fromkeys(doc.active_directory_servers())
        else:
            self._check_secrets(doc, secrets)
        self._check(doc)
        result = RenderResult()
        result.add(self._application_artifact(doc))
        result.add(self._artifact(NGINX, "", self.nginx(doc)))
        result.add(self._artifact(SMTP, "", self.smtp(doc)))
        result.add(self._artifact(REGISTRY, "", self.registry(doc)))
        for name, server in sorted(doc.active_directory_servers().items()):
            if name not in secrets:
                continue
            artifact = self._artifact(
                LDAP, name, self.directory(server), secrets[name]
            )
            result.add(artifact)
            result.descriptors[name] = DirectoryDescriptor(server, artifact)
        return result

    def _check(self, doc: SettingsDocument) -> None:
        tls = doc.tls
        if bool(tls.cert_path) != bool(tls.key_path):
            raise RenderError("TLS certificate and key are not paired")

    def _check_secrets(self, doc: SettingsDocument, secrets: Secrets) -> None:
        servers = doc.active_directory_servers()
        for name, secret in secrets.items():
            if name not in servers:
                raise RenderError(f"secret for unknown server: {name}")
            needs_secret = servers[name].bind_password_ref is not None
            if needs_secret and secret is None:
                raise RenderError(f"missing resolved secret for {name}")
            if secret is not None and secret.wiped:
                raise RenderError(f"resolved secret for {name} was wiped")

    def _application_artifact(self, doc: SettingsDocument) -> Artifact:
        block = self.application(doc)
        if not doc.passthrough:
            return self._artifact(APPLICATION, "", block)
        raw = json.dumps(doc.passthrough, sort_keys=True, default=str)
        with ResolvedSecret(raw) as values:
            return self._artifact(APPLICATION, "", block, values)

    def _artifact(
        self,
        service: str,
        name: str,
        block: ConfigBlock,
        secret: typing.Optional[ResolvedSecret] = None,
    ) -> Artifact:
        content = block.dumps()
        hasher = hashlib.sha256(content)
        if secret is not None:
            hasher.update(b"\0")
            hasher.update(secret.digest(self._digest_key).encode("ascii"))
        return Artifact(service, name, content, hasher.hexdigest())

    def application(self, doc: SettingsDocument) -> ConfigBlock:
        block = ConfigBlock()
        block.set("gitlab", "external_url", doc.external_url)
        block.set("gitlab", "host", doc.hostname)
        block.set("gitlab", "https", _is_https(doc.external_url))
        block.set("gitlab", "ssh_port", doc.ssh_port)
        block.set("gitlab", "lfs_enabled", doc.lfs_enabled)
        block.set("registry", "enabled", doc.registry.enabled)
        block.set("registry", "host", _host(doc.registry.external_url))
        block.set("registry", "path", doc.registry.storage_path)
        servers = doc.active_directory_servers()
        block.set("ldap", "enabled", doc.ldap_enabled)
        if servers:
            block.set("ldap", "servers", sorted(servers))
            block.set(
                "ldap", "sync_worker_cron", doc.sync_schedule.full_sync_cron
            )
            block.set(
                "ldap",
                "group_sync_worker_cron",
                doc.sync_schedule.group_sync_cron,
            )
        # unknown settings may hold secrets, so only their names are written
        if doc.passthrough:
            block.set("passthrough", "keys", sorted(doc.passthrough))
        return block

    def nginx(self, doc: SettingsDocument) -> ConfigBlock:
        tls = doc.tls
        https = _is_https(doc.external_url)
        block = ConfigBlock()
        block.set("server", "server_name", doc.hostname)
        block.set("server", "listen", "443 ssl" if https else "80")
        block.set(
            "server", "redirect_http_to_https", tls.redirect_http_to_https
        )
        block.set("tls", "letsencrypt", tls.letsencrypt_enabled)
        if https:
            block.set("tls", "ssl_certificate", tls.cert_path)
            block.set("tls", "ssl_certificate_key", tls.key_path)
            block.set("tls", "ssl_client_certificate", tls.ca_path)
        return block

    def smtp(self, doc: SettingsDocument) -> ConfigBlock:
        smtp = doc.smtp
        block = ConfigBlock()
        block.set("smtp", "enabled", smtp.enabled)
        if smtp.enabled:
            block.set("smtp", "address", smtp.address)
            block.set("smtp", "port", smtp.port)
            block.set("smtp", "tls", smtp.ssl)
            block.set("smtp", "enable_starttls_auto", smtp.start_tls)
            block.set(
                "smtp", "openssl_verify_mode", smtp.openssl_verify_mode.value
            )
        return block

    def registry(self, doc: SettingsDocument) -> ConfigBlock:
        reg = doc.registry
        block = ConfigBlock()
        block.set("registry", "enabled", reg.enabled)
        if not reg.enabled:
            return block
        block.set("registry", "external_url", reg.external_url)
        block.set("registry", "host", _host(reg.external_url))
        block.set("registry", "storage_path", reg.storage_path)
        block.set("registry_nginx", "enabled", reg.nginx_enabled)
        if reg.nginx_enabled:
            # the registry proxy falls back to the main certificate
            cert, key = reg.nginx_cert, reg.nginx_key
            if not cert:
                cert, key = doc.tls.cert_path, doc.tls.key_path
            server_name = _host(reg.external_url)
            block.set("registry_nginx", "server_name", server_name)
            block.set("registry_nginx", "ssl_certificate", cert)
            block.set("registry_nginx", "ssl_certificate_key", key)
        return block

    def directory(self, server: DirectoryServerConfig) -> ConfigBlock:
        block = ConfigBlock()
        block.set("server", "name", server.name)
        block.set("server", "label", server.label)
        block.set("server", "host", server.host)
        block.set("server", "port", server.port)
        block.set("server", "encryption", server.encryption.value)
        if server.uses_tls:
            block.set(
                "server", "verify_certificates", server.verify_certificates
            )
            block.set("server", "ca_file", server.ca_file)
        block.set("server", "timeout", server.timeout_seconds)
        ref = server.bind_password_ref
        block.set("bind", "bind_dn", server.bind_dn or None)
        block.set(
            "bind",
            "bind_password_source",
            ref.uri() if ref is not None else "anonymous",
        )
        block.set("search", "uid", server.uid_attribute)
        block.set("search", "base", server.base_dn)
        block.set("search", "group_base", server.group_base_dn or None)
        block.set("search", "admin_group", server.admin_group or None)
        block.set("search", "user_filter", server.user_filter or None)
        block.set("search", "active_directory", server.active_directory)
        block.set("users", "lowercase_usernames", server.lowercase_usernames)
        block.set(
            "users",
            "allow_username_or_email_login",
            server.allow_username_or_email_login,
        )
        block.set(
            "users",
            "block_auto_created_users",
            server.block_auto_created_users,
        )
        attrs = server.attributes
        block.set("attributes", "username", attrs.username)
        block.set("attributes", "email", attrs.email)
        block.set("attributes", "name", attrs.name)
        block.set("attributes", "first_name", attrs.first_name)
        block.set("attributes", "last_name", attrs.last_name)
        return block


def render(
    doc: SettingsDocument, secrets: typing.Optional[Secrets]
) -> RenderResult:
    """Render using a renderer with the default digest key."""
    return Renderer().render(doc, secrets)
