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
"""JSON schema describing the flattened (dotted key) form of a v0
settings document. Cross-field rules are checked by omnicc.settings.
"""

_PORT = {"type": "integer", "minimum": 1, "maximum": 65535}
_BOOL = {"type": "boolean"}
_STR = {"type": "string"}
_OPT_STR = {"type": ["string", "null"]}
_ATTR = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 1,
        },
    ]
}

DIRECTORY_SERVER = {
    "description": "One named connection to a directory (LDAP) server.",
    "type": "object",
    "properties": {
        "label": _STR,
        "host": {"type": "string", "minLength": 1},
        "port": _PORT,
        "uid": {"type": "string", "minLength": 1},
        "bind_dn": _STR,
        "password": _STR,
        "password_ref": {"type": "string", "pattern": "^(file|env):.+"},
        "base": {"type": "string", "minLength": 1},
        "group_base": _STR,
        "admin_group": _STR,
        "encryption": {"enum": ["plain", "simple_tls", "start_tls"]},
        "verify_certificates": _BOOL,
        "ca_file": _STR,
        "tls_options": {
            "type": "object",
            "properties": {"ca_file": _STR},
        },
        "timeout": {"type": "number", "exclusiveMinimum": 0},
        "active_directory": _BOOL,
        "user_filter": _STR,
        "lowercase_usernames": _BOOL,
        "allow_username_or_email_login": _BOOL,
        "block_auto_created_users": _BOOL,
        "attributes": {
            "type": "object",
            "properties": {
                "username": _ATTR,
                "email": _ATTR,
                "name": _ATTR,
                "first_name": _ATTR,
                "last_name": _ATTR,
            },
            "additionalProperties": False,
        },
    },
    "required": ["host", "base"],
    "additionalProperties": False,
}

SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "omnicc settings (flattened)",
    "type": "object",
    "properties": {
        "external_url": {"type": "string", "minLength": 1},
        "gitlab_rails.gitlab_shell_ssh_port": _PORT,
        "letsencrypt.enable": _BOOL,
        "nginx.redirect_http_to_https": _BOOL,
        "nginx.ssl_certificate": _OPT_STR,
        "nginx.ssl_certificate_key": _OPT_STR,
        "nginx.ssl_client_certificate": _OPT_STR,
        "gitlab_rails.smtp_enable": _BOOL,
        "gitlab_rails.smtp_address": _OPT_STR,
        "gitlab_rails.smtp_port": _PORT,
        "gitlab_rails.smtp_ssl": _BOOL,
        "gitlab_rails.smtp_enable_starttls_auto": _BOOL,
        "gitlab_rails.smtp_openssl_verify_mode": {
            "enum": ["none", "peer", "client_once", "fail_if_no_peer_cert"]
        },
        "registry_external_url": _OPT_STR,
        "gitlab_rails.registry_path": _OPT_STR,
        "registry.enable": _BOOL,
        "registry_nginx.enable": _BOOL,
        "registry_nginx.ssl_certificate": _OPT_STR,
        "registry_nginx.ssl_certificate_key": _OPT_STR,
        "gitlab_rails.lfs_enabled": _BOOL,
        "gitlab_rails.ldap_enabled": _BOOL,
        "gitlab_rails.ldap_servers": {
            "type": "object",
            "additionalProperties": DIRECTORY_SERVER,
        },
        "gitlab_rails.ldap_sync_worker_cron": {
            "type": "string",
            "minLength": 1,
        },
        "gitlab_rails.ldap_group_sync_worker_cron": {
            "type": "string",
            "minLength": 1,
        },
    },
    "required": ["external_url"],
    "additionalProperties": True,
}
