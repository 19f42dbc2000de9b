# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for SMTP connection settings.

This module reads :class:`ConnectionConfig` and :class:`Credentials` from
INI-style configuration files.

Example:
    Configuration file format (smtp.ini)::

        [smtp]
        host = smtp.example.com
        port = 465
        ssl = true
        tls = false
        connection_timeout_ms = 10000
        read_timeout_ms = 30000
        write_timeout_ms = 30000
        debug = false
        local_hostname = mail.example.com
        trust_all_certs = false

        # Session properties applied verbatim (keys keep their case)
        [properties]
        mail.smtps.quitwait = true

        [auth]
        username = mailer
        password = secret

    Loading it::

        config = load_connection_config("smtp.ini")
        credentials = load_credentials("smtp.ini")
"""

from __future__ import annotations

import configparser
from pathlib import Path
from typing import Any

from .exceptions import ConfigurationError
from .logger import get_logger
from .models import ConnectionConfig, Credentials

SMTP_SECTION = "smtp"
PROPERTIES_SECTION = "properties"
AUTH_SECTION = "auth"

# INI option -> ConnectionConfig field
_OPTION_FIELDS = {
    "host": "host",
    "port": "port",
    "ssl": "use_ssl",
    "tls": "use_tls",
    "connection_timeout_ms": "connection_timeout_ms",
    "read_timeout_ms": "read_timeout_ms",
    "write_timeout_ms": "write_timeout_ms",
    "debug": "debug",
    "local_hostname": "local_hostname",
    "trust_all_certs": "trust_all_certs",
}

logger = get_logger("config_loader")


def _read(config_path: str | Path) -> configparser.ConfigParser:
    if not Path(config_path).exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    parser = configparser.ConfigParser(interpolation=None)
    # Property keys such as mail.smtp.socketFactory are case sensitive
    parser.optionxform = str
    try:
        parser.read(config_path, encoding="utf-8")
    except configparser.Error as exc:
        raise ConfigurationError(f"Cannot parse {config_path}: {exc}") from exc
    return parser


def load_connection_config(config_path: str | Path) -> ConnectionConfig:
    """Load the ``[smtp]`` and ``[properties]`` sections of an INI file.

    Empty values are treated as unset. Unknown options in ``[smtp]`` are
    logged and ignored.

    Args:
        config_path: Path to the INI file.

    Returns:
        The validated connection configuration.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the ``[smtp]`` section is missing or invalid.
    """
    parser = _read(config_path)
    if not parser.has_section(SMTP_SECTION):
        raise ConfigurationError(f"No [{SMTP_SECTION}] section in {config_path}")

    values: dict[str, Any] = {}
    for option, raw in parser.items(SMTP_SECTION):
        field = _OPTION_FIELDS.get(option.lower())
        if field is None:
            logger.warning("Ignoring unknown option in [%s] section: %s", SMTP_SECTION, option)
            continue
        value = raw.strip()
        if value:
            values[field] = value

    if parser.has_section(PROPERTIES_SECTION):
        values["extra_properties"] = {key: value.strip() for key, value in parser.items(PROPERTIES_SECTION)}

    config = ConnectionConfig(**values)
    logger.info("Loaded SMTP configuration for %s:%d from %s", config.host, config.port, config_path)
    return config


def load_credentials(config_path: str | Path) -> Credentials | None:
    """Load the ``[auth]`` section of an INI file.

    Returns:
        The credentials, or ``None`` when there is no ``[auth]`` section.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the section lacks a username.
    """
    parser = _read(config_path)
    if not parser.has_section(AUTH_SECTION):
        return None
    username = parser.get(AUTH_SECTION, "username", fallback="").strip()
    password = parser.get(AUTH_SECTION, "password", fallback="")
    return Credentials(username=username, password=password)
