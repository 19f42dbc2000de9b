# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP transport built from a session property mapping.

:class:`SmtpTransport` reads the ``mail.<protocol>.<key>`` properties
produced by :meth:`ConnectionConfig.session_properties` and turns them into
a single ``aiosmtplib.SMTP`` client. Each transport owns one connection:
it is opened by :meth:`SmtpTransport.connect` and always released by
:meth:`SmtpTransport.close`, including when the async context manager exits
with an exception.

TLS behavior:
- ``ssl.enable``: implicit TLS from the first byte (SMTPS)
- ``starttls.required``: upgrade with STARTTLS, fail if unsupported
- ``starttls.enable`` alone: upgrade with STARTTLS when offered
- neither: plain SMTP

When ``mail.debug`` is ``"true"`` every server reply (greeting, EHLO
extensions, AUTH, submission) is logged at INFO level.

Example:
    Sending one message::

        async with SmtpTransport(config.session_properties("mail.example.com")) as transport:
            await transport.connect(credentials)
            await transport.send_message(email_message)
"""

from __future__ import annotations

import asyncio
import ssl
from collections.abc import Iterable, Mapping
from email.message import EmailMessage

import aiosmtplib

from .exceptions import ConfigurationError, TransportError
from .logger import get_logger
from .models import Credentials

TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}

logger = get_logger("transport")


def _refused_error(refused: Mapping[str, tuple[int, str]]) -> TransportError:
    details = ", ".join(f"{address} ({code} {text})" for address, (code, text) in refused.items())
    first_code = next(iter(refused.values()))[0]
    return TransportError(
        f"Recipients refused: {details}",
        smtp_code=first_code,
        refused={address: (code, text) for address, (code, text) in refused.items()},
    )


def _transport_error(exc: BaseException) -> TransportError:
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        return _refused_error({err.recipient: (err.code, err.message) for err in exc.recipients})
    smtp_code = getattr(exc, "code", None)
    if not isinstance(smtp_code, int):
        smtp_code = None
    message = str(exc) or exc.__class__.__name__
    return TransportError(message, smtp_code=smtp_code)


class SmtpTransport:
    """One SMTP(S) connection configured from session properties.

    Attributes:
        properties: The session property mapping this transport was built from.
        protocol: ``"smtp"`` or ``"smtps"``.
    """

    def __init__(self, properties: Mapping[str, str]):
        self.properties = dict(properties)
        self.protocol = self.properties.get("mail.transport.protocol", "smtp")
        self._smtp: aiosmtplib.SMTP | None = None

    # ------------------------------------------------------------------ properties
    def _get(self, key: str, default: str | None = None) -> str | None:
        return self.properties.get(f"mail.{self.protocol}.{key}", default)

    def _flag(self, key: str) -> bool:
        return str(self._get(key, "false")).strip().lower() == "true"

    def _int(self, key: str, default: str | None = None) -> int | None:
        value = self._get(key, default)
        if value is None or not str(value).strip():
            return None
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"mail.{self.protocol}.{key} must be an integer, got {value!r}") from None

    def _seconds(self, key: str) -> float | None:
        millis = self._int(key)
        # Non-positive values mean "no timeout"
        if millis is None or millis <= 0:
            return None
        return millis / 1000

    @property
    def host(self) -> str:
        host = self._get("host")
        if not host:
            raise TransportError(f"mail.{self.protocol}.host is not set")
        return host

    @property
    def port(self) -> int:
        return self._int("port", "465" if self.protocol == "smtps" else "25")

    @property
    def use_tls(self) -> bool:
        return self._flag("ssl.enable")

    @property
    def start_tls(self) -> bool | None:
        if self.use_tls:
            return False
        if self._flag("starttls.required"):
            return True
        if self._flag("starttls.enable"):
            return None
        return False

    @property
    def quit_wait(self) -> bool:
        return self._flag("quitwait")

    @property
    def debug(self) -> bool:
        return self.properties.get("mail.debug", "false").strip().lower() == "true" or self._flag("debug")

    @property
    def is_connected(self) -> bool:
        return self._smtp is not None and self._smtp.is_connected

    def tls_context(self) -> ssl.SSLContext:
        """Build the TLS context from ``ssl.protocols`` and ``ssl.trust``."""
        context = ssl.create_default_context()
        if self._get("ssl.trust") == "*":
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        versions = []
        for name in (self._get("ssl.protocols") or "").split():
            version = TLS_VERSIONS.get(name)
            if version is None:
                logger.warning("Ignoring unsupported TLS protocol version %s", name)
                continue
            versions.append(version)
        if versions:
            context.minimum_version = min(versions)
            context.maximum_version = max(versions)
        return context

    def _client(self) -> aiosmtplib.SMTP:
        options = {
            "hostname": self.host,
            "port": self.port,
            "local_hostname": self._get("localhost"),
            "use_tls": self.use_tls,
            "start_tls": self.start_tls,
        }
        read_timeout = self._seconds("timeout")
        if read_timeout is not None:
            options["timeout"] = read_timeout
        if options["use_tls"] or options["start_tls"] is not False:
            options["tls_context"] = self.tls_context()
        return aiosmtplib.SMTP(**options)

    def _trace(self, stage: str, reply) -> None:
        if self.debug:
            logger.info("%s:%d %s: %s", self._get("host"), self.port, stage, reply)

    # ------------------------------------------------------------------ lifecycle
    async def connect(self, credentials: Credentials | None = None) -> None:
        """Open the connection and authenticate when credentials are given.

        The whole connect/login sequence is bounded by
        ``connectiontimeout`` when it is set.

        Raises:
            ConfigurationError: If a port or timeout property is not an integer.
            TransportError: If connecting or authenticating fails.
        """
        if self.is_connected:
            return
        timeout = self._seconds("connectiontimeout")
        smtp = self._client()
        self._smtp = smtp

        async def _do_connect():
            self._trace("greeting", await smtp.connect())
            if self.debug:
                self._trace("extensions", ", ".join(sorted(smtp.esmtp_extensions or {})))
            if credentials is not None:
                self._trace("auth", await smtp.login(credentials.username, credentials.password))

        try:
            await asyncio.wait_for(_do_connect(), timeout=timeout)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            await self.close()
            raise _transport_error(exc) from exc
        logger.debug("Connected to %s:%d (%s)", self.host, self.port, self.protocol)

    async def send_message(
        self,
        message: EmailMessage,
        sender: str | None = None,
        recipients: Iterable[str] | None = None,
    ) -> None:
        """Submit one message over the open connection.

        Args:
            message: The message to submit.
            sender: Envelope sender; defaults to the ``from`` property, then
                to the message's From header.
            recipients: Envelope recipients; defaults to the message's
                To/Cc/Bcc headers.

        Raises:
            TransportError: If the transport is not connected, the server
                rejects the message, or the server refuses any recipient.
        """
        if self._smtp is None or not self._smtp.is_connected:
            raise TransportError("Not connected")
        timeout = self._seconds("writetimeout")
        envelope_sender = sender or self._get("from")
        envelope_recipients = list(recipients) if recipients is not None else None
        try:
            refused, reply = await asyncio.wait_for(
                self._smtp.send_message(message, sender=envelope_sender, recipients=envelope_recipients),
                timeout=timeout,
            )
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            raise _transport_error(exc) from exc
        self._trace("data", reply)
        if refused:
            raise _refused_error(refused)

    async def close(self) -> None:
        """Release the connection. Never raises."""
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        if self.quit_wait and smtp.is_connected:
            try:
                await smtp.quit()
            except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
                logger.debug("QUIT failed: %s", exc)
        smtp.close()

    async def __aenter__(self) -> SmtpTransport:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
