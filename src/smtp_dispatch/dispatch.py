# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Message dispatch over SMTP(S).

The :class:`Dispatcher` holds one immutable :class:`ConnectionConfig`, turns
each :class:`OutgoingMessage` into an ``email.message.EmailMessage`` and
submits it through a fresh :class:`SmtpTransport`. There is no retry and no
connection reuse between calls: every ``send`` opens, uses and closes one
connection, and every failure is surfaced to the caller.

Per-message outcome callbacks replace subclassing: ``on_success`` receives
the message and its Message-ID, ``on_failure`` receives the message and the
:class:`TransportError`. Both may be plain functions or coroutines.

Example:
    Sending a message with authentication::

        dispatcher = Dispatcher(ConnectionConfig(host="smtp.example.com", port=587, use_tls=True))
        message_id = await dispatcher.send(
            message,
            Credentials(username="mailer", password="secret"),
            on_failure=lambda msg, exc: log_bounce(msg, exc),
        )
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterable
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any

from .exceptions import TransportError
from .hostname import HostnameResolver, default_resolver
from .logger import get_logger
from .models import ConnectionConfig, Credentials, OutgoingMessage
from .transport import SmtpTransport

SuccessCallback = Callable[[OutgoingMessage, str], Any]
FailureCallback = Callable[[OutgoingMessage, TransportError], Any]

logger = get_logger("dispatch")


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def build_email(message: OutgoingMessage, local_hostname: str) -> EmailMessage:
    """Build the MIME message for an :class:`OutgoingMessage`.

    Bcc addresses are envelope recipients only and never appear in headers.

    Args:
        message: Validated outgoing message.
        local_hostname: Domain used for the generated Message-ID.

    Returns:
        The ``EmailMessage`` with From, To, Cc, Subject, Date, Message-ID
        and body set.
    """
    msg = EmailMessage()
    msg["From"] = message.sender
    if message.to:
        msg["To"] = ", ".join(message.to)
    if message.cc:
        msg["Cc"] = ", ".join(message.cc)
    msg["Subject"] = message.subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid(domain=local_hostname)

    content = message.content
    charset = content.charset or "utf-8"
    if content.maintype == "text":
        msg.set_content(content.content, subtype=content.subtype, charset=charset)
    else:
        data = content.content.encode(charset)
        cte = "base64"
        # Composite types must not be transfer-encoded (RFC 2045)
        if content.maintype in ("multipart", "message"):
            cte = "7bit" if data.isascii() else "8bit"
        msg.set_content(data, maintype=content.maintype, subtype=content.subtype, cte=cte)

    # Keep every parameter of the declared type (boundary, format, ...)
    msg.replace_header("Content-Type", content.type)
    if content.maintype == "text" and content.charset is None:
        msg.set_param("charset", charset)
    return msg


class Dispatcher:
    """Sends messages through the SMTP server described by a configuration.

    The base session properties are computed once per dispatcher, the first
    time they are needed, because they include the resolved local hostname.

    Attributes:
        config: The connection configuration.
        resolver: Resolver providing the EHLO/HELO hostname.
    """

    def __init__(self, config: ConnectionConfig, resolver: HostnameResolver | None = None):
        """Initialize the dispatcher.

        Args:
            config: Validated connection configuration.
            resolver: Hostname resolver; the shared default resolver is used
                when omitted. Ignored when ``config.local_hostname`` is set.
        """
        self.config = config
        self.resolver = resolver or default_resolver
        self._properties: dict[str, str] | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Dispatcher):
            return NotImplemented
        return self.config == other.config

    def __hash__(self) -> int:
        config = self.config
        return hash((config.host, config.port, config.use_ssl, config.use_tls))

    def __repr__(self) -> str:
        return f"Dispatcher(host={self.config.host!r}, port={self.config.port}, protocol={self.config.protocol!r})"

    @property
    def protocol(self) -> str:
        return self.config.protocol

    async def properties(self) -> dict[str, str]:
        """Return a copy of the base session properties."""
        if self._properties is None:
            local_hostname = self.config.local_hostname or await self.resolver.resolve()
            self._properties = self.config.session_properties(local_hostname)
        return dict(self._properties)

    async def _transport(self, credentials: Credentials | None, sender: str) -> SmtpTransport:
        properties = await self.properties()
        prefix = f"mail.{self.protocol}"
        if credentials is not None:
            properties[f"{prefix}.auth"] = "true"
        properties[f"{prefix}.from"] = sender
        if self.config.debug:
            for key in sorted(properties):
                logger.info("%s=%s", key, properties[key])
        return SmtpTransport(properties)

    @staticmethod
    def _log_message(message: OutgoingMessage) -> None:
        logger.debug(
            "Sending email: subject=%r to=%s cc=%s bcc=%s",
            message.subject,
            list(message.to or ()),
            list(message.cc or ()),
            list(message.bcc or ()),
        )

    async def _submit(
        self,
        transport: SmtpTransport,
        message: OutgoingMessage,
        on_success: SuccessCallback | None,
        on_failure: FailureCallback | None,
    ) -> str:
        self._log_message(message)
        email = build_email(message, transport.properties[f"mail.{self.protocol}.localhost"])
        try:
            await transport.send_message(email, sender=message.sender_address, recipients=message.recipients)
        except TransportError as exc:
            logger.error("Sending %r failed: %s", message.subject, exc)
            await _notify(on_failure, message, exc)
            raise
        message_id = email["Message-ID"]
        await _notify(on_success, message, message_id)
        return message_id

    async def send(
        self,
        message: OutgoingMessage,
        credentials: Credentials | None = None,
        *,
        on_success: SuccessCallback | None = None,
        on_failure: FailureCallback | None = None,
    ) -> str:
        """Send one message over a dedicated connection.

        Args:
            message: The message to send.
            credentials: SMTP AUTH credentials, or ``None`` to skip AUTH.
            on_success: Called with ``(message, message_id)`` after submission.
            on_failure: Called with ``(message, error)`` before the error is raised.

        Returns:
            The Message-ID header of the sent message.

        Raises:
            TransportError: If connecting, authenticating or submitting fails.
        """
        transport = await self._transport(credentials, message.sender_address)
        async with transport:
            try:
                await transport.connect(credentials)
            except TransportError as exc:
                logger.error("Connection to %s:%d failed: %s", self.config.host, self.config.port, exc)
                await _notify(on_failure, message, exc)
                raise
            return await self._submit(transport, message, on_success, on_failure)

    async def send_many(
        self,
        messages: Iterable[OutgoingMessage],
        credentials: Credentials | None = None,
        *,
        on_success: SuccessCallback | None = None,
        on_failure: FailureCallback | None = None,
    ) -> list[str]:
        """Send several messages over one shared connection.

        If the connection cannot be opened, ``on_failure`` fires for every
        message. If a submission fails, ``on_failure`` fires for that message
        only and the remaining messages are not attempted.

        Returns:
            Message-IDs in the order the messages were given.

        Raises:
            TransportError: On the first connection or submission failure.
        """
        messages = list(messages)
        if not messages:
            return []

        transport = await self._transport(credentials, messages[0].sender_address)
        async with transport:
            try:
                await transport.connect(credentials)
            except TransportError as exc:
                logger.error("Connection to %s:%d failed: %s", self.config.host, self.config.port, exc)
                for message in messages:
                    await _notify(on_failure, message, exc)
                raise
            return [await self._submit(transport, message, on_success, on_failure) for message in messages]
