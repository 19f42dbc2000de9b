"""Thin asynchronous convenience layer for sending email over SMTP/SMTPS.

This package provides:

- ConnectionConfig: validated SMTP server settings, translated into session
  properties for the transport
- OutgoingMessage / MimeContent / Credentials: validated message values
- Dispatcher: opens one connection per send (or batch) and submits messages
  through aiosmtplib, with per-message success/failure callbacks
- HostnameResolver: best-effort external hostname for EHLO/HELO

Example:
    Sending an HTML message over SMTPS::

        from smtp_dispatch import ConnectionConfig, Credentials, Dispatcher, MimeContent, OutgoingMessage

        dispatcher = Dispatcher(ConnectionConfig(host="smtp.example.com", port=465, use_ssl=True))
        message = OutgoingMessage(
            subject="Welcome",
            content=MimeContent(content="<h1>Hi</h1>", type="text/html"),
            sender="noreply@example.com",
            to=["alice@example.com"],
        )
        message_id = await dispatcher.send(message, Credentials(username="mailer", password="secret"))
"""

from .dispatch import Dispatcher, build_email
from .exceptions import (
    AddressParseError,
    ConfigurationError,
    DispatchError,
    InvalidFormatError,
    TransportError,
)
from .hostname import FALLBACK_HOSTNAME, HostnameResolver, default_resolver, resolve_local_hostname
from .models import ConnectionConfig, Credentials, MimeContent, OutgoingMessage, parse_address
from .transport import SmtpTransport

__all__ = [
    "Dispatcher",
    "build_email",
    "ConnectionConfig",
    "Credentials",
    "MimeContent",
    "OutgoingMessage",
    "parse_address",
    "HostnameResolver",
    "default_resolver",
    "resolve_local_hostname",
    "FALLBACK_HOSTNAME",
    "SmtpTransport",
    "DispatchError",
    "ConfigurationError",
    "AddressParseError",
    "InvalidFormatError",
    "TransportError",
]
