# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for SMTP dispatch.

This module defines the immutable value objects handed to the dispatcher.
All of them are validated at construction time, so a malformed message or
configuration can never reach the network layer.

Models:
    - MimeContent: Message body with its MIME type
    - Credentials: Username/password pair for SMTP AUTH
    - OutgoingMessage: Subject, sender, recipients and body of one email
    - ConnectionConfig: SMTP server connection settings

Validation failures surface as :class:`~smtp_dispatch.exceptions.ConfigurationError`
(or :class:`~smtp_dispatch.exceptions.AddressParseError` for addresses),
never as a raw ``pydantic.ValidationError``.

Example:
    Building a message and a configuration::

        config = ConnectionConfig(host="smtp.example.com", port=465, use_ssl=True)
        message = OutgoingMessage(
            subject="Hello",
            content=MimeContent(content="<p>Hi</p>", type="text/html"),
            sender="Example <noreply@example.com>",
            to=["alice@example.com"],
        )
"""

from __future__ import annotations

import re
from email.errors import HeaderParseError
from email.headerregistry import Address
from email.message import Message
from email.utils import parseaddr
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import AddressParseError, ConfigurationError
from .hostname import FALLBACK_HOSTNAME

# Accepted protocol versions contributed by each security block
SSL_PROTOCOLS = ("TLSv1.2",)
TLS_PROTOCOLS = ("TLSv1.2", "TLSv1.3")

# Session properties the transport reads as integers
_NUMERIC_PROPERTY = re.compile(r"^mail\.smtps?\.(port|timeout|connectiontimeout|writetimeout)$")


def _has_line_break(value: str) -> bool:
    return "\r" in value or "\n" in value


def parse_address(value: str) -> Address:
    """Parse an RFC 5322 address, with or without a display name.

    Args:
        value: Address string such as ``"alice@example.com"`` or
            ``"Alice <alice@example.com>"``.

    Returns:
        The parsed ``email.headerregistry.Address``.

    Raises:
        AddressParseError: If the string is empty or not ``local@domain``.
    """
    if not isinstance(value, str) or not value.strip():
        raise AddressParseError("email address is empty")
    if _has_line_break(value):
        raise AddressParseError(f"{value!r} must not contain line breaks")
    display_name, addr_spec = parseaddr(value.strip())
    if not addr_spec or "@" not in addr_spec:
        raise AddressParseError(f"{value!r} is not a valid email address")
    try:
        address = Address(display_name=display_name, addr_spec=addr_spec)
    except (ValueError, IndexError, HeaderParseError) as exc:
        raise AddressParseError(f"{value!r} is not a valid email address") from exc
    if not address.username or not address.domain:
        raise AddressParseError(f"{value!r} is not a valid email address")
    return address


def _describe(exc: ValidationError) -> tuple[str, bool]:
    """Flatten a ValidationError into one message; flag address failures."""
    parts = []
    address_error = False
    for error in exc.errors():
        original = (error.get("ctx") or {}).get("error")
        if isinstance(original, AddressParseError):
            address_error = True
        text = str(original) if isinstance(original, Exception) else error["msg"]
        location = ".".join(str(item) for item in error["loc"])
        parts.append(f"{location}: {text}" if location else text)
    return "; ".join(parts), address_error


class _FrozenModel(BaseModel):
    """Immutable model whose validation errors become ConfigurationError."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            message, address_error = _describe(exc)
            if address_error:
                raise AddressParseError(message) from exc
            raise ConfigurationError(message) from exc


class MimeContent(_FrozenModel):
    """Message content with an associated MIME type.

    Attributes:
        content: The body text.
        type: MIME type, optionally with parameters (``text/html; charset=utf-8``).
    """

    content: Annotated[str, Field(min_length=1, description="Body text")]
    type: Annotated[str, Field(min_length=3, description="MIME type, e.g. text/html")]

    @field_validator("type")
    @classmethod
    def type_has_subtype(cls, v: str) -> str:
        """Require a ``maintype/subtype`` form."""
        v = v.strip()
        main, _, sub = v.split(";", 1)[0].partition("/")
        if not main.strip() or not sub.strip():
            raise ValueError(f"{v!r} is not a maintype/subtype MIME type")
        return v

    def _header(self) -> Message:
        header = Message()
        header["Content-Type"] = self.type
        return header

    @property
    def maintype(self) -> str:
        return self._header().get_content_maintype()

    @property
    def subtype(self) -> str:
        return self._header().get_content_subtype()

    @property
    def charset(self) -> str | None:
        return self._header().get_content_charset()


class Credentials(_FrozenModel):
    """Username/password pair used for SMTP AUTH on a single send."""

    username: Annotated[str, Field(min_length=1, description="SMTP username")]
    password: Annotated[str, Field(repr=False, description="SMTP password")]


class OutgoingMessage(_FrozenModel):
    """A single email ready to be dispatched.

    At least one of ``to``, ``cc`` and ``bcc`` must contain an address.
    Empty recipient lists are normalised to ``None`` and lists to tuples, so
    two messages with the same field values always compare equal.

    Attributes:
        subject: Subject line.
        content: Body and MIME type.
        sender: The "From" address.
        to: "To" addresses.
        cc: "Cc" addresses.
        bcc: "Bcc" addresses (envelope only, never written to headers).
    """

    subject: Annotated[str, Field(min_length=1, description="Subject line")]
    content: MimeContent
    sender: Annotated[str, Field(description="From address")]
    to: Annotated[tuple[str, ...] | None, Field(default=None, description="To addresses")]
    cc: Annotated[tuple[str, ...] | None, Field(default=None, description="Cc addresses")]
    bcc: Annotated[tuple[str, ...] | None, Field(default=None, description="Bcc addresses")]

    @field_validator("subject")
    @classmethod
    def subject_is_single_line(cls, v: str) -> str:
        if _has_line_break(v):
            raise ValueError("subject must not contain line breaks")
        return v

    @field_validator("sender")
    @classmethod
    def sender_is_address(cls, v: str) -> str:
        parse_address(v)
        return v.strip()

    @field_validator("to", "cc", "bcc", mode="before")
    @classmethod
    def single_address_as_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("to", "cc", "bcc")
    @classmethod
    def recipients_are_addresses(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if not v:
            return None
        for address in v:
            parse_address(address)
        return tuple(address.strip() for address in v)

    @model_validator(mode="after")
    def has_recipient(self) -> OutgoingMessage:
        if not (self.to or self.cc or self.bcc):
            raise ValueError('Either "to", "cc", or "bcc" must not be empty')
        return self

    @property
    def sender_address(self) -> str:
        """Bare addr-spec of the sender, used as the envelope sender."""
        return parse_address(self.sender).addr_spec

    @property
    def recipients(self) -> list[str]:
        """Bare addr-specs of every envelope recipient (to, cc, then bcc)."""
        addresses = [*(self.to or ()), *(self.cc or ()), *(self.bcc or ())]
        return [parse_address(address).addr_spec for address in addresses]


class ConnectionConfig(_FrozenModel):
    """SMTP(S) server connection settings.

    The configuration is translated into a flat mapping of session
    properties (``mail.<protocol>.<key>`` strings) which the transport layer
    reads to build its SMTP client. Timeouts left unset fall back to the
    transport's own defaults.

    Attributes:
        host: SMTP server to connect to.
        port: SMTP server port, in [1, 65535].
        use_ssl: Connect with implicit TLS (SMTPS).
        use_tls: Require STARTTLS.
        connection_timeout_ms: Socket connection timeout in milliseconds.
        read_timeout_ms: Timeout for each server reply in milliseconds.
        write_timeout_ms: Timeout for each message submission in milliseconds.
        extra_properties: Session properties applied last, overriding any
            property derived from the other fields.
        debug: Log the effective session properties on every send.
        local_hostname: Name announced in EHLO/HELO; resolved when unset.
        trust_all_certs: Skip server certificate verification.
    """

    host: Annotated[str, Field(min_length=1, description="SMTP server host")]
    port: Annotated[int, Field(ge=1, le=65535, description="SMTP server port")]
    use_ssl: Annotated[bool, Field(default=False, description="Use implicit TLS (smtps)")]
    use_tls: Annotated[bool, Field(default=False, description="Require STARTTLS")]
    connection_timeout_ms: Annotated[int | None, Field(default=None, ge=0)]
    read_timeout_ms: Annotated[int | None, Field(default=None, ge=0)]
    write_timeout_ms: Annotated[int | None, Field(default=None, ge=0)]
    extra_properties: Annotated[dict[str, str], Field(default_factory=dict)]
    debug: Annotated[bool, Field(default=False, description="Log session properties")]
    local_hostname: Annotated[str | None, Field(default=None, min_length=1)]
    trust_all_certs: Annotated[bool, Field(default=True, description="Trust any server certificate")]

    @field_validator("extra_properties")
    @classmethod
    def numeric_properties_are_integers(cls, v: dict[str, str]) -> dict[str, str]:
        """Reject port and timeout overrides the transport cannot parse."""
        for key, value in v.items():
            match = _NUMERIC_PROPERTY.match(key)
            if match is None:
                continue
            try:
                number = int(value)
            except ValueError:
                raise ValueError(f"{key} must be an integer, got {value!r}") from None
            if match.group(1) == "port" and not 1 <= number <= 65535:
                raise ValueError(f"{key} must be in [1, 65535], got {number}")
        return v

    @property
    def protocol(self) -> str:
        """``"smtps"`` when SSL is enabled, ``"smtp"`` otherwise."""
        return "smtps" if self.use_ssl else "smtp"

    def session_properties(self, local_hostname: str | None = None) -> dict[str, str]:
        """Build the session property mapping consumed by the transport.

        Args:
            local_hostname: Resolved local hostname, used when the
                configuration does not set one explicitly.

        Returns:
            Mapping of property names to string values.
        """
        prefix = f"mail.{self.protocol}"
        properties = {
            "mail.transport.protocol": self.protocol,
            f"{prefix}.host": self.host,
            f"{prefix}.port": str(self.port),
            f"{prefix}.localhost": self.local_hostname or local_hostname or FALLBACK_HOSTNAME,
            f"{prefix}.quitwait": "false",
        }
        if self.trust_all_certs:
            properties[f"{prefix}.ssl.trust"] = "*"

        protocols: list[str] = []
        if self.use_ssl:
            properties[f"{prefix}.ssl.enable"] = "true"
            protocols.extend(SSL_PROTOCOLS)

        if self.use_tls:
            properties[f"{prefix}.starttls.enable"] = "true"
            properties[f"{prefix}.starttls.required"] = "true"
            protocols.extend(version for version in TLS_PROTOCOLS if version not in protocols)

        if protocols:
            properties[f"{prefix}.ssl.protocols"] = " ".join(protocols)

        timeouts = (
            ("connectiontimeout", self.connection_timeout_ms),
            ("timeout", self.read_timeout_ms),
            ("writetimeout", self.write_timeout_ms),
        )
        for key, value in timeouts:
            if value is not None:
                properties[f"{prefix}.{key}"] = str(value)

        if self.debug:
            properties["mail.debug"] = "true"
            properties[f"{prefix}.debug"] = "true"

        properties.update(self.extra_properties)
        return properties
