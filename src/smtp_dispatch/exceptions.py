# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for smtp-dispatch.

Every error raised by this package derives from :class:`DispatchError` and
carries a short machine-readable ``code``. Configuration and address errors
also derive from ``ValueError`` so callers validating user input can catch
them generically.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for all smtp-dispatch errors."""

    code = "dispatch_error"


class ConfigurationError(DispatchError, ValueError):
    """Raised when a connection configuration or message fails validation."""

    def __init__(self, message: str = "Invalid SMTP configuration"):
        super().__init__(message)
        self.code = "invalid_configuration"


class AddressParseError(ConfigurationError):
    """Raised when an email address string cannot be parsed."""

    def __init__(self, message: str = "Invalid email address"):
        super().__init__(message)
        self.code = "invalid_address"


class InvalidFormatError(DispatchError, ValueError):
    """Raised when a value (e.g. an IPv4 address) is not in the expected format."""

    def __init__(self, message: str = "Invalid format"):
        super().__init__(message)
        self.code = "invalid_format"


class TransportError(DispatchError):
    """Raised when connecting, authenticating or submitting to the SMTP server fails.

    Attributes:
        smtp_code: SMTP reply code from the server, when one was received.
        refused: Recipients the server refused, mapped to ``(code, message)``.
    """

    def __init__(
        self,
        message: str = "SMTP transport failure",
        smtp_code: int | None = None,
        refused: dict[str, tuple[int, str]] | None = None,
    ):
        super().__init__(message)
        self.code = "transport_error"
        self.smtp_code = smtp_code
        self.refused = refused or {}
