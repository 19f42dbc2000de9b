"""Tests for the dispatcher against a real SMTP server using aiosmtpd."""

import asyncio
import email
import email.policy
import logging
import socket
from typing import Any

import pytest
from aiosmtpd.controller import Controller

from smtp_dispatch.dispatch import Dispatcher, build_email
from smtp_dispatch.exceptions import InvalidFormatError, TransportError
from smtp_dispatch.models import ConnectionConfig, Credentials, MimeContent, OutgoingMessage


def get_free_port() -> int:
    """Find a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
    return port


class CapturingHandler:
    """SMTP handler that captures received messages."""

    def __init__(self):
        self.messages: list[dict[str, Any]] = []
        self.helo_names: list[str] = []
        self.reject_next = False
        self.reject_code = 550
        self.reject_message = "Mailbox not found"
        self.refused_recipients: set[str] = set()

    async def handle_EHLO(self, server, session, envelope, hostname, responses):
        self.helo_names.append(hostname)
        session.host_name = hostname
        return responses

    async def handle_RCPT(self, server, session, envelope, address, rcpt_options):
        if address in self.refused_recipients:
            return "550 No such user"
        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(self, server, session, envelope):
        if self.reject_next:
            self.reject_next = False
            return f"{self.reject_code} {self.reject_message}"

        self.messages.append({
            "from": envelope.mail_from,
            "to": envelope.rcpt_tos,
            "data": envelope.content.decode("utf-8", errors="replace"),
        })
        return "250 Message accepted for delivery"


class FakeResolver:
    """Resolver returning a fixed name and counting calls."""

    def __init__(self, name="client.test"):
        self.name = name
        self.calls = 0

    async def resolve(self):
        self.calls += 1
        return self.name


class Recorder:
    """Collects success/failure callback invocations."""

    def __init__(self):
        self.successes: list[tuple[OutgoingMessage, str]] = []
        self.failures: list[tuple[OutgoingMessage, TransportError]] = []

    def on_success(self, message, message_id):
        self.successes.append((message, message_id))

    def on_failure(self, message, error):
        self.failures.append((message, error))


@pytest.fixture
def smtp_handler():
    """Create a fresh SMTP handler."""
    return CapturingHandler()


@pytest.fixture
def smtp_server(smtp_handler):
    """Start a fake SMTP server on a free port."""
    port = get_free_port()
    controller = Controller(smtp_handler, hostname="127.0.0.1", port=port)
    controller.start()
    yield controller, port
    controller.stop()


def make_dispatcher(port: int, **config) -> Dispatcher:
    return Dispatcher(ConnectionConfig(host="127.0.0.1", port=port, **config), resolver=FakeResolver())


def make_message(subject="Test Subject", **overrides) -> OutgoingMessage:
    fields = {
        "subject": subject,
        "content": MimeContent(content="Hello, this is a test email.", type="text/plain"),
        "sender": "sender@test.com",
        "to": ["recipient@test.com"],
    }
    fields.update(overrides)
    return OutgoingMessage(**fields)


# --- build_email ---

def test_build_email_headers():
    message = make_message(
        sender="Reports <reports@test.com>",
        to=["a@test.com", "b@test.com"],
        cc=["c@test.com"],
        bcc=["hidden@test.com"],
    )
    msg = build_email(message, "client.test")

    assert msg["From"] == "Reports <reports@test.com>"
    assert msg["To"] == "a@test.com, b@test.com"
    assert msg["Cc"] == "c@test.com"
    assert msg["Bcc"] is None
    assert msg["Subject"] == "Test Subject"
    assert msg["Date"] is not None
    assert msg["Message-ID"].endswith("@client.test>")
    assert msg.get_content_type() == "text/plain"
    assert msg.get_content().strip() == "Hello, this is a test email."


def test_build_email_html_content():
    message = make_message(content=MimeContent(content="<h1>Hi</h1>", type="text/html"))
    msg = build_email(message, "client.test")
    assert msg.get_content_type() == "text/html"
    assert msg.get_content_charset() == "utf-8"


def test_build_email_non_text_content():
    message = make_message(content=MimeContent(content='{"ok": true}', type="application/json"))
    msg = build_email(message, "client.test")
    assert msg.get_content_type() == "application/json"
    assert msg.get_content() == b'{"ok": true}'


def test_build_email_keeps_content_type_parameters():
    message = make_message(content=MimeContent(content="Hello", type="text/plain; format=flowed"))
    msg = build_email(message, "client.test")
    assert msg.get_content_type() == "text/plain"
    assert msg.get_param("format") == "flowed"
    assert msg.get_content_charset() == "utf-8"


def test_build_email_explicit_charset_is_used():
    message = make_message(content=MimeContent(content="Caffè", type="text/plain; charset=iso-8859-1"))
    msg = build_email(message, "client.test")
    assert msg.get_content_charset() == "iso-8859-1"
    assert msg.get_content().strip() == "Caffè"


def test_build_email_multipart_body_sent_as_is():
    body = (
        "--b1\n"
        "Content-Type: text/plain\n"
        "\n"
        "plain part\n"
        "--b1\n"
        "Content-Type: text/html\n"
        "\n"
        "<p>html part</p>\n"
        "--b1--\n"
    )
    message = make_message(content=MimeContent(content=body, type='multipart/alternative; boundary="b1"'))
    msg = build_email(message, "client.test")

    assert msg.get_content_type() == "multipart/alternative"
    assert msg.get_boundary() == "b1"
    assert msg["Content-Transfer-Encoding"] == "7bit"

    parsed = email.message_from_bytes(msg.as_bytes(), policy=email.policy.default)
    assert parsed.is_multipart()
    parts = list(parsed.iter_parts())
    assert [part.get_content_type() for part in parts] == ["text/plain", "text/html"]
    assert parts[0].get_content().strip() == "plain part"


# --- properties ---

@pytest.mark.asyncio
async def test_properties_resolve_hostname_once():
    resolver = FakeResolver("resolved.test")
    dispatcher = Dispatcher(ConnectionConfig(host="smtp.test.com", port=25), resolver=resolver)

    first = await dispatcher.properties()
    second = await dispatcher.properties()

    assert first == second
    assert first["mail.smtp.localhost"] == "resolved.test"
    assert resolver.calls == 1


@pytest.mark.asyncio
async def test_configured_local_hostname_skips_resolution():
    resolver = FakeResolver()
    config = ConnectionConfig(host="smtp.test.com", port=25, local_hostname="fixed.test")
    properties = await Dispatcher(config, resolver=resolver).properties()

    assert properties["mail.smtp.localhost"] == "fixed.test"
    assert resolver.calls == 0


@pytest.mark.asyncio
async def test_per_call_properties_do_not_leak_into_base():
    dispatcher = Dispatcher(ConnectionConfig(host="smtp.test.com", port=465, use_ssl=True), resolver=FakeResolver())
    transport = await dispatcher._transport(Credentials(username="u", password="p"), "sender@test.com")

    assert transport.properties["mail.smtps.auth"] == "true"
    assert transport.properties["mail.smtps.from"] == "sender@test.com"

    base = await dispatcher.properties()
    assert "mail.smtps.auth" not in base
    assert "mail.smtps.from" not in base


def test_dispatchers_with_equal_configs_compare_equal():
    first = Dispatcher(ConnectionConfig(host="smtp.test.com", port=587, use_tls=True))
    second = Dispatcher(ConnectionConfig(host="smtp.test.com", port=587, use_tls=True))
    assert first == second
    assert first != Dispatcher(ConnectionConfig(host="smtp.test.com", port=25))


def test_equal_dispatchers_hash_alike():
    first = Dispatcher(ConnectionConfig(host="smtp.test.com", port=587, use_tls=True))
    second = Dispatcher(ConnectionConfig(host="smtp.test.com", port=587, use_tls=True))
    assert hash(first) == hash(second)
    assert len({first, second}) == 1


@pytest.mark.asyncio
async def test_debug_logs_effective_properties(caplog):
    caplog.set_level(logging.INFO, logger="smtp_dispatch")
    config = ConnectionConfig(host="smtp.test.com", port=25, debug=True)
    dispatcher = Dispatcher(config, resolver=FakeResolver())
    await dispatcher._transport(Credentials(username="u", password="p"), "sender@test.com")

    assert "mail.smtp.host=smtp.test.com" in caplog.text
    assert "mail.smtp.auth=true" in caplog.text
    assert "mail.debug=true" in caplog.text


@pytest.mark.asyncio
async def test_no_property_dump_without_debug(caplog):
    caplog.set_level(logging.INFO, logger="smtp_dispatch")
    config = ConnectionConfig(host="smtp.test.com", port=25)
    await Dispatcher(config, resolver=FakeResolver())._transport(None, "sender@test.com")
    assert "mail.smtp.host=" not in caplog.text


@pytest.mark.asyncio
async def test_malformed_external_ip_stops_send_before_connecting():
    class MalformedResolver:
        async def resolve(self):
            raise InvalidFormatError("<html> does not match IPv4 format")

    recorder = Recorder()
    dispatcher = Dispatcher(ConnectionConfig(host="127.0.0.1", port=get_free_port()), resolver=MalformedResolver())

    with pytest.raises(InvalidFormatError):
        await dispatcher.send(make_message(), on_success=recorder.on_success, on_failure=recorder.on_failure)
    assert recorder.successes == []


# --- send ---

@pytest.mark.asyncio
async def test_send_email_via_real_smtp(smtp_server, smtp_handler):
    """Test sending an email through a real SMTP server."""
    _, port = smtp_server
    recorder = Recorder()
    message = make_message(cc=["copy@test.com"], bcc=["hidden@test.com"])

    message_id = await make_dispatcher(port).send(
        message,
        on_success=recorder.on_success,
        on_failure=recorder.on_failure,
    )

    assert len(smtp_handler.messages) == 1
    received = smtp_handler.messages[0]
    assert received["from"] == "sender@test.com"
    assert received["to"] == ["recipient@test.com", "copy@test.com", "hidden@test.com"]
    assert "Subject: Test Subject" in received["data"]
    assert "Hello, this is a test email." in received["data"]
    assert "hidden@test.com" not in received["data"]
    assert message_id in received["data"]

    assert recorder.successes == [(message, message_id)]
    assert recorder.failures == []
    assert smtp_handler.helo_names == ["client.test"]


@pytest.mark.asyncio
async def test_envelope_sender_without_display_name(smtp_server, smtp_handler):
    _, port = smtp_server
    await make_dispatcher(port).send(make_message(sender="Reports <reports@test.com>"))

    received = smtp_handler.messages[0]
    assert received["from"] == "reports@test.com"
    assert "From: Reports <reports@test.com>" in received["data"]


@pytest.mark.asyncio
async def test_send_rejected_invokes_failure_and_reraises(smtp_server, smtp_handler):
    _, port = smtp_server
    smtp_handler.reject_next = True
    recorder = Recorder()
    message = make_message()

    with pytest.raises(TransportError) as exc_info:
        await make_dispatcher(port).send(
            message,
            on_success=recorder.on_success,
            on_failure=recorder.on_failure,
        )

    assert exc_info.value.smtp_code == 550
    assert recorder.successes == []
    assert len(recorder.failures) == 1
    assert recorder.failures[0][0] is message
    assert recorder.failures[0][1] is exc_info.value
    assert smtp_handler.messages == []


@pytest.mark.asyncio
async def test_refused_recipient_fails_the_send(smtp_server, smtp_handler):
    _, port = smtp_server
    smtp_handler.refused_recipients = {"bad@test.com"}
    recorder = Recorder()
    message = make_message(to=["good@test.com", "bad@test.com"])

    with pytest.raises(TransportError) as exc_info:
        await make_dispatcher(port).send(
            message,
            on_success=recorder.on_success,
            on_failure=recorder.on_failure,
        )

    assert exc_info.value.smtp_code == 550
    assert list(exc_info.value.refused) == ["bad@test.com"]
    assert exc_info.value.refused["bad@test.com"][0] == 550
    assert recorder.successes == []
    assert recorder.failures == [(message, exc_info.value)]


@pytest.mark.asyncio
async def test_every_recipient_refused(smtp_server, smtp_handler):
    _, port = smtp_server
    smtp_handler.refused_recipients = {"recipient@test.com"}
    recorder = Recorder()

    with pytest.raises(TransportError) as exc_info:
        await make_dispatcher(port).send(make_message(), on_failure=recorder.on_failure)

    assert exc_info.value.refused["recipient@test.com"][0] == 550
    assert len(recorder.failures) == 1
    assert smtp_handler.messages == []


@pytest.mark.asyncio
async def test_connection_refused_invokes_failure_and_reraises():
    port = get_free_port()
    recorder = Recorder()
    message = make_message()

    with pytest.raises(TransportError) as exc_info:
        await make_dispatcher(port, connection_timeout_ms=5000).send(
            message,
            on_success=recorder.on_success,
            on_failure=recorder.on_failure,
        )

    assert recorder.successes == []
    assert recorder.failures == [(message, exc_info.value)]


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(smtp_server, smtp_handler):
    _, port = smtp_server
    seen = []

    async def on_success(message, message_id):
        await asyncio.sleep(0)
        seen.append(message_id)

    message_id = await make_dispatcher(port).send(make_message(), on_success=on_success)
    assert seen == [message_id]


@pytest.mark.asyncio
async def test_send_without_callbacks(smtp_server, smtp_handler):
    _, port = smtp_server
    message_id = await make_dispatcher(port).send(make_message())
    assert message_id.startswith("<")
    assert len(smtp_handler.messages) == 1


@pytest.mark.asyncio
async def test_html_message_received(smtp_server, smtp_handler):
    _, port = smtp_server
    message = make_message(content=MimeContent(content="<p>Report</p>", type="text/html"))
    await make_dispatcher(port).send(message)
    assert "Content-Type: text/html" in smtp_handler.messages[0]["data"]


# --- send_many ---

@pytest.mark.asyncio
async def test_send_many_over_one_connection(smtp_server, smtp_handler):
    _, port = smtp_server
    recorder = Recorder()
    messages = [
        make_message("test1", sender="Org <seva@test.org>", to=["a@test.com"]),
        make_message("test2", sender="Com <seva@test.com>", to=["b@test.com"]),
        make_message("test3", sender="Biz <seva@test.biz>", to=["c@test.com"]),
    ]

    message_ids = await make_dispatcher(port).send_many(
        messages,
        on_success=recorder.on_success,
        on_failure=recorder.on_failure,
    )

    assert len(message_ids) == 3
    assert len(set(message_ids)) == 3
    assert len(recorder.successes) == len(messages)
    assert [m["from"] for m in smtp_handler.messages] == ["seva@test.org", "seva@test.com", "seva@test.biz"]
    assert smtp_handler.helo_names == ["client.test"]


@pytest.mark.asyncio
async def test_send_many_stops_at_first_rejection(smtp_server, smtp_handler):
    _, port = smtp_server
    recorder = Recorder()
    messages = [make_message("first"), make_message("second")]
    smtp_handler.reject_next = True

    with pytest.raises(TransportError):
        await make_dispatcher(port).send_many(
            messages,
            on_success=recorder.on_success,
            on_failure=recorder.on_failure,
        )

    assert [m for m, _ in recorder.failures] == [messages[0]]
    assert recorder.successes == []
    assert smtp_handler.messages == []


@pytest.mark.asyncio
async def test_send_many_connection_failure_notifies_every_message():
    port = get_free_port()
    recorder = Recorder()
    messages = [make_message("first"), make_message("second")]

    with pytest.raises(TransportError):
        await make_dispatcher(port).send_many(messages, on_failure=recorder.on_failure)

    assert [m for m, _ in recorder.failures] == messages


@pytest.mark.asyncio
async def test_send_many_empty():
    assert await make_dispatcher(25).send_many([]) == []
