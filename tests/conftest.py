"""Shared fixtures: a scripted IMAP server and engine objects wired to it."""

import pytest

from imap_mcp.imap_client import IMAPClient
from imap_mcp.service import IMAPService
from imap_mcp.settings import Settings
from tests.fakes import EMAIL, HOST, PASSWORD, PORT, FakeIMAPServer, FakeMessage


@pytest.fixture
def fast_settings():
    """Short deadlines so hanging-server tests finish quickly."""
    return Settings(command_timeout=0.3, connect_timeout=0.3, logout_grace=0.1)


@pytest.fixture
def inbox_messages():
    return [
        FakeMessage(uid=101, subject="First", body="<p>Hello &amp; welcome</p>"),
        FakeMessage(uid=102, subject="=?UTF-8?B?w4lsw6h2ZQ==?=", from_name=None, flags=["\\Seen"]),
        FakeMessage(uid=103, subject="Team sync", body="Invite attached", calendar=True),
    ]


@pytest.fixture
def imap_server(inbox_messages):
    return FakeIMAPServer(username=EMAIL, password=PASSWORD, messages=inbox_messages)


@pytest.fixture
def client(imap_server, fast_settings):
    """Unconnected session wired to the fake server."""
    return IMAPClient(
        HOST, PORT, settings=fast_settings, transport_factory=imap_server.transport_factory
    )


@pytest.fixture
def logged_in_client(client):
    client.connect()
    client.login(EMAIL, PASSWORD)
    yield client
    client.disconnect()


@pytest.fixture
def service(imap_server, fast_settings):
    service = IMAPService(fast_settings, transport_factory=imap_server.transport_factory)
    yield service
    service.disconnect_all()
